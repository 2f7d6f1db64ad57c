"""Integration tests for CLI and UI layers."""
from __future__ import annotations

import json
import pathlib
import sys
from types import SimpleNamespace
from typing import List

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet_tuneup import dispatcher, main, tasks, ui, version  # noqa: E402


def _no_op(*args, **kwargs):  # type: ignore[no-untyped-def]
    return None


def _patch_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(main.elevation, "ensure_admin_and_relaunch_if_needed", _no_op)
    monkeypatch.setattr(main.elevation, "is_admin", lambda: True)
    monkeypatch.setattr(main, "enable_vt_mode_if_possible", _no_op)
    monkeypatch.setattr(main.config.fs_tools, "get_default_config_path", lambda: tmp_path / "absent.json")


def _inputs(*answers: str):
    queue = list(answers)

    def fake_input(prompt):  # type: ignore[no-untyped-def]
        if not queue:
            raise EOFError
        return queue.pop(0)

    return fake_input


def test_main_runs_selected_tasks(monkeypatch, tmp_path) -> None:
    """!
    @brief ``--task`` values are split, forwarded and the report exit code returned.
    """

    _patch_environment(monkeypatch, tmp_path)
    recorded: List[tuple] = []

    def fake_run_session(keys, settings, *, dry_run=False, force=False):  # type: ignore[no-untyped-def]
        recorded.append((list(keys), settings, dry_run, force))
        return SimpleNamespace(exit_code=dispatcher.EXIT_REBOOT_REQUIRED)

    monkeypatch.setattr(main.dispatcher, "run_session", fake_run_session)

    exit_code = main.main(
        [
            "--task",
            "wu,cleanup",
            "--task",
            "repair",
            "--dry-run",
            "--yes",
            "--logdir",
            str(tmp_path / "logs"),
            "--no-policy",
            "--power-plan",
            "ultimate",
        ]
    )

    assert exit_code == 3010
    keys, settings, dry_run, force = recorded[0]
    assert keys == ["wu", "cleanup", "repair"]
    assert dry_run is True and force is True
    assert settings.manage_execution_policy is False
    assert settings.session_power_plan == "ultimate"
    assert (tmp_path / "logs" / main.logging_ext.HUMAN_LOG_FILENAME).exists()


def test_main_all_flag_expands(monkeypatch, tmp_path) -> None:
    _patch_environment(monkeypatch, tmp_path)
    recorded: List[List[str]] = []
    monkeypatch.setattr(
        main.dispatcher,
        "run_session",
        lambda keys, settings, **kwargs: recorded.append(list(keys)) or SimpleNamespace(exit_code=0),
    )

    assert main.main(["--all", "--dry-run", "--logdir", str(tmp_path)]) == 0
    assert recorded == [["all"]]


def test_main_unknown_task_is_usage_error(monkeypatch, tmp_path, capsys) -> None:
    _patch_environment(monkeypatch, tmp_path)
    monkeypatch.setattr(main.dispatcher, "run_session", lambda *a, **k: pytest.fail("must not run"))

    assert main.main(["--task", "defrag"]) == 2
    assert "Unknown task(s): defrag" in capsys.readouterr().err


def test_main_config_error_exits_2(monkeypatch, tmp_path, capsys) -> None:
    _patch_environment(monkeypatch, tmp_path)
    bad = tmp_path / "site.json"
    bad.write_text(json.dumps({"powerplan": "high"}), encoding="utf-8")

    assert main.main(["--config", str(bad), "--task", "wu"]) == 2
    assert "configuration error" in capsys.readouterr().err


def test_main_rejects_unknown_power_plan(monkeypatch, tmp_path, capsys) -> None:
    _patch_environment(monkeypatch, tmp_path)

    assert main.main(["--power-plan", "turbo", "--task", "wu"]) == 2
    assert "Unknown power plan" in capsys.readouterr().err


def test_main_list_prints_tasks(capsys) -> None:
    assert main.main(["--list"]) == 0

    output = capsys.readouterr().out
    for key in tasks.TASKS:
        assert key in output
    assert "destructive" in output


def test_elevation_skipped_for_dry_run(monkeypatch, tmp_path) -> None:
    _patch_environment(monkeypatch, tmp_path)
    elevated: List[bool] = []
    monkeypatch.setattr(main.elevation, "ensure_admin_and_relaunch_if_needed", lambda: elevated.append(True))
    monkeypatch.setattr(main.dispatcher, "run_session", lambda *a, **k: SimpleNamespace(exit_code=0))

    main.main(["--task", "cleanup", "--dry-run", "--logdir", str(tmp_path)])
    main.main(["--task", "cleanup", "--logdir", str(tmp_path)])

    assert elevated == [True]


def test_main_interactive_uses_cli(monkeypatch, tmp_path) -> None:
    _patch_environment(monkeypatch, tmp_path)
    captured = {}

    def fake_run_cli(app_state):  # type: ignore[no-untyped-def]
        captured.update(app_state)
        return 2

    monkeypatch.setattr(main.ui, "run_cli", fake_run_cli)

    assert main.main(["--logdir", str(tmp_path)]) == 2
    assert callable(captured["run_session"])
    assert captured["settings"].log_path == tmp_path


def test_version_option_reports_metadata(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main.main(["--version"])

    assert excinfo.value.code == 0
    assert version.__version__ in capsys.readouterr().out


def test_parse_selection() -> None:
    assert ui.parse_selection("3, 1,3", 11) == [2, 0]
    with pytest.raises(ValueError):
        ui.parse_selection("0", 11)
    with pytest.raises(ValueError):
        ui.parse_selection("two", 11)
    with pytest.raises(ValueError):
        ui.parse_selection(" , ", 11)


def test_build_menu_trailing_entries() -> None:
    menu = ui.build_menu()

    assert [action for action, _ in menu[-3:]] == ["all", "settings", "exit"]
    assert len(menu) == len(tasks.TASKS) + 3
    assert "restarts the machine" in dict(menu)["upgrade"]


def test_ui_run_cli_runs_selected_tasks(capsys) -> None:
    sessions: List[List[str]] = []

    def runner(keys):  # type: ignore[no-untyped-def]
        sessions.append(keys)
        return SimpleNamespace(exit_code=2)

    menu = ui.build_menu()
    exit_index = len(menu)
    app_state = {
        "args": SimpleNamespace(quiet=False, json=False),
        "human_logger": None,
        "settings": None,
        "input": _inputs("42", "5,1", str(exit_index)),
        "run_session": runner,
    }

    assert ui.run_cli(app_state) == 2
    assert sessions == [["cleanup", "wu"]]
    output = capsys.readouterr().out
    assert "Invalid selection" in output
    assert "Exiting Fleet Tune-up." in output


def test_ui_run_cli_settings_then_eof(capsys) -> None:
    menu = ui.build_menu()
    settings_index = [action for action, _ in menu].index("settings") + 1
    app_state = {
        "args": SimpleNamespace(quiet=False, json=False),
        "settings": None,
        "input": _inputs(str(settings_index)),
        "run_session": lambda keys: pytest.fail("no session expected"),
    }

    assert ui.run_cli(app_state) is None
    assert "Current settings:" in capsys.readouterr().out


def test_ui_run_cli_respects_json_flag() -> None:
    warnings: List[str] = []
    logger = SimpleNamespace(warning=lambda message, *args: warnings.append(message))
    app_state = {
        "args": SimpleNamespace(quiet=False, json=True),
        "human_logger": logger,
        "input": lambda prompt: pytest.fail("menu must not prompt"),
        "run_session": lambda keys: pytest.fail("no session expected"),
    }

    assert ui.run_cli(app_state) is None
    assert warnings and "suppressed" in warnings[0]


def test_main_invalid_policy_in_config_exits_2(monkeypatch, tmp_path, capsys) -> None:
    _patch_environment(monkeypatch, tmp_path)
    monkeypatch.setattr(main.dispatcher, "run_session", lambda *a, **k: pytest.fail("must not run"))
    bad = tmp_path / "site.json"
    bad.write_text(json.dumps({"execution_policy": "Bogus"}), encoding="utf-8")

    exit_code = main.main(
        ["--config", str(bad), "--task", "cleanup", "--no-elevate", "--dry-run", "--no-power-plan"]
    )

    assert exit_code == 2
    assert "Unknown execution policy 'Bogus'" in capsys.readouterr().err


def test_main_rejects_non_positive_timeout(monkeypatch, tmp_path, capsys) -> None:
    _patch_environment(monkeypatch, tmp_path)

    assert main.main(["--timeout", "0", "--task", "wu"]) == 2
    assert "timeout: must be at least 1" in capsys.readouterr().err
