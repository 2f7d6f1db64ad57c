"""!
@brief Configuration loading tests.
@details Covers defaults, JSON parsing, rejection of unknown keys and the
command-line override merge in :mod:`fleet_tuneup.config`.
"""

from __future__ import annotations

import json
import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet_tuneup import config  # noqa: E402
from fleet_tuneup.packages import PackageSpec  # noqa: E402


def _write(path: pathlib.Path, payload: object) -> pathlib.Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_defaults_when_default_file_missing(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config.fs_tools, "get_default_config_path", lambda: tmp_path / "absent.json")

    settings = config.load_settings()

    assert settings.session_power_plan == "high_performance"
    assert settings.execution_policy == "Bypass"
    assert settings.execution_policy_scope == "LocalMachine"
    assert [spec.id for spec in settings.baseline_packages][0] == "Google.Chrome"
    assert settings.windows_update.timeout == 4 * 60 * 60


def test_explicit_missing_file_is_an_error(tmp_path) -> None:
    with pytest.raises(config.ConfigError, match="not found"):
        config.load_settings(tmp_path / "missing.json")


def test_load_settings_parses_sections_and_packages(tmp_path) -> None:
    path = _write(
        tmp_path / "site.json",
        {
            "session_power_plan": "ultimate",
            "baseline_packages": [
                "Mozilla.Firefox",
                {"id": "Notepad++.Notepad++", "choco_id": "notepadplusplus", "scope": "machine"},
            ],
            "cleanup": {"min_age_days": 7, "extra_paths": ["D:\\Scratch"]},
            "unifi": {"version": "9.0.114"},
            "power_timeouts": {"standby-timeout-ac": 0},
        },
    )

    settings = config.load_settings(path)

    assert settings.session_power_plan == "ultimate"
    assert settings.baseline_packages == [
        PackageSpec("Mozilla.Firefox"),
        PackageSpec("Notepad++.Notepad++", choco_id="notepadplusplus", scope="machine"),
    ]
    assert settings.cleanup.min_age_days == 7
    assert settings.cleanup.extra_paths == ["D:\\Scratch"]
    assert settings.repair.create_restore_point is True
    assert settings.unifi.resolved_installer_urls()[0] == "https://dl.ui.com/unifi/9.0.114/UniFi-installer.exe"
    assert settings.power_timeouts == {"standby-timeout-ac": 0}


def test_load_settings_accepts_utf8_bom(tmp_path) -> None:
    path = tmp_path / "bom.json"
    path.write_bytes(b"\xef\xbb\xbf" + json.dumps({"reboot_after": True}).encode("utf-8"))

    assert config.load_settings(path).reboot_after is True


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"power_plan": "high"}, "unknown configuration keys: power_plan"),
        ({"cleanup": {"age": 3}}, "cleanup: unknown keys age"),
        ({"baseline_packages": [{"choco_id": "vlc"}]}, "require an 'id'"),
        ({"baseline_packages": "Google.Chrome"}, "expected a list"),
        ({"download_attempts": 0}, "at least 1"),
        ({"power_timeouts": {"standby-timeout-ac": -1}}, "non-negative"),
        ({"execution_policy": "Bogus"}, "Unknown execution policy 'Bogus'"),
        ({"execution_policy_scope": "Machine"}, "Unknown execution policy scope"),
        ({"permanent_power_plan": "turbo"}, "Unknown power plan 'turbo'"),
        ({"session_power_plan": "turbo"}, "Unknown power plan"),
        ({"reboot_delay": "soon"}, "reboot_delay: expected int, got str"),
        ({"stop_on_failure": "yes"}, "stop_on_failure: expected bool"),
        ({"download_attempts": True}, "download_attempts: expected int, got bool"),
        ({"timeout": 0}, "timeout: must be at least 1"),
        ({"windows_update": {"timeout": "4h"}}, "windows_update.timeout: expected int"),
        ({"cleanup": {"min_age_days": -1}}, "cleanup.min_age_days: must not be negative"),
        ({"cleanup": {"extra_paths": "C:\\Scratch"}}, r"cleanup.extra_paths: expected List\[str\]"),
        ({"cleanup": {"extra_paths": [""]}}, r"extra_paths\[0\]: expected an absolute path"),
        ({"cleanup": {"extra_paths": ["Scratch"]}}, r"extra_paths\[0\]: expected an absolute path"),
        ({"unifi": {"installer_urls": [1]}}, "unifi.installer_urls"),
        ({"baseline_packages": [{"id": "vlc", "source": "scoop"}]}, "source must be winget or choco"),
        ({"baseline_packages": [{"id": 7}]}, "expected str, got int"),
    ],
)
def test_invalid_configuration_rejected(tmp_path, payload, message) -> None:
    path = _write(tmp_path / "bad.json", payload)

    with pytest.raises(config.ConfigError, match=message):
        config.load_settings(path)


def test_invalid_json_reported(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(config.ConfigError, match="invalid JSON"):
        config.load_settings(path)


def test_apply_overrides_ignores_none_and_unknown() -> None:
    base = config.Settings()

    merged = config.apply_overrides(
        base,
        {"log_directory": "C:\\Logs", "timeout": None, "manage_power_plan": False, "bogus": 1},
    )

    assert merged.log_directory == "C:\\Logs"
    assert merged.timeout is None
    assert merged.manage_power_plan is False
    assert base.manage_power_plan is True


def test_paths_fall_back_to_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(config.fs_tools, "get_default_log_directory", lambda: tmp_path / "Logs")
    settings = config.Settings()

    assert settings.log_path == tmp_path / "Logs"
    assert config.Settings(work_directory=str(tmp_path / "w")).work_path == tmp_path / "w"


def test_policy_names_normalised_and_power_plans_accepted(tmp_path) -> None:
    path = _write(
        tmp_path / "site.json",
        {
            "execution_policy": "remotesigned",
            "execution_policy_scope": "currentuser",
            "permanent_power_plan": "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c",
            "cleanup": {"extra_paths": ["E:\\Builds", str(tmp_path)]},
        },
    )

    settings = config.load_settings(path)

    assert settings.execution_policy == "RemoteSigned"
    assert settings.execution_policy_scope == "CurrentUser"
    assert settings.permanent_power_plan == "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c"
