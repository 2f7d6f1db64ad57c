"""!
@brief SFC / DISM repair chain tests.
@details The CBS log is a temporary file rewritten by the fake ``sfc``
invocation, mirroring how SFC appends ``[SR]`` lines while it runs.
"""

from __future__ import annotations

import pathlib
import sys
from collections.abc import Sequence
from datetime import datetime
from typing import Iterator, List

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet_tuneup import config, exec_utils, repair  # noqa: E402
from fleet_tuneup.outcomes import TaskContext, TaskStatus  # noqa: E402

CLEAN_LOG = (
    "2099-01-01 10:00:00, Info                  CSI    00000001 [SR] Verifying 100 components\n"
    "2099-01-01 10:05:00, Info                  CSI    00000002 [SR] Verify complete\n"
)
UNREPAIRABLE_LOG = (
    "2099-01-01 10:00:00, Info                  CSI    00000001 [SR] Verify complete\n"
    "2099-01-01 10:00:01, Info                  CSI    00000002 [SR] Cannot repair member file "
    "[l:10]'bad.dll' of Microsoft-Windows-Bad\n"
)
REPAIRED_LOG = (
    "2099-01-01 11:00:00, Info                  CSI    00000003 [SR] Repairing corrupted file "
    "\\??\\C:\\Windows\\System32\\bad.dll\n"
    "2099-01-01 11:00:05, Info                  CSI    00000004 [SR] Verify complete\n"
)


def _command_result(command: Sequence[str], *, returncode: int = 0, stdout: str = "", skipped: bool = False):
    return exec_utils.CommandResult(
        command=list(command),
        returncode=returncode,
        stdout=stdout,
        stderr="",
        duration=0.0,
        skipped=skipped,
    )


def _install_fake(monkeypatch, cbs_log: pathlib.Path, sfc_logs: Sequence[str]) -> List[List[str]]:
    """!
    @brief Each ``sfc`` call writes the next entry of ``sfc_logs`` to the CBS log.
    """

    commands: List[List[str]] = []
    logs: Iterator[str] = iter(sfc_logs)

    def fake_run(command, *, event, dry_run=False, **kwargs):
        commands.append(list(command))
        if dry_run:
            return _command_result(command, skipped=True)
        if command[0] == repair.SFC_EXECUTABLE:
            cbs_log.write_text(next(logs), encoding="utf-8")
        return _command_result(command)

    monkeypatch.setattr(repair.exec_utils, "run_command", fake_run)
    monkeypatch.setattr(repair.restore_point, "create_restore_point", lambda *a, **k: True)
    return commands


def test_parse_cbs_log_verdicts() -> None:
    assert repair.parse_cbs_log(CLEAN_LOG) == repair.SfcVerdict.NO_VIOLATIONS
    assert repair.parse_cbs_log(UNREPAIRABLE_LOG) == repair.SfcVerdict.UNREPAIRABLE
    assert repair.parse_cbs_log(REPAIRED_LOG) == repair.SfcVerdict.REPAIRED
    assert repair.parse_cbs_log("no sfc lines here") == repair.SfcVerdict.UNKNOWN


def test_parse_cbs_log_ignores_earlier_runs() -> None:
    text = UNREPAIRABLE_LOG + REPAIRED_LOG

    verdict = repair.parse_cbs_log(text, since=datetime(2099, 1, 1, 10, 30))

    assert verdict == repair.SfcVerdict.REPAIRED


def test_parse_cbs_log_ignores_non_sfc_lines() -> None:
    text = "2099-01-01 10:00:00, Info  CBS  Cannot repair member file while servicing\n"

    assert repair.parse_cbs_log(text) == repair.SfcVerdict.UNKNOWN


def test_decode_console_output_handles_utf16() -> None:
    raw = "Windows Resource Protection did not find any integrity violations.".encode("utf-16-le")

    assert repair.decode_console_output(b"\xff\xfe" + raw).startswith("Windows Resource Protection")
    assert repair.decode_console_output("a\x00b\x00") == "ab"
    assert repair.decode_console_output(None) == ""


def test_classify_sfc_stdout_with_nul_padding() -> None:
    text = "\x00".join("Windows Resource Protection found corrupt files but was unable to fix some of them.")

    assert repair.classify_sfc_stdout(text) == repair.SfcVerdict.UNREPAIRABLE


def test_dism_command_adds_source_for_restore_health() -> None:
    assert repair.dism_command("RestoreHealth", "WIM:D:\\sources\\install.wim:1") == [
        "dism.exe",
        "/Online",
        "/Cleanup-Image",
        "/RestoreHealth",
        "/NoRestart",
        "/Source:WIM:D:\\sources\\install.wim:1",
        "/LimitAccess",
    ]
    assert repair.dism_command("ScanHealth", "ignored")[-1] == "/NoRestart"


def test_dism_command_rejects_unknown_action() -> None:
    with pytest.raises(ValueError, match="Unsupported DISM action"):
        repair.dism_command("Revert")


def test_run_sfc_falls_back_to_stdout(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(
        repair.exec_utils,
        "run_command",
        lambda command, **kwargs: _command_result(
            command, stdout="Windows Resource Protection found corrupt files and successfully repaired them."
        ),
    )

    step = repair.run_sfc(cbs_log=tmp_path / "missing.log")

    assert step.verdict == repair.SfcVerdict.REPAIRED


def test_repair_chain_clean_system_runs_single_pass(monkeypatch, tmp_path) -> None:
    cbs_log = tmp_path / "CBS.log"
    commands = _install_fake(monkeypatch, cbs_log, [CLEAN_LOG])

    report = repair.repair_chain(cbs_log=cbs_log)

    assert report.verdict == repair.SfcVerdict.NO_VIOLATIONS
    assert report.restore_point is True
    assert [command[0] for command in commands] == ["sfc.exe"]
    assert report.reboot_required is False


def test_repair_chain_runs_dism_and_second_pass(monkeypatch, tmp_path) -> None:
    cbs_log = tmp_path / "CBS.log"
    commands = _install_fake(monkeypatch, cbs_log, [UNREPAIRABLE_LOG, REPAIRED_LOG])

    report = repair.repair_chain(cbs_log=cbs_log, source="D:\\sources", component_cleanup=True)

    assert [step.name for step in report.steps] == [
        "sfc",
        "dism_RestoreHealth",
        "sfc",
        "dism_StartComponentCleanup",
    ]
    assert "/Source:D:\\sources" in commands[1]
    assert report.verdict == repair.SfcVerdict.REPAIRED
    assert report.reboot_required is True


def test_run_task_unrepairable_fails(monkeypatch, tmp_path) -> None:
    cbs_log = tmp_path / "CBS.log"
    _install_fake(monkeypatch, cbs_log, [UNREPAIRABLE_LOG, UNREPAIRABLE_LOG])
    monkeypatch.setattr(repair, "cbs_log_path", lambda: cbs_log)

    result = repair.run_task(TaskContext(settings=config.Settings()))

    assert result.key == "repair"
    assert result.status == TaskStatus.FAILED
    assert result.details["verdict"] == "unrepairable"


def test_run_task_dry_run_is_skipped(monkeypatch, tmp_path) -> None:
    commands = _install_fake(monkeypatch, tmp_path / "CBS.log", [])

    result = repair.run_task(TaskContext(settings=config.Settings(), dry_run=True))

    assert result.status == TaskStatus.SKIPPED
    assert result.reboot_required is False
    assert [command[0] for command in commands] == ["sfc.exe"]


def test_run_task_fails_when_sfc_is_missing(monkeypatch, tmp_path) -> None:
    commands: List[List[str]] = []

    def fake_run(command, *, event, dry_run=False, **kwargs):
        commands.append(list(command))
        result = _command_result(command, returncode=127)
        result.error = "[WinError 2] The system cannot find the file specified"
        return result

    monkeypatch.setattr(repair.exec_utils, "run_command", fake_run)
    monkeypatch.setattr(repair.restore_point, "create_restore_point", lambda *a, **k: True)
    monkeypatch.setattr(repair, "cbs_log_path", lambda: tmp_path / "CBS.log")

    result = repair.run_task(TaskContext(settings=config.Settings()))

    assert result.status == TaskStatus.FAILED
    assert result.summary.startswith("sfc did not complete: [WinError 2]")
    assert [command[0] for command in commands] == ["sfc.exe"]
    assert result.details["steps"][0]["returncode"] == 127


def test_repair_chain_stops_when_dism_times_out(monkeypatch, tmp_path) -> None:
    cbs_log = tmp_path / "CBS.log"
    commands: List[List[str]] = []

    def fake_run(command, *, event, dry_run=False, **kwargs):
        commands.append(list(command))
        result = _command_result(command)
        if command[0] == repair.SFC_EXECUTABLE:
            cbs_log.write_text(UNREPAIRABLE_LOG, encoding="utf-8")
        else:
            result.returncode = 1
            result.timed_out = True
            result.error = "timeout"
        return result

    monkeypatch.setattr(repair.exec_utils, "run_command", fake_run)

    report = repair.repair_chain(cbs_log=cbs_log, create_restore=False, component_cleanup=True)

    assert [step.name for step in report.steps] == ["sfc", "dism_RestoreHealth"]
    assert report.failed_step is report.steps[1]
    assert report.steps[1].error == "timed out"
    assert [command[0] for command in commands] == ["sfc.exe", "dism.exe"]


def test_run_sfc_timeout_ignores_cbs_log(monkeypatch, tmp_path) -> None:
    cbs_log = tmp_path / "CBS.log"
    cbs_log.write_text(CLEAN_LOG, encoding="utf-8")

    def fake_run(command, **kwargs):
        result = _command_result(command, returncode=1)
        result.timed_out = True
        result.error = "timeout"
        return result

    monkeypatch.setattr(repair.exec_utils, "run_command", fake_run)

    step = repair.run_sfc(cbs_log=cbs_log)

    assert step.failed is True
    assert step.verdict == repair.SfcVerdict.UNKNOWN
