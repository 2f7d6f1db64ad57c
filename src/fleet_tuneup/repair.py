"""!
@brief System file repair with SFC and DISM.
@details ``sfc /scannow`` verifies protected system files and repairs them
from the component store. When the store itself is damaged SFC reports
"unable to fix", ``DISM /RestoreHealth`` rebuilds the store from Windows
Update (or a configured source) and a second SFC pass is needed.

SFC's exit code does not distinguish between these outcomes, so the verdict
comes from the ``[SR]`` lines it appends to ``CBS.log``; its console output,
which is UTF-16 with NUL padding when captured, is the fallback.
"""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from . import exec_utils, logging_ext, restore_point
from .outcomes import TaskContext, TaskResult, TaskStatus

SFC_EXECUTABLE = "sfc.exe"
DISM_EXECUTABLE = "dism.exe"

SFC_TIMEOUT = 2 * 60 * 60
DISM_TIMEOUT = 3 * 60 * 60

DISM_ACTIONS = ("CheckHealth", "ScanHealth", "RestoreHealth", "StartComponentCleanup")

_CBS_TIMESTAMP_RE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})")


class SfcVerdict(Enum):
    """!
    @brief Integrity verdict of an SFC pass.
    """

    NO_VIOLATIONS = "no_violations"
    REPAIRED = "repaired"
    UNREPAIRABLE = "unrepairable"
    UNKNOWN = "unknown"


_STDOUT_VERDICTS = (
    ("did not find any integrity violations", SfcVerdict.NO_VIOLATIONS),
    ("found corrupt files and successfully repaired", SfcVerdict.REPAIRED),
    ("found corrupt files but was unable to fix", SfcVerdict.UNREPAIRABLE),
    ("could not perform the requested operation", SfcVerdict.UNKNOWN),
)


@dataclass
class RepairStep:
    name: str
    returncode: int
    verdict: Optional[SfcVerdict] = None
    skipped: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        """!
        @brief True when the tool could not be started or did not finish.
        """

        return self.error is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "returncode": self.returncode,
            "verdict": self.verdict.value if self.verdict else None,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class RepairReport:
    verdict: SfcVerdict
    steps: List[RepairStep] = field(default_factory=list)
    restore_point: Optional[bool] = None

    @property
    def failed_step(self) -> Optional[RepairStep]:
        return next((step for step in self.steps if step.failed), None)

    @property
    def reboot_required(self) -> bool:
        return self.verdict == SfcVerdict.REPAIRED or any(
            step.returncode == 3010 for step in self.steps
        )


def cbs_log_path() -> Path:
    system_root = os.environ.get("SystemRoot", r"C:\Windows")
    return Path(system_root) / "Logs" / "CBS" / "CBS.log"


def decode_console_output(value: bytes | str | None) -> str:
    """!
    @brief Normalise SFC console output.
    @details SFC writes UTF-16LE even when stdout is a pipe; decoded as text
    the result is interleaved with NUL characters.
    """

    if value is None:
        return ""
    if isinstance(value, bytes):
        if value[1:2] == b"\x00" or value.startswith(b"\xff\xfe"):
            text = value.decode("utf-16-le", errors="replace")
        else:
            text = value.decode("utf-8", errors="replace")
    else:
        text = value
    return text.replace("\x00", "").replace("\ufeff", "")


def _line_timestamp(line: str) -> Optional[datetime]:
    match = _CBS_TIMESTAMP_RE.match(line)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None


def parse_cbs_log(text: str, since: Optional[datetime] = None) -> SfcVerdict:
    """!
    @brief Derive an SFC verdict from ``CBS.log`` contents.
    @param text Log text.
    @param since Ignore lines stamped before this moment. Lines without a
    timestamp inherit the previous decision.
    """

    unrepairable = repaired = verified = False
    in_window = since is None
    for line in text.splitlines():
        stamp = _line_timestamp(line)
        if since is not None and stamp is not None:
            in_window = stamp >= since
        if not in_window or "[SR]" not in line:
            continue
        if "Cannot repair member file" in line:
            unrepairable = True
        elif "Repairing corrupted file" in line or "Repaired file" in line:
            repaired = True
        elif "Verify complete" in line:
            verified = True

    if unrepairable:
        return SfcVerdict.UNREPAIRABLE
    if repaired:
        return SfcVerdict.REPAIRED
    if verified:
        return SfcVerdict.NO_VIOLATIONS
    return SfcVerdict.UNKNOWN


def classify_sfc_stdout(text: str) -> SfcVerdict:
    normalized = " ".join(decode_console_output(text).lower().split())
    for needle, verdict in _STDOUT_VERDICTS:
        if needle in normalized:
            return verdict
    return SfcVerdict.UNKNOWN


def _read_cbs_log(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logging_ext.get_human_logger().debug("Unable to read %s: %s", path, exc)
        return None


def _incomplete_reason(result: exec_utils.CommandResult) -> Optional[str]:
    if result.timed_out:
        return "timed out"
    return result.error


def run_sfc(*, dry_run: bool = False, cbs_log: Path | None = None) -> RepairStep:
    """!
    @brief Run ``sfc /scannow`` and determine its verdict.
    @details A launch failure or timeout yields a failed step with an
    ``UNKNOWN`` verdict; ``CBS.log`` is not consulted.
    """

    started = datetime.now().replace(microsecond=0)
    result = exec_utils.run_command(
        [SFC_EXECUTABLE, "/scannow"],
        event="sfc_scan",
        timeout=SFC_TIMEOUT,
        dry_run=dry_run,
        human_message="Running System File Checker (sfc /scannow)",
    )
    if result.skipped:
        return RepairStep("sfc", 0, SfcVerdict.NO_VIOLATIONS, skipped=True)

    reason = _incomplete_reason(result)
    if reason is not None:
        logging_ext.get_human_logger().error("System File Checker did not complete: %s", reason)
        return RepairStep("sfc", result.returncode, SfcVerdict.UNKNOWN, error=reason)

    verdict = SfcVerdict.UNKNOWN
    log_text = _read_cbs_log(cbs_log or cbs_log_path())
    if log_text is not None:
        verdict = parse_cbs_log(log_text, since=started)
    if verdict == SfcVerdict.UNKNOWN:
        verdict = classify_sfc_stdout(result.stdout)

    logging_ext.get_machine_logger().info(
        "sfc_verdict",
        extra={"event": "sfc_verdict", "verdict": verdict.value, "rc": result.returncode},
    )
    return RepairStep("sfc", result.returncode, verdict)


def dism_command(action: str, source: Optional[str] = None) -> List[str]:
    """!
    @throws ValueError For actions outside :data:`DISM_ACTIONS`.
    """

    if action not in DISM_ACTIONS:
        raise ValueError(f"Unsupported DISM action {action!r}; expected one of {', '.join(DISM_ACTIONS)}")
    command = [DISM_EXECUTABLE, "/Online", "/Cleanup-Image", f"/{action}", "/NoRestart"]
    if source and action == "RestoreHealth":
        command.extend([f"/Source:{source}", "/LimitAccess"])
    return command


def run_dism(action: str, *, dry_run: bool = False, source: Optional[str] = None) -> RepairStep:
    result = exec_utils.run_command(
        dism_command(action, source),
        event="dism",
        timeout=DISM_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Running DISM /{action}",
        extra={"action": action, "source": source},
    )
    return RepairStep(
        f"dism_{action}",
        result.returncode,
        skipped=result.skipped,
        error=_incomplete_reason(result),
    )


def repair_chain(
    *,
    dry_run: bool = False,
    source: Optional[str] = None,
    create_restore: bool = True,
    component_cleanup: bool = False,
    cbs_log: Path | None = None,
) -> RepairReport:
    """!
    @brief SFC, then DISM ``RestoreHealth`` and SFC again when needed.
    @details The DISM pass runs only for ``UNREPAIRABLE`` or ``UNKNOWN``
    verdicts. The final verdict is that of the last SFC pass. The chain stops
    at the first step that could not be started or timed out.
    """

    human_logger = logging_ext.get_human_logger()
    report = RepairReport(verdict=SfcVerdict.UNKNOWN)
    if create_restore:
        report.restore_point = restore_point.create_restore_point(
            "Fleet Tune-up system file repair", dry_run=dry_run
        )

    first = run_sfc(dry_run=dry_run, cbs_log=cbs_log)
    report.steps.append(first)
    report.verdict = first.verdict or SfcVerdict.UNKNOWN
    if first.failed:
        return report

    if report.verdict in {SfcVerdict.UNREPAIRABLE, SfcVerdict.UNKNOWN}:
        human_logger.info("SFC verdict %s; repairing the component store", report.verdict.value)
        dism = run_dism("RestoreHealth", dry_run=dry_run, source=source)
        report.steps.append(dism)
        if dism.failed:
            human_logger.error("DISM /RestoreHealth did not complete: %s", dism.error)
            return report
        second = run_sfc(dry_run=dry_run, cbs_log=cbs_log)
        report.steps.append(second)
        report.verdict = second.verdict or SfcVerdict.UNKNOWN
        if second.failed:
            return report

    if component_cleanup:
        report.steps.append(run_dism("StartComponentCleanup", dry_run=dry_run))

    human_logger.info("System file repair finished: %s", report.verdict.value)
    return report


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    options = context.settings.repair
    report = repair_chain(
        dry_run=context.dry_run,
        source=options.dism_source,
        create_restore=options.create_restore_point,
        component_cleanup=options.component_cleanup,
    )

    failed_step = report.failed_step
    summary = f"SFC verdict: {report.verdict.value.replace('_', ' ')}"
    if context.dry_run:
        status = TaskStatus.SKIPPED
    elif failed_step is not None:
        status = TaskStatus.FAILED
        summary = f"{failed_step.name} did not complete: {failed_step.error}"
    elif report.verdict in {SfcVerdict.NO_VIOLATIONS, SfcVerdict.REPAIRED}:
        status = TaskStatus.SUCCESS
    elif report.verdict == SfcVerdict.UNKNOWN:
        status = TaskStatus.WARNING
    else:
        status = TaskStatus.FAILED

    return TaskResult(
        key="repair",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={
            "verdict": report.verdict.value,
            "restore_point": report.restore_point,
            "steps": [step.to_dict() for step in report.steps],
        },
        reboot_required=report.reboot_required and not context.dry_run,
    )


__all__ = [
    "DISM_ACTIONS",
    "RepairReport",
    "RepairStep",
    "SfcVerdict",
    "cbs_log_path",
    "classify_sfc_stdout",
    "decode_console_output",
    "dism_command",
    "parse_cbs_log",
    "repair_chain",
    "run_dism",
    "run_sfc",
    "run_task",
]
