"""!
@brief Click-to-Run Office update trigger.
@details ``OfficeC2RClient.exe /update user`` asks the Click-to-Run service to
check its configured channel and apply any pending build. The client returns
as soon as the request is queued, so the task reports "triggered" rather than
"updated"; the installed version before the request is recorded so a later
inventory can confirm progress.

@see https://learn.microsoft.com/deployoffice/updates/manage-microsoft-365-apps-updates
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import exec_utils, logging_ext, registry_tools
from .outcomes import TaskContext, TaskResult, TaskStatus

C2R_CLIENT_CANDIDATES = (
    Path(r"C:\Program Files\Common Files\Microsoft Shared\ClickToRun\OfficeC2RClient.exe"),
    Path(r"C:\Program Files (x86)\Common Files\Microsoft Shared\ClickToRun\OfficeC2RClient.exe"),
)
"""!
@brief Standard filesystem locations checked for OfficeC2RClient.exe.
"""

C2R_CONFIGURATION_KEY = r"SOFTWARE\Microsoft\Office\ClickToRun\Configuration"

UPDATE_TIMEOUT = 15 * 60


@dataclass
class OfficeUpdateResult:
    triggered: bool
    returncode: int
    version_before: Optional[str] = None
    client_path: Optional[str] = None
    skipped_reason: Optional[str] = None


def find_c2r_client(custom_path: Path | str | None = None) -> Path | None:
    """!
    @brief Locate ``OfficeC2RClient.exe``.
    @details The custom path wins when it exists, then the 64-bit and 32-bit
    Common Files locations are checked.
    """

    if custom_path:
        candidate = Path(custom_path)
        if candidate.exists():
            return candidate
    for candidate in C2R_CLIENT_CANDIDATES:
        if candidate.exists():
            return candidate
    return None


def installed_version() -> Optional[str]:
    value = registry_tools.get_value(
        registry_tools.HKLM, C2R_CONFIGURATION_KEY, "VersionToReport"
    )
    return str(value) if value else None


def build_update_command(
    exe: Path | str,
    *,
    display: bool = False,
    force_shutdown: bool = True,
    update_to: Optional[str] = None,
) -> List[str]:
    command = [
        str(exe),
        "/update",
        "user",
        f"displaylevel={'true' if display else 'false'}",
        f"forceappshutdown={'true' if force_shutdown else 'false'}",
    ]
    if update_to:
        command.append(f"updatetoversion={update_to}")
    return command


def trigger_update(
    *,
    dry_run: bool = False,
    display: bool = False,
    force_shutdown: bool = True,
    update_to: Optional[str] = None,
    client_path: Path | str | None = None,
) -> OfficeUpdateResult:
    """!
    @brief Ask Click-to-Run to update Office.
    @details A machine without Click-to-Run Office is reported as skipped, not
    failed.
    """

    human_logger = logging_ext.get_human_logger()
    exe = find_c2r_client(client_path)
    if exe is None:
        human_logger.info("Click-to-Run Office not installed; nothing to update.")
        return OfficeUpdateResult(
            triggered=False,
            returncode=0,
            skipped_reason="Click-to-Run Office not installed",
        )

    version_before = installed_version()
    result = exec_utils.run_command(
        build_update_command(
            exe,
            display=display,
            force_shutdown=force_shutdown,
            update_to=update_to,
        ),
        event="office_update",
        timeout=UPDATE_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Requesting Office update (installed build {version_before or 'unknown'})",
        extra={"version_before": version_before},
    )
    if result.skipped:
        return OfficeUpdateResult(False, 0, version_before, str(exe), "dry-run")
    return OfficeUpdateResult(
        triggered=result.returncode == 0 and not result.timed_out,
        returncode=result.returncode,
        version_before=version_before,
        client_path=str(exe),
    )


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    options = context.settings.office_update
    outcome = trigger_update(
        dry_run=context.dry_run,
        display=options.display,
        force_shutdown=options.force_shutdown,
        update_to=options.update_to_version,
        client_path=options.client_path,
    )

    if outcome.skipped_reason:
        status = TaskStatus.SKIPPED
        summary = outcome.skipped_reason
    elif outcome.triggered:
        status = TaskStatus.SUCCESS
        summary = f"Office update requested (build {outcome.version_before or 'unknown'})"
    else:
        status = TaskStatus.FAILED
        summary = f"OfficeC2RClient exited with {outcome.returncode}"

    return TaskResult(
        key="mso_update",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={
            "client_path": outcome.client_path,
            "version_before": outcome.version_before,
            "returncode": outcome.returncode,
        },
    )


__all__ = [
    "C2R_CLIENT_CANDIDATES",
    "OfficeUpdateResult",
    "build_update_command",
    "find_c2r_client",
    "installed_version",
    "run_task",
    "trigger_update",
]
