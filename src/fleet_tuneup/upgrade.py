"""!
@brief Windows feature upgrade through the Installation Assistant.
@details The assistant downloads the target release itself and reboots the
machine when setup finishes, which is why the task is marked destructive in
the registry. ``/NoRestartUI`` suppresses the countdown dialog and
``/copylogs`` collects setup logs next to the session logs.
"""
from __future__ import annotations

import platform
import time
from pathlib import Path
from typing import List, Optional

from . import downloads, exec_utils, logging_ext
from .outcomes import TaskContext, TaskResult, TaskStatus

ASSISTANT_FILENAME = "Windows11InstallationAssistant.exe"


def current_build() -> Optional[int]:
    """!
    @brief Return the OS build number from ``platform.version()``.
    @returns e.g. ``22631`` for ``10.0.22631``, or ``None`` when unparsable.
    """

    parts = platform.version().split(".")
    if len(parts) < 3:
        return None
    try:
        return int(parts[2])
    except ValueError:
        return None


def assistant_command(installer: Path | str, log_directory: Path | str) -> List[str]:
    return [
        str(installer),
        "/QuietInstall",
        "/SkipEULA",
        "/auto",
        "upgrade",
        "/NoRestartUI",
        "/copylogs",
        str(log_directory),
    ]


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    options = context.settings.upgrade
    human_logger = logging_ext.get_human_logger()

    build = current_build()
    if build is not None and build >= options.target_build:
        return TaskResult(
            key="upgrade",
            status=TaskStatus.SKIPPED,
            summary=f"Build {build} is already at or above {options.target_build}",
            duration=time.monotonic() - started,
            details={"build": build, "target_build": options.target_build},
        )
    if build is None:
        human_logger.warning("Unable to determine the current Windows build; continuing.")

    try:
        installer = downloads.download_file(
            options.assistant_urls,
            context.work_directory / ASSISTANT_FILENAME,
            attempts=context.settings.download_attempts,
            dry_run=context.dry_run,
        )
    except downloads.DownloadError as exc:
        human_logger.error("%s", exc)
        return TaskResult(
            key="upgrade",
            status=TaskStatus.FAILED,
            summary=str(exc),
            duration=time.monotonic() - started,
            details={"failures": [list(item) for item in exc.failures]},
        )

    result = exec_utils.run_command(
        assistant_command(installer, context.log_directory),
        event="feature_upgrade",
        timeout=options.timeout,
        dry_run=context.dry_run,
        human_message="Launching the Windows Installation Assistant",
        extra={"build": build, "target_build": options.target_build},
    )

    if result.skipped:
        status, summary = TaskStatus.SKIPPED, "dry-run"
    elif result.ok:
        status, summary = TaskStatus.SUCCESS, "Feature upgrade staged; reboot to finish"
    else:
        status = TaskStatus.FAILED
        summary = "Installation Assistant timed out" if result.timed_out else (
            f"Installation Assistant exited with {result.returncode}"
        )

    return TaskResult(
        key="upgrade",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={"build": build, "target_build": options.target_build, "returncode": result.returncode},
        reboot_required=status == TaskStatus.SUCCESS,
    )


__all__ = ["assistant_command", "current_build", "run_task"]
