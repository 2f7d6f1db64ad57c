"""!
@brief Maintenance session orchestration.
@details A session prepares the log and work directories, lowers the
PowerShell execution policy, switches to the session power plan and runs the
selected tasks one after another. The overrides are context managers so the
operator's policy and power plan come back even when a task raises or the
session is interrupted. The finished session is written to the log
directory as ``session-<timestamp>-<session id>.json``; the id keeps
reports apart when the menu starts several sessions within one second.
"""
from __future__ import annotations

import contextlib
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from . import confirm, exec_utils, execution_policy, fs_tools, logging_ext, power, tasks
from .config import Settings
from .outcomes import TaskContext, TaskResult, TaskStatus

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_WARNINGS = 2
EXIT_REBOOT_REQUIRED = 3010

ConfirmFunc = Callable[[tasks.TaskSpec], bool]


@dataclass
class SessionReport:
    """!
    @brief Outcome of one maintenance session.
    """

    run_id: str
    started: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    finished: Optional[str] = None
    dry_run: bool = False
    results: List[TaskResult] = field(default_factory=list)
    power_plan: Dict[str, Any] = field(default_factory=dict)
    execution_policy: Dict[str, Any] = field(default_factory=dict)
    interrupted: bool = False
    reboot_scheduled: bool = False
    exit_code: int = EXIT_OK
    report_path: Optional[str] = None

    @property
    def reboot_required(self) -> bool:
        return any(result.reboot_required for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "session_id": self.session_id,
            "started": self.started,
            "finished": self.finished,
            "dry_run": self.dry_run,
            "results": [result.to_dict() for result in self.results],
            "power_plan": self.power_plan,
            "execution_policy": self.execution_policy,
            "interrupted": self.interrupted,
            "reboot_required": self.reboot_required,
            "reboot_scheduled": self.reboot_scheduled,
            "exit_code": self.exit_code,
        }


def compute_exit_code(results: Iterable[TaskResult], *, interrupted: bool = False) -> int:
    """!
    @brief Derive the process exit code from task results.
    @details Failures win over a pending reboot, which wins over warnings.
    ``3010`` follows the Windows installer convention for "success, reboot
    required".
    """

    collected = list(results)
    if interrupted or any(result.status == TaskStatus.FAILED for result in collected):
        return EXIT_FAILURE
    if any(result.reboot_required for result in collected):
        return EXIT_REBOOT_REQUIRED
    if any(result.status == TaskStatus.WARNING for result in collected):
        return EXIT_WARNINGS
    return EXIT_OK


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def write_report(report: SessionReport, directory: Path) -> Path:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = Path(directory) / f"session-{stamp}-{report.session_id[:12]}.json"
    path.write_text(json.dumps(report.to_dict(), indent=2, default=str), encoding="utf-8")
    return path


def schedule_reboot(delay: int, *, dry_run: bool = False) -> bool:
    result = exec_utils.run_command(
        ["shutdown.exe", "/r", "/t", str(max(0, int(delay))), "/c", "Fleet Tune-up maintenance"],
        event="reboot_schedule",
        timeout=60,
        dry_run=dry_run,
        human_message=f"Scheduling a restart in {delay} second(s)",
    )
    return result.skipped or result.returncode == 0


def _default_confirm(dry_run: bool, force: bool) -> ConfirmFunc:
    def _confirm(spec: tasks.TaskSpec) -> bool:
        return confirm.request_confirmation(spec.title, dry_run=dry_run, force=force)

    return _confirm


def run_task(spec: tasks.TaskSpec, context: TaskContext) -> TaskResult:
    """!
    @brief Run one task, converting a raised exception into a failed result.
    """

    human_logger = context.human_logger
    machine_logger = context.machine_logger
    machine_logger.info(
        "task_start",
        extra={"event": "task_start", "task": spec.key, "dry_run": context.dry_run},
    )
    human_logger.info("==> %s", spec.title)
    started = time.monotonic()
    try:
        result = spec.runner(context)
    except Exception as exc:  # noqa: BLE001 - one task must not end the session
        human_logger.exception("Task %s raised an unexpected error", spec.key)
        result = TaskResult(
            key=spec.key,
            status=TaskStatus.FAILED,
            summary=f"{type(exc).__name__}: {exc}",
            duration=time.monotonic() - started,
        )

    log = human_logger.error if result.status == TaskStatus.FAILED else human_logger.info
    log("<== %s: %s (%s)", spec.key, result.status.value, result.summary)
    machine_logger.info(
        "task_result",
        extra={"event": "task_result", "task": spec.key, "result": result.to_dict()},
    )
    return result


def _policy_block(settings: Settings, dry_run: bool):
    if not settings.manage_execution_policy:
        return contextlib.nullcontext(None)
    return execution_policy.policy_override(
        settings.execution_policy,
        settings.execution_policy_scope,
        dry_run=dry_run,
    )


def _power_block(settings: Settings, dry_run: bool):
    if not settings.manage_power_plan or not settings.session_power_plan:
        return contextlib.nullcontext(None)
    return power.power_plan_override(settings.session_power_plan, dry_run=dry_run)


def run_session(
    task_keys: Iterable[str],
    settings: Settings,
    *,
    dry_run: bool = False,
    force: bool = False,
    confirm_func: Optional[ConfirmFunc] = None,
) -> SessionReport:
    """!
    @brief Run the tasks named by ``task_keys`` inside the session overrides.
    @details Destructive tasks ask ``confirm_func`` first; a refusal records
    the task as skipped. With ``stop_on_failure`` the remaining tasks are
    recorded as skipped after the first failure.
    @throws tasks.UnknownTaskError Before anything runs, for unknown keys.
    """

    specs = tasks.resolve_tasks(task_keys)
    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    metadata = logging_ext.get_run_metadata() or {}
    report = SessionReport(
        run_id=str(metadata.get("run_id") or uuid.uuid4().hex),
        started=_now(),
        dry_run=dry_run,
    )
    confirm_func = confirm_func or _default_confirm(dry_run, force)

    log_directory, _work_directory = fs_tools.ensure_directories(
        [settings.log_path, settings.work_path]
    )
    context = TaskContext(settings=settings, dry_run=dry_run, force=force)

    with contextlib.ExitStack() as stack:
        policy_state = stack.enter_context(_policy_block(settings, dry_run))
        power_state = stack.enter_context(_power_block(settings, dry_run))
        context.shared["power_plan"] = power_state
        context.shared["execution_policy"] = policy_state
        try:
            stop_reason = None
            for spec in specs:
                if stop_reason is not None:
                    report.results.append(TaskResult(spec.key, TaskStatus.SKIPPED, stop_reason))
                    continue
                if spec.destructive and not confirm_func(spec):
                    human_logger.info("Skipping %s: not confirmed", spec.key)
                    report.results.append(
                        TaskResult(spec.key, TaskStatus.SKIPPED, "declined by operator")
                    )
                    continue
                result = run_task(spec, context)
                report.results.append(result)
                if result.status == TaskStatus.FAILED and settings.stop_on_failure:
                    stop_reason = f"not run after {spec.key} failed"
        except KeyboardInterrupt:
            report.interrupted = True
            human_logger.warning("Session interrupted; restoring system settings.")

    if policy_state is not None:
        report.execution_policy = {
            "scope": policy_state.scope,
            "previous": policy_state.previous,
            "applied": policy_state.applied,
            "restored": policy_state.restored,
        }
    if power_state is not None:
        report.power_plan = {
            "previous": power_state.previous.guid if power_state.previous else None,
            "applied": power_state.applied,
            "restored": power_state.restored,
            "kept": power_state.keep,
        }

    report.exit_code = compute_exit_code(report.results, interrupted=report.interrupted)
    if settings.reboot_after and report.reboot_required and not report.interrupted:
        report.reboot_scheduled = schedule_reboot(settings.reboot_delay, dry_run=dry_run)

    report.finished = _now()
    report.report_path = str(write_report(report, log_directory))
    machine_logger.info(
        "session_complete",
        extra={
            "event": "session_complete",
            "exit_code": report.exit_code,
            "report": report.report_path,
            "tasks": [result.key for result in report.results],
        },
    )
    human_logger.info(
        "Session finished with exit code %s; report written to %s",
        report.exit_code,
        report.report_path,
    )
    return report


__all__ = [
    "EXIT_FAILURE",
    "EXIT_OK",
    "EXIT_REBOOT_REQUIRED",
    "EXIT_WARNINGS",
    "SessionReport",
    "compute_exit_code",
    "run_session",
    "run_task",
    "schedule_reboot",
    "write_report",
]
