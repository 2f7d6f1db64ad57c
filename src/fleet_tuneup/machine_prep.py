"""!
@brief New machine preparation.
@details Runs the steps a technician performs on a freshly imaged
workstation: power timeouts, hibernation off, the permanent power plan,
baseline software, an Office update request and Windows Update. Every step
runs even when an earlier one failed; the worst step status becomes the
task status.
"""
from __future__ import annotations

import time
from typing import Callable, List, Tuple

from . import office_update, packages, power, windows_update
from .outcomes import TaskContext, TaskResult, TaskStatus, worst_status


def _power_step(context: TaskContext) -> TaskResult:
    settings = context.settings
    problems: List[str] = []
    if settings.power_timeouts and not power.apply_timeouts(
        settings.power_timeouts, dry_run=context.dry_run
    ):
        problems.append("timeouts")
    if settings.disable_hibernation and not power.disable_hibernation(dry_run=context.dry_run):
        problems.append("hibernation")
    if settings.permanent_power_plan:
        activated = power.activate_plan(settings.permanent_power_plan, dry_run=context.dry_run)
        if activated is None:
            problems.append("power plan")
        else:
            # The session override must not switch back to the previous plan.
            state = context.shared.get("power_plan")
            if state is not None:
                state.keep = True
    if problems:
        return TaskResult("power", TaskStatus.WARNING, "failed: " + ", ".join(problems))
    return TaskResult("power", TaskStatus.SUCCESS, "power settings applied")


def steps() -> Tuple[Tuple[str, Callable[[TaskContext], TaskResult]], ...]:
    return (
        ("power", _power_step),
        ("software", packages.run_task),
        ("office", office_update.run_task),
        ("updates", windows_update.run_task),
    )


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    human_logger = context.human_logger
    results: List[TaskResult] = []
    plan = steps()
    for name, step in plan:
        human_logger.info("Machine preparation: %s", name)
        results.append(step(context))

    status = worst_status(result.status for result in results)
    summary = "; ".join(f"{name}: {result.status.value}" for (name, _), result in zip(plan, results))

    return TaskResult(
        key="machineprep",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={"steps": [result.to_dict() for result in results]},
        reboot_required=any(result.reboot_required for result in results),
    )


__all__ = ["run_task", "steps"]
