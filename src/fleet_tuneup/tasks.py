"""!
@brief Registry of maintenance tasks.
@details The registry order is the menu order and the order ``all`` runs
in. Destructive tasks (a feature upgrade reboots the machine) are excluded
from ``all`` and prompt for confirmation before they run.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from . import cleanup, machine_prep, office_update, packages, repair, unifi, upgrade, windows_update
from .outcomes import TaskContext, TaskResult

ALL_KEYWORD = "all"


class UnknownTaskError(ValueError):
    """!
    @brief Raised for task keys that are not in :data:`TASKS`.
    """

    def __init__(self, unknown: Iterable[str]) -> None:
        self.unknown = list(unknown)
        super().__init__(
            f"Unknown task(s): {', '.join(self.unknown)}. "
            f"Valid tasks: {', '.join(TASKS)}, {ALL_KEYWORD}"
        )


@dataclass(frozen=True)
class TaskSpec:
    key: str
    title: str
    runner: Callable[[TaskContext], TaskResult]
    destructive: bool = False
    requires_admin: bool = True
    reboot_hint: bool = False


TASKS: Dict[str, TaskSpec] = {
    spec.key: spec
    for spec in (
        TaskSpec("wu", "Windows Update", windows_update.run_task, reboot_hint=True),
        TaskSpec("wget", "Install or upgrade baseline software", packages.run_task),
        TaskSpec("machineprep", "New machine preparation", machine_prep.run_task, reboot_hint=True),
        TaskSpec("mso_update", "Update Microsoft Office", office_update.run_task),
        TaskSpec("cleanup", "Clean temporary files", cleanup.run_task),
        TaskSpec("unifi", "Install UniFi Network Server", unifi.run_task),
        TaskSpec(
            "upgrade",
            "Windows feature upgrade",
            upgrade.run_task,
            destructive=True,
            reboot_hint=True,
        ),
        TaskSpec("repair", "Repair system files (SFC/DISM)", repair.run_task, reboot_hint=True),
    )
}
"""!
@brief Ordered task registry keyed by task key.
"""


def get_task(key: str) -> Optional[TaskSpec]:
    return TASKS.get(key.strip().lower())


def resolve_tasks(keys: Iterable[str]) -> List[TaskSpec]:
    """!
    @brief Validate ``keys`` and return the matching specs.
    @details Order follows the caller; duplicates are dropped. ``all``
    expands in place to every non-destructive task.
    @throws UnknownTaskError Listing every unknown key.
    """

    resolved: List[TaskSpec] = []
    unknown: List[str] = []
    for raw in keys:
        key = str(raw).strip().lower()
        if not key:
            continue
        if key == ALL_KEYWORD:
            expanded = [spec for spec in TASKS.values() if not spec.destructive]
        elif key in TASKS:
            expanded = [TASKS[key]]
        else:
            unknown.append(str(raw))
            continue
        for spec in expanded:
            if spec not in resolved:
                resolved.append(spec)
    if unknown:
        raise UnknownTaskError(unknown)
    return resolved


__all__ = ["ALL_KEYWORD", "TASKS", "TaskSpec", "UnknownTaskError", "get_task", "resolve_tasks"]
