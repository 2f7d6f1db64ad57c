"""!
@brief Shared task result types.
@details Every maintenance task receives a :class:`TaskContext` and returns a
:class:`TaskResult`. The dispatcher aggregates the results into the session
report and derives the process exit code from them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, MutableMapping

from . import logging_ext

if TYPE_CHECKING:  # pragma: no cover - import cycle through config.packages
    from .config import Settings


class TaskStatus(str, Enum):
    """!
    @brief Outcome classification for a task or a task step.
    @details Ordering by severity is ``skipped < success < warning < failed``
    and is exposed through :attr:`severity`.
    """

    SKIPPED = "skipped"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    TaskStatus.SKIPPED: 0,
    TaskStatus.SUCCESS: 1,
    TaskStatus.WARNING: 2,
    TaskStatus.FAILED: 3,
}


def worst_status(statuses: Iterable[TaskStatus]) -> TaskStatus:
    """!
    @brief Return the most severe status, ``SKIPPED`` for an empty iterable.
    """

    worst = TaskStatus.SKIPPED
    for status in statuses:
        if status.severity > worst.severity:
            worst = status
    return worst


@dataclass
class TaskResult:
    key: str
    status: TaskStatus
    summary: str
    duration: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)
    reboot_required: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "status": self.status.value,
            "summary": self.summary,
            "duration": round(self.duration, 3),
            "details": self.details,
            "reboot_required": self.reboot_required,
        }


@dataclass
class TaskContext:
    """!
    @brief Runtime inputs handed to every task runner.
    """

    settings: Settings
    dry_run: bool = False
    force: bool = False
    confirm: Callable[[str], bool] | None = None
    human_logger: logging.Logger = field(default_factory=logging_ext.get_human_logger)
    machine_logger: logging.Logger = field(default_factory=logging_ext.get_machine_logger)
    shared: MutableMapping[str, Any] = field(default_factory=dict)

    @property
    def log_directory(self) -> Path:
        return self.settings.log_path

    @property
    def work_directory(self) -> Path:
        return self.settings.work_path


__all__ = ["TaskContext", "TaskResult", "TaskStatus", "worst_status"]
