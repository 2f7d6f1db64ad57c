"""!
@brief Confirmation prompt for destructive tasks.
@details Shared by the CLI and the interactive menu so both ask the same
question before a task that reboots or reinstalls the operating system.
"""

from __future__ import annotations

import sys
from typing import Callable

CONFIRM_TEMPLATE = "{title} may restart this machine without further warning. Continue? (y/N)"


def request_confirmation(
    title: str,
    *,
    dry_run: bool,
    force: bool,
    input_func: Callable[[str], str] | None = None,
    interactive: bool | None = None,
) -> bool:
    """!
    @brief Ask the operator to confirm ``title``.
    @details Dry-runs and ``--yes`` skip the prompt. Unlike routine tasks a
    destructive one is declined when nobody can answer, so unattended runs
    need ``--yes``. Only an explicit ``y``/``yes`` proceeds.
    @returns ``True`` when the task should run.
    """

    if dry_run or force:
        return True

    if interactive is None:
        stdin = getattr(sys, "stdin", None)
        isatty = getattr(stdin, "isatty", None)
        interactive = bool(isatty and isatty())

    if not interactive:
        return False

    if input_func is None:
        input_func = input

    try:
        response = input_func(f"{CONFIRM_TEMPLATE.format(title=title)} ")
    except EOFError:
        return False

    return response.strip().lower() in ("y", "yes")


__all__ = ["CONFIRM_TEMPLATE", "request_confirmation"]
