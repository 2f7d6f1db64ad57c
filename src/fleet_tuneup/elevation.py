"""!
@brief Elevation helpers.
@details Detects whether the current process holds administrative rights and
requests a UAC relaunch when it does not. Most maintenance tasks (power plans,
SFC/DISM, Windows Update, machine-wide installs) fail without elevation, so
the CLI requests it up front instead of failing task by task.
"""
from __future__ import annotations

import ctypes
import os
import subprocess
import sys
from typing import Sequence

from . import logging_ext


def is_admin() -> bool:
    """!
    @brief Determine whether the current process token has administrative rights.
    @details Uses ``IsUserAnAdmin`` on Windows and ``geteuid() == 0`` on POSIX
    hosts so dry-runs on build agents report a meaningful value.
    """

    if os.name == "nt":
        try:
            shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
            return bool(shell32.IsUserAnAdmin())
        except Exception:
            return False

    geteuid = getattr(os, "geteuid", None)
    if callable(geteuid):
        try:
            return bool(geteuid() == 0)
        except Exception:
            return False
    return False


def relaunch_as_admin(argv: Sequence[str] | None = None) -> bool:
    """!
    @brief Relaunch the current interpreter with administrative rights.
    @returns ``True`` when the relaunch request was issued successfully.
    """

    try:
        shell32 = ctypes.windll.shell32  # type: ignore[attr-defined]
    except Exception:
        return False

    arguments = list(argv) if argv is not None else list(sys.argv[1:])
    params = subprocess.list2cmdline(arguments)
    result = shell32.ShellExecuteW(None, "runas", sys.executable, params, None, 1)
    return int(result) > 32


def _relaunch_arguments(argv: Sequence[str]) -> list[str]:
    """!
    @brief Compute the argument list handed to the elevated interpreter.
    @details Frozen executables receive the user arguments only. Interpreter
    launches run the package with ``-m`` because console-script shims are not
    Python files the interpreter could execute.
    """

    arguments = [str(part) for part in list(argv)[1:]]
    if getattr(sys, "frozen", False):
        return arguments
    return ["-m", "fleet_tuneup", *arguments]


def ensure_admin_and_relaunch_if_needed(argv: Sequence[str] | None = None) -> None:
    """!
    @brief Request elevation if the current process lacks administrative rights.
    @details Returns immediately on non-Windows hosts or when already elevated.
    On success the current process exits so only the elevated copy continues.
    @throws SystemExit When the elevation request is refused.
    """

    if os.name != "nt" or is_admin():
        return

    human_logger = logging_ext.get_human_logger()
    human_logger.info("Administrative rights required; requesting elevation.")
    if not relaunch_as_admin(_relaunch_arguments(argv if argv is not None else sys.argv)):
        raise SystemExit("Failed to request elevation via ShellExecuteW.")
    sys.exit(0)


__all__ = ["ensure_admin_and_relaunch_if_needed", "is_admin", "relaunch_as_admin"]
