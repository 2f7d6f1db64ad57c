"""!
@brief Filesystem utilities.
@details Resolves the default log and work directories, bootstraps them at
session start, and removes files or directory trees while clearing read-only
attributes that Windows installers and caches routinely leave behind.
"""
from __future__ import annotations

import os
import shutil
import stat
import sys
import tempfile
from pathlib import Path, PureWindowsPath
from typing import Iterable, List

from . import logging_ext

APP_DIRECTORY_NAME = "FleetTuneup"


def _program_data_root() -> Path:
    """!
    @brief Return the machine-wide data root for the current platform.
    """

    if os.name == "nt":
        return Path(os.environ.get("ProgramData", r"C:\ProgramData")) / APP_DIRECTORY_NAME
    return Path(tempfile.gettempdir()) / APP_DIRECTORY_NAME.lower()


def get_default_log_directory() -> Path:
    """!
    @brief Location of the human and JSONL logs when ``--logdir`` is absent.
    """

    return _program_data_root() / "Logs"


def get_default_work_directory() -> Path:
    """!
    @brief Location used for downloaded installers and child scripts.
    """

    return _program_data_root() / "Work"


def get_default_config_path() -> Path:
    return _program_data_root() / "config.json"


def is_absolute_path(text: str) -> bool:
    """!
    @brief True when ``text`` names an absolute path after variable expansion.
    @details Drive-qualified Windows paths count as absolute on every host so
    site configuration validates the same way on build machines.
    """

    if not isinstance(text, str) or not text.strip():
        return False
    expanded = os.path.expandvars(text.strip())
    return Path(expanded).is_absolute() or PureWindowsPath(expanded).is_absolute()


def ensure_directories(paths: Iterable[Path | str]) -> List[Path]:
    """!
    @brief Create each directory in ``paths`` if it does not already exist.
    @returns Resolved list of directories, in input order.
    @throws OSError When a directory cannot be created.
    """

    machine_logger = logging_ext.get_machine_logger()
    created: List[Path] = []
    for raw in paths:
        target = Path(raw).expanduser()
        existed = target.is_dir()
        target.mkdir(parents=True, exist_ok=True)
        if not existed:
            machine_logger.info(
                "directory_created",
                extra={"event": "directory_created", "path": str(target)},
            )
        created.append(target)
    return created


def _clear_readonly_and_retry(function, path: str, exc: BaseException) -> None:
    """!
    @brief ``rmtree`` error callback clearing read-only attributes once.
    """

    if isinstance(exc, PermissionError):
        os.chmod(path, stat.S_IWRITE)
        function(path)
    else:
        raise exc


def remove_path(target: Path) -> None:
    """!
    @brief Delete a file or directory tree, clearing read-only attributes.
    @throws OSError When the path is locked or otherwise cannot be removed.
    """

    if target.is_dir() and not target.is_symlink():
        if sys.version_info >= (3, 12):
            shutil.rmtree(target, onexc=_clear_readonly_and_retry)
        else:  # pragma: no cover - older interpreters
            shutil.rmtree(
                target,
                onerror=lambda function, path, exc_info: _clear_readonly_and_retry(
                    function, path, exc_info[1]
                ),
            )
        return
    try:
        target.unlink()
    except PermissionError:
        os.chmod(target, stat.S_IWRITE)
        target.unlink()


__all__ = [
    "APP_DIRECTORY_NAME",
    "ensure_directories",
    "get_default_config_path",
    "get_default_log_directory",
    "get_default_work_directory",
    "is_absolute_path",
    "remove_path",
]
