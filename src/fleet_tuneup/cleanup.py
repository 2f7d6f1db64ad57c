"""!
@brief Stale temporary file cleanup.
@details Removes files older than a configurable age from the usual
temporary locations and reports the space freed. Files held open by running
programs raise ``OSError`` on Windows; they are counted and skipped so one
locked file never aborts the sweep. Target roots themselves are kept.
"""
from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from . import exec_utils, fs_tools, logging_ext
from .outcomes import TaskContext, TaskResult, TaskStatus

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class CleanupStats:
    root: str
    files_removed: int = 0
    bytes_freed: int = 0
    errors: int = 0
    dirs_removed: int = 0
    missing: bool = False

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "files_removed": self.files_removed,
            "bytes_freed": self.bytes_freed,
            "errors": self.errors,
            "dirs_removed": self.dirs_removed,
            "missing": self.missing,
        }


@dataclass
class CleanupReport:
    targets: List[CleanupStats] = field(default_factory=list)
    recycle_bin_emptied: Optional[bool] = None

    @property
    def files_removed(self) -> int:
        return sum(item.files_removed for item in self.targets)

    @property
    def bytes_freed(self) -> int:
        return sum(item.bytes_freed for item in self.targets)

    @property
    def errors(self) -> int:
        return sum(item.errors for item in self.targets)


def format_bytes(size: int) -> str:
    """!
    @brief Render ``size`` with a binary unit, e.g. ``1.5 MiB``.
    """

    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(value) < 1024 or unit == "TiB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"  # pragma: no cover - loop always returns


def windows_update_running() -> bool:
    result = exec_utils.run_command(
        ["sc.exe", "query", "wuauserv"],
        event="wuauserv_query",
        timeout=30,
    )
    return result.returncode == 0 and "RUNNING" in result.stdout.upper()


def default_targets(*, include_update_cache: bool = False) -> List[Path]:
    """!
    @brief Temporary locations swept by default.
    @details The Windows Update download cache is only included on request and
    only while the update service is stopped.
    """

    system_root = Path(os.environ.get("SystemRoot", r"C:\Windows"))
    targets: List[Path] = []
    user_temp = os.environ.get("TEMP") or os.environ.get("TMP")
    if user_temp:
        targets.append(Path(user_temp))
    targets.append(system_root / "Temp")
    local_app_data = os.environ.get("LOCALAPPDATA")
    if local_app_data:
        targets.append(Path(local_app_data) / "CrashDumps")
    if include_update_cache:
        if windows_update_running():
            logging_ext.get_human_logger().info(
                "Windows Update service is running; keeping SoftwareDistribution\\Download."
            )
        else:
            targets.append(system_root / "SoftwareDistribution" / "Download")

    unique: List[Path] = []
    for target in targets:
        if target not in unique:
            unique.append(target)
    return unique


def collect_candidates(
    root: Path,
    *,
    min_age_days: float,
    now: Optional[float] = None,
) -> Iterator[Path]:
    """!
    @brief Yield files under ``root`` last modified more than ``min_age_days`` ago.
    @details Unreadable directories are skipped silently; symlinks are not
    followed.
    """

    cutoff = (time.time() if now is None else now) - min_age_days * SECONDS_PER_DAY
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for name in filenames:
            candidate = Path(dirpath) / name
            try:
                if candidate.lstat().st_mtime < cutoff:
                    yield candidate
            except OSError:
                continue


def _prune_empty_dirs(root: Path, stats: CleanupStats) -> None:
    for dirpath, _dirnames, _filenames in os.walk(root, topdown=False):
        current = Path(dirpath)
        if current == root:
            continue
        try:
            if not any(current.iterdir()):
                current.rmdir()
                stats.dirs_removed += 1
        except OSError:
            continue


def clean_directory(
    root: Path | str,
    *,
    min_age_days: float = 2,
    dry_run: bool = False,
    now: Optional[float] = None,
) -> CleanupStats:
    """!
    @brief Delete stale files below ``root`` and prune emptied subdirectories.
    @details ``root`` itself is never removed. In dry-run mode the counts
    describe what would be removed.
    """

    target = Path(root)
    stats = CleanupStats(root=str(target))
    if not target.is_dir():
        stats.missing = True
        return stats

    human_logger = logging_ext.get_human_logger()
    for candidate in collect_candidates(target, min_age_days=min_age_days, now=now):
        try:
            size = candidate.lstat().st_size
            if not dry_run:
                fs_tools.remove_path(candidate)
        except OSError as exc:
            stats.errors += 1
            human_logger.debug("Skipping %s: %s", candidate, exc)
            continue
        stats.files_removed += 1
        stats.bytes_freed += size

    if not dry_run:
        _prune_empty_dirs(target, stats)

    logging_ext.get_machine_logger().info(
        "cleanup_directory",
        extra={"event": "cleanup_directory", "dry_run": dry_run, **stats.to_dict()},
    )
    return stats


def empty_recycle_bin(*, dry_run: bool = False) -> bool:
    result = exec_utils.run_powershell(
        "Clear-RecycleBin -Force -ErrorAction SilentlyContinue",
        event="recycle_bin_clear",
        timeout=10 * 60,
        dry_run=dry_run,
        human_message="Emptying the recycle bin",
    )
    return result.skipped or result.returncode == 0


def run_cleanup(
    targets: Iterable[Path | str],
    *,
    min_age_days: float = 2,
    dry_run: bool = False,
    recycle_bin: bool = False,
) -> CleanupReport:
    human_logger = logging_ext.get_human_logger()
    report = CleanupReport()
    for target in targets:
        stats = clean_directory(target, min_age_days=min_age_days, dry_run=dry_run)
        report.targets.append(stats)
        if stats.missing:
            human_logger.debug("Cleanup target %s does not exist", target)
            continue
        human_logger.info(
            "%s: %s %d file(s), %s%s",
            target,
            "would remove" if dry_run else "removed",
            stats.files_removed,
            format_bytes(stats.bytes_freed),
            f", {stats.errors} in use" if stats.errors else "",
        )
    if recycle_bin:
        report.recycle_bin_emptied = empty_recycle_bin(dry_run=dry_run)
    return report


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    options = context.settings.cleanup
    targets = default_targets(include_update_cache=options.include_update_cache)
    extra_paths = options.extra_paths
    if isinstance(extra_paths, str):
        extra_paths = [extra_paths]
    rejected = [path for path in extra_paths if not fs_tools.is_absolute_path(path)]
    for path in rejected:
        logging_ext.get_human_logger().warning("Ignoring cleanup path %r: not an absolute path", path)
    targets.extend(
        Path(os.path.expandvars(path.strip())) for path in extra_paths if path not in rejected
    )
    report = run_cleanup(
        targets,
        min_age_days=options.min_age_days,
        dry_run=context.dry_run,
        recycle_bin=options.empty_recycle_bin,
    )

    status = TaskStatus.SUCCESS
    if report.recycle_bin_emptied is False or rejected:
        status = TaskStatus.WARNING
    summary = f"{report.files_removed} file(s), {format_bytes(report.bytes_freed)} freed"
    if context.dry_run:
        summary = f"would free {format_bytes(report.bytes_freed)} in {report.files_removed} file(s)"
    if report.errors:
        summary += f"; {report.errors} file(s) in use"
    if rejected:
        summary += f"; {len(rejected)} invalid path(s) ignored"

    return TaskResult(
        key="cleanup",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={
            "targets": [item.to_dict() for item in report.targets],
            "recycle_bin_emptied": report.recycle_bin_emptied,
            "rejected_paths": rejected,
        },
    )


__all__ = [
    "CleanupReport",
    "CleanupStats",
    "clean_directory",
    "collect_candidates",
    "default_targets",
    "empty_recycle_bin",
    "format_bytes",
    "run_cleanup",
    "run_task",
]
