"""!
@brief Primary entry point for the Fleet Tune-up CLI.
@details Parses arguments, loads the site configuration, requests
administrative elevation, sets up logging and then either runs the requested
tasks or shows the interactive menu. Exit codes follow
:func:`dispatcher.compute_exit_code`; configuration and usage errors exit
with ``2``.
"""
from __future__ import annotations

import argparse
import ctypes
import logging
import os
import sys
from typing import Iterable, List, Mapping, Optional

from . import (
    config,
    dispatcher,
    elevation,
    exec_utils,
    logging_ext,
    tasks,
    ui,
    version,
)

EXIT_USAGE = 2


def enable_vt_mode_if_possible() -> None:
    """!
    @brief Attempt to enable ANSI/VT processing on Windows consoles.
    """

    if os.name != "nt":  # pragma: no cover - Windows behaviour only
        return

    try:
        from ctypes import wintypes

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    except (ImportError, AttributeError, OSError):  # pragma: no cover - non-Windows
        return

    for std_handle in (-11, -12):  # STD_OUTPUT_HANDLE, STD_ERROR_HANDLE
        handle = kernel32.GetStdHandle(std_handle)
        if not handle:
            continue
        mode = wintypes.DWORD()
        if kernel32.GetConsoleMode(handle, ctypes.byref(mode)):
            kernel32.SetConsoleMode(handle, mode.value | 0x0004)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet-tuneup",
        description="Windows workstation maintenance: updates, software baseline, cleanup and repair.",
    )
    metadata = version.build_info()
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"{metadata['version']} ({metadata['build']})",
    )
    parser.add_argument(
        "--task",
        metavar="KEY",
        action="append",
        default=[],
        help="Task to run; repeat or comma-separate for several (see --list).",
    )
    parser.add_argument("--all", action="store_true", help="Run every routine (non-destructive) task.")
    parser.add_argument("--list", action="store_true", help="List the available tasks and exit.")
    parser.add_argument("--config", metavar="FILE", help="JSON settings file.")
    parser.add_argument("--dry-run", action="store_true", help="Log commands without running them.")
    parser.add_argument("--yes", action="store_true", help="Do not ask before destructive tasks.")
    parser.add_argument("--logdir", metavar="DIR", help="Directory for human/JSONL logs and session reports.")
    parser.add_argument("--workdir", metavar="DIR", help="Directory for downloaded installers and scripts.")
    parser.add_argument("--timeout", metavar="SEC", type=int, help="Upper bound for every external command.")
    parser.add_argument("--power-plan", metavar="NAME", help="Power plan used during the session.")
    parser.add_argument("--no-power-plan", action="store_true", help="Leave the power plan unchanged.")
    parser.add_argument("--no-policy", action="store_true", help="Leave the PowerShell execution policy unchanged.")
    parser.add_argument("--no-elevate", action="store_true", help="Do not request administrative rights.")
    parser.add_argument("--stop-on-failure", action="store_true", help="Skip remaining tasks after a failure.")
    parser.add_argument("--quiet", action="store_true", help="Minimal console output (errors only).")
    parser.add_argument("--json", action="store_true", help="Mirror structured events to stdout.")
    return parser


def selected_task_keys(args: argparse.Namespace) -> List[str]:
    keys: List[str] = []
    for entry in getattr(args, "task", None) or []:
        keys.extend(part.strip() for part in str(entry).split(",") if part.strip())
    if getattr(args, "all", False):
        keys.append(tasks.ALL_KEYWORD)
    return keys


def print_task_list() -> None:
    width = max(len(key) for key in tasks.TASKS)
    for spec in tasks.TASKS.values():
        flags = []
        if spec.destructive:
            flags.append("destructive")
        if spec.reboot_hint:
            flags.append("may need reboot")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        print(f"{spec.key.ljust(width)}  {spec.title}{suffix}")


def _overrides_from_args(args: argparse.Namespace) -> Mapping[str, object]:
    return {
        "log_directory": args.logdir,
        "work_directory": args.workdir,
        "timeout": args.timeout,
        "session_power_plan": args.power_plan,
        "manage_power_plan": False if args.no_power_plan else None,
        "manage_execution_policy": False if args.no_policy else None,
        "stop_on_failure": True if args.stop_on_failure else None,
    }


def load_effective_settings(args: argparse.Namespace) -> config.Settings:
    """!
    @brief Load the configuration file and apply command-line overrides.
    @details Overrides are validated with the file values, so a bad
    ``--power-plan`` or ``--timeout`` is reported like a bad file entry.
    @throws config.ConfigError On unreadable files, unknown keys or invalid
    values.
    """

    settings = config.apply_overrides(config.load_settings(args.config), _overrides_from_args(args))
    return config.validate_settings(settings)


def _bootstrap_logging(
    args: argparse.Namespace, settings: config.Settings
) -> tuple[logging.Logger, logging.Logger]:
    human_logger, machine_logger = logging_ext.setup_logging(
        settings.log_path,
        json_to_stdout=bool(args.json),
    )
    if args.quiet or args.json:
        logging_ext.set_console_level(logging.ERROR)
    return human_logger, machine_logger


def main(argv: Optional[Iterable[str]] = None) -> int:
    """!
    @brief Entry point for the ``fleet-tuneup`` console script.
    @returns Process exit code integer.
    """

    parser = build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.list:
        print_task_list()
        return 0

    try:
        settings = load_effective_settings(args)
    except config.ConfigError as exc:
        print(f"fleet-tuneup: configuration error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    keys = selected_task_keys(args)
    try:
        tasks.resolve_tasks(keys)
    except tasks.UnknownTaskError as exc:
        parser.print_usage(sys.stderr)
        print(f"fleet-tuneup: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if not args.no_elevate and not args.dry_run:
        elevation.ensure_admin_and_relaunch_if_needed()
    enable_vt_mode_if_possible()

    human_logger, machine_logger = _bootstrap_logging(args, settings)
    exec_utils.set_global_timeout(settings.timeout)
    machine_logger.info(
        "startup",
        extra={
            "event": "startup",
            "tasks": keys,
            "dry_run": bool(args.dry_run),
            "admin": elevation.is_admin(),
            "settings": settings.to_dict(),
        },
    )

    def run(selected: List[str]) -> dispatcher.SessionReport:
        return dispatcher.run_session(selected, settings, dry_run=args.dry_run, force=args.yes)

    if not keys:
        app_state = {
            "args": args,
            "human_logger": human_logger,
            "settings": settings,
            "run_session": run,
        }
        result = ui.run_cli(app_state)
        return int(result) if result is not None else 0

    try:
        report = run(keys)
    except KeyboardInterrupt:
        human_logger.warning("Interrupted.")
        return dispatcher.EXIT_FAILURE
    return report.exit_code


__all__ = ["build_arg_parser", "load_effective_settings", "main", "selected_task_keys"]
