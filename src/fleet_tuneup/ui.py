"""!
@brief Plain console menu.
@details Lists every registered task followed by "Run all", "Settings" and
"Exit". A selection is a single number or a comma separated list such as
``1,3,5``; the chosen tasks run as one session in the order typed.
"""
from __future__ import annotations

from typing import Callable, List, Mapping, MutableMapping, Optional

from . import tasks

SessionRunner = Callable[[List[str]], object]


def build_menu() -> List[tuple[str, str]]:
    """!
    @brief Return ``(action, label)`` pairs in display order.
    @details Task entries use the task key as action; the trailing entries use
    the pseudo actions ``all``, ``settings`` and ``exit``.
    """

    menu = [(spec.key, spec.title + (" (restarts the machine)" if spec.destructive else ""))
            for spec in tasks.TASKS.values()]
    menu.append((tasks.ALL_KEYWORD, "Run all routine tasks"))
    menu.append(("settings", "Show settings"))
    menu.append(("exit", "Exit"))
    return menu


def parse_selection(raw: str, menu_size: int) -> List[int]:
    """!
    @brief Parse ``"1,3,5"`` into zero-based menu indices.
    @throws ValueError For non-numeric or out-of-range entries.
    """

    indices: List[int] = []
    for part in raw.split(","):
        item = part.strip()
        if not item:
            continue
        if not item.isdigit():
            raise ValueError(f"{item!r} is not a number")
        index = int(item) - 1
        if index < 0 or index >= menu_size:
            raise ValueError(f"{item} is not a menu entry")
        if index not in indices:
            indices.append(index)
    if not indices:
        raise ValueError("no selection")
    return indices


def _print_menu(menu: List[tuple[str, str]]) -> None:
    print("================= Fleet Tune-up =================")
    for number, (_action, label) in enumerate(menu, start=1):
        print(f"{number}. {label}")
    print("-------------------------------------------------")


def _print_settings(settings: object) -> None:
    print("Current settings:")
    if settings is None:
        print("  (defaults)")
        return
    print(f"  Log directory: {getattr(settings, 'log_path', '(default)')}")
    print(f"  Work directory: {getattr(settings, 'work_path', '(default)')}")
    print(f"  Session power plan: {getattr(settings, 'session_power_plan', None) or '(unchanged)'}")
    print(f"  Execution policy: {getattr(settings, 'execution_policy', 'Bypass')}")
    packages = getattr(settings, "baseline_packages", [])
    print(f"  Baseline packages: {', '.join(spec.id for spec in packages) or '(none)'}")


def run_cli(app_state: Mapping[str, object]) -> Optional[int]:
    """!
    @brief Show the menu until the operator exits.
    @details ``app_state`` provides ``args``, ``human_logger``, ``settings``,
    ``input`` and ``run_session``, a callable taking a list of task keys and
    returning an object with an ``exit_code`` attribute.
    @returns Exit code of the last session run from the menu, or ``None``.
    """

    args = app_state.get("args")
    human_logger = app_state.get("human_logger")
    input_func: Callable[[str], str] = app_state.get("input", input)  # type: ignore[assignment]
    runner: SessionRunner = app_state["run_session"]  # type: ignore[assignment]

    if getattr(args, "quiet", False) or getattr(args, "json", False):
        if human_logger:
            human_logger.warning(
                "Interactive menu suppressed because quiet/json output mode was requested."
            )
        return None

    menu = build_menu()
    context: MutableMapping[str, object] = {"running": True, "exit_code": None}

    while context["running"]:
        _print_menu(menu)
        try:
            raw = input_func(f"Select option(s) (1-{len(menu)}, e.g. 1,3): ")
        except EOFError:
            break
        try:
            indices = parse_selection(raw, len(menu))
        except ValueError as exc:
            print(f"Invalid selection: {exc}.")
            continue

        actions = [menu[index][0] for index in indices]
        if "exit" in actions:
            context["running"] = False
            print("Exiting Fleet Tune-up.")
            continue
        if "settings" in actions:
            _print_settings(app_state.get("settings"))
            actions = [action for action in actions if action != "settings"]
        if not actions:
            continue

        try:
            report = runner(actions)
        except tasks.UnknownTaskError as exc:
            print(f"Error: {exc}")
            continue
        context["exit_code"] = getattr(report, "exit_code", None)
        print(f"Session finished with exit code {context['exit_code']}.")

    return context["exit_code"]  # type: ignore[return-value]


__all__ = ["build_menu", "parse_selection", "run_cli"]
