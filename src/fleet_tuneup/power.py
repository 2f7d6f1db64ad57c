"""!
@brief Power plan bookkeeping through ``powercfg.exe``.
@details Long maintenance runs (Windows Update, DISM) must not be interrupted
by sleep, so sessions switch to a high performance scheme and restore the
operator's scheme afterwards. Schemes that are hidden on a given SKU (High
performance on Modern Standby laptops, Ultimate performance outside
Workstation editions) are materialised with ``powercfg /duplicatescheme``,
which creates a copy under a new GUID.
"""
from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Mapping, Optional

from . import exec_utils, logging_ext

POWERCFG = "powercfg.exe"
_POWERCFG_TIMEOUT = 60

BALANCED = "381b4222-f694-41f0-9685-ff5bb260df2e"
HIGH_PERFORMANCE = "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c"
POWER_SAVER = "a1841308-3541-4fab-bc81-f71556f20b4a"
ULTIMATE_PERFORMANCE = "e9a42b02-d5df-448d-aa00-03f14749eb61"

SCHEME_NAMES: Mapping[str, str] = {
    BALANCED: "Balanced",
    HIGH_PERFORMANCE: "High performance",
    POWER_SAVER: "Power saver",
    ULTIMATE_PERFORMANCE: "Ultimate Performance",
}

PLAN_ALIASES: Mapping[str, str] = {
    "balanced": BALANCED,
    "high": HIGH_PERFORMANCE,
    "high_performance": HIGH_PERFORMANCE,
    "high-performance": HIGH_PERFORMANCE,
    "power_saver": POWER_SAVER,
    "power-saver": POWER_SAVER,
    "ultimate": ULTIMATE_PERFORMANCE,
    "ultimate_performance": ULTIMATE_PERFORMANCE,
}

_GUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_GUID_RE = re.compile(rf"^{_GUID_PATTERN}$")
_SCHEME_LINE_RE = re.compile(
    rf"(?P<guid>{_GUID_PATTERN})\s*(?:\((?P<name>[^)]*)\))?\s*(?P<active>\*)?\s*$"
)


@dataclass(frozen=True)
class PowerScheme:
    guid: str
    name: str = ""
    active: bool = False


@dataclass
class PowerPlanState:
    """!
    @brief Record of a session power plan override.
    """

    previous: Optional[PowerScheme]
    applied: Optional[str] = None
    restored: bool = False
    keep: bool = False


def parse_scheme_line(line: str) -> Optional[PowerScheme]:
    """!
    @brief Parse one ``powercfg`` scheme line.
    @details Only the GUID, the parenthesised name and the trailing ``*``
    active marker are used, so localized label text before the GUID does not
    matter.
    """

    match = _SCHEME_LINE_RE.search(line.strip())
    if not match:
        return None
    return PowerScheme(
        guid=match.group("guid").lower(),
        name=(match.group("name") or "").strip(),
        active=bool(match.group("active")),
    )


def parse_scheme_list(text: str) -> List[PowerScheme]:
    schemes: List[PowerScheme] = []
    for line in text.splitlines():
        scheme = parse_scheme_line(line)
        if scheme is not None:
            schemes.append(scheme)
    return schemes


def resolve_plan(name_or_guid: str) -> str:
    """!
    @brief Translate a plan alias or literal GUID to a lowercase GUID.
    @throws ValueError For unknown aliases.
    """

    candidate = str(name_or_guid).strip()
    if _GUID_RE.match(candidate):
        return candidate.lower()
    key = candidate.lower().replace(" ", "_")
    if key in PLAN_ALIASES:
        return PLAN_ALIASES[key]
    raise ValueError(
        f"Unknown power plan {name_or_guid!r}; use a GUID or one of "
        + ", ".join(sorted({alias for alias in PLAN_ALIASES if "-" not in alias}))
    )


def get_active_scheme() -> Optional[PowerScheme]:
    result = exec_utils.run_command(
        [POWERCFG, "/getactivescheme"],
        event="powercfg_active",
        timeout=_POWERCFG_TIMEOUT,
    )
    if result.returncode != 0:
        return None
    scheme = parse_scheme_line(result.stdout.strip().splitlines()[-1] if result.stdout.strip() else "")
    if scheme is None:
        return None
    return PowerScheme(scheme.guid, scheme.name, True)


def list_schemes() -> List[PowerScheme]:
    result = exec_utils.run_command(
        [POWERCFG, "/list"],
        event="powercfg_list",
        timeout=_POWERCFG_TIMEOUT,
    )
    if result.returncode != 0:
        return []
    return parse_scheme_list(result.stdout)


def set_active_scheme(guid: str, *, dry_run: bool = False) -> bool:
    result = exec_utils.run_command(
        [POWERCFG, "/setactive", guid],
        event="powercfg_setactive",
        timeout=_POWERCFG_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Activating power scheme {guid}",
        extra={"guid": guid},
    )
    return result.skipped or result.returncode == 0


def ensure_scheme(guid: str, *, dry_run: bool = False) -> Optional[str]:
    """!
    @brief Make sure a scheme for ``guid`` exists and return the GUID to activate.
    @details Installed schemes are returned as-is. A scheme whose name matches
    the template (an earlier duplicate) is reused so repeated runs do not pile up copies.
    Otherwise ``/duplicatescheme`` is run and the new GUID it prints is
    returned.
    @returns GUID to activate, or ``None`` when duplication failed.
    """

    target = guid.lower()
    installed = list_schemes()
    if any(scheme.guid == target for scheme in installed):
        return target
    known_name = SCHEME_NAMES.get(target, "").lower()
    if known_name:
        for scheme in installed:
            if scheme.name.lower() == known_name:
                return scheme.guid

    result = exec_utils.run_command(
        [POWERCFG, "/duplicatescheme", target],
        event="powercfg_duplicate",
        timeout=_POWERCFG_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Creating power scheme from template {target}",
        extra={"guid": target},
    )
    if result.skipped:
        return target
    if result.returncode != 0:
        logging_ext.get_human_logger().warning(
            "powercfg could not duplicate scheme %s: %s",
            target,
            result.stderr.strip() or result.stdout.strip() or result.error,
        )
        return None
    created = parse_scheme_list(result.stdout)
    if not created:
        return None
    return created[0].guid


@contextmanager
def power_plan_override(
    target: str,
    *,
    dry_run: bool = False,
    restore: bool = True,
) -> Iterator[PowerPlanState]:
    """!
    @brief Activate ``target`` for the duration of the block.
    @details The active scheme is captured first; if it cannot be read the
    override is skipped because there would be nothing to restore. Setting
    ``keep`` on the yielded state from inside the block (machine preparation
    does this after activating a permanent plan) suppresses restoration.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    target_guid = resolve_plan(target)

    previous = get_active_scheme()
    state = PowerPlanState(previous=previous)

    if previous is None:
        human_logger.warning("Could not read the active power scheme; leaving it unchanged.")
    elif previous.guid == target_guid:
        human_logger.debug("Power scheme %s already active", target_guid)
    else:
        resolved = ensure_scheme(target_guid, dry_run=dry_run)
        if resolved is not None and set_active_scheme(resolved, dry_run=dry_run):
            state.applied = resolved
            human_logger.info(
                "Switched power scheme from %s to %s",
                previous.name or previous.guid,
                resolved,
            )

    machine_logger.info(
        "power_plan_override",
        extra={
            "event": "power_plan_override",
            "previous": previous.guid if previous else None,
            "applied": state.applied,
        },
    )

    try:
        yield state
    finally:
        if restore and not state.keep and state.applied is not None and previous is not None:
            state.restored = set_active_scheme(previous.guid, dry_run=dry_run)
            machine_logger.info(
                "power_plan_restore",
                extra={
                    "event": "power_plan_restore",
                    "guid": previous.guid,
                    "restored": state.restored,
                },
            )


def activate_plan(target: str, *, dry_run: bool = False) -> Optional[str]:
    """!
    @brief Ensure and activate ``target`` permanently.
    @returns GUID that was activated, or ``None`` on failure.
    """

    resolved = ensure_scheme(resolve_plan(target), dry_run=dry_run)
    if resolved is None or not set_active_scheme(resolved, dry_run=dry_run):
        return None
    return resolved


def apply_timeouts(settings: Mapping[str, int], *, dry_run: bool = False) -> bool:
    """!
    @brief Apply ``powercfg /change`` timeouts, e.g. ``standby-timeout-ac``.
    @returns ``True`` when every setting was applied.
    """

    ok = True
    for setting, minutes in settings.items():
        result = exec_utils.run_command(
            [POWERCFG, "/change", str(setting), str(int(minutes))],
            event="powercfg_change",
            timeout=_POWERCFG_TIMEOUT,
            dry_run=dry_run,
            human_message=f"Setting {setting} to {minutes} minute(s)",
            extra={"setting": setting, "minutes": minutes},
        )
        if not result.skipped and result.returncode != 0:
            ok = False
    return ok


def disable_hibernation(*, dry_run: bool = False) -> bool:
    result = exec_utils.run_command(
        [POWERCFG, "/hibernate", "off"],
        event="powercfg_hibernate",
        timeout=_POWERCFG_TIMEOUT,
        dry_run=dry_run,
        human_message="Disabling hibernation",
    )
    return result.skipped or result.returncode == 0


__all__ = [
    "BALANCED",
    "HIGH_PERFORMANCE",
    "PLAN_ALIASES",
    "POWER_SAVER",
    "PowerPlanState",
    "PowerScheme",
    "SCHEME_NAMES",
    "ULTIMATE_PERFORMANCE",
    "activate_plan",
    "apply_timeouts",
    "disable_hibernation",
    "ensure_scheme",
    "get_active_scheme",
    "list_schemes",
    "parse_scheme_line",
    "parse_scheme_list",
    "power_plan_override",
    "resolve_plan",
    "set_active_scheme",
]
