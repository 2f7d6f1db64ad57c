"""!
@brief PowerShell execution policy bookkeeping.
@details Maintenance sessions run PowerShell scripts (PSWindowsUpdate, the
Chocolatey bootstrap, site scripts fetched from the script host). The session
therefore lowers the execution policy for its duration and restores whatever
was configured before, even when a task raises.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from . import exec_utils, logging_ext

VALID_POLICIES = (
    "AllSigned",
    "Bypass",
    "Default",
    "RemoteSigned",
    "Restricted",
    "Undefined",
    "Unrestricted",
)

VALID_SCOPES = ("Process", "CurrentUser", "LocalMachine")

_POLICY_TIMEOUT = 60


@dataclass
class PolicyState:
    """!
    @brief Record of an execution-policy override for the session report.
    """

    scope: str
    previous: Optional[str]
    applied: Optional[str] = None
    restored: bool = False


def normalize_policy(policy: str) -> str:
    """!
    @brief Return the canonical spelling of ``policy``.
    @throws ValueError For names PowerShell does not accept.
    """

    for candidate in VALID_POLICIES:
        if candidate.lower() == str(policy).strip().lower():
            return candidate
    raise ValueError(
        f"Unknown execution policy {policy!r}; expected one of {', '.join(VALID_POLICIES)}"
    )


def normalize_scope(scope: str) -> str:
    for candidate in VALID_SCOPES:
        if candidate.lower() == str(scope).strip().lower():
            return candidate
    raise ValueError(
        f"Unknown execution policy scope {scope!r}; expected one of {', '.join(VALID_SCOPES)}"
    )


def get_execution_policy(scope: str = "Process") -> Optional[str]:
    """!
    @brief Read the execution policy configured for ``scope``.
    @returns Canonical policy name, or ``None`` when PowerShell is unavailable
    or printed something unexpected.
    """

    scope_name = normalize_scope(scope)
    result = exec_utils.run_powershell(
        f"Get-ExecutionPolicy -Scope {scope_name}",
        event="execution_policy_query",
        timeout=_POLICY_TIMEOUT,
        extra={"scope": scope_name},
    )
    if result.returncode != 0:
        return None
    value = result.stdout.strip().splitlines()[-1:] if result.stdout.strip() else []
    if not value:
        return None
    try:
        return normalize_policy(value[0])
    except ValueError:
        logging_ext.get_human_logger().debug("Unexpected execution policy output: %r", value[0])
        return None


def set_execution_policy(policy: str, scope: str = "Process", *, dry_run: bool = False) -> bool:
    """!
    @brief Apply ``policy`` to ``scope`` with ``Set-ExecutionPolicy -Force``.
    @returns ``True`` when PowerShell reported success (or for dry-runs).
    """

    policy_name = normalize_policy(policy)
    scope_name = normalize_scope(scope)
    result = exec_utils.run_powershell(
        f"Set-ExecutionPolicy -ExecutionPolicy {policy_name} -Scope {scope_name} -Force",
        event="execution_policy_set",
        timeout=_POLICY_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Setting execution policy {policy_name} for scope {scope_name}",
        extra={"scope": scope_name, "policy": policy_name},
    )
    if result.skipped:
        return True
    if result.returncode != 0:
        logging_ext.get_human_logger().warning(
            "Set-ExecutionPolicy failed: %s", result.stderr.strip() or result.error or "unknown error"
        )
        return False
    return True


@contextmanager
def policy_override(
    policy: str = "Bypass",
    scope: str = "LocalMachine",
    *,
    dry_run: bool = False,
) -> Iterator[PolicyState]:
    """!
    @brief Temporarily apply ``policy`` and restore the previous one on exit.
    @details Nothing is changed when the current policy already matches or
    cannot be read. The default scope is ``LocalMachine`` because a
    ``Process`` scope change would only affect the short-lived PowerShell child
    that applied it. Restoration runs in a ``finally`` block so it also happens
    after task failures and ``KeyboardInterrupt``.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    target = normalize_policy(policy)
    scope_name = normalize_scope(scope)

    previous = get_execution_policy(scope_name)
    state = PolicyState(scope=scope_name, previous=previous)

    if previous is None:
        human_logger.warning(
            "Could not read the %s execution policy; leaving it unchanged.", scope_name
        )
    elif previous == target:
        human_logger.debug("Execution policy already %s for %s", target, scope_name)
    elif set_execution_policy(target, scope_name, dry_run=dry_run):
        state.applied = target

    machine_logger.info(
        "execution_policy_override",
        extra={
            "event": "execution_policy_override",
            "scope": scope_name,
            "previous": previous,
            "applied": state.applied,
        },
    )

    try:
        yield state
    finally:
        if state.applied is not None and state.previous is not None:
            state.restored = set_execution_policy(state.previous, scope_name, dry_run=dry_run)
            machine_logger.info(
                "execution_policy_restore",
                extra={
                    "event": "execution_policy_restore",
                    "scope": scope_name,
                    "policy": state.previous,
                    "restored": state.restored,
                },
            )


__all__ = [
    "PolicyState",
    "VALID_POLICIES",
    "VALID_SCOPES",
    "get_execution_policy",
    "normalize_policy",
    "normalize_scope",
    "policy_override",
    "set_execution_policy",
]
