"""!
@brief Baseline software installation through winget with a Chocolatey fallback.
@details Each package is installed with an exact-id, silent ``winget install``.
winget exit codes are HRESULT values; :func:`classify_winget_exit` maps the
ones that matter for fleet baselines ("already installed", "no applicable
update", "not found", "reboot required") onto package states. When winget is
missing or fails and Chocolatey fallback is enabled, ``choco install`` is
attempted with the package's Chocolatey id.
"""
from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional

from . import exec_utils, logging_ext
from .outcomes import TaskContext, TaskResult, TaskStatus

WINGET_EXECUTABLE = "winget"
CHOCO_EXECUTABLE = "choco"

WINGET_INSTALL_TIMEOUT = 30 * 60
CHOCO_INSTALL_TIMEOUT = 30 * 60

WINGET_UPDATE_NOT_APPLICABLE = 0x8A15002B
WINGET_PACKAGE_ALREADY_INSTALLED = 0x8A150061
WINGET_NO_APPLICATIONS_FOUND = 0x8A150014
WINGET_REBOOT_REQUIRED_TO_FINISH = 0x8A150109
MSI_REBOOT_REQUIRED = 3010
MSI_REBOOT_INITIATED = 1641

STATE_INSTALLED = "installed"
STATE_PRESENT = "present"
STATE_NOT_FOUND = "not_found"
STATE_FAILED = "failed"
STATE_SKIPPED = "skipped"

CHOCOLATEY_INSTALL_SCRIPT = (
    "Set-ExecutionPolicy Bypass -Scope Process -Force; "
    "[System.Net.ServicePointManager]::SecurityProtocol = "
    "[System.Net.ServicePointManager]::SecurityProtocol -bor 3072; "
    "iex ((New-Object System.Net.WebClient).DownloadString("
    "'https://community.chocolatey.org/install.ps1'))"
)


@dataclass
class PackageSpec:
    """!
    @brief A package to install, identified by its winget id.
    @details ``choco_id`` names the Chocolatey equivalent used by the fallback;
    when absent the fallback is not attempted for this package. ``scope`` is
    passed to winget as ``--scope`` (``machine`` or ``user``).
    """

    id: str
    source: str = "winget"
    choco_id: Optional[str] = None
    scope: Optional[str] = None


@dataclass
class PackageOutcome:
    package: str
    manager: str
    state: str
    returncode: int
    reboot_required: bool = False

    @property
    def ok(self) -> bool:
        return self.state in {STATE_INSTALLED, STATE_PRESENT, STATE_SKIPPED}


def winget_available() -> bool:
    return shutil.which(WINGET_EXECUTABLE) is not None


def choco_available() -> bool:
    return shutil.which(CHOCO_EXECUTABLE) is not None


def classify_winget_exit(returncode: int) -> tuple[str, bool]:
    """!
    @brief Map a winget exit code to ``(state, reboot_required)``.
    """

    code = exec_utils.normalize_exit_code(returncode)
    if code == 0:
        return STATE_INSTALLED, False
    if code in {WINGET_UPDATE_NOT_APPLICABLE, WINGET_PACKAGE_ALREADY_INSTALLED}:
        return STATE_PRESENT, False
    if code == WINGET_NO_APPLICATIONS_FOUND:
        return STATE_NOT_FOUND, False
    if code in {WINGET_REBOOT_REQUIRED_TO_FINISH, MSI_REBOOT_REQUIRED}:
        return STATE_INSTALLED, True
    return STATE_FAILED, False


def classify_choco_exit(returncode: int) -> tuple[str, bool]:
    if returncode == 0:
        return STATE_INSTALLED, False
    if returncode in {MSI_REBOOT_REQUIRED, MSI_REBOOT_INITIATED}:
        return STATE_INSTALLED, True
    return STATE_FAILED, False


def winget_install_command(spec: PackageSpec) -> List[str]:
    command = [
        WINGET_EXECUTABLE,
        "install",
        "--id",
        spec.id,
        "--exact",
        "--silent",
        "--accept-package-agreements",
        "--accept-source-agreements",
        "--disable-interactivity",
    ]
    if spec.scope:
        command.extend(["--scope", spec.scope])
    return command


def choco_install_command(package_id: str) -> List[str]:
    return [CHOCO_EXECUTABLE, "install", package_id, "-y", "--no-progress"]


def _install_with_choco(
    spec: PackageSpec, *, dry_run: bool, timeout: int | None
) -> PackageOutcome:
    package_id = spec.choco_id or spec.id
    result = exec_utils.run_command(
        choco_install_command(package_id),
        event="choco_install",
        timeout=timeout or CHOCO_INSTALL_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Installing {package_id} with Chocolatey",
        extra={"package": package_id},
    )
    if result.skipped:
        return PackageOutcome(package_id, "choco", STATE_SKIPPED, 0)
    state, reboot = classify_choco_exit(result.returncode)
    if result.timed_out:
        state = STATE_FAILED
    return PackageOutcome(package_id, "choco", state, result.returncode, reboot)


def install_package(
    spec: PackageSpec,
    *,
    dry_run: bool = False,
    timeout: int | None = None,
    chocolatey_fallback: bool = True,
) -> PackageOutcome:
    """!
    @brief Install ``spec`` with winget, falling back to Chocolatey when allowed.
    @details Packages whose ``source`` is ``choco`` go straight to Chocolatey,
    installing ``choco_id`` or else ``id``. The fallback runs only when
    ``chocolatey_fallback`` is set, a Chocolatey id is configured and the
    ``choco`` executable is available.
    """

    human_logger = logging_ext.get_human_logger()
    can_fallback = chocolatey_fallback and spec.choco_id is not None

    if spec.source == "choco":
        return _install_with_choco(spec, dry_run=dry_run, timeout=timeout)

    if not winget_available() and not dry_run:
        human_logger.warning("winget is not available; cannot install %s with winget", spec.id)
        if can_fallback and choco_available():
            return _install_with_choco(spec, dry_run=dry_run, timeout=timeout)
        return PackageOutcome(spec.id, "winget", STATE_FAILED, 127)

    result = exec_utils.run_command(
        winget_install_command(spec),
        event="winget_install",
        timeout=timeout or WINGET_INSTALL_TIMEOUT,
        dry_run=dry_run,
        human_message=f"Installing {spec.id} with winget",
        extra={"package": spec.id},
    )
    if result.skipped:
        return PackageOutcome(spec.id, "winget", STATE_SKIPPED, 0)

    state, reboot = classify_winget_exit(result.returncode)
    if result.timed_out:
        state = STATE_FAILED

    if state == STATE_PRESENT:
        human_logger.info("%s is already installed", spec.id)
    elif state == STATE_INSTALLED:
        human_logger.info("Installed %s%s", spec.id, " (reboot required)" if reboot else "")
    elif can_fallback and choco_available():
        human_logger.warning(
            "winget could not install %s (exit %#x); trying Chocolatey",
            spec.id,
            exec_utils.normalize_exit_code(result.returncode),
        )
        return _install_with_choco(spec, dry_run=dry_run, timeout=timeout)
    else:
        human_logger.error(
            "winget could not install %s (exit %#x)",
            spec.id,
            exec_utils.normalize_exit_code(result.returncode),
        )

    return PackageOutcome(spec.id, "winget", state, result.returncode, reboot)


def ensure_chocolatey(*, dry_run: bool = False) -> bool:
    """!
    @brief Install Chocolatey through its official bootstrap script if missing.
    @returns ``True`` when Chocolatey is (or, for dry-runs, would be) available.
    """

    if choco_available():
        return True
    result = exec_utils.run_powershell(
        CHOCOLATEY_INSTALL_SCRIPT,
        event="choco_bootstrap",
        timeout=10 * 60,
        dry_run=dry_run,
        human_message="Installing Chocolatey package manager",
    )
    if result.skipped:
        return True
    return result.returncode == 0 and choco_available()


def upgrade_all(*, dry_run: bool = False, timeout: int | None = None) -> PackageOutcome:
    """!
    @brief Upgrade every winget-managed package with an available update.
    """

    result = exec_utils.run_command(
        [
            WINGET_EXECUTABLE,
            "upgrade",
            "--all",
            "--silent",
            "--accept-package-agreements",
            "--accept-source-agreements",
            "--disable-interactivity",
            "--include-unknown",
        ],
        event="winget_upgrade_all",
        timeout=timeout or 2 * WINGET_INSTALL_TIMEOUT,
        dry_run=dry_run,
        human_message="Upgrading installed packages with winget",
    )
    if result.skipped:
        return PackageOutcome("*", "winget", STATE_SKIPPED, 0)
    state, reboot = classify_winget_exit(result.returncode)
    if state == STATE_NOT_FOUND:
        state = STATE_PRESENT
    if result.timed_out:
        state = STATE_FAILED
    return PackageOutcome("*", "winget", state, result.returncode, reboot)


def install_baseline(
    specs: Iterable[PackageSpec],
    *,
    dry_run: bool = False,
    timeout: int | None = None,
    chocolatey_fallback: bool = True,
) -> List[PackageOutcome]:
    """!
    @brief Install each package in order and collect the outcomes.
    """

    packages = list(specs)
    if chocolatey_fallback and not winget_available() and any(p.choco_id for p in packages):
        ensure_chocolatey(dry_run=dry_run)
    return [
        install_package(
            spec,
            dry_run=dry_run,
            timeout=timeout,
            chocolatey_fallback=chocolatey_fallback,
        )
        for spec in packages
    ]


def run_task(context: TaskContext) -> TaskResult:
    """!
    @brief Task runner: install the baseline and upgrade existing packages.
    """

    settings = context.settings
    started = time.monotonic()
    outcomes = install_baseline(
        settings.baseline_packages,
        dry_run=context.dry_run,
        timeout=settings.timeout,
        chocolatey_fallback=settings.chocolatey_fallback,
    )
    if settings.upgrade_installed_packages and (winget_available() or context.dry_run):
        outcomes.append(upgrade_all(dry_run=context.dry_run, timeout=settings.timeout))

    failed = [item.package for item in outcomes if not item.ok]
    succeeded = [item for item in outcomes if item.ok]
    if not outcomes:
        status = TaskStatus.SKIPPED
    elif not failed:
        status = TaskStatus.SUCCESS
    elif succeeded:
        status = TaskStatus.WARNING
    else:
        status = TaskStatus.FAILED

    summary = f"{len(succeeded)}/{len(outcomes)} package operations succeeded"
    if failed:
        summary += f"; failed: {', '.join(failed)}"

    return TaskResult(
        key="wget",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={
            "packages": [
                {
                    "package": item.package,
                    "manager": item.manager,
                    "state": item.state,
                    "returncode": item.returncode,
                }
                for item in outcomes
            ]
        },
        reboot_required=any(item.reboot_required for item in outcomes),
    )


__all__ = [
    "PackageOutcome",
    "PackageSpec",
    "choco_available",
    "classify_choco_exit",
    "classify_winget_exit",
    "ensure_chocolatey",
    "install_baseline",
    "install_package",
    "run_task",
    "upgrade_all",
    "winget_available",
]
