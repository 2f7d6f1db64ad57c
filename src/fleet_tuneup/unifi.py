"""!
@brief UniFi Network Server installation.
@details The UniFi controller needs a Java runtime, so one is installed
through :mod:`packages` when ``java.exe`` cannot be found. The installer is
fetched from the Ubiquiti download hosts and run silently (NSIS ``/S``). The
controller installs per user under ``%USERPROFILE%\\Ubiquiti UniFi``; the
presence of ``lib\\ace.jar`` there marks an existing installation.
"""
from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from . import downloads, exec_utils, logging_ext, packages
from .outcomes import TaskContext, TaskResult, TaskStatus

INSTALLER_TIMEOUT = 30 * 60

FIREWALL_PORTS: Tuple[Tuple[int, str, str], ...] = (
    (8080, "TCP", "device inform"),
    (8443, "TCP", "web interface"),
    (3478, "UDP", "STUN"),
    (10001, "UDP", "device discovery"),
)


@dataclass
class UnifiStep:
    name: str
    ok: bool
    detail: str = ""


def install_directory() -> Path:
    profile = os.environ.get("USERPROFILE") or str(Path.home())
    return Path(profile) / "Ubiquiti UniFi"


def is_installed() -> bool:
    return (install_directory() / "lib" / "ace.jar").exists()


def find_java() -> Optional[Path]:
    """!
    @brief Locate ``java.exe`` on ``PATH`` or below ``JAVA_HOME``.
    """

    found = shutil.which("java")
    if found:
        return Path(found)
    java_home = os.environ.get("JAVA_HOME")
    if java_home:
        candidate = Path(java_home) / "bin" / "java.exe"
        if candidate.exists():
            return candidate
    return None


def ensure_java(package_id: str, *, dry_run: bool = False) -> UnifiStep:
    if find_java() is not None:
        return UnifiStep("java", True, "already installed")
    outcome = packages.install_package(packages.PackageSpec(package_id), dry_run=dry_run)
    return UnifiStep("java", outcome.ok, f"{outcome.manager}: {outcome.state}")


def firewall_rule_command(port: int, protocol: str, description: str) -> List[str]:
    return [
        "netsh.exe",
        "advfirewall",
        "firewall",
        "add",
        "rule",
        f"name=UniFi {description} ({port}/{protocol})",
        "dir=in",
        "action=allow",
        f"protocol={protocol}",
        f"localport={port}",
    ]


def open_firewall(*, dry_run: bool = False) -> UnifiStep:
    failed = []
    for port, protocol, description in FIREWALL_PORTS:
        result = exec_utils.run_command(
            firewall_rule_command(port, protocol, description),
            event="firewall_rule",
            timeout=60,
            dry_run=dry_run,
            human_message=f"Allowing inbound {protocol} {port} ({description})",
            extra={"port": port, "protocol": protocol},
        )
        if not result.skipped and result.returncode != 0:
            failed.append(f"{port}/{protocol}")
    return UnifiStep("firewall", not failed, ", ".join(failed))


def install_unifi(
    urls: List[str],
    work_directory: Path,
    *,
    dry_run: bool = False,
    attempts: int = downloads.DEFAULT_ATTEMPTS,
) -> UnifiStep:
    """!
    @brief Download and run the UniFi installer silently.
    @throws downloads.DownloadError When no installer URL could be fetched.
    """

    installer = downloads.download_file(
        urls,
        work_directory / "UniFi-installer.exe",
        attempts=attempts,
        dry_run=dry_run,
    )
    result = exec_utils.run_command(
        [str(installer), "/S"],
        event="unifi_install",
        timeout=INSTALLER_TIMEOUT,
        dry_run=dry_run,
        human_message="Running the UniFi Network Server installer",
    )
    if result.skipped:
        return UnifiStep("installer", True, "dry-run")
    return UnifiStep("installer", result.ok, f"exit {result.returncode}")


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    options = context.settings.unifi

    if is_installed() and not context.force:
        return TaskResult(
            key="unifi",
            status=TaskStatus.SKIPPED,
            summary=f"UniFi already installed in {install_directory()}",
            duration=time.monotonic() - started,
        )

    steps = [ensure_java(options.java_package, dry_run=context.dry_run)]
    if steps[0].ok:
        try:
            steps.append(
                install_unifi(
                    options.resolved_installer_urls(),
                    context.work_directory,
                    dry_run=context.dry_run,
                    attempts=context.settings.download_attempts,
                )
            )
        except downloads.DownloadError as exc:
            logging_ext.get_human_logger().error("%s", exc)
            steps.append(UnifiStep("installer", False, str(exc)))
        if steps[-1].ok and options.open_firewall:
            steps.append(open_firewall(dry_run=context.dry_run))

    failed = [step for step in steps if not step.ok]
    if not failed:
        status = TaskStatus.SUCCESS
        summary = f"UniFi {options.version} installed"
    elif failed == [steps[-1]] and steps[-1].name == "firewall":
        status = TaskStatus.WARNING
        summary = f"UniFi {options.version} installed; firewall rules failed: {steps[-1].detail}"
    else:
        status = TaskStatus.FAILED
        summary = f"{failed[0].name} step failed: {failed[0].detail}"

    return TaskResult(
        key="unifi",
        status=status,
        summary=summary,
        duration=time.monotonic() - started,
        details={"steps": [step.__dict__.copy() for step in steps]},
    )


__all__ = [
    "FIREWALL_PORTS",
    "UnifiStep",
    "ensure_java",
    "find_java",
    "firewall_rule_command",
    "install_directory",
    "install_unifi",
    "is_installed",
    "open_firewall",
    "run_task",
]
