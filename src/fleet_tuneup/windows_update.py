"""!
@brief Windows Update through the PSWindowsUpdate PowerShell module.
@details The generated script bootstraps the NuGet package provider and the
``PSWindowsUpdate`` module from PSGallery when they are missing, optionally
registers the Microsoft Update service (updates for Office and other
Microsoft products), installs everything applicable without rebooting and
prints one JSON document summarising the run. Progress text printed before
the JSON is ignored by :func:`exec_utils.extract_json_payload`.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional

from . import exec_utils, logging_ext, registry_tools
from .outcomes import TaskContext, TaskResult, TaskStatus

DEFAULT_TIMEOUT = 4 * 60 * 60

MICROSOFT_UPDATE_SERVICE_ID = "7971f918-a847-4430-9279-4a52d1efe18d"

REBOOT_PENDING_KEYS = (
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired",
    r"SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending",
)

_SCRIPT_TEMPLATE = r"""
$ErrorActionPreference = 'Stop'
$ProgressPreference = 'SilentlyContinue'
$summary = [ordered]@{{ installed = @(); failed = @(); reboot_required = $false; error = $null }}
try {{
    [Net.ServicePointManager]::SecurityProtocol = [Net.ServicePointManager]::SecurityProtocol -bor 3072
    if (-not (Get-PackageProvider -ListAvailable -Name NuGet -ErrorAction SilentlyContinue)) {{
        Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force -Scope AllUsers | Out-Null
    }}
    if (-not (Get-Module -ListAvailable -Name PSWindowsUpdate)) {{
        Set-PSRepository -Name PSGallery -InstallationPolicy Trusted
        Install-Module -Name PSWindowsUpdate -Force -Scope AllUsers -AllowClobber
    }}
    Import-Module PSWindowsUpdate
{register_block}
    $results = Install-WindowsUpdate -AcceptAll -IgnoreReboot -Confirm:$false{update_flags}
    foreach ($item in @($results)) {{
        if ($null -eq $item) {{ continue }}
        $entry = [ordered]@{{ title = [string]$item.Title; kb = [string]$item.KB; result = [string]$item.Result }}
        if ($item.Result -in @('Failed', 'Aborted')) {{ $summary.failed += $entry }}
        else {{ $summary.installed += $entry }}
    }}
    $summary.reboot_required = [bool](Get-WURebootStatus -Silent)
}} catch {{
    $summary.error = $_.Exception.Message
}}
$summary | ConvertTo-Json -Depth 4 -Compress
"""

_REGISTER_MICROSOFT_UPDATE = (
    "    if (-not (Get-WUServiceManager | Where-Object {{ $_.ServiceID -eq '{service}' }})) {{\n"
    "        Add-WUServiceManager -ServiceID '{service}' -Confirm:$false | Out-Null\n"
    "    }}"
)


@dataclass
class UpdateOptions:
    microsoft_update: bool = True
    include_drivers: bool = False
    timeout: int = DEFAULT_TIMEOUT


@dataclass
class UpdateSummary:
    """!
    @brief Parsed result of an ``Install-WindowsUpdate`` run.
    """

    installed: List[Mapping[str, Any]] = field(default_factory=list)
    failed: List[Mapping[str, Any]] = field(default_factory=list)
    reboot_required: bool = False
    returncode: int = 0
    error: Optional[str] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed


def build_update_script(options: UpdateOptions) -> str:
    """!
    @brief Render the PowerShell script executed by :func:`run_windows_update`.
    """

    register_block = ""
    flags = ""
    if options.microsoft_update:
        register_block = _REGISTER_MICROSOFT_UPDATE.format(service=MICROSOFT_UPDATE_SERVICE_ID)
        flags += " -MicrosoftUpdate"
    if not options.include_drivers:
        flags += " -NotCategory 'Drivers'"
    return _SCRIPT_TEMPLATE.format(register_block=register_block, update_flags=flags).strip()


def _as_list(value: Any) -> List[Mapping[str, Any]]:
    # ConvertTo-Json collapses single-element arrays into a bare object.
    if value is None:
        return []
    if isinstance(value, Mapping):
        return [value]
    return [item for item in value if isinstance(item, Mapping)]


def parse_summary(payload: Any, returncode: int) -> UpdateSummary:
    if not isinstance(payload, Mapping):
        return UpdateSummary(
            returncode=returncode,
            error="PSWindowsUpdate did not report a summary",
        )
    error = payload.get("error")
    return UpdateSummary(
        installed=_as_list(payload.get("installed")),
        failed=_as_list(payload.get("failed")),
        reboot_required=bool(payload.get("reboot_required")),
        returncode=returncode,
        error=str(error) if error else None,
    )


def reboot_pending() -> bool:
    """!
    @brief Check the servicing stack's reboot-pending markers in the registry.
    """

    return any(registry_tools.key_exists(registry_tools.HKLM, key) for key in REBOOT_PENDING_KEYS)


def run_windows_update(options: UpdateOptions | None = None, *, dry_run: bool = False) -> UpdateSummary:
    """!
    @brief Install pending updates and return the parsed summary.
    @details Failures to bootstrap the module surface as ``error`` with the
    PowerShell exception message rather than as an exception here.
    """

    options = options or UpdateOptions()
    human_logger = logging_ext.get_human_logger()
    result, payload = exec_utils.run_powershell_json(
        build_update_script(options),
        event="windows_update",
        timeout=options.timeout,
        dry_run=dry_run,
        human_message="Installing Windows updates (this can take a while)",
        extra={
            "microsoft_update": options.microsoft_update,
            "include_drivers": options.include_drivers,
        },
    )
    if result.skipped:
        return UpdateSummary(skipped=True)
    if result.timed_out:
        return UpdateSummary(returncode=result.returncode, error="Windows Update timed out")
    if payload is None and result.returncode != 0:
        message = result.stderr.strip() or result.error or f"powershell exited with {result.returncode}"
        return UpdateSummary(returncode=result.returncode, error=message)

    summary = parse_summary(payload, result.returncode)
    if not summary.reboot_required and summary.error is None:
        summary.reboot_required = reboot_pending()
    if summary.error:
        human_logger.error("Windows Update failed: %s", summary.error)
    else:
        human_logger.info(
            "Windows Update installed %d update(s), %d failed",
            len(summary.installed),
            len(summary.failed),
        )
    return summary


def run_task(context: TaskContext) -> TaskResult:
    started = time.monotonic()
    section = context.settings.windows_update
    options = UpdateOptions(
        microsoft_update=section.microsoft_update,
        include_drivers=section.include_drivers,
        timeout=section.timeout,
    )
    summary = run_windows_update(options, dry_run=context.dry_run)

    if summary.skipped:
        status, text = TaskStatus.SKIPPED, "dry-run"
    elif summary.error:
        status, text = TaskStatus.FAILED, summary.error
    elif summary.failed:
        status = TaskStatus.WARNING if summary.installed else TaskStatus.FAILED
        text = f"{len(summary.installed)} installed, {len(summary.failed)} failed"
    elif summary.installed:
        status, text = TaskStatus.SUCCESS, f"{len(summary.installed)} update(s) installed"
    else:
        status, text = TaskStatus.SUCCESS, "No applicable updates"

    return TaskResult(
        key="wu",
        status=status,
        summary=text,
        duration=time.monotonic() - started,
        details={
            "installed": list(summary.installed),
            "failed": list(summary.failed),
            "returncode": summary.returncode,
        },
        reboot_required=summary.reboot_required,
    )


__all__ = [
    "UpdateOptions",
    "UpdateSummary",
    "build_update_script",
    "parse_summary",
    "reboot_pending",
    "run_task",
    "run_windows_update",
]
