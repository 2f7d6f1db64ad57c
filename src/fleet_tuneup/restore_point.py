"""!
@brief System restore point requests.
@details Repairs and feature upgrades ask for a restore point first. The WMI
``SystemRestore`` provider is tried before ``Checkpoint-Computer`` because
the cmdlet refuses to create more than one restore point per 24 hours unless
the ``SystemRestorePointCreationFrequency`` policy is changed. Failures are
logged and reported as ``False``; callers decide whether to continue.
"""
from __future__ import annotations

import json
import os
import textwrap

from . import exec_utils, logging_ext

_RESTORE_POINT_TIMEOUT = 180


def build_restore_point_script(description: str) -> str:
    description_literal = json.dumps(description)
    return textwrap.dedent(
        f"""
        $description = {description_literal}
        try {{
            $systemRestore = Get-WmiObject -Class SystemRestore -Namespace "root/default" -ErrorAction Stop
            $result = $systemRestore.CreateRestorePoint($description, 0, 100)
            exit $result.ReturnValue
        }} catch {{
            try {{
                Checkpoint-Computer -Description $description -RestorePointType 'MODIFY_SETTINGS' -ErrorAction Stop | Out-Null
                exit 0
            }} catch {{
                Write-Error $_.Exception.Message
                exit 1
            }}
        }}
        """
    ).strip()


def create_restore_point(
    description: str,
    *,
    dry_run: bool = False,
    timeout: int = _RESTORE_POINT_TIMEOUT,
) -> bool:
    """!
    @brief Request a system restore point with the supplied description.
    @returns ``True`` if the restore point was created (or simulated).
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    description_text = description or "Fleet Tune-up restore point"

    if not dry_run and os.name != "nt":
        human_logger.info("Restore points are only available on Windows hosts; skipping request.")
        machine_logger.warning(
            "restore_point_unsupported",
            extra={"event": "restore_point_unsupported", "platform": os.name},
        )
        return False

    result = exec_utils.run_powershell(
        build_restore_point_script(description_text),
        event="restore_point",
        timeout=timeout,
        dry_run=dry_run,
        human_message=f"Creating system restore point: {description_text}",
        extra={"description": description_text},
    )
    if result.skipped:
        return True
    if result.returncode == 0:
        human_logger.info("System restore point created: %s", description_text)
        return True

    human_logger.warning(
        "Restore point creation returned %s: %s",
        result.returncode,
        result.stderr.strip() or result.stdout.strip() or result.error or "(no error output)",
    )
    return False


__all__ = ["build_restore_point_script", "create_restore_point"]
