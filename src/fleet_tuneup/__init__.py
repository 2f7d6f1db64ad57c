"""!
@brief Fleet Tune-up package root.
@details Modules under this namespace run Windows workstation maintenance
tasks (updates, baseline software, cleanup, repair) inside a session that
manages the power plan and the PowerShell execution policy.
"""

__all__ = [
    "main",
    "dispatcher",
    "tasks",
    "config",
    "outcomes",
    "exec_utils",
    "elevation",
    "execution_policy",
    "power",
    "packages",
    "windows_update",
    "office_update",
    "repair",
    "restore_point",
    "cleanup",
    "downloads",
    "unifi",
    "upgrade",
    "machine_prep",
    "registry_tools",
    "fs_tools",
    "logging_ext",
    "confirm",
    "ui",
    "version",
]
