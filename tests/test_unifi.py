"""!
@brief UniFi Network Server installation tests.
"""

from __future__ import annotations

import pathlib
import sys
from collections.abc import Sequence
from typing import List

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet_tuneup import config, downloads, exec_utils, packages, unifi  # noqa: E402
from fleet_tuneup.outcomes import TaskContext, TaskStatus  # noqa: E402


def _command_result(command: Sequence[str], *, returncode: int = 0, skipped: bool = False):
    return exec_utils.CommandResult(
        command=list(command),
        returncode=returncode,
        stdout="",
        stderr="",
        duration=0.0,
        skipped=skipped,
    )


def _install_fake(monkeypatch, tmp_path, *, firewall_rc: int = 0, installer_rc: int = 0) -> List[List[str]]:
    commands: List[List[str]] = []

    def fake_run(command, *, event, dry_run=False, **kwargs):
        commands.append(list(command))
        if dry_run:
            return _command_result(command, skipped=True)
        rc = firewall_rc if command[0] == "netsh.exe" else installer_rc
        return _command_result(command, returncode=rc)

    monkeypatch.setattr(unifi.exec_utils, "run_command", fake_run)
    monkeypatch.setattr(
        unifi.downloads, "download_file", lambda urls, destination, **kwargs: pathlib.Path(destination)
    )
    monkeypatch.setattr(unifi, "find_java", lambda: tmp_path / "java.exe")
    monkeypatch.setenv("USERPROFILE", str(tmp_path / "profile"))
    return commands


def _context(tmp_path, **kwargs) -> TaskContext:
    settings = config.Settings(work_directory=str(tmp_path / "work"))
    return TaskContext(settings=settings, **kwargs)


def test_firewall_rule_command() -> None:
    command = unifi.firewall_rule_command(8443, "TCP", "web interface")

    assert command[:5] == ["netsh.exe", "advfirewall", "firewall", "add", "rule"]
    assert "name=UniFi web interface (8443/TCP)" in command
    assert command[-2:] == ["protocol=TCP", "localport=8443"]


def test_run_task_skips_existing_installation(monkeypatch, tmp_path) -> None:
    commands = _install_fake(monkeypatch, tmp_path)
    ace = tmp_path / "profile" / "Ubiquiti UniFi" / "lib" / "ace.jar"
    ace.parent.mkdir(parents=True)
    ace.write_bytes(b"")

    result = unifi.run_task(_context(tmp_path))

    assert result.status == TaskStatus.SKIPPED
    assert commands == []


def test_run_task_installs_and_opens_firewall(monkeypatch, tmp_path) -> None:
    commands = _install_fake(monkeypatch, tmp_path)

    result = unifi.run_task(_context(tmp_path))

    assert result.key == "unifi"
    assert result.status == TaskStatus.SUCCESS
    assert commands[0] == [str(tmp_path / "work" / "UniFi-installer.exe"), "/S"]
    assert len([c for c in commands if c[0] == "netsh.exe"]) == len(unifi.FIREWALL_PORTS)


def test_run_task_firewall_failure_is_warning(monkeypatch, tmp_path) -> None:
    _install_fake(monkeypatch, tmp_path, firewall_rc=1)

    result = unifi.run_task(_context(tmp_path))

    assert result.status == TaskStatus.WARNING
    assert "8080/TCP" in result.summary


def test_run_task_download_failure(monkeypatch, tmp_path) -> None:
    commands = _install_fake(monkeypatch, tmp_path)

    def failing_download(urls, destination, **kwargs):
        raise downloads.DownloadError(pathlib.Path(destination), [(urls[0], "HTTP Error 404")])

    monkeypatch.setattr(unifi.downloads, "download_file", failing_download)

    result = unifi.run_task(_context(tmp_path))

    assert result.status == TaskStatus.FAILED
    assert result.summary.startswith("installer step failed")
    assert commands == []


def test_ensure_java_installs_runtime(monkeypatch) -> None:
    installed = []
    monkeypatch.setattr(unifi, "find_java", lambda: None)

    def fake_install(spec, *, dry_run=False, **kwargs):
        installed.append(spec.id)
        return packages.PackageOutcome(spec.id, "winget", packages.STATE_INSTALLED, 0)

    monkeypatch.setattr(unifi.packages, "install_package", fake_install)

    step = unifi.ensure_java("EclipseAdoptium.Temurin.17.JRE")

    assert step.ok is True
    assert installed == ["EclipseAdoptium.Temurin.17.JRE"]
