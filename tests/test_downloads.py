"""!
@brief Download retry and child script tests.
@details Network access is replaced by a fake ``urlopen`` serving canned
responses; ``time.sleep`` is recorded instead of waited on.
"""

from __future__ import annotations

import hashlib
import io
import pathlib
import sys
import urllib.error
from typing import Dict, List

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fleet_tuneup import downloads  # noqa: E402

PAYLOAD = b"MZ" + b"\x00" * 4096


class _FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, declared: int | None = None) -> None:
        super().__init__(body)
        self.headers = {"Content-Length": str(len(body) if declared is None else declared)}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


def _install_fake(monkeypatch, outcomes: Dict[str, List[object]]) -> Dict[str, List]:
    """!
    @brief Serve ``outcomes[url]`` in order: bytes are bodies, exceptions are raised.
    @details A ``(body, length)`` pair sends ``body`` under a ``Content-Length``
    of ``length``.
    """

    record: Dict[str, List] = {"requests": [], "sleeps": [], "agents": []}

    def fake_urlopen(request, timeout=None):
        record["requests"].append(request.full_url)
        record["agents"].append(request.get_header("User-agent"))
        outcome = outcomes[request.full_url].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, tuple):
            return _FakeResponse(*outcome)
        return _FakeResponse(outcome)

    monkeypatch.setattr(downloads.urllib.request, "urlopen", fake_urlopen)
    monkeypatch.setattr(downloads.time, "sleep", record["sleeps"].append)
    return record


def test_download_file_retries_with_backoff(monkeypatch, tmp_path) -> None:
    url = "https://dl.example.test/tool.exe"
    record = _install_fake(
        monkeypatch,
        {url: [urllib.error.URLError("timed out"), urllib.error.URLError("reset"), PAYLOAD]},
    )

    target = downloads.download_file(url, tmp_path / "tool.exe", backoff=1.5)

    assert target.read_bytes() == PAYLOAD
    assert record["sleeps"] == [1.5, 3.0]
    assert record["agents"][0].startswith("FleetTuneup/")
    assert not (tmp_path / "tool.exe.part").exists()


def test_download_file_falls_back_to_mirror(monkeypatch, tmp_path) -> None:
    primary = "https://primary.example.test/UniFi-installer.exe"
    mirror = "https://mirror.example.test/UniFi-installer.exe"
    record = _install_fake(
        monkeypatch,
        {
            primary: [urllib.error.HTTPError(primary, 404, "Not Found", {}, None)] * 2,
            mirror: [PAYLOAD],
        },
    )

    target = downloads.download_file([primary, mirror], tmp_path / "UniFi-installer.exe", attempts=2)

    assert target.exists()
    assert record["requests"] == [primary, primary, mirror]
    assert record["sleeps"] == [2.0]


def test_download_file_rejects_checksum_mismatch(monkeypatch, tmp_path) -> None:
    url = "https://dl.example.test/tool.exe"
    _install_fake(monkeypatch, {url: [PAYLOAD]})

    with pytest.raises(downloads.DownloadError) as excinfo:
        downloads.download_file(url, tmp_path / "tool.exe", attempts=1, expected_sha256="0" * 64)

    assert "sha256 mismatch" in str(excinfo.value)
    assert excinfo.value.failures[0][0] == url
    assert not (tmp_path / "tool.exe").exists()
    assert not (tmp_path / "tool.exe.part").exists()


def test_download_file_accepts_matching_checksum(monkeypatch, tmp_path) -> None:
    url = "https://dl.example.test/tool.exe"
    _install_fake(monkeypatch, {url: [PAYLOAD]})

    target = downloads.download_file(
        url,
        tmp_path / "nested" / "tool.exe",
        expected_sha256=hashlib.sha256(PAYLOAD).hexdigest().upper(),
    )

    assert target.read_bytes() == PAYLOAD


def test_download_file_dry_run_does_not_fetch(monkeypatch, tmp_path) -> None:
    record = _install_fake(monkeypatch, {})

    target = downloads.download_file("https://dl.example.test/x.exe", tmp_path / "x.exe", dry_run=True)

    assert target == tmp_path / "x.exe"
    assert record["requests"] == []
    assert not target.exists()


def test_fetch_script_keeps_name_in_directory(monkeypatch, tmp_path) -> None:
    url = "https://scripts.example.test/fleet/wget.ps1"
    record = _install_fake(monkeypatch, {url: [b"Write-Output 'ok'"]})

    target = downloads.fetch_script("wget.ps1", "https://scripts.example.test/fleet/", tmp_path)

    assert target == tmp_path / "wget.ps1"
    assert record["requests"] == [url]


def test_script_command_switches_and_values() -> None:
    command = downloads.script_command(
        "C:\\Work\\unifi.ps1",
        {"Force": True, "Version": "8.6.9", "Skip": False, "Proxy": None},
    )

    assert command[:7] == [
        "powershell.exe",
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-File",
        "C:\\Work\\unifi.ps1",
    ]
    assert command[7:] == ["-Force", "-Version", "8.6.9"]


def test_download_file_retries_truncated_body_then_uses_mirror(monkeypatch, tmp_path) -> None:
    primary = "https://dl.ui.com/unifi/8.6.9/UniFi-installer.exe"
    mirror = "https://dl-origin.ubnt.com/unifi/8.6.9/UniFi-installer.exe"
    record = _install_fake(
        monkeypatch,
        {
            primary: [(PAYLOAD[:10], len(PAYLOAD))] * 3,
            mirror: [PAYLOAD],
        },
    )

    target = downloads.download_file([primary, mirror], tmp_path / "UniFi-installer.exe", attempts=3)

    assert target.read_bytes() == PAYLOAD
    assert record["requests"] == [primary] * 3 + [mirror]
    assert not (tmp_path / "UniFi-installer.exe.part").exists()


def test_download_file_never_keeps_truncated_file(monkeypatch, tmp_path) -> None:
    url = "https://dl.example.test/tool.exe"
    _install_fake(monkeypatch, {url: [(PAYLOAD[:10], 1000)]})

    with pytest.raises(downloads.DownloadError) as excinfo:
        downloads.download_file(url, tmp_path / "tool.exe", attempts=1)

    assert "received 10 of 1000 bytes" in excinfo.value.failures[0][1]
    assert not (tmp_path / "tool.exe").exists()
    assert not (tmp_path / "tool.exe.part").exists()


def test_download_file_retries_protocol_errors(monkeypatch, tmp_path) -> None:
    url = "https://dl.example.test/tool.exe"
    _install_fake(
        monkeypatch,
        {url: [downloads.http.client.RemoteDisconnected("Remote end closed connection"), PAYLOAD]},
    )

    target = downloads.download_file(url, tmp_path / "tool.exe", attempts=2)

    assert target.read_bytes() == PAYLOAD


def test_run_script_passes_parameters_to_powershell(monkeypatch) -> None:
    calls: List[Dict[str, object]] = []

    def fake_run(command, *, event, dry_run=False, **kwargs):
        calls.append({"command": list(command), "event": event, "dry_run": dry_run, **kwargs})
        return downloads.exec_utils.CommandResult(
            command=list(command),
            returncode=0,
            stdout="",
            stderr="",
            duration=0.0,
            skipped=dry_run,
        )

    monkeypatch.setattr(downloads.exec_utils, "run_command", fake_run)

    result = downloads.run_script("C:\\Work\\wget.ps1", {"Baseline": True, "Retries": 2}, timeout=600)
    skipped = downloads.run_script("C:\\Work\\wget.ps1", dry_run=True)

    assert result.returncode == 0
    assert calls[0]["command"][5:] == ["-File", "C:\\Work\\wget.ps1", "-Baseline", "-Retries", "2"]
    assert calls[0]["event"] == "child_script"
    assert calls[0]["timeout"] == 600
    assert calls[0]["extra"] == {"script": "C:\\Work\\wget.ps1"}
    assert skipped.skipped is True
    assert calls[1]["dry_run"] is True
    assert calls[1]["command"][-1] == "C:\\Work\\wget.ps1"
