"""!
@brief Installer and script downloads with retries and mirror fallback.
@details Vendors move installers between CDNs, so every download takes an
ordered list of URLs. Each URL is retried with exponential backoff before the
next one is tried. Data is written to ``<name>.part`` and renamed into place
only after the optional SHA-256 check passes, so a truncated file never
looks complete.
"""
from __future__ import annotations

import hashlib
import http.client
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from . import exec_utils, logging_ext, version

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 2.0
DEFAULT_TIMEOUT = 120
_CHUNK_SIZE = 1024 * 1024


class DownloadError(RuntimeError):
    """!
    @brief Raised when every source for a download failed.
    @details ``failures`` holds one ``(url, reason)`` pair per failed attempt.
    """

    def __init__(self, destination: Path, failures: Sequence[tuple[str, str]]) -> None:
        self.destination = destination
        self.failures = list(failures)
        detail = "; ".join(f"{url}: {reason}" for url, reason in self.failures) or "no sources"
        super().__init__(f"Unable to download {destination.name}: {detail}")


def _user_agent() -> str:
    return f"FleetTuneup/{version.__version__}"


def _declared_length(response) -> Optional[int]:
    value = response.headers.get("Content-Length")
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _fetch_once(url: str, partial: Path, *, timeout: float) -> str:
    """!
    @brief Stream ``url`` into ``partial`` and return the SHA-256 hex digest.
    @throws OSError When the body is shorter or longer than its
    ``Content-Length``; a closed connection otherwise looks like a clean end.
    """

    request = urllib.request.Request(url, headers={"User-Agent": _user_agent()})
    digest = hashlib.sha256()
    written = 0
    with urllib.request.urlopen(request, timeout=timeout) as response, partial.open("wb") as handle:
        declared = _declared_length(response)
        while True:
            chunk = response.read(_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            handle.write(chunk)
            written += len(chunk)
    if declared is not None and written != declared:
        raise OSError(f"incomplete download: received {written} of {declared} bytes")
    return digest.hexdigest()


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def download_file(
    urls: Sequence[str] | str,
    destination: Path | str,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    backoff: float = DEFAULT_BACKOFF,
    timeout: float = DEFAULT_TIMEOUT,
    dry_run: bool = False,
    expected_sha256: Optional[str] = None,
) -> Path:
    """!
    @brief Download the first available URL in ``urls`` to ``destination``.
    @param attempts Tries per URL; the delay after try ``n`` is
    ``backoff * 2 ** (n - 1)`` seconds.
    @param expected_sha256 Hex digest the file must match; mismatches count as
    a failed attempt.
    @returns ``destination`` as a :class:`Path`.
    @throws DownloadError When every URL and attempt failed.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()
    target = Path(destination)
    sources = [urls] if isinstance(urls, str) else list(urls)

    if dry_run:
        human_logger.info("Would download %s from %s [dry-run]", target.name, sources[0] if sources else "?")
        return target

    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(target.name + ".part")
    failures: List[tuple[str, str]] = []

    for url in sources:
        for attempt in range(1, max(1, attempts) + 1):
            human_logger.info("Downloading %s (attempt %d/%d)", url, attempt, attempts)
            try:
                digest = _fetch_once(url, partial, timeout=timeout)
            except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
                _discard(partial)
                reason = str(getattr(exc, "reason", exc))
            else:
                if expected_sha256 and digest.lower() != expected_sha256.lower():
                    _discard(partial)
                    reason = f"sha256 mismatch (got {digest})"
                else:
                    partial.replace(target)
                    machine_logger.info(
                        "download_complete",
                        extra={
                            "event": "download_complete",
                            "url": url,
                            "path": str(target),
                            "sha256": digest,
                            "attempt": attempt,
                        },
                    )
                    return target

            failures.append((url, reason))
            machine_logger.warning(
                "download_failed",
                extra={"event": "download_failed", "url": url, "attempt": attempt, "reason": reason},
            )
            human_logger.warning("Download of %s failed: %s", url, reason)
            if attempt < attempts:
                time.sleep(backoff * 2 ** (attempt - 1))

    raise DownloadError(target, failures)


def script_url(base_url: str, name: str) -> str:
    return f"{base_url.rstrip('/')}/{name.lstrip('/')}"


def fetch_script(
    name: str,
    base_url: str,
    destination: Path | str,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    dry_run: bool = False,
) -> Path:
    """!
    @brief Download the child script ``name`` from the script host into ``destination``.
    @details ``destination`` may be a directory, in which case the script keeps
    its name.
    """

    target = Path(destination)
    if target.is_dir() or not target.suffix:
        target = target / Path(name).name
    return download_file([script_url(base_url, name)], target, attempts=attempts, dry_run=dry_run)


def script_command(path: Path | str, parameters: Mapping[str, object] | None = None) -> List[str]:
    """!
    @brief Build ``powershell -File`` arguments; ``True`` values become switches.
    """

    command = [
        exec_utils.POWERSHELL_EXECUTABLE,
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-File",
        str(path),
    ]
    for key, value in (parameters or {}).items():
        if value is None or value is False:
            continue
        command.append(f"-{key}")
        if value is not True:
            command.append(str(value))
    return command


def run_script(
    path: Path | str,
    parameters: Mapping[str, object] | None = None,
    *,
    dry_run: bool = False,
    timeout: float | None = None,
) -> exec_utils.CommandResult:
    return exec_utils.run_command(
        script_command(path, parameters),
        event="child_script",
        timeout=timeout,
        dry_run=dry_run,
        human_message=f"Running {Path(path).name}",
        extra={"script": str(path)},
    )


__all__ = [
    "DownloadError",
    "download_file",
    "fetch_script",
    "run_script",
    "script_command",
    "script_url",
]
