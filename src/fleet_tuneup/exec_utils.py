"""!
@brief Subprocess execution helpers with sanitised environments.
@details Centralises invocation of :func:`subprocess.run` so every maintenance
task inherits consistent logging, dry-run behaviour, and environment handling.
``winget``, ``powercfg``, ``sfc``, ``dism`` and PowerShell are all launched
through :func:`run_command` so telemetry stays uniform and child processes are
protected from leaked virtual environment variables.
"""

from __future__ import annotations

import json
import os
import subprocess
import time
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any

from . import logging_ext

POWERSHELL_EXECUTABLE = "powershell.exe"

_SANITIZE_BLOCKLIST = {
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONWARNINGS",
    "VIRTUAL_ENV",
    "PIP_REQUIRE_VIRTUALENV",
    "CONDA_PREFIX",
    "CONDA_DEFAULT_ENV",
    "PYENV_VERSION",
    "POETRY_ACTIVE",
    "__PYVENV_LAUNCHER__",
}


@dataclass
class CommandResult:
    """!
    @brief Outcome information from :func:`run_command`.
    @details Encapsulates the executed command, captured output streams,
    duration, and metadata describing dry-run or timeout states. A missing
    executable is reported with return code ``127``.
    """

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float
    skipped: bool = False
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and self.error is None


_GLOBAL_TIMEOUT: float | None = None


def set_global_timeout(timeout_seconds: float | int | None) -> None:
    """!
    @brief Apply a global timeout cap for all subprocess calls.
    @details When set, :func:`run_command` uses the minimum of the caller
    supplied timeout and this global limit so the CLI ``--timeout`` flag can
    enforce per-step ceilings.
    """

    global _GLOBAL_TIMEOUT
    if timeout_seconds is None:
        _GLOBAL_TIMEOUT = None
        return
    try:
        parsed = float(timeout_seconds)
    except (TypeError, ValueError):
        _GLOBAL_TIMEOUT = None
    else:
        _GLOBAL_TIMEOUT = parsed if parsed > 0 else None


def _resolve_timeout(requested: float | int | None) -> float | int | None:
    if _GLOBAL_TIMEOUT is None:
        return requested
    if requested is None:
        return _GLOBAL_TIMEOUT
    return min(_GLOBAL_TIMEOUT, requested)


def normalize_exit_code(code: int) -> int:
    """!
    @brief Fold an exit code into its unsigned 32-bit representation.
    @details Windows reports HRESULT-style exit codes such as ``0x8A15002B``
    as large unsigned integers, while some launchers surface the signed
    equivalent. Normalising lets callers compare against hexadecimal constants
    regardless of the source.
    """

    return int(code) & 0xFFFFFFFF


def _build_call_payload(
    command_list: Sequence[str],
    *,
    timeout: float | int | None,
    cwd: str | None,
    extra: Mapping[str, object] | None,
) -> MutableMapping[str, object]:
    payload: MutableMapping[str, object] = {
        "command": list(command_list),
        "timeout": timeout,
    }
    if cwd:
        payload["cwd"] = cwd
    if extra:
        for key, value in extra.items():
            if key not in {"event", "result"}:
                payload[key] = value
    return payload


def _build_result_payload(
    *,
    return_code: int,
    duration: float,
    stdout: str,
    stderr: str,
    error: str | None = None,
    timed_out: bool = False,
) -> dict[str, object]:
    return {
        "rc": return_code,
        "duration_ms": round(duration * 1000, 3),
        "stdout": stdout,
        "stderr": stderr,
        "error": error,
        "timed_out": timed_out,
    }


def sanitize_environment(
    *,
    base_env: Mapping[str, str] | None = None,
    inherit: bool = True,
    extra: Mapping[str, str] | None = None,
    remove: Iterable[str] | None = None,
) -> MutableMapping[str, str]:
    """!
    @brief Produce a subprocess environment stripped of virtualenv artefacts.
    @param base_env Source mapping to copy prior to sanitisation.
    @param inherit When ``True`` and ``base_env`` is ``None`` the host
    environment is used as a starting point.
    @param extra Mapping of overrides applied after sanitisation.
    @param remove Additional variable names to drop after the default blocklist.
    @returns Mutable mapping ready for subprocess invocation.
    """

    if base_env is not None:
        environment: MutableMapping[str, str] = {
            str(k): str(v) for k, v in base_env.items() if v is not None
        }
    elif inherit:
        environment = {str(k): str(v) for k, v in os.environ.items() if v is not None}
    else:
        environment = {}

    for key in _SANITIZE_BLOCKLIST:
        environment.pop(key, None)

    if remove is not None:
        for key in remove:
            environment.pop(key, None)

    if extra:
        for key, value in extra.items():
            environment[str(key)] = str(value)

    return environment


def run_command(
    command: Sequence[str] | str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
    env_overrides: Mapping[str, str] | None = None,
    env_remove: Iterable[str] | None = None,
    cwd: str | None = None,
    check: bool = False,
) -> CommandResult:
    """!
    @brief Execute ``command`` with consistent logging and environment hygiene.
    @details Emits ``*_plan`` and ``*_result`` machine-log events, logs human
    friendly messaging, and supports dry-run mode which echoes the intended
    command without executing it.
    @param command Sequence of command arguments.
    @param event Base name for structured log events.
    @param timeout Optional timeout (seconds) passed to :func:`subprocess.run`.
    @param dry_run When ``True`` no subprocess is spawned and the result is
    marked as ``skipped``.
    @param human_message Optional message emitted to the human logger before
    execution.
    @param extra Additional metadata merged into machine log payloads.
    @param env Explicit environment mapping to start from prior to sanitisation.
    @param inherit_env Whether to inherit :data:`os.environ` when ``env`` is
    ``None``.
    @param env_overrides Mapping applied after sanitisation.
    @param env_remove Additional variables to remove from the environment.
    @param cwd Working directory supplied to :func:`subprocess.run`.
    @param check When ``True`` non-zero exit codes raise
    :class:`subprocess.CalledProcessError` after logging the result.
    @returns :class:`CommandResult` describing the observed outcome.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    if isinstance(command, str):
        command_list = [command]
    else:
        command_list = [str(part) for part in command]

    effective_timeout: Any = _resolve_timeout(timeout)
    call_payload = _build_call_payload(
        command_list,
        timeout=effective_timeout,
        cwd=cwd,
        extra=extra,
    )

    machine_logger.info(
        f"{event}_plan",
        extra={"event": f"{event}_plan", "call": call_payload, "dry_run": dry_run},
    )

    if dry_run:
        if human_message:
            human_logger.info("%s [dry-run]", human_message)
        else:
            human_logger.info("Dry-run: would execute %s", " ".join(command_list))
        machine_logger.info(
            f"{event}_dry_run",
            extra={
                "event": f"{event}_dry_run",
                "call": call_payload,
                "result": _build_result_payload(return_code=0, duration=0.0, stdout="", stderr=""),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=0,
            stdout="",
            stderr="",
            duration=0.0,
            skipped=True,
        )

    if human_message:
        human_logger.info(human_message)

    sanitized_env = sanitize_environment(
        base_env=env,
        inherit=inherit_env,
        extra=env_overrides,
        remove=env_remove,
    )

    start = time.monotonic()
    try:
        completed = subprocess.run(  # noqa: S603 - intentional command execution
            command_list,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=effective_timeout,
            check=False,
            env=sanitized_env,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        duration = time.monotonic() - start
        human_logger.error("Command not found: %s", command_list[0])
        machine_logger.error(
            f"{event}_missing",
            extra={
                "event": f"{event}_missing",
                "call": call_payload,
                "result": _build_result_payload(
                    return_code=127,
                    duration=duration,
                    stdout="",
                    stderr="",
                    error=str(exc),
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=127,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )
    except subprocess.TimeoutExpired as exc:
        duration = time.monotonic() - start
        stdout = _decode_partial(exc.stdout)
        stderr = _decode_partial(exc.stderr)
        human_logger.error("Command timed out after %.1fs: %s", duration, command_list[0])
        machine_logger.error(
            f"{event}_timeout",
            extra={
                "event": f"{event}_timeout",
                "call": call_payload,
                "result": _build_result_payload(
                    return_code=1,
                    duration=duration,
                    stdout=stdout,
                    stderr=stderr,
                    error="timeout",
                    timed_out=True,
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout=stdout,
            stderr=stderr,
            duration=duration,
            timed_out=True,
            error="timeout",
        )
    except OSError as exc:
        duration = time.monotonic() - start
        human_logger.error("Failed to execute %s: %s", command_list[0], exc)
        machine_logger.error(
            f"{event}_error",
            extra={
                "event": f"{event}_error",
                "call": call_payload,
                "result": _build_result_payload(
                    return_code=1,
                    duration=duration,
                    stdout="",
                    stderr="",
                    error=str(exc),
                ),
            },
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )

    duration = time.monotonic() - start
    stdout = str(completed.stdout or "")
    stderr = str(completed.stderr or "")
    machine_logger.info(
        f"{event}_result",
        extra={
            "event": f"{event}_result",
            "call": call_payload,
            "result": _build_result_payload(
                return_code=completed.returncode,
                duration=duration,
                stdout=stdout,
                stderr=stderr,
            ),
        },
    )

    if completed.returncode != 0:
        human_logger.debug("Command %s exited with %s", command_list[0], completed.returncode)

    result = CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=stdout,
        stderr=stderr,
        duration=duration,
    )

    if check and completed.returncode != 0:
        raise subprocess.CalledProcessError(
            completed.returncode,
            command_list,
            output=stdout,
            stderr=stderr,
        )

    return result


def _decode_partial(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def powershell_command(script: str) -> list[str]:
    """!
    @brief Build the argument vector used to run an inline PowerShell script.
    """

    return [
        POWERSHELL_EXECUTABLE,
        "-NoProfile",
        "-NonInteractive",
        "-ExecutionPolicy",
        "Bypass",
        "-Command",
        script,
    ]


def run_powershell(
    script: str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
) -> CommandResult:
    """!
    @brief Execute an inline PowerShell script through :func:`run_command`.
    """

    return run_command(
        powershell_command(script),
        event=event,
        timeout=timeout,
        dry_run=dry_run,
        human_message=human_message,
        extra=extra,
    )


def extract_json_payload(stdout: str) -> Any | None:
    """!
    @brief Parse the last JSON document printed on ``stdout``.
    @details PowerShell scripts interleave progress text with their final
    ``ConvertTo-Json`` output. The parser walks backwards over lines until a
    prefix that starts with ``{`` or ``[`` decodes cleanly.
    @returns Decoded JSON value or ``None`` when nothing parses.
    """

    lines = stdout.splitlines()
    for index in range(len(lines) - 1, -1, -1):
        candidate = lines[index].lstrip()
        if not candidate.startswith(("{", "[")):
            continue
        blob = "\n".join(lines[index:]).strip()
        try:
            return json.loads(blob)
        except ValueError:
            continue
    return None


def run_powershell_json(
    script: str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
) -> tuple[CommandResult, Any | None]:
    """!
    @brief Run a PowerShell script and decode the JSON document it prints.
    @returns Tuple of the raw :class:`CommandResult` and the decoded payload,
    which is ``None`` for dry-runs or when the script printed no JSON.
    """

    result = run_powershell(
        script,
        event=event,
        timeout=timeout,
        dry_run=dry_run,
        human_message=human_message,
        extra=extra,
    )
    if result.skipped:
        return result, None
    payload = extract_json_payload(result.stdout)
    if payload is None and result.stdout.strip():
        logging_ext.get_machine_logger().warning(
            f"{event}_unparsed",
            extra={"event": f"{event}_unparsed", "stdout_tail": result.stdout[-2000:]},
        )
    return result, payload


__all__ = [
    "CommandResult",
    "POWERSHELL_EXECUTABLE",
    "extract_json_payload",
    "normalize_exit_code",
    "powershell_command",
    "run_command",
    "run_powershell",
    "run_powershell_json",
    "sanitize_environment",
    "set_global_timeout",
]
