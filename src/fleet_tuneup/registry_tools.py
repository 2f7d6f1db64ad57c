"""!
@brief Read-only registry helpers.
@details Thin wrappers over :mod:`winreg` that return defaults instead of
raising when a key or value is absent, which is the normal case on machines
without the product being queried. On non-Windows hosts every lookup returns
the default so dry-runs work on build agents.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

try:  # pragma: no cover - exercised through mocks on non-Windows platforms.
    import winreg
except ImportError:  # pragma: no cover - handled gracefully during tests.
    winreg = None  # type: ignore[assignment]

if winreg is not None:  # pragma: no branch - deterministic assignments.
    HKLM = winreg.HKEY_LOCAL_MACHINE
    HKCU = winreg.HKEY_CURRENT_USER
else:  # pragma: no cover - non-Windows CI
    HKLM = 0x80000002
    HKCU = 0x80000001


@contextmanager
def open_key(root: int, path: str) -> Iterator[Any]:
    """!
    @brief Context manager that mirrors ``winreg.OpenKey`` and closes the handle.
    @throws FileNotFoundError When ``winreg`` is unavailable or the key is absent.
    """

    if winreg is None:
        raise FileNotFoundError("Windows registry APIs are unavailable on this platform")
    handle = winreg.OpenKey(root, path, 0, winreg.KEY_READ)
    try:
        yield handle
    finally:
        winreg.CloseKey(handle)


def get_value(root: int, path: str, value_name: str, default: Any | None = None) -> Any | None:
    """!
    @brief Read ``value_name`` beneath ``root``/``path``.
    """

    try:
        with open_key(root, path) as handle:
            value, _ = winreg.QueryValueEx(handle, value_name)  # type: ignore[union-attr]
            return value
    except OSError:
        return default


def key_exists(root: int, path: str) -> bool:
    try:
        with open_key(root, path):
            return True
    except OSError:
        return False


__all__ = ["HKCU", "HKLM", "get_value", "key_exists", "open_key"]
