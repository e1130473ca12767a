"""
liveness.py - Is the holder of a mate or lock still around?

Two signals are used:
- PID liveness: the process recorded on a claim or lock file still exists.
- Session freshness: the agent session directory exists and was touched
  within the stale window.

Both live behind module-level functions so tests can monkeypatch them.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_WINDOWS = sys.platform == "win32"
_PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
_STILL_ACTIVE = 259


def _is_pid_alive_windows(pid: int) -> bool:
    # os.kill on Windows terminates the target, so query the handle instead
    import ctypes

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]
    handle = kernel32.OpenProcess(_PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
    if not handle:
        # Access denied still means the process exists
        return ctypes.get_last_error() == 5
    try:
        exit_code = ctypes.c_ulong()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return True
        return exit_code.value == _STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)


def is_pid_alive(pid: Optional[int]) -> bool:
    """True if a process with this PID exists."""
    if not pid or pid <= 0:
        return False
    if _WINDOWS:
        return _is_pid_alive_windows(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OSError as e:
        logger.debug("Liveness probe for pid %d failed: %s", pid, e)
        return False
    return True


def is_session_stale(
    session_id: str,
    sessions_dir: Path,
    stale_minutes: float,
    now: Optional[float] = None,
) -> bool:
    """True if the session directory is missing or older than stale_minutes.

    Args:
        session_id: Agent session id (a directory name under sessions_dir).
        sessions_dir: Directory holding one subdirectory per session.
        stale_minutes: Age after which an untouched session is stale.
        now: Current epoch seconds; defaults to time.time().
    """
    if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
        return True
    try:
        mtime = (sessions_dir / session_id).stat().st_mtime
    except OSError:
        return True
    now = time.time() if now is None else now
    return (now - mtime) / 60.0 > stale_minutes
