"""
locking.py - Advisory per-mate lock files.

A lock is <mates_dir>/<name>.lock created with O_CREAT | O_EXCL and holding
the owner's PID. A lock whose PID is no longer alive is removed and
retaken. Waiting uses jittered exponential backoff and gives up with
LockTimeout at a hard deadline.

Two processes that both find the same dead holder may both remove the
lock file; the later removal can delete the earlier taker's fresh lock.
The window is a few microseconds and only opens after a holder crashed.

Usage:
    from tiller.mate.locking import MateLock

    with MateLock(paths.mates_dir / "ellis-reed.lock", timeout=5.0):
        ...  # read-modify-write the mate file
"""

from __future__ import annotations

import logging
import os
import random
import time
from pathlib import Path
from typing import Callable, Optional

from ..runtime.errors import LockTimeout
from . import liveness

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
BACKOFF_BASE_SECONDS = 0.01
BACKOFF_MAX_SECONDS = 0.25


class MateLock:
    """Exclusive lock file with dead-holder takeover."""

    def __init__(
        self,
        lock_path: Path,
        timeout: float = 5.0,
        pid: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.lock_path = Path(lock_path)
        self.timeout = timeout
        self.pid = pid or os.getpid()
        self._sleep = sleep
        self._clock = clock
        self.acquired = False

    @property
    def name(self) -> str:
        name = self.lock_path.name
        return name[: -len(LOCK_SUFFIX)] if name.endswith(LOCK_SUFFIX) else name

    def _try_create(self) -> bool:
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(self.pid).encode("ascii"))
        finally:
            os.close(fd)
        return True

    def _read_holder(self) -> Optional[int]:
        """PID written in the lock file, None if unreadable or mid-write."""
        try:
            raw = self.lock_path.read_text(encoding="ascii").strip()
        except (OSError, UnicodeDecodeError):
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    def _remove_if_abandoned(self) -> bool:
        """Remove the lock if its holder is dead. True if removed."""
        holder = self._read_holder()
        if holder is not None:
            if liveness.is_pid_alive(holder):
                return False
            logger.warning("Removing lock %s held by dead pid %d", self.lock_path, holder)
        else:
            # Empty or garbled: only abandoned once it outlives a full wait window
            try:
                age = time.time() - self.lock_path.stat().st_mtime
            except OSError:
                return False
            if age < self.timeout:
                return False
            logger.warning("Removing unreadable lock %s (age %.1fs)", self.lock_path, age)

        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        return True

    def acquire(self) -> "MateLock":
        """Take the lock, waiting up to timeout seconds.

        Raises:
            LockTimeout: If the lock is still held by a live process at the
                deadline.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        start = self._clock()
        deadline = start + self.timeout
        attempt = 0

        while True:
            if self._try_create():
                self.acquired = True
                logger.debug("Acquired %s after %d retries", self.lock_path, attempt)
                return self
            if self._remove_if_abandoned():
                continue

            now = self._clock()
            if now >= deadline:
                raise LockTimeout(self.name, str(self.lock_path), now - start)

            delay = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** min(attempt, 10)))
            delay = delay / 2 + random.uniform(0, delay / 2)
            self._sleep(min(delay, max(deadline - now, 0.0)))
            attempt += 1

    def release(self) -> None:
        """Remove the lock if this process still owns it."""
        if not self.acquired:
            return
        self.acquired = False
        if self._read_holder() != self.pid:
            logger.warning("Lock %s no longer ours at release; leaving it", self.lock_path)
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "MateLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
