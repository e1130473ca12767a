"""
versioned.py - Optimistic concurrency for run files.

Many independent processes read-modify-write the same run file. Every
mutating path loads a VersionedRun, mutates it in memory, and saves with
save_if_fresh(), which re-checks the on-disk version token immediately
before writing and raises StaleWriteError if another writer got there
first. Nothing here retries; the caller decides whether its mutation is
safe to reapply on a fresh load.

Version tokens combine the file's mtime in nanoseconds with a SHA256 prefix
of the file content ("<mtime_ns>:<sha16>"). mtime resolution depends on the
filesystem (1s on HFS+, 2s on FAT32), so two writes inside one tick can
share an mtime; the content hash still differs because every versioned save
bumps the run's revision counter. The token is never written to disk.

A small window remains between the freshness check and the rename. It is
detected on the next save by whichever writer loses, not prevented.

Usage:
    from tiller.runtime.versioned import load_versioned, save_if_fresh

    versioned = load_versioned(store, "run-abc123")
    apply_transition(versioned.run, "active/paused", actor="agent")
    new_version = save_if_fresh(store, versioned)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .errors import RunNotFoundError, StaleReadError, StaleWriteError, ValidationError
from .storage import RunStore
from .types import Run, RunId, _utcnow, run_from_dict

logger = logging.getLogger(__name__)


@dataclass
class VersionedRun:
    """A run together with the version token observed when it was read.

    Attributes:
        run: The loaded run.
        version: Version token captured at load (or last save).
        read_at: When the run was read.
    """

    run: Run
    version: str
    read_at: datetime


def _make_token(mtime_ns: int, content: bytes) -> str:
    digest = hashlib.sha256(content).hexdigest()[:16]
    return f"{mtime_ns}:{digest}"


def _stat_token(st: os.stat_result) -> str:
    return f"{st.st_mtime_ns}:{st.st_size}:{st.st_ino}"


def current_version(store: RunStore, run_id: RunId) -> Optional[str]:
    """Return the version token of the run file on disk, or None if absent."""
    path = store.run_path(run_id)
    try:
        st = os.stat(path)
        content = path.read_bytes()
    except FileNotFoundError:
        return None
    return _make_token(st.st_mtime_ns, content)


def load_versioned(store: RunStore, run_id: RunId) -> VersionedRun:
    """Load a run with its version token.

    The file is stat'ed before and after the read; if it changed in between,
    the read may mix two versions and is refused.

    Raises:
        RunNotFoundError: If the run file does not exist.
        StaleReadError: If the file changed during the read.
        ValidationError: If the file is not a valid run record.
    """
    path = store.run_path(run_id)
    try:
        before = os.stat(path)
        content = path.read_bytes()
        after = os.stat(path)
    except FileNotFoundError:
        raise RunNotFoundError(run_id) from None

    if _stat_token(before) != _stat_token(after):
        raise StaleReadError(run_id, _stat_token(before), _stat_token(after))

    try:
        run = run_from_dict(json.loads(content.decode("utf-8")))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Run file for '{run_id}' is not valid JSON: {e}") from e

    version = _make_token(after.st_mtime_ns, content)
    logger.debug("Loaded run '%s' at version %s", run_id, version)
    return VersionedRun(run=run, version=version, read_at=_utcnow())


def save_if_fresh(store: RunStore, versioned: VersionedRun) -> str:
    """Save a run only if nobody wrote it since it was loaded.

    On success the VersionedRun is updated in place with the new token so
    the caller can keep mutating and saving.

    Returns:
        The new version token.

    Raises:
        StaleWriteError: If the on-disk version differs from versioned.version.
    """
    run = versioned.run
    actual = current_version(store, run.id)
    if actual != versioned.version:
        logger.debug(
            "Stale write for run '%s': expected %s, found %s", run.id, versioned.version, actual
        )
        raise StaleWriteError(run.id, versioned.version, actual)

    run.revision += 1
    store.save(run)

    new_version = current_version(store, run.id)
    versioned.version = new_version or ""
    versioned.read_at = _utcnow()
    return versioned.version


def update_versioned(
    store: RunStore, run_id: RunId, mutate: Callable[[Run], None]
) -> VersionedRun:
    """Load, mutate in memory, and save if fresh, in one call.

    Exceptions from mutate propagate and nothing is written.
    """
    versioned = load_versioned(store, run_id)
    mutate(versioned.run)
    save_if_fresh(store, versioned)
    return versioned
