"""
registry.py - Per-mate identity registry.

Layout:

    .tiller/
      mates/
        <name>.json     # one record per mate
        <name>.lock     # present only while a writer holds the mate

Every read-modify-write happens under the mate's lock file. A mate held by
a PID that no longer exists can be claimed by anyone; gc() also releases
mates whose holder's session went stale.

Usage:
    from tiller.mate import MateRegistry, MateState

    registry = MateRegistry(paths)
    registry.add("ellis-reed")
    registry.claim("ellis-reed", ctx, state=MateState.SAILING)
    released = registry.gc()
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from ..config.runtime_config import (
    TillerPaths,
    get_lock_timeout_seconds,
    get_session_stale_minutes,
    get_sessions_dir,
    resolve_paths,
)
from ..runtime.context import AgentContext
from ..runtime.errors import MateConflict, MateNotFoundError, ValidationError
from ..runtime.storage import _atomic_write_json, _load_json_safe
from ..runtime.types import _utcnow
from . import liveness
from .locking import LOCK_SUFFIX, MateLock
from .types import Mate, MateState, mate_from_dict, mate_to_dict, validate_mate_name

# Module logger
logger = logging.getLogger(__name__)

HELD_STATES = (MateState.CLAIMED, MateState.SAILING)


def _clear_claim(mate: Mate) -> None:
    mate.state = MateState.AVAILABLE
    mate.claimed_by = None
    mate.claimed_by_session = None
    mate.claimed_at = None


class MateRegistry:
    """Registry of mate identities, one JSON file per mate."""

    def __init__(
        self,
        paths: Optional[TillerPaths] = None,
        lock_timeout: Optional[float] = None,
        sessions_dir: Optional[Path] = None,
        session_stale_minutes: Optional[float] = None,
    ):
        self.paths = paths or resolve_paths()
        root = self.paths.root
        self.mates_dir = self.paths.mates_dir
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else get_lock_timeout_seconds(root)
        )
        self.sessions_dir = sessions_dir or get_sessions_dir(root)
        self.session_stale_minutes = (
            session_stale_minutes
            if session_stale_minutes is not None
            else get_session_stale_minutes(root)
        )
        self._migrated = False

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def mate_path(self, name: str) -> Path:
        return self.mates_dir / f"{validate_mate_name(name)}.json"

    def lock(self, name: str) -> MateLock:
        return MateLock(
            self.mates_dir / f"{validate_mate_name(name)}{LOCK_SUFFIX}",
            timeout=self.lock_timeout,
        )

    def _migrate_if_needed(self) -> None:
        """Split a legacy single-file mates.json into per-mate files, once."""
        if self._migrated:
            return
        legacy = self.paths.legacy_mates_file
        if not legacy.exists():
            self._migrated = True
            return

        try:
            with open(legacy, encoding="utf-8") as f:
                data = json.load(f)
            records = (data.get("mates") or {}).values() if isinstance(data, dict) else []
            count = 0
            for record in records:
                mate = mate_from_dict(record)
                target = self.mate_path(mate.name)
                if target.exists():
                    continue
                _atomic_write_json(target, mate_to_dict(mate))
                count += 1
            legacy.rename(legacy.with_name(legacy.name + ".migrated"))
            logger.info("Migrated %d mates from %s", count, legacy)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            # Leave the legacy file in place so the next call retries
            logger.warning("Mate registry migration from %s failed: %s", legacy, e)
            return
        self._migrated = True

    def _load(self, name: str) -> Optional[Mate]:
        data = _load_json_safe(self.mate_path(name), f"mate '{name}'")
        if data is None:
            return None
        try:
            return mate_from_dict(data)
        except ValidationError as e:
            logger.warning("Skipping malformed mate '%s': %s", name, e)
            return None

    def _save(self, mate: Mate) -> None:
        _atomic_write_json(self.mate_path(mate.name), mate_to_dict(mate))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, name: str) -> Optional[Mate]:
        self._migrate_if_needed()
        return self._load(name)

    def require(self, name: str) -> Mate:
        mate = self.get(name)
        if mate is None:
            raise MateNotFoundError(name)
        return mate

    def list_mates(self) -> List[Mate]:
        """All readable mates, sorted by name."""
        self._migrate_if_needed()
        if not self.mates_dir.is_dir():
            return []

        mates: List[Mate] = []
        for path in sorted(self.mates_dir.glob("*.json")):
            try:
                validate_mate_name(path.stem)
            except ValidationError:
                continue
            mate = self._load(path.stem)
            if mate is not None:
                mates.append(mate)
        return mates

    def get_by_session(self, session_id: str) -> Optional[Mate]:
        """Mate currently held by an agent session."""
        for mate in self.list_mates():
            if mate.claimed_by_session == session_id and not mate.is_available:
                return mate
        return None

    def is_session_stale(self, session_id: str, now: Optional[datetime] = None) -> bool:
        return liveness.is_session_stale(
            session_id,
            self.sessions_dir,
            self.session_stale_minutes,
            now=now.timestamp() if now else None,
        )

    def is_stale(self, mate: Mate, now: Optional[datetime] = None) -> bool:
        """True if a held mate's process is dead or its session went stale."""
        if mate.is_available:
            return False
        if mate.claimed_by and not liveness.is_pid_alive(mate.claimed_by):
            return True
        if mate.claimed_by_session and self.is_session_stale(mate.claimed_by_session, now):
            return True
        return False

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def add(self, name: str, now: Optional[datetime] = None) -> Mate:
        """Register a new available mate.

        Raises:
            ValidationError: If the name is invalid or already registered.
        """
        self._migrate_if_needed()
        now = now or _utcnow()
        with self.lock(name):
            if self.mate_path(name).exists():
                raise ValidationError(f"Mate already exists: {name}")
            mate = Mate(name=name, created_at=now, updated_at=now)
            self._save(mate)
        logger.info("Added mate %s", name)
        return mate

    def update(
        self,
        name: str,
        mutate: Callable[[Mate], None],
        now: Optional[datetime] = None,
    ) -> Mate:
        """Apply mutate to a mate under its lock and persist the result.

        Raises:
            MateNotFoundError: If the mate does not exist.
            LockTimeout: If the lock cannot be taken in time.
        """
        self._migrate_if_needed()
        with self.lock(name):
            mate = self._load(name)
            if mate is None:
                raise MateNotFoundError(name)
            mutate(mate)
            mate.updated_at = now or _utcnow()
            self._save(mate)
        return mate

    def claim(
        self,
        name: str,
        ctx: AgentContext,
        state: Union[MateState, str] = MateState.CLAIMED,
        plan: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Mate:
        """Take a mate for ctx's process.

        A mate held by another live process is refused. A mate held by a
        dead process is taken over without waiting for gc().

        Raises:
            MateConflict: If another live process holds the mate.
            ValidationError: If state is not "claimed" or "sailing".
        """
        try:
            state = MateState(state)
        except ValueError:
            raise ValidationError(f"Unknown mate state: {state!r}") from None
        if state not in HELD_STATES:
            raise ValidationError(f"Cannot claim a mate into state '{state.value}'")
        now = now or _utcnow()

        def _claim(mate: Mate) -> None:
            holder = mate.claimed_by
            if holder and holder != ctx.pid:
                if liveness.is_pid_alive(holder):
                    raise MateConflict(
                        name,
                        f"Mate '{name}' is {mate.state.value} by live pid {holder}",
                        holder_pid=holder,
                    )
                logger.warning("Reclaiming mate %s from dead pid %d", name, holder)
            elif (
                not holder
                and not mate.is_available
                and mate.claimed_by_session
                and mate.claimed_by_session != ctx.session_id
                and not self.is_session_stale(mate.claimed_by_session, now)
            ):
                raise MateConflict(
                    name,
                    f"Mate '{name}' is held by live session {mate.claimed_by_session}",
                )

            if holder != ctx.pid or mate.claimed_at is None:
                mate.claimed_at = now
            mate.state = state
            mate.claimed_by = ctx.pid
            mate.claimed_by_session = ctx.session_id
            if plan is not None:
                mate.assigned_plan = plan

        mate = self.update(name, _claim, now=now)
        logger.info("Mate %s %s by pid %d", name, state.value, ctx.pid)
        return mate

    def release(
        self,
        name: str,
        ctx: Optional[AgentContext] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Mate:
        """Return a mate to available.

        With a ctx, refuses to release a mate held by another live process
        unless force is set.

        Raises:
            MateConflict: If the holder is another live process.
        """

        def _release(mate: Mate) -> None:
            holder = mate.claimed_by
            if (
                ctx is not None
                and not force
                and holder
                and holder != ctx.pid
                and liveness.is_pid_alive(holder)
            ):
                raise MateConflict(
                    name,
                    f"Mate '{name}' is held by live pid {holder}; use force to release",
                    holder_pid=holder,
                )
            _clear_claim(mate)

        mate = self.update(name, _release, now=now)
        logger.info("Released mate %s", name)
        return mate

    def assign_plan(self, name: str, plan_ref: Optional[str], now: Optional[datetime] = None) -> Mate:
        def _assign(mate: Mate) -> None:
            mate.assigned_plan = plan_ref

        return self.update(name, _assign, now=now)

    def remove(self, name: str) -> None:
        """Delete a mate record.

        Raises:
            MateNotFoundError: If the mate does not exist.
            MateConflict: If the mate is claimed or sailing.
        """
        self._migrate_if_needed()
        with self.lock(name):
            mate = self._load(name)
            if mate is None:
                raise MateNotFoundError(name)
            if mate.state in HELD_STATES:
                raise MateConflict(name, f"Cannot remove {mate.state.value} mate: {name}")
            self.mate_path(name).unlink()
        logger.info("Removed mate %s", name)

    def _release_if_stale(self, name: str, now: Optional[datetime] = None) -> bool:
        """Release a mate only if it is still stale under its lock."""
        self._migrate_if_needed()
        with self.lock(name):
            mate = self._load(name)
            if mate is None or not self.is_stale(mate, now):
                logger.debug("Mate %s changed hands before gc; keeping it", name)
                return False
            _clear_claim(mate)
            mate.updated_at = now or _utcnow()
            self._save(mate)
        logger.info("Released stale mate %s", name)
        return True

    def gc(self, now: Optional[datetime] = None, dry_run: bool = False) -> List[str]:
        """Release every stale mate.

        Returns:
            Names of mates released (or that would be, with dry_run).
        """
        released: List[str] = []
        for mate in self.list_mates():
            if not self.is_stale(mate, now):
                continue
            if not dry_run and not self._release_if_stale(mate.name, now):
                continue
            released.append(mate.name)
        if released:
            logger.info("Released %d stale mates: %s", len(released), ", ".join(released))
        return released
