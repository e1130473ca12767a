"""
claims.py - Time-boxed exclusive claims on runs.

A claim is the (claimed_by, claimed_at, claim_expires) triple on a run,
set and cleared together. A claim stops blocking the moment its expiry
passes; garbage collection only tidies up the visible state and the audit
trail, it is never needed to unblock a new claimer.

Before claiming, the coordinator intersects the run's files_touched with
every other run in the "active" hierarchy. Overlaps are reported and refuse
the claim unless the caller forces it.

Usage:
    from tiller.runtime.claims import ClaimCoordinator

    coordinator = ClaimCoordinator(store)
    result = coordinator.claim("run-abc123", ctx)
    coordinator.release("run-abc123", ctx)
    released = coordinator.gc_stale_claims()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ..config.runtime_config import get_claim_ttl_minutes
from .context import AgentContext
from .errors import ClaimConflict, StaleReadError, StaleWriteError, ValidationError
from .state_machine import matches_state
from .storage import RunStore
from .types import AgentId, Run, RunId, RunState, _datetime_to_iso, _utcnow
from .versioned import load_versioned, save_if_fresh

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30


# =============================================================================
# Claim primitives (pure, in-memory)
# =============================================================================


def is_claim_expired(run: Run, now: Optional[datetime] = None) -> bool:
    """True if the run has no claim expiry or the expiry has passed."""
    if run.claim_expires is None:
        return True
    return (now or _utcnow()) >= run.claim_expires


def is_run_available(run: Run, now: Optional[datetime] = None) -> bool:
    """True if the run is unclaimed or its claim has lapsed."""
    return run.claimed_by is None or is_claim_expired(run, now)


def claim_run(
    run: Run,
    agent_id: AgentId,
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
    now: Optional[datetime] = None,
) -> Run:
    """Set the claim triple on a run in memory.

    Raises:
        ValidationError: If agent_id is empty or ttl_minutes is not positive.
        ClaimConflict: If a live claim exists. The run is left untouched.
    """
    if not agent_id:
        raise ValidationError("agent_id must be non-empty")
    if ttl_minutes <= 0:
        raise ValidationError(f"ttl_minutes must be positive, got {ttl_minutes}")

    timestamp = now or _utcnow()
    if not is_run_available(run, timestamp):
        raise ClaimConflict(run.id, holder=run.claimed_by, expires=run.claim_expires)

    run.claimed_by = agent_id
    run.claimed_at = timestamp
    run.claim_expires = timestamp + timedelta(minutes=ttl_minutes)
    run.updated = timestamp
    return run


def release_run(run: Run, now: Optional[datetime] = None) -> Run:
    """Clear the claim triple on a run in memory."""
    run.claimed_by = None
    run.claimed_at = None
    run.claim_expires = None
    run.updated = now or _utcnow()
    return run


def detect_file_conflicts(run: Run, candidates: Iterable[Run]) -> List[Run]:
    """Return other active-hierarchy runs whose files_touched overlap run's.

    Args:
        run: The run about to be claimed.
        candidates: Runs to check (typically every run in the store).

    Returns:
        Conflicting runs in candidate order; empty if run declares no files.
    """
    if not run.files_touched:
        return []
    mine = set(run.files_touched)
    return [
        other
        for other in candidates
        if other.id != run.id
        and matches_state(other.state, "active")
        and mine.intersection(other.files_touched)
    ]


# =============================================================================
# Coordinator (persisted through the versioned store)
# =============================================================================


@dataclass
class ClaimResult:
    """Outcome of a successful claim."""

    run: Run
    version: str
    conflicts: List[RunId] = field(default_factory=list)
    forced: bool = False


@dataclass
class ReadyRun:
    """A claimable run annotated for work selection.

    Attributes:
        run: The run.
        conflicts_with: Active runs whose files overlap this one.
        blocked_by: Declared dependencies that are not complete (advisory).
        can_claim: True when there are no file conflicts.
    """

    run: Run
    conflicts_with: List[RunId] = field(default_factory=list)
    blocked_by: List[RunId] = field(default_factory=list)
    can_claim: bool = True


class ClaimCoordinator:
    """Claim, release and collect run claims with conflict detection."""

    def __init__(self, store: RunStore, ttl_minutes: Optional[int] = None):
        self.store = store
        self.ttl_minutes = (
            ttl_minutes if ttl_minutes is not None else get_claim_ttl_minutes(store.paths.root)
        )

    def claim(
        self,
        run_id: RunId,
        ctx: AgentContext,
        ttl_minutes: Optional[int] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        """Claim a run for ctx.agent_id.

        Args:
            run_id: Run to claim.
            ctx: Caller identity.
            ttl_minutes: Claim lifetime; defaults to the configured TTL.
            force: Claim even if files overlap active runs.
            now: Clock override.

        Returns:
            ClaimResult with the saved run, new version and any overridden
            conflicts.

        Raises:
            ClaimConflict: Live claim held (never overridable), or file
                overlap without force.
            StaleWriteError: Another process wrote the run meanwhile.
        """
        timestamp = now or _utcnow()
        versioned = load_versioned(self.store, run_id)
        run = versioned.run

        if not is_run_available(run, timestamp):
            raise ClaimConflict(run.id, holder=run.claimed_by, expires=run.claim_expires)

        conflicts = [r.id for r in detect_file_conflicts(run, self.store.list_runs(state="active"))]
        if conflicts and not force:
            raise ClaimConflict(run.id, conflicts=conflicts)
        if conflicts:
            logger.warning("Force-claiming run '%s' despite file conflicts with %s", run.id, conflicts)

        ttl = ttl_minutes if ttl_minutes is not None else self.ttl_minutes
        claim_run(run, ctx.agent_id, ttl, timestamp)
        version = save_if_fresh(self.store, versioned)
        self.store.events.append(
            "run_claimed",
            run.id,
            agent=ctx.agent_id,
            expires=_datetime_to_iso(run.claim_expires),
            conflicts=conflicts,
            forced=bool(conflicts),
        )
        return ClaimResult(run=run, version=version, conflicts=conflicts, forced=bool(conflicts))

    def release(
        self,
        run_id: RunId,
        ctx: Optional[AgentContext] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Run:
        """Release a run's claim.

        A live claim held by another agent is only released with force.
        Releasing an unclaimed run is a no-op.

        Raises:
            ClaimConflict: If ctx does not hold the live claim and force is off.
            StaleWriteError: Another process wrote the run meanwhile.
        """
        timestamp = now or _utcnow()
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        if run.claimed_by is None:
            return run

        if (
            ctx is not None
            and not force
            and run.claimed_by != ctx.agent_id
            and not is_claim_expired(run, timestamp)
        ):
            raise ClaimConflict(run.id, holder=run.claimed_by, expires=run.claim_expires)

        previous = run.claimed_by
        release_run(run, timestamp)
        save_if_fresh(self.store, versioned)
        self.store.events.append(
            "run_released", run.id, agent=ctx.agent_id if ctx else None, previous_holder=previous
        )
        return run

    def ready_runs(self, now: Optional[datetime] = None) -> List[ReadyRun]:
        """Runs available for work, sorted by priority then id.

        Includes runs in "ready" or "active/*" whose claim is absent or
        expired. Dependencies are advisory: incomplete ones are listed in
        blocked_by but do not exclude the run.
        """
        timestamp = now or _utcnow()
        all_runs = self.store.list_runs()
        by_id = {r.id: r for r in all_runs}
        active = [r for r in all_runs if matches_state(r.state, "active")]

        ready: List[ReadyRun] = []
        for run in all_runs:
            if not (matches_state(run.state, "ready") or matches_state(run.state, "active")):
                continue
            if not is_run_available(run, timestamp):
                continue
            conflicts = [r.id for r in detect_file_conflicts(run, active)]
            blocked = [
                dep
                for dep in run.depends_on
                if dep in by_id and by_id[dep].state != RunState.COMPLETE
            ]
            ready.append(
                ReadyRun(
                    run=run,
                    conflicts_with=conflicts,
                    blocked_by=blocked,
                    can_claim=not conflicts,
                )
            )

        ready.sort(key=lambda r: (r.run.priority, r.run.id))
        return ready

    def gc_stale_claims(
        self, now: Optional[datetime] = None, dry_run: bool = False
    ) -> List[Run]:
        """Clear every expired claim.

        A run that another process writes during the sweep is skipped with a
        warning and left for the next sweep.

        Returns:
            Runs whose claims were (or, with dry_run, would be) released.
        """
        timestamp = now or _utcnow()
        released: List[Run] = []
        for candidate in self.store.list_runs():
            if candidate.claimed_by is None or not is_claim_expired(candidate, timestamp):
                continue
            if dry_run:
                released.append(candidate)
                continue

            try:
                versioned = load_versioned(self.store, candidate.id)
                run = versioned.run
                if run.claimed_by is None or not is_claim_expired(run, timestamp):
                    continue
                holder = run.claimed_by
                release_run(run, timestamp)
                save_if_fresh(self.store, versioned)
            except (StaleReadError, StaleWriteError) as e:
                logger.warning("Skipping GC of run '%s': %s", candidate.id, e)
                continue

            logger.info("Released expired claim on run '%s' held by '%s'", run.id, holder)
            self.store.events.append("claim_expired", run.id, previous_holder=holder)
            released.append(run)
        return released
