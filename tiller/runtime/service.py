"""
service.py - RunService façade over run storage, state machine and claims.

Command entry points use RunService rather than touching storage directly.
Every mutation goes load_versioned -> mutate in memory -> save_if_fresh,
so a lost race surfaces as StaleWriteError instead of a silent overwrite.

Usage:
    from tiller.runtime.service import RunService, get_run_service

    service = RunService.get_instance()
    run = service.init_run("plans/tiller-cli/02-claims/02-01-PLAN.md")
    service.transition(run.id, "active/executing", ctx)
    service.claim(run.id, ctx)
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ..config.runtime_config import (
    TillerPaths,
    get_default_initiative,
    get_plans_dir,
    resolve_paths,
)
from .claims import ClaimCoordinator, ClaimResult, ReadyRun, release_run
from .context import AgentContext
from .errors import RunNotFoundError, ValidationError
from .issue_tracker import IssueTracker
from .plan_docs import (
    extract_objective,
    find_draft_plans,
    normalize_plan_path,
    normalize_plan_ref,
    parse_initiative_from_path,
    parse_initiative_ref,
    parse_plan_ref,
)
from .state_machine import TERMINAL_STATES, apply_transition, matches_state
from .storage import RunStore, SyncStats, normalize_project_path
from .types import (
    Checkpoint,
    CompletionRecord,
    Run,
    RunId,
    RunState,
    VerificationCheckDef,
    VerificationEvent,
    VerificationSnapshot,
    _utcnow,
)
from .verification import (
    append_verification_event,
    derive_verification_snapshot,
    verification_status,
)
from .versioned import VersionedRun, load_versioned, save_if_fresh

# Module logger
logger = logging.getLogger(__name__)

INIT_STATES = frozenset({RunState.READY, RunState.PROPOSED})

# Parent-level queries in the order get_default_run prefers them
DEFAULT_RUN_PRIORITY = ("active", "verifying", "ready", "approved", "proposed")


class RunService:
    """Central service for run lifecycle operations.

    Provides a single interface for:
    - Creating runs from plan documents (idempotent per plan)
    - State transitions with an auditable history
    - Claims, releases and stale-claim collection
    - Checkpoints and verification results
    - JSONL export/import for git tracking
    """

    _instance: Optional["RunService"] = None

    def __init__(
        self,
        paths: Optional[TillerPaths] = None,
        tracker: Optional[IssueTracker] = None,
    ):
        """Initialize the service.

        Args:
            paths: Project layout. Defaults to the discovered project root.
            tracker: Issue tracker wrapper. Defaults to the configured one.
        """
        self.paths = paths or resolve_paths()
        self.store = RunStore(self.paths)
        self.claims = ClaimCoordinator(self.store)
        self.tracker = tracker or IssueTracker.from_config(self.paths.root)

    @classmethod
    def get_instance(cls, root: Optional[Path] = None) -> "RunService":
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(resolve_paths(root))
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # =========================================================================
    # Creation
    # =========================================================================

    def init_run(
        self,
        plan_path: str,
        intent: Optional[str] = None,
        initial_state: RunState = RunState.READY,
        initiative: Optional[str] = None,
        files_touched: Optional[Iterable[str]] = None,
        priority: int = 99,
        depends_on: Optional[Iterable[RunId]] = None,
    ) -> Run:
        """Create a run for a plan document, or return the existing one.

        Args:
            plan_path: Path to the plan document (absolute or project-relative).
            intent: Description; defaults to the plan's objective line.
            initial_state: READY or PROPOSED.
            initiative: Grouping key; defaults to the plans/<initiative>/ segment,
                then the configured default initiative.
            files_touched: Declared file scope for conflict detection.
            priority: Lower sorts first.
            depends_on: Advisory run dependencies.

        Returns:
            The new run, or the existing run for the same plan path.

        Raises:
            ValidationError: Bad initial state, missing plan, or bad file paths.
        """
        if initial_state not in INIT_STATES:
            raise ValidationError(f"Runs start in 'ready' or 'proposed', not {initial_state!r}")
        initial_state = RunState(initial_state)

        root = self.paths.root
        relative = normalize_plan_path(plan_path, root)

        existing = self.store.find_by_plan_path(relative)
        if existing is not None:
            logger.debug("Run '%s' already exists for %s", existing.id, relative)
            return existing

        objective = extract_objective(relative, root)
        plans_dir = get_plans_dir(root)
        now = _utcnow()
        run = Run(
            id=self.store.new_run_id(),
            intent=(intent or objective).strip(),
            state=initial_state,
            plan_path=relative,
            created=now,
            updated=now,
            initiative=(
                initiative
                or parse_initiative_from_path(relative, plans_dir)
                or get_default_initiative(root)
            ),
            files_touched=sorted({normalize_project_path(f, root) for f in files_touched or []}),
            priority=priority,
            depends_on=list(depends_on or []),
        )
        self.store.save(run)
        self.store.events.append("run_created", run.id, plan=relative, state=run.state.value)
        logger.info("Created run '%s' for %s", run.id, relative)
        return run

    def sync_draft_plans(self) -> List[Run]:
        """Create ready runs for every untracked plan without a SUMMARY.md."""
        tracked = {r.plan_path for r in self.store.list_runs()}
        plans_dir = get_plans_dir(self.paths.root)
        created: List[Run] = []
        for plan_path in find_draft_plans(self.paths.root, plans_dir, tracked):
            try:
                created.append(self.init_run(plan_path))
            except ValidationError as e:
                logger.warning("Skipping plan %s: %s", plan_path, e)
        return created

    # =========================================================================
    # Queries
    # =========================================================================

    def get_run(self, run_id: RunId) -> Run:
        return self.store.get(run_id)

    def list_runs(
        self, state: Optional[str] = None, initiative: Optional[str] = None
    ) -> List[Run]:
        return self.store.list_runs(state=state, initiative=initiative)

    def find_active_run(self) -> Optional[Run]:
        runs = self.store.list_runs(state="active")
        return runs[0] if runs else None

    def get_default_run(self) -> Optional[Run]:
        """Most recently updated run, preferring active > verifying > ready > approved > proposed."""
        all_runs = self.store.list_runs()
        for query in DEFAULT_RUN_PRIORITY:
            for run in all_runs:
                if matches_state(run.state, query):
                    return run
        return None

    def resolve_run_ref(self, ref: str, working_initiative: Optional[str] = None) -> Run:
        """Resolve a run id, a plan ref ("02-01"), or "initiative:ref".

        Plain plan refs prefer the working initiative, then any initiative.

        Raises:
            RunNotFoundError: If nothing matches.
        """
        initiative, bare = parse_initiative_ref(ref)
        if initiative is None and "/" not in ref and self.store.exists(ref):
            return self.store.get(ref)

        wanted = {bare, normalize_plan_ref(bare) or bare}
        candidates = self.store.list_runs(initiative=initiative)
        matches = [r for r in candidates if parse_plan_ref(r.plan_path) in wanted]
        if initiative is None and working_initiative is not None:
            scoped = [r for r in matches if r.initiative == working_initiative]
            if scoped:
                return scoped[0]
        if matches:
            return matches[0]
        raise RunNotFoundError(ref)

    def events(self, run_id: Optional[RunId] = None, limit: Optional[int] = None) -> List[dict]:
        return self.store.events.read(limit=limit, run_id=run_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def transition(
        self,
        run_id: RunId,
        to_state: str,
        ctx: AgentContext,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Run:
        """Apply a state transition and persist it.

        Reaching complete stores a completion record; reaching complete or
        abandoned clears any claim. Completing a run with an issue-tracker
        task closes the task best-effort.

        Raises:
            InvalidTransition: No edge in the transition table.
            StaleWriteError: Another process wrote the run meanwhile.
        """
        timestamp = now or _utcnow()
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        from_state = run.state

        apply_transition(run, to_state, actor=ctx.agent_id, note=note, now=timestamp)
        if run.state == RunState.COMPLETE:
            run.completion = self._completion_record(run, from_state, timestamp, note)
        if run.state in TERMINAL_STATES and run.claimed_by is not None:
            release_run(run, timestamp)

        save_if_fresh(self.store, versioned)
        self.store.events.append(
            "run_transitioned",
            run.id,
            **{"from": from_state.value, "to": run.state.value, "actor": ctx.agent_id},
        )

        if run.state == RunState.COMPLETE and run.beads_task_id:
            if not self.tracker.close_task(run.beads_task_id, reason=f"run {run.id} complete"):
                logger.warning("Could not close task %s for run '%s'", run.beads_task_id, run.id)
        return run

    def _completion_record(
        self, run: Run, from_state: RunState, timestamp: datetime, reason: Optional[str]
    ) -> CompletionRecord:
        started = next(
            (t.timestamp for t in run.transitions if t.to_state == RunState.ACTIVE_EXECUTING),
            None,
        )
        duration = int((timestamp - started).total_seconds() // 60) if started else None
        passed = from_state == RunState.VERIFYING_PASSED
        return CompletionRecord(
            timestamp=timestamp,
            verification_passed=passed,
            verification_skipped=not passed,
            duration_minutes=duration,
            reason=reason,
        )

    def update_plan_metadata(
        self,
        run_id: RunId,
        files_touched: Optional[Iterable[str]] = None,
        priority: Optional[int] = None,
        depends_on: Optional[Iterable[RunId]] = None,
    ) -> Run:
        """Replace declared file scope, priority or dependencies."""
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        if files_touched is not None:
            run.files_touched = sorted(
                {normalize_project_path(f, self.paths.root) for f in files_touched}
            )
        if priority is not None:
            run.priority = priority
        if depends_on is not None:
            deps = list(depends_on)
            if run.id in deps:
                raise ValidationError(f"Run '{run.id}' cannot depend on itself")
            run.depends_on = deps
        run.updated = _utcnow()
        save_if_fresh(self.store, versioned)
        return run

    def link_issue_tracker(
        self, run_id: RunId, epic_id: Optional[str] = None, task_id: Optional[str] = None
    ) -> Run:
        """Record issue-tracker pointers on a run."""
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        if epic_id is not None:
            run.beads_epic_id = epic_id
        if task_id is not None:
            run.beads_task_id = task_id
        run.updated = _utcnow()
        save_if_fresh(self.store, versioned)
        return run

    # =========================================================================
    # Claims
    # =========================================================================

    def claim(
        self,
        run_id: RunId,
        ctx: AgentContext,
        ttl_minutes: Optional[int] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        return self.claims.claim(run_id, ctx, ttl_minutes=ttl_minutes, force=force, now=now)

    def release(
        self,
        run_id: RunId,
        ctx: Optional[AgentContext] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Run:
        return self.claims.release(run_id, ctx, force=force, now=now)

    def ready_runs(self, now: Optional[datetime] = None) -> List[ReadyRun]:
        return self.claims.ready_runs(now)

    def gc_stale_claims(self, now: Optional[datetime] = None, dry_run: bool = False) -> List[Run]:
        return self.claims.gc_stale_claims(now=now, dry_run=dry_run)

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def add_checkpoint(self, run_id: RunId, checkpoint: Checkpoint) -> Run:
        """Attach a pending checkpoint to a run."""
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        if any(c.id == checkpoint.id for c in run.checkpoints):
            raise ValidationError(f"Run '{run.id}' already has checkpoint '{checkpoint.id}'")
        run.checkpoints.append(checkpoint)
        run.updated = _utcnow()
        save_if_fresh(self.store, versioned)
        return run

    def resolve_checkpoint(
        self, run_id: RunId, checkpoint_id: str, resolution: str, ctx: AgentContext
    ) -> Run:
        """Resolve a pending checkpoint.

        Decision checkpoints only accept one of their option ids.
        """
        versioned = load_versioned(self.store, run_id)
        run = versioned.run
        checkpoint = next((c for c in run.checkpoints if c.id == checkpoint_id), None)
        if checkpoint is None:
            raise ValidationError(f"Run '{run.id}' has no checkpoint '{checkpoint_id}'")
        if checkpoint.resolved is not None:
            raise ValidationError(f"Checkpoint '{checkpoint_id}' is already resolved")
        if checkpoint.options and resolution not in {o.id for o in checkpoint.options}:
            raise ValidationError(
                f"'{resolution}' is not an option of checkpoint '{checkpoint_id}'"
            )
        now = _utcnow()
        checkpoint.resolved = resolution
        checkpoint.resolved_at = now
        run.updated = now
        save_if_fresh(self.store, versioned)
        self.store.events.append(
            "checkpoint_resolved", run.id, checkpoint=checkpoint_id, actor=ctx.agent_id
        )
        return run

    # =========================================================================
    # Verification
    # =========================================================================

    def record_verification(self, run_id: RunId, event: VerificationEvent) -> Run:
        """Append a verification event and persist the run."""
        versioned: VersionedRun = load_versioned(self.store, run_id)
        append_verification_event(versioned.run, event)
        save_if_fresh(self.store, versioned)
        return versioned.run

    def verification_snapshot(
        self, run_id: RunId, check_defs: List[VerificationCheckDef]
    ) -> Tuple[VerificationSnapshot, str]:
        """Derived checks plus aggregate status for a run."""
        snapshot = derive_verification_snapshot(self.store.get(run_id), check_defs)
        return snapshot, verification_status(snapshot)

    # =========================================================================
    # JSONL Sync
    # =========================================================================

    def export_runs(self, output_path: Optional[Path] = None) -> int:
        return self.store.export_jsonl(output_path)

    def import_runs(self, input_path: Optional[Path] = None) -> SyncStats:
        return self.store.import_jsonl(input_path)


def get_run_service() -> RunService:
    """Get the RunService singleton."""
    return RunService.get_instance()
