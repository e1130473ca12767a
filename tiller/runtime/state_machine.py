"""
state_machine.py - Hierarchical run lifecycle state machine.

This module is the single source of truth for run states. States are a
closed set of tagged values; hierarchy is expressed through the PARENT_OF
table rather than string prefix checks, and allowed transitions live in the
TRANSITIONS table keyed by either a concrete state or a parent state.

Lifecycle:
    proposed -> approved -> ready -> active/executing
    active/{executing,paused,checkpoint}
    verifying/{testing,passed,failed,fixing,retesting}
    complete | abandoned

A parent-keyed rule applies to every substate of that parent, so the
"verifying" rule lets any verifying/* run return to active/executing.

Usage:
    from tiller.runtime.state_machine import (
        PARENT_OF, TRANSITIONS, parent_of, matches_state,
        can_transition, allowed_targets, apply_transition,
    )
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Union

from .errors import InvalidTransition, ValidationError
from .types import ParentState, Run, RunState, TransitionRecord, _utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# HIERARCHY - THE SINGLE SOURCE OF TRUTH
# =============================================================================

PARENT_OF: Dict[RunState, ParentState] = {
    RunState.PROPOSED: ParentState.PROPOSED,
    RunState.APPROVED: ParentState.APPROVED,
    RunState.READY: ParentState.READY,
    RunState.ACTIVE_EXECUTING: ParentState.ACTIVE,
    RunState.ACTIVE_PAUSED: ParentState.ACTIVE,
    RunState.ACTIVE_CHECKPOINT: ParentState.ACTIVE,
    RunState.VERIFYING_TESTING: ParentState.VERIFYING,
    RunState.VERIFYING_PASSED: ParentState.VERIFYING,
    RunState.VERIFYING_FAILED: ParentState.VERIFYING,
    RunState.VERIFYING_FIXING: ParentState.VERIFYING,
    RunState.VERIFYING_RETESTING: ParentState.VERIFYING,
    RunState.COMPLETE: ParentState.COMPLETE,
    RunState.ABANDONED: ParentState.ABANDONED,
}

# Plan-side states; leaving them for the run side only goes through active/executing
PLAN_STATES: FrozenSet[ParentState] = frozenset(
    {ParentState.PROPOSED, ParentState.APPROVED, ParentState.READY}
)
RUN_SIDE_STATES: FrozenSet[ParentState] = frozenset(
    {ParentState.ACTIVE, ParentState.VERIFYING, ParentState.COMPLETE}
)

TERMINAL_STATES: FrozenSet[RunState] = frozenset({RunState.COMPLETE, RunState.ABANDONED})


# =============================================================================
# TRANSITION TABLE
# =============================================================================

# Keys are concrete state values or parent state values.
TRANSITIONS: Dict[str, FrozenSet[RunState]] = {
    RunState.PROPOSED.value: frozenset({RunState.APPROVED, RunState.ABANDONED}),
    RunState.APPROVED.value: frozenset({RunState.READY, RunState.ABANDONED}),
    RunState.READY.value: frozenset({RunState.ACTIVE_EXECUTING, RunState.ABANDONED}),
    RunState.ACTIVE_EXECUTING.value: frozenset(
        {
            RunState.ACTIVE_PAUSED,
            RunState.ACTIVE_CHECKPOINT,
            RunState.VERIFYING_TESTING,
            RunState.ABANDONED,
        }
    ),
    RunState.ACTIVE_PAUSED.value: frozenset({RunState.ACTIVE_EXECUTING, RunState.ABANDONED}),
    RunState.ACTIVE_CHECKPOINT.value: frozenset({RunState.ACTIVE_EXECUTING}),
    # Rework: any verifying substate can go back to execution
    ParentState.VERIFYING.value: frozenset({RunState.ACTIVE_EXECUTING}),
    RunState.VERIFYING_TESTING.value: frozenset(
        {RunState.VERIFYING_PASSED, RunState.VERIFYING_FAILED}
    ),
    RunState.VERIFYING_PASSED.value: frozenset({RunState.COMPLETE}),
    RunState.VERIFYING_FAILED.value: frozenset({RunState.VERIFYING_FIXING}),
    RunState.VERIFYING_FIXING.value: frozenset({RunState.VERIFYING_RETESTING}),
    RunState.VERIFYING_RETESTING.value: frozenset(
        {RunState.VERIFYING_PASSED, RunState.VERIFYING_FAILED}
    ),
    # Reopen for further work
    RunState.COMPLETE.value: frozenset({RunState.ACTIVE_EXECUTING}),
    RunState.ABANDONED.value: frozenset(),
}


StateLike = Union[RunState, str]


def _as_state(value: StateLike) -> RunState:
    """Coerce a concrete state value. Parent names and legacy values are rejected."""
    if isinstance(value, RunState):
        return value
    try:
        return RunState(value)
    except ValueError:
        raise ValidationError(f"Not a concrete run state: {value!r}") from None


def parent_of(state: StateLike) -> ParentState:
    """Return the parent state for a concrete state."""
    return PARENT_OF[_as_state(state)]


def substates_of(parent: Union[ParentState, str]) -> List[RunState]:
    """Return concrete states under a parent, in declaration order."""
    parent_value = parent.value if isinstance(parent, ParentState) else parent
    return [s for s, p in PARENT_OF.items() if p.value == parent_value]


def matches_state(state: StateLike, query: str) -> bool:
    """Check whether a state satisfies a state query.

    A query is either a concrete state ("active/paused"), a parent state
    ("active"), or a parent wildcard ("active/*"). Parent queries match the
    parent and every substate.

    Args:
        state: The run's concrete state.
        query: State query string.

    Returns:
        True if the state matches.
    """
    concrete = _as_state(state)
    if query.endswith("/*"):
        query = query[:-2]
    return concrete.value == query or PARENT_OF[concrete].value == query


def allowed_targets(from_state: StateLike) -> FrozenSet[RunState]:
    """All states reachable in one transition from from_state.

    Combines the rule keyed on the concrete state with the rule keyed on
    its parent.
    """
    concrete = _as_state(from_state)
    targets = set(TRANSITIONS.get(concrete.value, frozenset()))
    parent_key = PARENT_OF[concrete].value
    if parent_key != concrete.value:
        targets |= TRANSITIONS.get(parent_key, frozenset())
    return frozenset(targets)


def can_transition(from_state: StateLike, to_state: StateLike) -> bool:
    """Check whether the transition table has an edge from_state -> to_state."""
    source = _as_state(from_state)
    target = _as_state(to_state)

    # Plan states only enter the run side through active/executing
    if (
        PARENT_OF[source] in PLAN_STATES
        and PARENT_OF[target] in RUN_SIDE_STATES
        and target != RunState.ACTIVE_EXECUTING
    ):
        return False

    return target in allowed_targets(source)


def apply_transition(
    run: Run,
    to_state: StateLike,
    actor: str,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Run:
    """Apply a state transition to a run in memory.

    Appends one TransitionRecord and updates state/updated. Nothing is
    persisted; the caller saves through the versioned store.

    Args:
        run: Run to mutate.
        to_state: Target concrete state.
        actor: Who performed the transition ("agent", "human", or an agent id).
        note: Optional free-text reason.
        now: Timestamp override.

    Returns:
        The same Run, mutated.

    Raises:
        ValidationError: If to_state is not a concrete state.
        InvalidTransition: If the table has no matching edge. The run is
            left untouched.
    """
    target = _as_state(to_state)
    if not can_transition(run.state, target):
        raise InvalidTransition(run.id, run.state.value, target.value)

    timestamp = now or _utcnow()
    run.transitions.append(
        TransitionRecord(
            from_state=run.state,
            to_state=target,
            actor=actor,
            timestamp=timestamp,
            note=note,
        )
    )
    logger.debug("Run '%s' transition %s -> %s by %s", run.id, run.state.value, target.value, actor)
    run.state = target
    run.updated = timestamp
    return run
