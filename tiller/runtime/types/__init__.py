"""
types - Core type definitions for run coordination.

This package provides the data types for runs, their transitions,
checkpoints and verification records, plus serialization functions.

All types use dataclasses with type annotations; persistence goes through
the module-level *_to_dict / *_from_dict functions.

Usage:
    from tiller.runtime.types import (
        RunId, AgentId, Run, RunState, ParentState, TransitionRecord,
        Checkpoint, CheckpointType, CheckpointOption, CompletionRecord,
        VerificationEvent, VerificationEventType, VerificationCheckDef,
        DerivedCheck, VerificationSnapshot, VerificationResults,
        generate_run_id, parse_run_state,
        run_to_dict, run_from_dict,
    )
"""

from __future__ import annotations

from ._ids import AgentId, RunId, generate_run_id
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .runs import (
    LEGACY_STATES,
    Checkpoint,
    CheckpointOption,
    CheckpointType,
    CompletionRecord,
    ParentState,
    Run,
    RunState,
    TransitionRecord,
    checkpoint_from_dict,
    checkpoint_to_dict,
    completion_record_from_dict,
    completion_record_to_dict,
    parse_run_state,
    run_from_dict,
    run_to_dict,
    transition_record_from_dict,
    transition_record_to_dict,
)
from .verification import (
    DerivedCheck,
    VerificationCheckDef,
    VerificationEvent,
    VerificationEventType,
    VerificationResults,
    VerificationSnapshot,
    derived_check_to_dict,
    verification_event_from_dict,
    verification_event_to_dict,
    verification_results_from_dict,
    verification_results_to_dict,
)
