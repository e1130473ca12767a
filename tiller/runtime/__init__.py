# tiller/runtime package
# Run lifecycle, optimistic-concurrency persistence and claim coordination.
#
# Core components:
#   - types: Run dataclasses and serdes functions
#   - state_machine: hierarchical states and the transition table
#   - storage: one JSON file per run plus the domain event log
#   - versioned: load_versioned / save_if_fresh
#   - claims: ClaimCoordinator (TTL claims, file conflicts, GC)
#   - service: RunService façade used by command entry points
#
# Usage:
#     from tiller.runtime import AgentContext
#     from tiller.runtime.service import RunService
#     service = RunService.get_instance()
#     run = service.init_run("plans/tiller-cli/02-claims/02-01-PLAN.md")
#     service.claim(run.id, AgentContext.for_current_process())

from .context import AgentContext
from .errors import (
    ClaimConflict,
    ConfigurationDefect,
    InvalidTransition,
    LockTimeout,
    RunNotFoundError,
    StaleReadError,
    StaleWriteError,
    TillerError,
    ValidationError,
)
from .types import Run, RunId, RunState, generate_run_id
