"""
executor.py - Drive a workflow instance through its steps.

The executor is synchronous and single-instance. Each iteration asks an
ExecutorContext for the current step's outputs, merges them into instance
state, routes to the next step and persists the instance before moving on,
so an interrupted execution resumes at the last completed step.

Audit events go to the domain event log and record output keys only:

    step_completed      instance, workflow, from, to, outputs
    workflow_aborted    instance, workflow, step, reason
    workflow_completed  instance, workflow, final_step, total_steps
    workflow_error      instance, workflow, step, error

Usage:
    from tiller.workflow.executor import WorkflowExecutor, ScriptedContext

    executor = WorkflowExecutor(InstanceStore(paths))
    result = executor.execute(definition, instance, ScriptedContext([{"verdict": "approve"}]))
    if result.aborted:
        ...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from ..runtime.errors import ConfigurationDefect, ValidationError
from ..runtime.storage import EventLog
from .instance import InstanceStore
from .router import advance_to_step, is_terminal_step, next_steps, select_next_step
from .types import WorkflowDefinition, WorkflowInstance, WorkflowStep

# Module logger
logger = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"


class _Abort:
    """Returned by collect_outputs to stop the workflow without error."""

    _instance: Optional["_Abort"] = None

    def __new__(cls) -> "_Abort":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABORT"


ABORT = _Abort()

StepOutputs = Union[Mapping[str, Any], _Abort]


# =============================================================================
# Context Hooks
# =============================================================================


class ExecutorContext(ABC):
    """Hooks the executor calls while driving an instance.

    Only collect_outputs is required. The other hooks are for presentation
    and default to doing nothing.
    """

    def on_step_start(
        self, step: WorkflowStep, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> None:
        pass

    @abstractmethod
    def collect_outputs(
        self, step: WorkflowStep, instance: WorkflowInstance, definition: WorkflowDefinition
    ) -> StepOutputs:
        """Return the step's outputs, or ABORT to stop the workflow."""
        ...

    def on_step_complete(
        self, step: WorkflowStep, instance: WorkflowInstance, outputs: Mapping[str, Any]
    ) -> None:
        pass

    def on_workflow_complete(self, instance: WorkflowInstance) -> None:
        pass

    def on_error(
        self, error: Exception, step: Optional[WorkflowStep], instance: WorkflowInstance
    ) -> None:
        pass


class ScriptedContext(ExecutorContext):
    """Replays a fixed sequence of output bags.

    Returns ABORT once the script runs out. Records every hook call so
    callers can inspect what happened.
    """

    def __init__(self, outputs: Iterable[StepOutputs]):
        self._outputs = list(outputs)
        self.started: List[str] = []
        self.completed: List[str] = []
        self.finished: Optional[WorkflowInstance] = None
        self.errors: List[Exception] = []

    def on_step_start(self, step, instance, definition) -> None:
        self.started.append(step.id)

    def collect_outputs(self, step, instance, definition) -> StepOutputs:
        if not self._outputs:
            logger.debug("Scripted outputs exhausted at step %s", step.id)
            return ABORT
        return self._outputs.pop(0)

    def on_step_complete(self, step, instance, outputs) -> None:
        self.completed.append(step.id)

    def on_workflow_complete(self, instance) -> None:
        self.finished = instance

    def on_error(self, error, step, instance) -> None:
        self.errors.append(error)


# =============================================================================
# Results
# =============================================================================


@dataclass
class ExecuteResult:
    """Outcome of WorkflowExecutor.execute.

    Attributes:
        status: "completed" or "aborted".
        instance: Instance as last persisted.
        steps_completed: Steps advanced during this call.
        is_terminal: True if the instance sits at a terminal step.
        error: Abort message, if any.
    """

    status: str
    instance: WorkflowInstance
    steps_completed: int
    is_terminal: bool
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def aborted(self) -> bool:
        return self.status == STATUS_ABORTED


@dataclass
class StepResult:
    """Outcome of a single execute_step call."""

    instance: WorkflowInstance
    previous_step: str
    next_step: Optional[str]
    is_terminal: bool
    output_keys: List[str] = field(default_factory=list)


# =============================================================================
# Executor
# =============================================================================


class WorkflowExecutor:
    """Runs workflow instances and records their audit trail."""

    def __init__(self, store: InstanceStore, events: Optional[EventLog] = None):
        self.store = store
        self.events = events or EventLog(store.paths.events_file)

    def _current_step(self, definition: WorkflowDefinition, instance: WorkflowInstance) -> WorkflowStep:
        step = definition.get_step(instance.current_step)
        if step is None:
            raise ConfigurationDefect(
                definition.name,
                instance.current_step,
                f"Instance '{instance.id}' is at step '{instance.current_step}', "
                f"which workflow '{definition.name}' does not define",
            )
        return step

    def _merge_outputs(self, instance: WorkflowInstance, outputs: Any) -> List[str]:
        if not isinstance(outputs, Mapping):
            raise ValidationError(
                f"Step outputs must be a mapping, got {type(outputs).__name__}"
            )
        instance.state.update(outputs)
        return sorted(str(k) for k in outputs)

    def _route(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        output_keys: List[str],
    ) -> Optional[str]:
        """Advance and persist; None only when the current step is terminal."""
        previous = instance.current_step
        target = select_next_step(definition, instance)
        if target is None:
            if is_terminal_step(definition, previous):
                self.store.save(instance)
                return None
            raise ConfigurationDefect(definition.name, previous)

        advance_to_step(instance, target)
        self.store.save(instance)
        self.events.append(
            "step_completed",
            instance=instance.id,
            workflow=instance.workflow_name,
            outputs=output_keys,
            **{"from": previous, "to": target},
        )
        return target

    def _record_error(
        self,
        error: Exception,
        step: Optional[WorkflowStep],
        instance: WorkflowInstance,
        context: Optional[ExecutorContext],
    ) -> None:
        logger.error("Workflow %s failed at %s: %s", instance.id, instance.current_step, error)
        self.events.append(
            "workflow_error",
            instance=instance.id,
            workflow=instance.workflow_name,
            step=instance.current_step,
            error=str(error),
        )
        if context is not None:
            context.on_error(error, step, instance)

    def execute(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        context: ExecutorContext,
    ) -> ExecuteResult:
        """Run the instance until it reaches a terminal step or is aborted.

        Returns:
            ExecuteResult with status "completed" or "aborted".

        Raises:
            ConfigurationDefect: If a non-terminal step has no matching edge,
                or the instance sits at a step the definition lacks.
            ValidationError: If the context returns something other than a
                mapping or ABORT.
        """
        if is_terminal_step(definition, instance.current_step):
            context.on_workflow_complete(instance)
            return ExecuteResult(STATUS_COMPLETED, instance, 0, True)

        steps_completed = 0
        step: Optional[WorkflowStep] = None
        try:
            while not is_terminal_step(definition, instance.current_step):
                step = self._current_step(definition, instance)
                context.on_step_start(step, instance, definition)

                outputs = context.collect_outputs(step, instance, definition)
                if outputs is ABORT:
                    self.events.append(
                        "workflow_aborted",
                        instance=instance.id,
                        workflow=instance.workflow_name,
                        step=instance.current_step,
                        reason="user_abort",
                    )
                    logger.info("Workflow %s aborted at %s", instance.id, instance.current_step)
                    return ExecuteResult(
                        STATUS_ABORTED,
                        instance,
                        steps_completed,
                        False,
                        error="Workflow aborted by user",
                    )

                output_keys = self._merge_outputs(instance, outputs)
                self._route(definition, instance, output_keys)
                steps_completed += 1
                context.on_step_complete(step, instance, outputs)
        except Exception as e:
            self._record_error(e, step, instance, context)
            raise

        context.on_workflow_complete(instance)
        self.events.append(
            "workflow_completed",
            instance=instance.id,
            workflow=instance.workflow_name,
            final_step=instance.current_step,
            total_steps=len(instance.history),
        )
        return ExecuteResult(STATUS_COMPLETED, instance, steps_completed, True)

    def execute_step(
        self,
        definition: WorkflowDefinition,
        instance: WorkflowInstance,
        outputs: Mapping[str, Any],
    ) -> StepResult:
        """Merge one step's outputs, advance once and persist.

        For callers that drive a workflow turn by turn across separate
        process invocations.

        Raises:
            ConfigurationDefect: If a non-terminal step has no matching edge.
            ValidationError: If outputs is not a mapping.
        """
        previous = instance.current_step
        step: Optional[WorkflowStep] = None
        try:
            step = self._current_step(definition, instance)
            output_keys = self._merge_outputs(instance, outputs)
            target = self._route(definition, instance, output_keys)
        except Exception as e:
            self._record_error(e, step, instance, None)
            raise

        is_terminal = is_terminal_step(definition, instance.current_step)
        if target is not None and is_terminal:
            self.events.append(
                "workflow_completed",
                instance=instance.id,
                workflow=instance.workflow_name,
                final_step=instance.current_step,
                total_steps=len(instance.history),
            )
        return StepResult(instance, previous, target, is_terminal, output_keys)


# =============================================================================
# Step Prompt
# =============================================================================


def build_step_prompt(definition: WorkflowDefinition, instance: WorkflowInstance) -> Dict[str, Any]:
    """Everything an agent needs to carry out the current step.

    Returns a plain dict; rendering it is the caller's concern.
    """
    step = definition.get_step(instance.current_step)
    if step is None:
        raise ValidationError(
            f"Step '{instance.current_step}' not found in workflow '{definition.name}'"
        )

    transitions = [
        {
            "target": candidate.step_id,
            "target_name": candidate.step_name,
            "condition": candidate.condition,
            "condition_met": candidate.condition_met,
            "is_default": candidate.is_default,
        }
        for candidate in next_steps(definition, instance)
    ]

    expected = list(step.outputs)
    if expected:
        flags = " ".join(f"--set {key}=<value>" for key in expected)
        hint = f"After completing this step, record outputs with: tiller step done {flags}"
    else:
        hint = "After completing this step, advance with: tiller step done"

    return {
        "workflow_step": {
            "workflow": definition.name,
            "instance_id": instance.id,
            "step_id": step.id,
            "step_name": step.name,
            "instructions": step.description or None,
            "expected_outputs": expected,
            "state": dict(instance.state),
            "history": list(instance.history),
            "available_transitions": transitions,
            "is_terminal": definition.is_terminal(step.id),
        },
        "agent_hint": hint,
    }
