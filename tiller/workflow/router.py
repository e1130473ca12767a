"""
router.py - Deterministic edge selection for workflow instances.

Routing is a pure function of (definition, current step, instance state):

1. Every outgoing edge is annotated with its condition result.
2. Edges whose condition holds come before edges whose condition fails.
3. Within each group, conditional edges come before the default edge.
4. Declaration order breaks remaining ties.

The first edge that is met wins. A step with no met edge and no default
edge yields None, which the executor treats as a configuration defect
unless the step is terminal.

Usage:
    from tiller.workflow.router import next_steps, select_next_step

    target = select_next_step(definition, instance)
    if target is not None:
        advance_to_step(instance, target)
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..runtime.errors import ValidationError
from .conditions import evaluate_condition
from .types import NextStep, WorkflowDefinition, WorkflowInstance

logger = logging.getLogger(__name__)


def next_steps(definition: WorkflowDefinition, instance: WorkflowInstance) -> List[NextStep]:
    """Outgoing edges of the current step, best candidate first.

    Raises:
        ValidationError: If the current step is not in the definition.
    """
    step = definition.get_step(instance.current_step)
    if step is None:
        raise ValidationError(
            f"Step '{instance.current_step}' not found in workflow '{definition.name}'"
        )

    candidates: List[NextStep] = []
    for edge in step.next:
        target = definition.get_step(edge.target)
        candidates.append(
            NextStep(
                step_id=edge.target,
                step_name=target.name if target else edge.target,
                condition=edge.condition,
                condition_met=evaluate_condition(edge.condition, instance.state),
                is_default=edge.is_default,
                label=edge.label,
            )
        )

    # sorted() is stable, so declaration order survives within each group
    return sorted(candidates, key=lambda c: (not c.condition_met, c.is_default))


def select_next_step(definition: WorkflowDefinition, instance: WorkflowInstance) -> Optional[str]:
    """Target of the first met edge, or None if nothing matches."""
    for candidate in next_steps(definition, instance):
        if candidate.condition_met:
            logger.debug(
                "Routing %s: %s -> %s (%s)",
                instance.id,
                instance.current_step,
                candidate.step_id,
                candidate.condition or "default",
            )
            return candidate.step_id
    return None


def is_terminal_step(definition: WorkflowDefinition, step_id: str) -> bool:
    return definition.is_terminal(step_id)


def advance_to_step(instance: WorkflowInstance, step_id: str) -> WorkflowInstance:
    """Move the instance to step_id and record it in history."""
    instance.current_step = step_id
    instance.history.append(step_id)
    return instance
