"""Tests for deterministic edge selection."""

from __future__ import annotations

import pytest

from tiller.runtime.errors import ValidationError
from tiller.workflow.router import (
    advance_to_step,
    is_terminal_step,
    next_steps,
    select_next_step,
)
from tiller.workflow.types import WorkflowDefinition, WorkflowInstance


def _definition(edges):
    return WorkflowDefinition.from_dict(
        {
            "name": "routing",
            "initial_step": "start",
            "terminal_steps": ["d1", "d2", "d3"],
            "steps": {
                "start": {"name": "Start", "next": edges},
                "d1": {"name": "One"},
                "d2": {"name": "Two"},
                "d3": {"name": "Three"},
            },
        }
    )


def _instance(state=None):
    return WorkflowInstance(
        id="routing-1",
        workflow_name="routing",
        current_step="start",
        state=state or {},
        history=["start"],
    )


class TestNextSteps:
    def test_met_conditionals_before_default_in_declaration_order(self):
        definition = _definition(
            [
                {"target": "d1", "condition": "exists(a)"},
                {"target": "d2"},
                {"target": "d3", "condition": "exists(b)"},
            ]
        )

        ordered = next_steps(definition, _instance({"a": 1, "b": 2}))

        assert [c.step_id for c in ordered] == ["d1", "d3", "d2"]
        assert [c.is_default for c in ordered] == [False, False, True]
        assert ordered[0].step_name == "One"

    def test_unmet_edges_sort_last(self):
        definition = _definition(
            [
                {"target": "d1", "condition": "exists(a)"},
                {"target": "d2"},
                {"target": "d3", "condition": "exists(b)"},
            ]
        )

        ordered = next_steps(definition, _instance({"b": 2}))

        assert [(c.step_id, c.condition_met) for c in ordered] == [
            ("d3", True),
            ("d2", True),
            ("d1", False),
        ]

    def test_default_edge_ranks_above_unmet_conditionals(self):
        definition = _definition(
            [
                {"target": "d1", "condition": 'eq(x, "a")'},
                {"target": "d2"},
                {"target": "d3", "condition": 'eq(x, "b")'},
            ]
        )

        ordered = next_steps(definition, _instance({"x": "a"}))

        assert [(c.step_id, c.condition_met, c.is_default) for c in ordered] == [
            ("d1", True, False),
            ("d2", True, True),
            ("d3", False, False),
        ]
        assert select_next_step(definition, _instance({"x": "a"})) == "d1"

    def test_unknown_current_step(self):
        definition = _definition([{"target": "d1"}])
        instance = _instance()
        instance.current_step = "nowhere"

        with pytest.raises(ValidationError):
            next_steps(definition, instance)

    def test_empty_condition_is_default(self):
        definition = _definition([{"target": "d1", "condition": ""}])
        assert next_steps(definition, _instance())[0].is_default


class TestSelectNextStep:
    def test_first_met_edge_wins(self):
        definition = _definition(
            [
                {"target": "d1", "condition": "eq(choice, one)"},
                {"target": "d3", "condition": "eq(choice, three)"},
                {"target": "d2"},
            ]
        )

        assert select_next_step(definition, _instance({"choice": "three"})) == "d3"
        assert select_next_step(definition, _instance({"choice": "other"})) == "d2"

    def test_no_match_without_default(self):
        definition = _definition([{"target": "d1", "condition": "exists(a)"}])

        assert select_next_step(definition, _instance()) is None

    def test_selection_is_deterministic(self):
        definition = _definition(
            [{"target": "d1", "condition": "exists(a)"}, {"target": "d3", "condition": "exists(a)"}]
        )
        instance = _instance({"a": True})

        results = {select_next_step(definition, instance) for _ in range(5)}

        assert results == {"d1"}


class TestAdvance:
    def test_advance_appends_history(self):
        instance = _instance()

        advance_to_step(instance, "d2")

        assert instance.current_step == "d2"
        assert instance.history == ["start", "d2"]

    def test_terminal_lookup(self):
        definition = _definition([{"target": "d1"}])
        assert is_terminal_step(definition, "d1")
        assert not is_terminal_step(definition, "start")
