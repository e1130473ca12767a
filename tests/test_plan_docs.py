"""Tests for the plan-document boundary."""

from __future__ import annotations

import pytest

from tiller.runtime.errors import ValidationError
from tiller.runtime.plan_docs import (
    OBJECTIVE_MAX_CHARS,
    extract_objective,
    find_draft_plans,
    normalize_plan_ref,
    parse_initiative_from_path,
    parse_initiative_ref,
    parse_plan_ref,
)


class TestPlanRefs:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("plans/x/02-foo/02-01-PLAN.md", "02-01"),
            ("plans/x/02.1-wf/02.1-05-PLAN.md", "02.1-05"),
            ("plans/x/03.1/03.1-03-FIX-PLAN.md", "03.1-03"),
            ("plans/x/01/01-01-PLAN.skip.md", "01-01"),
            ("plans/x/01/README.md", None),
            ("", None),
        ],
    )
    def test_parse_plan_ref(self, path, expected):
        assert parse_plan_ref(path) == expected

    @pytest.mark.parametrize(
        "ref,expected",
        [("2-1", "02-01"), ("02-01", "02-01"), ("2.1-5", "02.1-05"), ("phase-1", None)],
    )
    def test_normalize_plan_ref(self, ref, expected):
        assert normalize_plan_ref(ref) == expected

    def test_initiative_ref(self):
        assert parse_initiative_ref("tiller-cli:02-01") == ("tiller-cli", "02-01")
        assert parse_initiative_ref("02-01") == (None, "02-01")
        assert parse_initiative_ref(":02-01") == (None, ":02-01")

    def test_initiative_from_path(self):
        assert parse_initiative_from_path("plans/alpha/01-x/01-01-PLAN.md") == "alpha"
        assert parse_initiative_from_path("plans/01-01-PLAN.md") is None
        assert parse_initiative_from_path("docs/alpha/01-x/01-01-PLAN.md") is None


class TestObjective:
    def test_reads_first_objective_line(self, write_plan, project_root):
        plan = write_plan(objective="Ship the router\nwith more detail")

        assert extract_objective(plan, project_root) == "Ship the router"

    def test_truncates_long_objectives(self, write_plan, project_root):
        plan = write_plan(objective="x" * (OBJECTIVE_MAX_CHARS + 50))

        assert len(extract_objective(plan, project_root)) == OBJECTIVE_MAX_CHARS

    def test_missing_plan(self, project_root):
        with pytest.raises(ValidationError):
            extract_objective("plans/nope/01-x/01-01-PLAN.md", project_root)


class TestDraftPlans:
    def test_skips_tracked_and_summarized(self, write_plan, project_root):
        tracked = write_plan("plans/a/01-x/01-01-PLAN.md")
        summarized = write_plan("plans/a/01-x/01-02-PLAN.md")
        draft = write_plan("plans/a/01-x/01-03-PLAN.md")
        (project_root / summarized).with_name("01-02-SUMMARY.md").write_text("", encoding="utf-8")

        assert find_draft_plans(project_root, "plans", {tracked}) == [draft]

    def test_missing_plans_dir(self, project_root):
        assert find_draft_plans(project_root, "plans", set()) == []
