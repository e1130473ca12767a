"""Tests for workflow instance persistence."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tiller.runtime.errors import InstanceNotFoundError, ValidationError, WorkflowNotFoundError
from tiller.workflow.instance import InstanceStore, generate_instance_id


@pytest.fixture
def instances(paths):
    return InstanceStore(paths)


class TestCreate:
    def test_create_starts_at_initial_step(self, instances, review_workflow, now):
        instance = instances.create(review_workflow, now=now)

        assert instance.id == f"plan-review-{int(now.timestamp())}"
        assert instance.current_step == "read"
        assert instance.history == ["read"]
        assert instance.state == {}
        assert instances.instance_path(instance.id).exists()

    def test_same_second_gets_suffix(self, instances, review_workflow, now):
        first = instances.create(review_workflow, now=now)
        second = instances.create(review_workflow, now=now)
        third = instances.create(review_workflow, now=now)

        assert second.id == f"{first.id}-2"
        assert third.id == f"{first.id}-3"

    def test_generate_instance_id(self):
        assert generate_instance_id("flow", 1700000000.9) == "flow-1700000000"


class TestLoadSave:
    def test_round_trip(self, instances, review_workflow, now):
        instance = instances.create(review_workflow, now=now)
        instance.state["verdict"] = "approve"
        instance.history.append("approved")
        instance.current_step = "approved"

        instances.save(instance, now=now + timedelta(minutes=1))
        loaded = instances.get(instance.id)

        assert loaded.state == {"verdict": "approve"}
        assert loaded.history == ["read", "approved"]
        assert loaded.current_step == "approved"
        assert loaded.updated_at == now + timedelta(minutes=1)
        assert loaded.started_at == now

    def test_missing_instance(self, instances):
        assert instances.load("nope-1") is None
        with pytest.raises(InstanceNotFoundError):
            instances.get("nope-1")

    def test_corrupt_instance_is_skipped(self, instances, paths):
        paths.instances_dir.mkdir(parents=True)
        (paths.instances_dir / "broken-1.json").write_text("{", encoding="utf-8")
        (paths.instances_dir / "partial-1.json").write_text('{"id": "partial-1"}', encoding="utf-8")

        assert instances.load("broken-1") is None
        assert instances.load("partial-1") is None
        assert instances.list_instances() == []

    @pytest.mark.parametrize("bad_id", ["", "../x", "-lead", "a/b"])
    def test_rejects_unsafe_ids(self, instances, bad_id):
        with pytest.raises(ValidationError):
            instances.instance_path(bad_id)

    def test_delete(self, instances, review_workflow, now):
        instance = instances.create(review_workflow, now=now)

        assert instances.delete(instance.id) is True
        assert instances.delete(instance.id) is False


class TestQueries:
    def test_list_newest_first_and_filter(self, instances, review_workflow, now):
        older = instances.create(review_workflow, now=now)
        newer = instances.create(review_workflow, now=now + timedelta(seconds=5))

        assert [i.id for i in instances.list_instances()] == [newer.id, older.id]
        assert instances.list_instances("other") == []

    def test_get_active_skips_terminal(self, instances, review_workflow, now):
        active = instances.create(review_workflow, now=now)
        done = instances.create(review_workflow, now=now + timedelta(seconds=1))
        done.current_step = "approved"
        instances.save(done, now=now + timedelta(seconds=2))

        found = instances.get_active(lambda name: review_workflow)

        assert found.id == active.id

    def test_get_active_skips_unloadable_definitions(self, instances, review_workflow, now):
        instances.create(review_workflow, now=now)

        def missing(name):
            raise WorkflowNotFoundError(name)

        assert instances.get_active(missing) is None

    def test_get_active_loads_from_project(self, instances, write_workflow, review_workflow, now):
        write_workflow()
        instance = instances.create(review_workflow, now=now)

        assert instances.get_active().id == instance.id

    def test_get_active_empty(self, instances):
        assert instances.get_active(lambda name: None) is None
