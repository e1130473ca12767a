"""Tests for the run store and optimistic concurrency.

These tests verify that:
1. Fresh saves bump the revision and produce a new version token
2. A save against an outdated version is refused and writes nothing
3. Corrupt or missing files surface the right errors
4. JSONL export/import reconciles by updated timestamp
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from tiller.runtime.errors import (
    InvalidTransition,
    RunNotFoundError,
    StaleWriteError,
    ValidationError,
)
from tiller.runtime.state_machine import apply_transition
from tiller.runtime.types import RunState
from tiller.runtime.versioned import (
    current_version,
    load_versioned,
    save_if_fresh,
    update_versioned,
)


class TestVersionedLoadSave:
    def test_load_returns_token_matching_disk(self, store, make_run):
        run = make_run()

        versioned = load_versioned(store, run.id)

        assert versioned.run.id == run.id
        assert versioned.version == current_version(store, run.id)
        assert ":" in versioned.version

    def test_fresh_save_bumps_revision_and_token(self, store, make_run):
        run = make_run()
        versioned = load_versioned(store, run.id)
        old_version = versioned.version

        new_version = save_if_fresh(store, versioned)

        assert new_version != old_version
        assert versioned.version == new_version
        assert store.get(run.id).revision == 1

    def test_consecutive_saves_from_one_handle(self, store, make_run):
        run = make_run()
        versioned = load_versioned(store, run.id)

        save_if_fresh(store, versioned)
        save_if_fresh(store, versioned)

        assert store.get(run.id).revision == 2

    def test_stale_write_is_refused(self, store, make_run):
        run = make_run(state=RunState.READY)
        first = load_versioned(store, run.id)
        second = load_versioned(store, run.id)

        apply_transition(first.run, "active/executing", actor="agent-a")
        save_if_fresh(store, first)

        apply_transition(second.run, "abandoned", actor="agent-b")
        with pytest.raises(StaleWriteError) as exc_info:
            save_if_fresh(store, second)

        assert exc_info.value.run_id == run.id
        assert exc_info.value.expected_version == second.version
        assert exc_info.value.actual_version == first.version
        # The first writer's change survives
        assert store.get(run.id).state == RunState.ACTIVE_EXECUTING

    def test_stale_after_reload_succeeds(self, store, make_run):
        run = make_run(state=RunState.READY)
        stale = load_versioned(store, run.id)
        save_if_fresh(store, load_versioned(store, run.id))

        with pytest.raises(StaleWriteError):
            save_if_fresh(store, stale)

        fresh = load_versioned(store, run.id)
        apply_transition(fresh.run, "abandoned", actor="agent-b")
        save_if_fresh(store, fresh)
        assert store.get(run.id).state == RunState.ABANDONED

    def test_save_after_delete_is_stale(self, store, make_run):
        run = make_run()
        versioned = load_versioned(store, run.id)
        store.delete(run.id)

        with pytest.raises(StaleWriteError) as exc_info:
            save_if_fresh(store, versioned)
        assert exc_info.value.actual_version is None

    def test_missing_run(self, store):
        with pytest.raises(RunNotFoundError):
            load_versioned(store, "run-missing")

    def test_corrupt_run_file(self, store, paths):
        paths.runs_dir.mkdir(parents=True, exist_ok=True)
        (paths.runs_dir / "run-broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_versioned(store, "run-broken")

    def test_update_versioned_propagates_mutator_errors(self, store, make_run):
        run = make_run(state=RunState.READY)
        before = current_version(store, run.id)

        def mutate(r):
            apply_transition(r, "complete", actor="agent-a")

        with pytest.raises(InvalidTransition):
            update_versioned(store, run.id, mutate)
        assert current_version(store, run.id) == before


class TestRunStore:
    def test_save_and_load_round_trip(self, store, make_run):
        run = make_run(files_touched=["src/a.py"], priority=3, depends_on=["run-other"])

        loaded = store.get(run.id)

        assert loaded.files_touched == ["src/a.py"]
        assert loaded.priority == 3
        assert loaded.depends_on == ["run-other"]
        assert loaded.claimed_by is None

    def test_load_missing_returns_none(self, store):
        assert store.load("run-nothing") is None

    def test_get_missing_raises(self, store):
        with pytest.raises(RunNotFoundError):
            store.get("run-nothing")

    @pytest.mark.parametrize("bad_id", ["", "../escape", "a/b", ".hidden"])
    def test_rejects_unsafe_ids(self, store, bad_id):
        with pytest.raises(ValidationError):
            store.run_path(bad_id)

    def test_list_runs_filters_by_state_query(self, store, make_run):
        make_run(state=RunState.READY)
        paused = make_run(state=RunState.ACTIVE_PAUSED)
        executing = make_run(state=RunState.ACTIVE_EXECUTING)

        active_ids = {r.id for r in store.list_runs(state="active")}

        assert active_ids == {paused.id, executing.id}
        assert [r.id for r in store.list_runs(state="active/paused")] == [paused.id]

    def test_list_runs_skips_corrupt_files(self, store, make_run, paths):
        good = make_run()
        (paths.runs_dir / "run-corrupt.json").write_text("{}", encoding="utf-8")

        assert [r.id for r in store.list_runs()] == [good.id]

    def test_list_runs_by_initiative(self, store, make_run):
        make_run(initiative="alpha")
        beta = make_run(initiative="beta")

        assert [r.id for r in store.list_runs(initiative="beta")] == [beta.id]

    def test_find_by_plan_path(self, store, make_run):
        run = make_run()

        assert store.find_by_plan_path(run.plan_path).id == run.id
        assert store.find_by_plan_path("plans/none.md") is None

    def test_new_run_id_is_unused(self, store):
        run_id = store.new_run_id()
        assert run_id.startswith("run-")
        assert not store.exists(run_id)


class TestJsonlSync:
    def test_export_writes_metadata_then_sorted_runs(self, store, make_run, paths):
        make_run(run_id="run-bbbbbb")
        make_run(run_id="run-aaaaaa")

        count = store.export_jsonl()

        lines = paths.runs_jsonl.read_text(encoding="utf-8").splitlines()
        assert count == 2
        assert json.loads(lines[0])["run_count"] == 2
        assert [json.loads(line)["id"] for line in lines[1:]] == ["run-aaaaaa", "run-bbbbbb"]

    def test_import_reconciles_by_updated(self, store, make_run, paths, now):
        kept = make_run(run_id="run-kept00")
        replaced = make_run(run_id="run-repl00")
        store.export_jsonl()

        # Local copy of "kept" is newer than the export; "replaced" was deleted
        kept.updated = now + timedelta(hours=1)
        store.save(kept)
        store.delete(replaced.id)

        stats = store.import_jsonl()

        assert stats.created == 1
        assert stats.unchanged == 1
        assert stats.updated == 0
        assert store.get(kept.id).updated == now + timedelta(hours=1)
        assert store.exists(replaced.id)

    def test_import_overwrites_older_local(self, store, make_run, now):
        run = make_run(run_id="run-old000")
        run.updated = now + timedelta(minutes=5)
        run.intent = "from the export"
        store.save(run)
        store.export_jsonl()

        run.updated = now
        run.intent = "stale local"
        store.save(run)

        stats = store.import_jsonl()

        assert stats.updated == 1
        assert store.get(run.id).intent == "from the export"

    def test_import_skips_invalid_lines(self, store, paths):
        paths.runs_jsonl.parent.mkdir(parents=True, exist_ok=True)
        paths.runs_jsonl.write_text('{"version": 1}\nnot-json\n', encoding="utf-8")

        stats = store.import_jsonl()

        assert stats.skipped == 1
        assert stats.created == 0

    def test_import_missing_file_is_empty(self, store):
        assert store.import_jsonl().created == 0
