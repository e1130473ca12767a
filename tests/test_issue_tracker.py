"""Tests for the issue-tracker subprocess wrapper.

The tracker binary is never executed; subprocess.run is replaced with a
recorder that returns canned CompletedProcess objects.
"""

from __future__ import annotations

import json
import logging
import subprocess

import pytest

from tiller.runtime import issue_tracker as tracker_module
from tiller.runtime.issue_tracker import IssueTracker


class FakeRun:
    """Stand-in for subprocess.run keyed by the tracker subcommand."""

    def __init__(self, responses=None, raises=None):
        self.responses = responses or {}
        self.raises = raises
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs))
        if self.raises is not None:
            raise self.raises
        response = self.responses.get(argv[1], (0, "", ""))
        if callable(response):
            response = response(argv)
        code, stdout, stderr = response
        return subprocess.CompletedProcess(argv, code, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_run(monkeypatch):
    def _install(**kwargs):
        fake = FakeRun(**kwargs)
        monkeypatch.setattr(tracker_module.subprocess, "run", fake)
        return fake

    return _install


@pytest.fixture
def tracker(project_root):
    return IssueTracker(command="bd", timeout=2.0, enabled=True, cwd=project_root)


class TestRun:
    def test_disabled_tracker_never_spawns(self, fake_run):
        fake = fake_run()
        disabled = IssueTracker(enabled=False)

        assert disabled.ready_tasks() == []
        assert disabled.close_task("t-1") is False
        assert fake.calls == []

    def test_missing_binary(self, tracker, fake_run, caplog):
        fake_run(raises=FileNotFoundError("bd"))

        with caplog.at_level(logging.WARNING):
            assert tracker.ready_tasks() == []
        assert "not found in PATH" in caplog.text

    def test_timeout(self, tracker, fake_run):
        fake_run(raises=subprocess.TimeoutExpired(["bd"], 2.0))

        assert tracker.show_task("t-1") is None

    def test_os_error(self, tracker, fake_run):
        fake_run(raises=PermissionError("denied"))

        assert tracker.close_task("t-1") is False

    def test_nonzero_exit(self, tracker, fake_run):
        fake_run(responses={"ready": (1, "", "db locked")})

        assert tracker.ready_tasks() == []

    def test_unparseable_json(self, tracker, fake_run, caplog):
        fake_run(responses={"ready": (0, "not json", "")})

        with caplog.at_level(logging.WARNING):
            assert tracker.ready_tasks() == []
        assert "Unparseable JSON" in caplog.text


class TestQueries:
    def test_ready_tasks_arguments(self, tracker, fake_run, project_root):
        payload = [{"id": "t-1", "title": "Fix it", "status": "open"}]
        fake = fake_run(responses={"ready": (0, json.dumps(payload), "")})

        tasks = tracker.ready_tasks(unassigned=True, limit=3)

        assert [t.id for t in tasks] == ["t-1"]
        argv, kwargs = fake.calls[0]
        assert argv == ["bd", "ready", "--json", "--unassigned", "--limit", "3"]
        assert kwargs["cwd"] == str(project_root)
        assert kwargs["timeout"] == 2.0

    def test_show_task_accepts_list_or_object(self, tracker, fake_run):
        fake_run(responses={"show": (0, json.dumps([{"id": "t-1", "status": "closed"}]), "")})
        assert tracker.show_task("t-1").is_closed

        fake_run(responses={"show": (0, json.dumps({"id": "t-1", "assignee": ""}), "")})
        task = tracker.show_task("t-1")
        assert task.assignee is None
        assert not task.is_closed

    def test_close_task_passes_reason(self, tracker, fake_run):
        fake = fake_run()

        assert tracker.close_task("t-1", reason="run done") is True
        assert fake.calls[0][0] == ["bd", "close", "t-1", "--reason", "run done"]


class TestClaimTask:
    def test_claim_confirmed_by_read_back(self, tracker, fake_run):
        shown = json.dumps({"id": "t-1", "title": "Fix", "status": "in_progress", "assignee": "ellis-reed"})
        fake = fake_run(responses={"update": (0, "", ""), "show": (0, shown, "")})

        claim = tracker.claim_task("t-1", "ellis-reed")

        assert claim.success
        assert claim.task.title == "Fix"
        update_kwargs = fake.calls[0][1]
        assert update_kwargs["env"]["BD_ACTOR"] == "ellis-reed"

    def test_already_claimed(self, tracker, fake_run):
        fake_run(responses={"update": (1, "", "error: already claimed by sam-lane")})

        claim = tracker.claim_task("t-1", "ellis-reed")

        assert not claim.success
        assert claim.error == "already_claimed"
        assert claim.actual_owner == "sam-lane"

    def test_lost_race(self, tracker, fake_run):
        shown = json.dumps({"id": "t-1", "assignee": "sam-lane"})
        fake_run(responses={"update": (0, "", ""), "show": (0, shown, "")})

        claim = tracker.claim_task("t-1", "ellis-reed")

        assert claim.error == "lost_race"
        assert claim.actual_owner == "sam-lane"

    def test_task_vanished(self, tracker, fake_run):
        fake_run(responses={"update": (0, "", ""), "show": (1, "", "no such task")})

        assert tracker.claim_task("t-1", "ellis-reed").error == "task_not_found"


class TestFromConfig:
    def test_reads_config_and_env(self, project_root, monkeypatch):
        monkeypatch.setenv("TILLER_ISSUE_TRACKER", "off")

        tracker = IssueTracker.from_config(project_root)

        assert tracker.enabled is False
        assert tracker.command == "bd"
        assert tracker.cwd == project_root
