"""Tests for layered configuration: defaults, tiller.yaml, then env overrides."""

from __future__ import annotations

import logging

import pytest

from tiller.config.runtime_config import (
    find_project_root,
    get_claim_ttl_minutes,
    get_config,
    get_default_initiative,
    get_lock_timeout_seconds,
    get_patrol_settings,
    get_plans_dir,
    get_session_stale_minutes,
    get_sessions_dir,
    is_issue_tracker_enabled,
    reset_config,
)


def _write_config(paths, text):
    paths.config_file.write_text(text, encoding="utf-8")
    reset_config()


class TestDefaults:
    def test_defaults_without_config_file(self, project_root):
        assert get_claim_ttl_minutes(project_root) == 30
        assert get_lock_timeout_seconds(project_root) == 5.0
        assert get_session_stale_minutes(project_root) == 60
        assert is_issue_tracker_enabled(project_root) is True
        assert get_sessions_dir(project_root) == project_root.resolve() / ".claude" / "agents"

    def test_patrol_timeout_in_seconds(self, project_root):
        settings = get_patrol_settings(project_root)
        assert settings["task_timeout_seconds"] == 1800.0
        assert settings["poll_interval_seconds"] == 5.0

    def test_plan_layout_defaults(self, project_root):
        assert get_plans_dir(project_root) == "plans"
        assert get_default_initiative(project_root) == "tiller-cli"

    def test_plan_layout_from_file(self, paths, project_root):
        _write_config(paths, "paths:\n  plans: roadmap/\n  default_initiative: core\n")

        assert get_plans_dir(project_root) == "roadmap"
        assert get_default_initiative(project_root) == "core"


class TestConfigFile:
    def test_file_overrides_merge_per_section(self, paths, project_root):
        _write_config(paths, "claims:\n  ttl_minutes: 45\nmates:\n  session_stale_minutes: 5\n")

        assert get_claim_ttl_minutes(project_root) == 45
        assert get_session_stale_minutes(project_root) == 5
        # Untouched keys in the same section keep their defaults
        assert get_lock_timeout_seconds(project_root) == 5.0
        assert get_config(project_root)["paths"]["plans"] == "plans"

    def test_invalid_yaml_falls_back_to_defaults(self, paths, project_root, caplog):
        _write_config(paths, "claims: [unclosed\n")

        with caplog.at_level(logging.WARNING):
            assert get_claim_ttl_minutes(project_root) == 30
        assert "Failed to parse" in caplog.text

    def test_non_mapping_is_ignored(self, paths, project_root):
        _write_config(paths, "- just\n- a list\n")

        assert get_claim_ttl_minutes(project_root) == 30

    def test_config_is_cached_until_reset(self, paths, project_root):
        assert get_claim_ttl_minutes(project_root) == 30
        paths.config_file.write_text("claims:\n  ttl_minutes: 10\n", encoding="utf-8")

        assert get_claim_ttl_minutes(project_root) == 30
        reset_config()
        assert get_claim_ttl_minutes(project_root) == 10


class TestEnvOverrides:
    def test_env_wins_over_file(self, paths, project_root, monkeypatch):
        _write_config(paths, "claims:\n  ttl_minutes: 45\n")
        monkeypatch.setenv("TILLER_CLAIM_TTL_MINUTES", "90")
        monkeypatch.setenv("TILLER_LOCK_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("TILLER_SESSION_STALE_MINUTES", "15")

        assert get_claim_ttl_minutes(project_root) == 90
        assert get_lock_timeout_seconds(project_root) == 0.5
        assert get_session_stale_minutes(project_root) == 15

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "1.5"])
    def test_invalid_env_is_ignored(self, project_root, monkeypatch, caplog, raw):
        monkeypatch.setenv("TILLER_CLAIM_TTL_MINUTES", raw)

        with caplog.at_level(logging.WARNING):
            assert get_claim_ttl_minutes(project_root) == 30
        assert "TILLER_CLAIM_TTL_MINUTES" in caplog.text

    @pytest.mark.parametrize("raw,expected", [("0", False), ("off", False), ("1", True)])
    def test_issue_tracker_toggle(self, project_root, monkeypatch, raw, expected):
        monkeypatch.setenv("TILLER_ISSUE_TRACKER", raw)
        assert is_issue_tracker_enabled(project_root) is expected


class TestProjectRoot:
    def test_walks_up_to_state_dir(self, project_root):
        nested = project_root / "src" / "deep"
        nested.mkdir(parents=True)

        assert find_project_root(nested) == project_root.resolve()
