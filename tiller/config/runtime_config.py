"""Runtime configuration for run coordination.

Provides project root discovery, the on-disk layout under .tiller/, and
settings loaded from .tiller/tiller.yaml. Environment variables take
precedence over YAML config, which takes precedence over defaults.

Usage:
    from tiller.config.runtime_config import (
        find_project_root, resolve_paths, get_config,
        get_claim_ttl_minutes, get_lock_timeout_seconds,
    )

    paths = resolve_paths()              # TillerPaths for the current project
    ttl = get_claim_ttl_minutes(paths.root)

Environment overrides:
    TILLER_CLAIM_TTL_MINUTES      default claim TTL
    TILLER_LOCK_TIMEOUT_SECONDS   mate lock deadline
    TILLER_SESSION_STALE_MINUTES  session staleness window
    TILLER_ISSUE_TRACKER          "0"/"false" disables the issue tracker
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".tiller"
CONFIG_FILE_NAME = "tiller.yaml"

_cached_configs: Dict[Path, Dict[str, Any]] = {}


# =============================================================================
# Project Layout
# =============================================================================


@dataclass(frozen=True)
class TillerPaths:
    """Resolved locations of every file the core reads or writes."""

    root: Path

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR_NAME

    @property
    def config_file(self) -> Path:
        return self.state_dir / CONFIG_FILE_NAME

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / "runs"

    @property
    def events_file(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def runs_jsonl(self) -> Path:
        return self.state_dir / "runs.jsonl"

    @property
    def workflows_dir(self) -> Path:
        return self.state_dir / "workflows"

    @property
    def instances_dir(self) -> Path:
        return self.workflows_dir / "instances"

    @property
    def mates_dir(self) -> Path:
        return self.state_dir / "mates"

    @property
    def legacy_mates_file(self) -> Path:
        return self.state_dir / "mates.json"


def find_project_root(start: Optional[Path] = None) -> Path:
    """Walk up from start to the first directory holding .tiller/ or .git/.

    Falls back to start itself when no marker is found.
    """
    origin = Path(start or os.getcwd()).resolve()
    for candidate in (origin, *origin.parents):
        if (candidate / STATE_DIR_NAME).is_dir() or (candidate / ".git").exists():
            return candidate
    return origin


def resolve_paths(root: Optional[Path] = None) -> TillerPaths:
    """Build TillerPaths for an explicit root or the discovered project root."""
    return TillerPaths(root=Path(root).resolve() if root else find_project_root())


# =============================================================================
# Config Loading
# =============================================================================


def _default_config() -> Dict[str, Any]:
    """Return default configuration if tiller.yaml doesn't exist."""
    return {
        "version": "0.3.0",
        "paths": {
            "plans": "plans",
            "default_initiative": "tiller-cli",
        },
        "claims": {
            "ttl_minutes": 30,
        },
        "mates": {
            "lock_timeout_seconds": 5.0,
            "session_stale_minutes": 60,
            "sessions_dir": ".claude/agents",
        },
        "patrol": {
            "poll_interval_seconds": 5.0,
            "task_poll_seconds": 2.0,
            "task_timeout_minutes": 30,
        },
        "issue_tracker": {
            "enabled": True,
            "command": "bd",
            "timeout_seconds": 5.0,
        },
    }


def _merge_sections(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into base one section deep."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def _load_config(root: Path) -> Dict[str, Any]:
    """Load tiller.yaml for a project root, with caching."""
    config_path = TillerPaths(root=root).config_file
    cached = _cached_configs.get(config_path)
    if cached is not None:
        return cached

    config = _default_config()
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config = _merge_sections(config, loaded)
            else:
                logger.warning("Ignoring %s: top level is not a mapping", config_path)
        except yaml.YAMLError as e:
            logger.warning("Failed to parse %s: %s (using defaults)", config_path, e)

    _cached_configs[config_path] = config
    return config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    _cached_configs.clear()


def get_config(root: Optional[Path] = None) -> Dict[str, Any]:
    """Return the merged configuration for a project."""
    return _load_config(resolve_paths(root).root)


def _env_number(name: str, cast: type) -> Optional[Any]:
    """Read a numeric env override, logging and ignoring malformed values."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a valid %s", name, raw, cast.__name__)
        return None
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return None
    return value


# =============================================================================
# Accessors
# =============================================================================


def get_claim_ttl_minutes(root: Optional[Path] = None) -> int:
    """Default TTL for run claims."""
    override = _env_number("TILLER_CLAIM_TTL_MINUTES", int)
    if override is not None:
        return override
    return int(get_config(root)["claims"]["ttl_minutes"])


def get_lock_timeout_seconds(root: Optional[Path] = None) -> float:
    """Hard deadline for acquiring a mate lock."""
    override = _env_number("TILLER_LOCK_TIMEOUT_SECONDS", float)
    if override is not None:
        return override
    return float(get_config(root)["mates"]["lock_timeout_seconds"])


def get_session_stale_minutes(root: Optional[Path] = None) -> int:
    """Minutes after which an untouched session directory counts as stale."""
    override = _env_number("TILLER_SESSION_STALE_MINUTES", int)
    if override is not None:
        return override
    return int(get_config(root)["mates"]["session_stale_minutes"])


def get_sessions_dir(root: Optional[Path] = None) -> Path:
    """Directory holding one subdirectory per agent session."""
    paths = resolve_paths(root)
    return paths.root / get_config(paths.root)["mates"]["sessions_dir"]


def get_patrol_settings(root: Optional[Path] = None) -> Dict[str, float]:
    """Poll interval, task poll interval and task timeout for the worker loop."""
    patrol = get_config(root)["patrol"]
    return {
        "poll_interval_seconds": float(patrol["poll_interval_seconds"]),
        "task_poll_seconds": float(patrol["task_poll_seconds"]),
        "task_timeout_seconds": float(patrol["task_timeout_minutes"]) * 60.0,
    }


def is_issue_tracker_enabled(root: Optional[Path] = None) -> bool:
    """Whether optional issue-tracker bookkeeping is on."""
    env_value = os.environ.get("TILLER_ISSUE_TRACKER")
    if env_value is not None:
        return env_value.strip().lower() not in ("0", "false", "no", "off")
    return bool(get_config(root)["issue_tracker"]["enabled"])


def get_issue_tracker_command(root: Optional[Path] = None) -> str:
    """Executable name of the issue tracker."""
    return str(get_config(root)["issue_tracker"]["command"])


def get_issue_tracker_timeout(root: Optional[Path] = None) -> float:
    """Per-command timeout for issue-tracker subprocesses."""
    return float(get_config(root)["issue_tracker"]["timeout_seconds"])


def get_plans_dir(root: Optional[Path] = None) -> str:
    """Project-relative directory holding plan documents."""
    return str(get_config(root)["paths"]["plans"]).strip("/")


def get_default_initiative(root: Optional[Path] = None) -> str:
    """Initiative assigned to runs whose plan path carries none."""
    return str(get_config(root)["paths"]["default_initiative"])
