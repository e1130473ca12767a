"""
storage.py - Disk I/O for run records and the domain event log.

The storage layout is:

    .tiller/
      runs/
        <run_id>.json      # Run serialized (one file per run)
      events.jsonl         # newline-delimited domain events (append-only)
      runs.jsonl           # git-trackable export of all runs

RunStore.save() is a raw write. Mutating code paths go through
tiller.runtime.versioned so concurrent writers are detected; raw save is
used for creation and for JSONL import.

Usage:
    from tiller.runtime.storage import RunStore, EventLog, SyncStats

    store = RunStore(paths)
    run = store.get("run-abc123")
    runs = store.list_runs(state="active")
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from ..config.runtime_config import TillerPaths
from .errors import RunNotFoundError, ValidationError
from .state_machine import matches_state
from .types import (
    Run,
    RunId,
    _datetime_to_iso,
    _utcnow,
    generate_run_id,
    run_from_dict,
    run_to_dict,
)

# Module logger
logger = logging.getLogger(__name__)

RUN_FILE_SUFFIX = ".json"
JSONL_FORMAT_VERSION = "1.0"
_MAX_ID_ATTEMPTS = 20


# -----------------------------------------------------------------------------
# Atomic File I/O Helpers
# -----------------------------------------------------------------------------


def _atomic_write_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON data to a file atomically.

    Uses a temporary file + os.replace pattern so a reader never sees a
    partially written file.

    Args:
        path: Destination file path.
        data: JSON-serializable data.
        indent: JSON indentation level.
    """
    parent = path.parent
    parent.mkdir(parents=True, exist_ok=True)

    # Temp file in same directory keeps the rename on one filesystem
    fd, tmp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=path.name + ".",
        dir=parent,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _load_json_safe(path: Path, label: str) -> Optional[Dict[str, Any]]:
    """Load a JSON file, returning None on missing or corrupt files.

    Args:
        path: Path to JSON file.
        label: Description for logging (e.g., "run 'run-abc123'").

    Returns:
        Parsed JSON dict, or None if the file doesn't exist or is corrupt.
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Corrupt %s at %s: %s", label, path, e)
        return None
    except OSError as e:
        logger.warning("Failed to read %s at %s: %s", label, path, e)
        return None


def normalize_project_path(path: str, root: Path) -> str:
    """Normalize a file reference to a project-relative POSIX path.

    Absolute paths inside the project are relativized.

    Raises:
        ValidationError: For empty paths, absolute paths outside the project,
            or paths escaping the project via "..".
    """
    if not path or not path.strip():
        raise ValidationError("File path must be non-empty")
    candidate = Path(path.strip())
    if candidate.is_absolute():
        try:
            candidate = candidate.resolve().relative_to(root.resolve())
        except ValueError:
            raise ValidationError(f"Path is outside the project: {path}") from None
    posix = PurePosixPath(candidate.as_posix())
    parts = [p for p in posix.parts if p not in ("", ".")]
    if not parts or ".." in parts:
        raise ValidationError(f"Path must stay inside the project: {path}")
    return "/".join(parts)


# -----------------------------------------------------------------------------
# Event Log (JSONL - newline-delimited JSON)
# -----------------------------------------------------------------------------


class EventLog:
    """Append-only domain event log shared by runs, claims and workflows.

    Appends are best-effort: an I/O or serialization failure is logged and
    swallowed so audit logging never blocks a state change.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def append(self, event: str, run_id: Optional[RunId] = None, **fields: Any) -> None:
        """Append one event line.

        Args:
            event: Event name (e.g., "run_created", "run_claimed").
            run_id: Run the event concerns, if any.
            **fields: Additional JSON-serializable event fields.
        """
        record: Dict[str, Any] = {"ts": _datetime_to_iso(_utcnow()), "event": event}
        if run_id is not None:
            record["run"] = run_id
        record.update(fields)

        with self._lock:
            try:
                line = json.dumps(record, ensure_ascii=False, default=str)
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
                    f.flush()
            except (OSError, TypeError, ValueError) as e:
                # Don't re-raise - event logging is non-critical
                logger.warning("Failed to append event '%s' to %s: %s", event, self.path, e)

    def read(self, limit: Optional[int] = None, run_id: Optional[RunId] = None) -> List[Dict[str, Any]]:
        """Read events in file order, skipping malformed lines.

        Args:
            limit: Return only the last N matching events.
            run_id: Only events for this run.
        """
        if not self.path.exists():
            return []

        events: List[Dict[str, Any]] = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if run_id is not None and data.get("run") != run_id:
                        continue
                    events.append(data)
        except OSError:
            return []

        if limit:
            return events[-limit:]
        return events


# -----------------------------------------------------------------------------
# Run Store
# -----------------------------------------------------------------------------


@dataclass
class SyncStats:
    """Outcome counts of a JSONL import."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0


class RunStore:
    """One JSON file per run under .tiller/runs/."""

    def __init__(self, paths: TillerPaths):
        self.paths = paths
        self.runs_dir = paths.runs_dir
        self.events = EventLog(paths.events_file)

    # -- paths ---------------------------------------------------------------

    def run_path(self, run_id: RunId) -> Path:
        """Path of a run's file. Rejects ids that would escape the runs dir."""
        if not run_id or "/" in run_id or "\\" in run_id or run_id.startswith("."):
            raise ValidationError(f"Invalid run id: {run_id!r}")
        return self.runs_dir / f"{run_id}{RUN_FILE_SUFFIX}"

    def exists(self, run_id: RunId) -> bool:
        return self.run_path(run_id).exists()

    def new_run_id(self) -> RunId:
        """Generate a run id that no existing run file uses."""
        for _ in range(_MAX_ID_ATTEMPTS):
            run_id = generate_run_id()
            if not self.exists(run_id):
                return run_id
        raise RuntimeError("Could not generate a unique run id")

    # -- read / write --------------------------------------------------------

    def load(self, run_id: RunId) -> Optional[Run]:
        """Load a run, returning None if missing or unreadable."""
        data = _load_json_safe(self.run_path(run_id), f"run '{run_id}'")
        if data is None:
            return None
        try:
            return run_from_dict(data)
        except (ValidationError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid run record '%s': %s", run_id, e)
            return None

    def get(self, run_id: RunId) -> Run:
        """Load a run or raise RunNotFoundError."""
        run = self.load(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def save(self, run: Run) -> Path:
        """Write a run file atomically without any version check."""
        path = self.run_path(run.id)
        _atomic_write_json(path, run_to_dict(run))
        return path

    def delete(self, run_id: RunId) -> bool:
        """Remove a run file. Returns False if it did not exist."""
        path = self.run_path(run_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    # -- queries -------------------------------------------------------------

    def list_runs(
        self, state: Optional[str] = None, initiative: Optional[str] = None
    ) -> List[Run]:
        """List runs, newest update first.

        Args:
            state: Optional state query ("active", "active/*", "ready").
            initiative: Only runs in this initiative.

        Returns:
            Matching runs. Corrupt files are skipped with a warning.
        """
        if not self.runs_dir.exists():
            return []

        runs: List[Run] = []
        for path in sorted(self.runs_dir.glob(f"*{RUN_FILE_SUFFIX}")):
            run = self.load(path.stem)
            if run is None:
                continue
            if state is not None and not matches_state(run.state, state):
                continue
            if initiative is not None and run.initiative != initiative:
                continue
            runs.append(run)

        runs.sort(key=lambda r: r.updated, reverse=True)
        return runs

    def find_by_plan_path(self, plan_path: str) -> Optional[Run]:
        """Find the run created for a project-relative plan path."""
        for run in self.list_runs():
            if run.plan_path == plan_path:
                return run
        return None

    # -- JSONL sync ----------------------------------------------------------

    def export_jsonl(self, output_path: Optional[Path] = None) -> int:
        """Export all runs to JSONL for git tracking.

        The first line is metadata; subsequent lines are runs sorted by id.

        Returns:
            Number of runs exported.
        """
        target = output_path or self.paths.runs_jsonl
        runs = sorted(self.list_runs(), key=lambda r: r.id)
        metadata = {
            "version": JSONL_FORMAT_VERSION,
            "exported_at": _datetime_to_iso(_utcnow()),
            "run_count": len(runs),
        }
        lines = [json.dumps(metadata)]
        lines.extend(json.dumps(run_to_dict(run), ensure_ascii=False) for run in runs)

        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(suffix=".tmp", prefix=target.name + ".", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
            os.replace(tmp_path, target)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        logger.info("Exported %d runs to %s", len(runs), target)
        return len(runs)

    def import_jsonl(self, input_path: Optional[Path] = None) -> SyncStats:
        """Import runs from JSONL, reconciling with local files.

        Missing runs are created; local runs with an older ``updated`` are
        overwritten; local runs that are the same age or newer are kept.
        """
        source = input_path or self.paths.runs_jsonl
        stats = SyncStats()
        if not source.exists():
            return stats

        with open(source, "r", encoding="utf-8") as f:
            lines = [line for line in f.read().splitlines() if line.strip()]

        # First line is metadata
        for line in lines[1:]:
            try:
                incoming = run_from_dict(json.loads(line))
            except (json.JSONDecodeError, ValidationError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid run line in %s: %s", source, e)
                stats.skipped += 1
                continue

            local = self.load(incoming.id)
            if local is None:
                self.save(incoming)
                stats.created += 1
            elif incoming.updated > local.updated:
                self.save(incoming)
                stats.updated += 1
            else:
                stats.unchanged += 1

        return stats
