"""
instance.py - Persistence for workflow instances.

Each instance is one JSON file under .tiller/workflows/instances/<id>.json,
written atomically. Instances are independent of runs; a crash between
steps leaves the file at the last completed step.

Usage:
    from tiller.workflow.instance import InstanceStore

    store = InstanceStore(paths)
    instance = store.create(definition)
    store.save(instance)
    active = store.get_active()
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ..config.runtime_config import TillerPaths, resolve_paths
from ..runtime.errors import InstanceNotFoundError, TillerError, ValidationError
from ..runtime.storage import _atomic_write_json, _load_json_safe
from ..runtime.types import _utcnow
from .types import WorkflowDefinition, WorkflowInstance

# Module logger
logger = logging.getLogger(__name__)

_INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

DefinitionLoader = Callable[[str], WorkflowDefinition]


def generate_instance_id(workflow_name: str, now: Optional[float] = None) -> str:
    """Instance id in the form <workflow>-<unix seconds>."""
    timestamp = int(now if now is not None else time.time())
    return f"{workflow_name}-{timestamp}"


class InstanceStore:
    """One-file-per-instance storage."""

    def __init__(self, paths: Optional[TillerPaths] = None):
        self.paths = paths or resolve_paths()
        self.instances_dir = self.paths.instances_dir

    def instance_path(self, instance_id: str) -> Path:
        if not _INSTANCE_ID_RE.match(instance_id or ""):
            raise ValidationError(f"Invalid workflow instance id: {instance_id!r}")
        return self.instances_dir / f"{instance_id}.json"

    def create(
        self,
        definition: WorkflowDefinition,
        now: Optional[datetime] = None,
    ) -> WorkflowInstance:
        """Start a new instance at the definition's initial step and persist it."""
        now = now or _utcnow()
        base_id = generate_instance_id(definition.name, now.timestamp())
        instance_id = base_id
        suffix = 1
        while self.instance_path(instance_id).exists():
            suffix += 1
            instance_id = f"{base_id}-{suffix}"

        instance = WorkflowInstance(
            id=instance_id,
            workflow_name=definition.name,
            current_step=definition.initial_step,
            state={},
            history=[definition.initial_step],
            started_at=now,
            updated_at=now,
        )
        self.save(instance, now=now)
        logger.info("Started workflow %s as %s", definition.name, instance_id)
        return instance

    def load(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Load an instance, None if missing or corrupt."""
        data = _load_json_safe(self.instance_path(instance_id), "workflow instance")
        if data is None:
            return None
        try:
            return WorkflowInstance.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed workflow instance %s: %s", instance_id, e)
            return None

    def get(self, instance_id: str) -> WorkflowInstance:
        """Load an instance.

        Raises:
            InstanceNotFoundError: If no readable file exists.
        """
        instance = self.load(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def save(self, instance: WorkflowInstance, now: Optional[datetime] = None) -> Path:
        """Persist the instance, refreshing updated_at."""
        instance.updated_at = now or _utcnow()
        path = self.instance_path(instance.id)
        _atomic_write_json(path, instance.to_dict())
        return path

    def delete(self, instance_id: str) -> bool:
        path = self.instance_path(instance_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_instances(self, workflow_name: Optional[str] = None) -> List[WorkflowInstance]:
        """All readable instances, most recently updated first."""
        if not self.instances_dir.is_dir():
            return []

        instances: List[WorkflowInstance] = []
        for path in self.instances_dir.glob("*.json"):
            instance = self.load(path.stem) if _INSTANCE_ID_RE.match(path.stem) else None
            if instance is None:
                continue
            if workflow_name and instance.workflow_name != workflow_name:
                continue
            instances.append(instance)

        instances.sort(key=lambda i: i.updated_at, reverse=True)
        return instances

    def get_active(
        self,
        load_definition: Optional[DefinitionLoader] = None,
    ) -> Optional[WorkflowInstance]:
        """Most recently updated instance that is not at a terminal step.

        Args:
            load_definition: Resolves a workflow name to its definition.
                Defaults to loading from this project's workflows directory.
                Instances whose definition cannot be loaded are skipped.
        """
        if load_definition is None:
            from .loader import load_workflow

            def load_definition(name: str) -> WorkflowDefinition:
                return load_workflow(name, self.paths)

        for instance in self.list_instances():
            try:
                definition = load_definition(instance.workflow_name)
            except TillerError as e:
                logger.debug("Skipping instance %s: %s", instance.id, e)
                continue
            if not definition.is_terminal(instance.current_step):
                return instance
        return None
