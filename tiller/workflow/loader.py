"""
loader.py - Load and validate declarative workflow definitions.

Definitions live in .tiller/workflows/<name>.yaml:

    name: plan-review
    version: "1.0"
    description: Review a plan before execution
    initial_step: read
    terminal_steps: [approved, rejected]
    steps:
      read:
        name: Read the plan
        outputs: [verdict]
        next:
          - target: approved
            condition: eq(verdict, approve)
          - target: rejected
      approved: {name: Approved}
      rejected: {name: Rejected}

Validation runs in two passes. The JSON Schema pass checks structure; the
semantic pass checks that every referenced step exists, every condition
parses, and flags unreachable steps and steps with no default edge.

Usage:
    from tiller.workflow.loader import load_workflow, list_workflows

    definition = load_workflow("plan-review")
"""

from __future__ import annotations

import json
import logging
from collections import deque
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml
from jsonschema import Draft7Validator

from ..config.runtime_config import TillerPaths, resolve_paths
from ..runtime.errors import ValidationError, WorkflowNotFoundError
from ..validator.errors import ValidationResult
from .conditions import validate_condition
from .types import WorkflowDefinition

# Module logger
logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schemas" / "workflow.schema.json"
WORKFLOW_SUFFIXES = (".yaml", ".yml")


@lru_cache(maxsize=1)
def _load_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH, encoding="utf-8") as f:
        return json.load(f)


def _schema_location(source: str, path: List[Any]) -> str:
    if not path:
        return source
    return f"{source}:" + ".".join(str(p) for p in path)


# =============================================================================
# Validation
# =============================================================================


def _check_schema(data: Any, source: str, result: ValidationResult) -> None:
    validator = Draft7Validator(_load_schema())
    for error in sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.absolute_path]):
        location = _schema_location(source, list(error.absolute_path))
        if error.validator == "required":
            result.add_error(
                "MISSING_FIELD",
                location,
                error.message,
                "add the missing field to the workflow definition",
            )
        else:
            result.add_error(
                "INVALID_FIELD",
                location,
                error.message,
                "correct the value to match the workflow schema",
            )


def _reachable_steps(data: Dict[str, Any]) -> Set[str]:
    steps = data.get("steps") or {}
    seen: Set[str] = set()
    queue = deque([data["initial_step"]])
    while queue:
        step_id = queue.popleft()
        if step_id in seen or step_id not in steps:
            continue
        seen.add(step_id)
        for edge in (steps[step_id] or {}).get("next", []):
            queue.append(edge["target"])
    return seen


def _check_semantics(data: Dict[str, Any], source: str, result: ValidationResult) -> None:
    steps: Dict[str, Any] = data["steps"]
    terminal = set(data["terminal_steps"])

    if data["initial_step"] not in steps:
        result.add_error(
            "INVALID_STEP",
            f"{source}:initial_step",
            f"initial step '{data['initial_step']}' is not defined",
            "define the step under 'steps' or fix initial_step",
        )
    for step_id in sorted(terminal - set(steps)):
        result.add_error(
            "INVALID_STEP",
            f"{source}:terminal_steps",
            f"terminal step '{step_id}' is not defined",
            "define the step under 'steps' or remove it from terminal_steps",
            step_id=step_id,
        )

    for step_id, step in steps.items():
        edges = (step or {}).get("next", [])
        location = f"{source}:steps.{step_id}"

        for index, edge in enumerate(edges):
            if edge["target"] not in steps:
                result.add_error(
                    "INVALID_EDGE",
                    f"{location}.next.{index}",
                    f"edge targets unknown step '{edge['target']}'",
                    "point the edge at a defined step",
                    step_id=step_id,
                )
            condition = edge.get("condition")
            if condition:
                problem = validate_condition(condition)
                if problem:
                    result.add_error(
                        "INVALID_CONDITION",
                        f"{location}.next.{index}",
                        problem,
                        "fix the condition expression",
                        step_id=step_id,
                    )

        if step_id in terminal:
            continue
        if not edges:
            result.add_error(
                "INVALID_STEP",
                location,
                "non-terminal step has no outgoing edges",
                "add a 'next' edge or list the step in terminal_steps",
                step_id=step_id,
            )
        elif all(edge.get("condition") for edge in edges):
            result.add_warning(
                "NO_DEFAULT_EDGE",
                location,
                "every edge is conditional; execution stops if none matches",
                "add an edge without a condition as the fallback",
                step_id=step_id,
            )

    if data["initial_step"] in steps:
        reachable = _reachable_steps(data)
        for step_id in steps:
            if step_id not in reachable:
                result.add_warning(
                    "UNREACHABLE_STEP",
                    f"{source}:steps.{step_id}",
                    "step cannot be reached from the initial step",
                    "add an edge to the step or remove it",
                    step_id=step_id,
                )


def validate_workflow_data(data: Any, source: str = "<workflow>") -> ValidationResult:
    """Validate parsed YAML without building a definition.

    Semantic checks only run when the structure is valid.
    """
    result = ValidationResult(source)
    _check_schema(data, source, result)
    if not result.has_errors():
        _check_semantics(data, source, result)
    return result


# =============================================================================
# Loading
# =============================================================================


def parse_workflow(text: str, source: str = "<workflow>") -> WorkflowDefinition:
    """Parse and validate definition text.

    Raises:
        ValidationError: On YAML errors or any validation error. For
            validation failures, details is the ValidationResult.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {source}: {e}") from e

    result = validate_workflow_data(data, source)
    if result.has_errors():
        raise ValidationError(
            f"Workflow definition {source} is invalid:\n{result.format()}", details=result
        )
    for warning in result.warnings:
        logger.warning("%s", warning.format("WARN"))
    return WorkflowDefinition.from_dict(data)


def load_workflow_file(path: Path) -> WorkflowDefinition:
    """Load one definition file.

    Raises:
        WorkflowNotFoundError: If the file does not exist.
        ValidationError: If it does not parse or validate.
    """
    path = Path(path)
    if not path.is_file():
        raise WorkflowNotFoundError(path.stem, str(path))
    text = path.read_text(encoding="utf-8")
    return parse_workflow(text, source=path.name)


def workflow_path(name: str, paths: Optional[TillerPaths] = None) -> Optional[Path]:
    """Definition file for a workflow name, or None."""
    paths = paths or resolve_paths()
    for suffix in WORKFLOW_SUFFIXES:
        candidate = paths.workflows_dir / f"{name}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def load_workflow(name: str, paths: Optional[TillerPaths] = None) -> WorkflowDefinition:
    """Load a workflow by name from .tiller/workflows/.

    Raises:
        WorkflowNotFoundError: If no definition file exists.
        ValidationError: If the definition is invalid or its name field
            disagrees with the file name.
    """
    paths = paths or resolve_paths()
    path = workflow_path(name, paths)
    if path is None:
        raise WorkflowNotFoundError(name, str(paths.workflows_dir))

    definition = load_workflow_file(path)
    if definition.name != name:
        raise ValidationError(
            f"Workflow file {path.name} declares name '{definition.name}', expected '{name}'"
        )
    return definition


def list_workflows(paths: Optional[TillerPaths] = None) -> List[str]:
    """Names of all definition files, sorted."""
    paths = paths or resolve_paths()
    if not paths.workflows_dir.is_dir():
        return []
    names = {
        p.stem
        for p in paths.workflows_dir.iterdir()
        if p.is_file() and p.suffix in WORKFLOW_SUFFIXES
    }
    return sorted(names)
