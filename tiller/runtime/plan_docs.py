"""
plan_docs.py - Narrow boundary to the plan-document store.

The core only checks that plan documents exist, pulls a short objective
line out of them for a run's intent, and parses the plan reference encoded
in their file names. Plan contents are otherwise opaque.

Plan paths follow plans/<initiative>/<phase>/<phase>-<plan>-PLAN.md, e.g.
plans/tiller-cli/02.1-workflow/02.1-05-PLAN.md has the ref "02.1-05".
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Set, Tuple

from .errors import ValidationError
from .storage import normalize_project_path

logger = logging.getLogger(__name__)

OBJECTIVE_MAX_CHARS = 200

_OBJECTIVE_RE = re.compile(r"<objective>\s*([^\n]+)")
_PLAN_REF_RE = re.compile(r"^([\d.]+(?:-[\d.]+)?)(?:-[A-Z]+)?-PLAN(?:\.skip)?\.md$", re.IGNORECASE)
_PLAN_SUFFIX_RE = re.compile(r"-PLAN(?:\.skip)?\.md$", re.IGNORECASE)
_REF_SHAPE_RE = re.compile(r"^\d+(?:\.\d+)?-\d+$")


def normalize_plan_path(plan_path: str, root: Path) -> str:
    """Project-relative POSIX form of a plan path."""
    return normalize_project_path(plan_path, root)


def plan_exists(plan_path: str, root: Path) -> bool:
    return (root / plan_path).is_file()


def extract_objective(plan_path: str, root: Path) -> str:
    """First line of the plan's <objective> block, else the file stem.

    Raises:
        ValidationError: If the plan document does not exist.
    """
    path = root / plan_path
    if not path.is_file():
        raise ValidationError(f"Plan document not found: {plan_path}")

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read plan %s: %s", plan_path, e)
        content = ""

    match = _OBJECTIVE_RE.search(content)
    if match:
        objective = match.group(1).strip()
    else:
        objective = _PLAN_SUFFIX_RE.sub("", path.name) or "Unknown"
    return objective[:OBJECTIVE_MAX_CHARS]


def parse_plan_ref(plan_path: str) -> Optional[str]:
    """Extract the plan reference from a plan file name.

    Examples:
        "plans/x/02-foo/02-01-PLAN.md"      -> "02-01"
        "plans/x/02.1-wf/02.1-05-PLAN.md"   -> "02.1-05"
        "plans/x/03.1/03.1-03-FIX-PLAN.md"  -> "03.1-03"
        "plans/x/01/01-01-PLAN.skip.md"     -> "01-01"
    """
    if not plan_path:
        return None
    match = _PLAN_REF_RE.match(plan_path.rsplit("/", 1)[-1])
    return match.group(1) if match else None


def normalize_plan_ref(ref: str) -> Optional[str]:
    """Pad phase and plan numbers to two digits ("2-1" -> "02-01")."""
    ref = ref.strip()
    if not _REF_SHAPE_RE.match(ref):
        return None
    phase, plan = ref.split("-", 1)
    major, _, minor = phase.partition(".")
    phase = major.zfill(2) + (f".{minor}" if minor else "")
    return f"{phase}-{plan.zfill(2)}"


def parse_initiative_ref(ref: str) -> Tuple[Optional[str], str]:
    """Split "initiative:ref" into its parts; plain refs have no initiative."""
    if ":" in ref:
        initiative, _, rest = ref.partition(":")
        if initiative and rest:
            return initiative, rest
    return None, ref


def parse_initiative_from_path(plan_path: str, plans_dir: str = "plans") -> Optional[str]:
    """Initiative segment of plans/<initiative>/<phase>/...-PLAN.md."""
    parts = plan_path.split("/")
    if len(parts) >= 4 and parts[0] == plans_dir and _PLAN_SUFFIX_RE.search(parts[-1]):
        return parts[1]
    return None


def find_draft_plans(root: Path, plans_dir: str, tracked: Set[str]) -> List[str]:
    """Plan documents with no run and no sibling SUMMARY.md.

    Args:
        root: Project root.
        plans_dir: Project-relative plans directory.
        tracked: Plan paths that already have runs.

    Returns:
        Project-relative plan paths, sorted.
    """
    base = root / plans_dir
    if not base.is_dir():
        return []

    drafts: List[str] = []
    for path in sorted(base.rglob("*-PLAN.md")):
        relative = path.relative_to(root).as_posix()
        if relative in tracked:
            continue
        summary = path.with_name(_PLAN_SUFFIX_RE.sub("-SUMMARY.md", path.name))
        if summary.exists():
            continue
        drafts.append(relative)
    return drafts
