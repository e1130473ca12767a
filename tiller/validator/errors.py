# tiller/validator/errors.py
"""Collected findings from workflow definition validation."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

# [FAIL] TYPE: location problem
#   Fix: action
FINDING_TEMPLATE = "[{level}] {issue_type}: {location} {problem}\n  Fix: {fix_action}"


class ValidationIssue:
    """One problem found in a workflow definition."""

    def __init__(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_id: Optional[str] = None,
    ):
        self.issue_type = issue_type
        self.location = location
        self.problem = problem
        self.fix_action = fix_action
        self.step_id = step_id

    def format(self, level: str = "FAIL") -> str:
        return FINDING_TEMPLATE.format(
            level=level,
            issue_type=self.issue_type,
            location=self.location,
            problem=self.problem,
            fix_action=self.fix_action,
        )

    def sort_key(self) -> Tuple[str, str]:
        return (self.location, self.issue_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.issue_type,
            "location": self.location,
            "problem": self.problem,
            "fix_action": self.fix_action,
            "step_id": self.step_id,
        }

    def __repr__(self) -> str:
        return f"ValidationIssue({self.issue_type!r}, {self.location!r}, {self.problem!r})"


class ValidationResult:
    """Errors block loading a workflow; warnings are advisory."""

    def __init__(self, source: str = ""):
        self.source = source
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def add_error(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_id: Optional[str] = None,
    ) -> None:
        self.errors.append(ValidationIssue(issue_type, location, problem, fix_action, step_id))

    def add_warning(
        self,
        issue_type: str,
        location: str,
        problem: str,
        fix_action: str,
        step_id: Optional[str] = None,
    ) -> None:
        self.warnings.append(ValidationIssue(issue_type, location, problem, fix_action, step_id))

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def error_types(self) -> List[str]:
        return [e.issue_type for e in self.errors]

    def warning_types(self) -> List[str]:
        return [w.issue_type for w in self.warnings]

    def format(self) -> str:
        """All findings, errors first, one block per finding."""
        lines = [e.format("FAIL") for e in sorted(self.errors, key=lambda e: e.sort_key())]
        lines.extend(w.format("WARN") for w in sorted(self.warnings, key=lambda w: w.sort_key()))
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "errors": [e.to_dict() for e in sorted(self.errors, key=lambda e: e.sort_key())],
            "warnings": [w.to_dict() for w in sorted(self.warnings, key=lambda w: w.sort_key())],
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "status": "FAIL" if self.has_errors() else "PASS",
        }
