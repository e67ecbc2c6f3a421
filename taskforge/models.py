"""Data models for taskforge.

Defines dataclasses for tasks, stage results and Claude Code invocation
results. Stage results are built from agent JSON via from_dict(), which
rejects shapes that cannot be trusted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskforge.errors import MalformedOutputError


class Complexity(str, Enum):
    """Complexity tier declared by triage. Drives model selection."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def parse(cls, value: Any) -> "Complexity":
        """Parse a complexity string, falling back to MEDIUM.

        Agents are not always precise about the tier name, so anything
        unrecognised maps to the default tier instead of failing the task.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.MEDIUM


@dataclass(frozen=True)
class Task:
    """A unit of work fetched from an issue source.

    Immutable once fetched. The orchestrator only ever changes the
    derived TaskRecord, never the task itself.
    """

    id: str
    title: str
    body: str = ""
    labels: tuple[str, ...] = ()
    created_at: datetime | None = None

    @property
    def branch_name(self) -> str:
        return f"forge/{self.id}"

    def __str__(self) -> str:
        return f"{self.id}: {self.title}"


def _str_field(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MalformedOutputError(f"field '{key}' must be a string, got {type(value).__name__}")
    return value


def _list_field(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedOutputError(f"field '{key}' must be a list, got {type(value).__name__}")
    return [str(item) for item in value]


def _require_mapping(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise MalformedOutputError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


@dataclass
class TriageResult:
    """Analysis of a task produced by the triage or consult stage.

    Attributes:
        complexity: Declared complexity tier
        plan: Natural-language implementation plan
        relevant_files: Ordered list of file paths to look at
        implementation_steps: Ordered list of steps
        context: Free-text notes about the codebase
    """

    complexity: Complexity = Complexity.MEDIUM
    plan: str = ""
    relevant_files: list[str] = field(default_factory=list)
    implementation_steps: list[str] = field(default_factory=list)
    context: str = ""

    def is_sufficient(self) -> bool:
        """A result is sufficient only when plan, files and steps are all present."""
        return bool(
            self.plan.strip() and self.relevant_files and self.implementation_steps
        )

    @classmethod
    def from_dict(cls, data: Any) -> "TriageResult":
        data = _require_mapping(data, "triage result")
        return cls(
            complexity=Complexity.parse(data.get("complexity")),
            plan=_str_field(data, "plan"),
            relevant_files=_list_field(data, "relevant_files"),
            implementation_steps=_list_field(data, "implementation_steps"),
            context=_str_field(data, "context"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity.value,
            "plan": self.plan,
            "relevant_files": list(self.relevant_files),
            "implementation_steps": list(self.implementation_steps),
            "context": self.context,
        }


@dataclass(frozen=True)
class Resolved:
    """Consult produced a corrected, sufficient analysis."""

    result: TriageResult


@dataclass(frozen=True)
class NeedsClarification:
    """Consult could not resolve the task and has a question for a human."""

    message: str


EscalationOutcome = Resolved | NeedsClarification


@dataclass
class ReviewResult:
    """Verdict of the review stage.

    Attributes:
        approved: Whether the implementation is acceptable
        issues: Problems found (non-empty when rejected)
        suggestions: Advisory improvements, independent of approval
    """

    approved: bool
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "ReviewResult":
        data = _require_mapping(data, "review result")
        approved = data.get("approved")
        if not isinstance(approved, bool):
            raise MalformedOutputError("review result is missing boolean 'approved'")
        return cls(
            approved=approved,
            issues=_list_field(data, "issues"),
            suggestions=_list_field(data, "suggestions"),
        )


@dataclass
class ClaudeResult:
    """Result from a Claude Code invocation.

    Captures the envelope printed by the claude CLI with --output-format json.
    """

    is_error: bool
    result: str
    total_cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    session_id: str = ""

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> "ClaudeResult":
        return cls(
            is_error=bool(envelope.get("is_error", False)),
            result=envelope.get("result") or "",
            total_cost_usd=float(envelope.get("total_cost_usd") or 0.0),
            duration_ms=int(envelope.get("duration_ms") or 0),
            num_turns=int(envelope.get("num_turns") or 0),
            session_id=envelope.get("session_id") or "",
        )
