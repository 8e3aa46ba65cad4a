"""Domain models for reward rules and task evaluation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RuleMode(str, Enum):
    """How a matching rule contributes to the score."""

    EXCLUSIVE = "exclusive"
    ADDITIVE = "additive"
    MULTIPLIER = "multiplier"


class ScopeKind(str, Enum):
    """Persisted discriminator for rule scopes."""

    TAG = "tag"
    LIST = "list"
    PROJECT = "project"
    TITLE_REGEX = "title_regex"
    WEEKDAY = "weekday"
    TIME_RANGE = "time_range"
    DEADLINE = "deadline"


class DeadlineCondition(str, Enum):
    """Deadline sub-kinds."""

    HAS_DEADLINE = "has_deadline"
    OVERDUE = "overdue"
    WITHIN_HOURS = "within_hours"


class BaseSource(str, Enum):
    """Where the base amount of a breakdown came from."""

    EXCLUSIVE = "exclusive"
    NONE = "none"


class RuleEvaluationError(ValueError):
    """Rule scope payload cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class TagScope:
    value: str


@dataclass(frozen=True, slots=True)
class ListScope:
    value: str


@dataclass(frozen=True, slots=True)
class ProjectScope:
    value: str


@dataclass(frozen=True, slots=True)
class TitleRegexScope:
    pattern: str


@dataclass(frozen=True, slots=True)
class WeekdayScope:
    """Day of week, 0 = Sunday."""

    day: int


@dataclass(frozen=True, slots=True)
class TimeRangeScope:
    """Inclusive minute-of-day range; start > end wraps midnight."""

    start_minute: int
    end_minute: int


@dataclass(frozen=True, slots=True)
class DeadlineScope:
    condition: DeadlineCondition
    within_hours: float | None = None


@dataclass(frozen=True, slots=True)
class MalformedScope:
    """Stored scope that failed to parse; evaluating it raises."""

    kind: str
    raw_value: str
    error: str


RuleScope = (
    TagScope
    | ListScope
    | ProjectScope
    | TitleRegexScope
    | WeekdayScope
    | TimeRangeScope
    | DeadlineScope
    | MalformedScope
)


@dataclass(frozen=True, slots=True)
class Rule:
    """One reward rule."""

    id: str
    priority: int
    mode: RuleMode
    scope: RuleScope
    amount: float
    enabled: bool = True


@dataclass(frozen=True, slots=True)
class TaskContext:
    """Minimal view of a completed task the evaluator needs."""

    id: str
    title: str
    tags: frozenset[str]
    completed_at: datetime
    list_name: str | None = None
    project_id: str | None = None
    due_at: datetime | None = None

    def to_metadata(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "tags": sorted(self.tags),
            "list": self.list_name,
            "project": self.project_id,
            "completed_at": self.completed_at.isoformat(),
            "due_at": self.due_at.isoformat() if self.due_at is not None else None,
        }


@dataclass(slots=True)
class EvalBreakdown:
    """Evaluator output recorded verbatim in ledger metadata."""

    points_pre_penalty: int
    base_source: BaseSource
    exclusive_rule_id: str | None = None
    additive_rule_ids: list[str] = field(default_factory=list)
    multiplier_rule_ids: list[str] = field(default_factory=list)
    additive_sum: float = 0.0
    multiplier_product: float = 1.0

    def to_metadata(self) -> dict[str, object]:
        return {
            "points_pre_penalty": self.points_pre_penalty,
            "base_source": self.base_source.value,
            "exclusive_rule_id": self.exclusive_rule_id,
            "additive_rule_ids": list(self.additive_rule_ids),
            "multiplier_rule_ids": list(self.multiplier_rule_ids),
            "additive_sum": self.additive_sum,
            "multiplier_product": self.multiplier_product,
        }


@dataclass(frozen=True, slots=True)
class RuleWrite:
    """Input payload for creating or updating a rule."""

    mode: RuleMode
    scope: RuleScope
    amount: float
    priority: int = 0
    enabled: bool = True
    rule_id: int | None = None
