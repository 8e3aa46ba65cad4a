"""Scope parsing and matching for reward rules."""

from __future__ import annotations

import math
import re
from datetime import datetime, tzinfo

from tick_rewards.rewards.models import (
    DeadlineCondition,
    DeadlineScope,
    ListScope,
    MalformedScope,
    ProjectScope,
    Rule,
    RuleEvaluationError,
    RuleScope,
    ScopeKind,
    TagScope,
    TaskContext,
    TimeRangeScope,
    TitleRegexScope,
    WeekdayScope,
)

_CLOCK_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")
_WITHIN_HOURS_PREFIX = "within_hours:"
_MINUTES_PER_DAY = 24 * 60


def parse_scope(kind: str, raw_value: str) -> RuleScope:
    """Build a typed scope from its persisted (kind, match_value) pair.

    Raises:
        RuleEvaluationError: when the kind is unknown or the value cannot be parsed.
    """

    try:
        scope_kind = ScopeKind(kind)
    except ValueError as error:
        raise RuleEvaluationError(f"Unknown scope kind: {kind!r}") from error

    if scope_kind == ScopeKind.TAG:
        return TagScope(value=raw_value)
    if scope_kind == ScopeKind.LIST:
        return ListScope(value=raw_value)
    if scope_kind == ScopeKind.PROJECT:
        return ProjectScope(value=raw_value)
    if scope_kind == ScopeKind.TITLE_REGEX:
        _compile(raw_value)
        return TitleRegexScope(pattern=raw_value)
    if scope_kind == ScopeKind.WEEKDAY:
        return WeekdayScope(day=_parse_weekday(raw_value))
    if scope_kind == ScopeKind.TIME_RANGE:
        return _parse_time_range(raw_value)
    return _parse_deadline(raw_value)


def parse_scope_lenient(kind: str, raw_value: str) -> RuleScope:
    """Like parse_scope, but keep unparsable payloads as MalformedScope."""

    try:
        return parse_scope(kind, raw_value)
    except RuleEvaluationError as error:
        return MalformedScope(kind=kind, raw_value=raw_value, error=str(error))


def scope_to_storage(scope: RuleScope) -> tuple[str, str]:
    """Inverse of parse_scope: return (kind, match_value)."""

    if isinstance(scope, TagScope):
        return ScopeKind.TAG.value, scope.value
    if isinstance(scope, ListScope):
        return ScopeKind.LIST.value, scope.value
    if isinstance(scope, ProjectScope):
        return ScopeKind.PROJECT.value, scope.value
    if isinstance(scope, TitleRegexScope):
        return ScopeKind.TITLE_REGEX.value, scope.pattern
    if isinstance(scope, WeekdayScope):
        return ScopeKind.WEEKDAY.value, str(scope.day)
    if isinstance(scope, TimeRangeScope):
        return (
            ScopeKind.TIME_RANGE.value,
            f"{_format_clock(scope.start_minute)}-{_format_clock(scope.end_minute)}",
        )
    if isinstance(scope, DeadlineScope):
        if scope.condition == DeadlineCondition.WITHIN_HOURS:
            hours = scope.within_hours if scope.within_hours is not None else 0.0
            return ScopeKind.DEADLINE.value, f"{_WITHIN_HOURS_PREFIX}{hours:g}"
        return ScopeKind.DEADLINE.value, scope.condition.value
    return scope.kind, scope.raw_value


def matches(rule: Rule, task: TaskContext, *, local_tz: tzinfo | None = None) -> bool:
    """Return True when an enabled rule's scope applies to the task.

    ``local_tz`` is the zone used for weekday and time-of-day scopes; ``None``
    means the process-local zone.

    Raises:
        RuleEvaluationError: for malformed scopes of enabled rules.
    """

    if not rule.enabled:
        return False
    scope = rule.scope

    if isinstance(scope, TagScope):
        return scope.value in task.tags
    if isinstance(scope, ListScope):
        return task.list_name is not None and task.list_name == scope.value
    if isinstance(scope, ProjectScope):
        return task.project_id is not None and task.project_id == scope.value
    if isinstance(scope, TitleRegexScope):
        return _compile(scope.pattern).search(task.title) is not None
    if isinstance(scope, WeekdayScope):
        return _sunday_based_weekday(_localize(task.completed_at, local_tz)) == scope.day
    if isinstance(scope, TimeRangeScope):
        local = _localize(task.completed_at, local_tz)
        return minute_in_range(local.hour * 60 + local.minute, scope)
    if isinstance(scope, DeadlineScope):
        return _matches_deadline(scope, task)
    raise RuleEvaluationError(
        f"Rule {rule.id} has malformed {scope.kind} scope {scope.raw_value!r}: {scope.error}",
    )


def minute_in_range(minute: int, scope: TimeRangeScope) -> bool:
    if scope.start_minute <= scope.end_minute:
        return scope.start_minute <= minute <= scope.end_minute
    return minute >= scope.start_minute or minute <= scope.end_minute


def _matches_deadline(scope: DeadlineScope, task: TaskContext) -> bool:
    if task.due_at is None:
        return False
    if scope.condition == DeadlineCondition.HAS_DEADLINE:
        return True
    if scope.condition == DeadlineCondition.OVERDUE:
        return task.due_at < task.completed_at
    if scope.within_hours is None:
        return False
    window_seconds = abs(scope.within_hours) * 3600
    return abs((task.due_at - task.completed_at).total_seconds()) <= window_seconds


def _localize(value: datetime, local_tz: tzinfo | None) -> datetime:
    if local_tz is None:
        return value.astimezone()
    return value.astimezone(local_tz)


def _sunday_based_weekday(value: datetime) -> int:
    return value.isoweekday() % 7


def _compile(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as error:
        raise RuleEvaluationError(f"Invalid title regex {pattern!r}: {error}") from error


def _parse_weekday(raw_value: str) -> int:
    try:
        day = int(raw_value.strip())
    except ValueError as error:
        raise RuleEvaluationError(f"Invalid weekday: {raw_value!r}") from error
    if not 0 <= day <= 6:  # noqa: PLR2004
        raise RuleEvaluationError(f"Weekday must be within 0..6: {raw_value!r}")
    return day


def _parse_time_range(raw_value: str) -> TimeRangeScope:
    if "-" not in raw_value:
        raise RuleEvaluationError(
            f"Invalid time range {raw_value!r}. Expected format 'HH:MM-HH:MM'.",
        )
    start_raw, end_raw = raw_value.split("-", 1)
    return TimeRangeScope(
        start_minute=_parse_clock(start_raw, raw_value),
        end_minute=_parse_clock(end_raw, raw_value),
    )


def _parse_clock(token: str, raw_value: str) -> int:
    match = _CLOCK_PATTERN.match(token)
    if match is None:
        raise RuleEvaluationError(f"Invalid time {token!r} in range {raw_value!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:  # noqa: PLR2004
        raise RuleEvaluationError(f"Time out of range {token!r} in range {raw_value!r}")
    return hours * 60 + minutes


def _format_clock(minute: int) -> str:
    minute %= _MINUTES_PER_DAY
    return f"{minute // 60:02d}:{minute % 60:02d}"


def _parse_deadline(raw_value: str) -> DeadlineScope:
    normalized = raw_value.strip().lower()
    if normalized == DeadlineCondition.HAS_DEADLINE.value:
        return DeadlineScope(condition=DeadlineCondition.HAS_DEADLINE)
    if normalized == DeadlineCondition.OVERDUE.value:
        return DeadlineScope(condition=DeadlineCondition.OVERDUE)
    if normalized.startswith(_WITHIN_HOURS_PREFIX):
        hours_raw = normalized[len(_WITHIN_HOURS_PREFIX) :]
        try:
            hours = float(hours_raw)
        except ValueError as error:
            raise RuleEvaluationError(f"Invalid deadline hours: {raw_value!r}") from error
        if not math.isfinite(hours):
            raise RuleEvaluationError(f"Deadline hours must be finite: {raw_value!r}")
        return DeadlineScope(condition=DeadlineCondition.WITHIN_HOURS, within_hours=hours)
    raise RuleEvaluationError(
        f"Invalid deadline scope {raw_value!r}. "
        "Expected 'has_deadline', 'overdue' or 'within_hours:<hours>'.",
    )
