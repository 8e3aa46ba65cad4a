"""Domain records for completion reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from tick_rewards.rewards.models import TaskContext


class TickState(str, Enum):
    """Reconciliation tick lifecycle states."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    CLASSIFYING = "classifying"
    SCORING = "scoring"
    PERSISTING = "persisting"
    ERRORED = "errored"


class TickFailureClass(str, Enum):
    """Normalized failure classes recorded for failed ticks."""

    AUTH_EXPIRED = "auth_expired"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    STORAGE_ERROR = "storage_error"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class RemovalReason(str, Enum):
    """Why a disappeared task was quarantined instead of rewarded."""

    DELETED_OR_MOVED = "deleted_or_moved"
    UNKNOWN = "unknown"


class LookupStatus(str, Enum):
    """Outcome of a direct task lookup."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    OTHER_ERROR = "other_error"


class ClassificationMethod(str, Enum):
    """Evidence that decided a disappearance."""

    DIRECT_LOOKUP = "direct_lookup"
    EVIDENCE_WINDOW = "evidence_window"
    MISSING_CONTEXT = "missing_context"


@dataclass(frozen=True, slots=True)
class OpenTaskRecord:
    """Task believed open as of the last successful tick."""

    id: str
    title: str
    last_seen_at: datetime
    tags: frozenset[str] = frozenset()
    list_name: str | None = None
    project_id: str | None = None
    due_at: datetime | None = None
    created_at: datetime | None = None
    etag: str | None = None


@dataclass(frozen=True, slots=True)
class CompletedTaskRecord:
    """Confirmed completion; revoked records are retained, never deleted."""

    task_id: str
    title: str
    completed_at: datetime
    tags: frozenset[str] = frozenset()
    project_id: str | None = None
    list_name: str | None = None
    due_at: datetime | None = None
    is_recurring_instance: bool = False
    series_key: str | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    # Links the record to the ledger entries written for it.
    completion_key: str | None = None


@dataclass(frozen=True, slots=True)
class RemovedTaskRecord:
    """Quarantined disappearance that could not be confirmed as completed."""

    task_id: str
    title: str
    removed_at: datetime
    reason: RemovalReason
    tags: frozenset[str] = frozenset()
    project_id: str | None = None
    list_name: str | None = None
    due_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Append-only reward-points transaction."""

    id: str
    created_at: datetime
    amount: int
    source: str
    reason: str
    metadata_json: str
    related_task_id: str | None = None
    completion_key: str | None = None


@dataclass(frozen=True, slots=True)
class TaskLookupResult:
    """Direct lookup response from the remote service."""

    status: LookupStatus
    completed: bool | None = None
    completed_at: datetime | None = None
    http_status: int | None = None


@dataclass(frozen=True, slots=True)
class CompletionEvidence:
    """One entry of the remote completion history."""

    task_id: str
    completed_at: datetime


@dataclass(frozen=True, slots=True)
class Rollover:
    """Recurring task that advanced to its next occurrence under the same id."""

    previous: OpenTaskRecord
    current: OpenTaskRecord


@dataclass(slots=True)
class SnapshotDiff:
    """Differences between two consecutive open-task snapshots."""

    disappeared_ids: list[str] = field(default_factory=list)
    rollovers: list[Rollover] = field(default_factory=list)
    appeared_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ConfirmedCompletion:
    record: OpenTaskRecord
    completed_at: datetime
    method: ClassificationMethod


@dataclass(frozen=True, slots=True)
class QuarantinedDisappearance:
    record: OpenTaskRecord
    reason: RemovalReason
    method: ClassificationMethod


@dataclass(slots=True)
class ClassificationResult:
    """Every candidate id lands in exactly one of the two lists."""

    confirmed: list[ConfirmedCompletion] = field(default_factory=list)
    quarantined: list[QuarantinedDisappearance] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Revocation:
    """Previously confirmed completion contradicted by later evidence."""

    task_id: str
    revoked_at: datetime
    compensating_entry: LedgerEntry | None
    completion_key: str | None = None


@dataclass(slots=True)
class TickBatch:
    """All writes of one tick, persisted in a single transaction."""

    open_snapshot: list[OpenTaskRecord]
    cursor: datetime
    ledger_entries: list[LedgerEntry] = field(default_factory=list)
    completed_records: list[CompletedTaskRecord] = field(default_factory=list)
    removed_records: list[RemovedTaskRecord] = field(default_factory=list)
    revocations: list[Revocation] = field(default_factory=list)


@dataclass(slots=True)
class TickResult:
    """Outcome of one reconciliation tick."""

    success: bool
    state: TickState
    started_at: datetime
    finished_at: datetime | None = None
    completed_count: int = 0
    rollover_count: int = 0
    quarantined_count: int = 0
    revoked_count: int = 0
    reward_failures: int = 0
    points_awarded: int = 0
    failure_class: TickFailureClass | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class TickStatusEvent:
    """Fire-and-forget notification emitted after every tick."""

    success: bool
    completed_count: int
    timestamp: datetime
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RecentCompletion:
    """Entry of the in-memory recent completions ring buffer."""

    task_id: str
    title: str
    tags: frozenset[str]
    completed_at: datetime
    points: int | None
    project_id: str | None = None
    due_at: datetime | None = None
    is_recurring: bool = False


def task_context_for(record: OpenTaskRecord, *, completed_at: datetime) -> TaskContext:
    """Build the evaluator input from the last-known open record."""

    return TaskContext(
        id=record.id,
        title=record.title,
        tags=record.tags,
        completed_at=completed_at,
        list_name=record.list_name,
        project_id=record.project_id,
        due_at=record.due_at,
    )
