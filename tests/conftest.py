"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

import pytest

from tick_rewards.remote.base import RemoteServiceError
from tick_rewards.rewards.models import Rule
from tick_rewards.sync.models import (
    CompletedTaskRecord,
    CompletionEvidence,
    LedgerEntry,
    LookupStatus,
    OpenTaskRecord,
    RemovedTaskRecord,
    Revocation,
    TaskLookupResult,
    TickBatch,
    TickResult,
)

T0 = datetime(2026, 3, 4, 9, 0, tzinfo=UTC)


def open_task(  # noqa: PLR0913
    task_id: str,
    *,
    title: str | None = None,
    project_id: str | None = "p-1",
    due_at: datetime | None = None,
    tags: frozenset[str] = frozenset(),
    etag: str | None = None,
    last_seen_at: datetime = T0,
    list_name: str | None = "Inbox",
) -> OpenTaskRecord:
    return OpenTaskRecord(
        id=task_id,
        title=title or f"Task {task_id}",
        last_seen_at=last_seen_at,
        tags=tags,
        list_name=list_name,
        project_id=project_id,
        due_at=due_at,
        etag=etag,
    )


@dataclass
class InMemoryStore:
    """ReconciliationStore kept in plain Python collections."""

    snapshot: list[OpenTaskRecord] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)
    tag_priority: list[str] = field(default_factory=list)
    cursor: datetime | None = None
    ledger: list[LedgerEntry] = field(default_factory=list)
    completed: list[CompletedTaskRecord] = field(default_factory=list)
    removed: list[RemovedTaskRecord] = field(default_factory=list)
    ticks: list[tuple[str, TickResult]] = field(default_factory=list)
    persist_error: Exception | None = None

    def load_rules(self) -> list[Rule]:
        return list(self.rules)

    def load_tag_priority(self) -> list[str]:
        return list(self.tag_priority)

    def load_previous_open_snapshot(self) -> list[OpenTaskRecord]:
        return list(self.snapshot)

    def get_cursor(self) -> datetime | None:
        return self.cursor

    def latest_unrevoked_completions(self, task_ids: list[str]) -> dict[str, CompletedTaskRecord]:
        wanted = set(task_ids)
        latest: dict[str, CompletedTaskRecord] = {}
        for record in self.completed:
            if record.task_id in wanted and not record.revoked:
                current = latest.get(record.task_id)
                if current is None or record.completed_at >= current.completed_at:
                    latest[record.task_id] = record
        return latest

    def net_points_for_completion(self, record: CompletedTaskRecord) -> int:
        if record.completion_key is None:
            return sum(
                entry.amount for entry in self.ledger if entry.related_task_id == record.task_id
            )
        return sum(
            entry.amount for entry in self.ledger if entry.completion_key == record.completion_key
        )

    def persist_tick(self, batch: TickBatch) -> None:
        if self.persist_error is not None:
            raise self.persist_error
        self.ledger.extend(batch.ledger_entries)
        self.completed.extend(batch.completed_records)
        self.removed.extend(batch.removed_records)
        for revocation in batch.revocations:
            self.completed = [
                replace(record, revoked=True, revoked_at=revocation.revoked_at)
                if _revokes(revocation, record) and not record.revoked
                else record
                for record in self.completed
            ]
            if revocation.compensating_entry is not None:
                self.ledger.append(revocation.compensating_entry)
        self.snapshot = list(batch.open_snapshot)
        if self.cursor is None or batch.cursor > self.cursor:
            self.cursor = batch.cursor

    def record_tick(self, tick_id: str, result: TickResult) -> None:
        self.ticks.append((tick_id, result))


def _revokes(revocation: Revocation, record: CompletedTaskRecord) -> bool:
    if revocation.completion_key is not None:
        return record.completion_key == revocation.completion_key
    return record.task_id == revocation.task_id

@dataclass
class FakeTaskService:
    """TaskService returning canned open tasks and lookups."""

    open_tasks: list[OpenTaskRecord] = field(default_factory=list)
    lookups: dict[str, TaskLookupResult] = field(default_factory=dict)
    fetch_error: Exception | None = None
    lookup_errors: dict[str, Exception] = field(default_factory=dict)
    lookup_calls: list[tuple[str, str]] = field(default_factory=list)
    fetch_calls: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def fetch_open_tasks(self) -> list[OpenTaskRecord]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.open_tasks)

    def fetch_task_by_project_and_id(self, project_id: str, task_id: str) -> TaskLookupResult:
        with self._lock:
            self.lookup_calls.append((project_id, task_id))
        error = self.lookup_errors.get(task_id)
        if error is not None:
            raise error
        return self.lookups.get(task_id, TaskLookupResult(status=LookupStatus.NOT_FOUND))


@dataclass
class FakeHistoryService:
    """CompletionHistoryService backed by a list of evidence items."""

    items: list[CompletionEvidence] = field(default_factory=list)
    error: RemoteServiceError | None = None
    windows: list[tuple[datetime, datetime]] = field(default_factory=list)

    def fetch_completions_since(
        self,
        from_time: datetime,
        to_time: datetime,
    ) -> list[CompletionEvidence]:
        self.windows.append((from_time, to_time))
        if self.error is not None:
            raise self.error
        return [item for item in self.items if from_time <= item.completed_at <= to_time]


class StepClock:
    """Deterministic clock advancing by a fixed step on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)) -> None:
        self._now = start
        self._step = step

    def __call__(self) -> datetime:
        current = self._now
        self._now = current + self._step
        return current


def completed_lookup(completed_at: datetime) -> TaskLookupResult:
    return TaskLookupResult(
        status=LookupStatus.FOUND,
        completed=True,
        completed_at=completed_at,
        http_status=200,
    )


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def task_service() -> FakeTaskService:
    return FakeTaskService()


@pytest.fixture()
def history_service() -> FakeHistoryService:
    return FakeHistoryService()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep TICK_REWARDS_* variables from the developer shell out of tests."""

    for name in list(os.environ):
        if name.startswith("TICK_REWARDS_"):
            monkeypatch.delenv(name, raising=False)
