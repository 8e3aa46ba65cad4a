"""SQLModel-backed storage facade for rewards and reconciliation state."""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from tick_rewards.rewards.models import Rule, RuleMode, RuleWrite
from tick_rewards.rewards.scope import parse_scope_lenient, scope_to_storage
from tick_rewards.storage.alembic_runner import upgrade_head
from tick_rewards.storage.common import (
    build_sqlite_engine,
    connect_sqlite_with_policy,
    from_iso,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from tick_rewards.storage.sqlmodel_models import (
    AppSetting,
    CompletedTask,
    LedgerEntryRow,
    OpenTask,
    RemovedTask,
    RewardRule,
    SyncStateRow,
    SyncTick,
)
from tick_rewards.sync.models import (
    CompletedTaskRecord,
    LedgerEntry,
    OpenTaskRecord,
    RemovalReason,
    RemovedTaskRecord,
    Revocation,
    TickBatch,
    TickResult,
)

logger = logging.getLogger(__name__)

TAG_PRIORITY_SETTING = "tag_priority"
CURSOR_STATE_KEY = "last_sync_at"
DEFAULT_BUSY_TIMEOUT_MS = 5_000


@dataclass(slots=True)
class TickHistoryView:
    """Readable tick history row for CLI status."""

    tick_id: str
    status: str
    started_at: datetime
    finished_at: datetime | None
    completed_count: int
    quarantined_count: int
    points_awarded: int
    failure_class: str | None
    error_summary: str | None


class RewardsRepository:
    """Facade that persists reconciliation and reward entities using SQLModel and Alembic."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

        # Keep low-level connection for tests and ad-hoc debugging queries.
        self._connection = connect_sqlite_with_policy(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def close(self) -> None:
        self._connection.close()
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # -- open-task snapshot ---------------------------------------------------

    def load_previous_open_snapshot(self) -> list[OpenTaskRecord]:
        with Session(self.engine) as session:
            rows = session.exec(select(OpenTask).order_by(col(OpenTask.task_id))).all()
        return [_open_record_from_row(row) for row in rows]

    def replace_open_snapshot(self, records: list[OpenTaskRecord]) -> None:
        """Upsert every record and prune ids that are not in the list."""

        with Session(self.engine) as session:
            _replace_open_snapshot(session, records)
            session.commit()

    def prune_open_except(self, task_ids: Iterable[str]) -> int:
        with Session(self.engine) as session:
            removed = _prune_open_except(session, set(task_ids))
            session.commit()
        return removed

    # -- append-only records --------------------------------------------------

    def append_ledger_entry(self, entry: LedgerEntry) -> None:
        with Session(self.engine) as session:
            session.add(_ledger_row(entry))
            session.commit()

    def append_completed_record(self, record: CompletedTaskRecord) -> None:
        with Session(self.engine) as session:
            session.add(_completed_row(record))
            session.commit()

    def append_removed_record(self, record: RemovedTaskRecord) -> None:
        with Session(self.engine) as session:
            session.add(_removed_row(record))
            session.commit()

    def latest_unrevoked_completions(self, task_ids: list[str]) -> dict[str, CompletedTaskRecord]:
        if not task_ids:
            return {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(CompletedTask)
                .where(
                    col(CompletedTask.task_id).in_(task_ids),
                    CompletedTask.revoked == False,  # noqa: E712
                )
                .order_by(col(CompletedTask.completed_at), col(CompletedTask.id)),
            ).all()
        latest: dict[str, CompletedTaskRecord] = {}
        for row in rows:
            latest[row.task_id] = _completed_record_from_row(row)
        return latest

    def net_points_for_completion(self, record: CompletedTaskRecord) -> int:
        """Sum the ledger entries written for one completion.

        Records stored without a completion key fall back to every entry of the task.
        """

        if record.completion_key is not None:
            condition = col(LedgerEntryRow.completion_key) == record.completion_key
        else:
            condition = col(LedgerEntryRow.related_task_id) == record.task_id
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(LedgerEntryRow.amount), 0)).where(condition),
            ).one()
        return int(total)

    def list_completed(
        self,
        *,
        limit: int = 20,
        include_revoked: bool = True,
    ) -> list[CompletedTaskRecord]:
        with Session(self.engine) as session:
            statement = select(CompletedTask)
            if not include_revoked:
                statement = statement.where(CompletedTask.revoked == False)  # noqa: E712
            rows = session.exec(
                statement.order_by(
                    col(CompletedTask.completed_at).desc(),
                    col(CompletedTask.id).desc(),
                ).limit(max(1, limit)),
            ).all()
        return [_completed_record_from_row(row) for row in rows]

    def list_removed(self, *, limit: int = 20) -> list[RemovedTaskRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RemovedTask)
                .order_by(col(RemovedTask.removed_at).desc(), col(RemovedTask.id).desc())
                .limit(max(1, limit)),
            ).all()
        return [_removed_record_from_row(row) for row in rows]

    def list_ledger_entries(self, *, limit: int = 20) -> list[LedgerEntry]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerEntryRow)
                .order_by(col(LedgerEntryRow.created_at).desc(), col(LedgerEntryRow.id))
                .limit(max(1, limit)),
            ).all()
        return [_ledger_entry_from_row(row) for row in rows]

    def get_balance(self) -> int:
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(LedgerEntryRow.amount), 0)),
            ).one()
        return int(total)

    # -- rules & tag priority -------------------------------------------------

    def load_rules(self) -> list[Rule]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RewardRule).order_by(col(RewardRule.priority), col(RewardRule.id)),
            ).all()
        return [_rule_from_row(row) for row in rows]

    def upsert_rule(self, rule: RuleWrite) -> int:
        if not math.isfinite(rule.amount):
            raise ValueError(f"Rule amount must be finite: {rule.amount!r}")
        scope_kind, match_value = scope_to_storage(rule.scope)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row: RewardRule | None = None
            if rule.rule_id is not None:
                row = session.get(RewardRule, rule.rule_id)
                if row is None:
                    raise LookupError(f"Rule not found: {rule.rule_id}")
            if row is None:
                row = RewardRule(
                    priority=rule.priority,
                    mode=rule.mode.value,
                    scope_kind=scope_kind,
                    match_value=match_value,
                    amount=rule.amount,
                    enabled=rule.enabled,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.priority = rule.priority
                row.mode = rule.mode.value
                row.scope_kind = scope_kind
                row.match_value = match_value
                row.amount = rule.amount
                row.enabled = rule.enabled
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Rule id was not assigned.")
            return row.id

    def delete_rule(self, rule_id: int) -> bool:
        with Session(self.engine) as session:
            row = session.get(RewardRule, rule_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True

    def load_tag_priority(self) -> list[str]:
        with Session(self.engine) as session:
            row = session.get(AppSetting, TAG_PRIORITY_SETTING)
        if row is None:
            return []
        try:
            payload = json.loads(row.value_json)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed tag priority setting: %r", row.value_json[:200])
            return []
        if not isinstance(payload, list):
            return []
        return [tag for tag in payload if isinstance(tag, str)]

    def set_tag_priority(self, tags: list[str]) -> None:
        with Session(self.engine) as session:
            row = session.get(AppSetting, TAG_PRIORITY_SETTING)
            value_json = json.dumps(list(tags), ensure_ascii=False)
            if row is None:
                row = AppSetting(name=TAG_PRIORITY_SETTING, value_json=value_json)
            else:
                row.value_json = value_json
            session.add(row)
            session.commit()

    # -- sync cursor ----------------------------------------------------------

    def get_cursor(self) -> datetime | None:
        with Session(self.engine) as session:
            row = session.get(SyncStateRow, CURSOR_STATE_KEY)
        if row is None:
            return None
        try:
            return from_iso(row.value)
        except ValueError:
            logger.warning("Ignoring malformed sync cursor: %r", row.value)
            return None

    def set_cursor(self, value: datetime) -> datetime:
        """Store the cursor, never moving it backward. Returns the stored value."""

        with Session(self.engine) as session:
            stored = _set_cursor(session, value)
            session.commit()
        return stored

    # -- tick persistence -----------------------------------------------------

    def persist_tick(self, batch: TickBatch) -> None:
        with Session(self.engine) as session:
            for entry in batch.ledger_entries:
                session.add(_ledger_row(entry))
            for record in batch.completed_records:
                session.add(_completed_row(record))
            for record in batch.removed_records:
                session.add(_removed_row(record))
            for revocation in batch.revocations:
                _apply_revocation(session, revocation)
            _replace_open_snapshot(session, batch.open_snapshot)
            _set_cursor(session, batch.cursor)
            session.commit()

    def record_tick(self, tick_id: str, result: TickResult) -> None:
        with Session(self.engine) as session:
            session.add(
                SyncTick(
                    tick_id=tick_id,
                    status="succeeded" if result.success else "failed",
                    started_at=to_db_datetime(result.started_at),
                    finished_at=_db_optional(result.finished_at),
                    completed_count=result.completed_count,
                    rollover_count=result.rollover_count,
                    quarantined_count=result.quarantined_count,
                    revoked_count=result.revoked_count,
                    reward_failures=result.reward_failures,
                    points_awarded=result.points_awarded,
                    failure_class=(
                        result.failure_class.value if result.failure_class is not None else None
                    ),
                    error_summary=result.error,
                ),
            )
            session.commit()

    def list_recent_ticks(self, *, limit: int = 5) -> list[TickHistoryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SyncTick)
                .order_by(col(SyncTick.started_at).desc(), col(SyncTick.tick_id).desc())
                .limit(max(1, limit)),
            ).all()
        return [
            TickHistoryView(
                tick_id=row.tick_id,
                status=row.status,
                started_at=to_utc_aware(row.started_at),
                finished_at=to_utc_aware(row.finished_at) if row.finished_at is not None else None,
                completed_count=row.completed_count,
                quarantined_count=row.quarantined_count,
                points_awarded=row.points_awarded,
                failure_class=row.failure_class,
                error_summary=row.error_summary,
            )
            for row in rows
        ]


@contextmanager
def open_repository(db_path: Path) -> Iterator[RewardsRepository]:
    """Open a migrated repository and close it on exit."""

    repository = RewardsRepository(db_path)
    try:
        repository.init_schema()
        yield repository
    finally:
        repository.close()


def _replace_open_snapshot(session: Session, records: list[OpenTaskRecord]) -> None:
    keep: set[str] = set()
    for record in records:
        keep.add(record.id)
        row = session.get(OpenTask, record.id)
        if row is None:
            row = OpenTask(
                task_id=record.id,
                title=record.title,
                last_seen_at=to_db_datetime(record.last_seen_at),
            )
        row.title = record.title
        row.tags_json = _tags_json(record.tags)
        row.list_name = record.list_name
        row.project_id = record.project_id
        row.due_at = _db_optional(record.due_at)
        row.created_at = _db_optional(record.created_at)
        row.last_seen_at = to_db_datetime(record.last_seen_at)
        row.etag = record.etag
        session.add(row)
    session.flush()
    _prune_open_except(session, keep)


def _prune_open_except(session: Session, keep: set[str]) -> int:
    existing = session.exec(select(OpenTask.task_id)).all()
    stale = [task_id for task_id in existing if task_id not in keep]
    if stale:
        statement = delete(OpenTask).where(col(OpenTask.task_id).in_(stale))
        session.exec(statement)  # type: ignore[call-overload]
    return len(stale)


def _set_cursor(session: Session, value: datetime) -> datetime:
    value = to_utc_aware(value)
    row = session.get(SyncStateRow, CURSOR_STATE_KEY)
    if row is not None:
        try:
            current = from_iso(row.value)
        except ValueError:
            current = None
        if current is not None and current > value:
            return current
    now = utc_now()
    if row is None:
        row = SyncStateRow(key=CURSOR_STATE_KEY, value=value.isoformat(), updated_at=now)
    else:
        row.value = value.isoformat()
        row.updated_at = now
    session.add(row)
    return value


def _apply_revocation(session: Session, revocation: Revocation) -> None:
    if revocation.completion_key is not None:
        target = col(CompletedTask.completion_key) == revocation.completion_key
    else:
        target = col(CompletedTask.task_id) == revocation.task_id
    session.exec(  # type: ignore[call-overload]
        sa_update(CompletedTask)
        .where(
            target,
            col(CompletedTask.revoked) == False,  # noqa: E712
        )
        .values(revoked=True, revoked_at=to_db_datetime(revocation.revoked_at)),
    )
    if revocation.compensating_entry is not None:
        session.add(_ledger_row(revocation.compensating_entry))


def _tags_json(tags: frozenset[str]) -> str:
    return json.dumps(sorted(tags), ensure_ascii=False)


def _tags_from_json(value: str) -> frozenset[str]:
    try:
        payload = json.loads(value)
    except json.JSONDecodeError:
        return frozenset()
    if not isinstance(payload, list):
        return frozenset()
    return frozenset(str(tag) for tag in payload)


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware(value) if value is not None else None


def _db_optional(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _open_record_from_row(row: OpenTask) -> OpenTaskRecord:
    return OpenTaskRecord(
        id=row.task_id,
        title=row.title,
        tags=_tags_from_json(row.tags_json),
        list_name=row.list_name,
        project_id=row.project_id,
        due_at=_optional_aware(row.due_at),
        created_at=_optional_aware(row.created_at),
        last_seen_at=to_utc_aware(row.last_seen_at),
        etag=row.etag,
    )


def _completed_row(record: CompletedTaskRecord) -> CompletedTask:
    return CompletedTask(
        task_id=record.task_id,
        title=record.title,
        tags_json=_tags_json(record.tags),
        project_id=record.project_id,
        list_name=record.list_name,
        due_at=_db_optional(record.due_at),
        completed_at=to_db_datetime(record.completed_at),
        is_recurring_instance=record.is_recurring_instance,
        series_key=record.series_key,
        revoked=record.revoked,
        revoked_at=_db_optional(record.revoked_at),
        completion_key=record.completion_key,
    )


def _completed_record_from_row(row: CompletedTask) -> CompletedTaskRecord:
    return CompletedTaskRecord(
        task_id=row.task_id,
        title=row.title,
        tags=_tags_from_json(row.tags_json),
        project_id=row.project_id,
        list_name=row.list_name,
        due_at=_optional_aware(row.due_at),
        completed_at=to_utc_aware(row.completed_at),
        is_recurring_instance=row.is_recurring_instance,
        series_key=row.series_key,
        revoked=row.revoked,
        revoked_at=_optional_aware(row.revoked_at),
        completion_key=row.completion_key,
    )


def _removed_row(record: RemovedTaskRecord) -> RemovedTask:
    return RemovedTask(
        task_id=record.task_id,
        title=record.title,
        tags_json=_tags_json(record.tags),
        project_id=record.project_id,
        list_name=record.list_name,
        due_at=_db_optional(record.due_at),
        removed_at=to_db_datetime(record.removed_at),
        reason=record.reason.value,
    )


def _removed_record_from_row(row: RemovedTask) -> RemovedTaskRecord:
    try:
        reason = RemovalReason(row.reason)
    except ValueError:
        reason = RemovalReason.UNKNOWN
    return RemovedTaskRecord(
        task_id=row.task_id,
        title=row.title,
        tags=_tags_from_json(row.tags_json),
        project_id=row.project_id,
        list_name=row.list_name,
        due_at=_optional_aware(row.due_at),
        removed_at=to_utc_aware(row.removed_at),
        reason=reason,
    )


def _ledger_row(entry: LedgerEntry) -> LedgerEntryRow:
    return LedgerEntryRow(
        id=entry.id,
        created_at=to_db_datetime(entry.created_at),
        amount=entry.amount,
        source=entry.source,
        reason=entry.reason,
        related_task_id=entry.related_task_id,
        metadata_json=entry.metadata_json,
        completion_key=entry.completion_key,
    )


def _ledger_entry_from_row(row: LedgerEntryRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        created_at=to_utc_aware(row.created_at),
        amount=row.amount,
        source=row.source,
        reason=row.reason,
        related_task_id=row.related_task_id,
        metadata_json=row.metadata_json,
        completion_key=row.completion_key,
    )


def _rule_from_row(row: RewardRule) -> Rule:
    try:
        mode = RuleMode(row.mode)
    except ValueError:
        logger.warning("Rule %s has unknown mode %r; treating it as disabled", row.id, row.mode)
        mode = RuleMode.ADDITIVE
        enabled = False
    else:
        enabled = row.enabled
    return Rule(
        id=str(row.id),
        priority=row.priority,
        mode=mode,
        scope=parse_scope_lenient(row.scope_kind, row.match_value),
        amount=row.amount,
        enabled=enabled,
    )
