"""One reconciliation tick: fetch, diff, classify, score, persist.

Completions are inferred from changes to the open-task set. Nothing is
written until scoring finishes; the whole tick is then persisted in one
transaction so a failure anywhere leaves the stored snapshot and cursor
untouched for the next attempt.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta, tzinfo
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from tick_rewards.remote.base import (
    AuthExpired,
    RateLimited,
    RemoteServiceError,
    TaskService,
)
from tick_rewards.rewards.evaluator import evaluate_task
from tick_rewards.rewards.models import Rule, RuleEvaluationError
from tick_rewards.storage.common import utc_now
from tick_rewards.sync.classifier import DisappearanceClassifier
from tick_rewards.sync.differ import DEFAULT_ROLLOVER_MIN_DELTA, diff_snapshots
from tick_rewards.sync.models import (
    ClassificationMethod,
    CompletedTaskRecord,
    LedgerEntry,
    OpenTaskRecord,
    RecentCompletion,
    RemovedTaskRecord,
    Revocation,
    TickBatch,
    TickFailureClass,
    TickResult,
    TickState,
    TickStatusEvent,
    task_context_for,
)
from tick_rewards.sync.ports import ReconciliationStore

logger = logging.getLogger(__name__)

LEDGER_SOURCE_TASK = "task"
LEDGER_SOURCE_REVOKED = "task_revoked"
METADATA_KIND = "task_evaluated"
METADATA_VERSION = 1
DEFAULT_CURSOR_GUARD = timedelta(seconds=1)
DEFAULT_RECENT_BUFFER_SIZE = 100

StatusObserver = Callable[[TickStatusEvent], None]


class TickCancelled(Exception):
    """Raised between tick steps after cancellation was requested."""


def classify_tick_failure(error: BaseException) -> TickFailureClass:
    """Map an exception caught at the tick boundary to a failure class."""

    if isinstance(error, TickCancelled):
        return TickFailureClass.CANCELLED
    if isinstance(error, AuthExpired):
        return TickFailureClass.AUTH_EXPIRED
    if isinstance(error, RateLimited):
        return TickFailureClass.RATE_LIMITED
    if isinstance(error, RemoteServiceError):
        return TickFailureClass.NETWORK_ERROR
    if isinstance(error, SQLAlchemyError):
        return TickFailureClass.STORAGE_ERROR
    return TickFailureClass.UNEXPECTED


def _clear_counts(result: TickResult) -> None:
    # Nothing was persisted, so nothing was completed.
    result.completed_count = 0
    result.rollover_count = 0
    result.quarantined_count = 0
    result.revoked_count = 0
    result.reward_failures = 0
    result.points_awarded = 0


def next_cursor(previous: datetime | None, tick_started_at: datetime, guard: timedelta) -> datetime:
    """Cursor after a successful tick; never earlier than the previous one."""

    base = tick_started_at if previous is None else max(previous, tick_started_at)
    return base + guard


class Reconciler:
    """Runs reconciliation ticks and keeps per-process sync state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ReconciliationStore,
        task_service: TaskService,
        classifier: DisappearanceClassifier,
        rollover_min_delta: timedelta = DEFAULT_ROLLOVER_MIN_DELTA,
        cursor_guard: timedelta = DEFAULT_CURSOR_GUARD,
        local_tz: tzinfo | None = None,
        recent_buffer_size: int = DEFAULT_RECENT_BUFFER_SIZE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.task_service = task_service
        self.classifier = classifier
        self.rollover_min_delta = rollover_min_delta
        self.cursor_guard = cursor_guard
        self.local_tz = local_tz
        self._clock = clock
        self._cancel = threading.Event()
        self._observers: list[StatusObserver] = []
        self._observers_lock = threading.Lock()
        self._recent: deque[RecentCompletion] = deque(maxlen=max(1, recent_buffer_size))
        self.state = TickState.IDLE
        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None
        self.last_result: TickResult | None = None

    # -- observers -------------------------------------------------------------

    def subscribe(self, callback: StatusObserver) -> Callable[[], None]:
        """Register a status observer; returns a function that removes it."""

        with self._observers_lock:
            self._observers.append(callback)

        def _unsubscribe() -> None:
            with self._observers_lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return _unsubscribe

    def _emit(self, event: TickStatusEvent) -> None:
        with self._observers_lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Status observer failed")

    # -- cancellation ----------------------------------------------------------

    def request_cancel(self) -> None:
        self._cancel.set()

    def clear_cancel(self) -> None:
        self._cancel.clear()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise TickCancelled("Reconciliation tick cancelled")

    # -- state -----------------------------------------------------------------

    def recent_completions(self) -> list[RecentCompletion]:
        """Newest first."""

        return list(self._recent)

    def run_once(self) -> TickResult:
        """Run one tick; every failure is reported in the result, never raised."""

        tick_id = uuid4().hex
        result = TickResult(success=False, state=TickState.FETCHING, started_at=self._clock())
        recent: list[RecentCompletion] = []
        try:
            self._run_tick(result, recent)
        except Exception as error:  # noqa: BLE001
            result.failure_class = classify_tick_failure(error)
            result.error = str(error) or error.__class__.__name__
            if isinstance(error, RemoteServiceError | TickCancelled):
                logger.warning(
                    "Tick %s failed in state %s: %s (%s)",
                    tick_id,
                    result.state.value,
                    result.error,
                    result.failure_class.value,
                )
            else:
                logger.exception("Tick %s failed in state %s", tick_id, result.state.value)
            result.state = TickState.ERRORED
            _clear_counts(result)
        else:
            result.success = True
            result.state = TickState.IDLE
            for item in recent:
                self._recent.appendleft(item)
        result.finished_at = self._clock()
        self.state = result.state
        self.last_result = result
        if result.success:
            self.last_sync_at = result.finished_at
            self.last_error = None
        else:
            self.last_error = result.error

        try:
            self.store.record_tick(tick_id, result)
        except SQLAlchemyError:
            logger.exception("Failed to record tick %s history", tick_id)

        self._emit(
            TickStatusEvent(
                success=result.success,
                completed_count=result.completed_count,
                timestamp=result.finished_at,
                error=result.error,
            ),
        )
        return result

    def _set_state(self, result: TickResult, state: TickState) -> None:
        self._check_cancelled()
        result.state = state
        self.state = state

    def _run_tick(self, result: TickResult, recent: list[RecentCompletion]) -> None:
        started_at = result.started_at

        self._set_state(result, TickState.FETCHING)
        current = self.task_service.fetch_open_tasks()

        self._set_state(result, TickState.DIFFING)
        previous = self.store.load_previous_open_snapshot()
        previous_by_id = {record.id: record for record in previous}
        diff = diff_snapshots(previous, current, rollover_min_delta=self.rollover_min_delta)
        logger.info(
            "Diffed snapshots: previous=%d current=%d disappeared=%d rollovers=%d appeared=%d",
            len(previous_by_id),
            len(current),
            len(diff.disappeared_ids),
            len(diff.rollovers),
            len(diff.appeared_ids),
        )

        self._set_state(result, TickState.CLASSIFYING)
        candidates = [previous_by_id[task_id] for task_id in diff.disappeared_ids]
        classification = self.classifier.classify(candidates, now=started_at)

        self._set_state(result, TickState.SCORING)
        rules = self.store.load_rules()
        tag_priority = self.store.load_tag_priority()
        batch = TickBatch(
            open_snapshot=list(current),
            cursor=next_cursor(self.store.get_cursor(), started_at, self.cursor_guard),
        )
        for rollover in diff.rollovers:
            self._score_completion(
                rollover.previous,
                completed_at=started_at,
                method=None,
                is_recurring=True,
                rules=rules,
                tag_priority=tag_priority,
                batch=batch,
                result=result,
                recent=recent,
            )
        for confirmed in classification.confirmed:
            self._score_completion(
                confirmed.record,
                completed_at=confirmed.completed_at,
                method=confirmed.method,
                is_recurring=False,
                rules=rules,
                tag_priority=tag_priority,
                batch=batch,
                result=result,
                recent=recent,
            )
        for quarantined in classification.quarantined:
            record = quarantined.record
            batch.removed_records.append(
                RemovedTaskRecord(
                    task_id=record.id,
                    title=record.title,
                    removed_at=started_at,
                    reason=quarantined.reason,
                    tags=record.tags,
                    project_id=record.project_id,
                    list_name=record.list_name,
                    due_at=record.due_at,
                ),
            )
        result.quarantined_count = len(batch.removed_records)
        result.rollover_count = len(diff.rollovers)
        batch.revocations.extend(self._revocations(diff.appeared_ids, now=started_at))
        result.revoked_count = len(batch.revocations)

        self._set_state(result, TickState.PERSISTING)
        self.store.persist_tick(batch)
        logger.info(
            "Tick persisted: completed=%d quarantined=%d revoked=%d points=%d",
            result.completed_count,
            result.quarantined_count,
            result.revoked_count,
            result.points_awarded,
        )

    def _score_completion(  # noqa: PLR0913
        self,
        record: OpenTaskRecord,
        *,
        completed_at: datetime,
        method: ClassificationMethod | None,
        is_recurring: bool,
        rules: list[Rule],
        tag_priority: list[str],
        batch: TickBatch,
        result: TickResult,
        recent: list[RecentCompletion],
    ) -> None:
        context = task_context_for(record, completed_at=completed_at)
        completion_key = uuid4().hex
        points: int | None = None
        try:
            breakdown = evaluate_task(context, rules, tag_priority, local_tz=self.local_tz)
        except RuleEvaluationError as error:
            result.reward_failures += 1
            logger.warning("Skipping reward for task %s: %s", record.id, error)
        else:
            points = breakdown.points_pre_penalty
            metadata: dict[str, object] = {
                "kind": METADATA_KIND,
                "version": METADATA_VERSION,
                "breakdown": breakdown.to_metadata(),
                "task": context.to_metadata(),
                "recurring": is_recurring,
                "method": method.value if method is not None else "rollover",
            }
            batch.ledger_entries.append(
                LedgerEntry(
                    id=uuid4().hex,
                    created_at=completed_at,
                    amount=points,
                    source=LEDGER_SOURCE_TASK,
                    reason=(
                        "TickTick completion (rollover)" if is_recurring else "TickTick completion"
                    ),
                    metadata_json=json.dumps(metadata, ensure_ascii=False),
                    related_task_id=record.id,
                    completion_key=completion_key,
                ),
            )
            result.points_awarded += points

        batch.completed_records.append(
            CompletedTaskRecord(
                task_id=record.id,
                title=record.title,
                completed_at=completed_at,
                tags=record.tags,
                project_id=record.project_id,
                list_name=record.list_name,
                due_at=record.due_at,
                is_recurring_instance=is_recurring,
                series_key=record.id if is_recurring else None,
                completion_key=completion_key,
            ),
        )
        result.completed_count += 1
        recent.append(
            RecentCompletion(
                task_id=record.id,
                title=record.title,
                tags=record.tags,
                completed_at=completed_at,
                points=points,
                project_id=record.project_id,
                due_at=record.due_at,
                is_recurring=is_recurring,
            ),
        )

    def _revocations(self, appeared_ids: list[str], *, now: datetime) -> list[Revocation]:
        if not appeared_ids:
            return []
        revocations: list[Revocation] = []
        completions = self.store.latest_unrevoked_completions(appeared_ids)
        for task_id in appeared_ids:
            record = completions.get(task_id)
            if record is None or record.is_recurring_instance:
                continue
            net = self.store.net_points_for_completion(record)
            entry = None
            if net != 0:
                entry = LedgerEntry(
                    id=uuid4().hex,
                    created_at=now,
                    amount=-net,
                    source=LEDGER_SOURCE_REVOKED,
                    reason="TickTick completion revoked (task reopened)",
                    metadata_json=json.dumps(
                        {"kind": "task_revoked", "version": METADATA_VERSION, "reverted": net},
                    ),
                    related_task_id=task_id,
                    completion_key=record.completion_key,
                )
            logger.info("Task %s reappeared; revoking completion (net=%d)", task_id, net)
            revocations.append(
                Revocation(
                    task_id=task_id,
                    revoked_at=now,
                    compensating_entry=entry,
                    completion_key=record.completion_key,
                ),
            )
        return revocations
