"""Corroborate disappeared tasks before treating them as completions.

Disappearance alone is not evidence: tasks also vanish when deleted, moved
or archived. Each candidate is looked up directly by its last-known project;
lookups that end with a transport or server error fall back to the remote
completion history for a bounded window. Whatever stays unconfirmed is
quarantined, never rewarded.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta

from tick_rewards.remote.base import CompletionHistoryService, NetworkError, TaskService
from tick_rewards.sync.models import (
    ClassificationMethod,
    ClassificationResult,
    ConfirmedCompletion,
    LookupStatus,
    OpenTaskRecord,
    QuarantinedDisappearance,
    RemovalReason,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_EVIDENCE_WINDOW = timedelta(hours=168)


@dataclass(frozen=True, slots=True)
class _Inconclusive:
    record: OpenTaskRecord


_Decision = ConfirmedCompletion | QuarantinedDisappearance | _Inconclusive


class DisappearanceClassifier:
    """Decides completed vs removed for every disappeared task id."""

    def __init__(
        self,
        *,
        task_service: TaskService,
        history_service: CompletionHistoryService | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        evidence_fallback: bool = True,
        max_evidence_window: timedelta = DEFAULT_MAX_EVIDENCE_WINDOW,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self.task_service = task_service
        self.history_service = history_service
        self.concurrency = concurrency
        self.evidence_fallback = evidence_fallback
        self.max_evidence_window = max_evidence_window

    def classify(
        self,
        candidates: Sequence[OpenTaskRecord],
        *,
        now: datetime,
    ) -> ClassificationResult:
        """Classify candidates; AuthExpired and RateLimited propagate to the caller."""

        result = ClassificationResult()
        lookups: list[OpenTaskRecord] = []
        for record in candidates:
            if not record.project_id:
                result.quarantined.append(
                    QuarantinedDisappearance(
                        record=record,
                        reason=RemovalReason.DELETED_OR_MOVED,
                        method=ClassificationMethod.MISSING_CONTEXT,
                    ),
                )
            else:
                lookups.append(record)

        inconclusive: list[OpenTaskRecord] = []
        for decision in self._lookup_all(lookups, now=now):
            if isinstance(decision, ConfirmedCompletion):
                result.confirmed.append(decision)
            elif isinstance(decision, QuarantinedDisappearance):
                result.quarantined.append(decision)
            else:
                inconclusive.append(decision.record)

        if inconclusive:
            self._resolve_with_evidence_window(inconclusive, now=now, result=result)

        logger.info(
            "Classified %d disappearances: confirmed=%d quarantined=%d",
            len(candidates),
            len(result.confirmed),
            len(result.quarantined),
        )
        return result

    def _lookup_all(self, records: list[OpenTaskRecord], *, now: datetime) -> list[_Decision]:
        if not records:
            return []
        workers = min(self.concurrency, len(records))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="classify") as executor:
            return list(executor.map(lambda record: self._lookup_one(record, now=now), records))

    def _lookup_one(self, record: OpenTaskRecord, *, now: datetime) -> _Decision:
        project_id = record.project_id or ""
        lookup = self.task_service.fetch_task_by_project_and_id(project_id, record.id)
        if lookup.status == LookupStatus.FOUND:
            if lookup.completed:
                return ConfirmedCompletion(
                    record=record,
                    completed_at=lookup.completed_at or now,
                    method=ClassificationMethod.DIRECT_LOOKUP,
                )
            return QuarantinedDisappearance(
                record=record,
                reason=RemovalReason.DELETED_OR_MOVED,
                method=ClassificationMethod.DIRECT_LOOKUP,
            )
        if lookup.status == LookupStatus.NOT_FOUND:
            return QuarantinedDisappearance(
                record=record,
                reason=RemovalReason.DELETED_OR_MOVED,
                method=ClassificationMethod.DIRECT_LOOKUP,
            )
        return _Inconclusive(record=record)

    def _resolve_with_evidence_window(
        self,
        records: list[OpenTaskRecord],
        *,
        now: datetime,
        result: ClassificationResult,
    ) -> None:
        evidence: dict[str, datetime] = {}
        if self.evidence_fallback and self.history_service is not None:
            window_start = max(
                min(record.last_seen_at for record in records),
                now - self.max_evidence_window,
            )
            try:
                history = self.history_service.fetch_completions_since(window_start, now)
            except NetworkError as error:
                logger.warning(
                    "Completion history unavailable; quarantining %d inconclusive tasks: %s",
                    len(records),
                    error,
                )
                history = []
            for item in history:
                if window_start <= item.completed_at <= now:
                    evidence.setdefault(item.task_id, item.completed_at)

        for record in records:
            completed_at = evidence.get(record.id)
            if completed_at is not None and completed_at >= record.last_seen_at:
                result.confirmed.append(
                    ConfirmedCompletion(
                        record=record,
                        completed_at=completed_at,
                        method=ClassificationMethod.EVIDENCE_WINDOW,
                    ),
                )
            else:
                result.quarantined.append(
                    QuarantinedDisappearance(
                        record=record,
                        reason=RemovalReason.UNKNOWN,
                        method=ClassificationMethod.EVIDENCE_WINDOW,
                    ),
                )
