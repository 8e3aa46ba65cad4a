"""Persistence contracts consumed by the reconciliation core."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from tick_rewards.rewards.models import Rule
from tick_rewards.sync.models import (
    CompletedTaskRecord,
    OpenTaskRecord,
    TickBatch,
    TickResult,
)


class RulesStore(Protocol):
    """Read access to reward configuration."""

    def load_rules(self) -> list[Rule]:
        """Return all rules ordered by priority, then id."""
        raise NotImplementedError

    def load_tag_priority(self) -> list[str]:
        """Return tags ordered by precedence (first wins)."""
        raise NotImplementedError


class ReconciliationStore(RulesStore, Protocol):
    """Everything one reconciliation tick reads and writes."""

    def load_previous_open_snapshot(self) -> list[OpenTaskRecord]:
        raise NotImplementedError

    def get_cursor(self) -> datetime | None:
        raise NotImplementedError

    def latest_unrevoked_completions(self, task_ids: list[str]) -> dict[str, CompletedTaskRecord]:
        """Return the newest non-revoked completion per task id."""
        raise NotImplementedError

    def net_points_for_completion(self, record: CompletedTaskRecord) -> int:
        """Return the sum of ledger amounts written for this completion."""
        raise NotImplementedError

    def persist_tick(self, batch: TickBatch) -> None:
        """Apply every write of one tick atomically."""
        raise NotImplementedError

    def record_tick(self, tick_id: str, result: TickResult) -> None:
        """Append the tick outcome to the history."""
        raise NotImplementedError

