"""Controllers for sync and completion-history CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from tick_rewards.config import Settings
from tick_rewards.remote.ticktick import TickTickClient
from tick_rewards.storage.repository import RewardsRepository, open_repository
from tick_rewards.sync.classifier import DisappearanceClassifier
from tick_rewards.sync.models import TickResult, TickStatusEvent
from tick_rewards.sync.reconciler import Reconciler
from tick_rewards.sync.scheduler import PollScheduler

logger = logging.getLogger(__name__)

WAIT_SLICE_SECONDS = 1.0


@dataclass(slots=True)
class SyncOnceResult:
    """Tick outcome plus printable lines."""

    result: TickResult
    lines: list[str]


@dataclass(slots=True)
class SyncRunCommand:
    """CLI inputs for the polling loop."""

    db_path: Path | None
    interval_seconds: float | None
    max_ticks: int | None


def build_client(settings: Settings) -> TickTickClient:
    token = settings.remote.access_token
    return TickTickClient(
        token_provider=lambda: token,
        base_url=settings.remote.api_base_url,
        timeout_seconds=settings.remote.request_timeout_seconds,
        max_retries=settings.remote.max_retries,
    )


def build_reconciler(
    settings: Settings,
    *,
    repository: RewardsRepository,
    client: TickTickClient,
) -> Reconciler:
    """Wire one reconciler from settings; the caller owns repository and client."""

    classifier = DisappearanceClassifier(
        task_service=client,
        history_service=client,
        concurrency=settings.sync.classifier_concurrency,
        evidence_fallback=settings.sync.evidence_fallback,
        max_evidence_window=timedelta(hours=settings.sync.initial_lookback_hours),
    )
    return Reconciler(
        store=repository,
        task_service=client,
        classifier=classifier,
        rollover_min_delta=timedelta(seconds=settings.sync.rollover_min_delta_seconds),
        cursor_guard=timedelta(seconds=settings.sync.cursor_guard_seconds),
        local_tz=settings.local_tz(),
        recent_buffer_size=settings.sync.recent_buffer_size,
    )


class SyncCliController:
    """Coordinates sync commands and completion listings."""

    def __init__(
        self,
        *,
        client_factory: Callable[[Settings], TickTickClient] = build_client,
    ) -> None:
        self.client_factory = client_factory

    def run_once(self, db_path: Path | None) -> SyncOnceResult:
        settings = Settings.from_env(db_path=db_path)
        settings.validate_for_sync()
        with (
            open_repository(settings.db_path) as repository,
            self.client_factory(settings) as client,
        ):
            reconciler = build_reconciler(settings, repository=repository, client=client)
            result = reconciler.run_once()
            balance = repository.get_balance()
        return SyncOnceResult(result=result, lines=[*_tick_lines(result), f"Balance: {balance}"])

    def run_loop(
        self,
        command: SyncRunCommand,
        *,
        on_event: Callable[[TickStatusEvent], None] | None = None,
    ) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.interval_seconds is not None:
            settings.sync.poll_seconds = command.interval_seconds
        settings.validate_for_sync()

        with (
            open_repository(settings.db_path) as repository,
            self.client_factory(settings) as client,
        ):
            reconciler = build_reconciler(settings, repository=repository, client=client)
            scheduler = PollScheduler(
                reconciler,
                interval_seconds=settings.sync.poll_seconds,
                max_backoff_factor=settings.sync.max_backoff_factor,
            )
            ticks = 0

            def _on_event(event: TickStatusEvent) -> None:
                nonlocal ticks
                ticks += 1
                if on_event is not None:
                    on_event(event)
                if command.max_ticks is not None and ticks >= command.max_ticks:
                    scheduler.stop()

            reconciler.subscribe(_on_event)
            scheduler.start()
            try:
                while not scheduler.wait(timeout=WAIT_SLICE_SECONDS):
                    pass
            except KeyboardInterrupt:
                logger.info("Interrupted; stopping scheduler")
                scheduler.stop(cancel_in_flight=True)
            status = scheduler.status()

        return [
            f"Polling stopped after {ticks} tick(s).",
            f"Last sync: {status['last_sync_at'] or '-'} "
            f"consecutive_failures={status['consecutive_failures']} "
            f"last_error={status['error'] or '-'}",
        ]

    def status(self, db_path: Path | None, recent_ticks: int) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            cursor = repository.get_cursor()
            balance = repository.get_balance()
            ticks = repository.list_recent_ticks(limit=recent_ticks)

        lines = [
            f"Sync cursor: {cursor.isoformat() if cursor is not None else '-'}",
            f"Balance: {balance}",
        ]
        if not ticks:
            lines.append("Recent ticks: none")
            return lines
        lines.append("Recent ticks:")
        for tick in ticks:
            lines.append(
                f"- {tick.started_at.isoformat()} status={tick.status} "
                f"completed={tick.completed_count} quarantined={tick.quarantined_count} "
                f"points={tick.points_awarded} "
                f"failure={tick.failure_class or '-'} error={tick.error_summary or '-'}",
            )
        return lines

    def list_completed(
        self,
        db_path: Path | None,
        *,
        limit: int,
        include_revoked: bool,
    ) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            records = repository.list_completed(limit=limit, include_revoked=include_revoked)
        if not records:
            return ["No completed tasks recorded."]
        lines = [f"Completed tasks: {len(records)}"]
        for record in records:
            flags = []
            if record.is_recurring_instance:
                flags.append("recurring")
            if record.revoked:
                flags.append("revoked")
            lines.append(
                f"- {record.completed_at.isoformat()} id={record.task_id} "
                f"title={record.title!r} tags={','.join(sorted(record.tags)) or '-'} "
                f"list={record.list_name or '-'}"
                + (f" [{' '.join(flags)}]" if flags else ""),
            )
        return lines

    def list_removed(self, db_path: Path | None, *, limit: int) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            records = repository.list_removed(limit=limit)
        if not records:
            return ["No quarantined tasks recorded."]
        lines = [f"Quarantined tasks: {len(records)}"]
        for record in records:
            lines.append(
                f"- {record.removed_at.isoformat()} id={record.task_id} "
                f"title={record.title!r} reason={record.reason.value} "
                f"list={record.list_name or '-'}",
            )
        return lines


def _tick_lines(result: TickResult) -> list[str]:
    if not result.success:
        failure = result.failure_class.value if result.failure_class is not None else "unexpected"
        return [f"Sync tick failed: failure={failure} error={result.error or '-'}"]
    return [
        "Sync tick completed: "
        f"completed={result.completed_count} "
        f"rollovers={result.rollover_count} "
        f"quarantined={result.quarantined_count} "
        f"revoked={result.revoked_count} "
        f"points={result.points_awarded} "
        f"reward_failures={result.reward_failures}",
    ]
