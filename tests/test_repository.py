from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from datetime import UTC, timedelta
from pathlib import Path

import allure
import pytest
from conftest import T0, open_task
from sqlalchemy.exc import SQLAlchemyError

from tick_rewards.rewards.models import MalformedScope, RuleMode, RuleWrite, TagScope
from tick_rewards.storage.repository import RewardsRepository, open_repository
from tick_rewards.sync.models import (
    CompletedTaskRecord,
    LedgerEntry,
    RemovalReason,
    RemovedTaskRecord,
    Revocation,
    TickBatch,
    TickFailureClass,
    TickResult,
    TickState,
)

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Rewards Repository"),
]


def _entry(entry_id: str, amount: int, *, task_id: str | None = "t1") -> LedgerEntry:
    return LedgerEntry(
        id=entry_id,
        created_at=T0,
        amount=amount,
        source="task",
        reason="TickTick completion",
        metadata_json="{}",
        related_task_id=task_id,
    )


@pytest.fixture()
def repo(tmp_path: Path) -> Iterator[RewardsRepository]:
    repository = RewardsRepository(tmp_path / "rewards.db")
    repository.init_schema()
    yield repository
    repository.close()


def test_persist_tick_writes_every_part(repo: RewardsRepository) -> None:
    batch = TickBatch(
        open_snapshot=[open_task("open", tags=frozenset({"b", "a"}), due_at=T0)],
        cursor=T0,
        ledger_entries=[_entry("l1", 7, task_id="done")],
        completed_records=[CompletedTaskRecord(task_id="done", title="Done", completed_at=T0)],
        removed_records=[
            RemovedTaskRecord(
                task_id="gone",
                title="Gone",
                removed_at=T0,
                reason=RemovalReason.DELETED_OR_MOVED,
            ),
        ],
    )

    repo.persist_tick(batch)

    [snapshot] = repo.load_previous_open_snapshot()
    assert snapshot.id == "open"
    assert snapshot.tags == frozenset({"a", "b"})
    assert snapshot.due_at == T0
    assert snapshot.due_at.tzinfo == UTC
    assert repo.get_cursor() == T0
    assert repo.get_balance() == 7
    assert [record.task_id for record in repo.list_completed()] == ["done"]
    assert [record.reason for record in repo.list_removed()] == [RemovalReason.DELETED_OR_MOVED]


def test_failed_persist_leaves_previous_state(repo: RewardsRepository) -> None:
    repo.persist_tick(TickBatch(open_snapshot=[open_task("a")], cursor=T0))
    repo.append_ledger_entry(_entry("dup", 1))

    batch = TickBatch(
        open_snapshot=[open_task("b")],
        cursor=T0 + timedelta(hours=1),
        ledger_entries=[_entry("dup", 5)],
        completed_records=[CompletedTaskRecord(task_id="a", title="A", completed_at=T0)],
    )
    with pytest.raises(SQLAlchemyError):
        repo.persist_tick(batch)

    assert [record.id for record in repo.load_previous_open_snapshot()] == ["a"]
    assert repo.get_cursor() == T0
    assert repo.list_completed() == []
    assert repo.get_balance() == 1


def test_cursor_never_moves_backward(repo: RewardsRepository) -> None:
    assert repo.get_cursor() is None

    assert repo.set_cursor(T0) == T0
    assert repo.set_cursor(T0 - timedelta(minutes=5)) == T0
    assert repo.get_cursor() == T0

    later = T0 + timedelta(minutes=5)
    assert repo.set_cursor(later) == later


def test_snapshot_replace_prunes_missing_ids(repo: RewardsRepository) -> None:
    repo.replace_open_snapshot([open_task("a"), open_task("b")])
    repo.replace_open_snapshot([open_task("b", title="Renamed"), open_task("c")])

    snapshot = repo.load_previous_open_snapshot()
    assert [(record.id, record.title) for record in snapshot] == [
        ("b", "Renamed"),
        ("c", "Task c"),
    ]
    assert repo.prune_open_except(["c"]) == 1


def test_revocation_marks_completion_and_appends_compensation(repo: RewardsRepository) -> None:
    repo.append_completed_record(CompletedTaskRecord(task_id="t1", title="T", completed_at=T0))
    repo.append_ledger_entry(_entry("l1", 9))
    [stored] = repo.list_completed()
    assert repo.net_points_for_completion(stored) == 9

    revoked_at = T0 + timedelta(hours=1)
    compensation = LedgerEntry(
        id="l2",
        created_at=revoked_at,
        amount=-9,
        source="task_revoked",
        reason="TickTick completion revoked (task reopened)",
        metadata_json="{}",
        related_task_id="t1",
    )
    repo.persist_tick(
        TickBatch(
            open_snapshot=[open_task("t1")],
            cursor=revoked_at,
            revocations=[
                Revocation(task_id="t1", revoked_at=revoked_at, compensating_entry=compensation),
            ],
        ),
    )

    [record] = repo.list_completed()
    assert record.revoked
    assert record.revoked_at == revoked_at
    assert repo.latest_unrevoked_completions(["t1"]) == {}
    assert repo.net_points_for_completion(stored) == 0
    assert repo.get_balance() == 0
    assert repo.list_completed(include_revoked=False) == []


def test_keyed_revocation_touches_only_its_completion(repo: RewardsRepository) -> None:
    earlier = CompletedTaskRecord(
        task_id="t1",
        title="Daily",
        completed_at=T0,
        is_recurring_instance=True,
        completion_key="k-roll",
    )
    final = CompletedTaskRecord(
        task_id="t1",
        title="Daily",
        completed_at=T0 + timedelta(days=1),
        completion_key="k-final",
    )
    repo.persist_tick(
        TickBatch(
            open_snapshot=[],
            cursor=T0,
            completed_records=[earlier, final],
            ledger_entries=[
                replace(_entry("l1", 10), completion_key="k-roll"),
                replace(_entry("l2", 4), completion_key="k-final"),
            ],
        ),
    )
    assert repo.net_points_for_completion(final) == 4

    revoked_at = T0 + timedelta(days=2)
    repo.persist_tick(
        TickBatch(
            open_snapshot=[open_task("t1")],
            cursor=revoked_at,
            revocations=[
                Revocation(
                    task_id="t1",
                    revoked_at=revoked_at,
                    compensating_entry=replace(
                        _entry("l3", -4), created_at=revoked_at, completion_key="k-final"
                    ),
                    completion_key="k-final",
                ),
            ],
        ),
    )

    states = {record.completion_key: record.revoked for record in repo.list_completed()}
    assert states == {"k-roll": False, "k-final": True}
    assert repo.net_points_for_completion(earlier) == 10
    assert repo.net_points_for_completion(final) == 0
    assert repo.get_balance() == 10
    assert repo.latest_unrevoked_completions(["t1"])["t1"].completion_key == "k-roll"


def test_latest_unrevoked_completion_wins(repo: RewardsRepository) -> None:
    repo.append_completed_record(CompletedTaskRecord(task_id="t1", title="Old", completed_at=T0))
    repo.append_completed_record(
        CompletedTaskRecord(task_id="t1", title="New", completed_at=T0 + timedelta(days=1)),
    )

    latest = repo.latest_unrevoked_completions(["t1", "unknown"])

    assert list(latest) == ["t1"]
    assert latest["t1"].title == "New"


def test_rules_round_trip(repo: RewardsRepository) -> None:
    rule_id = repo.upsert_rule(
        RuleWrite(mode=RuleMode.ADDITIVE, scope=TagScope(value="urgent"), amount=5, priority=2),
    )

    [rule] = repo.load_rules()
    assert rule.id == str(rule_id)
    assert rule.scope == TagScope(value="urgent")
    assert rule.amount == 5
    assert rule.enabled

    repo.upsert_rule(
        RuleWrite(
            mode=RuleMode.EXCLUSIVE,
            scope=TagScope(value="urgent"),
            amount=8,
            enabled=False,
            rule_id=rule_id,
        ),
    )
    [updated] = repo.load_rules()
    assert updated.mode == RuleMode.EXCLUSIVE
    assert not updated.enabled

    assert repo.delete_rule(rule_id)
    assert not repo.delete_rule(rule_id)
    assert repo.load_rules() == []


def test_upsert_unknown_rule_id_fails(repo: RewardsRepository) -> None:
    with pytest.raises(LookupError, match="Rule not found"):
        repo.upsert_rule(
            RuleWrite(mode=RuleMode.ADDITIVE, scope=TagScope(value="x"), amount=1, rule_id=404),
        )


def test_non_finite_amount_is_rejected(repo: RewardsRepository) -> None:
    with pytest.raises(ValueError, match="finite"):
        repo.upsert_rule(
            RuleWrite(mode=RuleMode.ADDITIVE, scope=TagScope(value="x"), amount=float("inf")),
        )


def test_stored_malformed_scope_loads_as_malformed(repo: RewardsRepository) -> None:
    repo._connection.execute(
        """
        INSERT INTO reward_rules
            (priority, mode, scope_kind, match_value, amount, enabled, created_at, updated_at)
        VALUES (0, 'additive', 'title_regex', '(', 1.0, 1,
                '2026-03-04 09:00:00', '2026-03-04 09:00:00')
        """
    )
    repo._connection.commit()

    [rule] = repo.load_rules()

    assert isinstance(rule.scope, MalformedScope)
    assert rule.scope.raw_value == "("


def test_tag_priority_round_trip(repo: RewardsRepository) -> None:
    assert repo.load_tag_priority() == []

    repo.set_tag_priority(["urgent", "важно"])
    assert repo.load_tag_priority() == ["urgent", "важно"]

    repo._connection.execute("UPDATE app_settings SET value_json = 'not json'")
    repo._connection.commit()
    assert repo.load_tag_priority() == []


def test_tick_history_is_listed_newest_first(repo: RewardsRepository) -> None:
    repo.record_tick(
        "old",
        TickResult(success=True, state=TickState.IDLE, started_at=T0, completed_count=2),
    )
    repo.record_tick(
        "new",
        TickResult(
            success=False,
            state=TickState.ERRORED,
            started_at=T0 + timedelta(minutes=3),
            failure_class=TickFailureClass.NETWORK_ERROR,
            error="timeout",
        ),
    )

    ticks = repo.list_recent_ticks(limit=5)

    assert [(tick.tick_id, tick.status) for tick in ticks] == [
        ("new", "failed"),
        ("old", "succeeded"),
    ]
    assert ticks[0].failure_class == "network_error"
    assert ticks[1].completed_count == 2
    assert ticks[1].started_at == T0


def test_open_repository_migrates_and_closes(tmp_path: Path) -> None:
    with open_repository(tmp_path / "ctx.db") as repository:
        assert repository.get_balance() == 0
        assert repository.list_ledger_entries() == []


def test_removed_records_are_listed_newest_first(repo: RewardsRepository) -> None:
    for offset, task_id in enumerate(["first", "second"]):
        repo.append_removed_record(
            RemovedTaskRecord(
                task_id=task_id,
                title=task_id.title(),
                removed_at=T0 + timedelta(minutes=offset),
                reason=RemovalReason.UNKNOWN,
                tags=frozenset({"x"}),
            ),
        )

    removed = repo.list_removed(limit=1)

    assert [(record.task_id, record.tags) for record in removed] == [("second", frozenset({"x"}))]
