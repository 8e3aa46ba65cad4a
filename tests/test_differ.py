from __future__ import annotations

from datetime import timedelta

import allure
from conftest import T0, open_task

from tick_rewards.sync.differ import diff_snapshots, is_rollover

pytestmark = [
    allure.epic("Completion Reconciliation"),
    allure.feature("Snapshot Differ"),
]


def test_disappeared_and_appeared_ids() -> None:
    previous = [open_task("a"), open_task("b")]
    current = [open_task("b"), open_task("c")]

    diff = diff_snapshots(previous, current)

    assert diff.disappeared_ids == ["a"]
    assert diff.appeared_ids == ["c"]
    assert diff.rollovers == []


def test_due_advance_beyond_threshold_is_rollover() -> None:
    due = T0 + timedelta(hours=1)
    previous = [open_task("daily", due_at=due)]
    current = [open_task("daily", due_at=due + timedelta(days=1))]

    diff = diff_snapshots(previous, current)

    assert [rollover.current.id for rollover in diff.rollovers] == ["daily"]
    assert diff.rollovers[0].previous.due_at == due
    assert diff.disappeared_ids == []


def test_small_due_shift_without_etag_change_is_not_rollover() -> None:
    due = T0 + timedelta(hours=1)
    previous = open_task("x", due_at=due, etag="e1")

    assert not is_rollover(previous, open_task("x", due_at=due + timedelta(seconds=30), etag="e1"))
    assert not is_rollover(previous, open_task("x", due_at=due - timedelta(days=1), etag="e1"))


def test_etag_change_with_any_due_change_is_rollover() -> None:
    due = T0 + timedelta(hours=1)
    previous = open_task("x", due_at=due, etag="e1")

    assert is_rollover(previous, open_task("x", due_at=due + timedelta(seconds=30), etag="e2"))
    assert is_rollover(previous, open_task("x", due_at=None, etag="e2"))
    assert is_rollover(previous, open_task("x", due_at=due - timedelta(days=1), etag="e2"))


def test_etag_change_alone_is_not_rollover() -> None:
    due = T0 + timedelta(hours=1)
    previous = open_task("x", due_at=due, etag="e1")

    assert not is_rollover(previous, open_task("x", due_at=due, etag="e2"))
    assert not is_rollover(previous, open_task("x", title="Renamed", due_at=due, etag="e1"))


def test_threshold_is_configurable() -> None:
    due = T0
    previous = [open_task("x", due_at=due)]
    current = [open_task("x", due_at=due + timedelta(minutes=5))]

    strict = diff_snapshots(previous, current, rollover_min_delta=timedelta(minutes=10))
    loose = diff_snapshots(previous, current, rollover_min_delta=timedelta(minutes=5))

    assert strict.rollovers == []
    assert len(loose.rollovers) == 1
