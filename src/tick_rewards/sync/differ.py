"""Open-task snapshot comparison."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from tick_rewards.sync.models import OpenTaskRecord, Rollover, SnapshotDiff

DEFAULT_ROLLOVER_MIN_DELTA = timedelta(seconds=60)


def diff_snapshots(
    previous: Iterable[OpenTaskRecord],
    current: Iterable[OpenTaskRecord],
    *,
    rollover_min_delta: timedelta = DEFAULT_ROLLOVER_MIN_DELTA,
) -> SnapshotDiff:
    """Find ids that disappeared and recurring tasks that rolled over.

    A rollover is an id present in both snapshots whose due date advanced by at
    least ``rollover_min_delta``, or whose etag changed together with any change
    of the due date.
    """

    previous_by_id = {record.id: record for record in previous}
    current_by_id = {record.id: record for record in current}

    diff = SnapshotDiff()
    for task_id in previous_by_id:
        if task_id not in current_by_id:
            diff.disappeared_ids.append(task_id)

    for task_id, current_record in current_by_id.items():
        previous_record = previous_by_id.get(task_id)
        if previous_record is None:
            diff.appeared_ids.append(task_id)
            continue
        if is_rollover(previous_record, current_record, rollover_min_delta=rollover_min_delta):
            diff.rollovers.append(Rollover(previous=previous_record, current=current_record))
    return diff


def is_rollover(
    previous: OpenTaskRecord,
    current: OpenTaskRecord,
    *,
    rollover_min_delta: timedelta = DEFAULT_ROLLOVER_MIN_DELTA,
) -> bool:
    due_advanced = (
        previous.due_at is not None
        and current.due_at is not None
        and current.due_at - previous.due_at >= rollover_min_delta
    )
    # Any due change in either direction, once the etag moved too.
    due_changed = previous.due_at != current.due_at
    etag_changed = (previous.etag or None) != (current.etag or None)
    return due_advanced or (etag_changed and due_changed)
