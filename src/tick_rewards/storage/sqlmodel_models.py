"""SQLModel ORM tables for reward and reconciliation storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class OpenTask(SQLModel, table=True):
    __tablename__ = "open_tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    title: str
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    list_name: str | None = None
    project_id: str | None = Field(default=None, index=True)
    due_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_seen_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    etag: str | None = None


class CompletedTask(SQLModel, table=True):
    __tablename__ = "completed_tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_completed_tasks_task_completed", "task_id", "completed_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    title: str
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    project_id: str | None = None
    list_name: str | None = None
    due_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    is_recurring_instance: bool = False
    series_key: str | None = None
    revoked: bool = Field(default=False, index=True)
    revoked_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completion_key: str | None = Field(default=None, index=True)


class RemovedTask(SQLModel, table=True):
    __tablename__ = "removed_tasks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    title: str
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    project_id: str | None = None
    list_name: str | None = None
    due_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    removed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    reason: str = Field(index=True)


class LedgerEntryRow(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    amount: int
    source: str = Field(index=True)
    reason: str
    related_task_id: str | None = Field(default=None, index=True)
    completion_key: str | None = Field(default=None, index=True)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))


class RewardRule(SQLModel, table=True):
    __tablename__ = "reward_rules"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    priority: int = Field(default=0, index=True)
    mode: str
    scope_kind: str
    match_value: str
    amount: float
    enabled: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))


class SyncStateRow(SQLModel, table=True):
    __tablename__ = "sync_state"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SyncTick(SQLModel, table=True):
    __tablename__ = "sync_ticks"  # type: ignore[bad-override]

    tick_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    started_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_count: int = 0
    rollover_count: int = 0
    quarantined_count: int = 0
    revoked_count: int = 0
    reward_failures: int = 0
    points_awarded: int = 0
    failure_class: str | None = None
    error_summary: str | None = None
