"""Remote task service contracts and error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from tick_rewards.sync.models import CompletionEvidence, OpenTaskRecord, TaskLookupResult


@dataclass(slots=True)
class RemoteServiceError(Exception):
    """Base remote call error."""

    message: str
    code: str = "remote_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class AuthExpired(RemoteServiceError):
    """No token available or the service rejected it."""

    code: str = "auth_expired"


@dataclass(slots=True)
class NetworkError(RemoteServiceError):
    """Transport failure, timeout or server-side error."""

    code: str = "network_error"
    status_code: int | None = None


@dataclass(slots=True)
class RateLimited(RemoteServiceError):
    """Service asked us to slow down."""

    code: str = "rate_limited"
    retry_after: int | None = None


class TaskService(Protocol):
    """Interface for the remote to-do service."""

    def fetch_open_tasks(self) -> list[OpenTaskRecord]:
        """Return every open task across all projects."""
        raise NotImplementedError

    def fetch_task_by_project_and_id(self, project_id: str, task_id: str) -> TaskLookupResult:
        """Look up one task; never raises for 404 or per-task errors."""
        raise NotImplementedError


@runtime_checkable
class CompletionHistoryService(Protocol):
    """Optional completion-history endpoint used for the evidence window."""

    def fetch_completions_since(
        self,
        from_time: datetime,
        to_time: datetime,
    ) -> list[CompletionEvidence]:
        """Return completions with timestamps inside [from_time, to_time]."""
        raise NotImplementedError
