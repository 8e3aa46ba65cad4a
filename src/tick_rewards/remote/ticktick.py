"""TickTick Open API client with timeouts and normalized errors."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from urllib.parse import quote

import httpx

from tick_rewards.remote.base import AuthExpired, NetworkError, RateLimited
from tick_rewards.remote.dates import parse_ticktick_date
from tick_rewards.storage.common import utc_now
from tick_rewards.sync.models import (
    CompletionEvidence,
    LookupStatus,
    OpenTaskRecord,
    TaskLookupResult,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.ticktick.com/open/v1"
DEFAULT_COMPLETIONS_URL = "https://api.ticktick.com/api/v2/project/all/completedInAll"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_COMPLETIONS_LIMIT = 800
DEFAULT_USER_AGENT = "tick-rewards/0.3 (+https://github.com/tick-rewards/tick-rewards)"
TASK_STATUS_COMPLETED = 2
HTTP_NOT_FOUND = 404
HTTP_TOO_MANY_REQUESTS = 429
AUTH_HTTP_STATUS_CODES = frozenset({401, 403})


class TickTickClient:
    """Authenticated TickTick client implementing the task service contracts."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        token_provider: Callable[[], str | None],
        base_url: str = DEFAULT_API_BASE_URL,
        completions_url: str = DEFAULT_COMPLETIONS_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")
        self._completions_url = completions_url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def fetch_open_tasks(self) -> list[OpenTaskRecord]:
        """Return open tasks from every project.

        A failing project request fails the whole fetch: a partial list would
        look like mass disappearance to the differ.
        """

        seen_at = utc_now()
        items: list[OpenTaskRecord] = []
        for project in self._list_projects():
            project_id = str(project["id"])
            project_name = str(project.get("name") or "") or None
            response = self._get(f"{self._base_url}/project/{quote(project_id, safe='')}/data")
            if response.status_code == HTTP_NOT_FOUND:
                logger.info("Project vanished before fetch (project_id=%s)", project_id)
                continue
            self._raise_for_status(response)
            payload = _json_object(response)
            raw_tasks = payload.get("tasks")
            if not isinstance(raw_tasks, list):
                continue
            for raw in raw_tasks:
                if not isinstance(raw, dict) or raw.get("deleted"):
                    continue
                if _status(raw) == TASK_STATUS_COMPLETED:
                    continue
                items.append(
                    _open_record(
                        raw,
                        project_id=project_id,
                        project_name=project_name,
                        seen_at=seen_at,
                    ),
                )
        logger.debug("Fetched %d open tasks", len(items))
        return items

    def fetch_task_by_project_and_id(self, project_id: str, task_id: str) -> TaskLookupResult:
        url = (
            f"{self._base_url}/project/{quote(project_id, safe='')}"
            f"/task/{quote(task_id, safe='')}"
        )
        try:
            response = self._get(url)
        except NetworkError as error:
            logger.warning("Task lookup failed (task_id=%s): %s", task_id, error)
            return TaskLookupResult(status=LookupStatus.OTHER_ERROR)

        if response.status_code == HTTP_NOT_FOUND:
            return TaskLookupResult(status=LookupStatus.NOT_FOUND, http_status=HTTP_NOT_FOUND)
        if response.status_code in AUTH_HTTP_STATUS_CODES or (
            response.status_code == HTTP_TOO_MANY_REQUESTS
        ):
            self._raise_for_status(response)
        if not response.is_success:
            return TaskLookupResult(
                status=LookupStatus.OTHER_ERROR,
                http_status=response.status_code,
            )
        try:
            raw = _json_object(response)
        except NetworkError:
            return TaskLookupResult(
                status=LookupStatus.OTHER_ERROR,
                http_status=response.status_code,
            )
        completed = _status(raw) == TASK_STATUS_COMPLETED
        return TaskLookupResult(
            status=LookupStatus.FOUND,
            completed=completed,
            completed_at=_parse_completed_time(raw) if completed else None,
            http_status=response.status_code,
        )

    def fetch_completions_since(
        self,
        from_time: datetime,
        to_time: datetime,
    ) -> list[CompletionEvidence]:
        response = self._get(
            self._completions_url,
            params={
                "from": from_time.isoformat(),
                "to": to_time.isoformat(),
                "limit": str(DEFAULT_COMPLETIONS_LIMIT),
            },
        )
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as error:
            raise NetworkError(message="Completion history returned invalid JSON.") from error
        if not isinstance(payload, list):
            raise NetworkError(message="Completion history returned a non-list payload.")

        evidence: list[CompletionEvidence] = []
        for raw in payload:
            if not isinstance(raw, dict) or raw.get("id") is None:
                continue
            completed_at = _parse_completed_time(raw)
            if completed_at is None:
                continue
            evidence.append(CompletionEvidence(task_id=str(raw["id"]), completed_at=completed_at))
        return evidence

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> TickTickClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _list_projects(self) -> list[dict[str, object]]:
        response = self._get(f"{self._base_url}/project")
        self._raise_for_status(response)
        try:
            payload = response.json()
        except ValueError as error:
            raise NetworkError(message="Project list returned invalid JSON.") from error
        if not isinstance(payload, list):
            raise NetworkError(message="Project list returned a non-list payload.")
        return [raw for raw in payload if isinstance(raw, dict) and raw.get("id")]

    def _get(self, url: str, *, params: dict[str, str] | None = None) -> httpx.Response:
        token = self._token_provider()
        if not token:
            raise AuthExpired(message="No valid access token available.")
        try:
            return self._client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as error:
            raise NetworkError(message=f"Timeout requesting {url}") from error
        except httpx.HTTPError as error:
            raise NetworkError(message=f"HTTP error requesting {url}: {error}") from error

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        status = response.status_code
        url = str(response.request.url)
        if status in AUTH_HTTP_STATUS_CODES:
            raise AuthExpired(message=f"Access token rejected (HTTP {status}) for {url}")
        if status == HTTP_TOO_MANY_REQUESTS:
            raise RateLimited(
                message=f"Rate limited by remote service for {url}",
                retry_after=_retry_after_seconds(response.headers.get("Retry-After")),
            )
        logger.warning(
            "Remote call failed: HTTP %s url=%s body=%s",
            status,
            url,
            response.text[:200],
        )
        raise NetworkError(message=f"HTTP {status} for {url}", status_code=status)


def _open_record(
    raw: dict[str, object],
    *,
    project_id: str,
    project_name: str | None,
    seen_at: datetime,
) -> OpenTaskRecord:
    tags = raw.get("tags")
    etag = raw.get("etag")
    return OpenTaskRecord(
        id=str(raw["id"]),
        title=str(raw.get("title") or ""),
        tags=frozenset(str(tag) for tag in tags) if isinstance(tags, list) else frozenset(),
        list_name=project_name,
        project_id=str(raw.get("projectId") or project_id),
        due_at=parse_ticktick_date(_str_or_none(raw.get("dueDate"))),
        created_at=parse_ticktick_date(_str_or_none(raw.get("createdTime"))),
        last_seen_at=seen_at,
        etag=etag if isinstance(etag, str) else None,
    )


def _status(raw: dict[str, object]) -> int | None:
    value = raw.get("status")
    try:
        return int(value) if value is not None else None  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _parse_completed_time(raw: dict[str, object]) -> datetime | None:
    return parse_ticktick_date(_str_or_none(raw.get("completedTime")))


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _json_object(response: httpx.Response) -> dict[str, object]:
    try:
        payload = response.json()
    except ValueError as error:
        raise NetworkError(message=f"Invalid JSON from {response.request.url}") from error
    if not isinstance(payload, dict):
        raise NetworkError(message=f"Unexpected payload shape from {response.request.url}")
    return payload


def _retry_after_seconds(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return None
