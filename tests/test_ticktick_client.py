from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import allure
import httpx
import pytest

from tick_rewards.remote.base import AuthExpired, NetworkError, RateLimited
from tick_rewards.remote.ticktick import TickTickClient
from tick_rewards.sync.models import LookupStatus

pytestmark = [
    allure.epic("Remote Service"),
    allure.feature("TickTick Client"),
]

BASE_URL = "https://api.test/open/v1"
COMPLETIONS_URL = "https://api.test/api/v2/project/all/completedInAll"

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler, *, token: str | None = "secret") -> TickTickClient:
    return TickTickClient(
        token_provider=lambda: token,
        base_url=BASE_URL,
        completions_url=COMPLETIONS_URL,
        transport=httpx.MockTransport(handler),
    )


def _projects_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/open/v1/project":
        projects = [{"id": "p1", "name": "Work"}, {"id": "p2", "name": "Home"}]
        return httpx.Response(200, json=projects)
    if path == "/open/v1/project/p1/data":
        return httpx.Response(
            200,
            json={
                "tasks": [
                    {
                        "id": "t1",
                        "title": "Write report",
                        "tags": ["urgent"],
                        "dueDate": "2026-03-05T17:00:00.000+0000",
                        "etag": "abc",
                        "status": 0,
                    },
                    {"id": "t2", "title": "Done already", "status": 2},
                    {"id": "t3", "title": "Trashed", "deleted": 1},
                ],
            },
        )
    if path == "/open/v1/project/p2/data":
        return httpx.Response(404)
    return httpx.Response(500)


def test_fetch_open_tasks_collects_every_project() -> None:
    seen_auth: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_auth.append(request.headers.get("Authorization"))
        return _projects_handler(request)

    with _client(handler) as client:
        tasks = client.fetch_open_tasks()

    assert [task.id for task in tasks] == ["t1"]
    task = tasks[0]
    assert task.title == "Write report"
    assert task.tags == frozenset({"urgent"})
    assert task.list_name == "Work"
    assert task.project_id == "p1"
    assert task.due_at == datetime(2026, 3, 5, 17, 0, tzinfo=UTC)
    assert task.etag == "abc"
    assert set(seen_auth) == {"Bearer secret"}


def test_failing_project_fails_the_whole_fetch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/open/v1/project/p2/data":
            return httpx.Response(503, text="maintenance")
        return _projects_handler(request)

    with _client(handler) as client, pytest.raises(NetworkError) as error:
        client.fetch_open_tasks()

    assert error.value.status_code == 503


def test_missing_token_is_auth_expired() -> None:
    with _client(_projects_handler, token=None) as client, pytest.raises(AuthExpired):
        client.fetch_open_tasks()


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_token_is_auth_expired(status: int) -> None:
    with _client(lambda _: httpx.Response(status)) as client, pytest.raises(AuthExpired):
        client.fetch_open_tasks()


def test_rate_limit_carries_retry_after() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "42"})

    with _client(handler) as client, pytest.raises(RateLimited) as error:
        client.fetch_open_tasks()

    assert error.value.retry_after == 42


def test_transport_error_is_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(handler) as client, pytest.raises(NetworkError):
        client.fetch_open_tasks()


def test_lookup_reports_completion() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/open/v1/project/p1/task/t1"
        return httpx.Response(
            200,
            json={"id": "t1", "status": 2, "completedTime": "2026-03-04T10:15:00.000+0100"},
        )

    with _client(handler) as client:
        result = client.fetch_task_by_project_and_id("p1", "t1")

    assert result.status == LookupStatus.FOUND
    assert result.completed is True
    assert result.completed_at == datetime(2026, 3, 4, 9, 15, tzinfo=UTC)
    assert result.http_status == 200


def test_lookup_of_open_task_is_not_completed() -> None:
    with _client(lambda _: httpx.Response(200, json={"id": "t1", "status": 0})) as client:
        result = client.fetch_task_by_project_and_id("p1", "t1")

    assert result.status == LookupStatus.FOUND
    assert result.completed is False
    assert result.completed_at is None


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        (httpx.Response(404), LookupStatus.NOT_FOUND),
        (httpx.Response(500), LookupStatus.OTHER_ERROR),
        (httpx.Response(200, text="not json"), LookupStatus.OTHER_ERROR),
    ],
)
def test_lookup_never_raises_for_per_task_errors(
    response: httpx.Response,
    expected: LookupStatus,
) -> None:
    with _client(lambda _: response) as client:
        result = client.fetch_task_by_project_and_id("p1", "t1")

    assert result.status == expected


def test_lookup_transport_error_is_other_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with _client(handler) as client:
        result = client.fetch_task_by_project_and_id("p1", "t1")

    assert result.status == LookupStatus.OTHER_ERROR


def test_lookup_auth_failure_propagates() -> None:
    with _client(lambda _: httpx.Response(401)) as client, pytest.raises(AuthExpired):
        client.fetch_task_by_project_and_id("p1", "t1")


def test_completion_history_parses_evidence() -> None:
    captured: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(request.url.params)
        return httpx.Response(
            200,
            json=[
                {"id": "t1", "completedTime": "2026-03-04T09:30:00.000+0000"},
                {"id": "t2"},
                "junk",
            ],
        )

    start = datetime(2026, 3, 4, 9, 0, tzinfo=UTC)
    end = datetime(2026, 3, 4, 10, 0, tzinfo=UTC)
    with _client(handler) as client:
        evidence = client.fetch_completions_since(start, end)

    assert [(item.task_id, item.completed_at) for item in evidence] == [
        ("t1", datetime(2026, 3, 4, 9, 30, tzinfo=UTC)),
    ]
    assert captured["from"] == start.isoformat()
    assert captured["to"] == end.isoformat()


def test_completion_history_rejects_non_list_payload() -> None:
    start = datetime(2026, 3, 4, tzinfo=UTC)
    with (
        _client(lambda _: httpx.Response(200, json={"items": []})) as client,
        pytest.raises(NetworkError),
    ):
        client.fetch_completions_since(start, start)
