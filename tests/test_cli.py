from __future__ import annotations

from pathlib import Path

import allure
import httpx
import pytest
from click.testing import CliRunner, Result
from conftest import open_task

from tick_rewards import main
from tick_rewards.config import Settings
from tick_rewards.main import tick_rewards
from tick_rewards.remote.ticktick import TickTickClient
from tick_rewards.storage.repository import open_repository

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("CLI Commands"),
]


def _invoke(db_path: Path, *args: str) -> Result:
    return CliRunner().invoke(tick_rewards, [*args, "--db-path", str(db_path)])


def test_rules_lifecycle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    empty = _invoke(db_path, "rules", "list")
    assert empty.exit_code == 0, empty.output
    assert "No reward rules configured." in empty.output

    added = _invoke(
        db_path,
        "rules",
        "add",
        "--mode",
        "exclusive",
        "--scope",
        "tag",
        "--value",
        "urgent",
        "--amount",
        "10",
    )
    assert added.exit_code == 0, added.output
    assert "Rule created: id=1 mode=exclusive scope=tag:urgent" in added.output

    bonus = _invoke(
        db_path,
        "rules",
        "add",
        "--mode",
        "multiplier",
        "--scope",
        "weekday",
        "--value",
        "3",
        "--amount",
        "2",
    )
    assert bonus.exit_code == 0, bonus.output

    listed = _invoke(db_path, "rules", "list")
    assert "Reward rules: 2" in listed.output
    expected = "- id=1 priority=0 mode=exclusive scope=tag:urgent amount=10 enabled=yes"
    assert expected in listed.output

    tested = _invoke(
        db_path,
        "rules",
        "test",
        "--title",
        "Fix bug",
        "--tag",
        "urgent",
        "--completed-at",
        "2026-03-04T12:00:00+00:00",
    )
    assert tested.exit_code == 0, tested.output
    assert "Points: 20" in tested.output
    assert "Matched rules:" in tested.output

    removed = _invoke(db_path, "rules", "remove", "1")
    assert removed.exit_code == 0, removed.output
    assert "Rule removed: id=1" in removed.output

    missing = _invoke(db_path, "rules", "remove", "1")
    assert missing.exit_code != 0
    assert "Rule not found: 1" in missing.output


def test_invalid_scope_value_is_a_usage_error(tmp_path: Path) -> None:
    result = _invoke(
        tmp_path / "cli.db",
        "rules",
        "add",
        "--mode",
        "additive",
        "--scope",
        "weekday",
        "--value",
        "9",
        "--amount",
        "1",
    )

    assert result.exit_code != 0
    assert "Weekday must be within 0..6" in result.output


def test_tag_priority_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    assert "Tag priority: (empty)" in _invoke(db_path, "tags", "show").output

    saved = _invoke(db_path, "tags", "set", "urgent", "home", "urgent")
    assert "Tag priority saved: urgent, home" in saved.output
    assert "Tag priority: urgent, home" in _invoke(db_path, "tags", "show").output


def test_ledger_and_completions_on_empty_db(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    assert "Balance: 0" in _invoke(db_path, "ledger", "balance").output
    assert "Ledger is empty." in _invoke(db_path, "ledger", "list").output
    assert "No completed tasks recorded." in _invoke(db_path, "completions", "list").output
    assert "No quarantined tasks recorded." in _invoke(db_path, "completions", "removed").output
    status = _invoke(db_path, "sync", "status")
    assert "Sync cursor: -" in status.output
    assert "Recent ticks: none" in status.output


def test_sync_once_requires_token(tmp_path: Path) -> None:
    result = _invoke(tmp_path / "cli.db", "sync", "once")

    assert result.exit_code != 0
    assert "TICK_REWARDS_ACCESS_TOKEN" in result.output


def test_sync_once_rewards_completed_task(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("TICK_REWARDS_ACCESS_TOKEN", "token")
    with open_repository(db_path) as repository:
        repository.replace_open_snapshot(
            [open_task("t1", title="Pay rent", project_id="p1", tags=frozenset({"home"}))],
        )
    assert _invoke(
        db_path,
        "rules",
        "add",
        "--mode",
        "additive",
        "--scope",
        "tag",
        "--value",
        "home",
        "--amount",
        "5",
    ).exit_code == 0

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/open/v1/project":
            return httpx.Response(200, json=[{"id": "p1", "name": "Home"}])
        if path == "/open/v1/project/p1/data":
            return httpx.Response(200, json={"tasks": []})
        if path == "/open/v1/project/p1/task/t1":
            return httpx.Response(
                200,
                json={"id": "t1", "status": 2, "completedTime": "2026-03-04T10:00:00.000+0000"},
            )
        return httpx.Response(404)

    def _client_factory(settings: Settings) -> TickTickClient:
        return TickTickClient(
            token_provider=lambda: settings.remote.access_token,
            base_url="https://api.test/open/v1",
            transport=httpx.MockTransport(handler),
        )

    monkeypatch.setattr(main.SYNC_CONTROLLER, "client_factory", _client_factory)

    result = _invoke(db_path, "sync", "once")

    assert result.exit_code == 0, result.output
    assert "Sync tick completed: completed=1" in result.output
    assert "points=5" in result.output
    assert "Balance: 5" in result.output

    completed = _invoke(db_path, "completions", "list")
    assert "Completed tasks: 1" in completed.output
    assert "id=t1 title='Pay rent'" in completed.output

    ledger = _invoke(db_path, "ledger", "list")
    assert "amount=+5 source=task task=t1" in ledger.output


def test_sync_once_reports_failed_tick(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TICK_REWARDS_ACCESS_TOKEN", "token")

    def _client_factory(_: Settings) -> TickTickClient:
        return TickTickClient(
            token_provider=lambda: "token",
            base_url="https://api.test/open/v1",
            transport=httpx.MockTransport(lambda _: httpx.Response(401)),
        )

    monkeypatch.setattr(main.SYNC_CONTROLLER, "client_factory", _client_factory)

    result = _invoke(tmp_path / "cli.db", "sync", "once")

    assert result.exit_code != 0
    assert "Sync tick failed: failure=auth_expired" in result.output
    status = _invoke(tmp_path / "cli.db", "sync", "status")
    assert "status=failed" in status.output
    assert "failure=auth_expired" in status.output


def test_sync_run_stops_after_max_ticks(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("TICK_REWARDS_ACCESS_TOKEN", "token")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/open/v1/project":
            return httpx.Response(200, json=[])
        return httpx.Response(404)

    def _client_factory(_: Settings) -> TickTickClient:
        return TickTickClient(
            token_provider=lambda: "token",
            base_url="https://api.test/open/v1",
            transport=httpx.MockTransport(handler),
        )

    monkeypatch.setattr(main.SYNC_CONTROLLER, "client_factory", _client_factory)

    result = _invoke(tmp_path / "cli.db", "sync", "run", "--interval", "60", "--max-ticks", "1")

    assert result.exit_code == 0, result.output
    assert "tick ok completed=0" in result.output
    assert "Polling stopped after 1 tick(s)." in result.output
    assert "consecutive_failures=0" in result.output
