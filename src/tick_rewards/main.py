"""CLI entrypoint for tick-rewards."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from tick_rewards import __version__
from tick_rewards.rewards.controllers import (
    RewardsCliController,
    RuleAddCommand,
    RuleTestCommand,
)
from tick_rewards.rewards.models import RuleMode, ScopeKind
from tick_rewards.sync.controllers import SyncCliController, SyncRunCommand
from tick_rewards.sync.models import TickStatusEvent

click.rich_click.USE_MARKDOWN = True
SYNC_CONTROLLER = SyncCliController()
REWARDS_CONTROLLER = RewardsCliController()
T = TypeVar("T")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="tick-rewards")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def tick_rewards(log_level: str) -> None:
    """Reward points for completed TickTick tasks."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@tick_rewards.group()
def sync() -> None:
    """Reconciliation commands."""


@sync.command("once")
@DB_PATH_OPTION
def sync_once(db_path: Path | None) -> None:
    """Run one reconciliation tick against TickTick."""

    outcome = _run_controller(lambda: SYNC_CONTROLLER.run_once(db_path))
    _emit_lines(outcome.lines)
    if not outcome.result.success:
        raise click.ClickException("Sync tick failed.")


@sync.command("run")
@DB_PATH_OPTION
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=1.0),
    default=None,
    help="Poll interval in seconds. Defaults to TICK_REWARDS_POLL_SECONDS.",
)
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until interrupted).",
)
def sync_run(db_path: Path | None, interval_seconds: float | None, max_ticks: int | None) -> None:
    """Poll TickTick on an interval with failure backoff."""

    def _print_event(event: TickStatusEvent) -> None:
        outcome = "ok" if event.success else f"failed ({event.error or '-'})"
        click.echo(
            f"{event.timestamp.isoformat()} tick {outcome} completed={event.completed_count}",
        )

    _emit_lines(
        _run_controller(
            lambda: SYNC_CONTROLLER.run_loop(
                SyncRunCommand(
                    db_path=db_path,
                    interval_seconds=interval_seconds,
                    max_ticks=max_ticks,
                ),
                on_event=_print_event,
            ),
        ),
    )


@sync.command("status")
@DB_PATH_OPTION
@click.option(
    "--recent-ticks",
    type=click.IntRange(min=1, max=50),
    default=5,
    show_default=True,
    help="How many latest ticks to display.",
)
def sync_status(db_path: Path | None, recent_ticks: int) -> None:
    """Show the sync cursor, balance and recent tick history."""

    _emit_lines(SYNC_CONTROLLER.status(db_path, recent_ticks))


@tick_rewards.group()
def rules() -> None:
    """Reward rule commands."""


@rules.command("list")
@DB_PATH_OPTION
def rules_list(db_path: Path | None) -> None:
    """List reward rules ordered by priority."""

    _emit_lines(REWARDS_CONTROLLER.list_rules(db_path))


@rules.command("add")
@DB_PATH_OPTION
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in RuleMode], case_sensitive=False),
    required=True,
    help="How the rule contributes: exclusive base, additive bonus or multiplier.",
)
@click.option(
    "--scope",
    "scope_kind",
    type=click.Choice([kind.value for kind in ScopeKind], case_sensitive=False),
    required=True,
    help="What the rule matches on.",
)
@click.option(
    "--value",
    required=True,
    help=(
        "Scope payload: tag/list/project name, title regex, weekday 0-6 (0 = Sunday), "
        "time range HH:MM-HH:MM, or deadline has_deadline|overdue|within_hours:N."
    ),
)
@click.option("--amount", type=float, required=True, help="Points, bonus or multiplier factor.")
@click.option("--priority", type=int, default=0, show_default=True, help="Lower wins ties.")
@click.option("--disabled", is_flag=True, default=False, help="Store the rule disabled.")
@click.option("--id", "rule_id", type=int, default=None, help="Update an existing rule.")
def rules_add(  # noqa: PLR0913
    db_path: Path | None,
    mode: str,
    scope_kind: str,
    value: str,
    amount: float,
    priority: int,
    disabled: bool,
    rule_id: int | None,
) -> None:
    """Create a reward rule, or update one with --id."""

    _emit_lines(
        _run_controller(
            lambda: REWARDS_CONTROLLER.add_rule(
                RuleAddCommand(
                    db_path=db_path,
                    mode=mode,
                    scope_kind=scope_kind,
                    value=value,
                    amount=amount,
                    priority=priority,
                    enabled=not disabled,
                    rule_id=rule_id,
                ),
            ),
        ),
    )


@rules.command("remove")
@DB_PATH_OPTION
@click.argument("rule_id", type=int)
def rules_remove(db_path: Path | None, rule_id: int) -> None:
    """Delete a reward rule by id."""

    _emit_lines(_run_controller(lambda: REWARDS_CONTROLLER.remove_rule(db_path, rule_id)))


@rules.command("test")
@DB_PATH_OPTION
@click.option("--title", required=True, help="Task title.")
@click.option("--tag", "tags", multiple=True, help="Task tag. Can be repeated.")
@click.option("--list", "list_name", default=None, help="List (project) name.")
@click.option("--project", "project_id", default=None, help="Project id.")
@click.option("--completed-at", default=None, help="ISO timestamp (default: now).")
@click.option("--due-at", default=None, help="ISO due timestamp.")
def rules_test(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    tags: tuple[str, ...],
    list_name: str | None,
    project_id: str | None,
    completed_at: str | None,
    due_at: str | None,
) -> None:
    """Dry-run the stored rules against a synthetic task; nothing is written."""

    _emit_lines(
        _run_controller(
            lambda: REWARDS_CONTROLLER.test_rules(
                RuleTestCommand(
                    db_path=db_path,
                    title=title,
                    tags=tags,
                    list_name=list_name,
                    project_id=project_id,
                    completed_at=completed_at,
                    due_at=due_at,
                ),
            ),
        ),
    )


@tick_rewards.group()
def tags() -> None:
    """Tag priority commands."""


@tags.command("show")
@DB_PATH_OPTION
def tags_show(db_path: Path | None) -> None:
    """Show tag priority (first wins exclusive ties)."""

    _emit_lines(REWARDS_CONTROLLER.show_tags(db_path))


@tags.command("set")
@DB_PATH_OPTION
@click.argument("tag_names", nargs=-1)
def tags_set(db_path: Path | None, tag_names: tuple[str, ...]) -> None:
    """Replace tag priority with TAG_NAMES in order; no names clears it."""

    _emit_lines(REWARDS_CONTROLLER.set_tags(db_path, tag_names))


@tick_rewards.group()
def ledger() -> None:
    """Reward ledger commands."""


@ledger.command("balance")
@DB_PATH_OPTION
def ledger_balance(db_path: Path | None) -> None:
    """Show the current points balance."""

    _emit_lines(REWARDS_CONTROLLER.balance(db_path))


@ledger.command("list")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of entries to print.",
)
def ledger_list(db_path: Path | None, limit: int) -> None:
    """List ledger entries, newest first."""

    _emit_lines(REWARDS_CONTROLLER.list_ledger(db_path, limit))


@tick_rewards.group()
def completions() -> None:
    """Completion history commands."""


@completions.command("list")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of records to print.",
)
@click.option(
    "--include-revoked/--active-only",
    default=True,
    show_default=True,
    help="Whether revoked completions are shown.",
)
def completions_list(db_path: Path | None, limit: int, include_revoked: bool) -> None:
    """List confirmed completions, newest first."""

    _emit_lines(
        SYNC_CONTROLLER.list_completed(db_path, limit=limit, include_revoked=include_revoked),
    )


@completions.command("removed")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of records to print.",
)
def completions_removed(db_path: Path | None, limit: int) -> None:
    """List quarantined disappearances (deleted, moved or unconfirmed)."""

    _emit_lines(SYNC_CONTROLLER.list_removed(db_path, limit=limit))


def _run_controller(call: Callable[[], T]) -> T:
    try:
        return call()
    except (ValueError, LookupError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tick_rewards()
