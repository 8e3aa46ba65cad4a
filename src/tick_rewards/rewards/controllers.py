"""Controllers for rules, tag priority and ledger CLI commands."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from tick_rewards.config import Settings
from tick_rewards.rewards.models import Rule, RuleMode, RuleWrite, TaskContext
from tick_rewards.rewards.scope import parse_scope, scope_to_storage
from tick_rewards.rewards.services import RulesService
from tick_rewards.storage.common import from_iso, utc_now
from tick_rewards.storage.repository import open_repository


@dataclass(slots=True)
class RuleAddCommand:
    """CLI inputs for rule create/update."""

    db_path: Path | None
    mode: str
    scope_kind: str
    value: str
    amount: float
    priority: int
    enabled: bool
    rule_id: int | None = None


@dataclass(slots=True)
class RuleTestCommand:
    """CLI inputs for the dry-run rule tester."""

    db_path: Path | None
    title: str
    tags: tuple[str, ...]
    list_name: str | None
    project_id: str | None
    completed_at: str | None
    due_at: str | None


class RewardsCliController:
    """Coordinates rule, tag priority and ledger commands."""

    def list_rules(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            rules = repository.load_rules()
        if not rules:
            return ["No reward rules configured."]
        return [f"Reward rules: {len(rules)}", *(_format_rule(rule) for rule in rules)]

    def add_rule(self, command: RuleAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        mode = RuleMode(command.mode.lower())
        scope = parse_scope(command.scope_kind.lower(), command.value)
        with open_repository(settings.db_path) as repository:
            rule_id = repository.upsert_rule(
                RuleWrite(
                    mode=mode,
                    scope=scope,
                    amount=command.amount,
                    priority=command.priority,
                    enabled=command.enabled,
                    rule_id=command.rule_id,
                ),
            )
        action = "updated" if command.rule_id is not None else "created"
        kind, value = scope_to_storage(scope)
        return [f"Rule {action}: id={rule_id} mode={mode.value} scope={kind}:{value}"]

    def remove_rule(self, db_path: Path | None, rule_id: int) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            removed = repository.delete_rule(rule_id)
        if not removed:
            raise ValueError(f"Rule not found: {rule_id}")
        return [f"Rule removed: id={rule_id}"]

    def test_rules(self, command: RuleTestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        context = TaskContext(
            id="dry-run",
            title=command.title,
            tags=frozenset(tag.strip() for tag in command.tags if tag.strip()),
            completed_at=_parse_time(command.completed_at) or utc_now(),
            list_name=command.list_name,
            project_id=command.project_id,
            due_at=_parse_time(command.due_at),
        )
        with open_repository(settings.db_path) as repository:
            result = RulesService(store=repository, local_tz=settings.local_tz()).test(context)

        breakdown = result.breakdown
        lines = [
            f"Points: {breakdown.points_pre_penalty}",
            "Breakdown: "
            f"base_source={breakdown.base_source.value} "
            f"exclusive={breakdown.exclusive_rule_id or '-'} "
            f"additive_sum={breakdown.additive_sum:g} "
            f"multiplier_product={breakdown.multiplier_product:g}",
        ]
        matched = result.matched_rules()
        if matched:
            lines.append("Matched rules:")
            lines.extend(_format_rule(rule) for rule in matched)
        else:
            lines.append("Matched rules: none")
        return lines

    def show_tags(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            tags = repository.load_tag_priority()
        if not tags:
            return ["Tag priority: (empty)"]
        return [f"Tag priority: {', '.join(tags)}"]

    def set_tags(self, db_path: Path | None, tags: tuple[str, ...]) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        normalized = _dedupe(tag.strip() for tag in tags)
        with open_repository(settings.db_path) as repository:
            repository.set_tag_priority(normalized)
        return [f"Tag priority saved: {', '.join(normalized) or '(empty)'}"]

    def balance(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            total = repository.get_balance()
        return [f"Balance: {total}"]

    def list_ledger(self, db_path: Path | None, limit: int) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_repository(settings.db_path) as repository:
            entries = repository.list_ledger_entries(limit=limit)
        if not entries:
            return ["Ledger is empty."]
        lines = [f"Ledger entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"- {entry.created_at.isoformat()} amount={entry.amount:+d} "
                f"source={entry.source} task={entry.related_task_id or '-'} "
                f"reason={entry.reason}",
            )
        return lines


def _format_rule(rule: Rule) -> str:
    kind, value = scope_to_storage(rule.scope)
    return (
        f"- id={rule.id} priority={rule.priority} mode={rule.mode.value} "
        f"scope={kind}:{value} amount={rule.amount:g} "
        f"enabled={'yes' if rule.enabled else 'no'}"
    )


def _parse_time(value: str | None) -> datetime | None:
    if value is None or not value.strip():
        return None
    try:
        return from_iso(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid ISO timestamp: {value!r}") from error


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result

