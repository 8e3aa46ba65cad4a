"""Deterministic point evaluation for one completed task.

The evaluator is pure: it reads only its arguments, so the same call backs
both real completions during sync and the dry-run rule tester.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import tzinfo
from decimal import ROUND_HALF_UP, Decimal

from tick_rewards.rewards.models import (
    BaseSource,
    EvalBreakdown,
    Rule,
    RuleEvaluationError,
    RuleMode,
    TagScope,
    TaskContext,
)
from tick_rewards.rewards.scope import matches

# Ledger amounts are stored in a signed 64-bit SQLite integer.
MAX_POINTS = 2**63 - 1
MIN_POINTS = -(2**63)


def evaluate_task(
    task: TaskContext,
    rules: Sequence[Rule],
    tag_priority: Sequence[str],
    *,
    local_tz: tzinfo | None = None,
) -> EvalBreakdown:
    """Score one task completion.

    Raises:
        RuleEvaluationError: if an enabled rule carries a malformed scope, or the
            combined amounts do not produce a storable point value.
    """

    matched = [rule for rule in rules if matches(rule, task, local_tz=local_tz)]

    exclusives = [rule for rule in matched if rule.mode == RuleMode.EXCLUSIVE]
    additives = [rule for rule in matched if rule.mode == RuleMode.ADDITIVE]
    multipliers = [rule for rule in matched if rule.mode == RuleMode.MULTIPLIER]

    base = 0.0
    base_source = BaseSource.NONE
    exclusive_rule_id: str | None = None
    if exclusives:
        winner = select_exclusive_winner(exclusives, tag_priority)
        base = winner.amount
        base_source = BaseSource.EXCLUSIVE
        exclusive_rule_id = winner.id

    additive_sum = 0.0
    for rule in additives:
        additive_sum += rule.amount

    multiplier_product = 1.0
    for rule in multipliers:
        multiplier_product *= rule.amount

    return EvalBreakdown(
        points_pre_penalty=round_points((base + additive_sum) * multiplier_product),
        base_source=base_source,
        exclusive_rule_id=exclusive_rule_id,
        additive_rule_ids=[rule.id for rule in additives],
        multiplier_rule_ids=[rule.id for rule in multipliers],
        additive_sum=additive_sum,
        multiplier_product=multiplier_product,
    )


def select_exclusive_winner(exclusives: Sequence[Rule], tag_priority: Sequence[str]) -> Rule:
    """Pick one exclusive rule: tag rank, then rule priority, then rule id."""

    if not exclusives:
        raise ValueError("At least one exclusive rule is required.")
    ranks = {tag: index for index, tag in reversed(list(enumerate(tag_priority)))}
    unranked = len(tag_priority)

    def _key(rule: Rule) -> tuple[int, int, tuple[int, int, str]]:
        tag_rank = unranked
        if isinstance(rule.scope, TagScope):
            tag_rank = ranks.get(rule.scope.value, unranked)
        return tag_rank, rule.priority, _id_order(rule.id)

    return min(exclusives, key=_key)


def round_points(value: float) -> int:
    """Round once, half away from zero (2.5 -> 3, -2.5 -> -3).

    Raises:
        RuleEvaluationError: if the value is not finite or does not fit a ledger amount.
    """

    if not math.isfinite(value):
        raise RuleEvaluationError(f"Points are not finite: {value!r}")
    if not MIN_POINTS <= value <= MAX_POINTS:
        raise RuleEvaluationError(f"Points out of range: {value!r}")
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _id_order(rule_id: str) -> tuple[int, int, str]:
    # Stored ids are integers rendered as text; "9" sorts before "10".
    if rule_id.isdigit():
        return 0, int(rule_id), rule_id
    return 1, 0, rule_id
