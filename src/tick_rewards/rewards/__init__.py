"""Reward rules: scope matching and point evaluation."""

from tick_rewards.rewards.evaluator import evaluate_task, round_points, select_exclusive_winner
from tick_rewards.rewards.models import (
    BaseSource,
    EvalBreakdown,
    Rule,
    RuleEvaluationError,
    RuleMode,
    TaskContext,
)
from tick_rewards.rewards.scope import matches, parse_scope, parse_scope_lenient

__all__ = [
    "BaseSource",
    "EvalBreakdown",
    "Rule",
    "RuleEvaluationError",
    "RuleMode",
    "TaskContext",
    "evaluate_task",
    "matches",
    "parse_scope",
    "parse_scope_lenient",
    "round_points",
    "select_exclusive_winner",
]
