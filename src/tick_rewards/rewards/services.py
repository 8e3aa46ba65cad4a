"""Rule management and dry-run evaluation on top of the rules store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import tzinfo

from tick_rewards.rewards.evaluator import evaluate_task
from tick_rewards.rewards.models import EvalBreakdown, Rule, TaskContext
from tick_rewards.sync.ports import RulesStore


@dataclass(slots=True)
class RuleTestResult:
    """Dry-run outcome with the rules that matched, for display."""

    breakdown: EvalBreakdown
    rules: list[Rule]
    tag_priority: list[str]

    def matched_rules(self) -> list[Rule]:
        wanted = set(self.breakdown.additive_rule_ids) | set(self.breakdown.multiplier_rule_ids)
        if self.breakdown.exclusive_rule_id is not None:
            wanted.add(self.breakdown.exclusive_rule_id)
        return [rule for rule in self.rules if rule.id in wanted]


class RulesService:
    """Evaluates synthetic task contexts against stored rules without writing anything."""

    def __init__(self, *, store: RulesStore, local_tz: tzinfo | None = None) -> None:
        self.store = store
        self.local_tz = local_tz

    def test(self, context: TaskContext) -> RuleTestResult:
        """Score ``context`` the same way a real completion would be scored.

        Raises:
            RuleEvaluationError: if an enabled stored rule has a malformed scope.
        """

        rules = self.store.load_rules()
        tag_priority = self.store.load_tag_priority()
        breakdown = evaluate_task(context, rules, tag_priority, local_tz=self.local_tz)
        return RuleTestResult(breakdown=breakdown, rules=rules, tag_priority=tag_priority)
