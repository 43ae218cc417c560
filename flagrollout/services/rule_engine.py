"""Targeting Rule Evaluator.

Resolves a flag and an evaluation context to the value the caller should
observe. Evaluation order:

1. Disabled flag: default value.
2. Rules in order: the first rule whose conditions all match and whose
   rollout gate (if any) includes the subject wins.
3. Global rollout percentage set: default value for included subjects,
   the value type's off value for everyone else.
4. Default value.

Usage:
    from flagrollout.services.rule_engine import rule_engine

    result = rule_engine.resolve_detailed(flag, EvaluationContext(subject_id="user-123"))
    if result.reason is EvaluationReason.RULE_MATCH:
        ...
"""

from __future__ import annotations

from typing import Any

from flagrollout.core.logging import get_logger
from flagrollout.models.evaluation import EvaluationContext, EvaluationReason, EvaluationResult
from flagrollout.models.feature_flag import FeatureFlag, TargetingRule
from flagrollout.services import bucketing
from flagrollout.services.condition_evaluator import evaluate_conditions

logger = get_logger(__name__)


def rule_salt(flag_key: str, rule_id: str) -> str:
    """Salt used for a rule's rollout gate."""
    return f"{flag_key}:{rule_id}"


class RuleEngine:
    """Evaluates targeting rules for feature flags.

    Stateless apart from the shared bucket cache, so one instance can serve
    any number of threads and tasks.
    """

    def rule_applies(self, flag: FeatureFlag, rule: TargetingRule, context: EvaluationContext) -> bool:
        """All conditions match and the subject passes the rule's rollout gate."""
        if not evaluate_conditions(rule.conditions, context):
            return False
        if rule.rollout_percentage is None:
            return True
        return bucketing.is_in_rollout(context.subject_id, rule_salt(flag.key, rule.id), rule.rollout_percentage)

    def resolve_detailed(self, flag: FeatureFlag, context: EvaluationContext) -> EvaluationResult:
        value_type = flag.value_type

        if not flag.enabled:
            return EvaluationResult(
                flag_key=flag.key,
                value=value_type.materialize(flag.default_value),
                reason=EvaluationReason.DISABLED,
            )

        for rule in flag.targeting_rules:
            if self.rule_applies(flag, rule, context):
                logger.debug("targeting_rule_matched", flag_key=flag.key, rule_id=rule.id)
                return EvaluationResult(
                    flag_key=flag.key,
                    value=value_type.materialize(rule.value),
                    reason=EvaluationReason.RULE_MATCH,
                    matched_rule_id=rule.id,
                    matched_rule_name=rule.name or None,
                )

        if flag.global_rollout_percentage is not None:
            if bucketing.is_in_rollout(context.subject_id, flag.key, flag.global_rollout_percentage):
                return EvaluationResult(
                    flag_key=flag.key,
                    value=value_type.materialize(flag.default_value),
                    reason=EvaluationReason.ROLLOUT_INCLUDED,
                )
            return EvaluationResult(
                flag_key=flag.key,
                value=value_type.off_value(),
                reason=EvaluationReason.ROLLOUT_EXCLUDED,
            )

        return EvaluationResult(
            flag_key=flag.key,
            value=value_type.materialize(flag.default_value),
            reason=EvaluationReason.DEFAULT,
        )

    def resolve(self, flag: FeatureFlag, context: EvaluationContext) -> Any:
        return self.resolve_detailed(flag, context).value


# Singleton instance
rule_engine = RuleEngine()
