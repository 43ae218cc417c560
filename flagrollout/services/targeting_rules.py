"""Targeting rule builder and common rule factories.

Rule ids salt the rule's rollout bucketing, so a rule keeps its id for its
whole life. Generated ids are random; pass ``rule_id`` to pin one.

Usage:
    rule = (
        TargetingRuleBuilder()
        .name("Pro plan in Canada")
        .custom_attribute("plan", ConditionOperator.EQUALS, "pro")
        .custom_attribute("geo.country", ConditionOperator.EQUALS, "CA")
        .value(True)
        .rollout(50)
        .build()
    )

    beta = CommonRules.beta_users(True)
"""

import uuid
from typing import Any, List, Optional, Sequence, Union

from flagrollout.core.exceptions import FlagValidationError
from flagrollout.models.feature_flag import Condition, ConditionOperator, TargetingRule, validate_percentage

OperatorLike = Union[ConditionOperator, str]


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _condition(attribute: str, operator: OperatorLike, value: Any) -> Condition:
    op = operator.value if isinstance(operator, ConditionOperator) else str(operator)
    return Condition(attribute=attribute, operator=op, value=value)


class TargetingRuleBuilder:
    """Fluent builder for targeting rules."""

    def __init__(self):
        self._id: Optional[str] = None
        self._name: Optional[str] = None
        self._value: Any = None
        self._rollout: Optional[float] = None
        self._conditions: List[Condition] = []

    def id(self, rule_id: str) -> "TargetingRuleBuilder":
        self._id = rule_id
        return self

    def name(self, name: str) -> "TargetingRuleBuilder":
        self._name = name
        return self

    def value(self, value: Any) -> "TargetingRuleBuilder":
        self._value = value
        return self

    def rollout(self, percentage: float) -> "TargetingRuleBuilder":
        self._rollout = validate_percentage(percentage, "Rule rollout percentage")
        return self

    def add_condition(self, condition: Condition) -> "TargetingRuleBuilder":
        self._conditions.append(condition)
        return self

    def user_id_equals(self, user_id: str) -> "TargetingRuleBuilder":
        return self.add_condition(_condition("user_id", ConditionOperator.EQUALS, user_id))

    def user_id_in(self, user_ids: Sequence[str]) -> "TargetingRuleBuilder":
        return self.add_condition(_condition("user_id", ConditionOperator.IN, list(user_ids)))

    def email_contains(self, fragment: str) -> "TargetingRuleBuilder":
        return self.add_condition(_condition("email", ConditionOperator.CONTAINS, fragment))

    def segment_equals(self, segment: str) -> "TargetingRuleBuilder":
        return self.add_condition(_condition("segment", ConditionOperator.EQUALS, segment))

    def custom_attribute(self, attribute: str, operator: OperatorLike, value: Any) -> "TargetingRuleBuilder":
        return self.add_condition(_condition(attribute, operator, value))

    def build(self) -> TargetingRule:
        if not self._name:
            raise FlagValidationError("Rule name is required")
        return TargetingRule(
            id=self._id or _generate_id("rule"),
            name=self._name,
            conditions=tuple(self._conditions),
            value=self._value,
            rollout_percentage=self._rollout,
        )


class CommonRules:
    """Factories for frequently used targeting rules."""

    @staticmethod
    def user_ids(user_ids: Sequence[str], value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("users"),
            name="Specific Users",
            conditions=(_condition("user_id", ConditionOperator.IN, list(user_ids)),),
            value=value,
        )

    @staticmethod
    def email_domain(domain: str, value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        domain = domain.lstrip("@")
        return TargetingRule(
            id=rule_id or _generate_id("email_domain"),
            name=f"Email Domain: {domain}",
            conditions=(_condition("email", ConditionOperator.CONTAINS, f"@{domain}"),),
            value=value,
        )

    @staticmethod
    def segment(segment_name: str, value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("segment"),
            name=f"Segment: {segment_name}",
            conditions=(_condition("segment", ConditionOperator.EQUALS, segment_name),),
            value=value,
        )

    @staticmethod
    def beta_users(value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("beta_users"),
            name="Beta Users",
            conditions=(_condition("is_beta_user", ConditionOperator.EQUALS, True),),
            value=value,
        )

    @staticmethod
    def internal_users(value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("internal_users"),
            name="Internal Users",
            conditions=(_condition("is_internal", ConditionOperator.EQUALS, True),),
            value=value,
        )

    @staticmethod
    def subscription_tier(tier: str, value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("tier"),
            name=f"Tier: {tier}",
            conditions=(_condition("subscription_tier", ConditionOperator.EQUALS, tier),),
            value=value,
        )

    @staticmethod
    def location(country: str, value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        return TargetingRule(
            id=rule_id or _generate_id("location"),
            name=f"Country: {country}",
            conditions=(_condition("country", ConditionOperator.EQUALS, country),),
            value=value,
        )

    @staticmethod
    def gradual_rollout(percentage: float, value: Any, rule_id: Optional[str] = None) -> TargetingRule:
        """Unconditional rule gated only by its own rollout percentage."""
        return TargetingRule(
            id=rule_id or _generate_id("rollout"),
            name=f"Rollout: {percentage}%",
            conditions=(),
            value=value,
            rollout_percentage=validate_percentage(percentage, "Rule rollout percentage"),
        )
