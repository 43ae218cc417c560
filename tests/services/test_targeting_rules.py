"""Unit tests for the targeting rule builder and common rule factories."""

import pytest

from flagrollout.core.exceptions import FlagValidationError
from flagrollout.models.evaluation import EvaluationContext
from flagrollout.models.feature_flag import ConditionOperator
from flagrollout.services.condition_evaluator import evaluate_conditions
from flagrollout.services.rule_engine import RuleEngine
from flagrollout.services.targeting_rules import CommonRules, TargetingRuleBuilder
from tests.factories import make_flag


def matches(rule, subject_id=None, **attributes):
    return evaluate_conditions(rule.conditions, EvaluationContext(subject_id, attributes))


class TestTargetingRuleBuilder:
    def test_build_full_rule(self):
        rule = (
            TargetingRuleBuilder()
            .id("pro-canada")
            .name("Pro plan in Canada")
            .custom_attribute("plan", ConditionOperator.EQUALS, "pro")
            .custom_attribute("geo.country", "equals", "CA")
            .value(True)
            .rollout(50)
            .build()
        )
        assert rule.id == "pro-canada"
        assert rule.rollout_percentage == 50
        assert [c.operator for c in rule.conditions] == ["equals", "equals"]
        assert matches(rule, plan="pro", geo={"country": "CA"})
        assert not matches(rule, plan="pro", geo={"country": "US"})

    def test_name_is_required(self):
        with pytest.raises(FlagValidationError):
            TargetingRuleBuilder().value(True).build()

    def test_generated_ids_are_unique(self):
        first = TargetingRuleBuilder().name("a").value(True).build()
        second = TargetingRuleBuilder().name("a").value(True).build()
        assert first.id != second.id

    def test_rollout_percentage_is_validated(self):
        with pytest.raises(ValueError):
            TargetingRuleBuilder().rollout(150)

    def test_user_helpers(self):
        rule = (
            TargetingRuleBuilder()
            .name("Staff")
            .user_id_in(["u1", "u2"])
            .email_contains("@corp.example")
            .value("staff")
            .build()
        )
        assert matches(rule, "u1", email="jane@corp.example")
        assert not matches(rule, "u3", email="jane@corp.example")

    def test_user_id_equals_reads_subject_id(self):
        rule = TargetingRuleBuilder().name("One").user_id_equals("u1").segment_equals("beta").value(True).build()
        assert matches(rule, "u1", segment="beta")
        assert not matches(rule, "u1", segment="general")


class TestCommonRules:
    def test_user_ids(self):
        rule = CommonRules.user_ids(["u1", "u2"], True, rule_id="vip")
        assert rule.id == "vip"
        assert matches(rule, "u2")
        assert not matches(rule, "u9")

    def test_email_domain(self):
        rule = CommonRules.email_domain("@example.com", True)
        assert rule.name == "Email Domain: example.com"
        assert matches(rule, email="jane@example.com")
        assert not matches(rule, email="jane@example.org")

    def test_segment(self):
        assert matches(CommonRules.segment("beta", True), segment="beta")

    def test_beta_and_internal_users_need_real_booleans(self):
        assert matches(CommonRules.beta_users(True), is_beta_user=True)
        assert not matches(CommonRules.beta_users(True), is_beta_user="true")
        assert matches(CommonRules.internal_users(True), is_internal=True)

    def test_subscription_tier_and_location(self):
        assert matches(CommonRules.subscription_tier("pro", 100), subscription_tier="pro")
        assert matches(CommonRules.location("CA", True), country="CA")
        assert not matches(CommonRules.location("CA", True), country="US")

    def test_gradual_rollout(self):
        rule = CommonRules.gradual_rollout(25, True, rule_id="quarter")
        assert rule.conditions == ()
        assert rule.rollout_percentage == 25

    def test_gradual_rollout_rejects_bad_percentage(self):
        with pytest.raises(ValueError):
            CommonRules.gradual_rollout(-5, True)

    def test_rules_plug_into_flags(self):
        flag = make_flag(
            "new-dashboard",
            default_value=False,
            targeting_rules=(CommonRules.internal_users(True, rule_id="internal"),),
        )
        engine = RuleEngine()
        assert engine.resolve(flag, EvaluationContext("u1", {"is_internal": True})) is True
        assert engine.resolve(flag, EvaluationContext("u1", {"is_internal": False})) is False
