"""Domain models for flag evaluation and progressive rollouts."""

from flagrollout.models.evaluation import EvaluationContext, EvaluationReason, EvaluationResult
from flagrollout.models.feature_flag import (
    Condition,
    ConditionOperator,
    FeatureFlag,
    FlagValueType,
    TargetingRule,
    validate_percentage,
)
from flagrollout.models.rollout import (
    CriteriaOperator,
    Rollout,
    RolloutResult,
    RolloutStage,
    RolloutState,
    RolloutStrategy,
    SuccessCriteria,
    validate_stages,
)

__all__ = [
    "Condition",
    "ConditionOperator",
    "CriteriaOperator",
    "EvaluationContext",
    "EvaluationReason",
    "EvaluationResult",
    "FeatureFlag",
    "FlagValueType",
    "Rollout",
    "RolloutResult",
    "RolloutStage",
    "RolloutState",
    "RolloutStrategy",
    "SuccessCriteria",
    "TargetingRule",
    "validate_percentage",
    "validate_stages",
]
