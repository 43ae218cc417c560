"""Targeting condition evaluation.

Pure ``(condition, context) -> bool``. Malformed conditions never raise to
the caller: they are logged, counted and treated as non-matching.

Usage:
    from flagrollout.services.condition_evaluator import evaluate_condition

    cond = Condition(attribute="plan", operator="in", value=["pro", "enterprise"])
    evaluate_condition(cond, EvaluationContext(subject_id="u-1", attributes={"plan": "pro"}))  # True
"""

from __future__ import annotations

import math
import re
import threading
from typing import Any, Optional

from cachetools import LRUCache, cached

from flagrollout.core.exceptions import ConfigurationError
from flagrollout.core.logging import get_logger
from flagrollout.core.metrics import flag_configuration_errors_total
from flagrollout.models.evaluation import EvaluationContext
from flagrollout.models.feature_flag import Condition, ConditionOperator

logger = get_logger(__name__)

_COLLECTION_TYPES = (list, tuple, set, frozenset)

# Operators that match when the attribute is absent
_NEGATIVE_OPERATORS = (ConditionOperator.NOT_EQUALS, ConditionOperator.NOT_IN)


@cached(cache=LRUCache(maxsize=512), lock=threading.Lock())
def _compile_pattern(pattern: str) -> "re.Pattern[str]":
    return re.compile(pattern)


def _strict_equals(left: Any, right: Any) -> bool:
    """Equality without bool/int cross-matching (True != 1 here)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    try:
        return bool(left == right)
    except Exception:
        return False


def _collection_has(collection: Any, item: Any) -> bool:
    return any(_strict_equals(member, item) for member in collection)


def _to_number(value: Any) -> Optional[float]:
    """Numeric coercion for comparisons. Booleans are not numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _require_number(value: Any, condition: Condition, role: str) -> float:
    number = _to_number(value)
    if number is None:
        raise ConfigurationError(
            f"{condition.operator} needs a numeric {role}, got {value!r}",
            details={"kind": "invalid_operand", "attribute": condition.attribute},
        )
    return number


def _apply_operator(operator: ConditionOperator, actual: Any, condition: Condition) -> bool:
    target = condition.value

    if operator is ConditionOperator.EQUALS:
        return _strict_equals(actual, target)

    if operator is ConditionOperator.NOT_EQUALS:
        return not _strict_equals(actual, target)

    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        if not isinstance(target, _COLLECTION_TYPES):
            raise ConfigurationError(
                f"{operator.value} needs a list of values, got {type(target).__name__}",
                details={"kind": "invalid_operand", "attribute": condition.attribute},
            )
        if isinstance(actual, _COLLECTION_TYPES):
            found = any(_collection_has(target, item) for item in actual)
        else:
            found = _collection_has(target, actual)
        return found if operator is ConditionOperator.IN else not found

    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        threshold = _require_number(target, condition, "value")
        bound = None if condition.value_end is None else _require_number(condition.value_end, condition, "value_end")
        observed = _to_number(actual)
        if observed is None:
            return False
        if operator is ConditionOperator.GREATER_THAN:
            return observed > threshold and (bound is None or observed < bound)
        return observed < threshold and (bound is None or observed > bound)

    if operator is ConditionOperator.CONTAINS:
        if isinstance(actual, str):
            return isinstance(target, str) and target in actual
        if isinstance(actual, _COLLECTION_TYPES):
            return _collection_has(actual, target)
        return False

    if operator is ConditionOperator.MATCHES:
        if not isinstance(target, str):
            raise ConfigurationError(
                f"matches needs a pattern string, got {type(target).__name__}",
                details={"kind": "invalid_operand", "attribute": condition.attribute},
            )
        try:
            pattern = _compile_pattern(target)
        except re.error as e:
            raise ConfigurationError(
                f"Invalid regular expression {target!r}: {e}",
                details={"kind": "invalid_regex", "attribute": condition.attribute},
            ) from e
        return pattern.search(str(actual)) is not None

    raise ConfigurationError(
        f"Operator {operator.value} is not implemented",
        details={"kind": "unknown_operator", "attribute": condition.attribute},
    )


def _parse_operator(condition: Condition) -> ConditionOperator:
    try:
        return ConditionOperator(condition.operator)
    except ValueError as e:
        raise ConfigurationError(
            f"Unrecognized operator: {condition.operator}",
            details={"kind": "unknown_operator", "attribute": condition.attribute},
        ) from e


def evaluate_condition(condition: Condition, context: EvaluationContext) -> bool:
    """Evaluate a single condition against the evaluation context.

    Args:
        condition: The condition to evaluate
        context: Subject id and attributes

    Returns:
        True if the condition matches, False otherwise (including on any
        configuration error)
    """
    try:
        operator = _parse_operator(condition)

        actual = context.get_attribute(condition.attribute)
        if actual is None:
            # No value means condition doesn't match, except for the negative operators
            return operator in _NEGATIVE_OPERATORS

        return _apply_operator(operator, actual, condition)
    except ConfigurationError as e:
        kind = e.details.get("kind", "malformed_condition")
        flag_configuration_errors_total.labels(kind=kind).inc()
        logger.warning(
            "condition_configuration_error",
            kind=kind,
            attribute=condition.attribute,
            operator=condition.operator,
            error=e.message,
        )
        return False
    except Exception as e:
        flag_configuration_errors_total.labels(kind="evaluation_error").inc()
        logger.warning(
            "condition_evaluation_error",
            attribute=condition.attribute,
            operator=condition.operator,
            error=str(e),
        )
        return False


def evaluate_conditions(conditions, context: EvaluationContext) -> bool:
    """AND-combine conditions. An empty list matches."""
    for condition in conditions:
        if not evaluate_condition(condition, context):
            return False
    return True
