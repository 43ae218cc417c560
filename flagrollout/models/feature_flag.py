"""Feature Flag Model.

A flag is a named, typed toggle with a default value, an ordered list of
targeting rules and an optional global rollout percentage. Records are
immutable snapshots: the write path produces a new record with a bumped
version instead of mutating the cached one.

Persisted layout (camelCase, as produced by ``to_dict``):
    {key, valueType, enabled, defaultValue, globalRolloutPercentage?,
     targetingRules: [{id, name, conditions: [{attribute, operator, value, value_end?}],
                       value, rolloutPercentage?}],
     version, updatedAt}
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from flagrollout.core.exceptions import FlagValidationError

_MISSING = object()


class FlagValueType(str, Enum):
    """Feature flag value types."""

    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"

    def accepts(self, value: Any) -> bool:
        """Check whether ``value`` belongs to this tag without coercing it."""
        if self is FlagValueType.BOOLEAN:
            return isinstance(value, bool)
        if self is FlagValueType.STRING:
            return isinstance(value, str)
        if self is FlagValueType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        return isinstance(value, (dict, list))

    def validate(self, value: Any, what: str) -> Any:
        if not self.accepts(value):
            raise FlagValidationError(
                f"{what} must be a {self.value} value, got {type(value).__name__}",
                details={"value_type": self.value, "field": what},
            )
        return value

    def off_value(self) -> Any:
        """Value served to subjects excluded by a rollout."""
        if self is FlagValueType.BOOLEAN:
            return False
        if self is FlagValueType.STRING:
            return ""
        if self is FlagValueType.NUMBER:
            return 0
        return {}

    def materialize(self, value: Any) -> Any:
        """Return a value safe to hand to callers (json blobs are copied)."""
        if self is FlagValueType.JSON:
            return copy.deepcopy(value)
        return value


class ConditionOperator(str, Enum):
    """Supported operators for targeting conditions."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    MATCHES = "matches"


def _pick(data: Dict[str, Any], *names: str, default: Any = _MISSING) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return default


def _list_field(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise FlagValidationError(f"{what} must be a list", details={"field": what})
    return list(value)


def validate_percentage(value: Any, what: str = "rollout percentage") -> float:
    """Validate a 0-100 percentage and return it unchanged."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise FlagValidationError(f"{what} must be a number between 0 and 100", details={"field": what})
    if value < 0 or value > 100:
        raise FlagValidationError(f"{what} must be between 0 and 100, got {value}", details={"field": what})
    return value


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise FlagValidationError(f"Invalid updatedAt timestamp: {value!r}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise FlagValidationError(f"Invalid updatedAt timestamp: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Condition:
    """A single targeting condition.

    ``operator`` is kept as the raw string so that records carrying an
    operator this engine does not know still load; the condition evaluator
    reports them instead.
    """

    attribute: str
    operator: str
    value: Any = None
    value_end: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        if not isinstance(data, dict):
            raise FlagValidationError("Condition must be an object")
        operator = data.get("operator", ConditionOperator.EQUALS.value)
        if isinstance(operator, ConditionOperator):
            operator = operator.value
        return cls(
            attribute=str(data.get("attribute", "")),
            operator=str(operator),
            value=data.get("value"),
            value_end=_pick(data, "value_end", "valueEnd", default=None),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {"attribute": self.attribute, "operator": self.operator, "value": self.value}
        if self.value_end is not None:
            result["value_end"] = self.value_end
        return result


@dataclass(frozen=True)
class TargetingRule:
    """A targeting rule: AND-combined conditions plus an override value."""

    id: str
    value: Any
    name: str = ""
    conditions: Tuple[Condition, ...] = ()
    rollout_percentage: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], value_type: FlagValueType) -> "TargetingRule":
        if not isinstance(data, dict):
            raise FlagValidationError("Targeting rule must be an object")
        rule_id = data.get("id")
        if not rule_id:
            raise FlagValidationError("Targeting rule requires an id")
        if "value" not in data:
            raise FlagValidationError(f"Targeting rule '{rule_id}' requires a value")
        percentage = _pick(data, "rolloutPercentage", "rollout_percentage", default=None)
        if percentage is not None:
            validate_percentage(percentage, f"rule '{rule_id}' rollout percentage")
        return cls(
            id=str(rule_id),
            name=str(data.get("name") or ""),
            conditions=tuple(
                Condition.from_dict(c) for c in _list_field(data.get("conditions"), f"rule '{rule_id}' conditions")
            ),
            value=value_type.validate(data["value"], f"rule '{rule_id}' value"),
            rollout_percentage=percentage,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "conditions": [c.to_dict() for c in self.conditions],
            "value": self.value,
        }
        if self.rollout_percentage is not None:
            result["rolloutPercentage"] = self.rollout_percentage
        return result


@dataclass(frozen=True)
class FeatureFlag:
    """Feature flag snapshot.

    Attributes:
        key: Unique, stable identifier (e.g. 'new-checkout')
        value_type: Tag of every value this flag can serve
        enabled: Kill switch; a disabled flag always serves default_value
        default_value: Value served when no rule matches
        global_rollout_percentage: Share of subjects (0-100) that get default_value
            when no rule matched; everyone else gets the type's off value
        targeting_rules: Ordered rules, first match wins
        version: Monotonic record version used for cache staleness detection
        updated_at: Last write timestamp
    """

    key: str
    value_type: FlagValueType
    default_value: Any
    enabled: bool = False
    global_rollout_percentage: Optional[float] = None
    targeting_rules: Tuple[TargetingRule, ...] = ()
    version: int = 1
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    name: str = ""
    description: str = ""

    def __post_init__(self):
        if not self.key:
            raise FlagValidationError("Feature flag requires a key")
        self.value_type.validate(self.default_value, f"flag '{self.key}' default value")
        if self.global_rollout_percentage is not None:
            validate_percentage(self.global_rollout_percentage, f"flag '{self.key}' global rollout percentage")

    def get_rule(self, rule_id: str) -> Optional[TargetingRule]:
        for rule in self.targeting_rules:
            if rule.id == rule_id:
                return rule
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureFlag":
        """Parse a persisted record, validating values against the declared type."""
        if not isinstance(data, dict):
            raise FlagValidationError("Feature flag record must be an object")
        key = data.get("key")
        if not key:
            raise FlagValidationError("Feature flag record requires a key")

        raw_type = _pick(data, "valueType", "value_type", "type", default=FlagValueType.BOOLEAN.value)
        try:
            value_type = FlagValueType(raw_type)
        except ValueError as e:
            raise FlagValidationError(f"Flag '{key}' has unknown value type {raw_type!r}") from e

        default_value = _pick(data, "defaultValue", "default_value", default=_MISSING)
        if default_value is _MISSING:
            default_value = value_type.off_value()

        version = data.get("version", 1)
        if isinstance(version, bool) or not isinstance(version, int):
            raise FlagValidationError(f"Flag '{key}' version must be an integer")

        enabled = data.get("enabled", False)
        if not isinstance(enabled, bool):
            raise FlagValidationError(f"Flag '{key}' enabled must be a boolean")

        return cls(
            key=str(key),
            value_type=value_type,
            enabled=enabled,
            default_value=default_value,
            global_rollout_percentage=_pick(
                data, "globalRolloutPercentage", "global_rollout_percentage", "rollout_percentage", default=None
            ),
            targeting_rules=tuple(
                TargetingRule.from_dict(r, value_type)
                for r in _list_field(
                    _pick(data, "targetingRules", "targeting_rules", default=None), f"flag '{key}' targeting rules"
                )
            ),
            version=version,
            updated_at=_parse_timestamp(_pick(data, "updatedAt", "updated_at", default=None)),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record layout."""
        result = {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "valueType": self.value_type.value,
            "enabled": self.enabled,
            "defaultValue": self.default_value,
            "targetingRules": [r.to_dict() for r in self.targeting_rules],
            "version": self.version,
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.global_rollout_percentage is not None:
            result["globalRolloutPercentage"] = self.global_rollout_percentage
        return result
