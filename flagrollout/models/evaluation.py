"""Evaluation context and result types."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

# Attribute paths that resolve to the subject id when the attribute mapping
# does not carry them explicitly.
SUBJECT_ID_ATTRIBUTES = ("subject_id", "user_id")


class EvaluationReason(str, Enum):
    """Why an evaluation produced its value."""

    DISABLED = "disabled"
    RULE_MATCH = "rule_match"
    ROLLOUT_INCLUDED = "rollout_included"
    ROLLOUT_EXCLUDED = "rollout_excluded"
    DEFAULT = "default"
    FLAG_NOT_FOUND = "flag_not_found"
    ERROR = "error"


@dataclass
class EvaluationContext:
    """Per-request evaluation context.

    Attributes:
        subject_id: Stable identifier of the subject (user, org, device) used for bucketing
        attributes: Arbitrary, possibly nested attribute mapping
    """

    subject_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def get_attribute(self, path: str) -> Any:
        """Resolve a dotted attribute path.

        An exact key match wins over nested traversal, so attributes whose
        names contain dots stay reachable. Returns None when any segment
        is missing.
        """
        if path in self.attributes:
            return self.attributes[path]

        if path in SUBJECT_ID_ATTRIBUTES:
            return self.subject_id

        current: Any = self.attributes
        for segment in path.split("."):
            if isinstance(current, Mapping):
                current = current.get(segment)
            else:
                return None
            if current is None:
                return None
        return current

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationContext":
        """Build a context from a flat mapping.

        ``subject_id`` (or ``subjectId`` / ``user_id``) becomes the subject;
        everything else is kept as attributes.
        """
        attributes = dict(data or {})
        subject_id = None
        for key in ("subject_id", "subjectId", "user_id"):
            if key in attributes:
                subject_id = attributes.pop(key)
                break
        nested = attributes.pop("attributes", None)
        if isinstance(nested, Mapping):
            attributes.update(nested)
        return cls(subject_id=None if subject_id is None else str(subject_id), attributes=attributes)


@dataclass
class EvaluationResult:
    """Result of evaluating a flag for a context."""

    flag_key: str
    value: Any
    reason: EvaluationReason
    matched_rule_id: Optional[str] = None
    matched_rule_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "value": self.value,
            "reason": self.reason.value,
            "matched_rule_id": self.matched_rule_id,
            "matched_rule_name": self.matched_rule_name,
        }
