"""Progressive rollout models.

A rollout walks a flag's global rollout percentage through an ordered
list of stages. The flag record stays the single source of truth for
evaluation; these types only hold the orchestrator's bookkeeping.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from flagrollout.core.config import settings
from flagrollout.core.exceptions import InvalidRolloutStagesError


class RolloutState(str, Enum):
    """Rollout lifecycle states."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ROLLED_BACK = "rolled_back"
    EMERGENCY_DISABLED = "emergency_disabled"


class CriteriaOperator(str, Enum):
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EQUALS = "equals"


@dataclass(frozen=True)
class SuccessCriteria:
    """Health gate checked before leaving a stage.

    Example: ``SuccessCriteria("error_rate", 0.01, CriteriaOperator.LESS_THAN)``
    passes while the error rate stays below 1%.
    """

    metric: str
    threshold: float
    operator: CriteriaOperator = CriteriaOperator.LESS_THAN

    def is_met(self, observed: float) -> bool:
        if self.operator is CriteriaOperator.GREATER_THAN:
            return observed > self.threshold
        if self.operator is CriteriaOperator.LESS_THAN:
            return observed < self.threshold
        return observed == self.threshold

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuccessCriteria":
        try:
            operator = CriteriaOperator(data.get("operator", CriteriaOperator.LESS_THAN.value))
        except ValueError as e:
            raise InvalidRolloutStagesError(f"Unknown success criteria operator: {data.get('operator')!r}") from e
        metric = data.get("metric")
        threshold = data.get("threshold")
        if not metric or isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise InvalidRolloutStagesError("Success criteria require a metric name and a numeric threshold")
        return cls(metric=str(metric), threshold=float(threshold), operator=operator)

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "threshold": self.threshold, "operator": self.operator.value}


@dataclass(frozen=True)
class RolloutStage:
    """One step of a rollout."""

    percentage: float
    duration_hours: Optional[float] = None
    success_criteria: Optional[SuccessCriteria] = None
    name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RolloutStage":
        criteria = data.get("success_criteria") or data.get("successCriteria")
        return cls(
            percentage=data.get("percentage"),
            duration_hours=data.get("duration_hours", data.get("durationHours")),
            success_criteria=SuccessCriteria.from_dict(criteria) if criteria else None,
            name=str(data.get("name") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": self.name, "percentage": self.percentage}
        if self.duration_hours is not None:
            result["duration_hours"] = self.duration_hours
        if self.success_criteria is not None:
            result["success_criteria"] = self.success_criteria.to_dict()
        return result


def validate_stages(stages: List[RolloutStage]) -> None:
    """Reject empty, out-of-range, decreasing or non-positive-duration stage lists."""
    if not stages:
        raise InvalidRolloutStagesError("A rollout needs at least one stage")

    previous = None
    for index, stage in enumerate(stages):
        pct = stage.percentage
        if isinstance(pct, bool) or not isinstance(pct, (int, float)) or not 0 <= pct <= 100:
            raise InvalidRolloutStagesError(
                f"Stage {index} percentage must be between 0 and 100, got {pct!r}",
                details={"stage_index": index},
            )
        if previous is not None and pct < previous:
            raise InvalidRolloutStagesError(
                f"Stage percentages must be non-decreasing ({previous} -> {pct} at stage {index})",
                details={"stage_index": index},
            )
        if stage.duration_hours is not None and (
            isinstance(stage.duration_hours, bool)
            or not isinstance(stage.duration_hours, (int, float))
            or stage.duration_hours <= 0
        ):
            raise InvalidRolloutStagesError(
                f"Stage {index} duration must be positive, got {stage.duration_hours!r}",
                details={"stage_index": index},
            )
        previous = pct


@dataclass
class RolloutStrategy:
    """Named, ordered stage list with a cursor.

    ``current_stage_index`` is -1 once a rollout was rolled back below its
    first stage.
    """

    stages: List[RolloutStage]
    name: str = "Custom Rollout"
    current_stage_index: int = 0

    @property
    def current_stage(self) -> Optional[RolloutStage]:
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    @property
    def is_last_stage(self) -> bool:
        return self.current_stage_index == len(self.stages) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "stages": [s.to_dict() for s in self.stages],
            "current_stage_index": self.current_stage_index,
        }


@dataclass
class Rollout:
    """Orchestrator bookkeeping for one flag."""

    flag_key: str
    strategy: RolloutStrategy
    state: RolloutState = RolloutState.NOT_STARTED
    auto_advance: bool = False
    last_written_percentage: Optional[float] = None
    stage_started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_reason: Optional[str] = None
    history: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=settings.ROLLOUT_HISTORY_MAX_ENTRIES))

    @property
    def stage_index(self) -> int:
        return self.strategy.current_stage_index

    @property
    def is_terminal(self) -> bool:
        if self.state in (RolloutState.COMPLETE, RolloutState.EMERGENCY_DISABLED):
            return True
        return self.state == RolloutState.ROLLED_BACK and self.stage_index < 0

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def record(self, action: str, percentage: Optional[float], message: str = "", at: Optional[datetime] = None):
        at = at or datetime.now(timezone.utc)
        self.updated_at = at
        self.history.append(
            {
                "action": action,
                "state": self.state.value,
                "stage_index": self.stage_index,
                "percentage": percentage,
                "message": message,
                "at": at.isoformat(),
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_key": self.flag_key,
            "state": self.state.value,
            "auto_advance": self.auto_advance,
            "strategy": self.strategy.to_dict(),
            "stage_index": self.stage_index,
            "percentage": self.last_written_percentage,
            "stage_started_at": self.stage_started_at.isoformat(),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_reason": self.last_reason,
            "history": list(self.history),
        }


@dataclass
class RolloutResult:
    """Outcome of an operator-facing rollout operation."""

    success: bool
    action: str
    flag_key: str
    state: Optional[RolloutState] = None
    stage_index: Optional[int] = None
    percentage: Optional[float] = None
    message: str = ""
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "flag_key": self.flag_key,
            "state": self.state.value if self.state else None,
            "stage_index": self.stage_index,
            "percentage": self.percentage,
            "message": self.message,
            "error_code": self.error_code,
        }
