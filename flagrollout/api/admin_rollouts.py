"""Admin Rollouts API.

Operator endpoints for staged rollouts: start, advance, rollback,
emergency disable and resume automatic progression. Failures are
reported in the standard error envelope with the orchestrator's code.
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from flagrollout.core.api_envelope import ErrorCodes, error_response, success_response
from flagrollout.core.dependencies import get_orchestrator
from flagrollout.core.logging import get_logger
from flagrollout.models.rollout import CriteriaOperator, RolloutResult, RolloutStage, SuccessCriteria
from flagrollout.services.rollout_orchestrator import RolloutOrchestrator
from flagrollout.services.rollout_strategies import available_strategies, get_strategy

router = APIRouter(prefix="/api/admin/rollouts", tags=["admin", "rollouts"])
logger = get_logger(__name__)


# Request Models


class SuccessCriteriaModel(BaseModel):
    metric: str = Field(..., description="Metric name queried from the metrics source")
    threshold: float
    operator: CriteriaOperator = CriteriaOperator.LESS_THAN


class RolloutStageModel(BaseModel):
    """One rollout stage."""

    percentage: float = Field(..., description="Global rollout percentage for this stage (0-100)")
    duration_hours: Optional[float] = Field(default=None, description="Minimum time before auto-advance")
    success_criteria: Optional[SuccessCriteriaModel] = None
    name: str = ""

    def to_stage(self) -> RolloutStage:
        criteria = None
        if self.success_criteria is not None:
            criteria = SuccessCriteria(
                metric=self.success_criteria.metric,
                threshold=self.success_criteria.threshold,
                operator=self.success_criteria.operator,
            )
        return RolloutStage(
            percentage=self.percentage,
            duration_hours=self.duration_hours,
            success_criteria=criteria,
            name=self.name,
        )


class StartRolloutRequest(BaseModel):
    """Start a rollout from explicit stages or a named preset."""

    stages: Optional[List[RolloutStageModel]] = None
    preset: Optional[str] = Field(default=None, description="Preset or common strategy name")
    auto_advance: bool = False
    name: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


class EmergencyDisableRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the flag is being killed")


def _result_response(result: RolloutResult) -> dict:
    if result.success:
        return success_response(data=result.to_dict())
    return error_response(
        code=result.error_code or ErrorCodes.INTERNAL_ERROR,
        message=result.message,
        details=result.to_dict(),
    )


# API Endpoints


@router.get("", response_model=dict)
async def list_rollouts(orchestrator: RolloutOrchestrator = Depends(get_orchestrator)):
    """List every rollout the orchestrator knows about."""
    rollouts = [rollout.to_dict() for rollout in orchestrator.list_rollouts()]
    return success_response(data={"rollouts": rollouts, "total": len(rollouts)})


@router.get("/strategies", response_model=dict)
async def list_strategies():
    """List preset and common strategy names accepted by ``start``."""
    strategies = {name: get_strategy(name).to_dict() for name in available_strategies()}
    return success_response(data={"strategies": strategies})


@router.get("/{flag_key}", response_model=dict)
async def get_rollout(flag_key: str, orchestrator: RolloutOrchestrator = Depends(get_orchestrator)):
    rollout = orchestrator.get_rollout(flag_key)
    if rollout is None:
        return error_response(
            code=ErrorCodes.ROLLOUT_NOT_FOUND,
            message=f"No rollout registered for flag '{flag_key}'",
        )
    return success_response(data=rollout.to_dict())


@router.post("/{flag_key}/start", response_model=dict)
async def start_rollout(
    flag_key: str,
    payload: StartRolloutRequest,
    orchestrator: RolloutOrchestrator = Depends(get_orchestrator),
):
    """Start a rollout.

    Exactly one of ``stages`` or ``preset`` must be supplied.
    """
    if (payload.stages is None) == (payload.preset is None):
        return error_response(
            code=ErrorCodes.VALIDATION_ERROR,
            message="Provide either 'stages' or 'preset'",
            field="stages",
        )

    if payload.preset is not None:
        try:
            stages = get_strategy(payload.preset)
        except KeyError:
            return error_response(
                code=ErrorCodes.VALIDATION_ERROR,
                message=f"Unknown rollout preset '{payload.preset}'",
                details={"available": available_strategies()},
                field="preset",
            )
    else:
        stages = [stage.to_stage() for stage in payload.stages]

    result = await orchestrator.start_rollout(flag_key, stages, auto_advance=payload.auto_advance, name=payload.name)
    logger.info(f"Rollout start requested for {flag_key}: success={result.success}")
    return _result_response(result)


@router.post("/{flag_key}/advance", response_model=dict)
async def advance_rollout(flag_key: str, orchestrator: RolloutOrchestrator = Depends(get_orchestrator)):
    return _result_response(await orchestrator.advance_stage(flag_key))


@router.post("/{flag_key}/rollback", response_model=dict)
async def rollback_rollout(
    flag_key: str,
    payload: Optional[RollbackRequest] = None,
    orchestrator: RolloutOrchestrator = Depends(get_orchestrator),
):
    reason = payload.reason if payload else None
    return _result_response(await orchestrator.rollback(flag_key, reason=reason))


@router.post("/{flag_key}/emergency-disable", response_model=dict)
async def emergency_disable(
    flag_key: str,
    payload: EmergencyDisableRequest,
    orchestrator: RolloutOrchestrator = Depends(get_orchestrator),
):
    """Kill switch: disable the flag regardless of rollout state."""
    result = await orchestrator.emergency_disable(flag_key, reason=payload.reason)
    return _result_response(result)


@router.post("/{flag_key}/resume", response_model=dict)
async def resume_rollout(flag_key: str, orchestrator: RolloutOrchestrator = Depends(get_orchestrator)):
    return _result_response(await orchestrator.resume_auto_advance(flag_key))
