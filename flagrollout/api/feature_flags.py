"""Feature Flags API - flag evaluation for clients.

Evaluation never fails: unknown flags answer with the supplied fallback
and reason ``flag_not_found``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from flagrollout.core.api_envelope import success_response
from flagrollout.core.dependencies import get_flag_service
from flagrollout.core.logging import get_logger
from flagrollout.models.evaluation import EvaluationContext
from flagrollout.services import bucketing
from flagrollout.services.feature_flags import FlagEvaluationService

router = APIRouter(prefix="/api/flags", tags=["feature-flags"])
logger = get_logger(__name__)


class EvaluateRequest(BaseModel):
    """Request model for evaluating a flag."""

    subject_id: Optional[str] = Field(default=None, description="Stable subject identifier used for bucketing")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Targeting attributes (may be nested)")
    fallback: Optional[Any] = Field(default=None, description="Value returned when the flag is unknown")


@router.post("/{flag_key}/evaluate", response_model=dict)
async def evaluate_flag(
    flag_key: str,
    payload: EvaluateRequest,
    service: FlagEvaluationService = Depends(get_flag_service),
):
    """Evaluate a flag for a subject.

    Returns the value together with the reason and the matched rule.
    """
    context = EvaluationContext(subject_id=payload.subject_id, attributes=payload.attributes)
    result = service.evaluate_detailed(flag_key, context, fallback=payload.fallback)
    return success_response(data=result.to_dict())


@router.get("/{flag_key}/rollout-check", response_model=dict)
async def rollout_check(
    flag_key: str,
    subject_id: str = Query(..., description="Subject identifier"),
    percentage: float = Query(..., ge=0, le=100, description="Rollout percentage to test against"),
    service: FlagEvaluationService = Depends(get_flag_service),
):
    """Debug which bucket a subject lands in for a flag's global rollout."""
    in_rollout = service.is_in_rollout(subject_id, flag_key, percentage)
    return success_response(
        data={
            "flag_key": flag_key,
            "subject_id": subject_id,
            "percentage": percentage,
            "bucket": bucketing.bucket(subject_id, flag_key),
            "in_rollout": in_rollout,
        }
    )
