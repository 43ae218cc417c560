"""
FastAPI dependencies resolving the engine components stored on app.state
"""

from fastapi import Request

from flagrollout.services.feature_flags import FlagEvaluationService
from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.rollout_orchestrator import RolloutOrchestrator


def get_flag_service(request: Request) -> FlagEvaluationService:
    return request.app.state.flag_service


def get_flag_cache(request: Request) -> FlagCache:
    return request.app.state.flag_cache


def get_orchestrator(request: Request) -> RolloutOrchestrator:
    return request.app.state.orchestrator
