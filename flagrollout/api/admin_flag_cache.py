"""Admin Flag Cache API.

Provides endpoints for operators to inspect and refresh the in-process
flag cache.
"""

from fastapi import APIRouter, Depends

from flagrollout.core.api_envelope import ErrorCodes, error_response, success_response
from flagrollout.core.dependencies import get_flag_cache
from flagrollout.core.logging import get_logger
from flagrollout.services import bucketing
from flagrollout.services.flag_cache import FlagCache

router = APIRouter(prefix="/api/admin/flag-cache", tags=["admin", "cache"])
logger = get_logger(__name__)


@router.get("/stats", response_model=dict)
async def get_flag_cache_stats(cache: FlagCache = Depends(get_flag_cache)):
    """
    Get flag cache statistics for monitoring.

    Returns:
        Snapshot size, age, staleness and refresh counters
    """
    return success_response(data={**cache.stats(), "bucket_cache": bucketing.bucket_cache_info()})


@router.post("/refresh", response_model=dict)
async def refresh_flag_cache(cache: FlagCache = Depends(get_flag_cache)):
    """Force a full reload from the flag store."""
    refreshed = await cache.refresh()
    if not refreshed:
        logger.warning("manual_flag_cache_refresh_failed")
        return error_response(
            code=ErrorCodes.STORE_UNAVAILABLE,
            message="Flag store unavailable; serving the last good snapshot",
            details=cache.stats(),
        )
    logger.info("manual_flag_cache_refresh", size=cache.stats()["size"])
    return success_response(data=cache.stats())
