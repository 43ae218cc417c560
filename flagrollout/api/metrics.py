"""Prometheus Metrics Endpoint.

Exposes evaluation, cache and rollout metrics for scraping.
"""

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from flagrollout.core.dependencies import get_flag_cache
from flagrollout.core.metrics import flag_cache_entries
from flagrollout.services.flag_cache import FlagCache

router = APIRouter(prefix="/metrics", tags=["observability"])


@router.get("", response_class=Response)
async def prometheus_metrics(cache: FlagCache = Depends(get_flag_cache)):
    """
    Expose Prometheus metrics in text format.

    No authentication required (should be secured at infrastructure level).
    """
    flag_cache_entries.set(cache.stats()["size"])
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
