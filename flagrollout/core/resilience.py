"""
Resilience patterns: retry logic for flag store access

Usage:
    @retry_store_operation(attempts=3)
    async def load_flags():
        ...
"""

import asyncio
import logging

import structlog
from tenacity import after_log, before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from flagrollout.core.exceptions import StoreUnavailableError

logger = structlog.get_logger(__name__)


def retry_store_operation(attempts: int = 3, min_wait: float = 0.5, max_wait: float = 5.0):
    """
    Retry decorator for flag store operations
    Retries on StoreUnavailableError and timeouts with exponential backoff
    """
    return retry(
        retry=retry_if_exception_type((StoreUnavailableError, asyncio.TimeoutError)),
        stop=stop_after_attempt(max(attempts, 1)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        after=after_log(logger, logging.DEBUG),
        reraise=True,
    )
