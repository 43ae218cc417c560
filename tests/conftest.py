"""
Pytest configuration and shared fixtures for the flag rollout test suite.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio

from flagrollout.services import bucketing
from flagrollout.services.feature_flags import FlagEvaluationService
from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import InMemoryFlagStore
from flagrollout.services.metrics_source import StaticMetricsSource
from flagrollout.services.notification_service import RecordingNotifier
from flagrollout.services.rollout_orchestrator import RolloutOrchestrator
from tests.factories import FakeMonotonicClock, FakeWallClock, new_checkout_flag


@pytest.fixture(autouse=True)
def reset_bucket_cache():
    bucketing.clear_bucket_cache()
    yield
    bucketing.clear_bucket_cache()


@pytest.fixture
def monotonic_clock():
    return FakeMonotonicClock()


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def flag_store():
    return InMemoryFlagStore([new_checkout_flag()])


@pytest.fixture
def flag_cache(flag_store, monotonic_clock):
    return FlagCache(
        flag_store,
        ttl_seconds=60,
        grace_seconds=300,
        refresh_interval_seconds=3600,
        store_timeout_seconds=1,
        retry_attempts=1,
        clock=monotonic_clock,
    )


@pytest.fixture
def flag_service(flag_cache, flag_store):
    return FlagEvaluationService(flag_cache, flag_store, retry_attempts=1)


@pytest.fixture
def metrics_source():
    return StaticMetricsSource({"error_rate": 0.001})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def orchestrator(flag_service, metrics_source, notifier, wall_clock):
    orchestrator = RolloutOrchestrator(
        flag_service,
        metrics_source,
        notifier,
        metrics_timeout_seconds=0.2,
        max_sleep_seconds=0.05,
        step_retry_seconds=0.05,
        clock=wall_clock,
    )
    yield orchestrator
    await orchestrator.shutdown()
