"""Fixtures for HTTP API tests."""

import pytest
from fastapi.testclient import TestClient

from flagrollout.main import create_app
from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import InMemoryFlagStore
from flagrollout.services.metrics_source import StaticMetricsSource
from flagrollout.services.notification_service import RecordingNotifier
from tests.factories import make_flag, new_checkout_flag


@pytest.fixture
def api_store():
    return InMemoryFlagStore([new_checkout_flag(), make_flag("kill-me")])


@pytest.fixture
def api_notifier():
    return RecordingNotifier()


@pytest.fixture
def client(api_store, api_notifier):
    cache = FlagCache(api_store, refresh_interval_seconds=3600, store_timeout_seconds=1, retry_attempts=1)
    app = create_app(
        store=api_store,
        metrics_source=StaticMetricsSource({"error_rate": 0.001}),
        notifier=api_notifier,
        flag_cache=cache,
    )
    with TestClient(app) as test_client:
        yield test_client
