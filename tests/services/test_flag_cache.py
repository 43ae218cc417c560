"""Tests for the Flag Cache: TTL and grace handling, store outages,
version monotonicity, refresh collapsing and per-key invalidation.
"""

import asyncio
import dataclasses
from unittest.mock import patch

import pytest

from flagrollout.services.flag_cache import FlagCache
from flagrollout.services.flag_store import InMemoryFlagStore
from tests.factories import make_flag


class TestRefresh:
    @pytest.mark.asyncio
    async def test_get_before_first_refresh_returns_none(self, flag_cache):
        assert flag_cache.get("new-checkout") is None

    @pytest.mark.asyncio
    async def test_refresh_loads_snapshot(self, flag_cache):
        assert await flag_cache.refresh() is True
        flag = flag_cache.get("new-checkout")
        assert flag is not None
        assert flag.key == "new-checkout"
        assert flag_cache.stats()["size"] == 1

    @pytest.mark.asyncio
    async def test_get_never_touches_store(self, flag_cache, flag_store):
        await flag_cache.refresh()
        calls = dict(flag_store.calls)
        for _ in range(10):
            flag_cache.get("new-checkout")
            flag_cache.get("unknown")
        assert flag_store.calls == calls

    @pytest.mark.asyncio
    async def test_deleted_flags_disappear_on_refresh(self, flag_cache, flag_store):
        await flag_cache.refresh()
        await flag_store.delete("new-checkout")
        await flag_cache.refresh()
        assert flag_cache.get("new-checkout") is None

    @pytest.mark.asyncio
    async def test_invalid_records_are_skipped(self, monotonic_clock):
        class DictStore(InMemoryFlagStore):
            async def list(self):
                return [
                    {"key": "good", "valueType": "boolean", "enabled": True, "defaultValue": True, "version": 1},
                    {"key": "bad", "valueType": "boolean", "enabled": True, "defaultValue": "yes", "version": 1},
                ]

        cache = FlagCache(DictStore(), retry_attempts=1, clock=monotonic_clock)
        assert await cache.refresh() is True
        assert cache.get("good") is not None
        assert cache.get("bad") is None
        assert cache.stats()["invalid_records"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "malformed",
        [
            {"targetingRules": 5},
            {"targetingRules": [{"id": "r", "value": True, "conditions": 5}]},
            {"updatedAt": 1e20},
            {"enabled": "false"},
        ],
    )
    async def test_malformed_records_do_not_break_refresh(self, monotonic_clock, malformed):
        good = {"key": "good", "valueType": "boolean", "enabled": True, "defaultValue": True, "version": 1}
        broken = {"key": "broken", "valueType": "boolean", "enabled": True, "defaultValue": False, **malformed}

        class DictStore(InMemoryFlagStore):
            async def list(self):
                return [good, broken]

        cache = FlagCache(DictStore(), retry_attempts=1, clock=monotonic_clock)
        assert await cache.refresh() is True
        assert cache.get("good") is not None
        assert cache.get("broken") is None
        assert cache.stats()["invalid_records"] == 1

    @pytest.mark.asyncio
    async def test_invalid_record_keeps_last_good_entry(self, monotonic_clock):
        records = [{"key": "theme", "valueType": "string", "enabled": True, "defaultValue": "dark", "version": 3}]

        class DictStore(InMemoryFlagStore):
            async def list(self):
                return list(records)

        cache = FlagCache(DictStore(), retry_attempts=1, clock=monotonic_clock)
        await cache.refresh()
        records[0] = {**records[0], "version": 4, "targetingRules": 5}

        assert await cache.refresh() is True
        assert cache.get("theme").version == 3
        assert cache.get("theme").default_value == "dark"


class TestStalenessAndOutages:
    @pytest.mark.asyncio
    async def test_store_outage_keeps_last_good_snapshot(self, flag_cache, flag_store, monotonic_clock):
        await flag_cache.refresh()
        flag_store.available = False

        monotonic_clock.advance(120)  # past TTL, within grace
        assert await flag_cache.refresh() is False

        assert flag_cache.get("new-checkout") is not None
        stats = flag_cache.stats()
        assert stats["stale"] is True
        assert stats["expired"] is False
        assert stats["refresh_failures"] == 1
        assert "unavailable" in stats["last_error"]

    @pytest.mark.asyncio
    async def test_snapshot_expires_after_ttl_plus_grace(self, flag_cache, flag_store, monotonic_clock):
        await flag_cache.refresh()
        flag_store.available = False

        monotonic_clock.advance(360)  # exactly ttl + grace: still served
        assert flag_cache.get("new-checkout") is not None

        monotonic_clock.advance(1)
        assert flag_cache.get("new-checkout") is None
        assert flag_cache.is_expired is True

    @pytest.mark.asyncio
    async def test_recovery_after_outage(self, flag_cache, flag_store, monotonic_clock):
        await flag_cache.refresh()
        flag_store.available = False
        monotonic_clock.advance(1000)
        await flag_cache.refresh()
        assert flag_cache.get("new-checkout") is None

        flag_store.available = True
        assert await flag_cache.refresh() is True
        assert flag_cache.get("new-checkout") is not None
        assert flag_cache.stats()["last_error"] is None

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, monotonic_clock):
        store = InMemoryFlagStore([make_flag("slow")], delay_seconds=0.5)
        cache = FlagCache(store, store_timeout_seconds=0.05, retry_attempts=1, clock=monotonic_clock)
        assert await cache.refresh() is False
        assert cache.get("slow") is None

    @pytest.mark.asyncio
    async def test_retries_transient_store_failures(self, monotonic_clock):
        store = InMemoryFlagStore([make_flag("flaky")])
        original_list = store.list
        failures = {"left": 2}

        async def flaky_list():
            if failures["left"]:
                failures["left"] -= 1
                store.available = False
                try:
                    return await original_list()
                finally:
                    store.available = True
            return await original_list()

        store.list = flaky_list
        cache = FlagCache(store, retry_attempts=3, retry_min_wait=0.01, clock=monotonic_clock)
        assert await cache.refresh() is True
        assert cache.get("flaky") is not None


class TestVersionMonotonicity:
    @pytest.mark.asyncio
    async def test_lower_version_is_ignored(self, flag_cache, flag_store):
        current = make_flag("versioned", version=5)
        flag_store.seed(current)
        await flag_cache.refresh()

        flag_store.seed(dataclasses.replace(current, enabled=False, version=4))
        await flag_cache.refresh()

        cached = flag_cache.get("versioned")
        assert cached.version == 5
        assert cached.enabled is True
        assert flag_cache.stats()["stale_versions_ignored"] == 1

    @pytest.mark.asyncio
    async def test_higher_version_replaces(self, flag_cache, flag_store):
        current = make_flag("versioned", version=5)
        flag_store.seed(current)
        await flag_cache.refresh()

        flag_store.seed(dataclasses.replace(current, enabled=False, version=6))
        await flag_cache.invalidate("versioned")

        assert flag_cache.get("versioned").enabled is False


class TestInvalidate:
    @pytest.mark.asyncio
    async def test_invalidate_reloads_single_key(self, flag_cache, flag_store):
        await flag_cache.refresh()
        flag_store.seed(make_flag("other"))
        updated = dataclasses.replace(flag_store.peek("new-checkout"), global_rollout_percentage=25, version=2)
        flag_store.seed(updated)

        assert await flag_cache.invalidate("new-checkout") is True

        assert flag_cache.get("new-checkout").global_rollout_percentage == 25
        # Keys that were not invalidated wait for the next full refresh
        assert flag_cache.get("other") is None

    @pytest.mark.asyncio
    async def test_invalidate_drops_deleted_key(self, flag_cache, flag_store):
        await flag_cache.refresh()
        await flag_store.delete("new-checkout")
        await flag_cache.invalidate("new-checkout")
        assert flag_cache.get("new-checkout") is None

    @pytest.mark.asyncio
    async def test_invalidate_does_not_mutate_previous_snapshot(self, flag_cache, flag_store):
        await flag_cache.refresh()
        before = flag_cache.all()
        flag_store.seed(make_flag("fresh"))
        await flag_cache.invalidate("fresh")
        assert "fresh" not in before
        assert "fresh" in flag_cache.all()

    @pytest.mark.asyncio
    async def test_invalidate_failure_keeps_entry(self, flag_cache, flag_store):
        await flag_cache.refresh()
        flag_store.available = False
        assert await flag_cache.invalidate("new-checkout") is False
        assert flag_cache.get("new-checkout") is not None


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_store_call(self, monotonic_clock):
        store = InMemoryFlagStore([make_flag("a"), make_flag("b")], delay_seconds=0.05)
        cache = FlagCache(store, retry_attempts=1, clock=monotonic_clock)

        results = await asyncio.gather(*(cache.refresh() for _ in range(10)))

        assert results == [True] * 10
        assert store.calls["list"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_is_read_only(self, flag_cache):
        await flag_cache.refresh()
        with pytest.raises(TypeError):
            flag_cache.all()["injected"] = make_flag("injected")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_warms_and_stop_cancels(self, flag_store, monotonic_clock):
        cache = FlagCache(flag_store, refresh_interval_seconds=0.01, retry_attempts=1, clock=monotonic_clock)
        await cache.start()
        assert cache.get("new-checkout") is not None
        assert cache.stats()["running"] is True

        await asyncio.sleep(0.05)
        assert flag_store.calls["list"] >= 2

        await cache.stop()
        assert cache.stats()["running"] is False
        calls = flag_store.calls["list"]
        await asyncio.sleep(0.03)
        assert flag_store.calls["list"] == calls

    @pytest.mark.asyncio
    async def test_start_with_unavailable_store_still_runs(self, flag_store, monotonic_clock):
        flag_store.available = False
        cache = FlagCache(flag_store, refresh_interval_seconds=10, retry_attempts=1, clock=monotonic_clock)
        await cache.start()
        assert cache.get("new-checkout") is None
        assert cache.stats()["running"] is True
        await cache.stop()

    @pytest.mark.asyncio
    async def test_refresh_loop_survives_unexpected_errors(self, flag_store, monotonic_clock):
        cache = FlagCache(flag_store, refresh_interval_seconds=0.01, retry_attempts=1, clock=monotonic_clock)

        async def explode():
            raise RuntimeError("boom")

        with patch.object(cache, "_refresh_once", side_effect=explode):
            await cache.start()
            await asyncio.sleep(0.05)
            stats = cache.stats()

        assert stats["running"] is True
        assert stats["refresh_failures"] >= 2
        assert stats["last_error"] == "boom"
        await cache.stop()
