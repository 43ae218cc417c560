"""Flag Cache.

In-process mirror of the flag store. Evaluation reads only from here, so
the read path never performs I/O.

- The cache holds one immutable snapshot (flags + load time). Readers
  dereference it once per call and see either the old or the new snapshot.
- ``refresh()`` reloads everything from the store. Concurrent callers share
  one in-flight refresh. A failing store leaves the last good snapshot in
  place; once the snapshot is older than ``ttl + grace`` every flag reads as
  unknown.
- ``invalidate(key)`` reloads a single key after a write.
- ``start()`` / ``stop()`` own the periodic refresh task.

Usage:
    cache = FlagCache(store)
    await cache.start()
    flag = cache.get("new-checkout")
    ...
    await cache.stop()
"""

from __future__ import annotations

import asyncio
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional

from flagrollout.core.config import settings
from flagrollout.core.exceptions import FlagValidationError
from flagrollout.core.logging import get_logger
from flagrollout.core.metrics import flag_cache_entries, flag_cache_refresh_duration_seconds, flag_cache_refresh_total
from flagrollout.core.resilience import retry_store_operation
from flagrollout.models.feature_flag import FeatureFlag
from flagrollout.services.flag_store import FlagStore

logger = get_logger(__name__)


class _Snapshot(NamedTuple):
    flags: Mapping[str, FeatureFlag]
    loaded_at: Optional[float]


_EMPTY_SNAPSHOT = _Snapshot(MappingProxyType({}), None)


class FlagCache:
    """TTL-bounded, snapshot-swapping flag cache."""

    def __init__(
        self,
        store: FlagStore,
        ttl_seconds: Optional[float] = None,
        grace_seconds: Optional[float] = None,
        refresh_interval_seconds: Optional[float] = None,
        store_timeout_seconds: Optional[float] = None,
        retry_attempts: Optional[int] = None,
        retry_min_wait: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self.ttl_seconds = settings.FLAG_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.grace_seconds = settings.FLAG_CACHE_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.refresh_interval_seconds = (
            settings.FLAG_CACHE_REFRESH_INTERVAL_SECONDS if refresh_interval_seconds is None else refresh_interval_seconds
        )
        self.store_timeout_seconds = (
            settings.FLAG_STORE_TIMEOUT_SECONDS if store_timeout_seconds is None else store_timeout_seconds
        )
        self._clock = clock

        attempts = settings.FLAG_STORE_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        retrying = retry_store_operation(attempts=attempts, min_wait=retry_min_wait)
        self._list_with_retry = retrying(self._list_once)
        self._get_with_retry = retrying(self._get_once)

        self._snapshot: _Snapshot = _EMPTY_SNAPSHOT
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_error: Optional[str] = None
        self._stats = {
            "refreshes": 0,
            "refresh_failures": 0,
            "invalidations": 0,
            "invalid_records": 0,
            "stale_versions_ignored": 0,
        }

    # ------------------------------------------------------------------
    # Read path (synchronous, no I/O)
    # ------------------------------------------------------------------

    def _age(self, snapshot: _Snapshot) -> Optional[float]:
        if snapshot.loaded_at is None:
            return None
        return max(self._clock() - snapshot.loaded_at, 0.0)

    def _is_expired(self, snapshot: _Snapshot) -> bool:
        age = self._age(snapshot)
        return age is None or age > self.ttl_seconds + self.grace_seconds

    def get(self, key: str) -> Optional[FeatureFlag]:
        """Return the cached flag, or None if unknown or the snapshot expired."""
        snapshot = self._snapshot
        if self._is_expired(snapshot):
            return None
        return snapshot.flags.get(key)

    def all(self) -> Mapping[str, FeatureFlag]:
        """Current snapshot as a read-only mapping (empty once expired)."""
        snapshot = self._snapshot
        if self._is_expired(snapshot):
            return MappingProxyType({})
        return snapshot.flags

    @property
    def is_stale(self) -> bool:
        age = self._age(self._snapshot)
        return age is None or age > self.ttl_seconds

    @property
    def is_expired(self) -> bool:
        return self._is_expired(self._snapshot)

    def stats(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        age = self._age(snapshot)
        return {
            "size": len(snapshot.flags),
            "loaded": snapshot.loaded_at is not None,
            "age_seconds": round(age, 3) if age is not None else None,
            "stale": self.is_stale,
            "expired": self._is_expired(snapshot),
            "ttl_seconds": self.ttl_seconds,
            "grace_seconds": self.grace_seconds,
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "running": self._task is not None and not self._task.done(),
            "last_error": self._last_error,
            **self._stats,
        }

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _list_once(self) -> List[Any]:
        return await asyncio.wait_for(self._store.list(), timeout=self.store_timeout_seconds)

    async def _get_once(self, key: str) -> Any:
        return await asyncio.wait_for(self._store.get(key), timeout=self.store_timeout_seconds)

    def _coerce(self, record: Any) -> Optional[FeatureFlag]:
        """Validate a store record; invalid ones are skipped."""
        if isinstance(record, FeatureFlag):
            return record
        try:
            return FeatureFlag.from_dict(record)
        except FlagValidationError as e:
            self._stats["invalid_records"] += 1
            logger.error("invalid_flag_record_skipped", error=e.message, details=e.details)
            return None

    def _accept(self, current: Optional[FeatureFlag], incoming: FeatureFlag) -> bool:
        if current is not None and incoming.version < current.version:
            self._stats["stale_versions_ignored"] += 1
            logger.warning(
                "flag_version_regression_ignored",
                flag_key=incoming.key,
                cached_version=current.version,
                incoming_version=incoming.version,
            )
            return False
        return True

    def _swap(self, flags: Dict[str, FeatureFlag], loaded_at: Optional[float]) -> None:
        self._snapshot = _Snapshot(MappingProxyType(flags), loaded_at)
        flag_cache_entries.set(len(flags))

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Reload every flag from the store.

        Returns:
            True if a new snapshot was installed, False if the store failed
        """
        inflight = self._inflight
        if inflight is None or inflight.done():
            inflight = asyncio.ensure_future(self._refresh_once())
            self._inflight = inflight
        return await asyncio.shield(inflight)

    async def _refresh_once(self) -> bool:
        async with self._lock:
            started = time.perf_counter()
            try:
                records = await self._list_with_retry()
            except Exception as e:
                self._stats["refresh_failures"] += 1
                self._last_error = str(e)
                flag_cache_refresh_total.labels(outcome="failure").inc()
                age = self._age(self._snapshot)
                logger.error(
                    "flag_cache_refresh_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    snapshot_age_seconds=age,
                    serving_last_good=not self._is_expired(self._snapshot),
                )
                return False

            current = self._snapshot.flags
            flags: Dict[str, FeatureFlag] = {}
            for record in records:
                flag = self._coerce(record)
                if flag is None:
                    key = record.get("key") if isinstance(record, dict) else None
                    if isinstance(key, str) and key in current:
                        flags[key] = current[key]
                        logger.warning("flag_cache_kept_last_good_entry", flag_key=key)
                    continue
                existing = current.get(flag.key)
                flags[flag.key] = flag if self._accept(existing, flag) else existing

            self._swap(flags, self._clock())
            self._stats["refreshes"] += 1
            self._last_error = None
            flag_cache_refresh_total.labels(outcome="success").inc()
            flag_cache_refresh_duration_seconds.observe(time.perf_counter() - started)
            logger.debug("flag_cache_refreshed", count=len(flags))
            return True

    async def invalidate(self, key: str) -> bool:
        """Eagerly reload one key from the store.

        The rest of the snapshot (and its load time) is left untouched.
        Returns False if the store could not be read.
        """
        async with self._lock:
            try:
                record = await self._get_with_retry(key)
            except Exception as e:
                self._last_error = str(e)
                logger.warning("flag_cache_invalidate_failed", flag_key=key, error=str(e))
                return False

            snapshot = self._snapshot
            flags = dict(snapshot.flags)
            if record is None:
                flags.pop(key, None)
            else:
                flag = self._coerce(record)
                if flag is None:
                    return False
                if self._accept(flags.get(key), flag):
                    flags[key] = flag

            self._swap(flags, snapshot.loaded_at)
            self._stats["invalidations"] += 1
            logger.debug("flag_cache_invalidated", flag_key=key)
            return True

    def load(self, flags: Iterable[FeatureFlag]) -> None:
        """Install a snapshot directly (bootstrapping from a local file, tests)."""
        self._swap({flag.key: flag for flag in flags}, self._clock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Warm the cache and start the periodic refresh task."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        await self._refresh_logged()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Flag cache refresh loop started (interval={self.refresh_interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the refresh task and wait for it to finish."""
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Cancelled flag cache refresh task")
            self._task = None

    async def _refresh_logged(self) -> bool:
        """Refresh without raising; the periodic loop and startup rely on it."""
        try:
            return await self.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["refresh_failures"] += 1
            self._last_error = str(e)
            logger.exception("flag_cache_refresh_error", error=str(e))
            return False

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.refresh_interval_seconds)
            except asyncio.TimeoutError:
                await self._refresh_logged()
