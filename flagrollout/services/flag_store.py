"""Flag store interface and an in-memory reference implementation.

The authoritative store (database, config service, ...) lives outside this
package. Anything exposing the ``FlagStore`` coroutine methods can back the
cache and the write path.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Protocol, runtime_checkable

from flagrollout.core.exceptions import StoreUnavailableError
from flagrollout.core.logging import get_logger
from flagrollout.models.feature_flag import FeatureFlag

logger = get_logger(__name__)


@runtime_checkable
class FlagStore(Protocol):
    """Persisted flag definitions keyed by flag key."""

    async def get(self, key: str) -> Optional[FeatureFlag]:
        ...

    async def list(self) -> List[FeatureFlag]:
        ...

    async def put(self, key: str, flag: FeatureFlag) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class InMemoryFlagStore:
    """Dictionary-backed store for tests and local development.

    ``available`` simulates an outage: while False every call raises
    StoreUnavailableError. ``delay_seconds`` adds latency to every call.
    """

    def __init__(self, flags: Optional[Iterable[FeatureFlag]] = None, delay_seconds: float = 0.0):
        self._flags: Dict[str, FeatureFlag] = {}
        for flag in flags or []:
            self._flags[flag.key] = flag
        self.available = True
        self.delay_seconds = delay_seconds
        self.calls: Dict[str, int] = {"get": 0, "list": 0, "put": 0, "delete": 0}

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.available:
            raise StoreUnavailableError(f"Flag store unavailable during {operation}")

    async def get(self, key: str) -> Optional[FeatureFlag]:
        await self._enter("get")
        return self._flags.get(key)

    async def list(self) -> List[FeatureFlag]:
        await self._enter("list")
        return list(self._flags.values())

    async def put(self, key: str, flag: FeatureFlag) -> None:
        await self._enter("put")
        self._flags[key] = flag
        logger.debug("flag_store_put", flag_key=key, version=flag.version)

    async def delete(self, key: str) -> None:
        await self._enter("delete")
        self._flags.pop(key, None)

    def seed(self, *flags: FeatureFlag) -> None:
        """Insert flags synchronously, bypassing availability checks."""
        for flag in flags:
            self._flags[flag.key] = flag

    def peek(self, key: str) -> Optional[FeatureFlag]:
        return self._flags.get(key)
