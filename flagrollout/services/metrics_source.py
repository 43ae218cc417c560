"""Metrics source interface used by rollout success criteria."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Protocol, runtime_checkable

from flagrollout.core.exceptions import MetricsUnavailableError


@runtime_checkable
class MetricsSource(Protocol):
    async def get_metric_value(self, name: str) -> float:
        ...


class StaticMetricsSource:
    """Serves fixed metric values; unknown metrics are unavailable."""

    def __init__(self, values: Optional[Dict[str, float]] = None, delay_seconds: float = 0.0):
        self.values: Dict[str, float] = dict(values or {})
        self.delay_seconds = delay_seconds
        self.requests: list = []

    def set_metric(self, name: str, value: float) -> None:
        self.values[name] = value

    async def get_metric_value(self, name: str) -> float:
        self.requests.append(name)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if name not in self.values:
            raise MetricsUnavailableError(f"Metric '{name}' is not available", details={"metric": name})
        return self.values[name]
