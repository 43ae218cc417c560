"""Rollout notifications.

The orchestrator tells operators about rollbacks and emergency disables
through a ``Notifier``. Paging and chat integrations implement the same
single coroutine.
"""

from __future__ import annotations

from typing import Any, Dict, List, Protocol, Tuple, runtime_checkable

from flagrollout.core.logging import get_logger

logger = get_logger(__name__)

# Event names
ROLLOUT_ROLLED_BACK = "rollout.rolled_back"
ROLLOUT_AUTO_ROLLED_BACK = "rollout.auto_rolled_back"
FLAG_EMERGENCY_DISABLED = "flag.emergency_disabled"


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Writes notifications to the structured log."""

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        logger.warning("rollout_notification", notification_event=event, **payload)


class RecordingNotifier:
    """Keeps every notification in memory (tests, local runs)."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def of_type(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]
