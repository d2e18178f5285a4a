"""In-process event bus for engine notifications.

Decouples the execution pipeline from evolution decisions: executors
publish ``EPISODE_COMPLETED`` and the evolution engine subscribes to it.
Strategy lifecycle events are published for dashboards and alerts.

Handler failures are logged and never propagate to the publisher.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of engine events."""

    EPISODE_COMPLETED = "episode_completed"
    STRATEGY_EVOLVED = "strategy_evolved"
    STRATEGY_PROMOTED = "strategy_promoted"
    STRATEGY_ARCHIVED = "strategy_archived"
    STRATEGY_ROLLOUT_CHANGED = "strategy_rollout_changed"
    STRATEGY_ROLLED_BACK = "strategy_rolled_back"


@dataclass
class EngineEvent:
    """An event published on the bus."""

    type: EventType
    topic_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[EngineEvent], Awaitable[None]]


class EventBus:
    """Publish/subscribe dispatcher.

    ``publish`` awaits every handler subscribed to the event type
    concurrently and returns once all of them finished.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._history: list[EngineEvent] = []
        self._max_history = 1000

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event: EngineEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history :]

        handlers = list(self._handlers.get(event.type, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *(handler(event) for handler in handlers), return_exceptions=True
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Event handler {getattr(handler, '__qualname__', handler)} failed "
                    f"for {event.type.value}: {result}",
                    exc_info=result,
                )

    def get_history(
        self,
        event_type: EventType | None = None,
        topic_id: str | None = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        """Recent events, newest first."""
        events = self._history[::-1]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if topic_id is not None:
            events = [e for e in events if e.topic_id == topic_id]
        return events[:limit]
