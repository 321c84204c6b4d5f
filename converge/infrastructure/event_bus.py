"""
Event Bus Infrastructure

Architectural Intent:
- In-memory event bus implementation for publishing domain events
- Supports async subscription handlers
- Keeps a bounded history so the web status page can show recent events
"""

import logging
from collections import deque
from typing import Awaitable, Callable

from converge.domain.events.event_base import DomainEvent

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self, history_size: int = 200) -> None:
        self._handlers: dict[type, list[Callable[[DomainEvent], Awaitable[None]]]] = {}
        self._history: deque[DomainEvent] = deque(maxlen=history_size)

    async def publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            self._history.append(event)
            for event_type, handlers in self._handlers.items():
                if isinstance(event, event_type):
                    for handler in handlers:
                        await handler(event)

    def subscribe(
        self, event_type: type, handler: Callable[[DomainEvent], Awaitable[None]]
    ) -> None:
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def recent(self, limit: int = 50) -> list[DomainEvent]:
        return list(self._history)[-limit:]
