"""
In-memory event publisher for testing and local development.

Invariants:
    - Events are recorded in publish order
    - All data is lost on process exit

How to change safely:
    - Keep interface compatible with the EventPublisher protocol
    - Add helpers for testing scenarios rather than branching production code
"""

from __future__ import annotations

import asyncio
import logging

from .base import EntityEvent, PublisherConnectionError

logger = logging.getLogger(__name__)


class InMemoryEventPublisher:
    """In-memory implementation of EventPublisher.

    Example:
        >>> publisher = InMemoryEventPublisher()
        >>> await publisher.connect()
        >>> await publisher.publish(event)
        >>> publisher.events_of_type("entity_created")
    """

    def __init__(self) -> None:
        self._events: list[EntityEvent] = []
        self._connected = False
        self._lock = asyncio.Lock()
        self._pending_failure: Exception | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryEventPublisher connected")

    async def close(self) -> None:
        self._connected = False
        logger.debug("InMemoryEventPublisher closed")

    async def publish(self, event: EntityEvent) -> None:
        if not self._connected:
            raise PublisherConnectionError("Not connected")

        async with self._lock:
            if self._pending_failure is not None:
                failure, self._pending_failure = self._pending_failure, None
                raise failure
            self._events.append(event)

        logger.debug(
            "Event recorded",
            extra={
                "event_type": event.event_type,
                "entity_type": event.entity_type,
                "entity_id": event.entity_id,
            },
        )

    @property
    def events(self) -> list[EntityEvent]:
        """Recorded events in publish order (testing helper)."""
        return list(self._events)

    def events_of_type(self, event_type: str) -> list[EntityEvent]:
        """Recorded events with the given event_type (testing helper)."""
        return [e for e in self._events if e.event_type == event_type]

    def clear(self) -> None:
        """Forget recorded events (testing helper)."""
        self._events.clear()

    def fail_next(self, exception: Exception) -> None:
        """Make the next publish() raise exception (testing helper)."""
        self._pending_failure = exception
