"""
Base protocol and types for entity event publishing.

This module defines the EventPublisher protocol that all backends implement,
the domain events emitted after committed mutations, and publishing errors.

Invariants:
    - Events are emitted only after the store write committed
    - Event serialization is deterministic (sorted keys, compact separators)
    - The entity id is the partition key, so events for one entity stay ordered
      within a backend that orders by key

How to change safely:
    - Protocol changes require updating all implementations
    - Add event fields with defaults; consumers may be older than producers
"""

from __future__ import annotations

import json
import logging
import time
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServiceConfig

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Base exception for event publishing."""

    pass


class PublisherConnectionError(PublishError):
    """Connection to the event backend failed or was lost."""

    pass


class PublishTimeoutError(PublishError):
    """Publishing an event timed out."""

    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class EntityEvent:
    """Base for all entity domain events.

    Attributes:
        entity_type: Type name ("Protocol", "Source", ...)
        entity_id: Id of the affected entity
        actor: Who performed the mutation
        timestamp_ms: When the event was created (Unix ms)
    """

    event_type: ClassVar[str] = "entity_event"

    entity_type: str
    entity_id: str
    actor: str = ""
    timestamp_ms: int = field(default_factory=_now_ms)

    @property
    def key(self) -> str:
        """Partition key."""
        return self.entity_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor": self.actor,
            "timestamp_ms": self.timestamp_ms,
        }

    def to_json(self) -> bytes:
        """Deterministic JSON encoding."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class EntityCreatedEvent(EntityEvent):
    """An entity was created. payload is the stored entity."""

    event_type: ClassVar[str] = "entity_created"

    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["payload"] = self.payload
        return data


@dataclass(frozen=True)
class EntityUpdatedEvent(EntityEvent):
    """An entity was replaced. payload is the stored entity after the update."""

    event_type: ClassVar[str] = "entity_updated"

    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["payload"] = self.payload
        return data


@dataclass(frozen=True)
class EntityDeletedEvent(EntityEvent):
    """An entity was physically deleted."""

    event_type: ClassVar[str] = "entity_deleted"


@runtime_checkable
class EventPublisher(Protocol):
    """Protocol for event publisher backends.

    Delivery contract:
        - publish() returns after the backend acknowledged the event
        - Callers treat publishing as best-effort; a failure never rolls
          back the mutation that produced the event

    Example:
        >>> publisher = InMemoryEventPublisher()
        >>> await publisher.connect()
        >>> await publisher.publish(EntityDeletedEvent("Protocol", protocol_id))
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            PublisherConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending events and release resources."""
        ...

    @abstractmethod
    async def publish(self, event: EntityEvent) -> None:
        """Publish one event.

        Raises:
            PublisherConnectionError: If not connected
            PublishTimeoutError: If the backend did not acknowledge in time
            PublishError: For other failures
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_event_publisher(config: ServiceConfig) -> EventPublisher:
    """Factory function to create an event publisher from configuration.

    Raises:
        ValueError: If the backend is not supported
        ImportError: If the backend's client library is not installed
    """
    from ..config import EventBackend

    if config.event_backend == EventBackend.MEMORY:
        from .memory import InMemoryEventPublisher

        return InMemoryEventPublisher()

    if config.event_backend == EventBackend.KAFKA:
        from .kafka import KafkaEventPublisher

        return KafkaEventPublisher(config.kafka)

    raise ValueError(f"Unsupported event backend: {config.event_backend}")
