"""
Entity event publishing for EntMan.

This module provides:
- EventPublisher protocol and the entity domain events
- InMemoryEventPublisher for tests and local development
- KafkaEventPublisher (requires the kafka extra)
"""

from .base import (
    EntityCreatedEvent,
    EntityDeletedEvent,
    EntityEvent,
    EntityUpdatedEvent,
    EventPublisher,
    PublishError,
    PublisherConnectionError,
    PublishTimeoutError,
    create_event_publisher,
)
from .memory import InMemoryEventPublisher

__all__ = [
    "EntityEvent",
    "EntityCreatedEvent",
    "EntityUpdatedEvent",
    "EntityDeletedEvent",
    "EventPublisher",
    "PublishError",
    "PublisherConnectionError",
    "PublishTimeoutError",
    "create_event_publisher",
    "InMemoryEventPublisher",
]
