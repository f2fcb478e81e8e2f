"""
Kafka/Redpanda event publisher.

Publishes entity events as JSON values keyed by entity id. Works with
Apache Kafka, Amazon MSK, Redpanda or any Kafka API-compatible system.

Invariants:
    - Events for one entity share a key and therefore a partition
    - publish() waits for the broker acknowledgment (send_and_wait)

How to change safely:
    - Test with an actual Kafka/Redpanda cluster before deploying
    - Keep the value encoding in EntityEvent.to_json(), not here
"""

from __future__ import annotations

import logging
from typing import Any

from .base import EntityEvent, PublishError, PublisherConnectionError, PublishTimeoutError

logger = logging.getLogger(__name__)

# aiokafka is an optional extra (pip install entman[kafka])
try:
    from aiokafka import AIOKafkaProducer
    from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError

    KAFKA_AVAILABLE = True
except ImportError:
    KAFKA_AVAILABLE = False
    AIOKafkaProducer = None


class KafkaEventPublisher:
    """Kafka implementation of the EventPublisher protocol.

    Example:
        >>> publisher = KafkaEventPublisher(KafkaConfig(brokers="localhost:9092"))
        >>> await publisher.connect()
        >>> await publisher.publish(EntityDeletedEvent("Protocol", protocol_id))
    """

    def __init__(self, config: Any) -> None:
        """Initialize the publisher.

        Args:
            config: KafkaConfig instance with connection settings

        Raises:
            ImportError: If aiokafka is not installed
        """
        if not KAFKA_AVAILABLE:
            raise ImportError(
                "aiokafka is required for the Kafka event backend. "
                "Install with: pip install entman[kafka]"
            )

        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            PublisherConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            producer_config = {
                "bootstrap_servers": self.config.brokers,
                "client_id": self.config.client_id,
                "acks": self.config.acks,
                "enable_idempotence": self.config.enable_idempotence,
                "linger_ms": 5,
                "request_timeout_ms": 30000,
            }

            if self.config.security_protocol != "PLAINTEXT":
                producer_config["security_protocol"] = self.config.security_protocol

            if self.config.sasl_mechanism:
                producer_config["sasl_mechanism"] = self.config.sasl_mechanism
                producer_config["sasl_plain_username"] = self.config.sasl_username
                producer_config["sasl_plain_password"] = self.config.sasl_password

            self._producer = AIOKafkaProducer(**producer_config)
            await self._producer.start()
            self._connected = True

            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "topic": self.config.topic},
            )

        except Exception as e:
            self._connected = False
            self._producer = None
            raise PublisherConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Flush pending events and stop the producer."""
        if self._producer:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka event publisher closed")

    async def publish(self, event: EntityEvent) -> None:
        """Send an event and wait for the acknowledgment.

        Raises:
            PublisherConnectionError: If not connected or the connection was lost
            PublishTimeoutError: If the send timed out
            PublishError: For other Kafka errors
        """
        if not self._producer:
            raise PublisherConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                self.config.topic,
                value=event.to_json(),
                key=event.key.encode("utf-8"),
                headers=[("event_type", event.event_type.encode("utf-8"))],
            )
        except KafkaTimeoutError as e:
            raise PublishTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise PublisherConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise PublishError(f"Kafka send failed: {e}") from e

        logger.debug(
            "Event published to Kafka",
            extra={
                "topic": self.config.topic,
                "event_type": event.event_type,
                "entity_id": event.entity_id,
                "partition": metadata.partition,
                "offset": metadata.offset,
            },
        )
