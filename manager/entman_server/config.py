"""
Configuration management for EntMan Server.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Referential integrity checks are on unless explicitly disabled

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep env var names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class EventBackend(Enum):
    """Supported event publisher backends."""

    MEMORY = "memory"
    KAFKA = "kafka"


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_filename: Database file name inside data_dir
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/entman"
    db_filename: str = "entities.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/entman"),
            db_filename=os.getenv("DB_FILENAME", "entities.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class IntegrityConfig:
    """Referential integrity validation configuration.

    Attributes:
        enabled: Run reference counting before deletes and identity changes
        parallel: Count all dependent edges concurrently
        skip_edges: Edges excluded from counting, as "Type.field" labels
        block_identity_change: Reject composite-key changes of referenced
            entities while dependents exist
    """

    enabled: bool = True
    parallel: bool = True
    skip_edges: frozenset[str] = frozenset()
    block_identity_change: bool = True

    @classmethod
    def from_env(cls) -> IntegrityConfig:
        """Load configuration from environment variables."""
        raw_skip = os.getenv("INTEGRITY_SKIP_EDGES", "")
        return cls(
            enabled=_env_bool("INTEGRITY_ENABLED", "true"),
            parallel=_env_bool("INTEGRITY_PARALLEL", "true"),
            skip_edges=frozenset(s.strip() for s in raw_skip.split(",") if s.strip()),
            block_identity_change=_env_bool("INTEGRITY_BLOCK_IDENTITY_CHANGE", "true"),
        )


@dataclass(frozen=True)
class EventsConfig:
    """Event publishing configuration.

    Attributes:
        publish_timeout_ms: Upper bound on a single best-effort publish
    """

    publish_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> EventsConfig:
        """Load configuration from environment variables."""
        return cls(
            publish_timeout_ms=int(os.getenv("EVENT_PUBLISH_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka/Redpanda event backend configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        topic: Topic name for entity events
        client_id: Producer client id
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        acks: Producer acknowledgment level
        enable_idempotence: Enable idempotent producer
    """

    brokers: str = "localhost:9092"
    topic: str = "entman-events"
    client_id: str = "entman"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    acks: str = "all"
    enable_idempotence: bool = True

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            topic=os.getenv("KAFKA_TOPIC", "entman-events"),
            client_id=os.getenv("KAFKA_CLIENT_ID", "entman"),
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            acks=os.getenv("KAFKA_ACKS", "all"),
            enable_idempotence=_env_bool("KAFKA_ENABLE_IDEMPOTENCE", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    Attributes:
        event_backend: Which event publisher to use
        storage: Local storage configuration
        integrity: Referential integrity configuration
        events: Event publishing configuration
        kafka: Kafka configuration (if event_backend is KAFKA)
        observability: Logging configuration
    """

    event_backend: EventBackend = EventBackend.MEMORY
    storage: StorageConfig = field(default_factory=StorageConfig)
    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        backend_str = os.getenv("EVENT_BACKEND", "memory").lower()
        try:
            event_backend = EventBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid EVENT_BACKEND '{backend_str}'. Must be one of: memory, kafka"
            ) from None

        config = cls(
            event_backend=event_backend,
            storage=StorageConfig.from_env(),
            integrity=IntegrityConfig.from_env(),
            events=EventsConfig.from_env(),
            kafka=KafkaConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.event_backend == EventBackend.KAFKA:
            if not self.kafka.brokers:
                raise ValueError("KAFKA_BROKERS is required when EVENT_BACKEND=kafka")
            if not self.kafka.topic:
                raise ValueError("KAFKA_TOPIC is required when EVENT_BACKEND=kafka")

        if self.storage.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be non-negative")
        if self.events.publish_timeout_ms <= 0:
            raise ValueError("EVENT_PUBLISH_TIMEOUT_MS must be positive")

        for label in self.integrity.skip_edges:
            type_name, _, field_name = label.partition(".")
            if not type_name or not field_name:
                raise ValueError(
                    f"INTEGRITY_SKIP_EDGES entry '{label}' must look like Type.field"
                )

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "event_backend": self.event_backend.value,
                "kafka_brokers": self.kafka.brokers
                if self.event_backend == EventBackend.KAFKA
                else None,
                "kafka_topic": self.kafka.topic
                if self.event_backend == EventBackend.KAFKA
                else None,
                "data_dir": self.storage.data_dir,
                "integrity_enabled": self.integrity.enabled,
                "integrity_parallel": self.integrity.parallel,
                "integrity_skip_edges": sorted(self.integrity.skip_edges),
                "log_level": self.observability.log_level,
            },
        )
