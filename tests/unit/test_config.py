"""
Unit tests for environment-based configuration.

Tests cover:
- Defaults
- Parsing of every section from environment variables
- Validation errors
"""

import pytest

from manager.entman_server.config import (
    EventBackend,
    IntegrityConfig,
    KafkaConfig,
    ServiceConfig,
    StorageConfig,
)


class TestConfigSections:
    """Tests for individual config sections."""

    def test_storage_defaults(self, monkeypatch):
        for name in ("DATA_DIR", "DB_FILENAME", "SQLITE_WAL_MODE", "SQLITE_BUSY_TIMEOUT_MS"):
            monkeypatch.delenv(name, raising=False)
        config = StorageConfig.from_env()
        assert config == StorageConfig()
        assert config.wal_mode is True

    def test_storage_from_env(self, monkeypatch):
        monkeypatch.setenv("DATA_DIR", "/tmp/x")
        monkeypatch.setenv("DB_FILENAME", "e.db")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "100")
        config = StorageConfig.from_env()
        assert config.data_dir == "/tmp/x"
        assert config.db_filename == "e.db"
        assert config.wal_mode is False
        assert config.busy_timeout_ms == 100

    def test_integrity_from_env(self, monkeypatch):
        monkeypatch.setenv("INTEGRITY_ENABLED", "FALSE")
        monkeypatch.setenv("INTEGRITY_PARALLEL", "false")
        monkeypatch.setenv("INTEGRITY_SKIP_EDGES", " Source.protocol_id, ,Destination.protocol_id")
        monkeypatch.setenv("INTEGRITY_BLOCK_IDENTITY_CHANGE", "false")
        config = IntegrityConfig.from_env()
        assert config.enabled is False
        assert config.parallel is False
        assert config.skip_edges == frozenset({"Source.protocol_id", "Destination.protocol_id"})
        assert config.block_identity_change is False

    def test_integrity_defaults(self, monkeypatch):
        for name in ("INTEGRITY_ENABLED", "INTEGRITY_PARALLEL", "INTEGRITY_SKIP_EDGES"):
            monkeypatch.delenv(name, raising=False)
        config = IntegrityConfig.from_env()
        assert config.enabled is True
        assert config.parallel is True
        assert config.skip_edges == frozenset()

    def test_kafka_from_env(self, monkeypatch):
        monkeypatch.setenv("KAFKA_BROKERS", "k1:9092,k2:9092")
        monkeypatch.setenv("KAFKA_TOPIC", "events")
        monkeypatch.setenv("KAFKA_SASL_MECHANISM", "PLAIN")
        config = KafkaConfig.from_env()
        assert config.brokers == "k1:9092,k2:9092"
        assert config.topic == "events"
        assert config.sasl_mechanism == "PLAIN"


class TestServiceConfig:
    """Tests for the aggregate ServiceConfig."""

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EVENT_BACKEND", "KAFKA")
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EVENT_PUBLISH_TIMEOUT_MS", "250")
        monkeypatch.setenv("LOG_FORMAT", "text")
        config = ServiceConfig.from_env()
        assert config.event_backend == EventBackend.KAFKA
        assert config.storage.data_dir == str(tmp_path)
        assert config.events.publish_timeout_ms == 250
        assert config.observability.log_format == "text"

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("EVENT_BACKEND", "carrier-pigeon")
        with pytest.raises(ValueError, match="Invalid EVENT_BACKEND"):
            ServiceConfig.from_env()

    def test_kafka_requires_topic(self, tmp_path):
        config = ServiceConfig(
            event_backend=EventBackend.KAFKA,
            kafka=KafkaConfig(topic=""),
            storage=StorageConfig(data_dir=str(tmp_path)),
        )
        with pytest.raises(ValueError, match="KAFKA_TOPIC"):
            config.validate()

    def test_malformed_skip_edge(self, tmp_path):
        config = ServiceConfig(
            storage=StorageConfig(data_dir=str(tmp_path)),
            integrity=IntegrityConfig(skip_edges=frozenset({"Source"})),
        )
        with pytest.raises(ValueError, match="Type.field"):
            config.validate()

    def test_non_positive_publish_timeout(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("EVENT_BACKEND", "memory")
        monkeypatch.setenv("EVENT_PUBLISH_TIMEOUT_MS", "0")
        with pytest.raises(ValueError, match="EVENT_PUBLISH_TIMEOUT_MS"):
            ServiceConfig.from_env()

    def test_log_config_does_not_leak_secrets(self, tmp_path, caplog):
        config = ServiceConfig(
            event_backend=EventBackend.KAFKA,
            kafka=KafkaConfig(sasl_password="hunter2"),
            storage=StorageConfig(data_dir=str(tmp_path)),
        )
        with caplog.at_level("INFO"):
            config.log_config()
        record = caplog.records[-1]
        assert record.getMessage() == "Service configuration loaded"
        assert "hunter2" not in repr(record.__dict__)
