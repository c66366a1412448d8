"""
Unit tests for environment configuration.
"""

import pytest

from replicas.replica_server.config import (
    ConsumerConfig,
    KafkaConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
    WalBackend,
)
from replicas.replica_server.events.contracts import ALL_TOPICS


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self, monkeypatch):
        for name in (
            "WAL_BACKEND",
            "KAFKA_BROKERS",
            "KAFKA_CONSUMER_GROUP",
            "KAFKA_TOPICS",
            "REPLICA_DB_PATH",
            "CONSUMER_REPLAY_TERMINAL_EVENTS",
            "LOG_FORMAT",
        ):
            monkeypatch.delenv(name, raising=False)

        config = ServerConfig.from_env()

        assert config.wal_backend == WalBackend.KAFKA
        assert config.kafka.brokers == "localhost:9092"
        assert config.kafka.consumer_group == "replicas"
        assert config.kafka.topics == ALL_TOPICS
        assert config.kafka.enable_auto_commit is False
        assert config.storage.wal_mode is True
        assert config.consumer.replay_terminal_events is False
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("WAL_BACKEND", "memory")
        monkeypatch.setenv("KAFKA_BROKERS", "k1:9092,k2:9092")
        monkeypatch.setenv("KAFKA_CONSUMER_GROUP", "replica-eu")
        monkeypatch.setenv("KAFKA_TOPICS", "roles.v1, members.v1")
        monkeypatch.setenv("REPLICA_DB_PATH", "/tmp/replica-test/replica.db")
        monkeypatch.setenv("SQLITE_BUSY_TIMEOUT_MS", "250")
        monkeypatch.setenv("CONSUMER_REPLAY_TERMINAL_EVENTS", "true")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.wal_backend == WalBackend.MEMORY
        assert config.kafka.brokers == "k1:9092,k2:9092"
        assert config.kafka.consumer_group == "replica-eu"
        assert config.kafka.topics == ("roles.v1", "members.v1")
        assert config.storage.db_path == "/tmp/replica-test/replica.db"
        assert config.storage.busy_timeout_ms == 250
        assert config.consumer.replay_terminal_events is True
        assert config.observability.log_level == "DEBUG"
        assert config.observability.log_format == "text"

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("WAL_BACKEND", "kinesis")

        with pytest.raises(ValueError, match="WAL_BACKEND"):
            ServerConfig.from_env()

    def test_unknown_topic_rejected(self):
        config = ServerConfig(kafka=KafkaConfig(topics=("roles.v1", "billing.v1")))

        with pytest.raises(ValueError, match="billing.v1"):
            config.validate()

    def test_empty_topics_rejected(self):
        with pytest.raises(ValueError):
            ServerConfig(kafka=KafkaConfig(topics=())).validate()

    def test_empty_brokers_rejected_for_kafka(self):
        with pytest.raises(ValueError, match="KAFKA_BROKERS"):
            ServerConfig(kafka=KafkaConfig(brokers="")).validate()

    def test_empty_brokers_allowed_for_memory(self, data_dir):
        config = ServerConfig(
            wal_backend=WalBackend.MEMORY,
            kafka=KafkaConfig(brokers=""),
            storage=StorageConfig(db_path=f"{data_dir}/replica.db"),
        )

        config.validate()

    def test_invalid_log_format(self):
        config = ServerConfig(observability=ObservabilityConfig(log_format="xml"))

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            config.validate()

    def test_configs_are_frozen(self):
        with pytest.raises(AttributeError):
            ConsumerConfig().replay_terminal_events = True
