"""
Configuration management for the replica server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages
    - Every subscribed topic belongs to a known entity family
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .events.contracts import ALL_TOPICS

logger = logging.getLogger(__name__)


class WalBackend(Enum):
    """Supported broker backends."""

    KAFKA = "kafka"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class KafkaConfig:
    """Kafka consumer configuration.

    Attributes:
        brokers: Comma-separated list of broker addresses
        consumer_group: Consumer group shared by all topic subscriptions
        topics: Topic families to subscribe to
        sasl_mechanism: SASL authentication mechanism (PLAIN, SCRAM-SHA-256, etc.)
        sasl_username: SASL username (if authentication enabled)
        sasl_password: SASL password (if authentication enabled)
        security_protocol: Security protocol (PLAINTEXT, SSL, SASL_PLAINTEXT, SASL_SSL)
        ssl_cafile: Path to CA certificate file
        auto_offset_reset: Where to start without a committed offset
        enable_auto_commit: Let the client commit offsets (off: commit after apply)
    """

    brokers: str = "localhost:9092"
    consumer_group: str = "replicas"
    topics: tuple[str, ...] = ALL_TOPICS
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    security_protocol: str = "PLAINTEXT"
    ssl_cafile: str | None = None
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False

    @classmethod
    def from_env(cls) -> KafkaConfig:
        """Load configuration from environment variables."""
        topics_env = os.getenv("KAFKA_TOPICS")
        topics = (
            tuple(t.strip() for t in topics_env.split(",") if t.strip())
            if topics_env
            else ALL_TOPICS
        )
        return cls(
            brokers=os.getenv("KAFKA_BROKERS", "localhost:9092"),
            consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "replicas"),
            topics=topics,
            sasl_mechanism=os.getenv("KAFKA_SASL_MECHANISM"),
            sasl_username=os.getenv("KAFKA_SASL_USERNAME"),
            sasl_password=os.getenv("KAFKA_SASL_PASSWORD"),
            security_protocol=os.getenv("KAFKA_SECURITY_PROTOCOL", "PLAINTEXT"),
            ssl_cafile=os.getenv("KAFKA_SSL_CAFILE"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            enable_auto_commit=_env_bool("KAFKA_AUTO_COMMIT", "false"),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Replica store configuration.

    Attributes:
        db_path: Path of the SQLite replica database
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    db_path: str = "/var/lib/replicas/replica.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            db_path=os.getenv("REPLICA_DB_PATH", "/var/lib/replicas/replica.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class ConsumerConfig:
    """Consumer loop configuration.

    Attributes:
        replay_terminal_events: Re-run handlers for redelivered events whose
            inbox row is already processed/failed
    """

    replay_terminal_events: bool = False

    @classmethod
    def from_env(cls) -> ConsumerConfig:
        """Load configuration from environment variables."""
        return cls(
            replay_terminal_events=_env_bool("CONSUMER_REPLAY_TERMINAL_EVENTS", "false"),
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
class ServerConfig:
    """Complete server configuration.

    Attributes:
        wal_backend: Which broker backend to consume from
        kafka: Kafka configuration
        storage: Replica store configuration
        consumer: Consumer loop configuration
        observability: Logging configuration
    """

    wal_backend: WalBackend = WalBackend.KAFKA
    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("WAL_BACKEND", "kafka").lower()
        try:
            wal_backend = WalBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid WAL_BACKEND '{backend_str}'. Must be one of: kafka, memory")

        config = cls(
            wal_backend=wal_backend,
            kafka=KafkaConfig.from_env(),
            storage=StorageConfig.from_env(),
            consumer=ConsumerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.wal_backend == WalBackend.KAFKA and not self.kafka.brokers:
            raise ValueError("KAFKA_BROKERS is required")
        if not self.kafka.consumer_group:
            raise ValueError("KAFKA_CONSUMER_GROUP is required")
        if not self.kafka.topics:
            raise ValueError("KAFKA_TOPICS must name at least one topic")

        unknown = [t for t in self.kafka.topics if t not in ALL_TOPICS]
        if unknown:
            raise ValueError(
                f"Unknown topics in KAFKA_TOPICS: {unknown}. Must be among: {list(ALL_TOPICS)}"
            )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(f"Invalid LOG_FORMAT '{self.observability.log_format}'")

        if not os.path.exists(os.path.dirname(self.storage.db_path) or "."):
            logger.warning(
                f"Database directory does not exist: {self.storage.db_path}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "wal_backend": self.wal_backend.value,
                "kafka_brokers": self.kafka.brokers,
                "kafka_consumer_group": self.kafka.consumer_group,
                "kafka_topics": list(self.kafka.topics),
                "kafka_sasl": bool(self.kafka.sasl_mechanism),
                "db_path": self.storage.db_path,
                "replay_terminal_events": self.consumer.replay_terminal_events,
                "log_level": self.observability.log_level,
            },
        )
