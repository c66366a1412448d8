"""
Kafka stream consumer implementation.

This module provides the production Kafka backend for the consumer loop.
It works with:
- Apache Kafka
- Amazon MSK
- Redpanda
- Any Kafka API-compatible system

Invariants:
    - One AIOKafkaConsumer per subscribed topic
    - Consumers use manual commit; offsets advance only after apply
    - Committed offset is record offset + 1 (next message to consume)
    - A topic's consumer is stopped as soon as its subscription ends, so
      its partitions go back to the group
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaConnectionError, KafkaError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import StreamPos, StreamRecord, WalConnectionError, WalError

logger = logging.getLogger(__name__)


class KafkaWalStream:
    """Kafka implementation of WalStream protocol.

    Uses aiokafka consumers, one per topic, so every entity family keeps
    independent partition assignment and offset progress.

    Example:
        >>> wal = KafkaWalStream(KafkaConfig(brokers="localhost:9092"))
        >>> await wal.connect()
        >>> async for record in wal.subscribe("roles.v1", "replicas"):
        ...     await wal.commit(record, "replicas")
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka stream.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._consumers: dict[str, AIOKafkaConsumer] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        """Whether connect() has been called and close() has not."""
        return self._connected

    async def connect(self) -> None:
        """Mark the stream ready; consumers are created per subscription."""
        if not self.config.brokers:
            raise WalConnectionError("No Kafka brokers configured")
        self._connected = True
        logger.info("Kafka stream ready", extra={"brokers": self.config.brokers})

    async def close(self) -> None:
        """Stop every consumer."""
        consumers = list(self._consumers.items())
        self._consumers.clear()
        for topic, consumer in consumers:
            await self._stop_consumer(topic, consumer)
        self._connected = False
        logger.info("Kafka connections closed")

    def _consumer_config(self, group_id: str) -> dict[str, Any]:
        consumer_config: dict[str, Any] = {
            "bootstrap_servers": self.config.brokers,
            "group_id": group_id,
            "auto_offset_reset": self.config.auto_offset_reset,
            "enable_auto_commit": self.config.enable_auto_commit,
            "max_poll_records": 100,
            "session_timeout_ms": 30000,
            "heartbeat_interval_ms": 10000,
        }

        if self.config.security_protocol != "PLAINTEXT":
            consumer_config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            consumer_config["sasl_mechanism"] = self.config.sasl_mechanism
            consumer_config["sasl_plain_username"] = self.config.sasl_username
            consumer_config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            consumer_config["ssl_cafile"] = self.config.ssl_cafile

        return consumer_config

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Subscribe to a Kafka topic and yield its records.

        Raises:
            WalConnectionError: If not connected or subscription fails
            WalError: For other consumer errors
        """
        if not self._connected:
            raise WalConnectionError("Not connected to Kafka")

        existing = self._consumers.pop(topic, None)
        if existing:
            await self._stop_consumer(topic, existing)

        consumer = AIOKafkaConsumer(topic, **self._consumer_config(group_id))
        try:
            await consumer.start()
        except KafkaConnectionError as e:
            await self._stop_consumer(topic, consumer)
            raise WalConnectionError(f"Failed to subscribe to {topic}: {e}") from e
        except KafkaError as e:
            await self._stop_consumer(topic, consumer)
            raise WalError(f"Consumer error on {topic}: {e}") from e
        self._consumers[topic] = consumer

        logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

        # The consumer leaves the group however iteration ends
        try:
            async for msg in consumer:
                yield StreamRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )
        except KafkaConnectionError as e:
            raise WalConnectionError(f"Lost connection on {topic}: {e}") from e
        except KafkaError as e:
            raise WalError(f"Consumer error on {topic}: {e}") from e
        finally:
            if self._consumers.get(topic) is consumer:
                del self._consumers[topic]
            await self._stop_consumer(topic, consumer)
            logger.info("Unsubscribed from Kafka topic", extra={"topic": topic})

    async def _stop_consumer(self, topic: str, consumer: AIOKafkaConsumer) -> None:
        try:
            await consumer.stop()
        except KafkaError as e:
            logger.warning(f"Error closing consumer for {topic}: {e}")

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit the offset after record.

        Raises:
            WalError: If there is no consumer for the topic or commit fails
        """
        consumer = self._consumers.get(record.position.topic)
        if consumer is None:
            raise WalError(f"No active consumer for topic {record.position.topic}")

        try:
            tp = TopicPartition(record.position.topic, record.position.partition)
            await consumer.commit({tp: OffsetAndMetadata(record.position.offset + 1, "")})

            logger.debug(
                "Committed offset",
                extra={
                    "topic": record.position.topic,
                    "partition": record.position.partition,
                    "offset": record.position.offset,
                    "group_id": group_id,
                },
            )

        except KafkaError as e:
            raise WalError(f"Failed to commit: {e}") from e
