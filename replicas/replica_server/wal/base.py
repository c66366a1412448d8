"""
Base protocol and types for the broker stream abstraction.

This module defines the WalStream protocol that all consumer backends must
implement, along with common types for stream positions, records, and errors.

Invariants:
    - StreamPos uniquely identifies a delivered message (topic, partition, offset)
    - StreamRecord carries the key, the raw value and the message headers
    - All backends deliver records of one partition in order

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig


logger = logging.getLogger(__name__)


class WalError(Exception):
    """Base exception for stream operations."""

    pass


class WalConnectionError(WalError):
    """Connection to the broker failed."""

    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a message in the broker.

    Redelivery of the same message yields the same position, which is what
    makes it usable as a fallback inbox identity.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within partition
        timestamp_ms: Timestamp when the record was written (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A message delivered by the broker.

    Attributes:
        key: Partition key (typically the aggregate id)
        value: JSON payload bytes
        position: Position in the stream
        headers: Message metadata (event_type, optional event_id)

    Example:
        >>> async for record in wal.subscribe("roles.v1", "replicas"):
        ...     event_type = record.header("event_type")
        ...     await wal.commit(record)
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Return a header decoded as UTF-8, or None if absent."""
        raw = self.headers.get(name)
        if raw is None:
            return None
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class WalStream(Protocol):
    """Protocol for broker consumer backends.

    Ordering contract:
        - Records with the same key land in the same partition
        - Consumers receive records in order within a partition

    Delivery contract:
        - At-least-once: a record may be yielded again after a restart
          or rebalance until its offset is committed
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend. Must be called before subscribe().

        Raises:
            WalConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop all consumers and release resources."""
        ...

    @abstractmethod
    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Subscribe to a topic under a consumer group.

        Yields:
            StreamRecord objects in order within partitions

        Raises:
            WalConnectionError: If subscription fails
            WalError: For other errors

        Note:
            The caller must call commit() to acknowledge processed records.
        """
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit a consumed record so the group resumes after it.

        Raises:
            WalError: If commit fails
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_wal_stream(config: "ServerConfig") -> WalStream:
    """Factory function to create a broker stream from configuration.

    Args:
        config: Server configuration

    Returns:
        Appropriate WalStream implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import WalBackend
    from .kafka import KafkaWalStream
    from .memory import InMemoryWalStream

    if config.wal_backend == WalBackend.KAFKA:
        return KafkaWalStream(config.kafka)
    elif config.wal_backend == WalBackend.MEMORY:
        return InMemoryWalStream()
    else:
        raise ValueError(f"Unsupported WAL backend: {config.wal_backend}")
