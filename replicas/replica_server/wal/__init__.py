"""
Broker stream abstraction for the replica server.

This module provides a pluggable consumer backend interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing and local development)

The broker is the source of change for the replica. Delivery is
at-least-once; deduplication is the inbox's job, not the stream's.

Invariants:
    - Consumers receive records in order within a partition
    - An offset is committed only after its record was applied
"""

from .base import (
    StreamPos,
    StreamRecord,
    WalConnectionError,
    WalError,
    WalStream,
    create_wal_stream,
)
from .kafka import KafkaWalStream
from .memory import InMemoryWalStream

__all__ = [
    # Protocol and types
    "WalStream",
    "StreamRecord",
    "StreamPos",
    "WalError",
    "WalConnectionError",
    # Factory
    "create_wal_stream",
    # Implementations
    "KafkaWalStream",
    "InMemoryWalStream",
]
