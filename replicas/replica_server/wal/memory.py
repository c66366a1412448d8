"""
In-memory stream implementation for testing.

This module provides a simple in-memory broker for:
- Unit tests
- Integration tests of the consumer loop
- Local development without Kafka

Invariants:
    - All data is lost on process exit
    - Same key always maps to the same partition
    - Records of a partition are yielded in offset order
    - redeliver() replays a record with its original position, like a broker
      redelivering after a rebalance
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import AsyncIterator

from .base import StreamPos, StreamRecord, WalConnectionError

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    records: list[StreamRecord] = field(default_factory=list)
    next_offset: int = 0


class InMemoryWalStream:
    """In-memory implementation of WalStream for testing.

    Example:
        >>> wal = InMemoryWalStream()
        >>> await wal.connect()
        >>> await wal.append("roles.v1", "org-1", b"{}", {"event_type": b"role.created"})
        >>> async for record in wal.subscribe("roles.v1", "replicas"):
        ...     print(record.value)
    """

    def __init__(self, num_partitions: int = 4, poll_interval: float = 0.05) -> None:
        """Initialize in-memory stream.

        Args:
            num_partitions: Number of partitions per topic
            poll_interval: Seconds to wait for new records between scans
        """
        self.num_partitions = num_partitions
        self.poll_interval = poll_interval
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # group_id -> topic -> partition -> next offset
        self._committed: dict[str, dict[str, dict[int, int]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(int))
        )
        self._redeliveries: dict[str, deque[StreamRecord]] = defaultdict(deque)
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_records = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryWalStream connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._topics.clear()
        self._committed.clear()
        self._redeliveries.clear()
        self._new_records.set()
        logger.debug("InMemoryWalStream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record (acts as the upstream producer in tests).

        Returns:
            StreamPos with partition and offset
        """
        if not self._connected:
            raise WalConnectionError("Not connected")

        partition = self._partition_for_key(key)

        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=part.next_offset,
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key, value=value, position=pos, headers=headers or {})
            )
            part.next_offset += 1
            self._new_records.set()

        logger.debug(
            "Record appended to in-memory stream",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def redeliver(self, record: StreamRecord) -> None:
        """Deliver a record again with its original position."""
        async with self._lock:
            self._redeliveries[record.position.topic].append(record)
            self._new_records.set()

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Subscribe to in-memory topic, starting at the group's committed offsets.

        Yields:
            StreamRecord for each record, redeliveries first
        """
        if not self._connected:
            raise WalConnectionError("Not connected")

        positions = {
            partition: self._committed[group_id][topic][partition]
            for partition in range(self.num_partitions)
        }

        while self._connected:
            async with self._lock:
                batch = list(self._redeliveries[topic])
                self._redeliveries[topic].clear()
                for partition in range(self.num_partitions):
                    part = self._topics[topic][partition]
                    batch.extend(part.records[positions[partition]:])
                    positions[partition] = len(part.records)
                if not batch:
                    self._new_records.clear()

            for record in batch:
                yield record

            if not batch:
                try:
                    await asyncio.wait_for(self._new_records.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def commit(self, record: StreamRecord, group_id: str) -> None:
        """Commit consumed record offset for the group."""
        pos = record.position
        partitions = self._committed[group_id][pos.topic]
        partitions[pos.partition] = max(partitions[pos.partition], pos.offset + 1)

    def committed_offset(self, topic: str, group_id: str, partition: int) -> int:
        """Next offset the group would consume (testing helper)."""
        return self._committed[group_id][topic][partition]

    def _partition_for_key(self, key: str) -> int:
        """Get partition number for a key using consistent hashing."""
        hash_bytes = hashlib.md5(key.encode("utf-8")).digest()
        hash_int = int.from_bytes(hash_bytes[:4], "big")
        return hash_int % self.num_partitions

    def get_record_count(self, topic: str) -> int:
        """Get total record count for a topic (testing helper)."""
        if topic not in self._topics:
            return 0
        return sum(len(part.records) for part in self._topics[topic].values())
