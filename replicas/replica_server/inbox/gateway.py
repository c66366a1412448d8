"""
Inbox gateway: at-least-once delivery in, one recorded intent out.

Every broker message the consumer accepts is recorded in inbox_events under
an identity derived from the message itself. Redelivery of the same message
resolves to the same row instead of inserting a new one.

Invariants:
    - The identity is deterministic: the producer's event_id header when
      present, otherwise a UUIDv5 of topic:partition:offset
    - record_event never fails on a duplicate; it returns the existing row
    - Status moves pending -> processed | failed and is written in the same
      transaction as the domain effect
    - Rows are never deleted here

How to change safely:
    - Changing identity derivation re-admits already recorded messages;
      treat it as a migration
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..store.replica_store import ReplicaStore, now_ms
from ..wal.base import StreamRecord

logger = logging.getLogger(__name__)

# Namespace for identities derived from broker positions
INBOX_NAMESPACE = uuid.UUID("6f1c7a52-3b0e-5d8e-9a41-0c2f7d9e4b13")

EVENT_ID_HEADER = "event_id"

INBOX_COLUMNS = (
    "id, topic, stream_partition, stream_offset, message_key, event_type, payload, "
    "status, attempts, created_at, updated_at"
)


class InboxStatus(str, Enum):
    """Lifecycle status of an inbox event."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InboxStatus.PENDING


@dataclass
class InboxEvent:
    """One recorded broker message.

    Attributes:
        id: Deterministic identity (UUID string)
        topic: Topic the message was consumed from
        partition: Partition number
        offset: Offset of the first recorded delivery
        key: Message key
        event_type: Value of the event_type header
        payload: Raw JSON payload
        status: pending, processed or failed
        attempts: Number of processing attempts
        created_at: First delivery (Unix ms)
        updated_at: Last status change (Unix ms)
    """

    id: str
    topic: str
    partition: int
    offset: int
    key: str
    event_type: str
    payload: str
    status: InboxStatus
    attempts: int
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> InboxEvent:
        return cls(
            id=row["id"],
            topic=row["topic"],
            partition=row["stream_partition"],
            offset=row["stream_offset"],
            key=row["message_key"],
            event_type=row["event_type"],
            payload=row["payload"],
            status=InboxStatus(row["status"]),
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def payload_json(self) -> Any:
        return json.loads(self.payload)


def event_identity(record: StreamRecord) -> str:
    """Derive the inbox identity of a message.

    A valid UUID in the event_id header wins, so that a producer retry
    landing at a new offset is still recognized. Otherwise the broker
    position identifies the message.
    """
    header = record.header(EVENT_ID_HEADER)
    if header:
        try:
            return str(uuid.UUID(header))
        except ValueError:
            logger.warning(
                "Ignoring malformed event_id header",
                extra={"event_id": header, "position": str(record.position)},
            )
    return str(uuid.uuid5(INBOX_NAMESPACE, str(record.position)))


class InboxGateway:
    """Records inbound events exactly once.

    Example:
        >>> inbox = InboxGateway(store)
        >>> async with store.transaction():
        ...     event, is_new = await inbox.record_event(record, "role.created")
        ...     await inbox.update_status(event.id, InboxStatus.PROCESSED)
    """

    def __init__(self, store: ReplicaStore) -> None:
        self.store = store

    async def record_event(self, record: StreamRecord, event_type: str) -> tuple[InboxEvent, bool]:
        """Record a message, or find the row of its earlier delivery.

        Returns:
            (inbox event, is_new) where is_new is False for a redelivery
        """
        event_id = event_identity(record)
        now = now_ms()

        async with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO inbox_events
                    (id, topic, stream_partition, stream_offset, message_key, event_type,
                     payload, status, attempts, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                ON CONFLICT(id) DO NOTHING
                """,
                (
                    event_id,
                    record.position.topic,
                    record.position.partition,
                    record.position.offset,
                    record.key,
                    event_type,
                    record.value.decode("utf-8", errors="replace"),
                    now,
                    now,
                ),
            )
            is_new = cursor.rowcount == 1
            event = await self.get_event(event_id)

        if not is_new:
            logger.debug(
                "Inbox event already recorded",
                extra={"inbox_id": event_id, "status": event.status.value},
            )
        return event, is_new

    async def update_status(self, event_id: str, status: InboxStatus) -> InboxEvent:
        """Move a recorded event to a terminal status.

        Raises:
            ValidationError: If status is not terminal
            NotFoundError: If no inbox row has this id
        """
        status = InboxStatus(status)
        if not status.is_terminal:
            raise ValidationError(
                f"inbox status must be terminal, got {status.value}",
                details={"status": status.value},
            )

        async with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE inbox_events
                SET status = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = ?
                """,
                (status.value, now_ms(), event_id),
            )
            if cursor.rowcount != 1:
                raise NotFoundError("inbox event", event_id)
            return await self.get_event(event_id)

    async def get_event(self, event_id: str) -> InboxEvent | None:
        """Get an inbox event by id, or None if not recorded."""
        row = await self.store.fetch_one(
            f"SELECT {INBOX_COLUMNS} FROM inbox_events WHERE id = ?",
            (event_id,),
        )
        return InboxEvent.from_row(row) if row else None

    async def count_by_status(self) -> dict[str, int]:
        """Number of inbox events per status."""
        rows = await self.store.fetch_all(
            "SELECT status, COUNT(*) AS n FROM inbox_events GROUP BY status"
        )
        counts = {status.value: 0 for status in InboxStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts
