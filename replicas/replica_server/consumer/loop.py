"""
Consumer loop for the replica.

A TopicConsumer consumes one topic family from the broker and applies each
message to the replica. A ConsumerGroup runs one TopicConsumer per topic.

Per message:
    1. Parse the event_type header; unknown or foreign types are skipped
    2. In one transaction: record the inbox event, run the handler inside
       a savepoint, store the terminal status
    3. Commit the broker offset

Invariants:
    - The inbox status and the domain effect commit together or not at all
    - A failed handler leaves no partial domain writes, only a failed
      inbox row
    - The offset is committed only after the transaction committed
    - Records of a partition are handled one at a time, in order
    - StoreUnavailableError is never swallowed; it stops the subscription

How to change safely:
    - Never commit the offset before the transaction
    - Test redelivery with InMemoryWalStream.redeliver()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..errors import ReplicaError, StoreUnavailableError
from ..events.contracts import EVENT_TYPE_HEADER, TOPIC_EVENT_TYPES, EventType
from ..events.processor import EventProcessor
from ..inbox.gateway import InboxEvent, InboxGateway, InboxStatus
from ..store.replica_store import ReplicaStore
from ..wal.base import StreamPos, StreamRecord, WalStream

logger = logging.getLogger(__name__)


@dataclass
class HandleResult:
    """Outcome of handling one record.

    Attributes:
        record: The broker record
        event: Inbox row after handling (None when skipped before recording)
        status: Terminal status stored for the event
        skipped: Whether the handler was not run
        reason: Why the record was skipped or failed
    """

    record: StreamRecord
    event: InboxEvent | None = None
    status: InboxStatus | None = None
    skipped: bool = False
    reason: str | None = None


class TopicConsumer:
    """Consumes one topic and applies its events to the replica.

    Thread safety:
        Runs as a single task. Siblings for other topics share the store,
        whose lock serializes their transactions.

    Example:
        >>> consumer = TopicConsumer(wal, store, inbox, processor, "roles.v1", "replicas")
        >>> await consumer.start()  # Runs until stopped
    """

    def __init__(
        self,
        wal: WalStream,
        store: ReplicaStore,
        inbox: InboxGateway,
        processor: EventProcessor,
        topic: str,
        group_id: str,
        replay_terminal_events: bool = False,
    ) -> None:
        """Initialize the consumer.

        Args:
            wal: Broker stream to consume from
            store: Replica store owning the transaction
            inbox: Inbox gateway
            processor: Event processor
            topic: Topic family to consume
            group_id: Consumer group ID
            replay_terminal_events: Re-run handlers for redeliveries whose
                inbox row is already terminal
        """
        self.wal = wal
        self.store = store
        self.inbox = inbox
        self.processor = processor
        self.topic = topic
        self.group_id = group_id
        self.replay_terminal_events = replay_terminal_events
        self.event_types = TOPIC_EVENT_TYPES.get(topic, frozenset())

        self._running = False
        self._processed_count = 0
        self._failed_count = 0
        self._skipped_count = 0
        self._last_position: StreamPos | None = None

    async def start(self) -> None:
        """Start the consumer loop.

        This runs until stop() is called or the subscription fails.
        """
        if self._running:
            logger.warning("Consumer already running", extra={"topic": self.topic})
            return

        self._running = True
        logger.info("Starting consumer", extra={"topic": self.topic, "group_id": self.group_id})

        records = self.wal.subscribe(self.topic, self.group_id)
        try:
            async for record in records:
                if not self._running:
                    break

                result = await self.handle_record(record)

                if result.skipped:
                    self._skipped_count += 1
                    logger.debug(
                        "Skipped record",
                        extra={
                            "topic": self.topic,
                            "position": str(record.position),
                            "reason": result.reason,
                        },
                    )
                elif result.status is InboxStatus.PROCESSED:
                    self._processed_count += 1
                    logger.debug(
                        "Applied event",
                        extra={"inbox_id": result.event.id, "event_type": result.event.event_type},
                    )
                else:
                    self._failed_count += 1

                await self.wal.commit(record, self.group_id)
                self._last_position = record.position

        except asyncio.CancelledError:
            logger.info("Consumer cancelled", extra={"topic": self.topic})
            raise
        except Exception as e:
            logger.error(f"Consumer error on {self.topic}: {e}", exc_info=True)
            raise
        finally:
            self._running = False
            # Release the subscription now, not when the generator is collected
            await records.aclose()

    async def stop(self) -> None:
        """Stop the consumer loop after the current record."""
        self._running = False
        logger.info("Stopping consumer", extra={"topic": self.topic})

    async def handle_record(self, record: StreamRecord) -> HandleResult:
        """Apply one record; does not commit the offset.

        Raises:
            StoreUnavailableError: If the replica store cannot be written
        """
        raw_type = record.header(EVENT_TYPE_HEADER)
        event_type = EventType.parse(raw_type)
        if event_type is None:
            return HandleResult(record, skipped=True, reason=f"unknown event type {raw_type!r}")
        if event_type not in self.event_types:
            return HandleResult(
                record, skipped=True, reason=f"{event_type.value} does not belong to {self.topic}"
            )

        async with self.store.transaction():
            event, is_new = await self.inbox.record_event(record, event_type.value)

            if not is_new and event.status.is_terminal and not self.replay_terminal_events:
                return HandleResult(
                    record, event=event, status=event.status, skipped=True, reason="already handled"
                )

            status, reason = await self._run_handler(event, event_type, record)
            event = await self.inbox.update_status(event.id, status)

        return HandleResult(record, event=event, status=status, reason=reason)

    async def _run_handler(
        self, event: InboxEvent, event_type: EventType, record: StreamRecord
    ) -> tuple[InboxStatus, str | None]:
        """Run the handler in a savepoint; roll it back unless it processed."""
        context = {"inbox_id": event.id, "event_type": event_type.value, "key": record.key}

        try:
            async with self.store.transaction():
                status = await self.processor.process(event_type, record.value)
                if status is not InboxStatus.PROCESSED:
                    raise _Unprocessed(status)
        except StoreUnavailableError:
            raise
        except _Unprocessed as e:
            logger.error("Event not processed", extra={**context, "status": e.status.value})
            return InboxStatus.FAILED, f"handler returned {e.status.value}"
        except ReplicaError as e:
            logger.error(
                f"Failed to apply event: {e.message}", extra={**context, "code": e.code}
            )
            return InboxStatus.FAILED, e.message
        except Exception as e:
            logger.error(f"Error applying event: {e}", extra=context, exc_info=True)
            return InboxStatus.FAILED, str(e)

        return InboxStatus.PROCESSED, None

    @property
    def stats(self) -> dict[str, Any]:
        """Get consumer statistics."""
        return {
            "topic": self.topic,
            "running": self._running,
            "processed_count": self._processed_count,
            "failed_count": self._failed_count,
            "skipped_count": self._skipped_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }


class _Unprocessed(Exception):
    """Handler returned a non-processed status; rolls back its savepoint."""

    def __init__(self, status: InboxStatus) -> None:
        super().__init__(status.value)
        self.status = status


class ConsumerGroup:
    """Runs one TopicConsumer task per topic.

    A consumer that stops with an error is logged and recorded in errors;
    its siblings keep running until stop(). The finished event is set once
    every consumer task has ended.

    Example:
        >>> group = ConsumerGroup(consumers)
        >>> group.start()
        >>> ...
        >>> await group.stop()
    """

    def __init__(self, consumers: Iterable[TopicConsumer]) -> None:
        self.consumers = list(consumers)
        self.errors: dict[str, BaseException] = {}
        self.finished = asyncio.Event()
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self) -> None:
        """Start every consumer as its own task."""
        for consumer in self.consumers:
            task = asyncio.create_task(consumer.start(), name=f"consumer-{consumer.topic}")
            task.add_done_callback(self._on_done(consumer.topic))
            self._tasks[consumer.topic] = task
        logger.info(
            "Consumer group started",
            extra={"topics": [c.topic for c in self.consumers]},
        )

    def _on_done(self, topic: str):
        def callback(task: asyncio.Task) -> None:
            if not task.cancelled():
                error = task.exception()
                if error is not None:
                    self.errors[topic] = error
                    logger.warning(
                        f"Consumer for {topic} stopped: {error}",
                        extra={"topic": topic, "error_type": type(error).__name__},
                    )
            if all(t.done() for t in self._tasks.values()):
                self.finished.set()

        return callback

    @property
    def running(self) -> list[str]:
        """Topics whose consumer task is still running."""
        return [topic for topic, task in self._tasks.items() if not task.done()]

    async def wait(self) -> None:
        """Wait until every consumer task has finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel every consumer and wait for them to finish."""
        for consumer in self.consumers:
            await consumer.stop()
        for task in self._tasks.values():
            task.cancel()
        await self.wait()
        logger.info("Consumer group stopped")

    @property
    def stats(self) -> dict[str, Any]:
        """Statistics per topic."""
        return {consumer.topic: consumer.stats for consumer in self.consumers}
