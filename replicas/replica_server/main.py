"""
Replica Server - Main entry point.

This module starts the replica with all components:
- Replica store (SQLite, schema and triggers)
- Broker stream (Kafka, or in-memory for local runs)
- One consumer task per topic family

Usage:
    python -m replicas.replica_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The store schema exists before the first message is consumed
    - Graceful shutdown cancels consumers before closing the stream
    - A consumer stopped by an error does not stop its siblings

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter

from .config import ServerConfig
from .consumer import ConsumerGroup, TopicConsumer
from .events.processor import EventProcessor
from .inbox import InboxGateway
from .ranks import RoleRanks
from .store import EntityStore, ReplicaStore
from .wal import WalStream, create_wal_stream

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)


class Server:
    """Replica server orchestrator.

    Attributes:
        config: Server configuration
        wal: Broker stream instance
        store: Replica SQLite store
        group: Consumer tasks, one per topic

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
        """
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.wal: WalStream | None = None
        self.store: ReplicaStore | None = None
        self.group: ConsumerGroup | None = None
        # Consumers that stopped with an error before shutdown was requested
        self.consumer_errors: dict[str, BaseException] = {}

    def build_consumers(
        self, wal: WalStream, store: ReplicaStore
    ) -> list[TopicConsumer]:
        """One consumer per configured topic, sharing store and processor."""
        inbox = InboxGateway(store)
        processor = EventProcessor(EntityStore(store), RoleRanks(store))
        return [
            TopicConsumer(
                wal=wal,
                store=store,
                inbox=inbox,
                processor=processor,
                topic=topic,
                group_id=self.config.kafka.consumer_group,
                replay_terminal_events=self.config.consumer.replay_terminal_events,
            )
            for topic in self.config.kafka.topics
        ]

    async def start(self) -> None:
        """Start the server and run until shutdown is requested or every consumer stopped."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting replica server")
        self.config.log_config()

        try:
            self.store = ReplicaStore(
                db_path=self.config.storage.db_path,
                wal_mode=self.config.storage.wal_mode,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
                cache_size_pages=self.config.storage.cache_size_pages,
            )
            await self.store.initialize()

            self.wal = create_wal_stream(self.config)
            await self.wal.connect()
            logger.info("Broker stream connected")

            self.group = ConsumerGroup(self.build_consumers(self.wal, self.store))
            self.group.start()

            self._running = True
            logger.info("Replica server started successfully")

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            await self.stop()
            raise

        await self._wait_for_shutdown()

    async def _wait_for_shutdown(self) -> None:
        """Wait for a shutdown request, or for every consumer to have stopped."""
        waiters = [
            asyncio.create_task(self._shutdown_event.wait()),
            asyncio.create_task(self.group.finished.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if not self._shutdown_event.is_set():
            self.consumer_errors = dict(self.group.errors)
            logger.error(
                "Every consumer has stopped, shutting down",
                extra={"topics": sorted(self.consumer_errors)},
            )

    async def stop(self) -> None:
        """Stop the server gracefully. Safe to call more than once."""
        if self.group is None and self.wal is None:
            return

        logger.info("Stopping replica server")

        if self.group:
            await self.group.stop()
            if self.group.errors:
                logger.warning(
                    "Consumers stopped with errors",
                    extra={"topics": sorted(self.group.errors)},
                )
            self.group = None

        if self.wal:
            await self.wal.close()
            self.wal = None

        self._running = False
        logger.info("Replica server stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    server = Server(config)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    if server.consumer_errors:
        sys.exit(1)


if __name__ == "__main__":
    main()
