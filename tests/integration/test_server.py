"""
Integration tests for the server orchestrator.

The server runs with the in-memory broker so no Kafka is needed.
"""

import asyncio
import json
import logging
import uuid

import json_log_formatter
import pytest

from replicas.replica_server.config import (
    KafkaConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
    WalBackend,
)
from replicas.replica_server.errors import StoreUnavailableError
from replicas.replica_server.main import Server, setup_logging
from replicas.replica_server.store.entities import EntityStore
from tests.helpers import organization_payload, role_payload


class UnavailableStoreProcessor:
    """Processor whose every write hits an unreachable store."""

    async def process(self, event_type, raw):
        raise StoreUnavailableError("disk gone")


@pytest.fixture
def config(data_dir):
    return ServerConfig(
        wal_backend=WalBackend.MEMORY,
        kafka=KafkaConfig(topics=("organizations.v1", "roles.v1")),
        storage=StorageConfig(db_path=f"{data_dir}/replica.db"),
    )


class TestServer:
    """Tests for Server."""

    @pytest.mark.asyncio
    async def test_start_consume_shutdown(self, config):
        server = Server(config)
        task = asyncio.create_task(server.start())

        try:
            for _ in range(300):
                if server.group is not None:
                    break
                await asyncio.sleep(0.01)
            assert [c.topic for c in server.group.consumers] == ["organizations.v1", "roles.v1"]

            org_id = str(uuid.uuid4())
            await server.wal.append(
                "organizations.v1",
                org_id,
                json.dumps(organization_payload(org_id)).encode(),
                {"event_type": b"organization.created"},
            )

            consumer = server.group.consumers[0]
            for _ in range(300):
                if consumer.stats["processed_count"] == 1:
                    break
                await asyncio.sleep(0.01)

            org = await EntityStore(server.store).get_organization(org_id)
            assert org.name == "Acme"
        finally:
            server.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await server.stop()

        assert server.group is None
        assert server.wal is None

    @pytest.mark.asyncio
    async def test_returns_when_every_consumer_stopped(self, config):
        """With no consumer left running the server stops waiting and reports why."""
        server = Server(config)
        build_consumers = server.build_consumers

        def build_broken_consumers(wal, store):
            consumers = build_consumers(wal, store)
            for consumer in consumers:
                consumer.processor = UnavailableStoreProcessor()
            return consumers

        server.build_consumers = build_broken_consumers
        task = asyncio.create_task(server.start())

        try:
            for _ in range(300):
                if server.group is not None:
                    break
                await asyncio.sleep(0.01)

            org_id = str(uuid.uuid4())
            await server.wal.append(
                "organizations.v1",
                org_id,
                json.dumps(organization_payload(org_id)).encode(),
                {"event_type": b"organization.created"},
            )
            await server.wal.append(
                "roles.v1",
                org_id,
                json.dumps(role_payload(org_id, 0, "Owner")).encode(),
                {"event_type": b"role.created"},
            )

            await asyncio.wait_for(task, timeout=3.0)
        finally:
            await server.stop()

        assert set(server.consumer_errors) == {"organizations.v1", "roles.v1"}
        assert all(isinstance(e, StoreUnavailableError) for e in server.consumer_errors.values())

    @pytest.mark.asyncio
    async def test_shutdown_request_leaves_no_consumer_errors(self, config):
        server = Server(config)
        task = asyncio.create_task(server.start())
        for _ in range(300):
            if server.group is not None:
                break
            await asyncio.sleep(0.01)

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        await server.stop()

        assert server.consumer_errors == {}

    @pytest.mark.asyncio
    async def test_stop_without_start(self, config):
        server = Server(config)

        await server.stop()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers, root.level = handlers, level

    def test_json_format(self):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="debug")))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("aiokafka").level == logging.WARNING

    def test_text_format(self):
        setup_logging(ServerConfig(observability=ObservabilityConfig(log_format="text")))

        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)
