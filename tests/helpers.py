"""Helpers shared by replica tests."""

import json
import time
import uuid

from replicas.replica_server.ranks.role_ranks import RoleAttrs
from replicas.replica_server.wal.base import StreamPos, StreamRecord

_offsets: dict = {}


async def seed_roles(ranks, organization_id, names):
    """Insert roles named by names at ranks 0..n-1, in order."""
    roles = []
    for rank, name in enumerate(names):
        roles.append(
            await ranks.insert_at_rank(organization_id, rank, RoleAttrs(name=name, color="#000"))
        )
    return roles


async def role_names(ranks, organization_id):
    """Role names of an organization ordered by rank."""
    return [role.name for role in await ranks.list_roles(organization_id)]


async def assert_dense(ranks, organization_id):
    """Ranks of the organization form 0..n-1."""
    roles = await ranks.list_roles(organization_id)
    assert sorted(role.rank for role in roles) == list(range(len(roles)))


def make_record(topic, event_type, payload, key="key-1", offset=None, partition=0, event_id=None):
    """Build a broker record without a stream."""
    if offset is None:
        offset = _offsets.get((topic, partition), 0)
    _offsets[(topic, partition)] = offset + 1

    headers = {}
    if event_type is not None:
        headers["event_type"] = event_type.encode("utf-8")
    if event_id is not None:
        headers["event_id"] = event_id.encode("utf-8")

    value = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return StreamRecord(
        key=key,
        value=value,
        position=StreamPos(
            topic=topic,
            partition=partition,
            offset=offset,
            timestamp_ms=int(time.time() * 1000),
        ),
        headers=headers,
    )


def role_payload(organization_id, rank, name, role_id=None, head=False, color="#111111"):
    return {
        "role": {
            "id": role_id or str(uuid.uuid4()),
            "organization_id": organization_id,
            "head": head,
            "rank": rank,
            "name": name,
            "description": "",
            "color": color,
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-01T00:00:00Z",
        }
    }


def organization_payload(organization_id, name="Acme", status="active"):
    return {
        "organization": {
            "id": organization_id,
            "status": status,
            "name": name,
            "icon": None,
            "max_roles": 10,
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-01T00:00:00Z",
        }
    }


def member_payload(member_id, account_id, organization_id, position="Engineer"):
    return {
        "member": {
            "id": member_id,
            "account_id": account_id,
            "organization_id": organization_id,
            "position": position,
            "label": None,
            "username": "alice",
            "official": False,
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-01T00:00:00Z",
        }
    }
