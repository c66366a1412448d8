"""
Integration tests for the event processor.

Each test applies validated events to a real SQLite replica and checks the
resulting rows.
"""

import json
import uuid

import pytest

from replicas.replica_server.errors import NotFoundError, PayloadError, ProtectedInvariantError
from replicas.replica_server.events.contracts import EventType
from replicas.replica_server.events.processor import EventProcessor
from replicas.replica_server.inbox.gateway import InboxStatus
from tests.helpers import member_payload, organization_payload, role_payload


@pytest.fixture
def processor(entities, ranks):
    return EventProcessor(entities, ranks)


async def apply(processor, event_type, payload):
    return await processor.process(event_type, json.dumps(payload))


class TestOrganizationEvents:
    """Tests for organization handlers."""

    @pytest.mark.asyncio
    async def test_created_then_updated(self, processor, entities, org_id):
        status = await apply(processor, EventType.ORGANIZATION_CREATED, organization_payload(org_id))
        assert status is InboxStatus.PROCESSED

        await apply(processor, EventType.ORGANIZATION_UPDATED, organization_payload(org_id, "Acme 2"))

        org = await entities.get_organization(org_id)
        assert org.name == "Acme 2"
        assert org.status == "active"
        assert org.max_roles == 10
        assert org.created_at == 1704067200000

    @pytest.mark.asyncio
    async def test_status_events_override_status(self, processor, entities, org_id):
        await apply(processor, EventType.ORGANIZATION_CREATED, organization_payload(org_id))

        await apply(processor, EventType.ORGANIZATION_SUSPENDED, organization_payload(org_id))
        assert (await entities.get_organization(org_id)).status == "suspended"

        await apply(processor, EventType.ORGANIZATION_DEACTIVATED, organization_payload(org_id))
        assert (await entities.get_organization(org_id)).status == "inactive"

        await apply(processor, EventType.ORGANIZATION_ACTIVATED, organization_payload(org_id))
        assert (await entities.get_organization(org_id)).status == "active"

    @pytest.mark.asyncio
    async def test_deleted_removes_dependents(self, processor, entities, ranks, org_id):
        member_id = str(uuid.uuid4())
        head_id = str(uuid.uuid4())
        await apply(processor, EventType.ORGANIZATION_CREATED, organization_payload(org_id))
        await apply(
            processor,
            EventType.ROLE_CREATED,
            role_payload(org_id, 0, "Owner", role_id=head_id, head=True),
        )
        await apply(
            processor,
            EventType.MEMBER_CREATED,
            member_payload(member_id, str(uuid.uuid4()), org_id),
        )
        await apply(
            processor,
            EventType.MEMBER_ROLE_ADDED,
            {"member_id": member_id, "role_id": head_id},
        )

        await apply(processor, EventType.ORGANIZATION_DELETED, organization_payload(org_id))

        assert await entities.get_organization(org_id) is None
        assert await ranks.list_roles(org_id) == []
        assert await entities.get_member(member_id) is None
        assert await entities.list_member_role_ids(member_id) == []

    @pytest.mark.asyncio
    async def test_invalid_payload(self, processor):
        with pytest.raises(PayloadError):
            await processor.process(EventType.ORGANIZATION_CREATED, b'{"organization": {}}')


class TestMemberEvents:
    """Tests for member handlers."""

    @pytest.mark.asyncio
    async def test_member_lifecycle(self, processor, entities, ranks, org_id):
        member_id = str(uuid.uuid4())
        account_id = str(uuid.uuid4())
        role_id = str(uuid.uuid4())
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 0, "Mod", role_id=role_id))

        await apply(processor, EventType.MEMBER_CREATED, member_payload(member_id, account_id, org_id))
        await apply(
            processor,
            EventType.MEMBER_UPDATED,
            member_payload(member_id, account_id, org_id, position="Lead"),
        )
        member = await entities.get_member(member_id)
        assert member.position == "Lead"
        assert member.account_id == account_id

        payload = {"member_id": member_id, "role_id": role_id}
        await apply(processor, EventType.MEMBER_ROLE_ADDED, payload)
        await apply(processor, EventType.MEMBER_ROLE_ADDED, payload)
        assert await entities.list_member_role_ids(member_id) == [role_id]

        await apply(processor, EventType.MEMBER_ROLE_REMOVED, payload)
        assert await entities.list_member_role_ids(member_id) == []

        await apply(processor, EventType.MEMBER_ROLE_ADDED, payload)
        await apply(processor, EventType.MEMBER_DELETED, member_payload(member_id, account_id, org_id))
        assert await entities.get_member(member_id) is None
        assert await entities.list_member_role_ids(member_id) == []


class TestRoleEvents:
    """Tests for role handlers."""

    @pytest.mark.asyncio
    async def test_created_inserts_at_rank(self, processor, ranks, org_id):
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 0, "A"))
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 1, "B"))
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 0, "C"))

        roles = await ranks.list_roles(org_id)
        assert [(r.name, r.rank) for r in roles] == [("C", 0), ("A", 1), ("B", 2)]

    @pytest.mark.asyncio
    async def test_created_twice_updates_details(self, processor, ranks, org_id):
        role_id = str(uuid.uuid4())
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 0, "A", role_id=role_id))
        await apply(
            processor,
            EventType.ROLE_CREATED,
            role_payload(org_id, 0, "A", role_id=role_id, color="#222222"),
        )

        roles = await ranks.list_roles(org_id)
        assert len(roles) == 1
        assert roles[0].color == "#222222"

    @pytest.mark.asyncio
    async def test_updated_changes_details_and_rank(self, processor, ranks, org_id):
        ids = [str(uuid.uuid4()) for _ in range(3)]
        for rank, (role_id, name) in enumerate(zip(ids, ["A", "B", "C"])):
            await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, rank, name, role_id=role_id))

        await apply(processor, EventType.ROLE_UPDATED, role_payload(org_id, 2, "A2", role_id=ids[0]))

        roles = await ranks.list_roles(org_id)
        assert [(r.name, r.rank) for r in roles] == [("B", 0), ("C", 1), ("A2", 2)]

    @pytest.mark.asyncio
    async def test_updated_missing_role(self, processor, org_id):
        with pytest.raises(NotFoundError):
            await apply(processor, EventType.ROLE_UPDATED, role_payload(org_id, 0, "A"))

    @pytest.mark.asyncio
    async def test_deleted_shifts_and_tolerates_missing(self, processor, ranks, org_id):
        ids = [str(uuid.uuid4()) for _ in range(3)]
        for rank, (role_id, name) in enumerate(zip(ids, ["A", "B", "C"])):
            await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, rank, name, role_id=role_id))

        payload = role_payload(org_id, 0, "A", role_id=ids[0])
        assert await apply(processor, EventType.ROLE_DELETED, payload) is InboxStatus.PROCESSED
        assert await apply(processor, EventType.ROLE_DELETED, payload) is InboxStatus.PROCESSED

        roles = await ranks.list_roles(org_id)
        assert [(r.name, r.rank) for r in roles] == [("B", 0), ("C", 1)]

    @pytest.mark.asyncio
    async def test_ranks_updated(self, processor, ranks, org_id):
        ids = [str(uuid.uuid4()) for _ in range(4)]
        for rank, (role_id, name) in enumerate(zip(ids, ["A", "B", "C", "D"])):
            await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, rank, name, role_id=role_id))

        await apply(
            processor,
            EventType.ROLES_RANKS_UPDATED,
            {"organization_id": org_id, "ranks": {ids[3]: 0}},
        )

        assert [r.name for r in await ranks.list_roles(org_id)] == ["D", "A", "B", "C"]

    @pytest.mark.asyncio
    async def test_permissions_updated(self, processor, entities, org_id):
        role_id = str(uuid.uuid4())
        perm_a, perm_b = str(uuid.uuid4()), str(uuid.uuid4())
        await apply(processor, EventType.ROLE_CREATED, role_payload(org_id, 0, "Mod", role_id=role_id))

        await apply(
            processor,
            EventType.ROLE_PERMISSIONS_UPDATED,
            {"role_id": role_id, "permissions": {perm_a: True, perm_b: True}},
        )
        await apply(
            processor,
            EventType.ROLE_PERMISSIONS_UPDATED,
            {"role_id": role_id, "permissions": {perm_b: False}},
        )

        assert await entities.list_role_permission_ids(role_id) == [perm_a]

    @pytest.mark.asyncio
    async def test_revoke_from_head_rejected(self, processor, entities, org_id):
        head_id = str(uuid.uuid4())
        perm_id = str(uuid.uuid4())
        await entities.upsert_permission(perm_id, "roles.manage")
        await apply(processor, EventType.ORGANIZATION_CREATED, organization_payload(org_id))
        await apply(
            processor,
            EventType.ROLE_CREATED,
            role_payload(org_id, 0, "Owner", role_id=head_id, head=True),
        )

        with pytest.raises(ProtectedInvariantError):
            await apply(
                processor,
                EventType.ROLE_PERMISSIONS_UPDATED,
                {"role_id": head_id, "permissions": {perm_id: False}},
            )

    def test_every_event_type_has_handler(self, processor):
        assert set(processor.handlers()) == set(EventType)


class TestInviteEvents:
    """Tests for invite handlers."""

    @pytest.mark.asyncio
    async def test_invite_lifecycle(self, processor, entities, org_id):
        invite_id = str(uuid.uuid4())
        payload = {
            "invite": {
                "id": invite_id,
                "organization_id": org_id,
                "account_id": str(uuid.uuid4()),
                "status": "sent",
                "expires_at": "2030-01-01T00:00:00Z",
                "created_at": "2024-01-01T00:00:00Z",
            }
        }

        await apply(processor, EventType.INVITE_CREATED, payload)
        invite = await entities.get_invite(invite_id)
        assert invite.status == "sent"
        assert invite.expires_at == 1893456000000

        await apply(processor, EventType.INVITE_ACCEPTED, payload)
        assert (await entities.get_invite(invite_id)).status == "accepted"

        await apply(processor, EventType.INVITE_DECLINED, payload)
        assert (await entities.get_invite(invite_id)).status == "declined"

        await apply(processor, EventType.INVITE_DELETED, payload)
        assert await entities.get_invite(invite_id) is None


class TestAccountAndProfileEvents:
    """Tests for account and profile handlers."""

    @pytest.mark.asyncio
    async def test_profile_lifecycle(self, processor, entities):
        account_id = str(uuid.uuid4())

        await apply(
            processor,
            EventType.ACCOUNT_CREATED,
            {"account": {"id": account_id, "username": "alice"}, "email": "a@example.com"},
        )
        profile = await entities.get_profile(account_id)
        assert profile.username == "alice"
        assert profile.official is False

        await apply(
            processor,
            EventType.PROFILE_UPDATED,
            {"profile": {"account_id": account_id, "username": "alice", "official": True, "pseudonym": "al"}},
        )

        await apply(
            processor,
            EventType.ACCOUNT_USERNAME_CHANGED,
            {"account": {"id": account_id, "username": "alice2"}},
        )
        profile = await entities.get_profile(account_id)
        assert profile.username == "alice2"
        assert profile.official is True
        assert profile.pseudonym == "al"

        await apply(processor, EventType.ACCOUNT_DELETED, {"account_id": account_id})
        assert await entities.get_profile(account_id) is None
