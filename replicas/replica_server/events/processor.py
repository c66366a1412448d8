"""
Event processor: applies one validated event to the replica.

The processor maps every EventType to a handler. Handlers only write; the
consumer loop owns the transaction, the inbox row and the offset.

Invariants:
    - Every handler is idempotent: applying the same event twice leaves the
      replica as applying it once
    - Handlers return InboxStatus.PROCESSED or raise; they never swallow
      store errors
    - Rank changes go through RoleRanks only

How to change safely:
    - A new event type needs a contract in contracts.py, a handler here and
      an entry in handlers()
    - Keep handlers free of broker concerns (no offsets, no headers)
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from ..errors import NotFoundError
from ..inbox.gateway import InboxStatus
from ..ranks.role_ranks import RoleAttrs, RoleRanks
from ..store.entities import EntityStore
from .contracts import (
    AccountDeletedPayload,
    AccountPayload,
    Contract,
    EventType,
    InvitePayload,
    MemberPayload,
    MemberRolePayload,
    OrganizationPayload,
    ProfilePayload,
    RolePayload,
    RolePermissionsPayload,
    RolesRanksPayload,
    parse_payload,
    to_ms,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Contract], Awaitable[InboxStatus]]

# Status events override the status carried in the payload
_ORGANIZATION_STATUS = {
    EventType.ORGANIZATION_ACTIVATED: "active",
    EventType.ORGANIZATION_DEACTIVATED: "inactive",
    EventType.ORGANIZATION_SUSPENDED: "suspended",
}

_INVITE_STATUS = {
    EventType.INVITE_ACCEPTED: "accepted",
    EventType.INVITE_DECLINED: "declined",
}


class EventProcessor:
    """Applies replicated events to the entity tables and role ranks.

    Example:
        >>> processor = EventProcessor(entities, ranks)
        >>> status = await processor.process(EventType.ROLE_CREATED, record.value)
    """

    def __init__(self, entities: EntityStore, ranks: RoleRanks) -> None:
        self.entities = entities
        self.ranks = ranks
        self._handlers = self._build_handlers()

    def handlers(self) -> dict[EventType, Handler]:
        """Handler per event type (a copy)."""
        return dict(self._handlers)

    async def process(self, event_type: EventType, raw: str | bytes) -> InboxStatus:
        """Validate a raw payload and apply it.

        Raises:
            PayloadError: If the payload does not match its contract
            ReplicaError: If the handler's writes are rejected
        """
        payload = parse_payload(event_type, raw)
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("No handler for event type", extra={"event_type": event_type.value})
            return InboxStatus.PROCESSED
        return await handler(payload)

    def _build_handlers(self) -> dict[EventType, Handler]:
        handlers: dict[EventType, Handler] = {}

        for event_type in (
            EventType.ORGANIZATION_CREATED,
            EventType.ORGANIZATION_UPDATED,
            EventType.ORGANIZATION_ACTIVATED,
            EventType.ORGANIZATION_DEACTIVATED,
            EventType.ORGANIZATION_SUSPENDED,
        ):
            handlers[event_type] = self._organization_upsert(_ORGANIZATION_STATUS.get(event_type))
        handlers[EventType.ORGANIZATION_DELETED] = self._organization_deleted

        handlers[EventType.MEMBER_CREATED] = self._member_upsert
        handlers[EventType.MEMBER_UPDATED] = self._member_upsert
        handlers[EventType.MEMBER_DELETED] = self._member_deleted
        handlers[EventType.MEMBER_ROLE_ADDED] = self._member_role_added
        handlers[EventType.MEMBER_ROLE_REMOVED] = self._member_role_removed

        handlers[EventType.ROLE_CREATED] = self._role_created
        handlers[EventType.ROLE_UPDATED] = self._role_updated
        handlers[EventType.ROLE_DELETED] = self._role_deleted
        handlers[EventType.ROLES_RANKS_UPDATED] = self._roles_ranks_updated
        handlers[EventType.ROLE_PERMISSIONS_UPDATED] = self._role_permissions_updated

        for event_type in (
            EventType.INVITE_CREATED,
            EventType.INVITE_ACCEPTED,
            EventType.INVITE_DECLINED,
        ):
            handlers[event_type] = self._invite_upsert(_INVITE_STATUS.get(event_type))
        handlers[EventType.INVITE_DELETED] = self._invite_deleted

        handlers[EventType.ACCOUNT_CREATED] = self._account_username
        handlers[EventType.ACCOUNT_USERNAME_CHANGED] = self._account_username
        handlers[EventType.ACCOUNT_DELETED] = self._account_deleted

        handlers[EventType.PROFILE_UPDATED] = self._profile_updated
        return handlers

    # Organizations

    def _organization_upsert(self, status: str | None) -> Handler:
        async def handle(payload: OrganizationPayload) -> InboxStatus:
            org = payload.organization
            await self.entities.upsert_organization(
                str(org.id),
                name=org.name,
                status=status or org.status,
                icon=org.icon,
                max_roles=org.max_roles,
                created_at=to_ms(org.created_at),
                updated_at=to_ms(org.updated_at),
            )
            return InboxStatus.PROCESSED

        return handle

    async def _organization_deleted(self, payload: OrganizationPayload) -> InboxStatus:
        await self.entities.delete_organization(str(payload.organization.id))
        return InboxStatus.PROCESSED

    # Members

    async def _member_upsert(self, payload: MemberPayload) -> InboxStatus:
        member = payload.member
        await self.entities.upsert_member(
            str(member.id),
            account_id=str(member.account_id),
            organization_id=str(member.organization_id),
            position=member.position,
            label=member.label,
            created_at=to_ms(member.created_at),
            updated_at=to_ms(member.updated_at),
        )
        return InboxStatus.PROCESSED

    async def _member_deleted(self, payload: MemberPayload) -> InboxStatus:
        await self.entities.delete_member(str(payload.member.id))
        return InboxStatus.PROCESSED

    async def _member_role_added(self, payload: MemberRolePayload) -> InboxStatus:
        await self.entities.add_member_role(str(payload.member_id), str(payload.role_id))
        return InboxStatus.PROCESSED

    async def _member_role_removed(self, payload: MemberRolePayload) -> InboxStatus:
        await self.entities.remove_member_role(str(payload.member_id), str(payload.role_id))
        return InboxStatus.PROCESSED

    # Roles

    async def _role_created(self, payload: RolePayload) -> InboxStatus:
        role = payload.role
        role_id = str(role.id)

        if await self.ranks.get_role(role_id) is not None:
            await self.entities.update_role_details(
                role_id,
                name=role.name,
                description=role.description,
                color=role.color,
                updated_at=to_ms(role.updated_at),
            )
            return InboxStatus.PROCESSED

        await self.ranks.insert_at_rank(
            str(role.organization_id),
            role.rank,
            RoleAttrs(
                id=role_id,
                name=role.name,
                color=role.color,
                description=role.description,
                head=role.head,
                created_at=to_ms(role.created_at),
            ),
        )
        return InboxStatus.PROCESSED

    async def _role_updated(self, payload: RolePayload) -> InboxStatus:
        role = payload.role
        role_id = str(role.id)

        current = await self.ranks.get_role(role_id)
        if current is None:
            raise NotFoundError("role", role_id)

        await self.entities.update_role_details(
            role_id,
            name=role.name,
            description=role.description,
            color=role.color,
            updated_at=to_ms(role.updated_at),
        )
        if current.rank != role.rank:
            await self.ranks.move_rank(role_id, role.rank)
        return InboxStatus.PROCESSED

    async def _role_deleted(self, payload: RolePayload) -> InboxStatus:
        role_id = str(payload.role.id)
        try:
            await self.ranks.delete_and_shift_ranks(role_id)
        except NotFoundError:
            logger.debug("Role already deleted", extra={"role_id": role_id})
        return InboxStatus.PROCESSED

    async def _roles_ranks_updated(self, payload: RolesRanksPayload) -> InboxStatus:
        assignment = {str(role_id): rank for role_id, rank in payload.ranks.items()}
        await self.ranks.bulk_reorder(str(payload.organization_id), assignment)
        return InboxStatus.PROCESSED

    async def _role_permissions_updated(self, payload: RolePermissionsPayload) -> InboxStatus:
        role_id = str(payload.role_id)
        for permission_id, granted in payload.permissions.items():
            if granted:
                await self.entities.grant_permission(role_id, str(permission_id))
            else:
                await self.entities.revoke_permission(role_id, str(permission_id))
        return InboxStatus.PROCESSED

    # Invites

    def _invite_upsert(self, status: str | None) -> Handler:
        async def handle(payload: InvitePayload) -> InboxStatus:
            invite = payload.invite
            await self.entities.upsert_invite(
                str(invite.id),
                organization_id=str(invite.organization_id),
                account_id=str(invite.account_id),
                status=status or invite.status,
                expires_at=to_ms(invite.expires_at),
                created_at=to_ms(invite.created_at),
            )
            return InboxStatus.PROCESSED

        return handle

    async def _invite_deleted(self, payload: InvitePayload) -> InboxStatus:
        await self.entities.delete_invite(str(payload.invite.id))
        return InboxStatus.PROCESSED

    # Accounts and profiles

    async def _account_username(self, payload: AccountPayload) -> InboxStatus:
        account = payload.account
        await self.entities.upsert_profile(
            str(account.id), username=account.username, update_details=False
        )
        return InboxStatus.PROCESSED

    async def _account_deleted(self, payload: AccountDeletedPayload) -> InboxStatus:
        await self.entities.delete_profile(str(payload.account_id))
        return InboxStatus.PROCESSED

    async def _profile_updated(self, payload: ProfilePayload) -> InboxStatus:
        profile = payload.profile
        await self.entities.upsert_profile(
            str(profile.account_id),
            username=profile.username,
            official=profile.official,
            pseudonym=profile.pseudonym,
        )
        return InboxStatus.PROCESSED
