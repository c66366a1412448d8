"""
Event contracts consumed by the replica.

Each topic carries one entity family. Every message names its event type in
the "event_type" header and carries a JSON payload whose shape is fixed per
event type. Payloads are validated with pydantic; unknown fields are ignored
so producers can add fields without breaking consumers.

Invariants:
    - EventType is closed: a header value outside it parses to None and the
      message is skipped
    - Each EventType belongs to exactly one topic
"""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

import pydantic
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

from ..errors import PayloadError

ORGANIZATIONS_TOPIC_V1 = "organizations.v1"
MEMBERS_TOPIC_V1 = "members.v1"
INVITES_TOPIC_V1 = "invites.v1"
ROLES_TOPIC_V1 = "roles.v1"
PROFILES_TOPIC_V1 = "profiles.v1"
ACCOUNTS_TOPIC_V1 = "accounts.v1"

ALL_TOPICS = (
    ORGANIZATIONS_TOPIC_V1,
    MEMBERS_TOPIC_V1,
    INVITES_TOPIC_V1,
    ROLES_TOPIC_V1,
    PROFILES_TOPIC_V1,
    ACCOUNTS_TOPIC_V1,
)

EVENT_TYPE_HEADER = "event_type"


class EventType(str, Enum):
    """Every event type the replica understands."""

    ORGANIZATION_CREATED = "organization.created"
    ORGANIZATION_UPDATED = "organization.updated"
    ORGANIZATION_ACTIVATED = "organization.activated"
    ORGANIZATION_DEACTIVATED = "organization.deactivated"
    ORGANIZATION_SUSPENDED = "organization.suspended"
    ORGANIZATION_DELETED = "organization.deleted"

    MEMBER_CREATED = "member.created"
    MEMBER_UPDATED = "member.updated"
    MEMBER_DELETED = "member.deleted"
    MEMBER_ROLE_ADDED = "member_role.added"
    MEMBER_ROLE_REMOVED = "member_role.remove"

    ROLE_CREATED = "role.created"
    ROLE_UPDATED = "role.updated"
    ROLE_DELETED = "role.deleted"
    ROLES_RANKS_UPDATED = "roles.ranks.updated"
    ROLE_PERMISSIONS_UPDATED = "role.permissions.updated"

    INVITE_CREATED = "invite.created"
    INVITE_ACCEPTED = "invite.accepted"
    INVITE_DECLINED = "invite.declined"
    INVITE_DELETED = "invite.deleted"

    ACCOUNT_CREATED = "account.created"
    ACCOUNT_USERNAME_CHANGED = "account.username.change"
    ACCOUNT_DELETED = "account.deleted"

    PROFILE_UPDATED = "profile.updated"

    @classmethod
    def parse(cls, value: str | None) -> Optional[EventType]:
        """Parse a header value; unrecognized values give None."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


TOPIC_EVENT_TYPES: dict[str, frozenset[EventType]] = {
    ORGANIZATIONS_TOPIC_V1: frozenset(
        {
            EventType.ORGANIZATION_CREATED,
            EventType.ORGANIZATION_UPDATED,
            EventType.ORGANIZATION_ACTIVATED,
            EventType.ORGANIZATION_DEACTIVATED,
            EventType.ORGANIZATION_SUSPENDED,
            EventType.ORGANIZATION_DELETED,
        }
    ),
    MEMBERS_TOPIC_V1: frozenset(
        {
            EventType.MEMBER_CREATED,
            EventType.MEMBER_UPDATED,
            EventType.MEMBER_DELETED,
            EventType.MEMBER_ROLE_ADDED,
            EventType.MEMBER_ROLE_REMOVED,
        }
    ),
    ROLES_TOPIC_V1: frozenset(
        {
            EventType.ROLE_CREATED,
            EventType.ROLE_UPDATED,
            EventType.ROLE_DELETED,
            EventType.ROLES_RANKS_UPDATED,
            EventType.ROLE_PERMISSIONS_UPDATED,
        }
    ),
    INVITES_TOPIC_V1: frozenset(
        {
            EventType.INVITE_CREATED,
            EventType.INVITE_ACCEPTED,
            EventType.INVITE_DECLINED,
            EventType.INVITE_DELETED,
        }
    ),
    ACCOUNTS_TOPIC_V1: frozenset(
        {
            EventType.ACCOUNT_CREATED,
            EventType.ACCOUNT_USERNAME_CHANGED,
            EventType.ACCOUNT_DELETED,
        }
    ),
    PROFILES_TOPIC_V1: frozenset({EventType.PROFILE_UPDATED}),
}


def to_ms(value: datetime | None) -> int:
    """Convert a payload timestamp to Unix ms (now if absent)."""
    if value is None:
        return int(time.time() * 1000)
    return int(value.timestamp() * 1000)


class Contract(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class OrganizationData(Contract):
    id: UUID
    status: Literal["active", "inactive", "suspended"] = "active"
    name: str
    icon: Optional[str] = None
    max_roles: NonNegativeInt = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrganizationPayload(Contract):
    organization: OrganizationData


class MemberData(Contract):
    id: UUID
    account_id: UUID
    organization_id: UUID
    position: Optional[str] = None
    label: Optional[str] = None
    username: str = ""
    pseudonym: Optional[str] = None
    official: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MemberPayload(Contract):
    member: MemberData


class MemberRolePayload(Contract):
    member_id: UUID
    role_id: UUID


class RoleData(Contract):
    id: UUID
    organization_id: UUID
    head: bool = False
    rank: NonNegativeInt
    name: str
    description: str = ""
    color: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RolePayload(Contract):
    role: RoleData


class RolesRanksPayload(Contract):
    organization_id: UUID
    ranks: dict[UUID, NonNegativeInt]


class RolePermissionsPayload(Contract):
    role_id: UUID
    permissions: dict[UUID, bool]


class InviteData(Contract):
    id: UUID
    organization_id: UUID
    account_id: UUID
    status: Literal["sent", "accepted", "declined"] = "sent"
    expires_at: datetime
    created_at: Optional[datetime] = None


class InvitePayload(Contract):
    invite: InviteData


class AccountData(Contract):
    id: UUID
    username: str
    role: str = ""
    status: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    username_updated_at: Optional[datetime] = Field(
        default=None, alias="username_name_updated_at"
    )


class AccountPayload(Contract):
    account: AccountData
    email: Optional[str] = None


class AccountDeletedPayload(Contract):
    account_id: UUID
    account: Optional[AccountData] = None
    email: Optional[str] = None


class ProfileData(Contract):
    account_id: UUID
    username: str
    official: bool = False
    pseudonym: Optional[str] = None


class ProfilePayload(Contract):
    profile: ProfileData


EVENT_PAYLOADS: dict[EventType, type[Contract]] = {
    EventType.ORGANIZATION_CREATED: OrganizationPayload,
    EventType.ORGANIZATION_UPDATED: OrganizationPayload,
    EventType.ORGANIZATION_ACTIVATED: OrganizationPayload,
    EventType.ORGANIZATION_DEACTIVATED: OrganizationPayload,
    EventType.ORGANIZATION_SUSPENDED: OrganizationPayload,
    EventType.ORGANIZATION_DELETED: OrganizationPayload,
    EventType.MEMBER_CREATED: MemberPayload,
    EventType.MEMBER_UPDATED: MemberPayload,
    EventType.MEMBER_DELETED: MemberPayload,
    EventType.MEMBER_ROLE_ADDED: MemberRolePayload,
    EventType.MEMBER_ROLE_REMOVED: MemberRolePayload,
    EventType.ROLE_CREATED: RolePayload,
    EventType.ROLE_UPDATED: RolePayload,
    EventType.ROLE_DELETED: RolePayload,
    EventType.ROLES_RANKS_UPDATED: RolesRanksPayload,
    EventType.ROLE_PERMISSIONS_UPDATED: RolePermissionsPayload,
    EventType.INVITE_CREATED: InvitePayload,
    EventType.INVITE_ACCEPTED: InvitePayload,
    EventType.INVITE_DECLINED: InvitePayload,
    EventType.INVITE_DELETED: InvitePayload,
    EventType.ACCOUNT_CREATED: AccountPayload,
    EventType.ACCOUNT_USERNAME_CHANGED: AccountPayload,
    EventType.ACCOUNT_DELETED: AccountDeletedPayload,
    EventType.PROFILE_UPDATED: ProfilePayload,
}


def parse_payload(event_type: EventType, raw: str | bytes) -> Contract:
    """Validate a raw JSON payload against its event type's contract.

    Raises:
        PayloadError: If the payload is not valid JSON or does not match
    """
    model = EVENT_PAYLOADS[event_type]
    try:
        return model.model_validate_json(raw)
    except pydantic.ValidationError as e:
        raise PayloadError(
            f"invalid {event_type.value} payload: {e.error_count()} error(s)",
            details={"event_type": event_type.value, "errors": e.errors(include_url=False)},
        ) from e
