"""
Entity accessors for replicated organization state.

Plain persistence for organizations, members, invites, profiles, role
display fields and role/permission links. Rank changes do not live here;
they belong to ranks.role_ranks.

Invariants:
    - Every write is an upsert or a conditional delete, so replaying an
      event leaves the replica unchanged
    - Reads return None / empty lists for missing rows
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from .replica_store import ReplicaStore, now_ms

logger = logging.getLogger(__name__)


@dataclass
class Organization:
    id: str
    status: str
    verified: bool
    name: str
    icon: str | None
    max_roles: int
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Organization:
        return cls(
            id=row["id"],
            status=row["status"],
            verified=bool(row["verified"]),
            name=row["name"],
            icon=row["icon"],
            max_roles=row["max_roles"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Member:
    id: str
    account_id: str
    organization_id: str
    position: str | None
    label: str | None
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Member:
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            organization_id=row["organization_id"],
            position=row["position"],
            label=row["label"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class Invite:
    id: str
    organization_id: str
    account_id: str
    status: str
    expires_at: int
    created_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Invite:
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            account_id=row["account_id"],
            status=row["status"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )


@dataclass
class Profile:
    account_id: str
    username: str
    official: bool
    pseudonym: str | None
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Profile:
        return cls(
            account_id=row["account_id"],
            username=row["username"],
            official=bool(row["official"]),
            pseudonym=row["pseudonym"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class EntityStore:
    """Upsert/delete accessors over the replica tables.

    Every method joins the caller's transaction when there is one.
    """

    def __init__(self, store: ReplicaStore) -> None:
        self.store = store

    # Organizations

    async def upsert_organization(
        self,
        organization_id: str,
        name: str,
        status: str,
        icon: str | None,
        max_roles: int,
        created_at: int,
        updated_at: int,
    ) -> None:
        await self.store.execute(
            """
            INSERT INTO organizations
                (id, status, name, icon, max_roles, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                name = excluded.name,
                icon = excluded.icon,
                max_roles = excluded.max_roles,
                updated_at = excluded.updated_at
            """,
            (organization_id, status, name, icon, max_roles, created_at, updated_at),
        )

    async def get_organization(self, organization_id: str) -> Organization | None:
        row = await self.store.fetch_one(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        )
        return Organization.from_row(row) if row else None

    async def delete_organization(self, organization_id: str) -> bool:
        """Delete an organization with its members, invites and roles.

        The organization row goes first: the head role is only deletable
        once its organization is gone.
        """
        async with self.store.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM organizations WHERE id = ?", (organization_id,)
            ).rowcount
            role_ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM organization_roles WHERE organization_id = ?",
                    (organization_id,),
                )
            ]
            member_ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM organization_members WHERE organization_id = ?",
                    (organization_id,),
                )
            ]
            conn.execute("DELETE FROM organization_roles WHERE organization_id = ?", (organization_id,))
            conn.execute(
                "DELETE FROM organization_members WHERE organization_id = ?", (organization_id,)
            )
            conn.execute(
                "DELETE FROM organization_invites WHERE organization_id = ?", (organization_id,)
            )
            for role_id in role_ids:
                conn.execute(
                    "DELETE FROM organization_role_permission_links WHERE role_id = ?", (role_id,)
                )
                conn.execute("DELETE FROM organization_member_roles WHERE role_id = ?", (role_id,))
            for member_id in member_ids:
                conn.execute(
                    "DELETE FROM organization_member_roles WHERE member_id = ?", (member_id,)
                )
        return deleted > 0

    # Members

    async def upsert_member(
        self,
        member_id: str,
        account_id: str,
        organization_id: str,
        position: str | None,
        label: str | None,
        created_at: int,
        updated_at: int,
    ) -> None:
        await self.store.execute(
            """
            INSERT INTO organization_members
                (id, account_id, organization_id, position, label, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                position = excluded.position,
                label = excluded.label,
                updated_at = excluded.updated_at
            """,
            (member_id, account_id, organization_id, position, label, created_at, updated_at),
        )

    async def get_member(self, member_id: str) -> Member | None:
        row = await self.store.fetch_one(
            "SELECT * FROM organization_members WHERE id = ?", (member_id,)
        )
        return Member.from_row(row) if row else None

    async def delete_member(self, member_id: str) -> bool:
        """Delete a member and its role links (member row first)."""
        async with self.store.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM organization_members WHERE id = ?", (member_id,)
            ).rowcount
            conn.execute("DELETE FROM organization_member_roles WHERE member_id = ?", (member_id,))
        return deleted > 0

    async def add_member_role(self, member_id: str, role_id: str) -> None:
        await self.store.execute(
            "INSERT OR IGNORE INTO organization_member_roles (member_id, role_id) VALUES (?, ?)",
            (member_id, role_id),
        )

    async def remove_member_role(self, member_id: str, role_id: str) -> bool:
        deleted = await self.store.execute(
            "DELETE FROM organization_member_roles WHERE member_id = ? AND role_id = ?",
            (member_id, role_id),
        )
        return deleted > 0

    async def list_member_role_ids(self, member_id: str) -> list[str]:
        rows = await self.store.fetch_all(
            "SELECT role_id FROM organization_member_roles WHERE member_id = ? ORDER BY role_id",
            (member_id,),
        )
        return [row["role_id"] for row in rows]

    # Invites

    async def upsert_invite(
        self,
        invite_id: str,
        organization_id: str,
        account_id: str,
        status: str,
        expires_at: int,
        created_at: int,
    ) -> None:
        await self.store.execute(
            """
            INSERT INTO organization_invites
                (id, organization_id, account_id, status, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                expires_at = excluded.expires_at
            """,
            (invite_id, organization_id, account_id, status, expires_at, created_at),
        )

    async def get_invite(self, invite_id: str) -> Invite | None:
        row = await self.store.fetch_one(
            "SELECT * FROM organization_invites WHERE id = ?", (invite_id,)
        )
        return Invite.from_row(row) if row else None

    async def delete_invite(self, invite_id: str) -> bool:
        deleted = await self.store.execute(
            "DELETE FROM organization_invites WHERE id = ?", (invite_id,)
        )
        return deleted > 0

    # Profiles

    async def upsert_profile(
        self,
        account_id: str,
        username: str,
        official: bool | None = None,
        pseudonym: str | None = None,
        update_details: bool = True,
    ) -> None:
        """Insert or update a profile.

        With update_details=False only the username of an existing profile
        changes (account events do not carry profile details).
        """
        now = now_ms()
        if update_details:
            conflict = """
                username = excluded.username,
                official = excluded.official,
                pseudonym = excluded.pseudonym,
                updated_at = excluded.updated_at
            """
        else:
            conflict = "username = excluded.username, updated_at = excluded.updated_at"

        await self.store.execute(
            f"""
            INSERT INTO profiles (account_id, username, official, pseudonym, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id) DO UPDATE SET {conflict}
            """,
            (account_id, username, int(bool(official)), pseudonym, now, now),
        )

    async def get_profile(self, account_id: str) -> Profile | None:
        row = await self.store.fetch_one(
            "SELECT * FROM profiles WHERE account_id = ?", (account_id,)
        )
        return Profile.from_row(row) if row else None

    async def delete_profile(self, account_id: str) -> bool:
        deleted = await self.store.execute(
            "DELETE FROM profiles WHERE account_id = ?", (account_id,)
        )
        return deleted > 0

    # Roles (non-rank fields) and permissions

    async def update_role_details(
        self,
        role_id: str,
        name: str,
        description: str,
        color: str,
        updated_at: int,
    ) -> bool:
        updated = await self.store.execute(
            """
            UPDATE organization_roles
            SET name = ?, description = ?, color = ?, updated_at = ?
            WHERE id = ?
            """,
            (name, description, color, updated_at, role_id),
        )
        return updated > 0

    async def upsert_permission(self, permission_id: str, code: str, description: str = "") -> None:
        await self.store.execute(
            """
            INSERT INTO organization_role_permissions (id, code, description)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET code = excluded.code, description = excluded.description
            """,
            (permission_id, code, description),
        )

    async def grant_permission(self, role_id: str, permission_id: str) -> None:
        await self.store.execute(
            """
            INSERT OR IGNORE INTO organization_role_permission_links (role_id, permission_id)
            VALUES (?, ?)
            """,
            (role_id, permission_id),
        )

    async def revoke_permission(self, role_id: str, permission_id: str) -> bool:
        deleted = await self.store.execute(
            "DELETE FROM organization_role_permission_links WHERE role_id = ? AND permission_id = ?",
            (role_id, permission_id),
        )
        return deleted > 0

    async def list_role_permission_ids(self, role_id: str) -> list[str]:
        rows = await self.store.fetch_all(
            """
            SELECT permission_id FROM organization_role_permission_links
            WHERE role_id = ? ORDER BY permission_id
            """,
            (role_id,),
        )
        return [row["permission_id"] for row in rows]
