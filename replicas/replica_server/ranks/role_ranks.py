"""
Dense rank maintenance for organization roles.

Every organization's roles carry ranks that form exactly {0, 1, ..., n-1}.
This module is the only writer of the rank column.

Invariants:
    - After every operation the ranks of an organization are a permutation
      of 0..n-1 (no gaps, no duplicates)
    - Validation happens before the first write; a rejected request
      leaves the table untouched
    - Each operation is one transaction (or one savepoint of the caller's
      transaction), so readers never observe a half-shifted permutation
    - Shift arithmetic is done by the database inside the writing statement

How to change safely:
    - Any new rank-mutating operation must run inside store.transaction()
    - Test with the permutation check in tests/unit/test_role_ranks.py
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from ..errors import (
    ForeignRoleError,
    NothingToReorderError,
    NotFoundError,
    RankConflictError,
    RankOutOfRangeError,
)
from ..store.replica_store import ReplicaStore, now_ms

logger = logging.getLogger(__name__)

ROLE_COLUMNS = "id, organization_id, head, rank, name, description, color, created_at, updated_at"


@dataclass
class Role:
    """A role of an organization.

    Attributes:
        id: Role identifier (UUID string)
        organization_id: Owning organization
        head: Whether this is the organization's head role
        rank: Position in the organization's dense order
        name: Display name (unique per organization)
        description: Display description
        color: Display color
        created_at: Creation timestamp (Unix ms)
        updated_at: Last update timestamp (Unix ms)
    """

    id: str
    organization_id: str
    head: bool
    rank: int
    name: str
    description: str
    color: str
    created_at: int
    updated_at: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Role:
        return cls(
            id=row["id"],
            organization_id=row["organization_id"],
            head=bool(row["head"]),
            rank=row["rank"],
            name=row["name"],
            description=row["description"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class RoleAttrs:
    """Attributes of a role to insert.

    Attributes:
        name: Display name
        color: Display color
        description: Display description
        head: Whether the role is the head role
        id: Explicit id (replicated roles keep the upstream id)
        created_at: Explicit creation timestamp (Unix ms)
    """

    name: str
    color: str
    description: str = ""
    head: bool = False
    id: str | None = None
    created_at: int | None = None


def plan_reorder(
    current_ids: Sequence[str],
    assignment: Mapping[str, int],
    organization_id: str = "",
) -> dict[str, int]:
    """Build the target permutation for a partial rank assignment.

    Explicitly assigned roles take their ranks; the remaining ranks are
    filled, in increasing order, by the unassigned roles in their current
    relative order.

    Args:
        current_ids: Role ids ordered by current rank
        assignment: Partial mapping of role id to desired rank
        organization_id: Organization the roles belong to (for errors)

    Returns:
        Mapping of role id to new rank, for roles whose rank changes only

    Raises:
        RankOutOfRangeError: If a desired rank is outside [0, n-1]
        RankConflictError: If two roles target the same rank
        ForeignRoleError: If a role is not among current_ids
    """
    n = len(current_ids)

    for rank in assignment.values():
        if rank < 0 or rank >= n:
            raise RankOutOfRangeError(rank, 0, n - 1)

    used: dict[int, str] = {}
    for role_id, rank in assignment.items():
        if rank in used:
            raise RankConflictError(rank, used[rank], role_id)
        used[rank] = role_id

    known = set(current_ids)
    for role_id in assignment:
        if role_id not in known:
            raise ForeignRoleError(role_id, organization_id)

    rest = iter([role_id for role_id in current_ids if role_id not in assignment])
    target = [used[rank] if rank in used else next(rest) for rank in range(n)]

    return {
        role_id: new_rank
        for new_rank, role_id in enumerate(target)
        if current_ids[new_rank] != role_id
    }


class RoleRanks:
    """Atomic rank operations over the organization_roles table.

    Example:
        >>> ranks = RoleRanks(store)
        >>> role = await ranks.insert_at_rank(org_id, 0, RoleAttrs(name="Admin", color="#f00"))
        >>> await ranks.move_rank(role.id, 2)
        >>> await ranks.bulk_reorder(org_id, {role.id: 0})
    """

    def __init__(self, store: ReplicaStore) -> None:
        self.store = store

    async def get_role(self, role_id: str) -> Role | None:
        """Get a role by id, or None if not found."""
        row = await self.store.fetch_one(
            f"SELECT {ROLE_COLUMNS} FROM organization_roles WHERE id = ?",
            (role_id,),
        )
        return Role.from_row(row) if row else None

    async def list_roles(self, organization_id: str) -> list[Role]:
        """Roles of an organization ordered by rank."""
        rows = await self.store.fetch_all(
            f"""
            SELECT {ROLE_COLUMNS} FROM organization_roles
            WHERE organization_id = ?
            ORDER BY rank ASC, id ASC
            """,
            (organization_id,),
        )
        return [Role.from_row(row) for row in rows]

    async def count_roles(self, organization_id: str) -> int:
        row = await self.store.fetch_one(
            "SELECT COUNT(*) FROM organization_roles WHERE organization_id = ?",
            (organization_id,),
        )
        return row[0]

    async def insert_at_rank(self, organization_id: str, rank: int, attrs: RoleAttrs) -> Role:
        """Insert a role at rank, shifting roles at or above it up by one.

        Raises:
            RankOutOfRangeError: If rank is outside [0, n]
            ProtectedInvariantError: If the insert violates a store constraint
                (duplicate name, second head role)
        """
        role_id = attrs.id or str(uuid.uuid4())
        created_at = attrs.created_at or now_ms()
        now = now_ms()

        async with self.store.transaction() as conn:
            n = await self.count_roles(organization_id)
            if rank < 0 or rank > n:
                raise RankOutOfRangeError(rank, 0, n)

            conn.execute(
                """
                UPDATE organization_roles
                SET rank = rank + 1, updated_at = ?
                WHERE organization_id = ? AND rank >= ?
                """,
                (now, organization_id, rank),
            )
            conn.execute(
                """
                INSERT INTO organization_roles
                    (id, organization_id, head, rank, name, description, color,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    role_id,
                    organization_id,
                    int(attrs.head),
                    rank,
                    attrs.name,
                    attrs.description,
                    attrs.color,
                    created_at,
                    now,
                ),
            )
            role = await self.get_role(role_id)

        logger.debug(
            "Inserted role at rank",
            extra={"organization_id": organization_id, "role_id": role_id, "rank": rank},
        )
        return role

    async def move_rank(self, role_id: str, new_rank: int) -> Role:
        """Move a role to new_rank, rotating the roles in between by one.

        Raises:
            NotFoundError: If the role does not exist
            RankOutOfRangeError: If new_rank is outside [0, n-1]
        """
        async with self.store.transaction() as conn:
            role = await self.get_role(role_id)
            if role is None:
                raise NotFoundError("role", role_id)

            n = await self.count_roles(role.organization_id)
            if new_rank < 0 or new_rank >= n:
                raise RankOutOfRangeError(new_rank, 0, n - 1)

            old_rank = role.rank
            if old_rank == new_rank:
                return role

            conn.execute(
                """
                UPDATE organization_roles
                SET
                    rank = CASE
                        WHEN id = :id THEN :new
                        WHEN :new < :old THEN rank + 1
                        ELSE rank - 1
                    END,
                    updated_at = :now
                WHERE organization_id = :org
                  AND rank BETWEEN MIN(:old, :new) AND MAX(:old, :new)
                """,
                {
                    "id": role_id,
                    "new": new_rank,
                    "old": old_rank,
                    "org": role.organization_id,
                    "now": now_ms(),
                },
            )
            moved = await self.get_role(role_id)

        logger.debug(
            "Moved role rank",
            extra={"role_id": role_id, "old_rank": old_rank, "new_rank": new_rank},
        )
        return moved

    async def delete_and_shift_ranks(self, role_id: str) -> Role:
        """Delete a role and close the gap it leaves.

        The role's member and permission links go with it.

        Returns:
            The deleted role

        Raises:
            NotFoundError: If the role does not exist
            ProtectedInvariantError: If the role is the head role
        """
        async with self.store.transaction() as conn:
            role = await self.get_role(role_id)
            if role is None:
                raise NotFoundError("role", role_id)

            conn.execute("DELETE FROM organization_roles WHERE id = ?", (role_id,))
            conn.execute("DELETE FROM organization_member_roles WHERE role_id = ?", (role_id,))
            conn.execute(
                "DELETE FROM organization_role_permission_links WHERE role_id = ?", (role_id,)
            )
            conn.execute(
                """
                UPDATE organization_roles
                SET rank = rank - 1, updated_at = ?
                WHERE organization_id = ? AND rank > ?
                """,
                (now_ms(), role.organization_id, role.rank),
            )

        logger.debug(
            "Deleted role and shifted ranks",
            extra={"organization_id": role.organization_id, "role_id": role_id, "rank": role.rank},
        )
        return role

    async def bulk_reorder(self, organization_id: str, assignment: Mapping[str, int]) -> list[Role]:
        """Apply a partial rank assignment to an organization's roles.

        Unassigned roles keep their relative order. Only roles whose rank
        actually changes are written, in a single statement.

        Returns:
            All roles of the organization ordered by their new rank

        Raises:
            NothingToReorderError: If the organization has no roles
            RankOutOfRangeError: If a rank is outside [0, n-1]
            RankConflictError: If two roles target the same rank
            ForeignRoleError: If a role is not in the organization
        """
        async with self.store.transaction() as conn:
            roles = await self.list_roles(organization_id)
            if not roles:
                raise NothingToReorderError(organization_id)

            changes = plan_reorder([r.id for r in roles], assignment, organization_id)
            if not changes:
                return roles

            cases = " ".join("WHEN ? THEN ?" for _ in changes)
            placeholders = ", ".join("?" for _ in changes)
            params: list = []
            for changed_id, new_rank in changes.items():
                params.extend((changed_id, new_rank))
            params.append(now_ms())
            params.append(organization_id)
            params.extend(changes.keys())

            conn.execute(
                f"""
                UPDATE organization_roles
                SET rank = CASE id {cases} END, updated_at = ?
                WHERE organization_id = ? AND id IN ({placeholders})
                """,
                params,
            )
            reordered = await self.list_roles(organization_id)

        logger.debug(
            "Reordered roles",
            extra={"organization_id": organization_id, "changed": len(changes)},
        )
        return reordered
