"""
Error types for the replica server.

This module defines the error taxonomy surfaced by the Rank Engine, the
Inbox Gateway and the Replica Store:
- ReplicaError: Base exception
- ValidationError: Request rejected before any write
- ProtectedInvariantError: Store-enforced constraint violated (head role, etc.)
- NotFoundError: Exactly-one-row expectation not met
- StoreUnavailableError: Transient infrastructure failure

Invariants:
    - All errors inherit from ReplicaError
    - Raw sqlite3 errors never leave the store layer
    - Validation errors are raised before the first write of an operation
"""

from __future__ import annotations

from typing import Any


class ReplicaError(Exception):
    """Base exception for all replica errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "REPLICA_ERROR"
        self.details = details or {}


class ValidationError(ReplicaError):
    """Request is malformed or out of range.

    Raised when:
    - A rank lies outside the organization's permutation
    - Two roles target the same rank
    - A role belongs to another organization
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class RankOutOfRangeError(ValidationError):
    """Requested rank lies outside [low, high]."""

    def __init__(self, rank: int, low: int, high: int) -> None:
        super().__init__(
            f"rank {rank} out of range [{low}..{high}]",
            details={"rank": rank, "low": low, "high": high},
        )
        self.rank = rank
        self.low = low
        self.high = high


class RankConflictError(ValidationError):
    """Two distinct roles were assigned the same rank."""

    def __init__(self, rank: int, first_role_id: str, second_role_id: str) -> None:
        super().__init__(
            f"duplicate rank {rank} for roles {first_role_id} and {second_role_id}",
            details={"rank": rank, "role_ids": [first_role_id, second_role_id]},
        )
        self.code = "RANK_CONFLICT"
        self.rank = rank
        self.role_ids = (first_role_id, second_role_id)


class ForeignRoleError(ValidationError):
    """Role does not belong to the organization being reordered."""

    def __init__(self, role_id: str, organization_id: str) -> None:
        super().__init__(
            f"role {role_id} not in organization {organization_id}",
            details={"role_id": role_id, "organization_id": organization_id},
        )
        self.role_id = role_id
        self.organization_id = organization_id


class NothingToReorderError(ValidationError):
    """Organization has no roles to reorder."""

    def __init__(self, organization_id: str) -> None:
        super().__init__(
            f"no roles in organization {organization_id}",
            details={"organization_id": organization_id},
        )
        self.organization_id = organization_id


class PayloadError(ValidationError):
    """Event payload does not match its contract."""

    pass


class ProtectedInvariantError(ReplicaError):
    """A store-level protection rejected the write.

    Raised when:
    - The head role would be deleted
    - Permissions would be revoked from the head role
    - A role would move to another organization
    - Any other integrity constraint fails
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="PROTECTED_INVARIANT", details=details)


class NotFoundError(ReplicaError):
    """No row matched where exactly one was expected."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} not found: {entity_id}",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class StoreUnavailableError(ReplicaError):
    """Replica store cannot be reached or is locked beyond the busy timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="STORE_UNAVAILABLE")
