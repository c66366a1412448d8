"""
Store module for the replica - SQLite persistence.

This module handles:
- The replica database, its schema and head-role protection triggers
- Transaction scopes with savepoint nesting
- Plain upsert/delete accessors for replicated entities

Invariants:
    - All writes run inside ReplicaStore.transaction()
    - sqlite3 errors are translated before leaving this package

How to change safely:
    - Keep schema changes additive
    - Put new protections in triggers, not in callers
"""

from .entities import EntityStore, Invite, Member, Organization, Profile
from .replica_store import ReplicaStore, now_ms

__all__ = [
    "ReplicaStore",
    "now_ms",
    "EntityStore",
    "Organization",
    "Member",
    "Invite",
    "Profile",
]
