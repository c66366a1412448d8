"""
Replica SQLite store.

This module manages the SQLite database that holds the local replica of
organization state:
- Organizations, members, invites and profiles
- Roles with their dense per-organization rank
- Role/permission links and member/role links
- The inbox of every broker event ever recorded

The replica is a materialized view of the upstream event streams.

Invariants:
    - Every write runs inside transaction(); the outermost scope holds
      SQLite's writer lock (BEGIN IMMEDIATE) until commit or rollback
    - A nested transaction() in the same task joins the active connection
      as a SAVEPOINT, so callers compose without knowing who opened it
    - Head-role protections are enforced by triggers, never by callers
    - sqlite3 errors are translated into the replica error taxonomy at the
      scope boundary

How to change safely:
    - Schema changes must be additive (CREATE ... IF NOT EXISTS)
    - Trigger messages start with "protected: "; the rest becomes the
      ProtectedInvariantError message
    - Never spawn tasks inside a transaction scope; they would inherit its connection
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import ProtectedInvariantError, ReplicaError, StoreUnavailableError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS organizations (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'suspended')),
        verified INTEGER NOT NULL DEFAULT 0,
        name TEXT NOT NULL,
        icon TEXT,
        max_roles INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS profiles (
        account_id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        official INTEGER NOT NULL DEFAULT 0,
        pseudonym TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS organization_members (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        position TEXT,
        label TEXT,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        UNIQUE (account_id, organization_id)
    );

    CREATE INDEX IF NOT EXISTS idx_members_org ON organization_members(organization_id);

    CREATE TABLE IF NOT EXISTS organization_invites (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'sent'
            CHECK (status IN ('sent', 'declined', 'accepted')),
        expires_at INTEGER NOT NULL,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_invites_org ON organization_invites(organization_id);

    CREATE TABLE IF NOT EXISTS organization_roles (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        head INTEGER NOT NULL DEFAULT 0,
        rank INTEGER NOT NULL DEFAULT 0 CHECK (rank >= 0),
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        color TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        UNIQUE (organization_id, name)
    );

    CREATE INDEX IF NOT EXISTS idx_roles_org_rank ON organization_roles(organization_id, rank);

    CREATE UNIQUE INDEX IF NOT EXISTS roles_one_head_per_organization
        ON organization_roles(organization_id) WHERE head = 1;

    CREATE TABLE IF NOT EXISTS organization_member_roles (
        member_id TEXT NOT NULL,
        role_id TEXT NOT NULL,
        PRIMARY KEY (member_id, role_id)
    );

    CREATE INDEX IF NOT EXISTS idx_member_roles_role ON organization_member_roles(role_id);

    CREATE TABLE IF NOT EXISTS organization_role_permissions (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL UNIQUE,
        description TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS organization_role_permission_links (
        role_id TEXT NOT NULL,
        permission_id TEXT NOT NULL,
        PRIMARY KEY (role_id, permission_id)
    );

    CREATE TABLE IF NOT EXISTS inbox_events (
        id TEXT PRIMARY KEY,
        topic TEXT NOT NULL,
        stream_partition INTEGER NOT NULL,
        stream_offset INTEGER NOT NULL,
        message_key TEXT NOT NULL,
        event_type TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'processed', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_inbox_status ON inbox_events(status);

    -- Head roles hold every permission
    CREATE TRIGGER IF NOT EXISTS trg_roles_ensure_head_perms_ins
    AFTER INSERT ON organization_roles
    FOR EACH ROW WHEN NEW.head = 1
    BEGIN
        INSERT OR IGNORE INTO organization_role_permission_links (role_id, permission_id)
        SELECT NEW.id, p.id FROM organization_role_permissions p;
    END;

    CREATE TRIGGER IF NOT EXISTS trg_roles_ensure_head_perms_upd
    AFTER UPDATE OF head ON organization_roles
    FOR EACH ROW WHEN NEW.head = 1
    BEGIN
        INSERT OR IGNORE INTO organization_role_permission_links (role_id, permission_id)
        SELECT NEW.id, p.id FROM organization_role_permissions p;
    END;

    CREATE TRIGGER IF NOT EXISTS trg_permissions_grant_to_head_roles
    AFTER INSERT ON organization_role_permissions
    FOR EACH ROW
    BEGIN
        INSERT OR IGNORE INTO organization_role_permission_links (role_id, permission_id)
        SELECT r.id, NEW.id FROM organization_roles r WHERE r.head = 1;
    END;

    CREATE TRIGGER IF NOT EXISTS trg_permission_links_prevent_delete_head
    BEFORE DELETE ON organization_role_permission_links
    FOR EACH ROW WHEN EXISTS (
        SELECT 1 FROM organization_roles r WHERE r.id = OLD.role_id AND r.head = 1
    )
    BEGIN
        SELECT RAISE(ABORT, 'protected: cannot revoke permissions from head role');
    END;

    CREATE TRIGGER IF NOT EXISTS trg_roles_prevent_organization_change
    BEFORE UPDATE OF organization_id ON organization_roles
    FOR EACH ROW WHEN NEW.organization_id <> OLD.organization_id
    BEGIN
        SELECT RAISE(ABORT, 'protected: cannot change organization of a role');
    END;

    -- Head role lives as long as its organization
    CREATE TRIGGER IF NOT EXISTS trg_roles_prevent_delete_head
    BEFORE DELETE ON organization_roles
    FOR EACH ROW WHEN OLD.head = 1 AND EXISTS (
        SELECT 1 FROM organizations o WHERE o.id = OLD.organization_id
    )
    BEGIN
        SELECT RAISE(ABORT, 'protected: cannot delete head role');
    END;

    CREATE TRIGGER IF NOT EXISTS trg_member_roles_prevent_delete_head
    BEFORE DELETE ON organization_member_roles
    FOR EACH ROW WHEN EXISTS (
        SELECT 1 FROM organization_roles r WHERE r.id = OLD.role_id AND r.head = 1
    ) AND EXISTS (
        SELECT 1 FROM organization_members m WHERE m.id = OLD.member_id
    )
    BEGIN
        SELECT RAISE(ABORT, 'protected: cannot remove head role from member');
    END;

    INSERT OR IGNORE INTO schema_version (version, applied_at)
    VALUES (1, strftime('%s', 'now') * 1000);
"""


@dataclass
class _Transaction:
    """Active transaction of one task."""

    store: ReplicaStore
    conn: sqlite3.Connection
    savepoints: int = 0


_current_tx: ContextVar[_Transaction | None] = ContextVar("replica_transaction", default=None)


PROTECTED_PREFIX = "protected: "


def translate_error(error: sqlite3.Error) -> ReplicaError:
    """Map a sqlite3 error onto the replica error taxonomy.

    Trigger rejections keep their own message without the prefix; other
    constraint failures get a fixed message. The raw sqlite text is kept
    in details["constraint"].
    """
    raw = str(error)
    if isinstance(error, sqlite3.IntegrityError):
        if raw.startswith(PROTECTED_PREFIX):
            message = raw[len(PROTECTED_PREFIX):]
        else:
            message = "constraint violated"
        return ProtectedInvariantError(message, details={"constraint": raw})
    if isinstance(error, sqlite3.OperationalError):
        return StoreUnavailableError(raw)
    return ReplicaError(raw, code="STORE_ERROR")


class ReplicaStore:
    """SQLite store for the organization replica.

    Thread safety:
        Each transaction scope opens its own connection. Writers in one
        event loop queue on an asyncio.Lock before taking SQLite's writer
        lock; other processes are serialized by SQLite itself.

    Example:
        >>> store = ReplicaStore("/var/lib/replicas/replica.db")
        >>> await store.initialize()
        >>> async with store.transaction():
        ...     await store.execute("UPDATE organizations SET name = ? WHERE id = ?", ("x", oid))
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the replica store.

        Args:
            db_path: SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection and always close it."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open replica database: {e}") from e

        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA recursive_triggers = OFF")

            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA)
        logger.info("Initialized replica database", extra={"db_path": str(self.db_path)})

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """Run the enclosed block as one atomic unit of work.

        The outermost scope commits on normal exit and rolls back on any
        exception, cancellation included. A nested scope in the same task
        becomes a SAVEPOINT of the outer one: its failure rolls back only
        its own writes and re-raises.

        Yields:
            The connection bound to the transaction

        Raises:
            ProtectedInvariantError: If a constraint or trigger rejected a write
            StoreUnavailableError: If the database is locked or unreachable
        """
        current = _current_tx.get()
        if current is not None and current.store is self:
            async with self._savepoint(current) as conn:
                yield conn
            return

        async with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                except sqlite3.Error as e:
                    raise translate_error(e) from e

                token = _current_tx.set(_Transaction(store=self, conn=conn))
                try:
                    yield conn
                except sqlite3.Error as e:
                    self._rollback(conn)
                    raise translate_error(e) from e
                except BaseException:
                    self._rollback(conn)
                    raise
                else:
                    try:
                        conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        self._rollback(conn)
                        raise translate_error(e) from e
                finally:
                    _current_tx.reset(token)

    @asynccontextmanager
    async def _savepoint(self, tx: _Transaction) -> AsyncIterator[sqlite3.Connection]:
        tx.savepoints += 1
        name = f"sp_{tx.savepoints}"
        tx.conn.execute(f"SAVEPOINT {name}")
        try:
            yield tx.conn
        except sqlite3.Error as e:
            self._rollback_to(tx.conn, name)
            raise translate_error(e) from e
        except BaseException:
            self._rollback_to(tx.conn, name)
            raise
        else:
            tx.conn.execute(f"RELEASE SAVEPOINT {name}")
        finally:
            tx.savepoints -= 1

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    @staticmethod
    def _rollback_to(conn: sqlite3.Connection, name: str) -> None:
        if conn.in_transaction:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[sqlite3.Connection]:
        """Connection for reads.

        Inside a transaction this is the transaction's connection, so reads
        observe its uncommitted writes. Outside, a fresh autocommit
        connection is opened and closed.
        """
        current = _current_tx.get()
        if current is not None and current.store is self:
            yield current.conn
            return

        with self._connect() as conn:
            try:
                yield conn
            except sqlite3.Error as e:
                raise translate_error(e) from e

    @property
    def in_transaction(self) -> bool:
        """Whether the current task holds a transaction on this store."""
        current = _current_tx.get()
        return current is not None and current.store is self

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a write statement in the current (or a new) transaction.

        Returns:
            Number of affected rows
        """
        async with self.transaction() as conn:
            return conn.execute(sql, params).rowcount

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Run a query and return its first row, or None."""
        async with self.connection() as conn:
            return conn.execute(sql, params).fetchone()

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Run a query and return all rows."""
        async with self.connection() as conn:
            return conn.execute(sql, params).fetchall()

    async def get_stats(self) -> dict[str, int]:
        """Row counts per replicated table."""
        tables = (
            "organizations",
            "profiles",
            "organization_members",
            "organization_invites",
            "organization_roles",
            "inbox_events",
        )
        stats = {}
        async with self.connection() as conn:
            for table in tables:
                stats[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return stats
