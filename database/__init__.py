"""
Blood Exchange Store
====================

Transactional store shared by every engine component.

- DatabaseManager: SQLite backend (default)
- PostgresDatabaseManager: PostgreSQL backend (db_postgres.py, selected by DATABASE_URL)

Every mutation runs inside unit_of_work(): one transaction, committed on normal
exit and rolled back on any exception. Side effects (audit entries and
notifications) queued on the unit of work are handed to the dispatcher only
after COMMIT succeeds.

Row locking:
- PostgreSQL: SELECT ... FOR UPDATE / FOR UPDATE SKIP LOCKED
- SQLite: BEGIN IMMEDIATE takes the database write lock up front and holds it
  until COMMIT, so all writers are serialized and row locks are implied.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Busy timeout (seconds) while waiting for the SQLite write lock
SQLITE_LOCK_TIMEOUT = 30.0


# =============================================================================
# Outbox records
# =============================================================================

@dataclass
class OutboxEvent:
    """Side effect recorded during a unit of work, delivered after commit."""
    channel: str                      # "audit" | "notify"
    kind: str                         # audit action or notification kind
    payload: Dict[str, Any] = field(default_factory=dict)
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None


# =============================================================================
# Unit of Work
# =============================================================================

class UnitOfWork:
    """One open transaction plus the side effects it will publish on commit."""

    def __init__(self, conn, dialect: str, actor_id: Optional[str] = None):
        self.conn = conn
        self.dialect = dialect
        self.actor_id = actor_id
        self.events: List[OutboxEvent] = []

    # ---------- SQL helpers ----------

    def execute(self, sql: str, params: Sequence = ()):
        cursor = self.conn.cursor()
        cursor.execute(sql, tuple(params))
        return cursor

    def fetchone(self, sql: str, params: Sequence = ()) -> Optional[Dict[str, Any]]:
        row = self.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: Sequence = ()) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def scalar(self, sql: str, params: Sequence = ()):
        row = self.execute(sql, params).fetchone()
        if row is None:
            return None
        return row[0]

    def lock_suffix(self, skip_locked: bool = False) -> str:
        """Row-lock clause appended to a single-table SELECT."""
        if self.dialect != "postgres":
            return ""
        return " FOR UPDATE SKIP LOCKED" if skip_locked else " FOR UPDATE"

    # ---------- post-commit side effects ----------

    def emit(self, kind: str, payload: Dict[str, Any]):
        """Queue a notification, delivered only if this unit of work commits."""
        self.events.append(OutboxEvent(channel="notify", kind=kind, payload=payload))

    def audit(self, entity: str, entity_id: str, action: str,
              details: Optional[Dict[str, Any]] = None, actor_id: Optional[str] = None):
        """Queue an audit entry, delivered only if this unit of work commits."""
        self.events.append(OutboxEvent(
            channel="audit",
            kind=action,
            payload=details or {},
            entity=entity,
            entity_id=entity_id,
            actor_id=actor_id or self.actor_id,
        ))


def placeholders(values: Iterable) -> str:
    """'?, ?, ?' for an IN (...) list."""
    return ", ".join("?" for _ in values)


# =============================================================================
# Base manager
# =============================================================================

class BaseDatabaseManager:
    """Shared unit-of-work protocol for both backends."""

    dialect = "sqlite"

    def __init__(self):
        self.dispatcher = None

    def get_connection(self):
        raise NotImplementedError

    def _begin(self, conn):
        pass

    def set_dispatcher(self, dispatcher):
        """Attach the post-commit event dispatcher (services.outbox.EventDispatcher)."""
        self.dispatcher = dispatcher

    @contextmanager
    def unit_of_work(self, actor_id: Optional[str] = None):
        """
        Run a block as a single transaction.

        Commits on normal exit, rolls back on any exception (and re-raises).
        Queued events are published after COMMIT and never on ROLLBACK.
        """
        conn = self.get_connection()
        uow = UnitOfWork(conn, self.dialect, actor_id)
        try:
            self._begin(conn)
            yield uow
            conn.commit()
        except Exception:
            try:
                conn.rollback()
            except Exception as e:
                logger.error(f"Rollback failed: {e}")
            raise
        finally:
            conn.close()

        if uow.events and self.dispatcher is not None:
            self.dispatcher.publish(uow.events)

    def init_database(self):
        """Apply pending schema migrations."""
        from database.migrations import run_migrations

        conn = self.get_connection()
        try:
            run_migrations(conn)
        finally:
            conn.close()


# =============================================================================
# SQLite backend
# =============================================================================

class SQLiteConnection:
    """sqlite3 connection in manual transaction mode (explicit BEGIN/COMMIT)."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def cursor(self):
        return self._conn.cursor()

    def commit(self):
        if self._conn.in_transaction:
            self._conn.execute("COMMIT")

    def rollback(self):
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def close(self):
        self._conn.close()


class DatabaseManager(BaseDatabaseManager):
    """SQLite database manager."""

    dialect = "sqlite"

    def __init__(self, db_path: str, init: bool = True):
        super().__init__()
        if db_path == ":memory:":
            raise ValueError("In-memory SQLite cannot be shared between units of work; use a file path")
        self.db_path = db_path
        logger.info(f"Initializing SQLite store: {db_path}")
        if init:
            self.init_database()

    def get_connection(self) -> SQLiteConnection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=SQLITE_LOCK_TIMEOUT,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return SQLiteConnection(conn)

    def _begin(self, conn):
        # Take the write lock now, before any dependent read
        conn.execute("BEGIN IMMEDIATE")


def get_database_manager(db_path: str, database_url: Optional[str] = None) -> BaseDatabaseManager:
    """
    Factory: PostgreSQL when database_url is given, otherwise SQLite at db_path.
    """
    if database_url:
        from db_postgres import PostgresDatabaseManager
        logger.info("Using PostgreSQL store")
        return PostgresDatabaseManager(database_url)
    return DatabaseManager(db_path)
