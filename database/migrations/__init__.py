"""
Blood Exchange Idempotent Migration System
==========================================

- Versioned migrations registered with @migration(version, name)
- Applied versions tracked in _exchange_migrations
- Every migration is idempotent (CREATE ... IF NOT EXISTS) so it can run
  against SQLite and PostgreSQL alike

Usage:
    from database.migrations import run_migrations
    run_migrations(conn)
"""

import logging
from datetime import datetime
from typing import Callable, List, Tuple

logger = logging.getLogger(__name__)

# Migration registry: (version, name, function)
_migrations: List[Tuple[int, str, Callable]] = []


def migration(version: int, name: str):
    """Decorator to register a migration function"""
    def decorator(func: Callable):
        _migrations.append((version, name, func))
        return func
    return decorator


def _ensure_version_table(cursor):
    """Create version tracking table if not exists"""
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS _exchange_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
    """)


def _get_applied_versions(cursor) -> set:
    """Get set of already applied migration versions"""
    cursor.execute("SELECT version FROM _exchange_migrations")
    return {row[0] for row in cursor.fetchall()}


def run_migrations(conn, target_version: int = None) -> int:
    """
    Run all pending migrations up to target_version.

    Args:
        conn: store connection (SQLite or PostgreSQL wrapper)
        target_version: Optional max version to apply (default: all)

    Returns:
        Number of migrations applied
    """
    cursor = conn.cursor()
    _ensure_version_table(cursor)
    conn.commit()

    applied = _get_applied_versions(cursor)
    pending = sorted([m for m in _migrations if m[0] not in applied], key=lambda x: x[0])

    if target_version is not None:
        pending = [m for m in pending if m[0] <= target_version]

    applied_count = 0
    for version, name, func in pending:
        logger.info(f"[Migration] Applying v{version}: {name}")
        try:
            func(cursor)
            cursor.execute(
                "INSERT INTO _exchange_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (version, name, datetime.now().isoformat())
            )
            conn.commit()
            applied_count += 1
            logger.info(f"[Migration] v{version} applied successfully")
        except Exception as e:
            conn.rollback()
            logger.error(f"[Migration] v{version} failed: {e}")
            raise

    if applied_count == 0:
        logger.info("[Migration] All migrations already applied")
    else:
        logger.info(f"[Migration] Applied {applied_count} migration(s)")

    return applied_count


def get_current_version(conn) -> int:
    """Get the current migration version"""
    cursor = conn.cursor()
    cursor.execute("SELECT MAX(version) FROM _exchange_migrations")
    result = cursor.fetchone()[0]
    return result if result else 0


# Import all migration modules to register them
from . import m001_exchange_tables
from . import m002_audit_log
