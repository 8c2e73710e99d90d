"""
Blood Exchange Audit Log (m002)
===============================

audit_log: append-only record written by the default audit sink after each
committed mutation.
"""

from . import migration


@migration(2, "audit_log")
def m002_audit_log(cursor):
    """Create audit_log table"""
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id TEXT PRIMARY KEY,
            entity TEXT NOT NULL,              -- unit, offer, request, transfer
            entity_id TEXT,
            action TEXT NOT NULL,
            actor_id TEXT,
            details TEXT,                      -- JSON
            created_at TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_log_entity
        ON audit_log(entity, entity_id)
    """)
