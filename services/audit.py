"""
Audit Sink

Appends committed audit entries to audit_log through its own connection, so
an audit failure can never roll back the operation being audited.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from database import BaseDatabaseManager

from .clock import to_db, utcnow

logger = logging.getLogger(__name__)


class DatabaseAuditSink:
    def __init__(self, store: BaseDatabaseManager):
        self.store = store

    def record(self, entity: str, entity_id: str, action: str,
               details: Optional[Dict[str, Any]] = None, actor_id: Optional[str] = None):
        with self.store.unit_of_work(actor_id) as uow:
            uow.execute("""
                INSERT INTO audit_log (id, entity, entity_id, action, actor_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                str(uuid.uuid4()), entity, entity_id, action, actor_id,
                json.dumps(details or {}, ensure_ascii=False, default=str), to_db(utcnow()),
            ))
        logger.debug(f"[Audit] {entity}:{entity_id} {action}")


def list_audit(store: BaseDatabaseManager, entity: Optional[str] = None,
               entity_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    query = "SELECT * FROM audit_log WHERE 1 = 1"
    params: List[Any] = []
    if entity:
        query += " AND entity = ?"
        params.append(entity)
    if entity_id:
        query += " AND entity_id = ?"
        params.append(entity_id)
    query += " ORDER BY created_at DESC, id ASC LIMIT ?"
    params.append(int(limit))

    with store.unit_of_work() as uow:
        rows = uow.fetchall(query, params)
    for row in rows:
        row["details"] = json.loads(row["details"]) if row["details"] else {}
    return rows
