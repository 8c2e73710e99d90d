"""
Blood Exchange - Sweeper administration (role: admin)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from models.exchange import SweepRun
from services.audit import list_audit
from services.identity import Actor

from .deps import get_store, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exchange/admin", tags=["exchange-admin"])


@router.get("/sweepers")
def sweeper_status(request: Request, actor: Actor = Depends(require_admin)):
    return {"success": True, "data": request.app.state.scheduler.get_status()}


@router.post("/sweepers/run")
def run_sweeper(body: SweepRun, request: Request, actor: Actor = Depends(require_admin)):
    """Run one sweeper job (or all) immediately"""
    scheduler = request.app.state.scheduler
    logger.info(f"Manual sweep '{body.job}' triggered by {actor.user_id}")
    if body.job == "all":
        result = scheduler.run_all()
    else:
        result = {body.job: scheduler.run_job(body.job)}
    return {"success": True, "data": result}


@router.get("/audit")
def audit_log(
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(require_admin),
    store=Depends(get_store),
):
    rows = list_audit(store, entity=entity, entity_id=entity_id, limit=limit)
    return {"success": True, "data": rows, "count": len(rows)}
