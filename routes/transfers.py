"""
Blood Exchange - Transfer routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.exchange import TransferAdvance
from services import transfers
from services.identity import Actor

from .deps import get_actor, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exchange/transfers", tags=["exchange-transfers"])


@router.get("")
def list_transfers(
    scope: str = Query("both", pattern="^(origin|destination|both)$"),
    state: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    store=Depends(get_store),
):
    items = transfers.list_transfers(store, actor, scope=scope, state=state, limit=limit)
    return {"success": True, "data": items, "count": len(items)}


@router.get("/{transfer_id}")
def get_transfer(transfer_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return {"success": True, "data": transfers.get_transfer(store, transfer_id, actor)}


@router.post("/{transfer_id}/advance")
def advance_transfer(transfer_id: str, body: TransferAdvance, actor: Actor = Depends(get_actor),
                     store=Depends(get_store)):
    """
    send:    origin, created -> in_transit
    receive: destination, in_transit -> received
    cancel:  origin, created | in_transit -> cancelled
    """
    result = transfers.advance(store, transfer_id, body.action, actor)
    return {"success": True, "data": result}
