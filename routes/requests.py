"""
Blood Exchange - Request routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.exchange import AllocateFromRequest, RequestCreate, RequestStateChange
from services import reservation
from services.identity import Actor

from .deps import get_actor, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exchange/requests", tags=["exchange-requests"])


@router.post("")
def create_request(body: RequestCreate, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    """Register demand; match_count reports open offers that could cover it"""
    request = reservation.create_request(
        store, actor,
        component=body.component, abo=body.abo, rh=body.rh, quantity=body.quantity,
        urgent=body.urgent, filtered=body.filtered, irradiated=body.irradiated, note=body.note,
    )
    return {"success": True, "data": request}


@router.post("/allocate")
def allocate_from_request(body: AllocateFromRequest, actor: Actor = Depends(get_actor),
                          store=Depends(get_store)):
    """Supply another facility's pending request from own available units"""
    result = reservation.allocate_from_request(store, body.request_id, body.unit_ids, actor, note=body.note)
    return {"success": True, "data": result}


@router.get("")
def list_requests(
    scope: str = Query("mine", pattern="^(mine|incoming)$"),
    state: Optional[str] = None,
    include_shadow: bool = False,
    actor: Actor = Depends(get_actor),
    store=Depends(get_store),
):
    requests = reservation.list_requests(store, actor, scope=scope, state=state,
                                         include_shadow=include_shadow)
    return {"success": True, "data": requests, "count": len(requests)}


@router.get("/{request_id}")
def get_request(request_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return {"success": True, "data": reservation.get_request(store, request_id, actor)}


@router.patch("/{request_id}/state")
def change_request_state(request_id: str, body: RequestStateChange, actor: Actor = Depends(get_actor),
                         store=Depends(get_store)):
    result = reservation.change_request_state(store, request_id, body.new_state, actor)
    return {"success": True, "data": result}
