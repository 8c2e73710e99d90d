"""
Blood Exchange - Inventory routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.exchange import UnitCreate
from services import inventory, matcher
from services.identity import Actor

from .deps import get_actor, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exchange/units", tags=["exchange-units"])


@router.post("")
def register_unit(body: UnitCreate, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    """Register a unit into the caller's inventory"""
    unit = inventory.register_unit(
        store, actor,
        component=body.component, abo=body.abo, rh=body.rh,
        expires_at=body.expires_at, filtered=body.filtered, irradiated=body.irradiated,
        collected_at=body.collected_at,
    )
    return {"success": True, "data": unit}


@router.get("")
def list_units(
    component: Optional[str] = None,
    abo: Optional[str] = None,
    rh: Optional[str] = None,
    state: Optional[str] = None,
    filtered: Optional[bool] = None,
    irradiated: Optional[bool] = None,
    include_offered: bool = False,
    limit: int = Query(200, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    store=Depends(get_store),
):
    """Units in custody; units held by an open offer are hidden by default"""
    units = inventory.list_units(
        store, actor, component=component, abo=abo, rh=rh, state=state,
        filtered=filtered, irradiated=irradiated, include_offered=include_offered, limit=limit,
    )
    return {"success": True, "data": units, "count": len(units)}


@router.get("/archived")
def list_archived_units(limit: int = Query(200, ge=1, le=1000),
                        actor: Actor = Depends(get_actor), store=Depends(get_store)):
    units = inventory.list_archived_units(store, actor, limit=limit)
    return {"success": True, "data": units, "count": len(units)}


@router.get("/selectable/{request_id}")
def list_selectable_units(request_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    """Own available units that could supply the given request"""
    units = matcher.list_selectable_units(store, request_id, actor)
    return {"success": True, "data": units, "count": len(units)}


@router.get("/{unit_id}")
def get_unit(unit_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return {"success": True, "data": inventory.get_unit(store, unit_id, actor)}
