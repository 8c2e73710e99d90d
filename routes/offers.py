"""
Blood Exchange - Offer routes
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.exchange import AllocateFromOffer, OfferCreate, OfferStateChange
from services import reservation
from services.identity import Actor

from .deps import get_actor, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exchange/offers", tags=["exchange-offers"])


@router.post("")
def create_offer(body: OfferCreate, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    """Offer own available units to other facilities"""
    offer = reservation.create_offer(store, body.unit_ids, actor, note=body.note)
    return {"success": True, "data": offer}


@router.post("/precheck")
def precheck_offer(body: OfferCreate, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    """Validate a selection and list the requests it could satisfy, without writing"""
    return {"success": True, "data": reservation.precheck_offer(store, body.unit_ids, actor)}


@router.post("/allocate")
def allocate_from_offer(body: AllocateFromOffer, actor: Actor = Depends(get_actor),
                        store=Depends(get_store)):
    """Take units from another facility's open offer"""
    result = reservation.allocate_from_offer(store, body.offer_id, actor, unit_ids=body.unit_ids)
    return {"success": True, "data": result}


@router.get("")
def list_offers(
    scope: str = Query("available", pattern="^(available|mine)$"),
    state: Optional[str] = None,
    include_shadow: bool = False,
    actor: Actor = Depends(get_actor),
    store=Depends(get_store),
):
    offers = reservation.list_offers(store, actor, scope=scope, state=state, include_shadow=include_shadow)
    return {"success": True, "data": offers, "count": len(offers)}


@router.get("/{offer_id}")
def get_offer(offer_id: str, actor: Actor = Depends(get_actor), store=Depends(get_store)):
    return {"success": True, "data": reservation.get_offer(store, offer_id, actor)}


@router.patch("/{offer_id}/state")
def change_offer_state(offer_id: str, body: OfferStateChange, actor: Actor = Depends(get_actor),
                       store=Depends(get_store)):
    result = reservation.change_offer_state(store, offer_id, body.new_state, actor)
    return {"success": True, "data": result}
