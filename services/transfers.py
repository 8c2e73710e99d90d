"""
Transfer State Machine

    created -> in_transit -> received
    created | in_transit -> cancelled

Every transition locks the transfer row first, then checks role and state,
then moves the linked units with guarded updates. A transition on an
already-advanced transfer raises InvalidState.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import BaseDatabaseManager, UnitOfWork
from models.exchange import NotificationKind, OfferState, TransferAction, TransferState

from .clock import to_db, utcnow
from .errors import Forbidden, InvalidInput, InvalidState, NotFound
from .identity import Actor, require_facility
from .inventory import count_free_offer_units, move_transfer_units, transfer_unit_ids, transfer_units

logger = logging.getLogger(__name__)

ACTIVE_STATES = (TransferState.CREATED.value, TransferState.IN_TRANSIT.value)


def _lock_transfer(uow: UnitOfWork, transfer_id: str) -> Dict[str, Any]:
    transfer = uow.fetchone(f"SELECT * FROM transfers WHERE id = ?{uow.lock_suffix()}", (transfer_id,))
    if not transfer:
        raise NotFound("Transfer not found")
    return transfer


def _state_changed(uow: UnitOfWork, transfer: Dict[str, Any], new_state: str, **extra):
    payload = {
        "transfer_id": transfer["id"],
        "request_id": transfer["request_id"],
        "offer_id": transfer["offer_id"],
        "origin_facility_id": transfer["origin_facility_id"],
        "destination_facility_id": transfer["destination_facility_id"],
        "old_state": transfer["state"],
        "new_state": new_state,
    }
    payload.update(extra)
    uow.audit("transfer", transfer["id"], new_state.upper(), payload)
    uow.emit(NotificationKind.TRANSFER_STATE_CHANGED.value, payload)


# =============================================================================
# Transitions
# =============================================================================

def send(store: BaseDatabaseManager, transfer_id: str, actor: Actor,
         now: Optional[datetime] = None) -> Dict[str, Any]:
    """Origin dispatches: units reserved -> in_transit."""
    facility_id = require_facility(actor)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        transfer = _lock_transfer(uow, transfer_id)
        if transfer["origin_facility_id"] != facility_id:
            raise Forbidden("Only the origin facility can send this transfer")
        if transfer["state"] != TransferState.CREATED.value:
            raise InvalidState(f"Transfer is {transfer['state']}, expected created")

        move_transfer_units(uow, transfer_id, ["reserved"], "in_transit",
                            transfer["origin_facility_id"], keep_claim=True)
        uow.execute(
            "UPDATE transfers SET state = 'in_transit', sent_at = ? WHERE id = ?",
            (to_db(now), transfer_id)
        )
        _state_changed(uow, transfer, TransferState.IN_TRANSIT.value)

    logger.info(f"[Transfer] {transfer_id} sent by {facility_id}")
    return {"id": transfer_id, "state": TransferState.IN_TRANSIT.value, "sent_at": to_db(now)}


def receive(store: BaseDatabaseManager, transfer_id: str, actor: Actor,
            now: Optional[datetime] = None) -> Dict[str, Any]:
    """Destination confirms arrival: units in_transit -> transferred, custody moves."""
    facility_id = require_facility(actor)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        transfer = _lock_transfer(uow, transfer_id)
        if transfer["destination_facility_id"] != facility_id:
            raise Forbidden("Only the destination facility can receive this transfer")
        if transfer["state"] != TransferState.IN_TRANSIT.value:
            raise InvalidState(f"Transfer is {transfer['state']}, expected in_transit")

        move_transfer_units(uow, transfer_id, ["in_transit"], "transferred",
                            transfer["destination_facility_id"], keep_claim=False, keep_offer=False)
        uow.execute(
            "UPDATE transfers SET state = 'received', received_at = ? WHERE id = ?",
            (to_db(now), transfer_id)
        )
        _state_changed(uow, transfer, TransferState.RECEIVED.value)

    logger.info(f"[Transfer] {transfer_id} received by {facility_id}")
    return {"id": transfer_id, "state": TransferState.RECEIVED.value, "received_at": to_db(now)}


def cancel(store: BaseDatabaseManager, transfer_id: str, actor: Actor,
           reason: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Origin (or the system watchdog) unwinds a created or in-transit transfer."""
    if not actor.is_system:
        require_facility(actor)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        transfer = _lock_transfer(uow, transfer_id)
        if not actor.is_system and transfer["origin_facility_id"] != actor.facility_id:
            raise Forbidden("Only the origin facility can cancel this transfer")
        result = cancel_locked(uow, transfer, reason or "cancelled", now)

    logger.info(f"[Transfer] {transfer_id} cancelled ({result['cancel_reason']})"
                f"{', offer reopened' if result['offer_reopened'] else ''}")
    return result


def cancel_locked(uow: UnitOfWork, transfer: Dict[str, Any], reason: str, now: datetime) -> Dict[str, Any]:
    """
    Cancel path shared with the watchdog; the transfer row is already locked.

    Units go back to reserved at origin custody and the originating offer is
    reopened when it then holds a free unit. When that offer has been
    cancelled meanwhile, the units are released to available instead.
    """
    if transfer["state"] not in ACTIVE_STATES:
        raise InvalidState(f"Transfer is {transfer['state']}, cannot cancel")

    offer = None
    if transfer["offer_id"]:
        offer = uow.fetchone(
            f"SELECT * FROM offers WHERE id = ?{uow.lock_suffix()}", (transfer["offer_id"],)
        )

    origin = transfer["origin_facility_id"]
    if offer is not None and offer["state"] == OfferState.CANCELLED.value:
        move_transfer_units(uow, transfer["id"], ["reserved", "in_transit"], "available",
                            origin, keep_claim=False, keep_offer=False)
        units_state = "available"
    else:
        move_transfer_units(uow, transfer["id"], ["reserved", "in_transit"], "reserved",
                            origin, keep_claim=False)
        units_state = "reserved"

    uow.execute("""
        UPDATE transfers
        SET state = 'cancelled', cancelled_at = ?, cancel_reason = ?
        WHERE id = ?
    """, (to_db(now), reason, transfer["id"]))

    reopened = False
    if (offer is not None and offer["state"] == OfferState.CLOSED.value
            and count_free_offer_units(uow, offer["id"]) > 0):
        uow.execute(
            "UPDATE offers SET state = 'open', updated_at = ? WHERE id = ?",
            (to_db(now), offer["id"])
        )
        reopened = True
        uow.audit("offer", offer["id"], "REOPEN", {"transfer_id": transfer["id"]})
        uow.emit(NotificationKind.OFFER_STATE_CHANGED.value, {
            "offer_id": offer["id"],
            "facility_id": offer["facility_id"],
            "old_state": OfferState.CLOSED.value,
            "new_state": OfferState.OPEN.value,
        })

    _state_changed(uow, transfer, TransferState.CANCELLED.value, cancel_reason=reason)
    return {
        "id": transfer["id"],
        "state": TransferState.CANCELLED.value,
        "cancelled_at": to_db(now),
        "cancel_reason": reason,
        "units_state": units_state,
        "offer_reopened": reopened,
    }


def advance(store: BaseDatabaseManager, transfer_id: str, action: str, actor: Actor,
            now: Optional[datetime] = None) -> Dict[str, Any]:
    """Dispatch a send / receive / cancel action."""
    action = getattr(action, "value", action)
    if action == TransferAction.SEND.value:
        return send(store, transfer_id, actor, now=now)
    if action == TransferAction.RECEIVE.value:
        return receive(store, transfer_id, actor, now=now)
    if action == TransferAction.CANCEL.value:
        return cancel(store, transfer_id, actor, now=now)
    raise InvalidInput(f"Invalid action: {action}")


# =============================================================================
# Reads
# =============================================================================

def get_transfer(store: BaseDatabaseManager, transfer_id: str, actor: Actor) -> Dict[str, Any]:
    """Transfer detail for its origin or destination facility."""
    facility_id = None if actor.is_system else require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        transfer = uow.fetchone("SELECT * FROM transfers WHERE id = ?", (transfer_id,))
        if not transfer:
            raise NotFound("Transfer not found")
        if facility_id and facility_id not in (transfer["origin_facility_id"],
                                               transfer["destination_facility_id"]):
            raise Forbidden("Transfer belongs to other facilities")
        unit_ids = transfer_unit_ids(uow, transfer_id)
        transfer["unit_ids"] = unit_ids
        transfer["units"] = transfer_units(uow, unit_ids)
        request = uow.fetchone("SELECT state FROM requests WHERE id = ?", (transfer["request_id"],))
        transfer["request_state"] = request["state"] if request else None
        offer = None
        if transfer["offer_id"]:
            offer = uow.fetchone("SELECT state FROM offers WHERE id = ?", (transfer["offer_id"],))
        transfer["offer_state"] = offer["state"] if offer else None
    return transfer


def list_transfers(
    store: BaseDatabaseManager,
    actor: Actor,
    scope: str = "both",
    state: Optional[str] = None,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    """scope: origin | destination | both"""
    facility_id = require_facility(actor)

    if scope == "origin":
        query = "SELECT * FROM transfers WHERE origin_facility_id = ?"
        params: List[Any] = [facility_id]
    elif scope == "destination":
        query = "SELECT * FROM transfers WHERE destination_facility_id = ?"
        params = [facility_id]
    elif scope == "both":
        query = "SELECT * FROM transfers WHERE (origin_facility_id = ? OR destination_facility_id = ?)"
        params = [facility_id, facility_id]
    else:
        raise InvalidInput(f"Invalid scope: {scope}")

    if state:
        query += " AND state = ?"
        params.append(getattr(state, "value", state))
    query += " ORDER BY created_at DESC, id ASC LIMIT ?"
    params.append(int(limit))

    with store.unit_of_work(actor.user_id) as uow:
        transfers = uow.fetchall(query, params)
        for transfer in transfers:
            transfer["unit_ids"] = transfer_unit_ids(uow, transfer["id"])
    return transfers
