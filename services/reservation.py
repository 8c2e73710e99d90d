"""
Reservation Coordinator

Creates offers and requests and turns a match into a Transfer:

- create_offer:          available -> reserved into a new open offer
- allocate_from_request: supplier picks its own available units for a request
- allocate_from_offer:   receiver takes units out of another facility's offer
- change_offer_state / change_request_state: manual owner transitions

Each operation is one unit of work. The rows it depends on are locked before
they are read for decisions, and any raised ExchangeError rolls back every
write made so far.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from database import BaseDatabaseManager, UnitOfWork
from models.exchange import NotificationKind, OfferState, RequestState

from .clock import to_db, utcnow
from .errors import Conflict, Forbidden, InvalidInput, InvalidSelection, NotFound
from .identity import Actor, require_facility
from .inventory import (
    claim_units,
    count_free_offer_units,
    free_offer_units,
    lock_units,
    release_free_units,
    reserve_units,
    validate_spec_fields,
)
from .matcher import (
    UnitSpec,
    find_compatible_offers,
    find_compatible_requests,
    is_homogeneous,
    request_to_dict,
    spec_of,
    specs_match,
)

logger = logging.getLogger(__name__)

MANUAL_REQUEST_STATES = {"pending", "partial", "cancelled", "rejected"}
EDITABLE_REQUEST_STATES = {"pending", "partial"}


# =============================================================================
# Shared helpers
# =============================================================================

def _new_id() -> str:
    return str(uuid.uuid4())


def _check_unit_ids(unit_ids: Optional[Sequence[str]]) -> List[str]:
    if not unit_ids:
        raise InvalidInput("unit_ids must not be empty")
    ids = list(unit_ids)
    if len(set(ids)) != len(ids):
        raise InvalidInput("unit_ids contains duplicates")
    return ids


def _select_own_available(uow: UnitOfWork, unit_ids: List[str], facility_id: str,
                          now: datetime) -> List[Dict[str, Any]]:
    """Lock the named units; all must exist, be held by facility_id, be available and unexpired."""
    cutoff = to_db(now)
    units = lock_units(uow, unit_ids)
    if len(units) != len(unit_ids):
        raise InvalidSelection("One or more units do not exist")
    for unit in units:
        if unit["facility_id"] != facility_id:
            raise InvalidSelection(f"Unit {unit['tracking_code']} does not belong to your facility")
        if unit["state"] != "available":
            raise InvalidSelection(f"Unit {unit['tracking_code']} is not available")
        if str(unit["expires_at"]) < cutoff:
            raise InvalidSelection(f"Unit {unit['tracking_code']} has expired")
    return units


def _group_by_spec(units: List[Dict[str, Any]]) -> Dict[UnitSpec, int]:
    groups: Dict[UnitSpec, int] = {}
    for unit in units:
        spec = spec_of(unit)
        groups[spec] = groups.get(spec, 0) + 1
    return groups


def _lock_offer(uow: UnitOfWork, offer_id: str) -> Dict[str, Any]:
    offer = uow.fetchone(f"SELECT * FROM offers WHERE id = ?{uow.lock_suffix()}", (offer_id,))
    if not offer:
        raise NotFound("Offer not found")
    offer["is_shadow"] = bool(offer["is_shadow"])
    return offer


def _lock_request(uow: UnitOfWork, request_id: str) -> Dict[str, Any]:
    request = uow.fetchone(f"SELECT * FROM requests WHERE id = ?{uow.lock_suffix()}", (request_id,))
    if not request:
        raise NotFound("Request not found")
    return request_to_dict(request)


def _insert_offer(uow: UnitOfWork, facility_id: str, unit_ids: List[str], state: str,
                  note: Optional[str], is_shadow: bool, now: datetime) -> str:
    offer_id = _new_id()
    uow.execute("""
        INSERT INTO offers (id, facility_id, state, note, is_shadow, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (offer_id, facility_id, state, note, int(is_shadow), to_db(now), to_db(now)))
    for unit_id in unit_ids:
        uow.execute(
            "INSERT INTO offer_items (id, offer_id, unit_id) VALUES (?, ?, ?)",
            (_new_id(), offer_id, unit_id)
        )
    return offer_id


def _insert_transfer(uow: UnitOfWork, request_id: str, offer_id: str, origin: str,
                     destination: str, unit_ids: List[str], now: datetime) -> str:
    transfer_id = _new_id()
    uow.execute("""
        INSERT INTO transfers (
            id, request_id, offer_id, origin_facility_id, destination_facility_id,
            state, created_at
        ) VALUES (?, ?, ?, ?, ?, 'created', ?)
    """, (transfer_id, request_id, offer_id, origin, destination, to_db(now)))
    for unit_id in unit_ids:
        uow.execute(
            "INSERT INTO transfer_items (id, transfer_id, unit_id) VALUES (?, ?, ?)",
            (_new_id(), transfer_id, unit_id)
        )
    return transfer_id


def _set_request(uow: UnitOfWork, request_id: str, state: str, quantity: int, now: datetime):
    uow.execute(
        "UPDATE requests SET state = ?, quantity = ?, updated_at = ? WHERE id = ?",
        (state, quantity, to_db(now), request_id)
    )


def _set_offer_state(uow: UnitOfWork, offer_id: str, state: str, now: datetime):
    uow.execute(
        "UPDATE offers SET state = ?, updated_at = ? WHERE id = ?",
        (state, to_db(now), offer_id)
    )


def _transfer_payload(transfer_id: str, request: Dict[str, Any], offer_id: str,
                      origin: str, unit_ids: List[str]) -> Dict[str, Any]:
    return {
        "transfer_id": transfer_id,
        "request_id": request["id"],
        "offer_id": offer_id,
        "origin_facility_id": origin,
        "destination_facility_id": request["facility_id"],
        "unit_ids": unit_ids,
        "state": "created",
    }


# =============================================================================
# Offers
# =============================================================================

def create_offer(
    store: BaseDatabaseManager,
    unit_ids: Sequence[str],
    actor: Actor,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Offer a set of the caller's available units.

    Returns the offer with match_count: the number of pending requests at
    other facilities that the offered units could satisfy.
    """
    facility_id = require_facility(actor)
    ids = _check_unit_ids(unit_ids)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        units = _select_own_available(uow, ids, facility_id, now)

        offer_id = _insert_offer(uow, facility_id, ids, OfferState.OPEN.value, note, False, now)
        reserve_units(uow, ids, offer_id, valid_at=to_db(now))

        match_count = 0
        for spec, count in _group_by_spec(units).items():
            match_count += len(find_compatible_requests(uow, spec, count, exclude_facility=facility_id))

        uow.audit("offer", offer_id, "CREATE", {"unit_ids": ids, "note": note})
        uow.emit(NotificationKind.OFFER_CREATED.value, {
            "offer_id": offer_id,
            "facility_id": facility_id,
            "unit_count": len(ids),
            "match_count": match_count,
        })

    logger.info(f"[Reservation] Offer {offer_id} opened by {facility_id} with {len(ids)} units "
                f"({match_count} matching requests)")
    return {
        "id": offer_id,
        "facility_id": facility_id,
        "state": OfferState.OPEN.value,
        "note": note,
        "is_shadow": False,
        "created_at": to_db(now),
        "unit_ids": ids,
        "match_count": match_count,
    }


def precheck_offer(store: BaseDatabaseManager, unit_ids: Sequence[str], actor: Actor,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    """Validate an offer selection without writing; list the requests it would satisfy."""
    facility_id = require_facility(actor)
    ids = _check_unit_ids(unit_ids)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        units = _select_own_available(uow, ids, facility_id, now)
        groups = []
        for spec, count in _group_by_spec(units).items():
            groups.append({
                "spec": spec.to_dict(),
                "unit_count": count,
                "matching_requests": find_compatible_requests(
                    uow, spec, count, exclude_facility=facility_id
                ),
            })

    return {
        "valid": True,
        "unit_count": len(ids),
        "homogeneous": len(groups) == 1,
        "groups": groups,
    }


def allocate_from_offer(
    store: BaseDatabaseManager,
    offer_id: str,
    actor: Actor,
    unit_ids: Optional[Sequence[str]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Take units out of another facility's open offer.

    The units go to the caller's best-ranked compatible pending request that
    the selection can fully cover; without one, a shadow request sized to the
    selection is recorded. The offer closes when no free units remain.
    """
    facility_id = require_facility(actor)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        offer = _lock_offer(uow, offer_id)
        if offer["state"] != OfferState.OPEN.value:
            raise Conflict(f"Offer is {offer['state']}")
        if offer["facility_id"] == facility_id:
            raise Forbidden("Cannot allocate from your own offer")

        cutoff = to_db(now)
        free = [u for u in free_offer_units(uow, offer_id, lock=True) if str(u["expires_at"]) >= cutoff]
        if unit_ids:
            wanted = _check_unit_ids(unit_ids)
            wanted_set = set(wanted)
            selected = [u for u in free if u["id"] in wanted_set]
            if len(selected) != len(wanted_set):
                raise InvalidSelection("One or more units are not free in this offer")
        else:
            selected = free
        if not selected:
            raise InvalidSelection("Offer has no free units")
        if not is_homogeneous(selected):
            raise InvalidSelection("Selected units do not share one specification")

        spec = spec_of(selected[0])
        candidates = find_compatible_requests(uow, spec, len(selected), facility=facility_id, lock=True)
        if candidates:
            request = candidates[0]
            shadow = False
        else:
            request = _insert_shadow_request(uow, facility_id, spec, len(selected), now)
            shadow = True

        chosen = [u["id"] for u in selected[:request["quantity"]]]
        transfer_id = _insert_transfer(uow, request["id"], offer_id, offer["facility_id"],
                                       facility_id, chosen, now)
        claim_units(uow, chosen, offer_id, transfer_id)
        _set_request(uow, request["id"], RequestState.ACCEPTED.value, 0, now)

        offer_closed = False
        if count_free_offer_units(uow, offer_id) == 0:
            _set_offer_state(uow, offer_id, OfferState.CLOSED.value, now)
            offer_closed = True

        uow.audit("transfer", transfer_id, "CREATE", {
            "request_id": request["id"], "offer_id": offer_id, "unit_ids": chosen,
            "shadow_request": shadow,
        })
        uow.audit("request", request["id"], "ACCEPT", {"transfer_id": transfer_id})
        uow.emit(NotificationKind.TRANSFER_CREATED.value,
                 _transfer_payload(transfer_id, request, offer_id, offer["facility_id"], chosen))
        uow.emit(NotificationKind.REQUEST_STATE_CHANGED.value, {
            "request_id": request["id"],
            "facility_id": facility_id,
            "old_state": RequestState.PENDING.value,
            "new_state": RequestState.ACCEPTED.value,
        })
        if offer_closed:
            uow.audit("offer", offer_id, "CLOSE", {"reason": "exhausted"})
            uow.emit(NotificationKind.OFFER_STATE_CHANGED.value, {
                "offer_id": offer_id,
                "facility_id": offer["facility_id"],
                "old_state": OfferState.OPEN.value,
                "new_state": OfferState.CLOSED.value,
            })

    logger.info(f"[Reservation] Transfer {transfer_id}: {len(chosen)} units from offer {offer_id} "
                f"to {facility_id} (request {request['id']}{', shadow' if shadow else ''})")
    return {
        "transfer_id": transfer_id,
        "request_id": request["id"],
        "offer_id": offer_id,
        "unit_ids": chosen,
        "shadow_request": shadow,
        "offer_closed": offer_closed,
    }


def _insert_shadow_request(uow: UnitOfWork, facility_id: str, spec: UnitSpec,
                           quantity: int, now: datetime) -> Dict[str, Any]:
    request_id = _new_id()
    uow.execute("""
        INSERT INTO requests (
            id, facility_id, component, abo, rh, filtered, irradiated,
            quantity, urgent, note, is_shadow, state, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, 1, 'pending', ?, ?)
    """, (request_id, facility_id, *spec.as_params(), quantity,
          "Recorded from a direct offer allocation", to_db(now), to_db(now)))
    return request_to_dict(uow.fetchone("SELECT * FROM requests WHERE id = ?", (request_id,)))


def change_offer_state(
    store: BaseDatabaseManager,
    offer_id: str,
    new_state: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Owner transitions:
        open -> closed | cancelled, closed -> cancelled: free units released
        closed -> open: linked units still available at the owner re-reserved
    """
    facility_id = require_facility(actor)
    new_state = getattr(new_state, "value", new_state)
    if new_state not in {s.value for s in OfferState}:
        raise InvalidInput(f"Invalid offer state: {new_state}")
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        offer = _lock_offer(uow, offer_id)
        if offer["facility_id"] != facility_id:
            raise Forbidden("Only the offering facility can change this offer")

        old_state = offer["state"]
        transition = (old_state, new_state)
        released = 0
        reserved = 0

        if transition in {("open", "closed"), ("open", "cancelled"), ("closed", "cancelled")}:
            released = release_free_units(uow, offer_id)
        elif transition == ("closed", "open"):
            cursor = uow.execute("""
                UPDATE units
                SET state = 'reserved', offer_id = ?
                WHERE id IN (SELECT unit_id FROM offer_items WHERE offer_id = ?)
                  AND state = 'available' AND facility_id = ? AND offer_id IS NULL
                  AND expires_at >= ?
            """, (offer_id, offer_id, facility_id, to_db(now)))
            reserved = cursor.rowcount
            if reserved == 0 and count_free_offer_units(uow, offer_id) == 0:
                raise Conflict("No units of this offer are still available")
        else:
            raise Conflict(f"Cannot change offer from {old_state} to {new_state}")

        _set_offer_state(uow, offer_id, new_state, now)
        uow.audit("offer", offer_id, "STATE_CHANGE", {
            "old_state": old_state, "new_state": new_state,
            "released_units": released, "reserved_units": reserved,
        })
        uow.emit(NotificationKind.OFFER_STATE_CHANGED.value, {
            "offer_id": offer_id,
            "facility_id": facility_id,
            "old_state": old_state,
            "new_state": new_state,
        })

    logger.info(f"[Reservation] Offer {offer_id}: {old_state} -> {new_state}")
    return {
        "id": offer_id,
        "state": new_state,
        "released_units": released,
        "reserved_units": reserved,
    }


def get_offer(store: BaseDatabaseManager, offer_id: str, actor: Actor) -> Dict[str, Any]:
    """Offer detail; other facilities only see open offers."""
    facility_id = require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        offer = uow.fetchone("SELECT * FROM offers WHERE id = ?", (offer_id,))
        if not offer or (offer["facility_id"] != facility_id and offer["state"] != "open"):
            raise NotFound("Offer not found")
        offer["is_shadow"] = bool(offer["is_shadow"])
        offer["units"] = free_offer_units(uow, offer_id)
        if offer["facility_id"] == facility_id:
            offer["unit_ids"] = [
                r["unit_id"] for r in uow.fetchall(
                    "SELECT unit_id FROM offer_items WHERE offer_id = ? ORDER BY unit_id", (offer_id,)
                )
            ]
    return offer


def list_offers(
    store: BaseDatabaseManager,
    actor: Actor,
    scope: str = "available",
    state: Optional[str] = None,
    include_shadow: bool = False,
) -> List[Dict[str, Any]]:
    """
    scope='available': open offers of other facilities with their free unit count.
    scope='mine': the caller's own offers (shadow offers only with include_shadow).

    A shadow offer reopened by a cancelled transfer is listed as available.
    """
    facility_id = require_facility(actor)

    query = """
        SELECT o.*,
               (SELECT COUNT(*) FROM units u
                WHERE u.offer_id = o.id AND u.state = 'reserved' AND u.transfer_id IS NULL) AS free_units
        FROM offers o
        WHERE 1 = 1
    """
    params: List[Any] = []
    if scope == "mine":
        query += " AND o.facility_id = ?"
        params.append(facility_id)
        if state:
            query += " AND o.state = ?"
            params.append(getattr(state, "value", state))
    elif scope == "available":
        query += " AND o.facility_id <> ? AND o.state = 'open'"
        params.append(facility_id)
    else:
        raise InvalidInput(f"Invalid scope: {scope}")
    if scope == "mine" and not include_shadow:
        query += " AND o.is_shadow = 0"
    query += " ORDER BY o.created_at DESC, o.id ASC"

    with store.unit_of_work(actor.user_id) as uow:
        offers = uow.fetchall(query, params)
        for offer in offers:
            offer["is_shadow"] = bool(offer["is_shadow"])
            offer["units"] = free_offer_units(uow, offer["id"])
    return offers


# =============================================================================
# Requests
# =============================================================================

def create_request(
    store: BaseDatabaseManager,
    actor: Actor,
    component: str,
    abo: str,
    rh: str,
    quantity: int,
    urgent: bool = False,
    filtered: bool = False,
    irradiated: bool = False,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Register demand for units of one exact spec.

    match_count is the number of open offers at other facilities that could
    satisfy the request on their own.
    """
    facility_id = require_facility(actor)
    component = getattr(component, "value", component)
    abo = getattr(abo, "value", abo)
    rh = getattr(rh, "value", rh)
    validate_spec_fields(component, abo, rh)
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidInput("quantity must be a positive integer")
    now = now or utcnow()
    spec = UnitSpec(component, abo, rh, bool(filtered), bool(irradiated))

    with store.unit_of_work(actor.user_id) as uow:
        request_id = _new_id()
        uow.execute("""
            INSERT INTO requests (
                id, facility_id, component, abo, rh, filtered, irradiated,
                quantity, urgent, note, is_shadow, state, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending', ?, ?)
        """, (request_id, facility_id, *spec.as_params(), quantity, int(bool(urgent)),
              note, to_db(now), to_db(now)))
        request = request_to_dict(uow.fetchone("SELECT * FROM requests WHERE id = ?", (request_id,)))
        match_count = len(find_compatible_offers(uow, spec, quantity, exclude_facility=facility_id))

        uow.audit("request", request_id, "CREATE", {**spec.to_dict(), "quantity": quantity,
                                                    "urgent": bool(urgent)})
        uow.emit(NotificationKind.REQUEST_CREATED.value, {
            "request_id": request_id,
            "facility_id": facility_id,
            **spec.to_dict(),
            "quantity": quantity,
            "urgent": bool(urgent),
            "match_count": match_count,
        })

    logger.info(f"[Reservation] Request {request_id} by {facility_id}: {quantity} x "
                f"{component} {abo}{rh}{' (urgent)' if urgent else ''}")
    request["match_count"] = match_count
    return request


def allocate_from_request(
    store: BaseDatabaseManager,
    request_id: str,
    unit_ids: Sequence[str],
    actor: Actor,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Supply a pending request from the caller's own available units.

    At most request.quantity units are taken, soonest-expiring first, through
    a closed shadow offer. The request is accepted once fully covered,
    otherwise its quantity is decremented and it stays pending.
    """
    facility_id = require_facility(actor)
    ids = _check_unit_ids(unit_ids)
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        request = _lock_request(uow, request_id)
        if request["state"] != RequestState.PENDING.value:
            raise Conflict(f"Request is {request['state']}")
        if request["facility_id"] == facility_id:
            raise Forbidden("Cannot supply your own request")

        units = _select_own_available(uow, ids, facility_id, now)
        if not is_homogeneous(units) or not specs_match(units[0], request):
            raise InvalidSelection("Selected units do not match the requested specification")

        take = min(len(units), request["quantity"])
        chosen = [u["id"] for u in units[:take]]

        offer_id = _insert_offer(uow, facility_id, chosen, OfferState.CLOSED.value,
                                 note or "Allocated from request", True, now)
        transfer_id = _insert_transfer(uow, request_id, offer_id, facility_id,
                                       request["facility_id"], chosen, now)
        reserve_units(uow, chosen, offer_id, transfer_id, valid_at=to_db(now))

        remaining = request["quantity"] - take
        new_state = RequestState.ACCEPTED.value if remaining == 0 else RequestState.PENDING.value
        _set_request(uow, request_id, new_state, remaining, now)

        uow.audit("transfer", transfer_id, "CREATE", {
            "request_id": request_id, "offer_id": offer_id, "unit_ids": chosen,
        })
        uow.audit("request", request_id, "ALLOCATE", {
            "taken": take, "remaining": remaining, "state": new_state,
        })
        uow.emit(NotificationKind.TRANSFER_CREATED.value,
                 _transfer_payload(transfer_id, request, offer_id, facility_id, chosen))
        if new_state == RequestState.ACCEPTED.value:
            uow.emit(NotificationKind.REQUEST_STATE_CHANGED.value, {
                "request_id": request_id,
                "facility_id": request["facility_id"],
                "old_state": RequestState.PENDING.value,
                "new_state": new_state,
            })

    logger.info(f"[Reservation] Transfer {transfer_id}: {take} units from {facility_id} "
                f"for request {request_id} ({remaining} still needed)")
    return {
        "transfer_id": transfer_id,
        "offer_id": offer_id,
        "request_id": request_id,
        "unit_ids": chosen,
        "request_state": new_state,
        "remaining_quantity": remaining,
    }


def change_request_state(
    store: BaseDatabaseManager,
    request_id: str,
    new_state: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Owner transition from pending/partial; accepted is reachable only by allocation."""
    facility_id = require_facility(actor)
    new_state = getattr(new_state, "value", new_state)
    if new_state not in MANUAL_REQUEST_STATES:
        raise InvalidInput(f"Invalid request state: {new_state}")
    now = now or utcnow()

    with store.unit_of_work(actor.user_id) as uow:
        request = _lock_request(uow, request_id)
        if request["facility_id"] != facility_id:
            raise Forbidden("Only the requesting facility can change this request")
        old_state = request["state"]
        if old_state not in EDITABLE_REQUEST_STATES or old_state == new_state:
            raise Conflict(f"Cannot change request from {old_state} to {new_state}")

        _set_request(uow, request_id, new_state, request["quantity"], now)
        uow.audit("request", request_id, "STATE_CHANGE", {"old_state": old_state, "new_state": new_state})
        uow.emit(NotificationKind.REQUEST_STATE_CHANGED.value, {
            "request_id": request_id,
            "facility_id": facility_id,
            "old_state": old_state,
            "new_state": new_state,
        })

    logger.info(f"[Reservation] Request {request_id}: {old_state} -> {new_state}")
    request.update(state=new_state, updated_at=to_db(now))
    return request


def get_request(store: BaseDatabaseManager, request_id: str, actor: Actor) -> Dict[str, Any]:
    require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        request = uow.fetchone("SELECT * FROM requests WHERE id = ?", (request_id,))
    if not request:
        raise NotFound("Request not found")
    return request_to_dict(request)


def list_requests(
    store: BaseDatabaseManager,
    actor: Actor,
    scope: str = "mine",
    state: Optional[str] = None,
    include_shadow: bool = False,
) -> List[Dict[str, Any]]:
    """
    scope='mine': the caller's requests, newest first.
    scope='incoming': pending requests of other facilities, best-ranked first.
    """
    facility_id = require_facility(actor)
    query = "SELECT * FROM requests WHERE 1 = 1"
    params: List[Any] = []

    if scope == "mine":
        query += " AND facility_id = ?"
        params.append(facility_id)
        if state:
            query += " AND state = ?"
            params.append(getattr(state, "value", state))
        order = " ORDER BY created_at DESC, id ASC"
    elif scope == "incoming":
        query += " AND facility_id <> ? AND state = 'pending'"
        params.append(facility_id)
        order = " ORDER BY urgent DESC, created_at ASC, id ASC"
    else:
        raise InvalidInput(f"Invalid scope: {scope}")
    if not include_shadow:
        query += " AND is_shadow = 0"
    query += order

    with store.unit_of_work(actor.user_id) as uow:
        rows = uow.fetchall(query, params)
    return [request_to_dict(r) for r in rows]

