"""
Inventory Ledger

Authoritative set of blood units and their custody/availability state.

Unit lifecycle:
    available -> reserved -> in_transit -> transferred
    available -> expired   (archived into units_history, removed from units)

Every state write is a guard update (WHERE state = <expected>) whose row
count is checked, so a unit that changed underneath the caller is never
silently overwritten.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence

from database import BaseDatabaseManager, UnitOfWork, placeholders
from models.exchange import AboGroup, Component, RhFactor, UnitState

from .clock import to_db, utcnow
from .errors import InvalidInput, InvalidSelection, NotFound
from .identity import Actor, require_facility

logger = logging.getLogger(__name__)

UNIT_COLUMNS = (
    "id, component, abo, rh, filtered, irradiated, collected_at, expires_at, "
    "tracking_code, facility_id, state, offer_id, transfer_id, created_by, created_at"
)

COMPONENTS = [c.value for c in Component]
ABO_GROUPS = [g.value for g in AboGroup]
RH_FACTORS = [r.value for r in RhFactor]


# =============================================================================
# Helpers
# =============================================================================

def generate_tracking_code(now: Optional[datetime] = None) -> str:
    """Tracking code: CS-YYYYMMDDHHMM-XXXXXX"""
    now = now or utcnow()
    return f"CS-{now.strftime('%Y%m%d%H%M')}-{uuid.uuid4().hex[:6].upper()}"


def unit_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    unit = dict(row)
    unit["filtered"] = bool(unit.get("filtered"))
    unit["irradiated"] = bool(unit.get("irradiated"))
    return unit


def validate_spec_fields(component: str, abo: str, rh: str):
    if component not in COMPONENTS:
        raise InvalidInput(f"Invalid component: {component}")
    if abo not in ABO_GROUPS:
        raise InvalidInput(f"Invalid ABO group: {abo}")
    if rh not in RH_FACTORS:
        raise InvalidInput(f"Invalid Rh factor: {rh}")


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


# =============================================================================
# Ledger operations
# =============================================================================

def register_unit(
    store: BaseDatabaseManager,
    actor: Actor,
    component: str,
    abo: str,
    rh: str,
    expires_at: datetime,
    filtered: bool = False,
    irradiated: bool = False,
    collected_at: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create an available unit in the actor's facility."""
    facility_id = require_facility(actor)
    component, abo, rh = _enum_value(component), _enum_value(abo), _enum_value(rh)
    validate_spec_fields(component, abo, rh)

    now = now or utcnow()
    if expires_at is None:
        raise InvalidInput("expires_at is required")
    if to_db(expires_at) <= to_db(now):
        raise InvalidInput("Unit is already expired")

    unit_id = str(uuid.uuid4())
    tracking_code = generate_tracking_code(now)

    with store.unit_of_work(actor.user_id) as uow:
        uow.execute("""
            INSERT INTO units (
                id, component, abo, rh, filtered, irradiated, collected_at, expires_at,
                tracking_code, facility_id, state, created_by, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'available', ?, ?)
        """, (
            unit_id, component, abo, rh, int(bool(filtered)), int(bool(irradiated)),
            to_db(collected_at), to_db(expires_at), tracking_code, facility_id,
            actor.user_id, to_db(now),
        ))
        unit = uow.fetchone(f"SELECT {UNIT_COLUMNS} FROM units WHERE id = ?", (unit_id,))
        uow.audit("unit", unit_id, "CREATE", {
            "component": component, "abo": abo, "rh": rh,
            "filtered": bool(filtered), "irradiated": bool(irradiated),
            "expires_at": to_db(expires_at), "tracking_code": tracking_code,
        })

    logger.info(f"[Inventory] Unit {tracking_code} registered at {facility_id}")
    return unit_to_dict(unit)


def get_unit(store: BaseDatabaseManager, unit_id: str, actor: Actor) -> Dict[str, Any]:
    """Detail of a unit held by the actor's facility."""
    facility_id = require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        unit = uow.fetchone(
            f"SELECT {UNIT_COLUMNS} FROM units WHERE id = ? AND facility_id = ?",
            (unit_id, facility_id)
        )
    if not unit:
        raise NotFound("Unit not found")
    return unit_to_dict(unit)


def list_units(
    store: BaseDatabaseManager,
    actor: Actor,
    component: Optional[str] = None,
    abo: Optional[str] = None,
    rh: Optional[str] = None,
    state: Optional[str] = None,
    filtered: Optional[bool] = None,
    irradiated: Optional[bool] = None,
    include_offered: bool = False,
    limit: int = 200,
) -> List[Dict[str, Any]]:
    """
    Units in the actor's custody, soonest-expiring first.

    Units held by an open offer are hidden unless include_offered is set.
    """
    facility_id = require_facility(actor)

    query = f"SELECT {UNIT_COLUMNS} FROM units u WHERE u.facility_id = ?"
    params: List[Any] = [facility_id]

    if component:
        query += " AND u.component = ?"
        params.append(_enum_value(component))
    if abo:
        query += " AND u.abo = ?"
        params.append(_enum_value(abo))
    if rh:
        query += " AND u.rh = ?"
        params.append(_enum_value(rh))
    if state:
        query += " AND u.state = ?"
        params.append(_enum_value(state))
    if filtered is not None:
        query += " AND u.filtered = ?"
        params.append(int(filtered))
    if irradiated is not None:
        query += " AND u.irradiated = ?"
        params.append(int(irradiated))
    if not include_offered:
        query += """
            AND NOT EXISTS (
                SELECT 1 FROM offers o
                WHERE o.id = u.offer_id AND o.state = 'open'
            )
        """

    query += " ORDER BY u.expires_at ASC, u.created_at DESC LIMIT ?"
    params.append(int(limit))

    with store.unit_of_work(actor.user_id) as uow:
        rows = uow.fetchall(query, params)
    return [unit_to_dict(r) for r in rows]


def list_archived_units(store: BaseDatabaseManager, actor: Actor, limit: int = 200) -> List[Dict[str, Any]]:
    """Retired units last held by the actor's facility."""
    facility_id = require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        rows = uow.fetchall("""
            SELECT * FROM units_history
            WHERE facility_id = ?
            ORDER BY archived_at DESC
            LIMIT ?
        """, (facility_id, int(limit)))
    return [unit_to_dict(r) for r in rows]


# =============================================================================
# In-transaction primitives (called with an open UnitOfWork)
# =============================================================================

def lock_units(uow: UnitOfWork, unit_ids: Sequence[str]) -> List[Dict[str, Any]]:
    """Lock and read units by id, soonest-expiring first."""
    if not unit_ids:
        return []
    rows = uow.fetchall(
        f"SELECT {UNIT_COLUMNS} FROM units WHERE id IN ({placeholders(unit_ids)}) "
        f"ORDER BY expires_at ASC, id ASC{uow.lock_suffix()}",
        list(unit_ids)
    )
    return [unit_to_dict(r) for r in rows]


def free_offer_units(uow: UnitOfWork, offer_id: str, lock: bool = False) -> List[Dict[str, Any]]:
    """Reserved units held by an offer and not claimed by any active transfer."""
    rows = uow.fetchall(
        f"SELECT {UNIT_COLUMNS} FROM units "
        f"WHERE offer_id = ? AND state = 'reserved' AND transfer_id IS NULL "
        f"ORDER BY expires_at ASC, id ASC{uow.lock_suffix() if lock else ''}",
        (offer_id,)
    )
    return [unit_to_dict(r) for r in rows]


def count_free_offer_units(uow: UnitOfWork, offer_id: str) -> int:
    return int(uow.scalar("""
        SELECT COUNT(*) FROM units
        WHERE offer_id = ? AND state = 'reserved' AND transfer_id IS NULL
    """, (offer_id,)) or 0)


def reserve_units(uow: UnitOfWork, unit_ids: Sequence[str], offer_id: str,
                  transfer_id: Optional[str] = None, valid_at: Optional[str] = None):
    """
    available -> reserved into an offer (and optionally straight into a transfer).

    With valid_at, units expiring before that instant are not reserved.
    """
    query = f"""
        UPDATE units
        SET state = 'reserved', offer_id = ?, transfer_id = ?
        WHERE id IN ({placeholders(unit_ids)}) AND state = 'available'
    """
    params: List[Any] = [offer_id, transfer_id, *unit_ids]
    if valid_at is not None:
        query += " AND expires_at >= ?"
        params.append(valid_at)
    cursor = uow.execute(query, params)
    if cursor.rowcount != len(unit_ids):
        raise InvalidSelection("One or more units are no longer available")


def claim_units(uow: UnitOfWork, unit_ids: Sequence[str], offer_id: str, transfer_id: str):
    """Bind free reserved units of an offer to a transfer."""
    cursor = uow.execute(f"""
        UPDATE units
        SET transfer_id = ?
        WHERE id IN ({placeholders(unit_ids)})
          AND offer_id = ? AND state = 'reserved' AND transfer_id IS NULL
    """, [transfer_id, *unit_ids, offer_id])
    if cursor.rowcount != len(unit_ids):
        raise InvalidSelection("One or more units are no longer available in the offer")


def release_free_units(uow: UnitOfWork, offer_id: str, expired_before: Optional[str] = None) -> int:
    """
    reserved -> available for the offer's unclaimed units.

    With expired_before, only units still valid at that instant are released.
    """
    query = """
        UPDATE units
        SET state = 'available', offer_id = NULL
        WHERE offer_id = ? AND state = 'reserved' AND transfer_id IS NULL
    """
    params: List[Any] = [offer_id]
    if expired_before is not None:
        query += " AND expires_at >= ?"
        params.append(expired_before)
    return uow.execute(query, params).rowcount


def transfer_unit_ids(uow: UnitOfWork, transfer_id: str) -> List[str]:
    rows = uow.fetchall(
        "SELECT unit_id FROM transfer_items WHERE transfer_id = ? ORDER BY unit_id",
        (transfer_id,)
    )
    return [r["unit_id"] for r in rows]


def transfer_units(uow: UnitOfWork, unit_ids: Sequence[str]) -> List[Dict[str, Any]]:
    """Unit rows for a transfer, falling back to units_history for archived units."""
    if not unit_ids:
        return []
    found = {
        r["id"]: unit_to_dict(r) for r in uow.fetchall(
            f"SELECT {UNIT_COLUMNS} FROM units WHERE id IN ({placeholders(unit_ids)})",
            list(unit_ids)
        )
    }
    missing = [u for u in unit_ids if u not in found]
    if missing:
        for r in uow.fetchall(
            f"SELECT * FROM units_history WHERE id IN ({placeholders(missing)})",
            missing
        ):
            found[r["id"]] = unit_to_dict(r)
    return [found[u] for u in unit_ids if u in found]


def move_transfer_units(
    uow: UnitOfWork,
    transfer_id: str,
    from_states: Sequence[str],
    to_state: str,
    facility_id: str,
    keep_claim: bool,
    keep_offer: bool = True,
) -> int:
    """
    Move every unit of a transfer from one of from_states to to_state.

    Raises InvalidSelection if any unit of the transfer is not in from_states.
    """
    unit_ids = transfer_unit_ids(uow, transfer_id)
    if not unit_ids:
        return 0

    sets = ["state = ?", "facility_id = ?"]
    params: List[Any] = [to_state, facility_id]
    if not keep_claim:
        sets.append("transfer_id = NULL")
    if not keep_offer:
        sets.append("offer_id = NULL")

    cursor = uow.execute(f"""
        UPDATE units
        SET {', '.join(sets)}
        WHERE id IN ({placeholders(unit_ids)})
          AND state IN ({placeholders(from_states)})
    """, [*params, *unit_ids, *from_states])
    if cursor.rowcount != len(unit_ids):
        raise InvalidSelection(
            f"Transfer {transfer_id} units are not all in state {'/'.join(from_states)}"
        )
    return cursor.rowcount


def archive_units(uow: UnitOfWork, unit_ids: Sequence[str], now: datetime) -> int:
    """Copy units into units_history with final state 'expired' and delete them."""
    if not unit_ids:
        return 0
    uow.execute(f"""
        INSERT INTO units_history (
            id, component, abo, rh, filtered, irradiated, collected_at, expires_at,
            tracking_code, facility_id, state, created_by, created_at, archived_at
        )
        SELECT id, component, abo, rh, filtered, irradiated, collected_at, expires_at,
               tracking_code, facility_id, ?, created_by, created_at, ?
        FROM units
        WHERE id IN ({placeholders(unit_ids)})
    """, [UnitState.EXPIRED.value, to_db(now), *unit_ids])
    cursor = uow.execute(
        f"DELETE FROM units WHERE id IN ({placeholders(unit_ids)})",
        list(unit_ids)
    )
    return cursor.rowcount
