"""
Compatibility Matcher

Exact five-attribute matching between supply and demand:
component, ABO, Rh, filtered, irradiated. No partial matching.

The pure helpers work on plain dicts (rows) or UnitSpec; the query helpers
only read through an open UnitOfWork.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from database import BaseDatabaseManager, UnitOfWork

from .errors import NotFound
from .identity import Actor, require_facility
from .inventory import UNIT_COLUMNS, unit_to_dict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitSpec:
    component: str
    abo: str
    rh: str
    filtered: bool = False
    irradiated: bool = False

    def as_params(self) -> list:
        return [self.component, self.abo, self.rh, int(self.filtered), int(self.irradiated)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "component": self.component,
            "abo": self.abo,
            "rh": self.rh,
            "filtered": self.filtered,
            "irradiated": self.irradiated,
        }


SPEC_WHERE = "component = ? AND abo = ? AND rh = ? AND filtered = ? AND irradiated = ?"


# =============================================================================
# Pure helpers
# =============================================================================

def spec_of(record) -> UnitSpec:
    """Specification of a unit or request row."""
    if isinstance(record, UnitSpec):
        return record
    return UnitSpec(
        component=record["component"],
        abo=record["abo"],
        rh=record["rh"],
        filtered=bool(record["filtered"]),
        irradiated=bool(record["irradiated"]),
    )


def specs_match(a, b) -> bool:
    return spec_of(a) == spec_of(b)


def is_homogeneous(units: Iterable) -> bool:
    """True when every unit shares one specification (an empty set is homogeneous)."""
    specs = {spec_of(u) for u in units}
    return len(specs) <= 1


def request_rank_key(request: Dict[str, Any]):
    """Urgent first, then oldest, then id."""
    return (0 if request.get("urgent") else 1, request["created_at"], request["id"])


def rank_requests(requests: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(requests, key=request_rank_key)


def request_to_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    request = dict(row)
    for flag in ("filtered", "irradiated", "urgent", "is_shadow"):
        if flag in request:
            request[flag] = bool(request[flag])
    return request


# =============================================================================
# Candidate queries
# =============================================================================

def find_compatible_requests(
    uow: UnitOfWork,
    spec: UnitSpec,
    max_quantity: int,
    exclude_facility: Optional[str] = None,
    facility: Optional[str] = None,
    lock: bool = False,
) -> List[Dict[str, Any]]:
    """
    Pending requests of the exact spec needing at most max_quantity units,
    best-ranked first.
    """
    query = f"""
        SELECT * FROM requests
        WHERE state = 'pending' AND {SPEC_WHERE} AND quantity <= ?
    """
    params = [*spec.as_params(), int(max_quantity)]
    if exclude_facility:
        query += " AND facility_id <> ?"
        params.append(exclude_facility)
    if facility:
        query += " AND facility_id = ?"
        params.append(facility)
    query += " ORDER BY urgent DESC, created_at ASC, id ASC"
    if lock:
        query += uow.lock_suffix()

    return [request_to_dict(r) for r in uow.fetchall(query, params)]


def find_compatible_offers(
    uow: UnitOfWork,
    spec: UnitSpec,
    min_quantity: int,
    exclude_facility: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Open offers holding at least min_quantity free units of the exact spec."""
    query = f"""
        SELECT o.id, o.facility_id, o.note, o.created_at, COUNT(u.id) AS free_units
        FROM offers o
        JOIN units u ON u.offer_id = o.id
        WHERE o.state = 'open'
          AND u.state = 'reserved' AND u.transfer_id IS NULL
          AND u.component = ? AND u.abo = ? AND u.rh = ?
          AND u.filtered = ? AND u.irradiated = ?
    """
    params: List[Any] = list(spec.as_params())
    if exclude_facility:
        query += " AND o.facility_id <> ?"
        params.append(exclude_facility)
    query += """
        GROUP BY o.id, o.facility_id, o.note, o.created_at
        HAVING COUNT(u.id) >= ?
        ORDER BY o.created_at ASC, o.id ASC
    """
    params.append(int(min_quantity))
    return uow.fetchall(query, params)


def list_selectable_units(store: BaseDatabaseManager, request_id: str, actor: Actor) -> List[Dict[str, Any]]:
    """
    The caller's available units compatible with a request, soonest-expiring
    first. Empty when the request is the caller's own.
    """
    facility_id = require_facility(actor)
    with store.unit_of_work(actor.user_id) as uow:
        request = uow.fetchone("SELECT * FROM requests WHERE id = ?", (request_id,))
        if not request:
            raise NotFound("Request not found")
        if request["facility_id"] == facility_id:
            return []
        rows = uow.fetchall(f"""
            SELECT {UNIT_COLUMNS} FROM units
            WHERE facility_id = ? AND state = 'available' AND {SPEC_WHERE}
            ORDER BY expires_at ASC, id ASC
        """, [facility_id, *spec_of(request).as_params()])
    return [unit_to_dict(r) for r in rows]
