"""
Reservation Coordinator Tests

Offer creation, allocation from both sides, quantity conservation,
homogeneity enforcement and manual offer/request state changes.
"""

from datetime import timedelta

import pytest

from conftest import NOW, PLASMA_O_POS, RED_CELLS_A_NEG, add_units, fetch, unit_states
from services import reservation
from services.errors import Conflict, Forbidden, InvalidInput, InvalidSelection, NotFound


def _offer_state(store, offer_id):
    return fetch(store, "SELECT state FROM offers WHERE id = ?", (offer_id,))[0]["state"]


def _request(store, request_id):
    return fetch(store, "SELECT * FROM requests WHERE id = ?", (request_id,))[0]


def _row_counts(store):
    return {
        table: fetch(store, f"SELECT COUNT(*) AS n FROM {table}")[0]["n"]
        for table in ("offers", "offer_items", "requests", "transfers", "transfer_items")
    }


# =============================================================================
# create_offer / precheck_offer
# =============================================================================

def test_create_offer_reserves_units(store, fac_a, dispatcher):
    ids = add_units(store, fac_a, 3)

    offer = reservation.create_offer(store, ids, fac_a, note="surplus")

    assert offer["state"] == "open"
    assert set(unit_states(store, ids).values()) == {"reserved"}
    assert dispatcher.kinds() == ["offer_created"]


def test_create_offer_match_count(store, fac_a, fac_b, fac_c):
    reservation.create_request(store, fac_b, quantity=2, **PLASMA_O_POS)
    reservation.create_request(store, fac_c, quantity=3, **PLASMA_O_POS)
    reservation.create_request(store, fac_c, quantity=4, **PLASMA_O_POS)
    reservation.create_request(store, fac_a, quantity=1, **PLASMA_O_POS)

    offer = reservation.create_offer(store, add_units(store, fac_a, 3), fac_a)

    assert offer["match_count"] == 2


@pytest.mark.parametrize("unit_ids", [[], None])
def test_create_offer_rejects_empty_list(store, fac_a, unit_ids):
    with pytest.raises(InvalidInput):
        reservation.create_offer(store, unit_ids, fac_a)


def test_create_offer_rejects_duplicates(store, fac_a):
    unit_id = add_units(store, fac_a, 1)[0]
    with pytest.raises(InvalidInput):
        reservation.create_offer(store, [unit_id, unit_id], fac_a)


def test_create_offer_rejects_foreign_or_busy_units(store, fac_a, fac_b):
    own = add_units(store, fac_a, 2)
    foreign = add_units(store, fac_b, 1)

    with pytest.raises(InvalidSelection):
        reservation.create_offer(store, [own[0], foreign[0]], fac_a)
    assert unit_states(store, own) == {own[0]: "available", own[1]: "available"}

    reservation.create_offer(store, own[:1], fac_a)
    with pytest.raises(InvalidSelection):
        reservation.create_offer(store, own, fac_a)
    assert unit_states(store, own)[own[1]] == "available"


def test_precheck_offer_writes_nothing(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 2) + add_units(store, fac_a, 1, spec=RED_CELLS_A_NEG)
    request = reservation.create_request(store, fac_b, quantity=2, **PLASMA_O_POS)
    before = _row_counts(store)

    result = reservation.precheck_offer(store, ids, fac_a)

    assert result["valid"] is True
    assert result["homogeneous"] is False
    matches = [r["id"] for g in result["groups"] for r in g["matching_requests"]]
    assert matches == [request["id"]]
    assert _row_counts(store) == before
    assert set(unit_states(store, ids).values()) == {"available"}


# =============================================================================
# create_request
# =============================================================================

def test_create_request_match_count(store, fac_a, fac_b):
    reservation.create_offer(store, add_units(store, fac_a, 3), fac_a)
    reservation.create_offer(store, add_units(store, fac_a, 1), fac_a)

    request = reservation.create_request(store, fac_b, quantity=2, urgent=True, **PLASMA_O_POS)

    assert request["state"] == "pending"
    assert request["urgent"] is True
    assert request["match_count"] == 1


@pytest.mark.parametrize("quantity", [0, -1, "3", True])
def test_create_request_rejects_bad_quantity(store, fac_b, quantity):
    with pytest.raises(InvalidInput):
        reservation.create_request(store, fac_b, quantity=quantity, **PLASMA_O_POS)


def test_create_request_rejects_bad_group(store, fac_b):
    with pytest.raises(InvalidInput):
        reservation.create_request(store, fac_b, component="plasma", abo="C", rh="+", quantity=1)


# =============================================================================
# allocate_from_request
# =============================================================================

def test_allocate_from_request_partial_then_full(store, fac_a, fac_b, dispatcher):
    request = reservation.create_request(store, fac_b, quantity=4, **PLASMA_O_POS)
    first = add_units(store, fac_a, 3)

    result = reservation.allocate_from_request(store, request["id"], first, fac_a)

    assert result["request_state"] == "pending"
    assert result["remaining_quantity"] == 1
    assert _request(store, request["id"])["quantity"] == 1
    assert set(unit_states(store, first).values()) == {"reserved"}
    transfer = fetch(store, "SELECT * FROM transfers WHERE id = ?", (result["transfer_id"],))[0]
    assert transfer["state"] == "created"
    assert transfer["origin_facility_id"] == "FAC-A"
    assert transfer["destination_facility_id"] == "FAC-B"
    shadow = fetch(store, "SELECT * FROM offers WHERE id = ?", (result["offer_id"],))[0]
    assert shadow["state"] == "closed" and shadow["is_shadow"] == 1

    second = add_units(store, fac_a, 2)
    result = reservation.allocate_from_request(store, request["id"], second, fac_a)

    assert result["request_state"] == "accepted"
    assert result["remaining_quantity"] == 0
    assert len(result["unit_ids"]) == 1
    row = _request(store, request["id"])
    assert (row["state"], row["quantity"]) == ("accepted", 0)
    assert dispatcher.kinds().count("request_state_changed") == 1


def test_allocate_from_request_takes_soonest_expiring(store, fac_a, fac_b):
    request = reservation.create_request(store, fac_b, quantity=2, **PLASMA_O_POS)
    late = add_units(store, fac_a, 1, expires_in_days=40)
    early = add_units(store, fac_a, 2, expires_in_days=3)

    result = reservation.allocate_from_request(store, request["id"], late + early, fac_a)

    assert sorted(result["unit_ids"]) == sorted(early)
    assert unit_states(store, late)[late[0]] == "available"


@pytest.mark.parametrize("requested,selected", [(5, 2), (2, 5), (3, 3)])
def test_quantity_conservation(store, fac_a, fac_b, requested, selected):
    request = reservation.create_request(store, fac_b, quantity=requested, **PLASMA_O_POS)
    ids = add_units(store, fac_a, selected)

    result = reservation.allocate_from_request(store, request["id"], ids, fac_a)

    taken = min(requested, selected)
    row = _request(store, request["id"])
    assert len(result["unit_ids"]) == taken
    assert row["quantity"] == requested - taken
    assert (row["quantity"] == 0) == (row["state"] == "accepted")


def test_allocate_from_request_rejects_mixed_units_before_writing(store, fac_a, fac_b):
    request = reservation.create_request(store, fac_b, quantity=3, **PLASMA_O_POS)
    ids = add_units(store, fac_a, 2) + add_units(store, fac_a, 1, irradiated=True)
    before = _row_counts(store)

    with pytest.raises(InvalidSelection):
        reservation.allocate_from_request(store, request["id"], ids, fac_a)

    assert _row_counts(store) == before
    assert set(unit_states(store, ids).values()) == {"available"}
    assert _request(store, request["id"])["quantity"] == 3


def test_allocate_from_request_rejects_spec_mismatch(store, fac_a, fac_b):
    request = reservation.create_request(store, fac_b, quantity=1, **PLASMA_O_POS)
    ids = add_units(store, fac_a, 1, spec=RED_CELLS_A_NEG)

    with pytest.raises(InvalidSelection):
        reservation.allocate_from_request(store, request["id"], ids, fac_a)


def test_allocate_from_request_errors(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 1)
    with pytest.raises(NotFound):
        reservation.allocate_from_request(store, "missing", ids, fac_a)

    own = reservation.create_request(store, fac_a, quantity=1, **PLASMA_O_POS)
    with pytest.raises(Forbidden):
        reservation.allocate_from_request(store, own["id"], ids, fac_a)

    other = reservation.create_request(store, fac_b, quantity=1, **PLASMA_O_POS)
    reservation.change_request_state(store, other["id"], "cancelled", fac_b)
    with pytest.raises(Conflict):
        reservation.allocate_from_request(store, other["id"], ids, fac_a)


# =============================================================================
# allocate_from_offer
# =============================================================================

def test_allocate_from_offer_partial_keeps_offer_open(store, fac_a, fac_b, dispatcher):
    request = reservation.create_request(store, fac_b, quantity=3, **PLASMA_O_POS)
    ids = add_units(store, fac_a, 5)
    offer = reservation.create_offer(store, ids, fac_a)

    result = reservation.allocate_from_offer(store, offer["id"], fac_b)

    assert result["request_id"] == request["id"]
    assert result["shadow_request"] is False
    assert len(result["unit_ids"]) == 3
    assert result["offer_closed"] is False
    assert _offer_state(store, offer["id"]) == "open"
    assert _request(store, request["id"])["state"] == "accepted"
    free = fetch(store, "SELECT id FROM units WHERE offer_id = ? AND state = 'reserved' "
                        "AND transfer_id IS NULL", (offer["id"],))
    assert len(free) == 2
    assert "offer_state_changed" not in dispatcher.kinds()


def test_allocate_from_offer_exhausting_closes_offer(store, fac_a, fac_b, dispatcher):
    reservation.create_request(store, fac_b, quantity=3, **PLASMA_O_POS)
    offer = reservation.create_offer(store, add_units(store, fac_a, 3), fac_a)

    result = reservation.allocate_from_offer(store, offer["id"], fac_b)

    assert result["offer_closed"] is True
    assert _offer_state(store, offer["id"]) == "closed"
    assert "offer_state_changed" in dispatcher.kinds()


def test_allocate_from_offer_picks_urgent_then_oldest(store, fac_a, fac_b):
    reservation.create_request(store, fac_b, quantity=1, **PLASMA_O_POS)
    urgent = reservation.create_request(store, fac_b, quantity=2, urgent=True, **PLASMA_O_POS)
    reservation.create_request(store, fac_b, quantity=9, urgent=True, **PLASMA_O_POS)
    offer = reservation.create_offer(store, add_units(store, fac_a, 3), fac_a)

    result = reservation.allocate_from_offer(store, offer["id"], fac_b)

    assert result["request_id"] == urgent["id"]
    assert len(result["unit_ids"]) == 2


def test_allocate_from_offer_without_request_records_shadow(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 4)
    offer = reservation.create_offer(store, ids, fac_a)

    result = reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=ids[:2])

    assert result["shadow_request"] is True
    shadow = _request(store, result["request_id"])
    assert shadow["is_shadow"] == 1
    assert (shadow["state"], shadow["quantity"]) == ("accepted", 0)
    assert shadow["facility_id"] == "FAC-B"
    assert reservation.list_requests(store, fac_b) == []
    assert len(reservation.list_requests(store, fac_b, include_shadow=True)) == 1


def test_allocate_from_offer_rejects_units_outside_offer(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 3)
    offer = reservation.create_offer(store, ids[:2], fac_a)

    with pytest.raises(InvalidSelection):
        reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=[ids[0], ids[2]])


def test_allocate_from_offer_rejects_mixed_selection(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 2) + add_units(store, fac_a, 2, spec=RED_CELLS_A_NEG)
    offer = reservation.create_offer(store, ids, fac_a)
    before = _row_counts(store)

    with pytest.raises(InvalidSelection):
        reservation.allocate_from_offer(store, offer["id"], fac_b)

    assert _row_counts(store) == before
    homogeneous = reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=ids[2:])
    assert sorted(homogeneous["unit_ids"]) == sorted(ids[2:])


def test_allocate_from_offer_errors(store, fac_a, fac_b):
    offer = reservation.create_offer(store, add_units(store, fac_a, 2), fac_a)

    with pytest.raises(NotFound):
        reservation.allocate_from_offer(store, "missing", fac_b)
    with pytest.raises(Forbidden):
        reservation.allocate_from_offer(store, offer["id"], fac_a)

    reservation.change_offer_state(store, offer["id"], "closed", fac_a)
    with pytest.raises(Conflict):
        reservation.allocate_from_offer(store, offer["id"], fac_b)


# =============================================================================
# Manual state changes
# =============================================================================

def test_change_offer_state_close_releases_and_reopen_reserves(store, fac_a):
    ids = add_units(store, fac_a, 2)
    offer = reservation.create_offer(store, ids, fac_a)

    closed = reservation.change_offer_state(store, offer["id"], "closed", fac_a)
    assert closed["released_units"] == 2
    assert set(unit_states(store, ids).values()) == {"available"}

    reopened = reservation.change_offer_state(store, offer["id"], "open", fac_a)
    assert reopened["reserved_units"] == 2
    assert set(unit_states(store, ids).values()) == {"reserved"}


def test_change_offer_state_reopen_without_units_conflicts(store, fac_a):
    ids = add_units(store, fac_a, 1)
    offer = reservation.create_offer(store, ids, fac_a)
    reservation.change_offer_state(store, offer["id"], "closed", fac_a)
    reservation.create_offer(store, ids, fac_a)

    with pytest.raises(Conflict):
        reservation.change_offer_state(store, offer["id"], "open", fac_a)


def test_change_offer_state_rules(store, fac_a, fac_b):
    offer = reservation.create_offer(store, add_units(store, fac_a, 1), fac_a)

    with pytest.raises(Forbidden):
        reservation.change_offer_state(store, offer["id"], "closed", fac_b)
    reservation.change_offer_state(store, offer["id"], "cancelled", fac_a)
    with pytest.raises(Conflict):
        reservation.change_offer_state(store, offer["id"], "open", fac_a)
    with pytest.raises(InvalidInput):
        reservation.change_offer_state(store, offer["id"], "archived", fac_a)


def test_change_request_state(store, fac_a, fac_b):
    request = reservation.create_request(store, fac_b, quantity=2, **PLASMA_O_POS)

    with pytest.raises(Forbidden):
        reservation.change_request_state(store, request["id"], "cancelled", fac_a)
    with pytest.raises(InvalidInput):
        reservation.change_request_state(store, request["id"], "accepted", fac_b)

    assert reservation.change_request_state(store, request["id"], "partial", fac_b)["state"] == "partial"
    assert reservation.change_request_state(store, request["id"], "rejected", fac_b)["state"] == "rejected"
    with pytest.raises(Conflict):
        reservation.change_request_state(store, request["id"], "pending", fac_b)


def test_list_offers_scopes(store, fac_a, fac_b):
    offer = reservation.create_offer(store, add_units(store, fac_a, 2), fac_a)

    available = reservation.list_offers(store, fac_b)
    assert [o["id"] for o in available] == [offer["id"]]
    assert available[0]["free_units"] == 2
    assert reservation.list_offers(store, fac_a) == []
    assert [o["id"] for o in reservation.list_offers(store, fac_a, scope="mine")] == [offer["id"]]

    reservation.change_offer_state(store, offer["id"], "cancelled", fac_a)
    assert reservation.list_offers(store, fac_b) == []
    with pytest.raises(NotFound):
        reservation.get_offer(store, offer["id"], fac_b)


# =============================================================================
# Expired, not yet swept units
# =============================================================================

def test_expired_units_cannot_be_offered_or_allocated(store, fac_a, fac_b):
    expired = add_units(store, fac_a, 1, expires_in_days=1)
    later = NOW + timedelta(days=2)
    request = reservation.create_request(store, fac_b, quantity=1, now=later, **PLASMA_O_POS)
    before = _row_counts(store)

    with pytest.raises(InvalidSelection):
        reservation.create_offer(store, expired, fac_a, now=later)
    with pytest.raises(InvalidSelection):
        reservation.precheck_offer(store, expired, fac_a, now=later)
    with pytest.raises(InvalidSelection):
        reservation.allocate_from_request(store, request["id"], expired, fac_a, now=later)

    assert _row_counts(store) == before
    assert unit_states(store, expired) == {expired[0]: "available"}


def test_allocate_from_offer_skips_expired_units(store, fac_a, fac_b):
    expiring = add_units(store, fac_a, 1, expires_in_days=1)
    lasting = add_units(store, fac_a, 1, expires_in_days=30)
    offer = reservation.create_offer(store, expiring + lasting, fac_a)
    later = NOW + timedelta(days=2)

    with pytest.raises(InvalidSelection):
        reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=expiring, now=later)
    result = reservation.allocate_from_offer(store, offer["id"], fac_b, now=later)

    assert result["unit_ids"] == lasting


def test_reopen_offer_skips_expired_units(store, fac_a):
    expiring = add_units(store, fac_a, 1, expires_in_days=1)
    lasting = add_units(store, fac_a, 1, expires_in_days=30)
    offer = reservation.create_offer(store, expiring + lasting, fac_a)
    reservation.change_offer_state(store, offer["id"], "closed", fac_a)

    reopened = reservation.change_offer_state(store, offer["id"], "open", fac_a, now=NOW + timedelta(days=2))

    assert reopened["reserved_units"] == 1
    assert unit_states(store, expiring + lasting) == {expiring[0]: "available", lasting[0]: "reserved"}
