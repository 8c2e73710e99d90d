"""
Reconciliation Sweeper Tests

Each sweep is checked for its effect and for idempotence: a second run over
the same state changes nothing.
"""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import patch

from conftest import NOW, PLASMA_O_POS, add_units, fetch, unit_states
from services import reservation, sweepers, transfers
from services.sweepers import SweeperScheduler, SweeperSettings


def _state(store, table, row_id):
    return fetch(store, f"SELECT state FROM {table} WHERE id = ?", (row_id,))[0]["state"]


# =============================================================================
# Request expiry
# =============================================================================

def test_expire_stale_requests(store, fac_b, dispatcher):
    old = reservation.create_request(store, fac_b, quantity=1, now=NOW - timedelta(days=8), **PLASMA_O_POS)
    fresh = reservation.create_request(store, fac_b, quantity=1, now=NOW - timedelta(days=2), **PLASMA_O_POS)
    partial = reservation.create_request(store, fac_b, quantity=1, now=NOW - timedelta(days=9), **PLASMA_O_POS)
    reservation.change_request_state(store, partial["id"], "partial", fac_b)

    assert sweepers.expire_stale_requests(store, 7, now=NOW) == {"cancelled": 1, "failed": 0}
    assert _state(store, "requests", old["id"]) == "cancelled"
    assert _state(store, "requests", fresh["id"]) == "pending"
    assert _state(store, "requests", partial["id"]) == "partial"
    assert "AUTO_CANCEL_EXPIRED" in dispatcher.kinds("audit")

    assert sweepers.expire_stale_requests(store, 7, now=NOW) == {"cancelled": 0, "failed": 0}


# =============================================================================
# Inventory expiry
# =============================================================================

def test_expire_inventory_cancels_offer_and_archives(store, fac_a, dispatcher):
    expiring = add_units(store, fac_a, 1, expires_in_days=1)
    lasting = add_units(store, fac_a, 2, expires_in_days=30)
    loose = add_units(store, fac_a, 1, expires_in_days=1)
    offer = reservation.create_offer(store, expiring + lasting, fac_a)
    later = NOW + timedelta(days=2)

    result = sweepers.expire_inventory(store, now=later)

    assert result == {"offers_cancelled": 1, "units_archived": 2, "failed": 0}
    assert _state(store, "offers", offer["id"]) == "cancelled"
    assert unit_states(store, lasting) == {lasting[0]: "available", lasting[1]: "available"}
    history = {h["id"] for h in fetch(store, "SELECT id FROM units_history WHERE state = 'expired'")}
    assert history == set(expiring + loose)
    assert fetch(store, "SELECT id FROM units WHERE id IN (?, ?)", (expiring[0], loose[0])) == []
    assert "offer_cancelled_by_expiry" in dispatcher.kinds()

    assert sweepers.expire_inventory(store, now=later) == {
        "offers_cancelled": 0, "units_archived": 0, "failed": 0,
    }


def test_expire_inventory_leaves_claimed_units(store, fac_a, fac_b):
    ids = add_units(store, fac_a, 2, expires_in_days=1)
    offer = reservation.create_offer(store, ids, fac_a)
    allocation = reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=ids[:1])

    result = sweepers.expire_inventory(store, now=NOW + timedelta(days=2))

    assert result["units_archived"] == 1
    assert _state(store, "offers", offer["id"]) == "cancelled"
    assert unit_states(store, ids) == {ids[0]: "reserved"}
    assert _state(store, "transfers", allocation["transfer_id"]) == "created"


def test_expire_inventory_cancels_offer_when_expired_unit_is_claimed(store, fac_a, fac_b, dispatcher):
    expiring = add_units(store, fac_a, 1, expires_in_days=1)
    lasting = add_units(store, fac_a, 2, expires_in_days=30)
    offer = reservation.create_offer(store, expiring + lasting, fac_a)
    allocation = reservation.allocate_from_offer(store, offer["id"], fac_b, unit_ids=expiring)

    result = sweepers.expire_inventory(store, now=NOW + timedelta(days=2))

    assert result == {"offers_cancelled": 1, "units_archived": 0, "failed": 0}
    assert _state(store, "offers", offer["id"]) == "cancelled"
    assert unit_states(store, lasting) == {lasting[0]: "available", lasting[1]: "available"}
    assert unit_states(store, expiring) == {expiring[0]: "reserved"}
    assert _state(store, "transfers", allocation["transfer_id"]) == "created"
    assert "offer_cancelled_by_expiry" in dispatcher.kinds()


def test_expire_inventory_continues_after_failure(store, fac_a):
    first = reservation.create_offer(store, add_units(store, fac_a, 1, expires_in_days=1), fac_a)
    second = reservation.create_offer(store, add_units(store, fac_a, 1, expires_in_days=1), fac_a)
    real_archive = sweepers.archive_units
    calls = []

    def flaky_archive(uow, unit_ids, now):
        calls.append(unit_ids)
        if len(calls) == 1:
            raise RuntimeError("disk full")
        return real_archive(uow, unit_ids, now)

    with patch.object(sweepers, "archive_units", side_effect=flaky_archive):
        result = sweepers.expire_inventory(store, now=NOW + timedelta(days=2))

    assert result["failed"] == 1
    assert result["offers_cancelled"] == 1
    states = {_state(store, "offers", first["id"]), _state(store, "offers", second["id"])}
    assert states == {"open", "cancelled"}


# =============================================================================
# Transfer watchdog
# =============================================================================

def test_watchdog_cancels_stuck_transfers(store, fac_a, fac_b, fac_c):
    stale_ids = add_units(store, fac_a, 2)
    stale_offer = reservation.create_offer(store, stale_ids, fac_a)
    stale = reservation.allocate_from_offer(store, stale_offer["id"], fac_b, now=NOW - timedelta(hours=49))

    shipped_ids = add_units(store, fac_a, 1)
    shipped_offer = reservation.create_offer(store, shipped_ids, fac_a)
    shipped = reservation.allocate_from_offer(store, shipped_offer["id"], fac_c, now=NOW - timedelta(days=10))
    transfers.send(store, shipped["transfer_id"], fac_a, now=NOW - timedelta(days=3))

    fresh_offer = reservation.create_offer(store, add_units(store, fac_a, 1), fac_a)
    fresh = reservation.allocate_from_offer(store, fresh_offer["id"], fac_b, now=NOW - timedelta(hours=2))

    result = sweepers.watchdog_transfers(store, 48, 7, now=NOW)

    assert result == {"cancelled": 1, "failed": 0}
    stale_row = fetch(store, "SELECT * FROM transfers WHERE id = ?", (stale["transfer_id"],))[0]
    assert (stale_row["state"], stale_row["cancel_reason"]) == ("cancelled", "watchdog")
    assert _state(store, "offers", stale_offer["id"]) == "open"
    assert set(unit_states(store, stale_ids).values()) == {"reserved"}
    # in transit for 3 days, created 10 days ago: measured from sent_at
    assert _state(store, "transfers", shipped["transfer_id"]) == "in_transit"
    assert _state(store, "transfers", fresh["transfer_id"]) == "created"

    later = sweepers.watchdog_transfers(store, 48, 7, now=NOW + timedelta(days=5))
    assert later == {"cancelled": 2, "failed": 0}
    assert sweepers.watchdog_transfers(store, 48, 7, now=NOW + timedelta(days=5)) == {
        "cancelled": 0, "failed": 0,
    }


# =============================================================================
# Scheduler
# =============================================================================

def test_scheduler_run_job_records_status(store, fac_b):
    reservation.create_request(store, fac_b, quantity=1, now=NOW - timedelta(days=30), **PLASMA_O_POS)
    scheduler = SweeperScheduler(store, SweeperSettings())

    assert scheduler.run_job("requests") == {"cancelled": 1, "failed": 0}
    status = scheduler.get_status()
    assert status["running"] is False
    assert status["jobs"]["requests"]["runs"] == 1
    assert status["jobs"]["requests"]["last_result"] == {"cancelled": 1, "failed": 0}
    assert set(scheduler.run_all()) == {"requests", "inventory", "watchdog"}


def test_scheduler_loop_survives_job_failure(store):
    scheduler = SweeperScheduler(store, SweeperSettings(
        request_sweep_interval=3600, inventory_sweep_interval=3600, watchdog_interval=3600,
    ))

    async def run():
        with patch.object(sweepers, "expire_inventory", side_effect=RuntimeError("boom")):
            await scheduler.start()
            await asyncio.sleep(0.5)
            assert scheduler.is_running
            await scheduler.stop()

    asyncio.run(run())

    jobs = scheduler.get_status()["jobs"]
    assert jobs["inventory"]["last_error"] == "boom"
    assert jobs["requests"]["runs"] == 1
    assert jobs["watchdog"]["last_error"] is None


def test_scheduler_status_counts_concurrent_manual_runs(store):
    scheduler = SweeperScheduler(store, SweeperSettings())
    barrier = threading.Barrier(8)

    def run():
        barrier.wait()
        scheduler.run_job("watchdog")

    threads = [threading.Thread(target=run) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    status = scheduler.get_status()["jobs"]["watchdog"]
    assert status["runs"] == 8
    assert status["last_result"] == {"cancelled": 0, "failed": 0}
    status["runs"] = 0
    assert scheduler.get_status()["jobs"]["watchdog"]["runs"] == 8
