"""
Reconciliation Sweepers

Periodic idempotent jobs:
- expire_stale_requests: pending requests older than N days -> cancelled
- expire_inventory:      offers holding expired units are cancelled, expired
                         units archived into units_history
- watchdog_transfers:    stuck transfers cancelled through the normal cancel path

Each mutation group runs in its own unit of work. A failing group is rolled
back and logged, and the sweep moves on to the next one.

SweeperScheduler runs the jobs as asyncio background loops.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from database import BaseDatabaseManager
from models.exchange import NotificationKind, OfferState

from .clock import to_db, utcnow
from .identity import SYSTEM_ACTOR
from .inventory import archive_units, release_free_units
from .transfers import cancel_locked

logger = logging.getLogger(__name__)


@dataclass
class SweeperSettings:
    request_max_age_days: int = 7
    transfer_created_timeout_hours: int = 48
    transfer_in_transit_timeout_days: int = 7
    request_sweep_interval: int = 86400      # 24h
    inventory_sweep_interval: int = 86400    # 24h
    watchdog_interval: int = 10800           # 3h


# =============================================================================
# Request expiry
# =============================================================================

def expire_stale_requests(store: BaseDatabaseManager, max_age_days: int = 7,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
    """Cancel pending requests created more than max_age_days ago."""
    now = now or utcnow()
    threshold = to_db(now - timedelta(days=max_age_days))

    with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
        candidates = [r["id"] for r in uow.fetchall(
            "SELECT id FROM requests WHERE state = 'pending' AND created_at < ? ORDER BY created_at",
            (threshold,)
        )]

    cancelled = 0
    failed = 0
    for request_id in candidates:
        try:
            with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
                request = uow.fetchone(
                    f"SELECT * FROM requests WHERE id = ? AND state = 'pending' AND created_at < ?"
                    f"{uow.lock_suffix(skip_locked=True)}",
                    (request_id, threshold)
                )
                if not request:
                    continue
                uow.execute(
                    "UPDATE requests SET state = 'cancelled', updated_at = ? WHERE id = ?",
                    (to_db(now), request_id)
                )
                uow.audit("request", request_id, "AUTO_CANCEL_EXPIRED", {
                    "created_at": request["created_at"], "max_age_days": max_age_days,
                })
                uow.emit(NotificationKind.REQUEST_STATE_CHANGED.value, {
                    "request_id": request_id,
                    "facility_id": request["facility_id"],
                    "old_state": "pending",
                    "new_state": "cancelled",
                    "reason": "expired",
                })
            cancelled += 1
        except Exception as e:
            failed += 1
            logger.error(f"[Sweeper] Request expiry failed for {request_id}: {e}", exc_info=True)

    if cancelled:
        logger.info(f"[Sweeper] {cancelled} stale requests cancelled")
    return {"cancelled": cancelled, "failed": failed}


# =============================================================================
# Inventory expiry
# =============================================================================

def expire_inventory(store: BaseDatabaseManager, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Retire expired units.

    Open offers holding an expired unit, claimed or not, are cancelled: their
    expired unclaimed units are archived and the other free units released to
    available. Expired available units are archived afterwards. Units claimed
    by an active transfer are left for the watchdog.
    """
    now = now or utcnow()
    cutoff = to_db(now)

    with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
        offer_ids = [r["offer_id"] for r in uow.fetchall("""
            SELECT DISTINCT u.offer_id
            FROM units u
            JOIN offers o ON o.id = u.offer_id
            WHERE o.state = 'open'
              AND u.state = 'reserved'
              AND u.expires_at < ?
        """, (cutoff,))]

    offers_cancelled = 0
    units_archived = 0
    failed = 0

    for offer_id in offer_ids:
        try:
            with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
                offer = uow.fetchone(
                    f"SELECT * FROM offers WHERE id = ? AND state = 'open'"
                    f"{uow.lock_suffix(skip_locked=True)}",
                    (offer_id,)
                )
                if not offer:
                    continue
                held = uow.fetchall(f"""
                    SELECT id, transfer_id FROM units
                    WHERE offer_id = ? AND state = 'reserved'
                      AND expires_at < ?{uow.lock_suffix(skip_locked=True)}
                """, (offer_id, cutoff))
                if not held:
                    continue
                expired = [u["id"] for u in held if u["transfer_id"] is None]

                uow.execute(
                    "UPDATE offers SET state = ?, updated_at = ? WHERE id = ?",
                    (OfferState.CANCELLED.value, cutoff, offer_id)
                )
                archived = archive_units(uow, expired, now)
                released = release_free_units(uow, offer_id)

                uow.audit("offer", offer_id, "AUTO_CANCEL_EXPIRED_UNITS", {
                    "archived_unit_ids": expired, "released_units": released,
                })
                uow.emit(NotificationKind.OFFER_CANCELLED_BY_EXPIRY.value, {
                    "offer_id": offer_id,
                    "facility_id": offer["facility_id"],
                    "expired_units": archived,
                    "released_units": released,
                })
            offers_cancelled += 1
            units_archived += archived
        except Exception as e:
            failed += 1
            logger.error(f"[Sweeper] Inventory expiry failed for offer {offer_id}: {e}", exc_info=True)

    try:
        with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
            stray = uow.fetchall(f"""
                SELECT id, facility_id, tracking_code FROM units
                WHERE state = 'available' AND expires_at < ?{uow.lock_suffix(skip_locked=True)}
            """, (cutoff,))
            archived = archive_units(uow, [u["id"] for u in stray], now)
            for unit in stray:
                uow.audit("unit", unit["id"], "ARCHIVE_EXPIRED", {
                    "facility_id": unit["facility_id"], "tracking_code": unit["tracking_code"],
                })
        units_archived += archived
    except Exception as e:
        failed += 1
        logger.error(f"[Sweeper] Archiving expired available units failed: {e}", exc_info=True)

    if offers_cancelled or units_archived:
        logger.info(f"[Sweeper] Inventory expiry: {offers_cancelled} offers cancelled, "
                    f"{units_archived} units archived")
    return {"offers_cancelled": offers_cancelled, "units_archived": units_archived, "failed": failed}


# =============================================================================
# Transfer watchdog
# =============================================================================

def watchdog_transfers(
    store: BaseDatabaseManager,
    created_timeout_hours: int = 48,
    in_transit_timeout_days: int = 7,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Cancel transfers stuck in created (by created_at) or in_transit (by sent_at)."""
    now = now or utcnow()
    created_before = to_db(now - timedelta(hours=created_timeout_hours))
    sent_before = to_db(now - timedelta(days=in_transit_timeout_days))
    stuck_where = """
        ((state = 'created' AND created_at < ?)
         OR (state = 'in_transit' AND sent_at < ?))
    """

    with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
        candidates = [r["id"] for r in uow.fetchall(
            f"SELECT id FROM transfers WHERE {stuck_where} ORDER BY created_at",
            (created_before, sent_before)
        )]

    cancelled = 0
    failed = 0
    for transfer_id in candidates:
        try:
            with store.unit_of_work(SYSTEM_ACTOR.user_id) as uow:
                transfer = uow.fetchone(
                    f"SELECT * FROM transfers WHERE id = ? AND {stuck_where}"
                    f"{uow.lock_suffix(skip_locked=True)}",
                    (transfer_id, created_before, sent_before)
                )
                if not transfer:
                    continue
                cancel_locked(uow, transfer, "watchdog", now)
            cancelled += 1
            logger.warning(f"[Sweeper] Watchdog cancelled transfer {transfer_id} (was {transfer['state']})")
        except Exception as e:
            failed += 1
            logger.error(f"[Sweeper] Watchdog failed for transfer {transfer_id}: {e}", exc_info=True)

    return {"cancelled": cancelled, "failed": failed}


# =============================================================================
# Scheduler
# =============================================================================

class SweeperScheduler:
    """
    asyncio loops, one per job. Each job runs once at start, then every
    interval seconds. Jobs run in a worker thread so the event loop is never
    blocked by the store.
    """

    def __init__(self, store: BaseDatabaseManager, settings: Optional[SweeperSettings] = None):
        self.store = store
        self.settings = settings or SweeperSettings()
        self.is_running = False
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()
        self._status: Dict[str, Dict[str, Any]] = {
            name: {"last_run": None, "last_result": None, "last_error": None, "runs": 0}
            for name in self.jobs
        }

    @property
    def jobs(self) -> Dict[str, Callable[[], Dict[str, Any]]]:
        s = self.settings
        return {
            "requests": lambda: expire_stale_requests(self.store, s.request_max_age_days),
            "inventory": lambda: expire_inventory(self.store),
            "watchdog": lambda: watchdog_transfers(
                self.store, s.transfer_created_timeout_hours, s.transfer_in_transit_timeout_days
            ),
        }

    def intervals(self) -> Dict[str, int]:
        s = self.settings
        return {
            "requests": s.request_sweep_interval,
            "inventory": s.inventory_sweep_interval,
            "watchdog": s.watchdog_interval,
        }

    async def start(self):
        if self.is_running:
            logger.warning("Sweeper scheduler already running")
            return
        self.is_running = True
        for name, interval in self.intervals().items():
            self._tasks[name] = asyncio.create_task(self._run_loop(name, interval))
        logger.info(f"Sweeper scheduler started: {self.intervals()}")

    async def stop(self):
        self.is_running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Sweeper scheduler stopped")

    def run_job(self, name: str) -> Dict[str, Any]:
        """Run one job synchronously and record its outcome."""
        job = self.jobs[name]
        with self._lock:
            status = self._status[name]
            status["last_run"] = to_db(utcnow())
            status["runs"] += 1
        try:
            result = job()
        except Exception as e:
            with self._lock:
                status["last_error"] = str(e)
            raise
        with self._lock:
            status["last_result"] = result
            status["last_error"] = None
        return result

    def run_all(self) -> Dict[str, Any]:
        return {name: self.run_job(name) for name in self.jobs}

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            jobs = {name: dict(status) for name, status in self._status.items()}
        return {
            "running": self.is_running,
            "intervals": self.intervals(),
            "jobs": jobs,
        }

    async def _run_loop(self, name: str, interval: int):
        while self.is_running:
            try:
                await asyncio.to_thread(self.run_job, name)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[Sweeper] {name} run failed: {e}", exc_info=True)

            await asyncio.sleep(interval)
