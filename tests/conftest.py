"""
Shared fixtures for the Blood Exchange tests.

Each test gets its own temporary SQLite file; committed side effects are
captured by RecordingDispatcher instead of a worker thread.
"""

import sys
from datetime import timedelta
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import DatabaseManager  # noqa: E402
from services import inventory  # noqa: E402
from services.clock import utcnow  # noqa: E402
from services.identity import ROLE_ADMIN, Actor  # noqa: E402

NOW = utcnow()

PLASMA_O_POS = {"component": "plasma", "abo": "O", "rh": "+"}
RED_CELLS_A_NEG = {"component": "red_cells", "abo": "A", "rh": "-"}


class RecordingDispatcher:
    """Collects events published after commit."""

    def __init__(self):
        self.events = []

    def publish(self, events):
        self.events.extend(events)

    def kinds(self, channel="notify"):
        return [e.kind for e in self.events if e.channel == channel]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "exchange_test.db")


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def store(db_path, dispatcher):
    manager = DatabaseManager(db_path)
    manager.set_dispatcher(dispatcher)
    return manager


@pytest.fixture
def fac_a():
    return Actor(facility_id="FAC-A", user_id="user-a")


@pytest.fixture
def fac_b():
    return Actor(facility_id="FAC-B", user_id="user-b")


@pytest.fixture
def fac_c():
    return Actor(facility_id="FAC-C", user_id="user-c")


@pytest.fixture
def admin():
    return Actor(facility_id="FAC-A", user_id="admin-1", role=ROLE_ADMIN)


def add_units(store, actor, count, spec=None, expires_in_days=30, now=NOW, **flags):
    """Register count units of one spec for actor; returns their ids."""
    spec = spec or PLASMA_O_POS
    ids = []
    for i in range(count):
        unit = inventory.register_unit(
            store, actor,
            expires_at=now + timedelta(days=expires_in_days, hours=i),
            now=now,
            **spec,
            **flags,
        )
        ids.append(unit["id"])
    return ids


def fetch(store, sql, params=()):
    with store.unit_of_work() as uow:
        return uow.fetchall(sql, params)


def unit_states(store, unit_ids):
    rows = fetch(store, f"SELECT id, state FROM units WHERE id IN ({','.join('?' * len(unit_ids))})",
                 unit_ids)
    return {r["id"]: r["state"] for r in rows}
