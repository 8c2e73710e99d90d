"""
Blood Exchange Core Tables (m001)
=================================

- units: active inventory ledger
- offers / offer_items: supply batches
- requests: demand
- transfers / transfer_items: realized movements
- units_history: append-only archive of retired units

Timestamps are UTC text 'YYYY-MM-DD HH:MM:SS'; flags are INTEGER 0/1.
units.offer_id / units.transfer_id hold the single open offer and the single
active transfer a unit currently belongs to; offer_items / transfer_items keep
the full membership history.
Unit references in the item tables carry no foreign key: archived units
leave the ledger while their history rows keep the same id.
"""

from . import migration


@migration(1, "exchange_core_tables")
def m001_exchange_tables(cursor):
    """Create units, offers, requests, transfers and history tables"""

    # =========================================================================
    # units (inventory ledger)
    # =========================================================================
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS units (
            id TEXT PRIMARY KEY,
            component TEXT NOT NULL,           -- red_cells, plasma, platelets, cryoprecipitate, whole_blood
            abo TEXT NOT NULL,                 -- A, B, AB, O
            rh TEXT NOT NULL,                  -- +, -
            filtered INTEGER NOT NULL DEFAULT 0,
            irradiated INTEGER NOT NULL DEFAULT 0,
            collected_at TEXT,
            expires_at TEXT NOT NULL,
            tracking_code TEXT NOT NULL UNIQUE,
            facility_id TEXT NOT NULL,         -- current custody
            state TEXT NOT NULL DEFAULT 'available',
            offer_id TEXT,                     -- offer currently holding the unit
            transfer_id TEXT,                  -- active transfer claim
            created_by TEXT,
            created_at TEXT NOT NULL,
            CHECK (state IN ('available', 'reserved', 'in_transit', 'transferred'))
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_units_facility_state
        ON units(facility_id, state)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_units_spec
        ON units(component, abo, rh, filtered, irradiated)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_units_expires
        ON units(expires_at)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_units_offer
        ON units(offer_id)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_units_transfer
        ON units(transfer_id)
    """)

    # =========================================================================
    # offers + offer_items
    # =========================================================================
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS offers (
            id TEXT PRIMARY KEY,
            facility_id TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'open',
            note TEXT,
            is_shadow INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            CHECK (state IN ('open', 'closed', 'cancelled'))
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_offers_state
        ON offers(state, facility_id)
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS offer_items (
            id TEXT PRIMARY KEY,
            offer_id TEXT NOT NULL REFERENCES offers(id),
            unit_id TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_offer_items_offer
        ON offer_items(offer_id)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_offer_items_unit
        ON offer_items(unit_id)
    """)

    # =========================================================================
    # requests
    # =========================================================================
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS requests (
            id TEXT PRIMARY KEY,
            facility_id TEXT NOT NULL,
            component TEXT NOT NULL,
            abo TEXT NOT NULL,
            rh TEXT NOT NULL,
            filtered INTEGER NOT NULL DEFAULT 0,
            irradiated INTEGER NOT NULL DEFAULT 0,
            quantity INTEGER NOT NULL,
            urgent INTEGER NOT NULL DEFAULT 0,
            note TEXT,
            is_shadow INTEGER NOT NULL DEFAULT 0,
            state TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            updated_at TEXT,
            CHECK (quantity >= 0),
            CHECK (state IN ('pending', 'accepted', 'rejected', 'cancelled', 'partial'))
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_requests_state_spec
        ON requests(state, component, abo, rh, filtered, irradiated)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_requests_facility
        ON requests(facility_id, state)
    """)

    # =========================================================================
    # transfers + transfer_items
    # =========================================================================
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transfers (
            id TEXT PRIMARY KEY,
            request_id TEXT NOT NULL REFERENCES requests(id),
            offer_id TEXT REFERENCES offers(id),
            origin_facility_id TEXT NOT NULL,
            destination_facility_id TEXT NOT NULL,
            state TEXT NOT NULL DEFAULT 'created',
            created_at TEXT NOT NULL,
            sent_at TEXT,
            received_at TEXT,
            cancelled_at TEXT,
            cancel_reason TEXT,
            CHECK (state IN ('created', 'in_transit', 'received', 'cancelled'))
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_transfers_state
        ON transfers(state, created_at)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_transfers_origin
        ON transfers(origin_facility_id)
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_transfers_destination
        ON transfers(destination_facility_id)
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transfer_items (
            id TEXT PRIMARY KEY,
            transfer_id TEXT NOT NULL REFERENCES transfers(id),
            unit_id TEXT NOT NULL
        )
    """)
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_transfer_items_transfer
        ON transfer_items(transfer_id)
    """)

    # =========================================================================
    # units_history (append-only)
    # =========================================================================
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS units_history (
            id TEXT PRIMARY KEY,
            component TEXT NOT NULL,
            abo TEXT NOT NULL,
            rh TEXT NOT NULL,
            filtered INTEGER NOT NULL DEFAULT 0,
            irradiated INTEGER NOT NULL DEFAULT 0,
            collected_at TEXT,
            expires_at TEXT NOT NULL,
            tracking_code TEXT NOT NULL,
            facility_id TEXT NOT NULL,
            state TEXT NOT NULL,               -- final state, 'expired'
            created_by TEXT,
            created_at TEXT NOT NULL,
            archived_at TEXT NOT NULL
        )
    """)
