"""
Migration: Create rate period and variant snapshot tables
Run once: python migrate_pricing_schema.py [--with-catalog]

--with-catalog also creates the read-only catalog/variant tables the core
reads from (hotels, room types, variants, ...) for a fresh development
database. In production those tables are owned by the back office.
"""
import sys

from db import get_db

RATE_SQL = """
CREATE TABLE IF NOT EXISTS rate_periods (
    id BIGSERIAL PRIMARY KEY,
    subject_id TEXT NOT NULL,
    room_type_id TEXT,
    occupancy_type_id TEXT,
    meal_plan_id TEXT,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    price NUMERIC(12, 2) NOT NULL CHECK (price >= 0),
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    CHECK (end_date >= start_date)
);

-- one active period per key and start date; NULL key parts compare equal
CREATE UNIQUE INDEX IF NOT EXISTS uq_rate_periods_key_start ON rate_periods (
    subject_id,
    COALESCE(room_type_id, ''),
    COALESCE(occupancy_type_id, ''),
    COALESCE(meal_plan_id, ''),
    start_date
) WHERE is_active;

CREATE INDEX IF NOT EXISTS idx_rate_periods_lookup
    ON rate_periods (subject_id, room_type_id, occupancy_type_id, meal_plan_id, start_date, end_date)
    WHERE is_active;
"""

SNAPSHOT_SQL = """
CREATE TABLE IF NOT EXISTS query_variant_snapshots (
    id BIGSERIAL PRIMARY KEY,
    query_id TEXT NOT NULL,
    generation INTEGER NOT NULL DEFAULT 1,
    source_variant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    sort_order INTEGER NOT NULL DEFAULT 0,
    price_modifier NUMERIC(12, 2),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_query_variant_snapshots_query
    ON query_variant_snapshots (query_id, generation);

CREATE TABLE IF NOT EXISTS query_variant_hotel_snapshots (
    id BIGSERIAL PRIMARY KEY,
    variant_snapshot_id BIGINT NOT NULL REFERENCES query_variant_snapshots(id) ON DELETE CASCADE,
    day_number INTEGER NOT NULL,
    hotel_id TEXT NOT NULL,
    hotel_name TEXT,
    location_label TEXT,
    image_url TEXT,
    room_category TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_query_variant_hotel_snapshots_parent
    ON query_variant_hotel_snapshots (variant_snapshot_id);

CREATE TABLE IF NOT EXISTS query_variant_pricing_snapshots (
    id BIGSERIAL PRIMARY KEY,
    variant_snapshot_id BIGINT NOT NULL REFERENCES query_variant_snapshots(id) ON DELETE CASCADE,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    meal_plan_id TEXT,
    meal_plan_name TEXT,
    number_of_rooms INTEGER,
    is_group_pricing BOOLEAN NOT NULL DEFAULT FALSE,
    vehicle_type_id TEXT,
    vehicle_type_name TEXT,
    description TEXT,
    total_price NUMERIC(14, 2) NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_query_variant_pricing_snapshots_parent
    ON query_variant_pricing_snapshots (variant_snapshot_id);

CREATE TABLE IF NOT EXISTS query_variant_pricing_component_snapshots (
    id BIGSERIAL PRIMARY KEY,
    pricing_snapshot_id BIGINT NOT NULL REFERENCES query_variant_pricing_snapshots(id) ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    pricing_attribute_id TEXT,
    attribute_name TEXT,
    price NUMERIC(12, 2) NOT NULL,
    purchase_price NUMERIC(12, 2),
    description TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_query_variant_pricing_component_snapshots_parent
    ON query_variant_pricing_component_snapshots (pricing_snapshot_id);
"""

CATALOG_SQL = """
CREATE TABLE IF NOT EXISTS locations (id TEXT PRIMARY KEY, name TEXT NOT NULL, label TEXT);
CREATE TABLE IF NOT EXISTS hotels (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    location_id TEXT REFERENCES locations(id)
);
CREATE TABLE IF NOT EXISTS hotel_images (
    id BIGSERIAL PRIMARY KEY,
    hotel_id TEXT NOT NULL REFERENCES hotels(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS room_types (id TEXT PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS occupancy_types (id TEXT PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS meal_plans (id TEXT PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS vehicle_types (id TEXT PRIMARY KEY, name TEXT NOT NULL);
CREATE TABLE IF NOT EXISTS pricing_attributes (id TEXT PRIMARY KEY, name TEXT NOT NULL);

CREATE TABLE IF NOT EXISTS itineraries (id TEXT PRIMARY KEY, day_number INTEGER);
CREATE TABLE IF NOT EXISTS package_variants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    sort_order INTEGER NOT NULL DEFAULT 0,
    price_modifier NUMERIC(12, 2)
);
CREATE TABLE IF NOT EXISTS variant_hotel_mappings (
    id BIGSERIAL PRIMARY KEY,
    variant_id TEXT NOT NULL REFERENCES package_variants(id) ON DELETE CASCADE,
    itinerary_id TEXT REFERENCES itineraries(id),
    hotel_id TEXT NOT NULL REFERENCES hotels(id)
);
CREATE TABLE IF NOT EXISTS tour_package_pricings (
    id TEXT PRIMARY KEY,
    variant_id TEXT NOT NULL REFERENCES package_variants(id) ON DELETE CASCADE,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    meal_plan_id TEXT REFERENCES meal_plans(id),
    number_of_rooms INTEGER,
    is_group_pricing BOOLEAN NOT NULL DEFAULT FALSE,
    vehicle_type_id TEXT REFERENCES vehicle_types(id),
    description TEXT
);
CREATE TABLE IF NOT EXISTS pricing_components (
    id BIGSERIAL PRIMARY KEY,
    tour_package_pricing_id TEXT NOT NULL REFERENCES tour_package_pricings(id) ON DELETE CASCADE,
    pricing_attribute_id TEXT REFERENCES pricing_attributes(id),
    price NUMERIC(12, 2) NOT NULL,
    purchase_price NUMERIC(12, 2),
    description TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def migrate(with_catalog=False):
    conn = get_db()
    cur = conn.cursor()
    try:
        if with_catalog:
            cur.execute(CATALOG_SQL)
        cur.execute(RATE_SQL)
        cur.execute(SNAPSHOT_SQL)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


if __name__ == '__main__':
    with_catalog = '--with-catalog' in sys.argv[1:]
    migrate(with_catalog=with_catalog)
    print("✅ rate_periods and variant snapshot tables created successfully.")
