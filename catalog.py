"""
Catalog lookups — read-only display names for hotels, room types,
occupancy types, meal plans and vehicle types.
"""

import logging

from db import get_db

logger = logging.getLogger(__name__)

# kind -> (table, name column)
CATALOG_TABLES = {
    'hotels': ('hotels', 'name'),
    'room_types': ('room_types', 'name'),
    'occupancy_types': ('occupancy_types', 'name'),
    'meal_plans': ('meal_plans', 'name'),
    'vehicle_types': ('vehicle_types', 'name'),
    'locations': ('locations', 'name'),
}


def _check_kind(kind):
    if kind not in CATALOG_TABLES:
        raise KeyError(f"Unknown catalog kind: {kind}")


class PgCatalog:

    def __init__(self, conn_factory=get_db):
        self.conn_factory = conn_factory

    def names(self, kind, ids):
        _check_kind(kind)
        ids = sorted({str(i) for i in ids if i})
        if not ids:
            return {}

        table, column = CATALOG_TABLES[kind]
        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(f"SELECT id, {column} FROM {table} WHERE id = ANY(%s)", (ids,))
            return {str(row[0]): row[1] for row in cur.fetchall()}
        except Exception as e:
            logger.error(f"Error loading {kind} names: {e}", exc_info=True)
            raise
        finally:
            db.close()


class StaticCatalog:
    """In-memory catalog: {kind: {id: name}}."""

    def __init__(self, data=None):
        self.data = data or {}

    def names(self, kind, ids):
        _check_kind(kind)
        table = self.data.get(kind, {})
        return {i: table[i] for i in ids if i in table}
