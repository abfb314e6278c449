"""
Variant Snapshot Manager
========================
Freezes a variant's hotel-per-day assignments and pricing periods into
query-owned snapshot rows so that later edits to the variant or to the rate
tables never change a quote that was already sent.

Snapshots are copy-on-write: a refresh writes a complete new generation and
drops the older generations in the same transaction. Readers only ever see
the newest committed generation, never an empty or half-written set.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
import logging

from psycopg2.extras import execute_values

from db import get_db, rows_to_dicts
from errors import SnapshotIntegrityError, ValidationError
from pricing_engine import sum_components
from rate_periods import to_calendar_date

logger = logging.getLogger(__name__)


# =====================================================
# SNAPSHOT MODEL
# =====================================================

@dataclass(frozen=True)
class HotelSnapshot:
    day_number: int
    hotel_id: str
    hotel_name: Optional[str] = None
    location_label: Optional[str] = None
    image_url: Optional[str] = None
    id: Optional[Any] = None

    def to_dict(self):
        return {
            'id': self.id,
            'dayNumber': self.day_number,
            'hotelId': self.hotel_id,
            'hotelName': self.hotel_name,
            'locationLabel': self.location_label,
            'imageUrl': self.image_url,
        }


@dataclass(frozen=True)
class PricingComponentSnapshot:
    attribute_name: Optional[str]
    price: Decimal
    purchase_price: Optional[Decimal] = None
    description: Optional[str] = None
    pricing_attribute_id: Optional[str] = None
    id: Optional[Any] = None

    def to_dict(self):
        return {
            'id': self.id,
            'pricingAttributeId': self.pricing_attribute_id,
            'attributeName': self.attribute_name,
            'price': float(self.price),
            'purchasePrice': float(self.purchase_price) if self.purchase_price is not None else None,
            'description': self.description,
        }


@dataclass(frozen=True)
class PricingSnapshot:
    start_date: date
    end_date: date
    total_price: Decimal
    components: tuple = ()
    meal_plan_id: Optional[str] = None
    meal_plan_name: Optional[str] = None
    number_of_rooms: Optional[int] = None
    is_group_pricing: bool = False
    vehicle_type_id: Optional[str] = None
    vehicle_type_name: Optional[str] = None
    description: Optional[str] = None
    id: Optional[Any] = None

    def to_dict(self):
        return {
            'id': self.id,
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'mealPlanId': self.meal_plan_id,
            'mealPlanName': self.meal_plan_name,
            'numberOfRooms': self.number_of_rooms,
            'isGroupPricing': self.is_group_pricing,
            'vehicleTypeId': self.vehicle_type_id,
            'vehicleTypeName': self.vehicle_type_name,
            'description': self.description,
            'totalPrice': float(self.total_price),
            'pricingComponentSnapshots': [c.to_dict() for c in self.components],
        }


@dataclass(frozen=True)
class VariantSnapshot:
    source_variant_id: str
    name: str
    description: Optional[str] = None
    is_default: bool = False
    sort_order: int = 0
    price_modifier: Optional[Decimal] = None
    hotels: tuple = ()
    pricings: tuple = ()
    id: Optional[Any] = None
    query_id: Optional[str] = None
    generation: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self):
        return {
            'id': self.id,
            'queryId': self.query_id,
            'sourceVariantId': self.source_variant_id,
            'name': self.name,
            'description': self.description,
            'isDefault': self.is_default,
            'sortOrder': self.sort_order,
            'priceModifier': float(self.price_modifier) if self.price_modifier is not None else None,
            'generation': self.generation,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'hotelSnapshots': [h.to_dict() for h in self.hotels],
            'pricingSnapshots': [p.to_dict() for p in self.pricings],
        }


# =====================================================
# PURE BUILDER
# =====================================================

def _decimal(value, field_name, required=True) -> Optional[Decimal]:
    if value is None:
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    if isinstance(value, Decimal):
        return value
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return amount


def build_pricing_snapshot(pricing: Dict) -> PricingSnapshot:
    components = tuple(
        PricingComponentSnapshot(
            pricing_attribute_id=c.get('pricing_attribute_id'),
            attribute_name=c.get('attribute_name'),
            price=_decimal(c.get('price'), 'component price'),
            purchase_price=_decimal(c.get('purchase_price'), 'component purchase price', required=False),
            description=c.get('description'),
        )
        for c in pricing.get('components') or []
    )

    start_date = to_calendar_date(pricing.get('start_date'), 'pricing start_date')
    end_date = to_calendar_date(pricing.get('end_date'), 'pricing end_date')
    if end_date < start_date:
        raise ValidationError(f"Pricing {pricing.get('id')}: end_date {end_date} is before start_date {start_date}")

    return PricingSnapshot(
        start_date=start_date,
        end_date=end_date,
        # no markup here; markup is applied per variant when the snapshot is displayed
        total_price=sum_components(c.price for c in components),
        components=components,
        meal_plan_id=pricing.get('meal_plan_id'),
        meal_plan_name=pricing.get('meal_plan_name'),
        number_of_rooms=pricing.get('number_of_rooms'),
        is_group_pricing=bool(pricing.get('is_group_pricing')),
        vehicle_type_id=pricing.get('vehicle_type_id'),
        vehicle_type_name=pricing.get('vehicle_type_name'),
        description=pricing.get('description'),
    )


def build_variant_snapshot(variant: Dict, hotel_mappings: Iterable[Dict], pricings: Iterable[Dict]) -> VariantSnapshot:
    """
    Build an unsaved VariantSnapshot from live variant rows.

    Hotel mappings whose itinerary has no day number are skipped.
    """
    hotels = []
    for mapping in hotel_mappings:
        day_number = mapping.get('day_number')
        if not isinstance(day_number, int) or isinstance(day_number, bool):
            logger.info(
                f"Skipping hotel mapping without day number "
                f"(variant {variant.get('id')}, itinerary {mapping.get('itinerary_id')})"
            )
            continue
        hotels.append(HotelSnapshot(
            day_number=day_number,
            hotel_id=mapping.get('hotel_id'),
            hotel_name=mapping.get('hotel_name'),
            location_label=mapping.get('location_label'),
            image_url=mapping.get('image_url'),
        ))
    hotels.sort(key=lambda h: h.day_number)

    return VariantSnapshot(
        source_variant_id=variant['id'],
        name=variant.get('name') or '',
        description=variant.get('description'),
        is_default=bool(variant.get('is_default')),
        sort_order=variant.get('sort_order') or 0,
        price_modifier=_decimal(variant.get('price_modifier'), 'price_modifier', required=False),
        hotels=tuple(hotels),
        pricings=tuple(build_pricing_snapshot(p) for p in pricings),
    )


# =====================================================
# SNAPSHOT MANAGER (PostgreSQL)
# =====================================================

class VariantSnapshotManager:

    def __init__(self, conn_factory=get_db):
        self.conn_factory = conn_factory

    @staticmethod
    def _lock_query(cur, query_id):
        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"variant-snapshots:{query_id}",))

    # -------------------------------------------------
    # SOURCE READS
    # -------------------------------------------------

    def _load_variants(self, cur, variant_ids) -> List[Dict]:
        cur.execute(
            """SELECT id, name, description, is_default, sort_order, price_modifier
               FROM package_variants
               WHERE id = ANY(%s)
               ORDER BY sort_order, id""",
            (list(variant_ids),)
        )
        return rows_to_dicts(cur, cur.fetchall())

    def _load_hotel_mappings(self, cur, variant_ids) -> Dict[str, List[Dict]]:
        cur.execute(
            """SELECT m.variant_id, m.itinerary_id, i.day_number, m.hotel_id,
                      h.name AS hotel_name, l.label AS location_label,
                      (SELECT hi.url FROM hotel_images hi
                       WHERE hi.hotel_id = h.id
                       ORDER BY hi.created_at ASC LIMIT 1) AS image_url
               FROM variant_hotel_mappings m
               JOIN hotels h ON h.id = m.hotel_id
               LEFT JOIN locations l ON l.id = h.location_id
               LEFT JOIN itineraries i ON i.id = m.itinerary_id
               WHERE m.variant_id = ANY(%s)""",
            (list(variant_ids),)
        )
        grouped = {}
        for row in rows_to_dicts(cur, cur.fetchall()):
            grouped.setdefault(row['variant_id'], []).append(row)
        return grouped

    def _load_pricings(self, cur, variant_ids) -> Dict[str, List[Dict]]:
        cur.execute(
            """SELECT p.id, p.variant_id, p.start_date, p.end_date, p.meal_plan_id,
                      mp.name AS meal_plan_name, p.number_of_rooms, p.is_group_pricing,
                      p.vehicle_type_id, vt.name AS vehicle_type_name, p.description
               FROM tour_package_pricings p
               LEFT JOIN meal_plans mp ON mp.id = p.meal_plan_id
               LEFT JOIN vehicle_types vt ON vt.id = p.vehicle_type_id
               WHERE p.variant_id = ANY(%s)
               ORDER BY p.start_date, p.id""",
            (list(variant_ids),)
        )
        pricings = rows_to_dicts(cur, cur.fetchall())
        if not pricings:
            return {}

        cur.execute(
            """SELECT c.tour_package_pricing_id, c.pricing_attribute_id, a.name AS attribute_name,
                      c.price, c.purchase_price, c.description
               FROM pricing_components c
               LEFT JOIN pricing_attributes a ON a.id = c.pricing_attribute_id
               WHERE c.tour_package_pricing_id = ANY(%s)
               ORDER BY c.created_at, c.id""",
            ([p['id'] for p in pricings],)
        )
        components = {}
        for row in rows_to_dicts(cur, cur.fetchall()):
            components.setdefault(row['tour_package_pricing_id'], []).append(row)

        grouped = {}
        for pricing in pricings:
            pricing['components'] = components.get(pricing['id'], [])
            grouped.setdefault(pricing['variant_id'], []).append(pricing)
        return grouped

    # -------------------------------------------------
    # WRITES
    # -------------------------------------------------

    def _insert_snapshot(self, cur, query_id, generation, snapshot: VariantSnapshot):
        cur.execute(
            """INSERT INTO query_variant_snapshots
               (query_id, generation, source_variant_id, name, description,
                is_default, sort_order, price_modifier)
               VALUES (%s,%s,%s,%s,%s,%s,%s,%s) RETURNING id""",
            (query_id, generation, snapshot.source_variant_id, snapshot.name, snapshot.description,
             snapshot.is_default, snapshot.sort_order, snapshot.price_modifier)
        )
        snapshot_id = cur.fetchone()[0]

        if snapshot.hotels:
            execute_values(
                cur,
                """INSERT INTO query_variant_hotel_snapshots
                   (variant_snapshot_id, day_number, hotel_id, hotel_name, location_label, image_url)
                   VALUES %s""",
                [(snapshot_id, h.day_number, h.hotel_id, h.hotel_name, h.location_label, h.image_url)
                 for h in snapshot.hotels]
            )

        for pricing in snapshot.pricings:
            cur.execute(
                """INSERT INTO query_variant_pricing_snapshots
                   (variant_snapshot_id, start_date, end_date, meal_plan_id, meal_plan_name,
                    number_of_rooms, is_group_pricing, vehicle_type_id, vehicle_type_name,
                    description, total_price)
                   VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s) RETURNING id""",
                (snapshot_id, pricing.start_date, pricing.end_date, pricing.meal_plan_id,
                 pricing.meal_plan_name, pricing.number_of_rooms, pricing.is_group_pricing,
                 pricing.vehicle_type_id, pricing.vehicle_type_name, pricing.description,
                 pricing.total_price)
            )
            pricing_id = cur.fetchone()[0]

            if pricing.components:
                execute_values(
                    cur,
                    """INSERT INTO query_variant_pricing_component_snapshots
                       (pricing_snapshot_id, position, pricing_attribute_id, attribute_name,
                        price, purchase_price, description)
                       VALUES %s""",
                    [(pricing_id, position, c.pricing_attribute_id, c.attribute_name,
                      c.price, c.purchase_price, c.description)
                     for position, c in enumerate(pricing.components)]
                )

        return snapshot_id

    def create_snapshots(self, query_id, variant_ids, overwrite=True):
        """
        Snapshot the given variants for a query, atomically.

        Returns {'success': True, 'count': n}. With overwrite the new set
        replaces every existing snapshot of the query; without it the new
        snapshots are added to the current set.
        """
        if not query_id:
            raise ValidationError("query_id is required")
        variant_ids = [v for v in dict.fromkeys(variant_ids or []) if v]
        if not variant_ids:
            logger.info(f"No variants to snapshot for query {query_id}")
            return {'success': True, 'count': 0}

        logger.info(f"Creating snapshots for query {query_id}, variants: {', '.join(map(str, variant_ids))}")

        db = self.conn_factory()
        cur = db.cursor()
        try:
            self._lock_query(cur, query_id)

            variants = self._load_variants(cur, variant_ids)
            if not variants:
                if not overwrite:
                    db.rollback()
                    logger.warning(f"No variants found for query {query_id}; nothing appended")
                    return {'success': True, 'count': 0}
                cur.execute("DELETE FROM query_variant_snapshots WHERE query_id = %s", (query_id,))
                cleared = cur.rowcount
                db.commit()
                logger.warning(f"No variants found for query {query_id}; cleared {cleared} existing snapshot(s)")
                return {'success': True, 'count': 0}

            hotel_mappings = self._load_hotel_mappings(cur, variant_ids)
            pricings = self._load_pricings(cur, variant_ids)
            snapshots = [
                build_variant_snapshot(v, hotel_mappings.get(v['id'], []), pricings.get(v['id'], []))
                for v in variants
            ]

            cur.execute(
                "SELECT COALESCE(MAX(generation), 0) FROM query_variant_snapshots WHERE query_id = %s",
                (query_id,)
            )
            current_generation = cur.fetchone()[0]
            generation = current_generation + 1 if overwrite else max(current_generation, 1)

            for snapshot in snapshots:
                self._insert_snapshot(cur, query_id, generation, snapshot)
                logger.info(
                    f"Snapshot '{snapshot.name}': {len(snapshot.hotels)} hotel(s), "
                    f"{len(snapshot.pricings)} pricing period(s)"
                )

            replaced = 0
            if overwrite:
                cur.execute(
                    "DELETE FROM query_variant_snapshots WHERE query_id = %s AND generation < %s",
                    (query_id, generation)
                )
                replaced = cur.rowcount

            db.commit()
            logger.info(
                f"Created {len(snapshots)} variant snapshot(s) for query {query_id} "
                f"(generation {generation}, replaced {replaced})"
            )
            return {'success': True, 'count': len(snapshots)}

        except Exception as e:
            db.rollback()
            logger.error(f"Error creating snapshots for query {query_id}: {e}", exc_info=True)
            raise SnapshotIntegrityError(
                f"Snapshot creation for query {query_id} failed and was rolled back: {e}"
            ) from e
        finally:
            db.close()

    def delete_snapshots(self, query_id):
        db = self.conn_factory()
        cur = db.cursor()
        try:
            self._lock_query(cur, query_id)
            cur.execute("DELETE FROM query_variant_snapshots WHERE query_id = %s", (query_id,))
            count = cur.rowcount
            db.commit()
            logger.info(f"Deleted {count} snapshot(s) for query {query_id}")
            return {'count': count}
        except Exception as e:
            db.rollback()
            logger.error(f"Error deleting snapshots for query {query_id}: {e}", exc_info=True)
            raise
        finally:
            db.close()

    # -------------------------------------------------
    # READS
    # -------------------------------------------------

    def has_snapshots(self, query_id) -> bool:
        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(
                "SELECT EXISTS (SELECT 1 FROM query_variant_snapshots WHERE query_id = %s)",
                (query_id,)
            )
            return bool(cur.fetchone()[0])
        finally:
            db.close()

    def get_snapshots(self, query_id) -> List[VariantSnapshot]:
        """Current generation of a query's snapshots, children eagerly loaded."""
        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(
                """SELECT id, query_id, generation, source_variant_id, name, description,
                          is_default, sort_order, price_modifier, created_at
                   FROM query_variant_snapshots
                   WHERE query_id = %s
                   AND generation = (SELECT MAX(generation) FROM query_variant_snapshots WHERE query_id = %s)
                   ORDER BY sort_order, created_at, id""",
                (query_id, query_id)
            )
            rows = rows_to_dicts(cur, cur.fetchall())
            if not rows:
                return []
            snapshot_ids = [r['id'] for r in rows]

            cur.execute(
                """SELECT id, variant_snapshot_id, day_number, hotel_id, hotel_name, location_label, image_url
                   FROM query_variant_hotel_snapshots
                   WHERE variant_snapshot_id = ANY(%s)
                   ORDER BY day_number, id""",
                (snapshot_ids,)
            )
            hotels = {}
            for h in rows_to_dicts(cur, cur.fetchall()):
                hotels.setdefault(h['variant_snapshot_id'], []).append(HotelSnapshot(
                    id=h['id'],
                    day_number=h['day_number'],
                    hotel_id=h['hotel_id'],
                    hotel_name=h['hotel_name'],
                    location_label=h['location_label'],
                    image_url=h['image_url'],
                ))

            cur.execute(
                """SELECT id, variant_snapshot_id, start_date, end_date, meal_plan_id, meal_plan_name,
                          number_of_rooms, is_group_pricing, vehicle_type_id, vehicle_type_name,
                          description, total_price
                   FROM query_variant_pricing_snapshots
                   WHERE variant_snapshot_id = ANY(%s)
                   ORDER BY start_date, id""",
                (snapshot_ids,)
            )
            pricing_rows = rows_to_dicts(cur, cur.fetchall())

            components = {}
            if pricing_rows:
                cur.execute(
                    """SELECT id, pricing_snapshot_id, pricing_attribute_id, attribute_name,
                              price, purchase_price, description
                       FROM query_variant_pricing_component_snapshots
                       WHERE pricing_snapshot_id = ANY(%s)
                       ORDER BY position, id""",
                    ([p['id'] for p in pricing_rows],)
                )
                for c in rows_to_dicts(cur, cur.fetchall()):
                    components.setdefault(c['pricing_snapshot_id'], []).append(PricingComponentSnapshot(
                        id=c['id'],
                        pricing_attribute_id=c['pricing_attribute_id'],
                        attribute_name=c['attribute_name'],
                        price=c['price'],
                        purchase_price=c['purchase_price'],
                        description=c['description'],
                    ))

            pricings = {}
            for p in pricing_rows:
                pricings.setdefault(p['variant_snapshot_id'], []).append(PricingSnapshot(
                    id=p['id'],
                    start_date=p['start_date'],
                    end_date=p['end_date'],
                    meal_plan_id=p['meal_plan_id'],
                    meal_plan_name=p['meal_plan_name'],
                    number_of_rooms=p['number_of_rooms'],
                    is_group_pricing=p['is_group_pricing'],
                    vehicle_type_id=p['vehicle_type_id'],
                    vehicle_type_name=p['vehicle_type_name'],
                    description=p['description'],
                    total_price=p['total_price'],
                    components=tuple(components.get(p['id'], [])),
                ))

            return [
                VariantSnapshot(
                    id=r['id'],
                    query_id=r['query_id'],
                    generation=r['generation'],
                    source_variant_id=r['source_variant_id'],
                    name=r['name'],
                    description=r['description'],
                    is_default=r['is_default'],
                    sort_order=r['sort_order'],
                    price_modifier=r['price_modifier'],
                    created_at=r['created_at'],
                    hotels=tuple(hotels.get(r['id'], [])),
                    pricings=tuple(pricings.get(r['id'], [])),
                )
                for r in rows
            ]
        finally:
            db.close()
