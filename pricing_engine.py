"""
Tour Pricing Engine
===================
Core calculation logic with:
  - Price resolution against non-overlapping rate periods
  - Per-night accommodation costing (hotel/room/occupancy/meal plan)
  - Transport costing with PerDay / PerTrip billing
  - Markup application with exact decimal arithmetic
  - Variant-specific itineraries (per-variant room/transport payloads)

This is the SINGLE SOURCE OF TRUTH for itinerary cost computation.
Routes and snapshot code MUST call this engine — never sum prices themselves.

Missing rates never abort a quote: the line is priced at zero and carries a
warning so the operator can fix the rate table. Malformed input and
corrupted rate tables (two periods covering one date) fail fast.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
import logging

from errors import (
    PricingEngineError,
    ValidationError,
    DataInconsistencyError,
    ConcurrencyConflictError,
    SnapshotIntegrityError,
)
from rate_periods import AttributeKey, RatePeriod, to_calendar_date

logger = logging.getLogger(__name__)

__all__ = [
    'PricingEngineError', 'ValidationError', 'DataInconsistencyError',
    'ConcurrencyConflictError', 'SnapshotIntegrityError',
    'NoCoverage', 'PriceResolver', 'BillingMode', 'RoomAllocation',
    'TransportAssignment', 'ItineraryDayAssignment', 'PricingResult',
    'StayCostAggregator', 'compute_itinerary_cost', 'sum_components',
    'parse_itinerary', 'build_variant_itinerary',
]

CENT = Decimal('0.01')
ZERO = Decimal('0')
HUNDRED = Decimal('100')


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, ROUND_HALF_UP)


def sum_components(prices: Iterable[Any]) -> Decimal:
    """
    Exact decimal sum of named pricing components.

    Shared by the aggregator (base price) and the snapshot manager
    (PricingSnapshot.total_price) so both layers add money the same way.
    """
    total = ZERO
    for price in prices:
        if price is None:
            continue
        total += price if isinstance(price, Decimal) else Decimal(str(price))
    return total


# =====================================================
# PRICE RESOLVER
# =====================================================

@dataclass(frozen=True)
class NoCoverage:
    """No active rate period covers the requested date for this key."""
    key: AttributeKey
    on_date: date

    @property
    def message(self) -> str:
        return f"No rate for {self.key} on {self.on_date.isoformat()}"


RateLookup = Callable[[AttributeKey, date], List[RatePeriod]]


class PriceResolver:
    """
    Pure lookup: (date, key) -> the single covering RatePeriod or NoCoverage.

    lookup is any callable returning the candidate periods covering a date
    for a key, e.g. PgRatePeriodStore.find_covering.
    """

    def __init__(self, lookup: RateLookup):
        self._lookup = lookup

    @classmethod
    def from_periods(cls, periods: Iterable[RatePeriod]) -> 'PriceResolver':
        index = defaultdict(list)
        for period in periods:
            if period.is_active:
                index[period.key].append(period)

        def lookup(key, on_date):
            return [p for p in index.get(key, ()) if p.covers(on_date)]

        return cls(lookup)

    def resolve(self, on_date: date, key: AttributeKey) -> Union[RatePeriod, NoCoverage]:
        matches = [
            p for p in self._lookup(key, on_date)
            if p.is_active and p.covers(on_date)
        ]
        if not matches:
            return NoCoverage(key=key, on_date=on_date)
        if len(matches) > 1:
            logger.error(f"Rate table corrupted for key {key} on {on_date}: {len(matches)} periods")
            raise DataInconsistencyError(key, on_date, [p.id for p in matches])
        return matches[0]


# =====================================================
# ITINERARY MODEL
# =====================================================

class BillingMode(str, Enum):
    PER_DAY = 'PerDay'
    PER_TRIP = 'PerTrip'

    @classmethod
    def parse(cls, value) -> 'BillingMode':
        if isinstance(value, cls):
            return value
        if value is None or value == '':
            return cls.PER_DAY
        normalized = str(value).replace('_', '').replace('-', '').replace(' ', '').lower()
        for mode in cls:
            if mode.value.lower() == normalized:
                return mode
        raise ValidationError(f"Unknown billing mode: {value!r}")


@dataclass(frozen=True)
class RoomAllocation:
    room_type_id: str
    occupancy_type_id: str
    meal_plan_id: Optional[str]
    quantity: int
    guest_names: Optional[str] = None


@dataclass(frozen=True)
class TransportAssignment:
    vehicle_type_id: str
    quantity: int = 1
    billing_mode: BillingMode = BillingMode.PER_DAY
    assignment_id: Optional[str] = None


@dataclass(frozen=True)
class ItineraryDayAssignment:
    day_number: int
    date: date
    subject_id: Optional[str] = None
    stay_span_days: int = 1
    rooms: tuple = ()
    transports: tuple = ()
    itinerary_id: Optional[str] = None

    def nights(self):
        for offset in range(self.stay_span_days):
            yield self.date + timedelta(days=offset)


# =====================================================
# RESULT MODEL
# =====================================================

@dataclass
class RoomCostLine:
    room_type_id: str
    occupancy_type_id: str
    meal_plan_id: Optional[str]
    date: date
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    warning: Optional[str] = None
    room_type_name: Optional[str] = None
    occupancy_type_name: Optional[str] = None
    meal_plan_name: Optional[str] = None

    def to_dict(self):
        data = {
            'roomTypeId': self.room_type_id,
            'occupancyTypeId': self.occupancy_type_id,
            'mealPlanId': self.meal_plan_id,
            'date': self.date.isoformat(),
            'quantity': self.quantity,
            'unitPrice': float(self.unit_price),
            'lineTotal': float(self.line_total),
            'warning': self.warning,
        }
        if self.room_type_name or self.occupancy_type_name or self.meal_plan_name:
            data['roomTypeName'] = self.room_type_name
            data['occupancyTypeName'] = self.occupancy_type_name
            data['mealPlanName'] = self.meal_plan_name
        return data


@dataclass
class TransportCostLine:
    vehicle_type_id: str
    date: date
    quantity: int
    billing_mode: BillingMode
    unit_price: Decimal
    line_total: Decimal
    warning: Optional[str] = None
    vehicle_type_name: Optional[str] = None

    def to_dict(self):
        data = {
            'vehicleTypeId': self.vehicle_type_id,
            'date': self.date.isoformat(),
            'quantity': self.quantity,
            'billingMode': self.billing_mode.value,
            'unitPrice': float(self.unit_price),
            'lineTotal': float(self.line_total),
            'warning': self.warning,
        }
        if self.vehicle_type_name:
            data['vehicleTypeName'] = self.vehicle_type_name
        return data


@dataclass
class CostBreakdownLine:
    day_number: int
    date: date
    subject_id: Optional[str]
    room_lines: List[RoomCostLine] = field(default_factory=list)
    transport_lines: List[TransportCostLine] = field(default_factory=list)
    day_total: Decimal = ZERO
    hotel_name: Optional[str] = None
    itinerary_id: Optional[str] = None

    @property
    def accommodation_cost(self) -> Decimal:
        return sum_components(line.line_total for line in self.room_lines)

    @property
    def transport_cost(self) -> Decimal:
        return sum_components(line.line_total for line in self.transport_lines)

    def to_dict(self):
        data = {
            'dayNumber': self.day_number,
            'date': self.date.isoformat(),
            'subjectId': self.subject_id,
            'accommodationCost': float(self.accommodation_cost),
            'transportCost': float(self.transport_cost),
            'dayTotal': float(self.day_total),
            'roomLines': [line.to_dict() for line in self.room_lines],
            'transportLines': [line.to_dict() for line in self.transport_lines],
        }
        if self.hotel_name:
            data['hotelName'] = self.hotel_name
        if self.itinerary_id:
            data['itineraryId'] = self.itinerary_id
        return data


@dataclass
class PricingResult:
    accommodation_total: Decimal
    transport_total: Decimal
    base_price: Decimal
    markup_percentage: Decimal
    markup_amount: Decimal
    total_cost: Decimal
    breakdown: List[CostBreakdownLine]
    warnings: List[str] = field(default_factory=list)
    calculated_at: Optional[datetime] = None

    def to_dict(self):
        return {
            'success': True,
            'accommodationTotal': float(self.accommodation_total),
            'transportTotal': float(self.transport_total),
            'basePrice': float(self.base_price),
            'markupPercentage': float(self.markup_percentage),
            'markupAmount': float(self.markup_amount),
            'totalCost': float(self.total_cost),
            'breakdown': [line.to_dict() for line in self.breakdown],
            'warnings': list(self.warnings),
            'calculatedAt': self.calculated_at.isoformat() if self.calculated_at else None,
        }


# =====================================================
# STAY COST AGGREGATOR
# =====================================================

class StayCostAggregator:
    """
    Turns an ordered list of ItineraryDayAssignments into a PricingResult.

    Accommodation is charged per night covered by each day (stay span),
    transport per covered day (PerDay) or once per contiguous assignment
    (PerTrip). Only the markup and the final total are rounded.
    """

    def __init__(self, resolver: PriceResolver, catalog=None):
        self.resolver = resolver
        self.catalog = catalog

    # -------------------------------------------------
    # MAIN ENTRY POINT
    # -------------------------------------------------

    def compute(self, itinerary: List[ItineraryDayAssignment], markup_percentage: Any = 0) -> PricingResult:
        markup_pct = self._parse_markup(markup_percentage)
        days = self._validate(itinerary)

        accommodation_total = ZERO
        transport_total = ZERO
        breakdown = []
        warnings = []

        charged_assignments = set()
        previous_runs = set()
        previous_day_end = None

        for day in days:
            line = CostBreakdownLine(
                day_number=day.day_number,
                date=day.date,
                subject_id=day.subject_id,
                itinerary_id=day.itinerary_id,
            )

            for night in day.nights():
                for room in day.rooms:
                    room_line = self._price_room(day, room, night)
                    if room_line.warning:
                        warnings.append(f"Day {day.day_number}: {room_line.warning}")
                    line.room_lines.append(room_line)

            contiguous = previous_day_end is not None and day.day_number == previous_day_end + 1
            open_runs = set()

            for transport in day.transports:
                if transport.billing_mode is BillingMode.PER_DAY:
                    for travel_date in day.nights():
                        line.transport_lines.append(self._price_transport(transport, travel_date))
                    continue

                if transport.assignment_id:
                    identity = (transport.vehicle_type_id, transport.assignment_id)
                    if identity in charged_assignments:
                        continue
                    charged_assignments.add(identity)
                else:
                    run = (transport.vehicle_type_id, transport.quantity)
                    open_runs.add(run)
                    if contiguous and run in previous_runs:
                        continue

                line.transport_lines.append(self._price_transport(transport, day.date))

            for transport_line in line.transport_lines:
                if transport_line.warning:
                    warnings.append(f"Day {day.day_number}: {transport_line.warning}")

            previous_runs = open_runs
            previous_day_end = day.day_number + day.stay_span_days - 1

            line.day_total = line.accommodation_cost + line.transport_cost
            accommodation_total += line.accommodation_cost
            transport_total += line.transport_cost
            breakdown.append(line)

        if self.catalog is not None:
            self._attach_names(breakdown)

        base_price = accommodation_total + transport_total
        markup_amount = quantize_money(base_price * markup_pct / HUNDRED)
        total_cost = quantize_money(base_price + markup_amount)

        logger.info(
            f"Itinerary priced: days={len(days)}, accommodation={accommodation_total}, "
            f"transport={transport_total}, markup={markup_pct}% ({markup_amount}), total={total_cost}, "
            f"warnings={len(warnings)}"
        )

        return PricingResult(
            accommodation_total=accommodation_total,
            transport_total=transport_total,
            base_price=base_price,
            markup_percentage=markup_pct,
            markup_amount=markup_amount,
            total_cost=total_cost,
            breakdown=breakdown,
            warnings=warnings,
            calculated_at=datetime.now(timezone.utc),
        )

    # -------------------------------------------------
    # LINE PRICING
    # -------------------------------------------------

    def _price_room(self, day, room, night) -> RoomCostLine:
        key = AttributeKey(
            subject_id=day.subject_id,
            room_type_id=room.room_type_id,
            occupancy_type_id=room.occupancy_type_id,
            meal_plan_id=room.meal_plan_id,
        )
        rate = self.resolver.resolve(night, key)

        if isinstance(rate, NoCoverage):
            logger.warning(f"Missing room rate: {rate.message}")
            return RoomCostLine(
                room_type_id=room.room_type_id,
                occupancy_type_id=room.occupancy_type_id,
                meal_plan_id=room.meal_plan_id,
                date=night,
                quantity=room.quantity,
                unit_price=ZERO,
                line_total=ZERO,
                warning=rate.message,
            )

        return RoomCostLine(
            room_type_id=room.room_type_id,
            occupancy_type_id=room.occupancy_type_id,
            meal_plan_id=room.meal_plan_id,
            date=night,
            quantity=room.quantity,
            unit_price=rate.price,
            line_total=rate.price * room.quantity,
        )

    def _price_transport(self, transport, travel_date) -> TransportCostLine:
        rate = self.resolver.resolve(travel_date, AttributeKey.for_vehicle(transport.vehicle_type_id))

        if isinstance(rate, NoCoverage):
            logger.warning(f"Missing transport rate: {rate.message}")
            return TransportCostLine(
                vehicle_type_id=transport.vehicle_type_id,
                date=travel_date,
                quantity=transport.quantity,
                billing_mode=transport.billing_mode,
                unit_price=ZERO,
                line_total=ZERO,
                warning=rate.message,
            )

        return TransportCostLine(
            vehicle_type_id=transport.vehicle_type_id,
            date=travel_date,
            quantity=transport.quantity,
            billing_mode=transport.billing_mode,
            unit_price=rate.price,
            line_total=rate.price * transport.quantity,
        )

    def _attach_names(self, breakdown: List[CostBreakdownLine]) -> None:
        rooms = [r for line in breakdown for r in line.room_lines]
        transports = [t for line in breakdown for t in line.transport_lines]

        hotel_names = self.catalog.names('hotels', {line.subject_id for line in breakdown if line.subject_id})
        room_names = self.catalog.names('room_types', {r.room_type_id for r in rooms})
        occupancy_names = self.catalog.names('occupancy_types', {r.occupancy_type_id for r in rooms})
        meal_names = self.catalog.names('meal_plans', {r.meal_plan_id for r in rooms if r.meal_plan_id})
        vehicle_names = self.catalog.names('vehicle_types', {t.vehicle_type_id for t in transports})

        for line in breakdown:
            line.hotel_name = hotel_names.get(line.subject_id)
        for room_line in rooms:
            room_line.room_type_name = room_names.get(room_line.room_type_id)
            room_line.occupancy_type_name = occupancy_names.get(room_line.occupancy_type_id)
            room_line.meal_plan_name = meal_names.get(room_line.meal_plan_id)
        for transport_line in transports:
            transport_line.vehicle_type_name = vehicle_names.get(transport_line.vehicle_type_id)

    # -------------------------------------------------
    # VALIDATION
    # -------------------------------------------------

    @staticmethod
    def _parse_markup(markup_percentage) -> Decimal:
        if markup_percentage is None or markup_percentage == '':
            return ZERO
        if isinstance(markup_percentage, bool):
            raise ValidationError("markup must be a number")
        try:
            markup = Decimal(str(markup_percentage).strip())
        except InvalidOperation:
            raise ValidationError(f"markup must be a number, got {markup_percentage!r}")
        if not markup.is_finite() or markup < 0:
            raise ValidationError(f"markup must be a non-negative number, got {markup_percentage!r}")
        return markup

    @staticmethod
    def _validate(itinerary) -> List[ItineraryDayAssignment]:
        if not itinerary:
            raise ValidationError("Itinerary must contain at least one day")

        days = sorted(itinerary, key=lambda d: d.day_number)
        seen_days = set()
        booked_nights = {}

        for day in days:
            if day.day_number in seen_days:
                raise ValidationError(f"Duplicate day number {day.day_number}")
            seen_days.add(day.day_number)

            if day.stay_span_days < 1:
                raise ValidationError(f"Day {day.day_number}: stay span must be at least 1 night")
            if not day.subject_id and not day.transports:
                raise ValidationError(f"Day {day.day_number}: needs a hotel or a transport assignment")
            if day.rooms and not day.subject_id:
                raise ValidationError(f"Day {day.day_number}: room allocations require a hotel")

            for room in day.rooms:
                if room.quantity <= 0:
                    raise ValidationError(f"Day {day.day_number}: room quantity must be positive")
            for transport in day.transports:
                if not transport.vehicle_type_id:
                    raise ValidationError(f"Day {day.day_number}: transport requires a vehicle type")
                if transport.quantity <= 0:
                    raise ValidationError(f"Day {day.day_number}: transport quantity must be positive")

            if day.rooms:
                for night_number in range(day.day_number, day.day_number + day.stay_span_days):
                    if night_number in booked_nights:
                        raise ValidationError(
                            f"Day {day.day_number}: night {night_number} is already covered by "
                            f"the stay starting on day {booked_nights[night_number]}"
                        )
                    booked_nights[night_number] = day.day_number

        return days


def compute_itinerary_cost(
    itinerary: List[ItineraryDayAssignment],
    markup_percentage: Any = 0,
    resolver: Optional[PriceResolver] = None,
    periods: Optional[Iterable[RatePeriod]] = None,
    catalog=None,
) -> PricingResult:
    """
    Price an itinerary.

    Args:
        itinerary: validated day assignments (see parse_itinerary)
        markup_percentage: e.g. 10 for 10%
        resolver: PriceResolver to use; built from `periods` when omitted
        periods: in-memory rate periods (only used without a resolver)
        catalog: optional name lookup for display names on lines

    Returns:
        PricingResult with per-day breakdown
    """
    if resolver is None:
        resolver = PriceResolver.from_periods(periods or [])
    return StayCostAggregator(resolver, catalog=catalog).compute(itinerary, markup_percentage)


# =====================================================
# INPUT BOUNDARY
# =====================================================

def _to_int(value, field_name, default=None) -> int:
    if value is None or value == '':
        if default is None:
            raise ValidationError(f"{field_name} is required")
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field_name} must be an integer, got {value!r}")
    return number


def _id(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_room(data: Dict, day_number: int) -> RoomAllocation:
    if not isinstance(data, dict):
        raise ValidationError(f"Day {day_number}: room allocation must be an object")
    room_type_id = _id(data.get('roomTypeId'))
    occupancy_type_id = _id(data.get('occupancyTypeId'))
    if not room_type_id or not occupancy_type_id:
        raise ValidationError(f"Day {day_number}: room allocation needs roomTypeId and occupancyTypeId")
    return RoomAllocation(
        room_type_id=room_type_id,
        occupancy_type_id=occupancy_type_id,
        meal_plan_id=_id(data.get('mealPlanId')),
        quantity=_to_int(data.get('quantity'), f"Day {day_number}: room quantity"),
        guest_names=data.get('guestNames'),
    )


def _parse_transport(data: Dict, day_number: int) -> TransportAssignment:
    if not isinstance(data, dict):
        raise ValidationError(f"Day {day_number}: transport must be an object")
    vehicle_type_id = _id(data.get('vehicleTypeId'))
    if not vehicle_type_id:
        raise ValidationError(f"Day {day_number}: transport needs vehicleTypeId")
    return TransportAssignment(
        vehicle_type_id=vehicle_type_id,
        quantity=_to_int(data.get('quantity'), f"Day {day_number}: transport quantity", default=1),
        billing_mode=BillingMode.parse(data.get('billingMode', data.get('pricingType'))),
        assignment_id=_id(data.get('assignmentId')),
    )


def parse_itinerary(days: Any, tour_starts_from: Any = None) -> List[ItineraryDayAssignment]:
    """
    Convert a loosely-typed JSON itinerary into validated day assignments.

    Each day may carry its own `date`; otherwise it is derived from
    tour_starts_from + (dayNumber - 1).
    """
    if not isinstance(days, list) or not days:
        raise ValidationError("Itinerary must contain at least one day")

    start = to_calendar_date(tour_starts_from, 'tourStartsFrom') if tour_starts_from else None
    parsed = []

    for index, data in enumerate(days):
        if not isinstance(data, dict):
            raise ValidationError(f"Itinerary entry {index + 1} must be an object")

        day_number = _to_int(data.get('dayNumber'), 'dayNumber', default=index + 1)
        if day_number < 1:
            raise ValidationError(f"dayNumber must be positive, got {day_number}")

        if data.get('date'):
            day_date = to_calendar_date(data['date'], f"Day {day_number} date")
        elif start is not None:
            day_date = start + timedelta(days=day_number - 1)
        else:
            raise ValidationError(f"Day {day_number}: date is required (or provide tourStartsFrom)")

        rooms = data.get('roomAllocations') or []
        transports = data.get('transportDetails') or []
        if not isinstance(rooms, list) or not isinstance(transports, list):
            raise ValidationError(f"Day {day_number}: roomAllocations and transportDetails must be lists")

        parsed.append(ItineraryDayAssignment(
            day_number=day_number,
            date=day_date,
            subject_id=_id(data.get('hotelId', data.get('subjectId'))),
            stay_span_days=_to_int(data.get('staySpanDays'), f"Day {day_number}: staySpanDays", default=1),
            rooms=tuple(_parse_room(r, day_number) for r in rooms),
            transports=tuple(_parse_transport(t, day_number) for t in transports),
            itinerary_id=_id(data.get('id')),
        ))

    return parsed


def build_variant_itinerary(
    variant_id: str,
    variant_room_allocations: Optional[Dict],
    variant_transport_details: Optional[Dict],
    itineraries: List[Dict],
    tour_starts_from: Any = None,
) -> List[ItineraryDayAssignment]:
    """
    Build a variant's itinerary from the per-variant allocation payloads.

    Payload shape: {variantId: {itineraryId: [room | transport, ...]}}.
    Itineraries without an id are addressed as "day-<dayNumber>".
    """
    variant_rooms = (variant_room_allocations or {}).get(variant_id) or {}
    variant_transport = (variant_transport_details or {}).get(variant_id) or {}

    days = []
    for itinerary in itineraries or []:
        if not isinstance(itinerary, dict):
            raise ValidationError("Itinerary entries must be objects")
        itinerary_id = itinerary.get('id') or f"day-{itinerary.get('dayNumber')}"
        days.append({
            **itinerary,
            'roomAllocations': variant_rooms.get(itinerary_id) or [],
            'transportDetails': variant_transport.get(itinerary_id) or [],
        })

    logger.info(f"Variant {variant_id}: built itinerary with {len(days)} day(s)")
    return parse_itinerary(days, tour_starts_from)
