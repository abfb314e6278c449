"""
Rate Periods — date-bounded rate records and period splitting
==============================================================
Pure data model + algorithms for the rate tables:
  - Calendar date normalisation (the single date boundary of the core)
  - Attribute keys (hotel/room/occupancy/meal plan, or vehicle-only)
  - split_insert: compute the delete/create diff for a new, possibly
    overlapping rate period
  - apply_split: materialise a diff against an in-memory period list

Nothing here touches the database. The store (rate_store.py) reads the
overlapping rows, calls split_insert and applies the result atomically.
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional
import logging

from errors import ValidationError

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)
MONEY_PLACES = 2


# =====================================================
# DATE BOUNDARY
# =====================================================

def to_calendar_date(value: Any, field_name: str = 'date') -> date:
    """
    Normalise an incoming date to a timezone-free calendar date.

    Accepts date, datetime (time-of-day dropped, aware values are read in
    their own calendar, never converted) and ISO-8601 strings.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValidationError(f"{field_name} is required")
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            if text.endswith('Z'):
                text = text[:-1] + '+00:00'
            return datetime.fromisoformat(text).date()
        except ValueError:
            raise ValidationError(f"Invalid {field_name}: {value!r}")
    if value is None:
        raise ValidationError(f"{field_name} is required")
    raise ValidationError(f"Invalid {field_name}: {value!r}")


def to_money(value: Any, field_name: str = 'price') -> Decimal:
    """Parse a non-negative amount with at most two decimal places."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    if amount.as_tuple().exponent < -MONEY_PLACES:
        raise ValidationError(f"{field_name} has more than {MONEY_PLACES} decimal places: {value}")
    return amount


def dates_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return start_a <= end_b and end_a >= start_b


# =====================================================
# MODEL
# =====================================================

@dataclass(frozen=True)
class AttributeKey:
    """
    Partition key of a rate series.

    subject_id is a hotel id for room rates or a vehicle type id for
    transport rates (the other fields stay None).
    """
    subject_id: str
    room_type_id: Optional[str] = None
    occupancy_type_id: Optional[str] = None
    meal_plan_id: Optional[str] = None

    @classmethod
    def for_vehicle(cls, vehicle_type_id: str) -> 'AttributeKey':
        return cls(subject_id=vehicle_type_id)

    def as_tuple(self):
        return (self.subject_id, self.room_type_id, self.occupancy_type_id, self.meal_plan_id)

    def to_dict(self):
        return {
            'subjectId': self.subject_id,
            'roomTypeId': self.room_type_id,
            'occupancyTypeId': self.occupancy_type_id,
            'mealPlanId': self.meal_plan_id,
        }

    def __str__(self):
        return '/'.join(part if part is not None else '-' for part in self.as_tuple())


@dataclass(frozen=True)
class RatePeriod:
    key: AttributeKey
    start_date: date
    end_date: date
    price: Decimal
    id: Optional[Any] = None
    is_active: bool = True

    def covers(self, on_date: date) -> bool:
        return self.start_date <= on_date <= self.end_date

    def overlaps(self, start: date, end: date) -> bool:
        return dates_overlap(self.start_date, self.end_date, start, end)

    def to_dict(self):
        return {
            'id': self.id,
            **self.key.to_dict(),
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'price': str(self.price),
            'isActive': self.is_active,
        }


@dataclass
class SplitResult:
    periods_to_delete: List[Any] = field(default_factory=list)
    periods_to_create: List[RatePeriod] = field(default_factory=list)

    def to_dict(self):
        return {
            'periodsToDelete': list(self.periods_to_delete),
            'periodsToCreate': [p.to_dict() for p in self.periods_to_create],
        }


def validate_period(period: RatePeriod) -> None:
    if not period.key.subject_id:
        raise ValidationError("subject_id is required")
    if period.end_date < period.start_date:
        raise ValidationError(
            f"end_date {period.end_date} is before start_date {period.start_date}"
        )
    to_money(period.price)


def period_from_payload(data: dict, key: Optional[AttributeKey] = None) -> RatePeriod:
    """Build a validated RatePeriod from a camelCase or snake_case JSON body."""
    if not isinstance(data, dict):
        raise ValidationError("Rate period must be an object")

    def pick(camel, snake):
        return data.get(camel, data.get(snake))

    if key is None:
        subject_id = pick('subjectId', 'subject_id') or pick('hotelId', 'hotel_id')
        if not subject_id:
            subject_id = pick('vehicleTypeId', 'vehicle_type_id')
        key = AttributeKey(
            subject_id=clean_id(subject_id),
            room_type_id=clean_id(pick('roomTypeId', 'room_type_id')),
            occupancy_type_id=clean_id(pick('occupancyTypeId', 'occupancy_type_id')),
            meal_plan_id=clean_id(pick('mealPlanId', 'meal_plan_id')),
        )

    period = RatePeriod(
        key=key,
        start_date=to_calendar_date(pick('startDate', 'start_date'), 'start_date'),
        end_date=to_calendar_date(pick('endDate', 'end_date'), 'end_date'),
        price=to_money(data.get('price')),
        id=data.get('id'),
        is_active=parse_flag(pick('isActive', 'is_active'), default=True),
    )
    validate_period(period)
    return period


def clean_id(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_flag(value, default=False):
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('true', 't', 'yes', 'y', '1', 'active')
    return bool(value)


# =====================================================
# PERIOD SPLITTING
# =====================================================

def find_overlapping(periods: Iterable[RatePeriod], new_period: RatePeriod) -> List[RatePeriod]:
    return [
        p for p in periods
        if p.is_active
        and p.key == new_period.key
        and p.overlaps(new_period.start_date, new_period.end_date)
    ]


def split_insert(existing_periods: Iterable[RatePeriod], new_period: RatePeriod) -> SplitResult:
    """
    Compute the diff that inserts new_period while keeping the series
    non-overlapping.

    Every overlapping period is deleted; the parts of it lying before and
    after the new range are re-emitted at the old price. The caller applies
    the deletes and creates inside one transaction.

    An inactive new period is stored as-is and leaves the active series
    untouched.
    """
    validate_period(new_period)

    result = SplitResult()
    overlapping = find_overlapping(existing_periods, new_period) if new_period.is_active else []

    for existing in overlapping:
        result.periods_to_delete.append(existing.id)

        if existing.start_date < new_period.start_date:
            result.periods_to_create.append(replace(
                existing,
                id=None,
                end_date=new_period.start_date - ONE_DAY,
            ))

        if existing.end_date > new_period.end_date:
            result.periods_to_create.append(replace(
                existing,
                id=None,
                start_date=new_period.end_date + ONE_DAY,
            ))

    result.periods_to_create.append(replace(new_period, id=None))
    result.periods_to_create.sort(key=lambda p: p.start_date)

    logger.debug(
        f"Split for key {new_period.key}: delete={len(result.periods_to_delete)}, "
        f"create={len(result.periods_to_create)}"
    )
    return result


def apply_split(periods: Iterable[RatePeriod], result: SplitResult, id_factory=None) -> List[RatePeriod]:
    """
    Return the period list with a SplitResult applied.

    id_factory, when given, is called once per created period to assign ids
    (so that a later split can reference them).
    """
    doomed = set(result.periods_to_delete)
    remaining = [p for p in periods if p.id is None or p.id not in doomed]
    for created in result.periods_to_create:
        new_id = id_factory() if id_factory else created.id
        remaining.append(replace(created, id=new_id))
    remaining.sort(key=lambda p: (str(p.key), p.start_date))
    return remaining
