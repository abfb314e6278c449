"""
test_pricing_engine.py — price resolution and itinerary costing

Covers:
- PriceResolver: single match, NoCoverage, corrupted tables
- StayCostAggregator: stay spans, PerDay / PerTrip transport, markup rounding
- zero-markup identity and monotonic markup
- fail-fast validation and the JSON input boundary
"""

from datetime import date
from decimal import Decimal

import pytest

from catalog import StaticCatalog
from pricing_engine import (
    BillingMode,
    DataInconsistencyError,
    ItineraryDayAssignment,
    NoCoverage,
    PriceResolver,
    RoomAllocation,
    TransportAssignment,
    ValidationError,
    build_variant_itinerary,
    compute_itinerary_cost,
    parse_itinerary,
    sum_components,
)
from rate_periods import AttributeKey, RatePeriod

HOTEL = 'hotel-1'
ROOM_KEY = AttributeKey(HOTEL, 'deluxe', 'double', 'cp')
VEHICLE_KEY = AttributeKey.for_vehicle('innova')


def rate(key, start, end, price, id=None):
    return RatePeriod(key=key, start_date=start, end_date=end, price=Decimal(price), id=id)


PERIODS = [
    rate(ROOM_KEY, date(2025, 1, 1), date(2025, 12, 31), '4000', id='room-2025'),
    rate(VEHICLE_KEY, date(2025, 1, 1), date(2025, 12, 31), '2000', id='innova-2025'),
]


def room(quantity=2, meal_plan_id='cp'):
    return RoomAllocation(room_type_id='deluxe', occupancy_type_id='double', meal_plan_id=meal_plan_id, quantity=quantity)


def transport(mode=BillingMode.PER_TRIP, quantity=1, assignment_id=None):
    return TransportAssignment(vehicle_type_id='innova', quantity=quantity, billing_mode=mode, assignment_id=assignment_id)


def day(number, on_date, span=1, rooms=(), transports=(), subject_id=HOTEL):
    return ItineraryDayAssignment(
        day_number=number, date=on_date, subject_id=subject_id,
        stay_span_days=span, rooms=tuple(rooms), transports=tuple(transports),
    )


def two_night_trip():
    return [day(1, date(2025, 5, 10), span=2, rooms=[room(2)], transports=[transport()])]


# -------------------
# resolver
# -------------------

def test_resolver_returns_covering_period():
    resolver = PriceResolver.from_periods(PERIODS)
    assert resolver.resolve(date(2025, 6, 1), ROOM_KEY).id == 'room-2025'


def test_resolver_returns_no_coverage_for_unknown_key():
    resolver = PriceResolver.from_periods(PERIODS)
    key = AttributeKey(HOTEL, 'deluxe', 'double', 'map')

    result = resolver.resolve(date(2025, 6, 1), key)

    assert isinstance(result, NoCoverage)
    assert result.key == key
    assert '2025-06-01' in result.message


def test_resolver_returns_no_coverage_outside_range():
    resolver = PriceResolver.from_periods(PERIODS)
    assert isinstance(resolver.resolve(date(2026, 1, 1), ROOM_KEY), NoCoverage)


def test_resolver_refuses_to_guess_between_overlapping_periods():
    periods = PERIODS + [rate(ROOM_KEY, date(2025, 6, 1), date(2025, 6, 30), '4500', id='dup')]
    resolver = PriceResolver.from_periods(periods)

    with pytest.raises(DataInconsistencyError) as exc:
        resolver.resolve(date(2025, 6, 15), ROOM_KEY)

    assert sorted(exc.value.period_ids) == ['dup', 'room-2025']
    # dates outside the duplicate are still fine
    assert resolver.resolve(date(2025, 7, 1), ROOM_KEY).id == 'room-2025'


def test_resolver_ignores_inactive_periods():
    periods = [
        RatePeriod(key=ROOM_KEY, start_date=date(2025, 1, 1), end_date=date(2025, 12, 31),
                   price=Decimal('10'), id='old', is_active=False),
    ]
    assert isinstance(PriceResolver.from_periods(periods).resolve(date(2025, 5, 1), ROOM_KEY), NoCoverage)


def test_resolver_accepts_any_lookup_callable():
    calls = []

    def lookup(key, on_date):
        calls.append((key, on_date))
        return PERIODS[:1]

    assert PriceResolver(lookup).resolve(date(2025, 3, 3), ROOM_KEY).id == 'room-2025'
    assert calls == [(ROOM_KEY, date(2025, 3, 3))]


# -------------------
# worked itineraries
# -------------------

def test_two_nights_two_rooms_with_trip_transport_and_markup():
    result = compute_itinerary_cost(two_night_trip(), 10, periods=PERIODS)

    assert result.accommodation_total == Decimal('16000')
    assert result.transport_total == Decimal('2000')
    assert result.base_price == Decimal('18000')
    assert result.markup_amount == Decimal('1800.00')
    assert result.total_cost == Decimal('19800.00')
    assert result.warnings == []


def test_same_itinerary_without_markup():
    result = compute_itinerary_cost(two_night_trip(), 0, periods=PERIODS)
    assert result.total_cost == Decimal('18000')
    assert result.total_cost == result.base_price


def test_missing_meal_plan_rate_becomes_zero_cost_warning():
    itinerary = [day(1, date(2025, 5, 10), rooms=[room(1), room(1, meal_plan_id='map')])]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    lines = result.breakdown[0].room_lines
    assert lines[0].line_total == Decimal('4000')
    assert lines[1].line_total == Decimal('0')
    assert lines[1].unit_price == Decimal('0')
    assert 'No rate' in lines[1].warning
    assert result.total_cost == Decimal('4000')
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith('Day 1:')


def test_missing_transport_rate_becomes_warning():
    itinerary = [day(1, date(2026, 2, 1), transports=[transport()], subject_id=None)]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('0')
    assert len(result.warnings) == 1


def test_corrupted_rate_table_aborts_the_quote():
    periods = PERIODS + [rate(ROOM_KEY, date(2025, 5, 1), date(2025, 5, 31), '1', id='dup')]
    with pytest.raises(DataInconsistencyError):
        compute_itinerary_cost(two_night_trip(), 0, periods=periods)


# -------------------
# stay spans and transport billing
# -------------------

def test_stay_span_prices_each_night_on_its_own_date():
    periods = [
        rate(ROOM_KEY, date(2025, 5, 1), date(2025, 5, 10), '100', id='a'),
        rate(ROOM_KEY, date(2025, 5, 11), date(2025, 5, 31), '200', id='b'),
    ]
    itinerary = [day(1, date(2025, 5, 9), span=3, rooms=[room(1)])]

    result = compute_itinerary_cost(itinerary, 0, periods=periods)

    lines = result.breakdown[0].room_lines
    assert [(l.date, l.unit_price) for l in lines] == [
        (date(2025, 5, 9), Decimal('100')),
        (date(2025, 5, 10), Decimal('100')),
        (date(2025, 5, 11), Decimal('200')),
    ]
    assert result.accommodation_total == Decimal('400')


def test_per_day_transport_is_charged_for_every_covered_day():
    itinerary = [day(1, date(2025, 5, 10), span=2, transports=[transport(BillingMode.PER_DAY, quantity=2)])]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('8000')
    assert len(result.breakdown[0].transport_lines) == 2


def test_per_trip_transport_on_consecutive_days_is_charged_once():
    itinerary = [
        day(1, date(2025, 5, 10), transports=[transport()]),
        day(2, date(2025, 5, 11), transports=[transport()]),
        day(3, date(2025, 5, 12), transports=[transport()]),
    ]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('2000')
    assert [len(line.transport_lines) for line in result.breakdown] == [1, 0, 0]


def test_per_trip_transport_after_a_gap_is_a_new_trip():
    itinerary = [
        day(1, date(2025, 5, 10), transports=[transport()]),
        day(2, date(2025, 5, 11)),
        day(3, date(2025, 5, 12), transports=[transport()]),
    ]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('4000')


def test_per_trip_transport_with_changed_quantity_is_a_new_trip():
    itinerary = [
        day(1, date(2025, 5, 10), transports=[transport(quantity=1)]),
        day(2, date(2025, 5, 11), transports=[transport(quantity=2)]),
    ]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('6000')


def test_per_trip_assignment_id_is_charged_once_across_the_itinerary():
    itinerary = [
        day(1, date(2025, 5, 10), transports=[transport(assignment_id='T1')]),
        day(2, date(2025, 5, 11)),
        day(3, date(2025, 5, 12), transports=[transport(assignment_id='T1')]),
        day(4, date(2025, 5, 13), transports=[transport(assignment_id='T2')]),
    ]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('4000')


def test_per_trip_after_multi_night_stay_continues_the_trip():
    itinerary = [
        day(1, date(2025, 5, 10), span=2, rooms=[room(1)], transports=[transport()]),
        day(3, date(2025, 5, 12), rooms=[room(1)], transports=[transport()]),
    ]

    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)

    assert result.transport_total == Decimal('2000')
    assert result.accommodation_total == Decimal('12000')


# -------------------
# markup
# -------------------

def test_markup_rounds_half_up_to_cents():
    periods = [rate(ROOM_KEY, date(2025, 1, 1), date(2025, 12, 31), '0.10')]
    itinerary = [day(1, date(2025, 5, 10), rooms=[room(1)])]

    result = compute_itinerary_cost(itinerary, 5, periods=periods)

    assert result.markup_amount == Decimal('0.01')
    assert result.total_cost == Decimal('0.11')


@pytest.mark.parametrize("itinerary", [
    two_night_trip(),
    [day(1, date(2025, 5, 10), rooms=[room(3)]), day(2, date(2025, 5, 11), transports=[transport(BillingMode.PER_DAY)])],
])
def test_zero_markup_total_equals_base_price(itinerary):
    result = compute_itinerary_cost(itinerary, 0, periods=PERIODS)
    assert result.total_cost == result.base_price
    assert result.markup_amount == Decimal('0')


def test_total_never_decreases_as_markup_grows():
    totals = [
        compute_itinerary_cost(two_night_trip(), markup, periods=PERIODS).total_cost
        for markup in (0, '0.001', '0.5', 1, 7.5, 10, 33.333, 100)
    ]
    assert totals == sorted(totals)


def test_markup_accepts_numeric_strings():
    result = compute_itinerary_cost(two_night_trip(), '12.5', periods=PERIODS)
    assert result.markup_amount == Decimal('2250.00')


# -------------------
# validation
# -------------------

@pytest.mark.parametrize("itinerary,markup", [
    ([], 0),
    ([day(1, date(2025, 5, 10), rooms=[room(0)])], 0),
    ([day(1, date(2025, 5, 10), rooms=[room(-1)])], 0),
    ([day(1, date(2025, 5, 10), transports=[transport(quantity=0)])], 0),
    (two_night_trip(), -5),
    (two_night_trip(), 'ten'),
    ([day(1, date(2025, 5, 10), subject_id=None)], 0),
    ([day(1, date(2025, 5, 10), rooms=[room(1)], transports=[transport()], subject_id=None)], 0),
    ([day(1, date(2025, 5, 10)), day(1, date(2025, 5, 11))], 0),
    ([day(1, date(2025, 5, 10), span=2, rooms=[room(1)]), day(2, date(2025, 5, 11), rooms=[room(1)])], 0),
    ([day(1, date(2025, 5, 10), span=0)], 0),
])
def test_malformed_input_fails_fast(itinerary, markup):
    with pytest.raises(ValidationError):
        compute_itinerary_cost(itinerary, markup, periods=PERIODS)


@pytest.mark.parametrize("value,expected", [
    (None, BillingMode.PER_DAY),
    ('PerDay', BillingMode.PER_DAY),
    ('per_trip', BillingMode.PER_TRIP),
    ('PER-TRIP', BillingMode.PER_TRIP),
    (BillingMode.PER_TRIP, BillingMode.PER_TRIP),
])
def test_billing_mode_parse(value, expected):
    assert BillingMode.parse(value) is expected


def test_billing_mode_rejects_unknown_values():
    with pytest.raises(ValidationError):
        BillingMode.parse('weekly')


def test_sum_components_is_exact():
    assert sum_components(['0.1', '0.2', None, Decimal('0.3')]) == Decimal('0.6')


# -------------------
# output
# -------------------

def test_to_dict_and_catalog_names():
    catalog = StaticCatalog({
        'hotels': {HOTEL: 'Snow Valley Resort'},
        'room_types': {'deluxe': 'Deluxe'},
        'occupancy_types': {'double': 'Double'},
        'meal_plans': {'cp': 'CP (Breakfast)'},
        'vehicle_types': {'innova': 'Innova Crysta'},
    })

    data = compute_itinerary_cost(two_night_trip(), 10, periods=PERIODS, catalog=catalog).to_dict()

    assert data['success'] is True
    assert data['totalCost'] == 19800.0
    assert data['basePrice'] == 18000.0
    day_one = data['breakdown'][0]
    assert day_one['hotelName'] == 'Snow Valley Resort'
    assert day_one['dayTotal'] == 18000.0
    assert day_one['roomLines'][0]['mealPlanName'] == 'CP (Breakfast)'
    assert day_one['transportLines'][0]['vehicleTypeName'] == 'Innova Crysta'
    assert day_one['transportLines'][0]['billingMode'] == 'PerTrip'


# -------------------
# input boundary
# -------------------

def test_parse_itinerary_derives_dates_from_tour_start():
    days = parse_itinerary([
        {'dayNumber': 1, 'hotelId': HOTEL, 'roomAllocations': [
            {'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': '2'}]},
        {'dayNumber': 2, 'hotelId': HOTEL, 'transportDetails': [
            {'vehicleTypeId': 'innova', 'pricingType': 'PerTrip'}]},
        {'dayNumber': 3, 'date': '2025-06-20T00:00:00Z', 'hotelId': HOTEL},
    ], tour_starts_from='2025-05-10')

    assert [d.date for d in days] == [date(2025, 5, 10), date(2025, 5, 11), date(2025, 6, 20)]
    assert days[0].rooms[0].quantity == 2
    assert days[1].transports[0].billing_mode is BillingMode.PER_TRIP
    assert days[1].transports[0].quantity == 1


@pytest.mark.parametrize("days,start", [
    ([], '2025-05-10'),
    ('not a list', '2025-05-10'),
    ([{'dayNumber': 1, 'hotelId': HOTEL}], None),
    ([{'dayNumber': 0, 'hotelId': HOTEL}], '2025-05-10'),
    ([{'dayNumber': 1, 'hotelId': HOTEL, 'roomAllocations': [{'roomTypeId': 'deluxe'}]}], '2025-05-10'),
    ([{'dayNumber': 1, 'transportDetails': [{'quantity': 1}]}], '2025-05-10'),
    ([{'dayNumber': 1, 'hotelId': HOTEL, 'roomAllocations': [
        {'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'quantity': 'two'}]}], '2025-05-10'),
])
def test_parse_itinerary_rejects_malformed_days(days, start):
    with pytest.raises(ValidationError):
        parse_itinerary(days, start)


def test_build_variant_itinerary_uses_variant_specific_allocations():
    itineraries = [
        {'id': 'it-1', 'dayNumber': 1, 'hotelId': HOTEL},
        {'dayNumber': 2, 'hotelId': HOTEL},
    ]
    rooms = {
        'budget': {'it-1': [{'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': 1}]},
        'premium': {
            'it-1': [{'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': 2}],
            'day-2': [{'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': 2}],
        },
    }
    transports = {'premium': {'it-1': [{'vehicleTypeId': 'innova', 'billingMode': 'PerTrip'}]}}

    budget = build_variant_itinerary('budget', rooms, transports, itineraries, '2025-05-10')
    premium = build_variant_itinerary('premium', rooms, transports, itineraries, '2025-05-10')

    assert compute_itinerary_cost(budget, 0, periods=PERIODS).total_cost == Decimal('4000')
    assert compute_itinerary_cost(premium, 0, periods=PERIODS).total_cost == Decimal('18000')
    assert premium[1].itinerary_id is None
    assert budget[1].rooms == ()


def test_breakdown_lines_point_back_to_their_itinerary_row():
    days = parse_itinerary([
        {'id': 'it-1', 'dayNumber': 1, 'hotelId': HOTEL, 'roomAllocations': [
            {'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': 1}]},
        {'dayNumber': 2, 'hotelId': HOTEL, 'roomAllocations': [
            {'roomTypeId': 'deluxe', 'occupancyTypeId': 'double', 'mealPlanId': 'cp', 'quantity': 1}]},
    ], '2025-05-10')

    lines = compute_itinerary_cost(days, 0, periods=PERIODS).to_dict()['breakdown']

    assert lines[0]['itineraryId'] == 'it-1'
    assert 'itineraryId' not in lines[1]
