"""
Hotel pricing bulk import (JSON).

Two-step flow used by the back office:
  1. validate + preview  -> per-entry errors, overlap warnings and the rate
                            table as it would look after the import
  2. confirm             -> every entry is split-inserted through the store
                            in a single transaction
"""

from dataclasses import dataclass, field
from itertools import count
from typing import Any, Dict, List, Optional
import logging

from errors import ValidationError
from rate_periods import (
    AttributeKey,
    RatePeriod,
    apply_split,
    split_insert,
    to_calendar_date,
    to_money,
    parse_flag,
    clean_id,
)

logger = logging.getLogger(__name__)


@dataclass
class EntryError:
    entry_index: int
    field: Optional[str]
    message: str
    value: Any = None

    def to_dict(self):
        return {
            'type': 'validation',
            'severity': 'error',
            'entryIndex': self.entry_index,
            'field': self.field,
            'message': self.message,
            'value': self.value if self.value is None else str(self.value),
        }


@dataclass
class ImportEntry:
    index: int
    period: RatePeriod


@dataclass
class ParsedImport:
    hotel_id: str
    total_entries: int
    entries: List[ImportEntry] = field(default_factory=list)
    errors: List[EntryError] = field(default_factory=list)

    @property
    def is_valid(self):
        return not self.errors


def parse_import_payload(payload: Dict, catalog=None) -> ParsedImport:
    """
    Validate an import payload:

        {"metadata": {"hotelId": ...},
         "pricingEntries": [{"roomTypeId", "occupancyTypeId", "mealPlanId"?,
                             "startDate", "endDate", "price", "isActive"?}, ...]}

    Structural problems raise ValidationError. Problems in individual entries
    are collected so the operator sees all of them at once.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Import payload must be an object")
    metadata = payload.get('metadata') or {}
    hotel_id = clean_id(metadata.get('hotelId')) if isinstance(metadata, dict) else None
    if not hotel_id:
        raise ValidationError("metadata.hotelId is required")
    raw_entries = payload.get('pricingEntries')
    if not isinstance(raw_entries, list) or not raw_entries:
        raise ValidationError("pricingEntries must be a non-empty list")

    parsed = ParsedImport(hotel_id=hotel_id, total_entries=len(raw_entries))

    for index, raw in enumerate(raw_entries):
        if not isinstance(raw, dict):
            parsed.errors.append(EntryError(index, None, "Entry must be an object"))
            continue

        entry_errors = []
        room_type_id = clean_id(raw.get('roomTypeId'))
        occupancy_type_id = clean_id(raw.get('occupancyTypeId'))
        if not room_type_id:
            entry_errors.append(EntryError(index, 'roomTypeId', "Room type is required"))
        if not occupancy_type_id:
            entry_errors.append(EntryError(index, 'occupancyTypeId', "Occupancy type is required"))

        values = {}
        for name, parser in (('startDate', to_calendar_date), ('endDate', to_calendar_date), ('price', to_money)):
            try:
                values[name] = parser(raw.get(name), name)
            except ValidationError as e:
                entry_errors.append(EntryError(index, name, str(e), raw.get(name)))

        if 'startDate' in values and 'endDate' in values and values['endDate'] < values['startDate']:
            entry_errors.append(EntryError(index, 'endDate', "End date is before start date", raw.get('endDate')))

        if entry_errors:
            parsed.errors.extend(entry_errors)
            continue

        parsed.entries.append(ImportEntry(index=index, period=RatePeriod(
            key=AttributeKey(
                subject_id=hotel_id,
                room_type_id=room_type_id,
                occupancy_type_id=occupancy_type_id,
                meal_plan_id=clean_id(raw.get('mealPlanId')),
            ),
            start_date=values['startDate'],
            end_date=values['endDate'],
            price=values['price'],
            is_active=parse_flag(raw.get('isActive'), default=True),
        )))

    _reject_duplicates(parsed)
    if catalog is not None:
        _check_references(parsed, catalog)

    logger.info(
        f"Parsed pricing import for hotel {hotel_id}: {len(parsed.entries)} valid, "
        f"{len(parsed.errors)} error(s)"
    )
    return parsed


def _reject_duplicates(parsed: ParsedImport) -> None:
    """Same key and same date range twice in one file is an error, not an overlap."""
    seen = {}
    kept = []
    for entry in parsed.entries:
        signature = (entry.period.key, entry.period.start_date, entry.period.end_date)
        if signature in seen:
            parsed.errors.append(EntryError(
                entry.index, None, f"Duplicate pricing combination (matches row {seen[signature] + 1})"
            ))
            continue
        seen[signature] = entry.index
        kept.append(entry)

    if len(kept) != len(parsed.entries):
        parsed.entries = kept
        parsed.errors.sort(key=lambda e: e.entry_index)


def _check_references(parsed: ParsedImport, catalog) -> None:
    if not catalog.names('hotels', [parsed.hotel_id]):
        raise ValidationError(f"Hotel {parsed.hotel_id} not found")

    checks = (
        ('room_types', 'roomTypeId', 'room_type_id', "Room type"),
        ('occupancy_types', 'occupancyTypeId', 'occupancy_type_id', "Occupancy type"),
        ('meal_plans', 'mealPlanId', 'meal_plan_id', "Meal plan"),
    )
    rejected = set()
    for kind, field_name, attr, label in checks:
        ids = {getattr(e.period.key, attr) for e in parsed.entries} - {None}
        known = catalog.names(kind, ids)
        for entry in parsed.entries:
            value = getattr(entry.period.key, attr)
            if value is not None and value not in known:
                parsed.errors.append(EntryError(
                    entry.index, field_name, f'{label} ID "{value}" not found or inactive', value
                ))
                rejected.add(entry.index)

    if rejected:
        parsed.entries = [e for e in parsed.entries if e.index not in rejected]
        parsed.errors.sort(key=lambda e: e.entry_index)


def overlap_warnings(parsed: ParsedImport, existing_periods: List[RatePeriod]) -> List[str]:
    warnings = []
    entries = parsed.entries

    for i, a in enumerate(entries):
        for b in entries[i + 1:]:
            if a.period.key == b.period.key and a.period.overlaps(b.period.start_date, b.period.end_date):
                warnings.append(
                    f"Entries {a.index + 1} and {b.index + 1} have overlapping dates "
                    f"for the same room/occupancy/meal combination"
                )

    for entry in entries:
        for existing in existing_periods:
            if (existing.is_active and existing.key == entry.period.key
                    and existing.overlaps(entry.period.start_date, entry.period.end_date)):
                warnings.append(
                    f"Entry {entry.index + 1} overlaps with existing pricing "
                    f"({existing.start_date.isoformat()} to {existing.end_date.isoformat()})"
                )
    return warnings


def preview_import(parsed: ParsedImport, existing_periods: List[RatePeriod]) -> Dict:
    """
    Dry run: apply the entries, in order, to an in-memory copy of the
    hotel's rate table.
    """
    warnings = overlap_warnings(parsed, existing_periods)
    new_ids = count(1)
    table = [p for p in existing_periods if p.is_active]
    entries = []

    for entry in parsed.entries:
        result = split_insert(table, entry.period)
        table = apply_split(table, result, id_factory=lambda: f"new-{next(new_ids)}")
        entries.append({
            'index': entry.index,
            **entry.period.to_dict(),
            'action': 'split' if result.periods_to_delete else 'create',
            'supersedes': len(result.periods_to_delete),
            'status': 'valid',
        })

    return {
        'hotelId': parsed.hotel_id,
        'summary': {
            'totalEntries': parsed.total_entries,
            'validEntries': len(parsed.entries),
            'errors': len(parsed.errors),
            'warnings': len(warnings),
        },
        'entries': entries,
        'errors': [e.to_dict() for e in parsed.errors],
        'warnings': warnings,
        'resultingPeriods': [p.to_dict() for p in table],
    }


def apply_import(store, parsed: ParsedImport) -> Dict:
    """All-or-nothing import through PgRatePeriodStore.insert_many."""
    if not parsed.is_valid:
        raise ValidationError(f"Cannot import with {len(parsed.errors)} validation error(s)")

    results = store.insert_many([e.period for e in parsed.entries])
    created = sum(len(r.periods_to_create) for r in results)
    deleted = sum(len(r.periods_to_delete) for r in results)

    logger.info(
        f"Imported {len(parsed.entries)} pricing entries for hotel {parsed.hotel_id}: "
        f"created={created}, deleted={deleted}"
    )
    return {
        'success': True,
        'summary': {
            'totalEntries': parsed.total_entries,
            'imported': len(parsed.entries),
            'created': created,
            'deleted': deleted,
        },
    }
