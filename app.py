"""
Tour Pricing Core — Flask Backend
=================================
Thin HTTP layer over the pricing core:

- Rate periods: split preview (pure), split-insert, list, delete, resolve
- Itinerary costing (/calculate) and per-variant costing
- Variant snapshots per tour package query (create / read / delete)
- Hotel pricing JSON import (preview + confirmed apply)

No pricing arithmetic happens in this file. Every route delegates to
pricing_engine.py, rate_store.py, variant_snapshot.py or
hotel_pricing_import.py and only translates errors to HTTP statuses.
"""

from dataclasses import replace
from datetime import timedelta
from flask import Flask, request, jsonify
from flask_cors import CORS
import json
import os
import logging

from db import json_serial
from catalog import PgCatalog
from rate_periods import AttributeKey, clean_id, parse_flag, period_from_payload, split_insert, to_calendar_date
from rate_store import PgRatePeriodStore
from variant_snapshot import VariantSnapshotManager
from hotel_pricing_import import apply_import, parse_import_payload, preview_import
from pricing_engine import (
    PricingEngineError,
    ValidationError,
    DataInconsistencyError,
    ConcurrencyConflictError,
    SnapshotIntegrityError,
    NoCoverage,
    PriceResolver,
    build_variant_itinerary,
    compute_itinerary_cost,
    parse_itinerary,
)

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper())
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'your-secret-key-change-in-production')
CORS(app)

rate_store = PgRatePeriodStore()
snapshot_manager = VariantSnapshotManager()
catalog = PgCatalog()


# =====================================================
# ERROR MAPPING
# =====================================================

ERROR_STATUS = (
    (ValidationError, 400),
    (DataInconsistencyError, 409),
    (ConcurrencyConflictError, 409),
    (SnapshotIntegrityError, 500),
    (PricingEngineError, 400),
)


def error_response(e, context):
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            if status >= 500:
                logger.error(f"{context}: {e}", exc_info=True)
            else:
                logger.warning(f"{context}: {e}")
            body = {'success': False, 'error': str(e)}
            if isinstance(e, DataInconsistencyError):
                body['periodIds'] = [str(pid) for pid in e.period_ids]
            return jsonify(body), status

    logger.error(f"{context}: {e}", exc_info=True)
    return jsonify({'success': False, 'error': f'{context}: {str(e)}'}), 500


def get_payload():
    payload = request.get_json(silent=True)
    if not payload or not isinstance(payload, dict):
        raise ValidationError('No data provided')
    return payload


def key_from_args(args):
    subject_id = clean_id(args.get('subject_id') or args.get('hotel_id') or args.get('vehicle_type_id'))
    if not subject_id:
        raise ValidationError('subject_id is required')
    return AttributeKey(
        subject_id=subject_id,
        room_type_id=clean_id(args.get('room_type_id')),
        occupancy_type_id=clean_id(args.get('occupancy_type_id')),
        meal_plan_id=clean_id(args.get('meal_plan_id')),
    )


def resolver_for(itinerary):
    """Load every rate period the itinerary can touch in one query."""
    subject_ids = {day.subject_id for day in itinerary if day.subject_id}
    subject_ids |= {t.vehicle_type_id for day in itinerary for t in day.transports}
    start = min(day.date for day in itinerary)
    end = max(day.date + timedelta(days=max(day.stay_span_days, 1) - 1) for day in itinerary)
    return PriceResolver.from_periods(rate_store.load_periods(subject_ids, start, end))


# =====================================================
# RATE PERIODS
# =====================================================

@app.route('/api/rate-periods/split-preview', methods=['POST'])
def split_preview():
    """Pure split: nothing is read from or written to the database."""
    try:
        payload = get_payload()
        new_period = period_from_payload(payload.get('newPeriod'))

        existing = []
        for index, raw in enumerate(payload.get('existingPeriods') or []):
            period = period_from_payload(raw)
            if period.id is None:
                period = replace(period, id=f'existing-{index + 1}')
            existing.append(period)

        result = split_insert(existing, new_period)
        return jsonify({'success': True, **result.to_dict()})

    except Exception as e:
        return error_response(e, 'Error previewing split')


@app.route('/api/rate-periods', methods=['POST'])
def create_rate_period():
    try:
        new_period = period_from_payload(get_payload())
        result = rate_store.insert(new_period)

        logger.info(
            f"Rate period {new_period.key} {new_period.start_date}..{new_period.end_date} "
            f"@ {new_period.price}: deleted {len(result.periods_to_delete)}, "
            f"created {len(result.periods_to_create)}"
        )
        return jsonify({'success': True, **result.to_dict()}), 201

    except Exception as e:
        return error_response(e, 'Error creating rate period')


@app.route('/api/rate-periods', methods=['GET'])
def list_rate_periods():
    try:
        args = request.args
        include_inactive = parse_flag(args.get('include_inactive'))
        if any(args.get(f) for f in ('room_type_id', 'occupancy_type_id', 'meal_plan_id')):
            periods = rate_store.list_periods(key=key_from_args(args), include_inactive=include_inactive)
        else:
            periods = rate_store.list_periods(
                subject_id=clean_id(args.get('subject_id') or args.get('hotel_id') or args.get('vehicle_type_id')),
                include_inactive=include_inactive,
            )
        return jsonify({'success': True, 'periods': [p.to_dict() for p in periods], 'count': len(periods)})

    except Exception as e:
        return error_response(e, 'Error listing rate periods')


@app.route('/api/rate-periods/<period_id>', methods=['DELETE'])
def delete_rate_period(period_id):
    try:
        if not rate_store.delete_period(period_id):
            return jsonify({'success': False, 'error': 'Rate period not found'}), 404
        return jsonify({'success': True, 'message': 'Deleted'})

    except Exception as e:
        return error_response(e, f'Error deleting rate period {period_id}')


@app.route('/api/rate-periods/resolve', methods=['GET'])
def resolve_rate():
    try:
        on_date = to_calendar_date(request.args.get('date'))
        key = key_from_args(request.args)
        rate = PriceResolver(rate_store.find_covering).resolve(on_date, key)

        if isinstance(rate, NoCoverage):
            return jsonify({
                'success': True,
                'covered': False,
                'key': key.to_dict(),
                'date': on_date.isoformat(),
                'message': rate.message,
            })
        return jsonify({'success': True, 'covered': True, 'period': rate.to_dict()})

    except Exception as e:
        return error_response(e, 'Error resolving rate')


# =====================================================
# CALCULATION ENDPOINTS
# =====================================================

@app.route('/calculate', methods=['POST'])
def calculate():
    """
    Price an itinerary.

    Body: {"itinerary": [...days], "tourStartsFrom": "YYYY-MM-DD"?,
           "markupPercentage": 10}
    Missing rates do not fail the request; they come back as zero-cost
    lines listed in "warnings".
    """
    try:
        payload = get_payload()
        logger.info(f"Calculate request: {json.dumps(payload, default=json_serial)}")

        itinerary = parse_itinerary(payload.get('itinerary'), payload.get('tourStartsFrom'))
        result = compute_itinerary_cost(
            itinerary,
            payload.get('markupPercentage', 0),
            resolver=resolver_for(itinerary),
            catalog=catalog if parse_flag(payload.get('includeNames'), default=True) else None,
        )

        logger.info(f"Calculation successful: total={result.total_cost}, warnings={len(result.warnings)}")
        return jsonify(result.to_dict())

    except Exception as e:
        return error_response(e, 'Calculation error')


@app.route('/api/variant-pricing', methods=['POST'])
def variant_pricing():
    """
    Price one or more package variants of the same itinerary.

    Body: {"variantIds": [...], "itineraries": [...],
           "variantRoomAllocations": {variantId: {itineraryId: [...]}},
           "variantTransportDetails": {variantId: {itineraryId: [...]}},
           "tourStartsFrom": "YYYY-MM-DD"?, "markupPercentage": 0}
    """
    try:
        payload = get_payload()
        variant_ids = payload.get('variantIds') or ([payload['variantId']] if payload.get('variantId') else [])
        if not variant_ids:
            raise ValidationError('variantIds is required')

        results = {}
        for variant_id in variant_ids:
            itinerary = build_variant_itinerary(
                variant_id,
                payload.get('variantRoomAllocations'),
                payload.get('variantTransportDetails'),
                payload.get('itineraries'),
                payload.get('tourStartsFrom'),
            )
            results[variant_id] = compute_itinerary_cost(
                itinerary,
                payload.get('markupPercentage', 0),
                resolver=resolver_for(itinerary),
                catalog=catalog,
            ).to_dict()

        return jsonify({'success': True, 'variants': results})

    except Exception as e:
        return error_response(e, 'Variant pricing error')


# =====================================================
# VARIANT SNAPSHOTS
# =====================================================

@app.route('/api/queries/<query_id>/variant-snapshots', methods=['POST'])
def create_variant_snapshots(query_id):
    try:
        payload = request.get_json(silent=True) or {}
        variant_ids = payload.get('variantIds') or []
        if not isinstance(variant_ids, list):
            raise ValidationError('variantIds must be a list')

        result = snapshot_manager.create_snapshots(
            query_id,
            variant_ids,
            overwrite=parse_flag(payload.get('overwrite'), default=True),
        )
        return jsonify(result), 201

    except Exception as e:
        return error_response(e, f'Error creating snapshots for query {query_id}')


@app.route('/api/queries/<query_id>/variant-snapshots', methods=['GET'])
def get_variant_snapshots(query_id):
    try:
        snapshots = snapshot_manager.get_snapshots(query_id)
        return jsonify({
            'success': True,
            'snapshots': [s.to_dict() for s in snapshots],
            'count': len(snapshots),
        })

    except Exception as e:
        return error_response(e, f'Error loading snapshots for query {query_id}')


@app.route('/api/queries/<query_id>/variant-snapshots', methods=['DELETE'])
def delete_variant_snapshots(query_id):
    try:
        result = snapshot_manager.delete_snapshots(query_id)
        return jsonify({'success': True, **result})

    except Exception as e:
        return error_response(e, f'Error deleting snapshots for query {query_id}')


# =====================================================
# HOTEL PRICING IMPORT
# =====================================================

@app.route('/api/hotel-pricing/import', methods=['POST'])
def import_hotel_pricing():
    """Validate + preview by default; apply when "confirm" is true and nothing failed validation."""
    try:
        payload = get_payload()
        confirm = parse_flag(payload.get('confirm'))

        parsed = parse_import_payload(payload, catalog=catalog)
        existing = rate_store.list_periods(subject_id=parsed.hotel_id)
        preview = preview_import(parsed, existing)

        if not parsed.is_valid:
            error = 'Cannot import with validation errors' if confirm else 'Validation failed'
            return jsonify({'success': False, 'error': error, **preview}), 422

        if not confirm:
            return jsonify({'success': True, **preview})

        result = apply_import(rate_store, parsed)
        result['warnings'] = preview['warnings']
        return jsonify(result)

    except Exception as e:
        return error_response(e, 'Hotel pricing import error')


# =====================================================
# ENTRY POINT
# =====================================================

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=int(os.environ.get('PORT', 5001)))
