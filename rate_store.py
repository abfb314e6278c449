"""
Rate Period Store — PostgreSQL persistence for rate periods.

Inserts are serialised per attribute key with a transaction-scoped advisory
lock; the overlapping rows are read, split_insert computes the diff and the
deletes + creates are applied in the same transaction. A conflicting write
(rowcount mismatch, serialization failure, unique violation) rolls back and
the whole read/split/write is retried a bounded number of times.
"""

from dataclasses import replace
from datetime import date
from typing import Iterable, List, Optional
import logging

from psycopg2 import errors as pg_errors
from psycopg2.extras import execute_values

from db import get_db, RATE_INSERT_MAX_ATTEMPTS
from errors import ConcurrencyConflictError, ValidationError
from rate_periods import AttributeKey, RatePeriod, SplitResult, split_insert, validate_period

logger = logging.getLogger(__name__)

PERIOD_COLUMNS = """id, subject_id, room_type_id, occupancy_type_id, meal_plan_id,
                   start_date, end_date, price, is_active"""

KEY_FILTER = """subject_id = %s
               AND room_type_id IS NOT DISTINCT FROM %s
               AND occupancy_type_id IS NOT DISTINCT FROM %s
               AND meal_plan_id IS NOT DISTINCT FROM %s"""

CONFLICT_ERRORS = (pg_errors.SerializationFailure, pg_errors.UniqueViolation, pg_errors.DeadlockDetected)


def row_to_period(row) -> RatePeriod:
    return RatePeriod(
        id=row[0],
        key=AttributeKey(
            subject_id=row[1],
            room_type_id=row[2],
            occupancy_type_id=row[3],
            meal_plan_id=row[4],
        ),
        start_date=row[5],
        end_date=row[6],
        price=row[7],
        is_active=row[8],
    )


class PgRatePeriodStore:

    def __init__(self, conn_factory=get_db, max_attempts: int = RATE_INSERT_MAX_ATTEMPTS):
        self.conn_factory = conn_factory
        self.max_attempts = max(1, int(max_attempts))

    # -------------------------------------------------
    # WRITES
    # -------------------------------------------------

    def insert(self, new_period: RatePeriod) -> SplitResult:
        """Split-insert one period atomically. Returns the applied diff (created ids filled in)."""
        results = self.insert_many([new_period])
        return results[0]

    def insert_many(self, new_periods: List[RatePeriod]) -> List[SplitResult]:
        """
        Split-insert several periods, in order, inside ONE transaction.

        Either every period is applied or none is.
        """
        if not new_periods:
            return []
        for period in new_periods:
            validate_period(period)

        for attempt in range(1, self.max_attempts + 1):
            db = self.conn_factory()
            cur = db.cursor()
            try:
                for key in sorted({p.key for p in new_periods}, key=str):
                    cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (str(key),))

                results = [self._split_in_transaction(cur, period) for period in new_periods]
                db.commit()

                logger.info(
                    f"Inserted {len(new_periods)} rate period(s): "
                    f"deleted={sum(len(r.periods_to_delete) for r in results)}, "
                    f"created={sum(len(r.periods_to_create) for r in results)}"
                )
                return results

            except ConcurrencyConflictError as e:
                db.rollback()
                logger.warning(f"Rate insert conflict (attempt {attempt}/{self.max_attempts}): {e}")
                if attempt == self.max_attempts:
                    raise
            except CONFLICT_ERRORS as e:
                db.rollback()
                logger.warning(f"Rate insert conflict (attempt {attempt}/{self.max_attempts}): {e}")
                if attempt == self.max_attempts:
                    raise ConcurrencyConflictError(
                        f"Rate insert kept conflicting after {self.max_attempts} attempts"
                    ) from e
            except Exception:
                db.rollback()
                logger.error("Rate insert failed", exc_info=True)
                raise
            finally:
                db.close()

    def _split_in_transaction(self, cur, new_period: RatePeriod) -> SplitResult:
        overlapping = self._select_overlapping(cur, new_period)
        result = split_insert(overlapping, new_period)

        if result.periods_to_delete:
            cur.execute(
                "DELETE FROM rate_periods WHERE id = ANY(%s) AND is_active = TRUE",
                (list(result.periods_to_delete),)
            )
            if cur.rowcount != len(result.periods_to_delete):
                raise ConcurrencyConflictError(
                    f"Expected to delete {len(result.periods_to_delete)} period(s) for key "
                    f"{new_period.key}, deleted {cur.rowcount}"
                )

        rows = [
            (p.key.subject_id, p.key.room_type_id, p.key.occupancy_type_id, p.key.meal_plan_id,
             p.start_date, p.end_date, p.price, p.is_active)
            for p in result.periods_to_create
        ]
        inserted = execute_values(
            cur,
            """INSERT INTO rate_periods (subject_id, room_type_id, occupancy_type_id, meal_plan_id,
                                         start_date, end_date, price, is_active)
               VALUES %s RETURNING id""",
            rows,
            fetch=True,
        )
        result.periods_to_create = [
            replace(period, id=row[0]) for period, row in zip(result.periods_to_create, inserted)
        ]
        return result

    def delete_period(self, period_id) -> bool:
        db = self.conn_factory()
        cur = db.cursor()
        try:
            cur.execute("DELETE FROM rate_periods WHERE id = %s", (period_id,))
            deleted = cur.rowcount > 0
            db.commit()
            return deleted
        except Exception:
            db.rollback()
            logger.error(f"Error deleting rate period {period_id}", exc_info=True)
            raise
        finally:
            db.close()

    # -------------------------------------------------
    # READS
    # -------------------------------------------------

    @staticmethod
    def _select_overlapping(cur, period: RatePeriod) -> List[RatePeriod]:
        cur.execute(
            f"""SELECT {PERIOD_COLUMNS}
                FROM rate_periods
                WHERE {KEY_FILTER}
                AND is_active = TRUE
                AND start_date <= %s AND end_date >= %s
                ORDER BY start_date""",
            (*period.key.as_tuple(), period.end_date, period.start_date)
        )
        return [row_to_period(r) for r in cur.fetchall()]

    def find_covering(self, key: AttributeKey, on_date: date) -> List[RatePeriod]:
        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(
                f"""SELECT {PERIOD_COLUMNS}
                    FROM rate_periods
                    WHERE {KEY_FILTER}
                    AND is_active = TRUE
                    AND start_date <= %s AND end_date >= %s""",
                (*key.as_tuple(), on_date, on_date)
            )
            return [row_to_period(r) for r in cur.fetchall()]
        finally:
            db.close()

    def load_periods(self, subject_ids: Iterable[str], start: date, end: date) -> List[RatePeriod]:
        """Active periods of the given subjects overlapping [start, end], in one query."""
        subject_ids = sorted({s for s in subject_ids if s})
        if not subject_ids:
            return []
        if end < start:
            raise ValidationError(f"end {end} is before start {start}")
        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(
                f"""SELECT {PERIOD_COLUMNS}
                    FROM rate_periods
                    WHERE subject_id = ANY(%s)
                    AND is_active = TRUE
                    AND start_date <= %s AND end_date >= %s
                    ORDER BY subject_id, start_date""",
                (subject_ids, end, start)
            )
            return [row_to_period(r) for r in cur.fetchall()]
        finally:
            db.close()

    def list_periods(self, subject_id: Optional[str] = None, key: Optional[AttributeKey] = None,
                     include_inactive: bool = False) -> List[RatePeriod]:
        query = f"SELECT {PERIOD_COLUMNS} FROM rate_periods WHERE TRUE"
        params = []
        if key is not None:
            query += f" AND {KEY_FILTER}"
            params.extend(key.as_tuple())
        elif subject_id:
            query += " AND subject_id = %s"
            params.append(subject_id)
        if not include_inactive:
            query += " AND is_active = TRUE"
        query += " ORDER BY subject_id, room_type_id, occupancy_type_id, meal_plan_id, start_date"

        db = self.conn_factory()
        try:
            cur = db.cursor()
            cur.execute(query, params)
            return [row_to_period(r) for r in cur.fetchall()]
        finally:
            db.close()
