"""
Resilient Result Writer: an ordered chain of write tiers, stopping at the first success.

    primary        upsert into the exam type's dedicated results table
    retry          one more primary attempt, only after a transient failure
                   (optionally after re-asserting relationships / helpers)
    raw-insert     parameterized INSERT through the run_sql helper
    generic-table  reduced row upserted into the shared exam_results table
    minimal        raw insert of the mandatory fields into exam_results

If every tier fails the caller gets success=False, recoverable=True and the
same record back; nothing is dropped.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import httpx
from postgrest.exceptions import APIError

from examengine.config import Settings
from examengine.errors import PersistenceExhausted, TransientStorageError
from examengine.models import ResultRecord
from examengine.schema import ENSURE_RUN_SQL_SQL, relationship_repair_sql

logger = logging.getLogger(__name__)

# serialization_failure, deadlock, lock_not_available, query_canceled,
# too_many_connections, connection exceptions, PostgREST connection errors
TRANSIENT_PG_CODES = {
    "40001", "40P01", "55P03", "57014", "53300", "08000", "08003", "08006",
    "PGRST000", "PGRST001", "PGRST002", "PGRST003",
}


def is_transient(error: Optional[BaseException]) -> bool:
    """Network, timeout and lock-contention failures; worth retrying as-is."""
    if isinstance(error, TransientStorageError) and isinstance(error.cause, BaseException):
        error = error.cause
    if isinstance(error, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, APIError):
        return str(getattr(error, "code", "") or "") in TRANSIENT_PG_CODES
    return False


@dataclass(frozen=True)
class WriteOutcome:
    success: bool
    tier_used: Optional[str] = None
    stored_id: Optional[str] = None
    reason: Optional[str] = None
    recoverable: bool = False
    record: Optional[ResultRecord] = None
    error: Optional[BaseException] = None


def _returned_id(rows: Sequence, fallback: Optional[str] = None) -> str:
    """First id from run_sql rows ([{"id": ...}] or [{"result": {"id": ...}}])."""
    for row in rows or []:
        if isinstance(row, dict):
            if row.get("id"):
                return str(row["id"])
            nested = row.get("result")
            if isinstance(nested, dict) and nested.get("id"):
                return str(nested["id"])
    if fallback:
        return fallback
    raise ValueError("statement returned no id")


class WriteTier:
    """One fallback strategy. Subclasses implement _write() and raise on failure."""

    name = "tier"

    def __init__(self, store, settings: Settings):
        self.store = store
        self.settings = settings

    def attempt(self, record: ResultRecord, previous_error: Optional[BaseException] = None) -> WriteOutcome:
        try:
            stored_id = self._write(record, previous_error)
        except Exception as e:
            error = e if isinstance(e, TransientStorageError) else TransientStorageError(self.name, e)
            return WriteOutcome(success=False, tier_used=self.name, reason=str(error), record=record, error=error)
        return WriteOutcome(success=True, tier_used=self.name, stored_id=stored_id, record=record)

    def _write(self, record: ResultRecord, previous_error: Optional[BaseException]) -> str:
        raise NotImplementedError


class PrimaryTier(WriteTier):
    name = "primary"

    def _write(self, record, previous_error=None):
        table = self.settings.results_table(record.exam_type)
        row = self.store.upsert(table, record.to_row(), on_conflict="id")
        return str(row.get("id") or record.record_id)


class RetryTier(WriteTier):
    """
    Second primary attempt. Retries after transient failures only; schema
    problems are fixed by init_db, unless repair_schema turns the old
    client-side repair back on.
    """

    name = "retry"

    def __init__(self, store, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        super().__init__(store, settings)
        self.primary = PrimaryTier(store, settings)
        self.sleep = sleep

    def _write(self, record, previous_error=None):
        if self.settings.repair_schema:
            self.repair_schema(record)
        elif is_transient(previous_error):
            self.sleep(self.settings.retry_backoff_seconds)
        else:
            raise TransientStorageError(self.name, f"not retried, previous failure is not transient ({previous_error})")
        return self.primary._write(record)

    def repair_schema(self, record: ResultRecord) -> None:
        """Fire-and-forget: failures are logged, never raised."""
        table = self.settings.results_table(record.exam_type)
        for label, script in (
            ("relationships", relationship_repair_sql(table)),
            ("run_sql helper", ENSURE_RUN_SQL_SQL),
        ):
            try:
                self.store.exec_sql(script)
                logger.info(f"Schema repair ({label}) applied to {table}")
            except Exception as e:
                logger.warning(f"Schema repair ({label}) failed: {e}")


class RawInsertTier(WriteTier):
    name = "raw-insert"

    SQL = (
        "INSERT INTO {table} (id, student_id, test_id, exam_id, total_points, total_score, "
        "status, completion_time, answers) VALUES ($1[1]::uuid, $1[2]::uuid, $1[3]::uuid, $1[4]::uuid, "
        "$1[5]::int, $1[6]::int, $1[7], $1[8]::timestamptz, $1[9]::jsonb) "
        "ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status RETURNING id"
    )

    def _write(self, record, previous_error=None):
        query = self.SQL.format(table=self.settings.results_table(record.exam_type))
        rows = self.store.run_sql(query, [
            record.record_id,
            record.student_id,
            record.test_id,
            record.exam_id,
            record.total_points,
            record.total_score,
            record.status,
            record.completion_time,
            record.answers,
        ])
        return _returned_id(rows)


class GenericTableTier(WriteTier):
    name = "generic-table"

    def _write(self, record, previous_error=None):
        row = {
            "student_id": record.student_id,
            "test_id": record.test_id,
            "exam_id": record.exam_id,
            "exam_type": record.exam_type,
            "total_score": record.total_score,
            "status": record.status,
            "completion_time": record.completion_time,
            "taken_at": record.completion_time,
        }
        stored = self.store.upsert(
            self.settings.generic_results_table, row, on_conflict="student_id,exam_id,exam_type"
        )
        if not stored.get("id"):
            raise ValueError("upsert returned no row")
        return str(stored["id"])


class MinimalTier(WriteTier):
    name = "minimal"

    SQL = (
        "INSERT INTO {table} (student_id, exam_type, total_score, taken_at) "
        "VALUES ($1[1]::uuid, $1[2], $1[3]::int, $1[4]::timestamptz) RETURNING id"
    )

    def _write(self, record, previous_error=None):
        query = self.SQL.format(table=self.settings.generic_results_table)
        rows = self.store.run_sql(query, [
            record.student_id, record.exam_type, record.total_score, record.completion_time,
        ])
        return _returned_id(rows)


def default_tiers(store, settings: Settings, sleep: Callable[[float], None] = time.sleep) -> List[WriteTier]:
    return [
        PrimaryTier(store, settings),
        RetryTier(store, settings, sleep=sleep),
        RawInsertTier(store, settings),
        GenericTableTier(store, settings),
        MinimalTier(store, settings),
    ]


class ResultWriter:
    """Iterates the tier list until one succeeds."""

    def __init__(self, store, settings: Optional[Settings] = None, tiers: Optional[List[WriteTier]] = None):
        self.store = store
        self.settings = settings or Settings.from_env()
        self.tiers = tiers if tiers is not None else default_tiers(store, self.settings)

    def write(self, record: ResultRecord) -> WriteOutcome:
        previous_error: Optional[BaseException] = None
        reasons = []
        for tier in self.tiers:
            outcome = tier.attempt(record, previous_error=previous_error)
            if outcome.success:
                if tier is not self.tiers[0]:
                    logger.warning(f"Result {record.record_id} saved via fallback tier {outcome.tier_used}")
                else:
                    logger.info(f"Result {record.record_id} saved ({outcome.stored_id})")
                return outcome
            logger.warning(f"Result {record.record_id}: {outcome.reason}")
            previous_error = outcome.error
            reasons.append(outcome.reason)

        reason = "; ".join(reasons) or "no write tiers configured"
        logger.error(f"All write tiers failed for result {record.record_id}: {reason}")
        return WriteOutcome(
            success=False,
            reason=reason,
            recoverable=True,
            record=record,
            error=PersistenceExhausted(record, reason),
        )

    def save(self, record: ResultRecord) -> WriteOutcome:
        """Like write(), but raises PersistenceExhausted when every tier failed."""
        outcome = self.write(record)
        if not outcome.success:
            raise outcome.error
        return outcome
