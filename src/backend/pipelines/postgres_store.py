from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from common.campaigns.models import (
    Campaign,
    ExtractionJob,
    JobKind,
    ProcessingJob,
    RecordStatus,
    RecordSummary,
    TransactionRecord,
)
from common.errors import PersistenceError

from .store import Job


logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS campaigns (
    id TEXT PRIMARY KEY,
    config JSONB NOT NULL,
    checkpoint TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS pipeline_jobs (
    id TEXT PRIMARY KEY,
    campaign_id TEXT NOT NULL,
    job_kind TEXT NOT NULL,
    status TEXT NOT NULL,
    payload JSONB NOT NULL,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS pipeline_jobs_campaign_idx ON pipeline_jobs (campaign_id, job_kind, created_at);

CREATE TABLE IF NOT EXISTS transaction_records (
    seq BIGSERIAL UNIQUE,
    id TEXT PRIMARY KEY,
    campaign_id TEXT NOT NULL,
    participant_id TEXT NOT NULL,
    fields JSONB NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    processed_at TIMESTAMPTZ,
    points_earned INTEGER,
    accrual_response JSONB,
    applied_rule_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
    rule_set_fingerprint TEXT,
    extraction_job_id TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
ALTER TABLE transaction_records ADD COLUMN IF NOT EXISTS attempts INTEGER NOT NULL DEFAULT 0;
ALTER TABLE transaction_records ADD COLUMN IF NOT EXISTS last_error TEXT;
CREATE INDEX IF NOT EXISTS transaction_records_pending_idx ON transaction_records (campaign_id, status, seq);
"""

_RECORD_COLUMNS = (
    "id, campaign_id, participant_id, fields, status, processed_at, points_earned, "
    "accrual_response, applied_rule_ids, rule_set_fingerprint, extraction_job_id, created_at, attempts, last_error"
)


class PostgresRecordStore:
    """RecordStore backed by the platform's own PostgreSQL database."""

    def __init__(self, connection_factory: Callable[[], Any]) -> None:
        self._connect = connection_factory

    @classmethod
    def from_dsn(cls, dsn: str) -> "PostgresRecordStore":
        if not dsn:
            raise PersistenceError("Record store DSN is empty (set PIPELINE_STORE_DSN).")
        return cls(lambda: psycopg2.connect(dsn))

    def create_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)

    def save_campaign(self, campaign: Campaign) -> None:
        config = campaign.model_dump(mode="json", exclude={"checkpoint"})
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO campaigns (id, config, checkpoint) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET config = EXCLUDED.config, checkpoint = EXCLUDED.checkpoint
                """,
                (campaign.id, Json(config), campaign.checkpoint),
            )

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self._cursor() as cur:
            cur.execute("SELECT config, checkpoint FROM campaigns WHERE id = %s", (campaign_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return Campaign.model_validate({**row["config"], "checkpoint": row["checkpoint"]})

    def update_campaign_checkpoint(self, campaign_id: str, checkpoint: datetime) -> None:
        with self._cursor() as cur:
            cur.execute("UPDATE campaigns SET checkpoint = %s WHERE id = %s", (checkpoint, campaign_id))
            if cur.rowcount != 1:
                raise PersistenceError(f"Campaign {campaign_id} not found while updating checkpoint.")

    def create_job(self, job: Job) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO pipeline_jobs (id, campaign_id, job_kind, status, payload, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (job.id, job.campaign_id, job.job_kind.value, job.status.value, Json(job.model_dump(mode="json")), job.created_at),
            )

    def update_job(self, job: Job) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE pipeline_jobs SET status = %s, payload = %s WHERE id = %s",
                (job.status.value, Json(job.model_dump(mode="json")), job.id),
            )
            if cur.rowcount != 1:
                raise PersistenceError(f"Job {job.id} not found.")

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._cursor() as cur:
            cur.execute("SELECT payload FROM pipeline_jobs WHERE id = %s", (job_id,))
            row = cur.fetchone()
        return _job_from_payload(row["payload"]) if row else None

    def list_jobs(self, campaign_id: str, *, kind: JobKind | None = None) -> List[Job]:
        sql = "SELECT payload FROM pipeline_jobs WHERE campaign_id = %s"
        params: List[Any] = [campaign_id]
        if kind is not None:
            sql += " AND job_kind = %s"
            params.append(JobKind(kind).value)
        with self._cursor() as cur:
            cur.execute(sql + " ORDER BY created_at, id", params)
            rows = cur.fetchall()
        return [_job_from_payload(row["payload"]) for row in rows]

    def list_unfinished_jobs(self) -> List[Job]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT payload FROM pipeline_jobs WHERE status IN ('PENDING', 'RUNNING') ORDER BY created_at, id"
            )
            rows = cur.fetchall()
        return [_job_from_payload(row["payload"]) for row in rows]

    def add_transaction_record(self, record: TransactionRecord) -> bool:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO transaction_records ({_RECORD_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (
                    record.id,
                    record.campaign_id,
                    record.participant_id,
                    Json(record.fields),
                    record.status.value,
                    record.processed_at,
                    record.points_earned,
                    Json(record.accrual_response) if record.accrual_response is not None else None,
                    Json(record.applied_rule_ids),
                    record.rule_set_fingerprint,
                    record.extraction_job_id,
                    record.created_at,
                    record.attempts,
                    record.last_error,
                ),
            )
            return cur.rowcount == 1

    def get_transaction_record(self, record_id: str) -> Optional[TransactionRecord]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_RECORD_COLUMNS} FROM transaction_records WHERE id = %s", (record_id,))
            row = cur.fetchone()
        return TransactionRecord.model_validate(dict(row)) if row else None

    def find_pending_records(self, campaign_id: str) -> List[TransactionRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {_RECORD_COLUMNS} FROM transaction_records
                WHERE campaign_id = %s AND status = %s
                ORDER BY created_at, seq
                """,
                (campaign_id, RecordStatus.PENDING.value),
            )
            rows = cur.fetchall()
        return [TransactionRecord.model_validate(dict(row)) for row in rows]

    def mark_record_processed(
        self,
        record_id: str,
        *,
        points: int,
        accrual_response: Optional[Dict[str, Any]],
        applied_rule_ids: List[str],
        rule_set_fingerprint: str,
        processed_at: datetime,
    ) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE transaction_records
                SET status = %s, points_earned = %s, accrual_response = %s,
                    applied_rule_ids = %s, rule_set_fingerprint = %s, processed_at = %s
                WHERE id = %s AND status = %s
                """,
                (
                    RecordStatus.PROCESSED.value,
                    points,
                    Json(accrual_response) if accrual_response is not None else None,
                    Json(list(applied_rule_ids)),
                    rule_set_fingerprint,
                    processed_at,
                    record_id,
                    RecordStatus.PENDING.value,
                ),
            )
            return self._changed_or_missing(cur, record_id)

    def mark_record_ineligible(self, record_id: str, *, rule_set_fingerprint: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE transaction_records SET status = %s, rule_set_fingerprint = %s WHERE id = %s AND status = %s",
                (RecordStatus.INELIGIBLE.value, rule_set_fingerprint, record_id, RecordStatus.PENDING.value),
            )
            return self._changed_or_missing(cur, record_id)

    def requeue_ineligible(self, campaign_id: str) -> int:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE transaction_records SET status = %s, rule_set_fingerprint = NULL
                WHERE campaign_id = %s AND status = %s
                """,
                (RecordStatus.PENDING.value, campaign_id, RecordStatus.INELIGIBLE.value),
            )
            return cur.rowcount

    def record_failed_attempt(self, record_id: str, *, error: str, max_attempts: int) -> Optional[RecordStatus]:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE transaction_records
                SET attempts = attempts + 1, last_error = %s,
                    status = CASE WHEN attempts + 1 >= %s THEN %s ELSE status END
                WHERE id = %s AND status = %s
                RETURNING status
                """,
                (error, max_attempts, RecordStatus.FAILED.value, record_id, RecordStatus.PENDING.value),
            )
            row = cur.fetchone()
            if row is not None:
                return RecordStatus(row["status"])
            self._changed_or_missing(cur, record_id)
            return None

    def requeue_failed(self, campaign_id: str) -> int:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE transaction_records SET status = %s, attempts = 0 WHERE campaign_id = %s AND status = %s",
                (RecordStatus.PENDING.value, campaign_id, RecordStatus.FAILED.value),
            )
            return cur.rowcount

    def summarize_records(self, campaign_id: str) -> RecordSummary:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT status, COUNT(*) AS records, COALESCE(SUM(points_earned), 0) AS points
                FROM transaction_records WHERE campaign_id = %s GROUP BY status
                """,
                (campaign_id,),
            )
            rows = cur.fetchall()
        counts = {row["status"]: int(row["records"]) for row in rows}
        return RecordSummary.from_counts(counts, sum(int(row["points"]) for row in rows))

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        """One transaction per call: commit on success, roll back on error, always close."""
        try:
            conn = self._connect()
        except psycopg2.Error as exc:
            raise PersistenceError("Cannot connect to record store", detail=str(exc).strip()) from exc
        try:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    yield cur
        except psycopg2.Error as exc:
            logger.error("Record store operation failed: %s", exc)
            raise PersistenceError("Record store operation failed", detail=str(exc).strip()) from exc
        finally:
            conn.close()

    @staticmethod
    def _changed_or_missing(cur, record_id: str) -> bool:
        if cur.rowcount == 1:
            return True
        cur.execute("SELECT 1 FROM transaction_records WHERE id = %s", (record_id,))
        if cur.fetchone() is None:
            raise PersistenceError(f"Transaction record {record_id} not found.")
        return False


def _job_from_payload(payload: Dict[str, Any]) -> Job:
    if payload.get("job_kind") == JobKind.PROCESSING.value:
        return ProcessingJob.model_validate(payload)
    return ExtractionJob.model_validate(payload)
