from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Union

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


Job = Union[ExtractionJob, ProcessingJob]


class RecordStore(Protocol):
    """Persistence collaborator; every method is a single atomic read or write."""

    def save_campaign(self, campaign: Campaign) -> None:
        ...

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    def update_campaign_checkpoint(self, campaign_id: str, checkpoint: datetime) -> None:
        ...

    def create_job(self, job: Job) -> None:
        ...

    def update_job(self, job: Job) -> None:
        ...

    def get_job(self, job_id: str) -> Optional[Job]:
        ...

    def list_jobs(self, campaign_id: str, *, kind: JobKind | None = None) -> List[Job]:
        """Jobs for a campaign, oldest first."""
        ...

    def list_unfinished_jobs(self) -> List[Job]:
        """PENDING or RUNNING jobs across all campaigns."""
        ...

    def add_transaction_record(self, record: TransactionRecord) -> bool:
        """Insert unless a record with the same id exists; returns False for duplicates."""
        ...

    def get_transaction_record(self, record_id: str) -> Optional[TransactionRecord]:
        ...

    def find_pending_records(self, campaign_id: str) -> List[TransactionRecord]:
        """Unprocessed records in creation order."""
        ...

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
        """Atomically pending -> processed; returns False if the record was not pending."""
        ...

    def mark_record_ineligible(self, record_id: str, *, rule_set_fingerprint: str) -> bool:
        ...

    def requeue_ineligible(self, campaign_id: str) -> int:
        ...

    def record_failed_attempt(self, record_id: str, *, error: str, max_attempts: int) -> Optional[RecordStatus]:
        """
        Count one failed accrual attempt on a pending record and store the error.

        The record moves to `failed` once `attempts` reaches `max_attempts`. Returns the
        record's resulting status, or None when it was no longer pending.
        """
        ...

    def requeue_failed(self, campaign_id: str) -> int:
        """Return failed records to pending with a fresh attempt budget."""
        ...

    def summarize_records(self, campaign_id: str) -> RecordSummary:
        ...


class InMemoryRecordStore:
    """Thread-safe RecordStore for tests and single-process deployments."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._campaigns: Dict[str, Campaign] = {}
        self._jobs: Dict[str, Job] = {}
        self._records: Dict[str, TransactionRecord] = {}

    def save_campaign(self, campaign: Campaign) -> None:
        with self._lock:
            self._campaigns[campaign.id] = campaign.model_copy(deep=True)

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
            return campaign.model_copy(deep=True) if campaign else None

    def update_campaign_checkpoint(self, campaign_id: str, checkpoint: datetime) -> None:
        with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                raise PersistenceError(f"Campaign {campaign_id} not found while updating checkpoint.")
            self._campaigns[campaign_id] = campaign.model_copy(update={"checkpoint": checkpoint})

    def create_job(self, job: Job) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise PersistenceError(f"Job {job.id} already exists.")
            self._jobs[job.id] = job.model_copy(deep=True)

    def update_job(self, job: Job) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise PersistenceError(f"Job {job.id} not found.")
            self._jobs[job.id] = job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, campaign_id: str, *, kind: JobKind | None = None) -> List[Job]:
        with self._lock:
            return [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if job.campaign_id == campaign_id and (kind is None or job.job_kind == kind)
            ]

    def list_unfinished_jobs(self) -> List[Job]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values() if not job.status.is_terminal]

    def add_transaction_record(self, record: TransactionRecord) -> bool:
        with self._lock:
            if record.id in self._records:
                return False
            self._records[record.id] = record.model_copy(deep=True)
            return True

    def get_transaction_record(self, record_id: str) -> Optional[TransactionRecord]:
        with self._lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record else None

    def list_records(self, campaign_id: str) -> List[TransactionRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.campaign_id == campaign_id]

    def find_pending_records(self, campaign_id: str) -> List[TransactionRecord]:
        # Dict preserves insertion order, which is creation order here.
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.campaign_id == campaign_id and r.status == RecordStatus.PENDING
            ]

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
        with self._lock:
            record = self._require_record(record_id)
            if record.status != RecordStatus.PENDING:
                return False
            self._records[record_id] = record.model_copy(
                update={
                    "status": RecordStatus.PROCESSED,
                    "points_earned": points,
                    "accrual_response": accrual_response,
                    "applied_rule_ids": list(applied_rule_ids),
                    "rule_set_fingerprint": rule_set_fingerprint,
                    "processed_at": processed_at,
                }
            )
            return True

    def mark_record_ineligible(self, record_id: str, *, rule_set_fingerprint: str) -> bool:
        with self._lock:
            record = self._require_record(record_id)
            if record.status != RecordStatus.PENDING:
                return False
            self._records[record_id] = record.model_copy(
                update={"status": RecordStatus.INELIGIBLE, "rule_set_fingerprint": rule_set_fingerprint}
            )
            return True

    def requeue_ineligible(self, campaign_id: str) -> int:
        with self._lock:
            count = 0
            for record_id, record in list(self._records.items()):
                if record.campaign_id == campaign_id and record.status == RecordStatus.INELIGIBLE:
                    self._records[record_id] = record.model_copy(
                        update={"status": RecordStatus.PENDING, "rule_set_fingerprint": None}
                    )
                    count += 1
            return count

    def record_failed_attempt(self, record_id: str, *, error: str, max_attempts: int) -> Optional[RecordStatus]:
        with self._lock:
            record = self._require_record(record_id)
            if record.status != RecordStatus.PENDING:
                return None
            attempts = record.attempts + 1
            status = RecordStatus.FAILED if attempts >= max_attempts else RecordStatus.PENDING
            self._records[record_id] = record.model_copy(
                update={"attempts": attempts, "last_error": error, "status": status}
            )
            return status

    def requeue_failed(self, campaign_id: str) -> int:
        with self._lock:
            count = 0
            for record_id, record in list(self._records.items()):
                if record.campaign_id == campaign_id and record.status == RecordStatus.FAILED:
                    self._records[record_id] = record.model_copy(update={"status": RecordStatus.PENDING, "attempts": 0})
                    count += 1
            return count

    def summarize_records(self, campaign_id: str) -> RecordSummary:
        counts: Dict[str, int] = {}
        points = 0
        with self._lock:
            for record in self._records.values():
                if record.campaign_id != campaign_id:
                    continue
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
                points += record.points_earned or 0
        return RecordSummary.from_counts(counts, points)

    def _require_record(self, record_id: str) -> TransactionRecord:
        record = self._records.get(record_id)
        if record is None:
            raise PersistenceError(f"Transaction record {record_id} not found.")
        return record
