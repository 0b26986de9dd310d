from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from common.errors import InvalidJobTransition
from common.rules_engine.models import RuleSet


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobKind(str, Enum):
    """Single-flight scope: both extraction modes share one lock per campaign."""

    EXTRACTION = "extraction"
    PROCESSING = "processing"


class ExtractionMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RecordStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    INELIGIBLE = "ineligible"
    # Accrual attempts exhausted; requeue to retry.
    FAILED = "failed"


class SourceDescriptor(BaseModel):
    host: str
    port: int = 5432
    database: str
    user: str
    password: str = ""
    sslmode: Optional[str] = None


class ExtractionQueries(BaseModel):
    full_load: Optional[str] = None
    # Must take exactly one positional parameter: the checkpoint timestamp.
    incremental_load: Optional[str] = None

    def for_mode(self, mode: ExtractionMode) -> Optional[str]:
        query = self.full_load if mode == ExtractionMode.FULL else self.incremental_load
        return query if query and query.strip() else None


class DerivedField(BaseModel):
    target: str
    function: str
    source: str = ""
    argument: Optional[Decimal] = None


class MappingSpec(BaseModel):
    field_mappings: Dict[str, str] = Field(default_factory=dict)
    derived_fields: List[DerivedField] = Field(default_factory=list)
    passthrough_fields: List[str] = Field(default_factory=list)
    # Canonical fields whose values identify a source row; enables de-duplication on re-extraction.
    source_key_fields: List[str] = Field(default_factory=list)
    participant_field: str = "participantId"


class LedgerLinkage(BaseModel):
    point_type_id: str
    api_key: str
    # Falls back to LEDGER_BASE_URL when empty.
    base_url: str = ""


class Campaign(BaseModel):
    id: str
    name: str = ""
    start_date: Optional[datetime] = None
    source: Optional[SourceDescriptor] = None
    queries: ExtractionQueries = Field(default_factory=ExtractionQueries)
    rule_set: Optional[RuleSet] = None
    field_mapping: MappingSpec = Field(default_factory=MappingSpec)
    ledger: Optional[LedgerLinkage] = None
    checkpoint: Optional[datetime] = None


class _JobBase(BaseModel):
    id: str
    campaign_id: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def advance(self, status: JobStatus, *, at: datetime | None = None, **updates: Any):
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobTransition(f"Job {self.id}: {self.status.value} -> {status.value} is not allowed.")
        at = at or utcnow()
        changes: Dict[str, Any] = {"status": status, **updates}
        if status == JobStatus.RUNNING:
            changes["started_at"] = at
        if status.is_terminal:
            changes["completed_at"] = at
        return self.model_copy(update=changes)


class ExtractionJob(_JobBase):
    job_kind: JobKind = JobKind.EXTRACTION
    mode: ExtractionMode = ExtractionMode.FULL
    rows_extracted: int = 0
    rows_skipped: int = 0
    rows_duplicate: int = 0
    checkpoint: Optional[datetime] = None

    @classmethod
    def create(cls, campaign_id: str, mode: ExtractionMode) -> "ExtractionJob":
        return cls(id=new_id(f"extract_{mode.value}"), campaign_id=campaign_id, mode=mode)


class ProcessingJob(_JobBase):
    job_kind: JobKind = JobKind.PROCESSING
    records_scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    ineligible: int = 0
    zero_points: int = 0
    exhausted: int = 0

    @classmethod
    def create(cls, campaign_id: str) -> "ProcessingJob":
        return cls(id=new_id("process"), campaign_id=campaign_id)


class TransactionRecord(BaseModel):
    id: str
    campaign_id: str
    participant_id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    status: RecordStatus = RecordStatus.PENDING
    processed_at: Optional[datetime] = None
    points_earned: Optional[int] = None
    accrual_response: Optional[Dict[str, Any]] = None
    applied_rule_ids: List[str] = Field(default_factory=list)
    rule_set_fingerprint: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    extraction_job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def processed(self) -> bool:
        return self.status == RecordStatus.PROCESSED


class RecordSummary(BaseModel):
    """Per-campaign record counts by status, for operator auditing."""

    total: int = 0
    pending: int = 0
    processed: int = 0
    ineligible: int = 0
    failed: int = 0
    points_earned: int = 0
    success_rate: Optional[float] = None

    @classmethod
    def from_counts(cls, counts: Dict[str, int], points_earned: int) -> "RecordSummary":
        by_status = {status.value: int(counts.get(status.value, 0)) for status in RecordStatus}
        settled = by_status[RecordStatus.PROCESSED.value] + by_status[RecordStatus.FAILED.value]
        return cls(
            total=sum(by_status.values()),
            points_earned=points_earned,
            success_rate=round(by_status[RecordStatus.PROCESSED.value] / settled, 4) if settled else None,
            **by_status,
        )
