from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from pydantic import BaseModel, Field

from common.campaigns.models import (
    ExtractionJob,
    ExtractionMode,
    JobKind,
    JobStatus,
    ProcessingJob,
    RecordSummary,
    utcnow,
)
from common.errors import InvalidJobTransition

from .extraction import ExtractionOrchestrator
from .locks import KeyedMutex
from .processing import TransactionProcessor
from .store import Job, RecordStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERRUPTED_ERROR = "Interrupted: process stopped before the job finished."


class UnknownJobError(LookupError):
    pass


@dataclass
class CampaignRun:
    campaign_id: str
    extraction: Optional[ExtractionJob] = None
    processing: Optional[ProcessingJob] = None
    rejected: bool = False


class CampaignStatus(BaseModel):
    campaign_id: str
    checkpoint: Optional[datetime] = None
    extraction_running: bool = False
    processing_running: bool = False
    last_extraction: Optional[ExtractionJob] = None
    last_processing: Optional[ProcessingJob] = None
    records: RecordSummary = Field(default_factory=RecordSummary)


class JobSupervisor:
    """
    Admits, runs and reports on campaign jobs.

    At most one non-terminal job per (campaign, kind) exists at a time. A second
    start while one is active is rejected immediately, never queued. Jobs for
    different campaigns run concurrently on the background executor.
    """

    def __init__(
        self,
        store: RecordStore,
        extraction: ExtractionOrchestrator,
        processing: TransactionProcessor,
        *,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._extraction = extraction
        self._processing = processing
        self._clock = clock
        self._locks = KeyedMutex()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="campaign-job")

    @property
    def store(self) -> RecordStore:
        return self._store

    def try_start(self, campaign_id: str, kind: JobKind) -> bool:
        kind = JobKind(kind)
        key = (campaign_id, kind)
        if not self._locks.try_acquire(key):
            return False
        try:
            active = [j for j in self._store.list_jobs(campaign_id, kind=kind) if not j.status.is_terminal]
        except BaseException:
            self._locks.release(key)
            raise
        if active:
            # A job left RUNNING by another process (or before a restart) still holds the slot.
            self._locks.release(key)
            logger.info("Campaign %s already has an active %s job %s", campaign_id, kind.value, active[0].id)
            return False
        return True

    def release(self, campaign_id: str, kind: JobKind) -> None:
        self._locks.release((campaign_id, JobKind(kind)))

    def is_running(self, campaign_id: str, kind: JobKind) -> bool:
        return self._locks.is_held((campaign_id, JobKind(kind)))

    def run_extraction(self, campaign_id: str, mode: ExtractionMode) -> ExtractionJob | None:
        """Run an extraction now; None when one is already active for the campaign."""
        if not self.try_start(campaign_id, JobKind.EXTRACTION):
            logger.warning("Extraction for campaign %s rejected: already running", campaign_id)
            return None
        return self._run_admitted(campaign_id, JobKind.EXTRACTION, lambda: self._extraction.run(campaign_id, mode))

    def run_processing(self, campaign_id: str) -> ProcessingJob | None:
        if not self.try_start(campaign_id, JobKind.PROCESSING):
            logger.warning("Processing for campaign %s rejected: already running", campaign_id)
            return None
        return self._run_admitted(campaign_id, JobKind.PROCESSING, lambda: self._processing.run(campaign_id))

    def execute_campaign(self, campaign_id: str, mode: ExtractionMode = ExtractionMode.FULL) -> CampaignRun:
        """Extract, then process the pending records if extraction completed."""
        if not self.try_start(campaign_id, JobKind.EXTRACTION):
            logger.warning("Campaign %s execution rejected: extraction already running", campaign_id)
            return CampaignRun(campaign_id=campaign_id, rejected=True)
        return self._execute_admitted(campaign_id, ExtractionMode(mode))

    def submit_campaign_run(
        self,
        campaign_id: str,
        mode: ExtractionMode = ExtractionMode.FULL,
    ) -> Future | None:
        """
        Start `execute_campaign` in the background.

        Admission is decided before returning: None means the campaign is busy.
        """
        if not self.try_start(campaign_id, JobKind.EXTRACTION):
            logger.warning("Campaign %s execution rejected: extraction already running", campaign_id)
            return None
        mode = ExtractionMode(mode)
        return self._submit(campaign_id, JobKind.EXTRACTION, lambda: self._execute_admitted(campaign_id, mode))

    def retry_job(self, job_id: str) -> Job | None:
        """Re-run a FAILED job's kind for its campaign; None when that kind is busy."""
        job = self._failed_job(job_id)
        if job.job_kind == JobKind.EXTRACTION:
            return self.run_extraction(job.campaign_id, job.mode)
        return self.run_processing(job.campaign_id)

    def submit_retry(self, job_id: str) -> Future | None:
        job = self._failed_job(job_id)
        if not self.try_start(job.campaign_id, job.job_kind):
            return None
        campaign_id, kind = job.campaign_id, job.job_kind
        mode = job.mode if kind == JobKind.EXTRACTION else None

        def _rerun() -> Job:
            if mode is not None:
                return self._extraction.run(campaign_id, mode)
            return self._processing.run(campaign_id)

        return self._submit(campaign_id, kind, lambda: self._run_admitted(campaign_id, kind, _rerun))

    def status(self, campaign_id: str) -> CampaignStatus | None:
        campaign = self._store.get_campaign(campaign_id)
        if campaign is None:
            return None
        extractions = self._store.list_jobs(campaign_id, kind=JobKind.EXTRACTION)
        processings = self._store.list_jobs(campaign_id, kind=JobKind.PROCESSING)
        return CampaignStatus(
            campaign_id=campaign_id,
            checkpoint=campaign.checkpoint,
            extraction_running=self.is_running(campaign_id, JobKind.EXTRACTION),
            processing_running=self.is_running(campaign_id, JobKind.PROCESSING),
            last_extraction=extractions[-1] if extractions else None,
            last_processing=processings[-1] if processings else None,
            records=self._store.summarize_records(campaign_id),
        )

    def reconcile_interrupted_jobs(self) -> List[Job]:
        """
        Mark PENDING/RUNNING jobs FAILED at startup.

        A job that was running when the process stopped never reaches a terminal
        state on its own, and would block its (campaign, kind) slot forever.

        Only this process's locks are consulted, so the sweep assumes one app
        instance per record store: a second instance starting against the same
        database would mark the first one's live jobs FAILED.
        """
        reconciled: List[Job] = []
        for job in self._store.list_unfinished_jobs():
            if self.is_running(job.campaign_id, job.job_kind):
                continue
            failed = job.advance(JobStatus.FAILED, at=self._clock(), error=INTERRUPTED_ERROR)
            self._store.update_job(failed)
            logger.warning("Marked interrupted %s job %s as FAILED", job.job_kind.value, job.id)
            reconciled.append(failed)
        return reconciled

    def requeue_ineligible(self, campaign_id: str) -> int:
        """Return ineligible records to pending, e.g. after the campaign's rules change."""
        count = self._store.requeue_ineligible(campaign_id)
        logger.info("Requeued %d ineligible records for campaign %s", count, campaign_id)
        return count

    def requeue_failed(self, campaign_id: str) -> int:
        """Give records parked as failed a fresh attempt budget, e.g. after a ledger outage."""
        count = self._store.requeue_failed(campaign_id)
        logger.info("Requeued %d failed records for campaign %s", count, campaign_id)
        return count

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _execute_admitted(self, campaign_id: str, mode: ExtractionMode) -> CampaignRun:
        extraction = self._run_admitted(
            campaign_id, JobKind.EXTRACTION, lambda: self._extraction.run(campaign_id, mode)
        )
        run = CampaignRun(campaign_id=campaign_id, extraction=extraction)
        if extraction.status != JobStatus.COMPLETED:
            logger.warning("Campaign %s: skipping processing after failed extraction %s", campaign_id, extraction.id)
            return run
        run.processing = self.run_processing(campaign_id)
        return run

    def _run_admitted(self, campaign_id: str, kind: JobKind, fn: Callable[[], T]) -> T:
        try:
            return fn()
        finally:
            self.release(campaign_id, kind)

    def _submit(self, campaign_id: str, kind: JobKind, task: Callable[[], T]) -> Future:
        # The lock is already held; the task releases it when it finishes.
        try:
            future = self._executor.submit(task)
        except RuntimeError:
            self.release(campaign_id, kind)
            raise
        future.add_done_callback(_log_task_error)
        return future

    def _failed_job(self, job_id: str) -> Job:
        job = self._store.get_job(job_id)
        if job is None:
            raise UnknownJobError(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobTransition(f"Job {job_id} is {job.status.value}; only FAILED jobs can be retried.")
        return job


def _log_task_error(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Background campaign job raised: %r", exc)
