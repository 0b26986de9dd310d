from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from common.campaigns.models import (
    Campaign,
    JobStatus,
    LedgerLinkage,
    ProcessingJob,
    RecordStatus,
    TransactionRecord,
    utcnow,
)
from common.errors import ConfigurationError, PersistenceError, PipelineError
from common.rules_engine import RuleSet, evaluate_record

from .data_source import AccrualClient, default_accrual_client
from .store import RecordStore


logger = logging.getLogger(__name__)

AccrualClientFactory = Callable[[LedgerLinkage], AccrualClient]


@dataclass
class _Tally:
    records_scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    ineligible: int = 0
    zero_points: int = 0
    exhausted: int = 0

    def as_updates(self) -> dict[str, int]:
        return {
            "records_scanned": self.records_scanned,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "ineligible": self.ineligible,
            "zero_points": self.zero_points,
            "exhausted": self.exhausted,
        }


class TransactionProcessor:
    """
    Evaluate a campaign's pending records and post one accrual per qualifying record.

    Per-record failures do not fail the job. A failed accrual leaves the record
    pending for the next run until it has used `max_attempts`, after which it is
    parked as `failed` for an operator to requeue. A record whose rules cannot be
    evaluated is parked immediately. The job FAILs only when it cannot start (no
    rule set, no ledger linkage) or when job/record state cannot be persisted.
    """

    def __init__(
        self,
        store: RecordStore,
        accrual_client_factory: AccrualClientFactory = default_accrual_client,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 5,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self._store = store
        self._client_factory = accrual_client_factory
        self._clock = clock
        self._max_attempts = max_attempts

    def run(self, campaign_id: str) -> ProcessingJob:
        job = ProcessingJob.create(campaign_id)
        try:
            self._store.create_job(job)
        except PipelineError as exc:
            logger.error("Could not record processing job for campaign %s: %s", campaign_id, exc.describe())
            return job.advance(JobStatus.FAILED, at=self._clock(), error=exc.describe())

        tally = _Tally()
        try:
            job = job.advance(JobStatus.RUNNING, at=self._clock())
            self._store.update_job(job)

            campaign = self._load_campaign(campaign_id)
            client = self._client_factory(campaign.ledger)
            rule_set = campaign.rule_set
            fingerprint = rule_set.fingerprint()

            pending = self._store.find_pending_records(campaign_id)
            logger.info("Processing %s started campaign=%s pending=%d", job.id, campaign_id, len(pending))
            for record in pending:
                tally.records_scanned += 1
                self._process_record(job, campaign, rule_set, fingerprint, client, record, tally)

            completed = job.advance(JobStatus.COMPLETED, at=self._clock(), **tally.as_updates())
            self._store.update_job(completed)
            job = completed
        except PipelineError as exc:
            return self._fail(job, exc.describe(), tally)
        except Exception as exc:
            logger.exception("Processing %s crashed", job.id)
            return self._fail(job, f"Unexpected error: {exc}", tally)

        logger.info(
            "Processing %s completed scanned=%d succeeded=%d failed=%d exhausted=%d ineligible=%d zero_points=%d",
            job.id,
            tally.records_scanned,
            tally.succeeded,
            tally.failed,
            tally.exhausted,
            tally.ineligible,
            tally.zero_points,
        )
        return job

    def _load_campaign(self, campaign_id: str) -> Campaign:
        campaign = self._store.get_campaign(campaign_id)
        if campaign is None:
            raise ConfigurationError(f"Campaign {campaign_id} not found.")
        if campaign.rule_set is None:
            raise ConfigurationError(f"Campaign {campaign_id} has no rule set.")
        if campaign.ledger is None:
            raise ConfigurationError(f"Campaign {campaign_id} has no ledger linkage.")
        return campaign

    def _process_record(
        self,
        job: ProcessingJob,
        campaign: Campaign,
        rule_set: RuleSet,
        fingerprint: str,
        client: AccrualClient,
        record: TransactionRecord,
        tally: _Tally,
    ) -> None:
        try:
            evaluation = evaluate_record(record.fields, rule_set)
        except Exception as exc:
            logger.exception("Processing %s: rules could not be evaluated for record %s", job.id, record.id)
            self._record_failure(record, tally, f"Rule evaluation failed: {exc}", max_attempts=1)
            return

        if not evaluation.eligible:
            if self._store.mark_record_ineligible(record.id, rule_set_fingerprint=fingerprint):
                tally.ineligible += 1
            logger.debug("Record %s ineligible (failed rules: %s)", record.id, ", ".join(evaluation.failed_rule_ids))
            return

        points = evaluation.points
        applied = evaluation.accrual.applied_rule_ids
        if points <= 0:
            if self._mark_processed(record, points=0, response=None, applied=applied, fingerprint=fingerprint):
                tally.zero_points += 1
            return

        try:
            outcome = client.accrue(
                record.participant_id,
                campaign.ledger.point_type_id,
                points,
                record.id,
            )
        except Exception as exc:
            logger.exception("Processing %s: accrual call raised for record %s: %s", job.id, record.id, exc)
            self._record_failure(record, tally, f"Accrual call raised: {exc}")
            return

        if not outcome.ok:
            logger.warning("Processing %s: accrual failed for record %s: %s", job.id, record.id, outcome.error)
            self._record_failure(record, tally, outcome.error or "Accrual rejected by ledger")
            return

        if self._mark_processed(
            record,
            points=points,
            response=outcome.response,
            applied=applied,
            fingerprint=fingerprint,
        ):
            tally.succeeded += 1
        else:
            # The idempotency key makes the duplicate accrual a no-op at the ledger.
            logger.warning("Record %s was already processed by another run", record.id)

    def _record_failure(
        self,
        record: TransactionRecord,
        tally: _Tally,
        error: str,
        *,
        max_attempts: int | None = None,
    ) -> None:
        tally.failed += 1
        status = self._store.record_failed_attempt(
            record.id,
            error=error,
            max_attempts=max_attempts or self._max_attempts,
        )
        if status == RecordStatus.FAILED:
            tally.exhausted += 1
            logger.warning("Record %s parked as failed after %s", record.id, error)

    def _mark_processed(
        self,
        record: TransactionRecord,
        *,
        points: int,
        response: dict | None,
        applied: list[str],
        fingerprint: str,
    ) -> bool:
        return self._store.mark_record_processed(
            record.id,
            points=points,
            accrual_response=response,
            applied_rule_ids=applied,
            rule_set_fingerprint=fingerprint,
            processed_at=self._clock(),
        )

    def _fail(self, job: ProcessingJob, error: str, tally: _Tally) -> ProcessingJob:
        logger.error("Processing %s failed: %s", job.id, error)
        failed = job.advance(JobStatus.FAILED, at=self._clock(), error=error, **tally.as_updates())
        try:
            self._store.update_job(failed)
        except PersistenceError as exc:
            logger.error("Could not record failure of processing %s: %s", job.id, exc.describe())
        return failed
