from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List

from adapters.source_rows import transform_row, validate_mapping_spec
from common.campaigns.models import (
    Campaign,
    ExtractionJob,
    ExtractionMode,
    JobStatus,
    TransactionRecord,
    utcnow,
)
from common.errors import ConfigurationError, PersistenceError, PipelineError, TransformError

from .data_source import SourceConnector, get_source_connector
from .store import RecordStore


logger = logging.getLogger(__name__)


@dataclass
class _Progress:
    rows_extracted: int = 0
    rows_skipped: int = 0
    rows_duplicate: int = 0

    def as_updates(self) -> dict[str, int]:
        return {
            "rows_extracted": self.rows_extracted,
            "rows_skipped": self.rows_skipped,
            "rows_duplicate": self.rows_duplicate,
        }


class ExtractionOrchestrator:
    """
    Run one extraction job for a campaign: query the customer source, transform
    each row, persist pending transaction records.

    The checkpoint written on success is the clock value taken just before the
    query runs, so rows committed while the query executes are re-read next time
    and de-duplicated by their source-key record id.
    """

    def __init__(
        self,
        store: RecordStore,
        connector: SourceConnector | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._connector = connector or get_source_connector()
        self._clock = clock

    def run(self, campaign_id: str, mode: ExtractionMode) -> ExtractionJob:
        mode = ExtractionMode(mode)
        job = ExtractionJob.create(campaign_id, mode)
        try:
            self._store.create_job(job)
        except PipelineError as exc:
            logger.error("Could not record extraction job for campaign %s: %s", campaign_id, exc.describe())
            return job.advance(JobStatus.FAILED, at=self._clock(), error=exc.describe())

        progress = _Progress()
        try:
            job = job.advance(JobStatus.RUNNING, at=self._clock())
            self._store.update_job(job)
            logger.info("Extraction %s started campaign=%s mode=%s", job.id, campaign_id, mode.value)

            campaign = self._load_campaign(campaign_id)
            sql, params = self._plan_query(campaign, mode)
            validate_mapping_spec(campaign.field_mapping)
            retain = campaign.rule_set.referenced_fields() if campaign.rule_set else set()

            query_started_at = self._clock()
            with self._connector.connection(campaign.source) as conn:
                rows = self._connector.query(conn, sql, params)
            logger.info("Extraction %s fetched %d rows", job.id, len(rows))

            for index, row in enumerate(rows):
                self._persist_row(job, campaign, row, index, retain, progress)

            checkpoint = _later(campaign.checkpoint, query_started_at)
            completed = job.advance(
                JobStatus.COMPLETED,
                at=self._clock(),
                checkpoint=checkpoint,
                **progress.as_updates(),
            )
            self._store.update_job(completed)
            job = completed
        except PipelineError as exc:
            return self._fail(job, exc.describe(), progress)
        except Exception as exc:
            logger.exception("Extraction %s crashed", job.id)
            return self._fail(job, f"Unexpected error: {exc}", progress)

        try:
            self._store.update_campaign_checkpoint(campaign_id, checkpoint)
        except PipelineError as exc:
            # Job stays COMPLETED; the next incremental run re-reads from the old checkpoint.
            logger.error("Extraction %s completed but checkpoint write failed: %s", job.id, exc.describe())

        logger.info(
            "Extraction %s completed rows=%d skipped=%d duplicate=%d checkpoint=%s",
            job.id,
            progress.rows_extracted,
            progress.rows_skipped,
            progress.rows_duplicate,
            checkpoint.isoformat(),
        )
        return job

    def _load_campaign(self, campaign_id: str) -> Campaign:
        campaign = self._store.get_campaign(campaign_id)
        if campaign is None:
            raise ConfigurationError(f"Campaign {campaign_id} not found.")
        if campaign.source is None:
            raise ConfigurationError(f"Campaign {campaign_id} has no source database configured.")
        return campaign

    def _plan_query(self, campaign: Campaign, mode: ExtractionMode) -> tuple[str, List[Any]]:
        sql = campaign.queries.for_mode(mode)
        if sql is None:
            raise ConfigurationError(f"Campaign {campaign.id} has no {mode.value} extraction query.")
        if mode == ExtractionMode.FULL:
            return sql, []
        since = campaign.checkpoint or campaign.start_date
        if since is None:
            raise ConfigurationError(
                f"Campaign {campaign.id} has neither a checkpoint nor a start date for incremental extraction."
            )
        return sql, [since]

    def _persist_row(
        self,
        job: ExtractionJob,
        campaign: Campaign,
        row: Any,
        index: int,
        retain: set[str],
        progress: _Progress,
    ) -> None:
        try:
            canonical = transform_row(row, campaign.field_mapping, campaign_id=campaign.id, retain=retain)
        except TransformError as exc:
            progress.rows_skipped += 1
            logger.warning("Extraction %s skipped row %d: %s", job.id, index, exc.describe())
            return
        except PipelineError:
            raise
        except Exception as exc:
            # Any other per-row failure skips the row.
            progress.rows_skipped += 1
            logger.warning("Extraction %s skipped malformed row %d: %r", job.id, index, exc)
            return

        record = TransactionRecord(
            id=canonical.record_id,
            campaign_id=campaign.id,
            participant_id=canonical.participant_id,
            fields=canonical.fields,
            extraction_job_id=job.id,
            created_at=self._clock(),
        )
        if self._store.add_transaction_record(record):
            progress.rows_extracted += 1
        else:
            progress.rows_duplicate += 1

    def _fail(self, job: ExtractionJob, error: str, progress: _Progress) -> ExtractionJob:
        logger.error("Extraction %s failed: %s", job.id, error)
        failed = job.advance(JobStatus.FAILED, at=self._clock(), error=error, **progress.as_updates())
        try:
            self._store.update_job(failed)
        except PersistenceError as exc:
            logger.error("Could not record failure of extraction %s: %s", job.id, exc.describe())
        return failed


def _later(previous: datetime | None, candidate: datetime) -> datetime:
    if previous is not None and previous > candidate:
        return previous
    return candidate
