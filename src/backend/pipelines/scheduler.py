from __future__ import annotations

import logging
from typing import List

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from common.campaigns.models import ExtractionMode

from .supervisor import JobSupervisor


logger = logging.getLogger(__name__)


def _job_id(campaign_id: str) -> str:
    return f"campaign-sync:{campaign_id}"


class CampaignSyncScheduler:
    """Periodic incremental extraction + processing per scheduled campaign."""

    def __init__(
        self,
        supervisor: JobSupervisor,
        *,
        interval_seconds: int = 3600,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._supervisor = supervisor
        self._interval_seconds = interval_seconds
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Campaign sync scheduler already running")
            return
        self.scheduler.start()
        logger.info("Campaign sync scheduler started interval=%ss", self._interval_seconds)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Campaign sync scheduler stopped")

    def schedule_campaign(self, campaign_id: str, *, interval_seconds: int | None = None) -> None:
        self.scheduler.add_job(
            self._sync_campaign,
            IntervalTrigger(seconds=interval_seconds or self._interval_seconds),
            args=[campaign_id],
            id=_job_id(campaign_id),
            name=f"Incremental sync for campaign {campaign_id}",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info("Scheduled incremental sync for campaign %s", campaign_id)

    def unschedule_campaign(self, campaign_id: str) -> bool:
        if self.scheduler.get_job(_job_id(campaign_id)) is None:
            return False
        self.scheduler.remove_job(_job_id(campaign_id))
        logger.info("Unscheduled incremental sync for campaign %s", campaign_id)
        return True

    def scheduled_campaigns(self) -> List[str]:
        prefix = _job_id("")
        return sorted(job.id[len(prefix):] for job in self.scheduler.get_jobs() if job.id.startswith(prefix))

    def _sync_campaign(self, campaign_id: str) -> None:
        run = self._supervisor.execute_campaign(campaign_id, ExtractionMode.INCREMENTAL)
        if run.rejected:
            logger.info("Skipped scheduled sync for campaign %s: previous run still active", campaign_id)
