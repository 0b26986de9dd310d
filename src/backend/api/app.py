from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pipelines.config import PipelineSettings, configure_logging, get_pipeline_settings
from pipelines.data_source import get_source_connector
from pipelines.extraction import ExtractionOrchestrator
from pipelines.processing import TransactionProcessor
from pipelines.scheduler import CampaignSyncScheduler
from pipelines.supervisor import JobSupervisor

from .campaign_execution import router as campaign_execution_router


logger = logging.getLogger(__name__)


def create_app(supervisor: JobSupervisor, scheduler: CampaignSyncScheduler | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reconciled = supervisor.reconcile_interrupted_jobs()
        if reconciled:
            logger.warning("Startup sweep failed %d interrupted jobs", len(reconciled))
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()
            supervisor.shutdown(wait=False)

    app = FastAPI(title="Campaign accrual pipeline", lifespan=lifespan)
    app.state.supervisor = supervisor
    app.state.scheduler = scheduler
    app.include_router(campaign_execution_router)
    return app


def build_supervisor(settings: PipelineSettings | None = None) -> JobSupervisor:
    """Wire the production collaborators: PostgreSQL record store, source connector, ledger client."""
    from pipelines.postgres_store import PostgresRecordStore

    settings = settings or get_pipeline_settings()
    store = PostgresRecordStore.from_dsn(settings.store_dsn)
    store.create_schema()
    return JobSupervisor(
        store,
        ExtractionOrchestrator(store, get_source_connector(settings.source_connector)),
        TransactionProcessor(store, max_attempts=settings.max_accrual_attempts),
        max_workers=settings.max_workers,
    )


def app_factory() -> FastAPI:
    """Entrypoint for `uvicorn --factory api.app:app_factory`."""
    configure_logging()
    settings = get_pipeline_settings()
    supervisor = build_supervisor(settings)
    scheduler = CampaignSyncScheduler(supervisor, interval_seconds=settings.sync_interval_seconds)
    for campaign_id in settings.scheduled_campaigns:
        scheduler.schedule_campaign(campaign_id)
    return create_app(supervisor, scheduler)
