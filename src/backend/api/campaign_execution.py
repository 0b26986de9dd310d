from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from common.campaigns.models import ExtractionMode
from common.errors import InvalidJobTransition
from pipelines.supervisor import CampaignStatus, JobSupervisor, UnknownJobError


router = APIRouter(tags=["campaign-execution"])


def get_supervisor(request: Request) -> JobSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=500, detail="Job supervisor is not configured.")
    return supervisor


@router.post("/campaigns/{campaign_id}/execute", status_code=202)
def execute_campaign(
    campaign_id: str,
    mode: ExtractionMode = Query(ExtractionMode.FULL),
    supervisor: JobSupervisor = Depends(get_supervisor),
) -> dict[str, Any]:
    if supervisor.store.get_campaign(campaign_id) is None:
        raise HTTPException(status_code=404, detail=f"Campaign {campaign_id} not found.")
    if supervisor.submit_campaign_run(campaign_id, mode) is None:
        raise HTTPException(status_code=409, detail=f"Campaign {campaign_id} is already running an extraction.")
    return {"campaign_id": campaign_id, "mode": mode.value, "accepted": True}


@router.get("/campaigns/{campaign_id}/status", response_model=CampaignStatus)
def campaign_status(campaign_id: str, supervisor: JobSupervisor = Depends(get_supervisor)):
    status = supervisor.status(campaign_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Campaign {campaign_id} not found.")
    return status


@router.post("/jobs/{job_id}/retry", status_code=202)
def retry_job(job_id: str, supervisor: JobSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    try:
        submitted = supervisor.submit_retry(job_id)
    except UnknownJobError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found.")
    except InvalidJobTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if submitted is None:
        raise HTTPException(status_code=409, detail=f"Job {job_id}'s campaign already has an active job of that kind.")
    return {"job_id": job_id, "accepted": True}


@router.post("/campaigns/{campaign_id}/records/requeue-failed")
def requeue_failed_records(campaign_id: str, supervisor: JobSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    if supervisor.store.get_campaign(campaign_id) is None:
        raise HTTPException(status_code=404, detail=f"Campaign {campaign_id} not found.")
    return {"campaign_id": campaign_id, "requeued": supervisor.requeue_failed(campaign_id)}
