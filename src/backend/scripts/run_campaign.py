from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_backend_on_path() -> None:
    backend_dir = Path(__file__).resolve().parents[1]
    if str(backend_dir) not in sys.path:
        sys.path.insert(0, str(backend_dir))


def _load_json(path: Path):
    with path.open() as handle:
        return json.load(handle)


def _job_summary(job) -> dict | None:
    if job is None:
        return None
    return job.model_dump(mode="json")


def main(argv: list[str] | None = None) -> int:
    _ensure_backend_on_path()

    from common.campaigns.models import Campaign, ExtractionMode
    from pipelines.config import configure_logging, get_pipeline_settings
    from api.app import build_supervisor

    parser = argparse.ArgumentParser(description="Run extraction and accrual processing for one campaign.")
    parser.add_argument("campaign_id", help="Campaign to execute.")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ExtractionMode],
        default=ExtractionMode.INCREMENTAL.value,
        help="Extraction mode (default: incremental).",
    )
    parser.add_argument("--campaign-file", type=Path, help="Campaign JSON to upsert into the record store first.")
    parser.add_argument("--process-only", action="store_true", help="Skip extraction; process pending records.")
    parser.add_argument("--requeue-ineligible", action="store_true", help="Requeue ineligible records first.")
    parser.add_argument(
        "--requeue-failed", action="store_true", help="Requeue records whose accrual attempts ran out first."
    )
    parser.add_argument("--reconcile", action="store_true", help="Fail jobs left RUNNING by a stopped process.")
    args = parser.parse_args(argv)

    configure_logging()
    supervisor = build_supervisor(get_pipeline_settings())
    try:
        if args.campaign_file:
            campaign = Campaign.model_validate(_load_json(args.campaign_file))
            if campaign.id != args.campaign_id:
                parser.error(f"--campaign-file holds campaign {campaign.id}, not {args.campaign_id}")
            supervisor.store.save_campaign(campaign)

        if args.reconcile:
            supervisor.reconcile_interrupted_jobs()
        if args.requeue_ineligible:
            supervisor.requeue_ineligible(args.campaign_id)
        if args.requeue_failed:
            supervisor.requeue_failed(args.campaign_id)

        if args.process_only:
            processing = supervisor.run_processing(args.campaign_id)
            summary = {"campaign_id": args.campaign_id, "rejected": processing is None, "processing": _job_summary(processing)}
        else:
            run = supervisor.execute_campaign(args.campaign_id, ExtractionMode(args.mode))
            summary = {
                "campaign_id": run.campaign_id,
                "rejected": run.rejected,
                "extraction": _job_summary(run.extraction),
                "processing": _job_summary(run.processing),
            }
    finally:
        supervisor.shutdown()

    print(json.dumps(summary, indent=2))
    if summary["rejected"]:
        return 2
    jobs = [summary.get("extraction"), summary.get("processing")]
    return 1 if any(job and job["status"] == "FAILED" for job in jobs) else 0


if __name__ == "__main__":
    raise SystemExit(main())
