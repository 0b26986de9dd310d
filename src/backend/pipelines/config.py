from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class PipelineSettings:
    sync_interval_seconds: int = 3600
    max_workers: int = 4
    source_connector: str = "postgresql"
    store_dsn: str = ""
    scheduled_campaigns: tuple[str, ...] = ()
    max_accrual_attempts: int = 5


def get_pipeline_settings() -> PipelineSettings:
    """
    Load pipeline runtime settings from env vars:
      CAMPAIGN_SYNC_INTERVAL_SECONDS, PIPELINE_MAX_WORKERS, SOURCE_CONNECTOR, PIPELINE_STORE_DSN,
      SCHEDULED_CAMPAIGN_IDS (comma-separated campaigns synced on the interval),
      PIPELINE_MAX_ACCRUAL_ATTEMPTS (failed accruals per record before it is parked as failed)
    """
    return PipelineSettings(
        sync_interval_seconds=_positive_int_env("CAMPAIGN_SYNC_INTERVAL_SECONDS", 3600),
        max_workers=_positive_int_env("PIPELINE_MAX_WORKERS", 4),
        source_connector=os.getenv("SOURCE_CONNECTOR", "postgresql").strip() or "postgresql",
        store_dsn=os.getenv("PIPELINE_STORE_DSN", "").strip(),
        scheduled_campaigns=tuple(
            part.strip() for part in os.getenv("SCHEDULED_CAMPAIGN_IDS", "").split(",") if part.strip()
        ),
        max_accrual_attempts=_positive_int_env("PIPELINE_MAX_ACCRUAL_ATTEMPTS", 5),
    )


def configure_logging(level: str | None = None) -> None:
    resolved = (level or os.getenv("LOG_LEVEL", "INFO")).strip().upper() or "INFO"
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)


def _positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}.") from exc
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}.")
    return value
