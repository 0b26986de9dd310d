from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from common.campaigns.models import LedgerLinkage
from common.errors import ConfigurationError


load_dotenv()


@dataclass(frozen=True)
class LedgerConfig:
    base_url: str
    api_key: str
    accrual_path: str = "/api/accruals"
    timeout_seconds: int = 30
    max_retries: int = 3
    backoff_seconds: float = 0.5


def get_ledger_config(linkage: LedgerLinkage) -> LedgerConfig:
    """
    Build the ledger client configuration for one campaign.

    Credentials come from the campaign's ledger linkage; transport settings from:
      LEDGER_BASE_URL (fallback when the campaign has none), LEDGER_ACCRUAL_PATH,
      LEDGER_TIMEOUT_SECONDS, LEDGER_MAX_RETRIES, LEDGER_BACKOFF_SECONDS
    """
    base_url = (linkage.base_url or os.getenv("LEDGER_BASE_URL", "")).strip()
    if not base_url:
        raise ConfigurationError("Ledger base URL is not configured (campaign ledger.base_url or LEDGER_BASE_URL).")
    if not linkage.api_key.strip():
        raise ConfigurationError("Ledger API key is not configured for this campaign.")

    return LedgerConfig(
        base_url=base_url,
        api_key=linkage.api_key.strip(),
        accrual_path=os.getenv("LEDGER_ACCRUAL_PATH", "/api/accruals").strip() or "/api/accruals",
        timeout_seconds=int(os.getenv("LEDGER_TIMEOUT_SECONDS", "30")),
        max_retries=int(os.getenv("LEDGER_MAX_RETRIES", "3")),
        backoff_seconds=float(os.getenv("LEDGER_BACKOFF_SECONDS", "0.5")),
    )
