"""Loyalty ledger connector: idempotent point accrual over HTTP."""

from .client import AccrualOutcome, AccrualStatus, LedgerAccrualClient, LedgerHttpError, accrue, ledger_post
from .config import LedgerConfig, get_ledger_config

__all__ = [
    "AccrualOutcome",
    "AccrualStatus",
    "LedgerAccrualClient",
    "LedgerConfig",
    "LedgerHttpError",
    "accrue",
    "get_ledger_config",
    "ledger_post",
]
