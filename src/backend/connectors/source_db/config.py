from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class SourceDbSettings:
    connect_timeout_seconds: int
    default_sslmode: str
    statement_timeout_ms: int


def get_source_db_settings() -> SourceDbSettings:
    """
    Load connection settings shared by every customer source database.

    Reads SOURCE_DB_CONNECT_TIMEOUT, SOURCE_DB_SSLMODE, SOURCE_DB_STATEMENT_TIMEOUT_MS.
    Per-campaign host/credentials come from the campaign's SourceDescriptor.
    """
    return SourceDbSettings(
        connect_timeout_seconds=_int_env("SOURCE_DB_CONNECT_TIMEOUT", 10),
        default_sslmode=os.getenv("SOURCE_DB_SSLMODE", "prefer").strip() or "prefer",
        statement_timeout_ms=_int_env("SOURCE_DB_STATEMENT_TIMEOUT_MS", 300_000),
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}.") from exc
