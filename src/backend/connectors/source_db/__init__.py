"""Customer source database connector (network + credentials live here; row mapping lives in adapters/source_rows)."""

from .client import PsycopgSourceConnector, close, connect, query, source_connection, with_connection
from .config import SourceDbSettings, get_source_db_settings

__all__ = [
    "PsycopgSourceConnector",
    "SourceDbSettings",
    "close",
    "connect",
    "get_source_db_settings",
    "query",
    "source_connection",
    "with_connection",
]
