from __future__ import annotations

from typing import Any, ContextManager, Protocol, Sequence

from common.campaigns.models import LedgerLinkage, SourceDescriptor
from connectors.ledger.client import AccrualOutcome


class SourceConnector(Protocol):
    def connection(self, descriptor: SourceDescriptor) -> ContextManager[Any]:
        """Scoped connection; closed on every exit path. Raises SourceUnavailable."""
        ...

    def query(self, connection: Any, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        """Run a parameterized query and return rows as dicts. Raises SourceUnavailable."""
        ...


class AccrualClient(Protocol):
    def accrue(
        self,
        participant_ref: str,
        point_type_ref: str,
        points: int,
        idempotency_key: str,
    ) -> AccrualOutcome:
        """Must be safe to call more than once with the same idempotency key."""
        ...


def get_source_connector(name: str = "postgresql") -> SourceConnector:
    """Resolve a source connector implementation by name (postgresql)."""
    source = (name or "").strip().lower()
    if source in ("postgresql", "postgres", ""):
        from connectors.source_db.client import PsycopgSourceConnector

        return PsycopgSourceConnector()
    raise ValueError(f"Unknown source connector '{name}' (expected 'postgresql').")


def default_accrual_client(linkage: LedgerLinkage) -> AccrualClient:
    from connectors.ledger.client import LedgerAccrualClient

    return LedgerAccrualClient.for_linkage(linkage)
