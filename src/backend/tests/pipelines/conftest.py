import os
import sys


# Ensure `src/backend` is on sys.path so imports like `import pipelines...` work when running this folder alone.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from common.campaigns.models import (
    Campaign,
    ExtractionQueries,
    LedgerLinkage,
    MappingSpec,
    SourceDescriptor,
    TransactionRecord,
)
from common.errors import SourceUnavailable
from common.rules_engine.models import RuleSet
from connectors.ledger.client import AccrualOutcome, AccrualStatus
from pipelines.store import InMemoryRecordStore


class FakeSourceConnector:
    """Serves canned rows; records every query and whether connections were closed."""

    def __init__(self, rows=(), *, error: Exception | None = None, on_query=None):
        self.rows = list(rows)
        self.error = error
        self.on_query = on_query
        self.queries = []
        self.open_connections = 0

    @contextmanager
    def connection(self, descriptor):
        self.open_connections += 1
        try:
            yield object()
        finally:
            self.open_connections -= 1

    def query(self, connection, sql, params=None):
        self.queries.append((sql, list(params or [])))
        if self.on_query is not None:
            self.on_query()
        if self.error is not None:
            raise self.error
        return [dict(row) for row in self.rows]


class FakeAccrualClient:
    def __init__(self, *, fail_for=(), raise_for=()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.calls = []

    def accrue(self, participant_ref, point_type_ref, points, idempotency_key):
        self.calls.append(
            {
                "participant_ref": participant_ref,
                "point_type_ref": point_type_ref,
                "points": points,
                "idempotency_key": idempotency_key,
            }
        )
        if participant_ref in self.raise_for:
            raise TimeoutError("ledger timed out")
        if participant_ref in self.fail_for:
            return AccrualOutcome(status=AccrualStatus.FAILED, error="ledger rejected")
        return AccrualOutcome(status=AccrualStatus.SUCCESS, response={"accrualId": f"acc-{idempotency_key}"})


class StepClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def clock() -> StepClock:
    return StepClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def source_unavailable() -> SourceUnavailable:
    return SourceUnavailable("Cannot connect to source database", detail="connection refused")


@pytest.fixture
def make_campaign(store):
    def _make(
        *,
        campaign_id: str = "camp-1",
        rule_set=None,
        field_mappings=None,
        source_key_fields=(),
        checkpoint=None,
        start_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        full_load="SELECT * FROM sales",
        incremental_load="SELECT * FROM sales WHERE updated_at > %s",
        ledger=True,
        source=True,
    ) -> Campaign:
        campaign = Campaign(
            id=campaign_id,
            name="Spring promo",
            start_date=start_date,
            source=SourceDescriptor(host="db.customer.test", database="sales", user="reader") if source else None,
            queries=ExtractionQueries(full_load=full_load, incremental_load=incremental_load),
            rule_set=RuleSet.model_validate(rule_set) if rule_set is not None else None,
            field_mapping=MappingSpec(
                field_mappings=field_mappings
                if field_mappings is not None
                else {"customer_id": "participantId", "sale_amount": "amount"},
                source_key_fields=list(source_key_fields),
            ),
            ledger=LedgerLinkage(point_type_id="pt-1", api_key="k", base_url="https://ledger.test") if ledger else None,
            checkpoint=checkpoint,
        )
        store.save_campaign(campaign)
        return campaign

    return _make


@pytest.fixture
def make_pending_record(store):
    def _make(record_id: str, *, campaign_id: str = "camp-1", participant_id: str | None = None, **fields):
        record = TransactionRecord(
            id=record_id,
            campaign_id=campaign_id,
            participant_id=participant_id or f"p-{record_id}",
            fields={"participantId": participant_id or f"p-{record_id}", **fields},
        )
        store.add_transaction_record(record)
        return record

    return _make


@pytest.fixture
def make_source_connector():
    return FakeSourceConnector


@pytest.fixture
def make_accrual_client():
    return FakeAccrualClient
