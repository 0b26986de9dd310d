from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

from adapters.source_rows import transform_row
from common.campaigns.models import ExtractionMode, JobStatus
from common.errors import PersistenceError
from pipelines.extraction import ExtractionOrchestrator


ROWS = [
    {"id": 1, "customer_id": "p-1", "sale_amount": 450},
    {"id": 2, "customer_id": "p-2", "sale_amount": 120},
]


def test_full_load_persists_pending_records_and_sets_checkpoint(store, clock, make_source_connector, make_campaign):
    make_campaign()
    connector = make_source_connector(ROWS)

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.COMPLETED
    assert job.rows_extracted == 2
    assert connector.queries == [("SELECT * FROM sales", [])]
    assert connector.open_connections == 0
    records = store.find_pending_records("camp-1")
    assert [r.participant_id for r in records] == ["p-1", "p-2"]
    assert all(r.extraction_job_id == job.id for r in records)
    assert store.get_campaign("camp-1").checkpoint == job.checkpoint
    assert store.get_job(job.id).status == JobStatus.COMPLETED


def test_checkpoint_is_taken_before_the_query_runs(store, clock, make_source_connector, make_campaign):
    make_campaign()
    seen = {}
    connector = make_source_connector(ROWS, on_query=lambda: seen.setdefault("during_query", clock.now))

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.checkpoint < seen["during_query"]
    assert job.started_at < job.checkpoint < job.completed_at


def test_incremental_uses_stored_checkpoint(store, clock, make_source_connector, make_campaign):
    previous = datetime(2024, 5, 1, tzinfo=timezone.utc)
    make_campaign(checkpoint=previous)
    connector = make_source_connector(ROWS)

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.INCREMENTAL)

    assert job.status == JobStatus.COMPLETED
    assert connector.queries == [("SELECT * FROM sales WHERE updated_at > %s", [previous])]
    assert store.get_campaign("camp-1").checkpoint > previous


def test_incremental_falls_back_to_start_date(store, clock, make_source_connector, make_campaign):
    campaign = make_campaign()
    connector = make_source_connector([])

    ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.INCREMENTAL)

    assert connector.queries[0][1] == [campaign.start_date]


def test_incremental_without_checkpoint_or_start_date_fails(store, clock, make_source_connector, make_campaign):
    make_campaign(start_date=None)
    connector = make_source_connector(ROWS)

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.INCREMENTAL)

    assert job.status == JobStatus.FAILED
    assert "start date" in job.error
    assert connector.queries == []


def test_source_failure_fails_job_and_keeps_checkpoint(store, clock, make_source_connector, make_campaign, source_unavailable):
    previous = datetime(2024, 5, 1, tzinfo=timezone.utc)
    make_campaign(checkpoint=previous)
    connector = make_source_connector(error=source_unavailable)

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.INCREMENTAL)

    assert job.status == JobStatus.FAILED
    assert "connection refused" in job.error
    assert job.completed_at is not None
    assert store.get_job(job.id).status == JobStatus.FAILED
    assert store.get_campaign("camp-1").checkpoint == previous
    assert connector.open_connections == 0


def test_missing_configuration_fails_without_querying(store, clock, make_source_connector, make_campaign):
    make_campaign(source=False)
    connector = make_source_connector(ROWS)

    job = ExtractionOrchestrator(store, connector, clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.FAILED
    assert "no source database" in job.error
    assert connector.queries == []


def test_unknown_campaign_fails_job(store, clock, make_source_connector):
    job = ExtractionOrchestrator(store, make_source_connector(), clock=clock).run("nope", ExtractionMode.FULL)

    assert job.status == JobStatus.FAILED
    assert "not found" in job.error


def test_rows_without_participant_are_skipped(store, clock, make_source_connector, make_campaign):
    make_campaign()
    rows = ROWS + [{"id": 3, "sale_amount": 99}]

    job = ExtractionOrchestrator(store, make_source_connector(rows), clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.COMPLETED
    assert job.rows_extracted == 2
    assert job.rows_skipped == 1


def test_re_extraction_with_source_keys_is_deduplicated(store, clock, make_source_connector, make_campaign):
    make_campaign(
        field_mappings={"id": "saleId", "customer_id": "participantId", "sale_amount": "amount"},
        source_key_fields=["saleId"],
    )
    orchestrator = ExtractionOrchestrator(store, make_source_connector(ROWS), clock=clock)

    first = orchestrator.run("camp-1", ExtractionMode.FULL)
    second = orchestrator.run("camp-1", ExtractionMode.FULL)

    assert first.rows_extracted == 2
    assert second.rows_extracted == 0
    assert second.rows_duplicate == 2
    assert len(store.list_records("camp-1")) == 2


def test_rule_fields_are_retained_through_mapping(store, clock, make_source_connector, make_campaign):
    make_campaign(rule_set={"eligibility_rules": [{"id": "premium", "condition": 'productLine == "Premium"'}]})
    rows = [{"customer_id": "p-1", "sale_amount": 450, "productLine": "Premium", "secret": "drop me"}]

    ExtractionOrchestrator(store, make_source_connector(rows), clock=clock).run("camp-1", ExtractionMode.FULL)

    (record,) = store.list_records("camp-1")
    assert record.fields == {"participantId": "p-1", "amount": 450, "productLine": "Premium"}


def test_checkpoint_never_moves_backwards(store, clock, make_source_connector, make_campaign):
    future = datetime(2030, 1, 1, tzinfo=timezone.utc)
    make_campaign(checkpoint=future)

    job = ExtractionOrchestrator(store, make_source_connector([]), clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.checkpoint == future
    assert store.get_campaign("camp-1").checkpoint == future


def test_checkpoint_write_failure_leaves_job_completed(store, clock, make_source_connector, make_campaign):
    previous = datetime(2024, 5, 1, tzinfo=timezone.utc)
    make_campaign(checkpoint=previous)

    with patch.object(store, "update_campaign_checkpoint", side_effect=PersistenceError("db down")):
        job = ExtractionOrchestrator(store, make_source_connector(ROWS), clock=clock).run(
            "camp-1", ExtractionMode.INCREMENTAL
        )

    assert job.status == JobStatus.COMPLETED
    assert store.get_campaign("camp-1").checkpoint == previous


def test_persistence_failure_mid_run_fails_job_with_progress(store, clock, make_source_connector, make_campaign):
    make_campaign()
    original = store.add_transaction_record
    calls = {"n": 0}

    def _flaky(record):
        calls["n"] += 1
        if calls["n"] == 2:
            raise PersistenceError("disk full")
        return original(record)

    with patch.object(store, "add_transaction_record", side_effect=_flaky):
        job = ExtractionOrchestrator(store, make_source_connector(ROWS), clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.FAILED
    assert job.rows_extracted == 1
    assert store.get_campaign("camp-1").checkpoint is None
    assert len(store.list_records("camp-1")) == 1


def test_unexpected_error_is_contained(store, clock, make_source_connector, make_campaign):
    make_campaign()

    job = ExtractionOrchestrator(store, make_source_connector(error=RuntimeError("driver bug")), clock=clock).run(
        "camp-1", ExtractionMode.FULL
    )

    assert job.status == JobStatus.FAILED
    assert "driver bug" in job.error


def test_non_finite_source_value_does_not_abort_the_batch(store, clock, make_source_connector, make_campaign):
    make_campaign()
    rows = [
        {"customer_id": "u0", "sale_amount": Decimal("Infinity")},
        {"customer_id": "u1", "sale_amount": Decimal("450")},
    ]

    job = ExtractionOrchestrator(store, make_source_connector(rows), clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.COMPLETED
    assert job.rows_extracted == 2
    by_participant = {r.participant_id: r.fields for r in store.find_pending_records("camp-1")}
    assert by_participant == {"u0": {"participantId": "u0", "amount": None}, "u1": {"participantId": "u1", "amount": 450}}


def test_unexpected_transform_error_skips_only_that_row(store, clock, make_source_connector, make_campaign):
    make_campaign()
    real_transform = transform_row

    def _flaky_transform(row, spec, **kwargs):
        if row["customer_id"] == "p-1":
            raise OverflowError("cannot convert Infinity to integer")
        return real_transform(row, spec, **kwargs)

    with patch("pipelines.extraction.transform_row", side_effect=_flaky_transform):
        job = ExtractionOrchestrator(store, make_source_connector(ROWS), clock=clock).run("camp-1", ExtractionMode.FULL)

    assert job.status == JobStatus.COMPLETED
    assert (job.rows_extracted, job.rows_skipped) == (1, 1)
    assert [r.participant_id for r in store.find_pending_records("camp-1")] == ["p-2"]
