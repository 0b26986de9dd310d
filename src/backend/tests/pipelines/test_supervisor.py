import threading

import pytest

from common.campaigns.models import ExtractionJob, ExtractionMode, JobKind, JobStatus, ProcessingJob
from common.errors import InvalidJobTransition
from pipelines.extraction import ExtractionOrchestrator
from pipelines.processing import TransactionProcessor
from pipelines.supervisor import INTERRUPTED_ERROR, JobSupervisor, UnknownJobError


ROWS = [{"customer_id": "p-1", "sale_amount": 450, "productLine": "Premium"}]
RULES = {
    "eligibility_rules": [{"id": "premium", "condition": 'productLine == "Premium"'}],
    "accrual_rules": [{"id": "per-200", "calculation": "ceil(amount / 200)"}],
}


@pytest.fixture
def make_supervisor(store, clock, make_source_connector, make_accrual_client):
    created = []

    def _make(connector=None, client=None):
        connector = connector or make_source_connector(ROWS)
        client = client or make_accrual_client()
        supervisor = JobSupervisor(
            store,
            ExtractionOrchestrator(store, connector, clock=clock),
            TransactionProcessor(store, lambda linkage: client, clock=clock),
            max_workers=2,
            clock=clock,
        )
        supervisor.client = client
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        supervisor.shutdown()


def _blocking_connector(make_source_connector):
    entered = threading.Event()
    release = threading.Event()

    def _block():
        entered.set()
        assert release.wait(timeout=5)

    return make_source_connector(ROWS, on_query=_block), entered, release


def test_try_start_rejects_second_start_until_release(make_supervisor, make_campaign):
    make_campaign(rule_set=RULES)
    supervisor = make_supervisor()

    assert supervisor.try_start("camp-1", JobKind.EXTRACTION) is True
    assert supervisor.try_start("camp-1", JobKind.EXTRACTION) is False
    assert supervisor.try_start("camp-1", JobKind.PROCESSING) is True
    assert supervisor.try_start("camp-2", JobKind.EXTRACTION) is True

    supervisor.release("camp-1", JobKind.EXTRACTION)
    assert supervisor.try_start("camp-1", JobKind.EXTRACTION) is True


def test_concurrent_extraction_is_rejected_not_queued(make_supervisor, make_campaign, make_source_connector, store):
    make_campaign(rule_set=RULES)
    connector, entered, release = _blocking_connector(make_source_connector)
    supervisor = make_supervisor(connector=connector)

    future = supervisor.submit_campaign_run("camp-1", ExtractionMode.FULL)
    assert future is not None
    assert entered.wait(timeout=5)

    assert supervisor.run_extraction("camp-1", ExtractionMode.INCREMENTAL) is None
    assert supervisor.submit_campaign_run("camp-1") is None
    assert supervisor.execute_campaign("camp-1").rejected is True
    assert supervisor.status("camp-1").extraction_running is True

    release.set()
    run = future.result(timeout=5)
    supervisor.shutdown()

    assert run.extraction.status == JobStatus.COMPLETED
    assert run.processing.status == JobStatus.COMPLETED
    assert len(store.list_jobs("camp-1", kind=JobKind.EXTRACTION)) == 1
    assert supervisor.status("camp-1").extraction_running is False


def test_lock_released_after_failed_run(make_supervisor, make_campaign, make_source_connector, source_unavailable):
    make_campaign(rule_set=RULES)
    supervisor = make_supervisor(connector=make_source_connector(error=source_unavailable))

    first = supervisor.run_extraction("camp-1", ExtractionMode.FULL)
    second = supervisor.run_extraction("camp-1", ExtractionMode.FULL)

    assert first.status == JobStatus.FAILED
    assert second is not None
    assert second.id != first.id


def test_lock_released_when_run_is_interrupted(make_supervisor, make_campaign, make_source_connector):
    make_campaign(rule_set=RULES)

    def _interrupt():
        raise KeyboardInterrupt

    supervisor = make_supervisor(connector=make_source_connector(ROWS, on_query=_interrupt))

    with pytest.raises(KeyboardInterrupt):
        supervisor.run_extraction("camp-1", ExtractionMode.FULL)

    assert supervisor.is_running("camp-1", JobKind.EXTRACTION) is False
    # The interrupted job is still RUNNING in the store, so the slot stays taken until reconciled.
    assert supervisor.try_start("camp-1", JobKind.EXTRACTION) is False
    reconciled = supervisor.reconcile_interrupted_jobs()
    assert [job.status for job in reconciled] == [JobStatus.FAILED]
    assert reconciled[0].error == INTERRUPTED_ERROR
    assert supervisor.try_start("camp-1", JobKind.EXTRACTION) is True


def test_execute_campaign_runs_extraction_then_processing(make_supervisor, make_campaign, store):
    make_campaign(rule_set=RULES)
    supervisor = make_supervisor()

    run = supervisor.execute_campaign("camp-1", ExtractionMode.FULL)

    assert run.rejected is False
    assert run.extraction.status == JobStatus.COMPLETED
    assert run.processing.succeeded == 1
    status = supervisor.status("camp-1")
    assert status.last_extraction.id == run.extraction.id
    assert status.last_processing.id == run.processing.id
    assert status.checkpoint == run.extraction.checkpoint


def test_execute_campaign_skips_processing_after_failed_extraction(
    make_supervisor, make_campaign, make_source_connector, source_unavailable
):
    make_campaign(rule_set=RULES)
    supervisor = make_supervisor(connector=make_source_connector(error=source_unavailable))

    run = supervisor.execute_campaign("camp-1")

    assert run.extraction.status == JobStatus.FAILED
    assert run.processing is None
    assert supervisor.client.calls == []


def test_status_of_unknown_campaign_is_none(make_supervisor):
    assert make_supervisor().status("missing") is None


def test_retry_job_reruns_failed_extraction_with_same_mode(
    make_supervisor, make_campaign, make_source_connector, source_unavailable
):
    make_campaign(rule_set=RULES)
    connector = make_source_connector(ROWS, error=source_unavailable)
    supervisor = make_supervisor(connector=connector)
    failed = supervisor.run_extraction("camp-1", ExtractionMode.INCREMENTAL)

    connector.error = None
    retried = supervisor.retry_job(failed.id)

    assert isinstance(retried, ExtractionJob)
    assert retried.status == JobStatus.COMPLETED
    assert retried.mode == ExtractionMode.INCREMENTAL


def test_retry_job_reruns_failed_processing(make_supervisor, make_campaign, store):
    make_campaign(rule_set=None)
    supervisor = make_supervisor()
    failed = supervisor.run_processing("camp-1")
    assert failed.status == JobStatus.FAILED

    make_campaign(rule_set=RULES)
    retried = supervisor.submit_retry(failed.id).result(timeout=5)
    supervisor.shutdown()

    assert isinstance(retried, ProcessingJob)
    assert retried.status == JobStatus.COMPLETED


def test_retry_rejects_unknown_and_non_failed_jobs(make_supervisor, make_campaign):
    make_campaign(rule_set=RULES)
    supervisor = make_supervisor()
    completed = supervisor.run_extraction("camp-1", ExtractionMode.FULL)

    with pytest.raises(UnknownJobError):
        supervisor.retry_job("nope")
    with pytest.raises(InvalidJobTransition):
        supervisor.retry_job(completed.id)


def test_reconcile_fails_pending_and_running_jobs(make_supervisor, store):
    supervisor = make_supervisor()
    pending = ExtractionJob.create("camp-1", ExtractionMode.FULL)
    running = ProcessingJob.create("camp-2").advance(JobStatus.RUNNING)
    store.create_job(pending)
    store.create_job(running)

    reconciled = supervisor.reconcile_interrupted_jobs()

    assert {job.id for job in reconciled} == {pending.id, running.id}
    assert store.get_job(pending.id).status == JobStatus.FAILED
    assert store.get_job(running.id).completed_at is not None
    assert store.list_unfinished_jobs() == []


def test_requeue_ineligible_delegates_to_store(make_supervisor, make_campaign, make_pending_record):
    make_campaign(rule_set=RULES)
    make_pending_record("txn_a", amount=450, productLine="Basic")
    supervisor = make_supervisor()
    supervisor.run_processing("camp-1")

    assert supervisor.requeue_ineligible("camp-1") == 1


def test_status_summarizes_records_by_status(make_supervisor, make_campaign, make_pending_record, make_accrual_client):
    make_campaign(rule_set=RULES)
    make_pending_record("txn_a", amount=450, productLine="Premium")
    make_pending_record("txn_b", amount=900, productLine="Premium")
    make_pending_record("txn_c", amount=450, productLine="Basic")
    make_pending_record("txn_d", amount=450, productLine="Premium")
    supervisor = make_supervisor(client=make_accrual_client(fail_for={"p-txn_d"}))
    supervisor.run_processing("camp-1")

    records = supervisor.status("camp-1").records

    assert (records.total, records.pending, records.processed, records.ineligible, records.failed) == (4, 1, 2, 1, 0)
    assert records.points_earned == 3 + 5
    assert records.success_rate == 1.0


def test_requeue_failed_delegates_to_store(make_supervisor, make_campaign, make_pending_record, store):
    make_campaign(rule_set=RULES)
    make_pending_record("txn_a", amount=450, productLine="Premium")
    store.record_failed_attempt("txn_a", error="ledger down", max_attempts=1)
    supervisor = make_supervisor()

    assert supervisor.status("camp-1").records.failed == 1
    assert supervisor.requeue_failed("camp-1") == 1
    assert supervisor.run_processing("camp-1").succeeded == 1
    assert supervisor.status("camp-1").records.success_rate == 1.0


def test_reconcile_leaves_jobs_this_process_is_running(make_supervisor, make_campaign, make_source_connector, store):
    make_campaign(rule_set=RULES)
    connector, entered, release = _blocking_connector(make_source_connector)
    supervisor = make_supervisor(connector=connector)
    future = supervisor.submit_campaign_run("camp-1", ExtractionMode.FULL)
    assert entered.wait(timeout=5)

    assert supervisor.reconcile_interrupted_jobs() == []

    release.set()
    run = future.result(timeout=5)
    assert run.extraction.status == JobStatus.COMPLETED
