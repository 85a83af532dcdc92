import httpx
import pytest

from src.functions.mailbox_pipeline.core.contracts.config import PipelineConfig
from src.functions.mailbox_pipeline.core.contracts.errors import MailProviderError
from src.functions.mailbox_pipeline.core.contracts.functions import (
    ANALYZE_FUNCTION,
    CLASSIFY_FUNCTION,
    CONVERT_FUNCTION,
    DISPATCHER_FUNCTION,
    IMPORT_FUNCTION,
)
from src.functions.mailbox_pipeline.core.contracts.jobs import JobKind, JobStatus
from src.functions.mailbox_pipeline.core.contracts.work_items import WorkItemStatus
from src.functions.mailbox_pipeline.core.handlers.work_item_phase import WorkItemPhaseHandler

from tests.mailbox_pipeline.fakes import (
    FakeClock,
    FakeCompletion,
    FakeMailProvider,
    drain_while,
    make_runtime,
    message,
    seed_items,
)


def test_backlog_is_worked_off_by_a_relay_of_invocations():
    runtime = make_runtime(config=PipelineConfig(max_batches_per_invocation=1))
    seed_items(runtime, "ws-1", 230)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=230)

    results = [runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1"})]
    results += drain_while(runtime, CLASSIFY_FUNCTION)

    assert len(results) == 5
    assert [result["status"] for result in results] == ["continuing"] * 4 + ["complete"]
    assert all(result["chained"] for result in results[:4])
    assert results[-1]["next_phase"] == "convert"
    assert [result["processed"] for result in results] == [50, 50, 50, 50, 30]

    hops = [command for command in runtime.transport.sent if command.function_name == CLASSIFY_FUNCTION]
    assert [command.payload["_iteration"] for command in hops] == [1, 2, 3, 4]
    assert all(command.payload["job_id"] == job.id for command in hops)

    finished = runtime.jobs.get_job(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.items_done == 230
    assert [command.function_name for command in runtime.transport.pending] == [CONVERT_FUNCTION]


def test_relay_stops_at_the_iteration_ceiling_and_the_watchdog_restarts_it():
    clock = FakeClock()
    runtime = make_runtime(config=PipelineConfig(max_batches_per_invocation=1, max_iterations=2), clock=clock)
    seed_items(runtime, "ws-1", 230)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=230)

    results = [runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1"})]
    results += drain_while(runtime, CLASSIFY_FUNCTION)

    assert len(results) == 2
    assert results[-1]["status"] == "continuing"
    assert results[-1]["chained"] is False
    assert runtime.jobs.get_job(job.id).status is JobStatus.RUNNING

    clock.advance(481)
    report = runtime.watchdog().sweep()

    assert report.resurrected == 1
    command = runtime.transport.pending[-1]
    assert command.function_name == DISPATCHER_FUNCTION
    assert command.payload == {"workspace_id": "ws-1", "job_id": job.id, "_iteration": 0}
    assert runtime.jobs.get_job(job.id).retry_count == 1


def test_rate_limit_pauses_without_counting_a_retry():
    clock = FakeClock()
    completion = FakeCompletion(rate_limits=[20])
    runtime = make_runtime(completion=completion, clock=clock)
    seed_items(runtime, "ws-1", 10)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=10)

    result = runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "paused"
    assert result["retry_after_seconds"] == 20
    paused = runtime.jobs.get_job(job.id)
    assert paused.status is JobStatus.PAUSED
    assert paused.retry_count == 0
    rows = runtime.client.rows("email_import_queue")
    assert {row["status"] for row in rows} == {WorkItemStatus.PENDING.value}
    assert all(row["claimed_by"] is None for row in rows)
    assert not runtime.transport.pending

    clock.advance(10)
    assert runtime.watchdog().sweep().resumed == 0

    clock.advance(11)
    report = runtime.watchdog().sweep()
    assert report.resumed == 1
    assert report.resurrected == 0

    drain_while(runtime, DISPATCHER_FUNCTION)
    drain_while(runtime, CLASSIFY_FUNCTION)

    done = runtime.jobs.get_job(job.id)
    assert done.status is JobStatus.COMPLETED
    assert done.items_done == 10
    assert done.retry_count == 0


def test_invocation_is_skipped_while_another_holds_the_lock():
    runtime = make_runtime()
    seed_items(runtime, "ws-1", 5)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=5)
    runtime.locks.acquire("ws-1", CLASSIFY_FUNCTION, "someone-else")

    result = runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1"})

    assert result["status"] == "skipped"
    assert runtime.jobs.get_job(job.id).status is JobStatus.QUEUED
    assert not runtime.transport.sent


def test_cancelled_job_is_left_alone():
    runtime = make_runtime()
    seed_items(runtime, "ws-1", 5)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=5)
    runtime.cancel_pipeline("ws-1")

    result = runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "complete"
    assert result["job"]["status"] == "cancelled"
    assert not runtime.transport.sent
    assert {row["status"] for row in runtime.client.rows("email_import_queue")} == {"pending"}


def test_items_that_keep_failing_are_skipped_at_the_ceiling():
    completion = FakeCompletion()
    runtime = make_runtime(completion=completion, config=PipelineConfig(item_max_retries=2))
    seed_items(runtime, "ws-1", 3)
    rows = runtime.client.rows("email_import_queue")
    completion.missing = {rows[0]["id"]}
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=3)

    result = runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "complete"
    assert result["next_phase"] == "convert"
    assert result["processed"] == 2
    assert result["skipped"] == 1
    assert result["errors"][0]["message"] == "no classification returned"
    statuses = sorted(row["status"] for row in runtime.client.rows("email_import_queue"))
    assert statuses == ["classified", "classified", "skipped"]
    finished = runtime.jobs.get_job(job.id)
    assert finished.items_done == 2
    assert finished.items_failed == 1


def test_paused_job_waits_out_its_window():
    clock = FakeClock()
    completion = FakeCompletion(rate_limits=[300])
    runtime = make_runtime(completion=completion, clock=clock)
    seed_items(runtime, "ws-1", 10)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=10)
    payload = {"workspace_id": "ws-1", "job_id": job.id}

    assert runtime.invoke(CLASSIFY_FUNCTION, payload)["status"] == "paused"

    clock.advance(5)
    early = runtime.invoke(CLASSIFY_FUNCTION, payload)
    dispatched = runtime.invoke(DISPATCHER_FUNCTION, payload)

    assert early["status"] == "paused"
    assert early["retry_after_seconds"] == 295
    assert dispatched["workers_launched"] == 0
    assert completion.classify_calls == 1
    assert runtime.jobs.get_job(job.id).status is JobStatus.PAUSED
    assert runtime.client.rows("pipeline_locks") == []

    clock.advance(296)
    late = runtime.invoke(CLASSIFY_FUNCTION, payload)

    assert late["status"] == "complete"
    assert late["next_phase"] == "convert"
    assert completion.classify_calls == 2
    assert runtime.jobs.get_job(job.id).retry_count == 0


class _UnreachableMailbox(FakeMailProvider):
    def list_messages(self, folder, page_token, limit):
        raise MailProviderError("Mail provider error: HTTP 503", status_code=503)


def test_transient_provider_failure_backs_off_and_keeps_the_cause():
    runtime = make_runtime(mail=_UnreachableMailbox({}))
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)

    result = runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "paused"
    assert 5 <= result["retry_after_seconds"] <= 8
    paused = runtime.jobs.get_job(job.id)
    assert paused.status is JobStatus.PAUSED
    assert paused.retry_count == 1
    assert "MailProviderError" in paused.error_message
    assert "HTTP 503" in paused.error_message
    assert runtime.client.rows("pipeline_locks") == []
    assert not runtime.transport.pending


def test_transient_failure_past_the_retry_ceiling_fails_with_its_cause():
    runtime = make_runtime(mail=_UnreachableMailbox({}), config=PipelineConfig(max_retries=0))
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)

    result = runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "error"
    failed = runtime.jobs.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert "HTTP 503" in failed.error_message


class _DroppedConnection(FakeCompletion):
    def classify(self, items):
        raise httpx.ConnectError("connection reset by peer")


def test_transient_failure_hands_claimed_items_back():
    runtime = make_runtime(completion=_DroppedConnection())
    seed_items(runtime, "ws-1", 10)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=10)

    result = runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "paused"
    rows = runtime.client.rows("email_import_queue")
    assert {row["status"] for row in rows} == {WorkItemStatus.PENDING.value}
    assert all(row["claimed_by"] is None for row in rows)
    assert all(row.get("retry_count", 0) == 0 for row in rows)
    assert runtime.jobs.get_job(job.id).retry_count == 1


def test_empty_page_with_work_left_chains_instead_of_stopping(monkeypatch):
    runtime = make_runtime()
    reply = message("out-1", thread_id="t-1", from_email="owner@business.test").to_row("SENT")
    runtime.items.upsert_items("ws-1", [reply])
    for row in runtime.client.rows("email_import_queue"):
        row["status"] = "processed"
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.ANALYZE)
    monkeypatch.setattr(runtime.items, "fetch_page", lambda *args, **kwargs: [])

    result = runtime.invoke(ANALYZE_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "continuing"
    assert result["chained"] is True
    assert runtime.jobs.get_job(job.id).status is JobStatus.RUNNING

    monkeypatch.undo()
    finished = drain_while(runtime, ANALYZE_FUNCTION)

    assert finished[-1]["status"] == "complete"
    assert runtime.jobs.get_job(job.id).status is JobStatus.COMPLETED
    assert runtime.jobs.get_job(job.id).items_done == 1


def test_handler_missing_a_hook_cannot_be_built():
    runtime = make_runtime()

    class NoProcessing(WorkItemPhaseHandler):
        kind = JobKind.CONVERT
        function_name = CONVERT_FUNCTION

    with pytest.raises(TypeError):
        NoProcessing(runtime.dependencies(), runtime.items)
