from src.functions.mailbox_pipeline.core.contracts.functions import (
    CONVERT_FUNCTION,
    DISPATCHER_FUNCTION,
    WATCHDOG_FUNCTION,
)
from src.functions.mailbox_pipeline.core.contracts.jobs import JobKind, JobStatus, to_iso
from src.functions.mailbox_pipeline.core.db.job_store import SUPERSEDED_MESSAGE
from src.functions.mailbox_pipeline.core.monitoring.watchdog import GHOST_MESSAGE

from tests.mailbox_pipeline.fakes import FakeClock, make_runtime


def _running(runtime, kind=JobKind.CONVERT, items_total=100):
    job = runtime.jobs.create_or_reset_job("ws-1", kind, items_total=items_total)
    return runtime.jobs.transition(job.id, JobStatus.RUNNING, from_statuses=[JobStatus.QUEUED])


def test_stale_job_is_resurrected_with_a_fresh_relay():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    job = _running(runtime)

    clock.advance(481)
    report = runtime.watchdog().sweep()

    assert report.stale_found == 1
    assert report.resurrected == 1
    current = runtime.jobs.get_job(job.id)
    assert current.status is JobStatus.RUNNING
    assert current.retry_count == 1
    assert current.heartbeat_at == clock()
    (command,) = runtime.transport.pending
    assert command.function_name == CONVERT_FUNCTION
    assert command.payload == {"workspace_id": "ws-1", "job_id": job.id, "_iteration": 0}


def test_fresh_heartbeat_is_left_alone():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    _running(runtime)

    clock.advance(479)
    report = runtime.watchdog().sweep()

    assert report.stale_found == 0
    assert not runtime.transport.sent


def test_job_fails_once_retries_are_exhausted():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    job = _running(runtime)

    reports = []
    for _ in range(4):
        clock.advance(481)
        reports.append(runtime.watchdog().sweep())

    assert [report.resurrected for report in reports] == [1, 1, 1, 0]
    assert reports[-1].failed == 1
    failed = runtime.jobs.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_message == "stalled after 3 retries"
    assert len(runtime.transport.sent) == 3

    clock.advance(481)
    assert runtime.watchdog().sweep().stale_found == 0


def test_terminal_jobs_are_never_touched():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    done = _running(runtime)
    runtime.jobs.transition(done.id, JobStatus.ADVANCING, from_statuses=[JobStatus.RUNNING])
    runtime.jobs.transition(done.id, JobStatus.COMPLETED, from_statuses=[JobStatus.ADVANCING])
    cancelled = _running(runtime, kind=JobKind.ANALYZE)
    runtime.jobs.cancel(cancelled.id)

    clock.advance(3600)
    report = runtime.watchdog().sweep()

    assert report.stale_found == 0
    assert report.ghost_jobs_cleaned == 0
    assert runtime.jobs.get_job(done.id).status is JobStatus.COMPLETED
    assert runtime.jobs.get_job(done.id).retry_count == 0
    assert runtime.jobs.get_job(cancelled.id).status is JobStatus.CANCELLED
    assert not runtime.transport.sent


def test_running_job_without_work_is_cleaned_as_ghost():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    ghost = _running(runtime, kind=JobKind.CLASSIFY, items_total=0)

    clock.advance(200)
    report = runtime.watchdog().sweep()

    assert report.ghost_jobs_cleaned == 1
    failed = runtime.jobs.get_job(ghost.id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_message == GHOST_MESSAGE
    assert not runtime.transport.sent


def test_duplicate_stale_jobs_keep_only_the_newest():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    older = _running(runtime)

    clock.advance(5)
    row = {key: value for key, value in runtime.client.rows("pipeline_jobs")[0].items() if key != "id"}
    row.update({"updated_at": to_iso(clock()), "heartbeat_at": to_iso(clock())})
    (newer_row,) = runtime.client.table("pipeline_jobs").insert(row).execute().data

    clock.advance(481)
    report = runtime.watchdog().sweep()

    assert report.stale_found == 2
    assert report.superseded == 1
    assert report.resurrected == 1
    superseded = runtime.jobs.get_job(older.id)
    assert superseded.status is JobStatus.FAILED
    assert superseded.error_message == SUPERSEDED_MESSAGE
    assert runtime.jobs.get_job(newer_row["id"]).retry_count == 1
    assert [command.payload["job_id"] for command in runtime.transport.sent] == [newer_row["id"]]


def test_expired_locks_are_reclaimed():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    runtime.locks.acquire("ws-1", CONVERT_FUNCTION, "crashed-invocation")

    clock.advance(60)
    assert runtime.watchdog().sweep().locks_cleaned == 0

    clock.advance(121)
    assert runtime.watchdog().sweep().locks_cleaned == 1
    assert runtime.client.rows("pipeline_locks") == []


def test_paused_classification_resumes_through_the_dispatcher():
    clock = FakeClock()
    runtime = make_runtime(clock=clock)
    job = _running(runtime, kind=JobKind.CLASSIFY)
    runtime.jobs.pause(job.id, 30, reason="rate limited")

    clock.advance(31)
    result = runtime.invoke(WATCHDOG_FUNCTION, {})

    assert result["status"] == "complete"
    assert result["resumed"] == 1
    assert runtime.jobs.get_job(job.id).status is JobStatus.RUNNING
    assert runtime.jobs.get_job(job.id).retry_count == 0
    (command,) = runtime.transport.pending
    assert command.function_name == DISPATCHER_FUNCTION
