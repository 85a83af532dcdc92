from src.functions.mailbox_pipeline.core.contracts.config import PipelineConfig
from src.functions.mailbox_pipeline.core.contracts.errors import PhaseFatalError
from src.functions.mailbox_pipeline.core.contracts.functions import (
    ANALYZE_FUNCTION,
    CLASSIFY_FUNCTION,
    CONVERT_FUNCTION,
    DISPATCHER_FUNCTION,
    IMPORT_FUNCTION,
    RESEARCH_FUNCTION,
)
from src.functions.mailbox_pipeline.core.contracts.jobs import JobKind, JobStatus
from src.functions.mailbox_pipeline.core.contracts.requests import StartPipelineRequest
from src.functions.mailbox_pipeline.core.handlers.research import question_key
from src.functions.mailbox_pipeline.core.orchestration.runtime import PipelineRuntime
from src.functions.mailbox_pipeline.core.relay.chainer import LocalQueueTransport

from tests.mailbox_pipeline.fakes import (
    FakeClock,
    FakeCompletion,
    FakeMailProvider,
    FakeResearch,
    FakeSupabase,
    FakeTimer,
    drain_while,
    make_runtime,
    message,
    seed_items,
)


def _mailbox(threads=30):
    inbox = [
        message(
            f"in-{index}",
            thread_id=f"t-{index}",
            from_email=f"customer{index}@example.com",
            subject=f"Booking {index}",
            body="Hello, is Friday free?",
            received_at=f"2026-03-01T10:{index:02d}:00+00:00",
        )
        for index in range(threads)
    ]
    sent = [
        message(
            f"out-{index}",
            thread_id=f"t-{index}",
            from_email="owner@business.test",
            to_emails=(f"customer{index}@example.com",),
            subject=f"Re: Booking {index}",
            body="Hi there,\n\nFriday works.\n\nThanks",
            received_at=f"2026-03-01T11:{index:02d}:00+00:00",
        )
        for index in range(threads)
    ]
    return FakeMailProvider({"INBOX": inbox, "SENT": sent})


def _run_all(runtime):
    return runtime.transport.drain(lambda command: runtime.invoke(command.function_name, command.payload))


def test_email_pipeline_runs_every_phase_to_completion():
    mail = _mailbox()
    completion = FakeCompletion()
    runtime = make_runtime(mail=mail, completion=completion)

    started = runtime.start_pipeline(StartPipelineRequest(workspace_id="ws-1", import_mode="last_100"))
    assert started["status"] == "started"
    assert started["invoked"] is True

    _run_all(runtime)

    kinds = [command.function_name for command in runtime.transport.sent]
    assert kinds == [IMPORT_FUNCTION, DISPATCHER_FUNCTION, CLASSIFY_FUNCTION, CONVERT_FUNCTION, ANALYZE_FUNCTION]
    assert runtime.jobs.list_active_jobs("ws-1") == []
    jobs = {job.kind: job for job in runtime.jobs.list_recent_jobs("ws-1")}
    assert {kind: job.status for kind, job in jobs.items()} == {
        JobKind.IMPORT: JobStatus.COMPLETED,
        JobKind.CLASSIFY: JobStatus.COMPLETED,
        JobKind.CONVERT: JobStatus.COMPLETED,
        JobKind.ANALYZE: JobStatus.COMPLETED,
    }
    assert jobs[JobKind.IMPORT].items_total == 60
    assert jobs[JobKind.ANALYZE].items_done == 30

    db = runtime.client
    assert {row["status"] for row in db.rows("email_import_queue")} == {"processed"}
    assert len(db.rows("conversations")) == 30
    assert len(db.rows("customers")) == 30
    assert len(db.rows("messages")) == 60
    assert len(db.rows("reply_pairs")) == 30
    (profile,) = db.rows("voice_profiles")
    assert profile["profile"] == {"tone": "friendly", "formality": 4}
    assert profile["analytics"]["top_greetings"] == ["hi"]
    assert profile["analytics"]["top_signoffs"] == ["thanks"]
    assert profile["analytics"]["avg_response_minutes"] == 60.0
    assert len(completion.profile_calls) == 1
    assert mail.closed


def test_import_reads_sent_mail_first_and_stops_at_the_mode_target():
    mail = _mailbox(threads=80)
    runtime = make_runtime(mail=mail)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT, cursor={"input": {"import_mode": "last_100"}})

    result = runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "complete"
    assert result["next_phase"] == "classify"
    assert mail.calls == [("SENT", None, 50), ("INBOX", None, 50)]
    assert len(runtime.client.rows("email_import_queue")) == 100
    directions = {row["external_id"][:3]: row["direction"] for row in runtime.client.rows("email_import_queue")}
    assert directions == {"out": "outbound", "in-": "inbound"}

    finished = runtime.jobs.get_job(job.id)
    assert finished.items_done == 100
    assert finished.cursor["page_tokens"] == {"SENT": "50", "INBOX": "50"}
    assert finished.cursor["handoff"] == {"imported": 100}
    classify = runtime.jobs.find_active_job("ws-1", JobKind.CLASSIFY)
    assert classify.cursor == {"input": {"imported": 100}}


def test_import_resumes_from_the_saved_page_token():
    mail = _mailbox(threads=120)
    runtime = make_runtime(mail=mail, config=PipelineConfig(max_batches_per_invocation=1, import_mode="last_1000"))
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)

    first = runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})
    assert first["status"] == "continuing"
    assert runtime.jobs.get_job(job.id).cursor["page_tokens"] == {"SENT": "50"}

    drain_while(runtime, IMPORT_FUNCTION)

    assert mail.calls[:3] == [("SENT", None, 50), ("SENT", "50", 50), ("SENT", "100", 50)]
    assert ("INBOX", "100", 50) in mail.calls
    assert len(runtime.client.rows("email_import_queue")) == 240
    assert runtime.jobs.get_job(job.id).items_total == 240


def test_missing_mailbox_connection_fails_the_import():
    db = FakeSupabase()

    def no_mailbox(workspace_id):
        raise PhaseFatalError("Email not connected. Connect a mailbox first.")

    runtime = PipelineRuntime(
        db,
        PipelineConfig(),
        LocalQueueTransport(),
        completion_factory=FakeCompletion,
        research_factory=lambda: FakeResearch({}),
        mail_factory=no_mailbox,
        clock=FakeClock(),
        timer=FakeTimer(),
    )
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)

    result = runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "error"
    assert "Email not connected" in result["reason"]
    failed = runtime.jobs.get_job(job.id)
    assert failed.status is JobStatus.FAILED
    assert failed.retry_count == 0
    assert runtime.client.rows("pipeline_locks") == []
    assert not runtime.transport.sent


def test_convert_groups_threads_into_conversations():
    runtime = make_runtime()
    notification = message(
        "n-1",
        thread_id="t-n",
        from_email="noreply@shop.test",
        subject="Your receipt",
        received_at="2026-03-01T09:00:00+00:00",
    )
    question = message("q-1", thread_id="t-q", from_email="ann@example.com", received_at="2026-03-01T09:05:00+00:00")
    follow_up = message("q-2", thread_id="t-q", from_email="ann@example.com", received_at="2026-03-01T09:10:00+00:00")
    runtime.items.upsert_items(
        "ws-1",
        [notification.to_row("INBOX"), question.to_row("INBOX"), follow_up.to_row("INBOX")],
    )
    for row in runtime.client.rows("email_import_queue"):
        row.update({"status": "classified", "category": "notification" if row["external_id"] == "n-1" else "inquiry"})
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CONVERT)

    result = runtime.invoke(CONVERT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "complete"
    assert result["next_phase"] == "analyze"
    conversations = {row["external_conversation_id"]: row for row in runtime.client.rows("conversations")}
    assert set(conversations) == {"import_t-n", "import_t-q"}
    assert conversations["import_t-n"]["decision_bucket"] == "auto_handled"
    assert conversations["import_t-q"]["decision_bucket"] == "quick_win"
    assert conversations["import_t-q"]["requires_reply"] is False
    assert {row["email"] for row in runtime.client.rows("customers")} == {"noreply@shop.test", "ann@example.com"}
    items = {row["external_id"]: row for row in runtime.client.rows("email_import_queue")}
    assert items["q-1"]["conversation_id"] == items["q-2"]["conversation_id"] == conversations["import_t-q"]["id"]
    assert runtime.jobs.get_job(job.id).items_total == 3


def test_analyze_skips_the_voice_profile_below_the_pair_threshold():
    completion = FakeCompletion()
    runtime = make_runtime(completion=completion, config=PipelineConfig(min_voice_pairs=5))
    reply = message(
        "out-1",
        thread_id="t-1",
        from_email="owner@business.test",
        body="Hello Ann,\nSee you then.\nBest regards,",
        received_at="2026-03-01T10:30:00+00:00",
    )
    inbound = message("in-1", thread_id="t-1", from_email="ann@example.com", received_at="2026-03-01T10:00:00+00:00")
    unanswered = message("out-2", thread_id="t-2", received_at="2026-03-01T12:00:00+00:00")
    runtime.items.upsert_items(
        "ws-1",
        [reply.to_row("SENT"), inbound.to_row("INBOX"), unanswered.to_row("SENT")],
    )
    for row in runtime.client.rows("email_import_queue"):
        row.update({"status": "processed", "category": "booking"})
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.ANALYZE)

    result = runtime.invoke(ANALYZE_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})

    assert result["status"] == "complete"
    assert result["next_phase"] is None
    (pair,) = runtime.client.rows("reply_pairs")
    assert pair["inbound_external_id"] == "in-1"
    assert pair["response_seconds"] == 1800
    assert pair["inbound_category"] == "booking"
    (profile,) = runtime.client.rows("voice_profiles")
    assert profile["profile"] is None
    assert profile["analytics"]["replies_seen"] == 2
    assert profile["analytics"]["top_greetings"] == ["hello"]
    assert profile["analytics"]["top_signoffs"] == ["best regards"]
    assert completion.profile_calls == []
    assert runtime.jobs.get_job(job.id).cursor["handoff"] == {"reply_pairs": 1, "voice_profile": False}


def test_research_deduplicates_questions_across_sites():
    research = FakeResearch(
        {
            "https://alpha.test": [
                {"question": "Do you deliver on weekends?", "answer": "Yes"},
                {"question": "What are your opening hours?", "answer": "9 to 5"},
            ],
            "https://beta.test": [{"question": "do you deliver on weekends", "answer": "Sometimes"}],
        }
    )
    runtime = make_runtime(research=research)
    runtime.sites.upsert_items(
        "ws-1",
        [
            {"external_id": "alpha.test", "url": "https://alpha.test"},
            {"external_id": "beta.test", "url": "https://beta.test"},
            {"external_id": "gamma.test", "url": "https://gamma.test"},
        ],
    )

    started = runtime.start_pipeline(StartPipelineRequest(workspace_id="ws-1", pipeline="research"))
    results = drain_while(runtime, RESEARCH_FUNCTION)

    assert started["job"]["kind"] == "research"
    assert results[-1]["status"] == "complete"
    assert results[-1]["next_phase"] is None
    faqs = runtime.client.rows("competitor_faqs")
    assert len(faqs) == 2
    assert question_key("Do you deliver on weekends?") == question_key("do you deliver on weekends")
    (summary,) = runtime.client.rows("research_summaries")
    assert summary["topic_count"] == 2
    assert summary["topics"] == ["Do you deliver on weekends?", "What are your opening hours?"]
    statuses = {row["external_id"]: row["status"] for row in runtime.client.rows("competitor_sites")}
    assert statuses["alpha.test"] == statuses["beta.test"] == "processed"
    assert statuses["gamma.test"] == "skipped"
    assert research.calls.count("https://gamma.test") == 3
    assert runtime.jobs.list_active_jobs("ws-1") == []


def _replay(runtime, command):
    return runtime.invoke(command.function_name, command.payload)


def test_replaying_an_import_cursor_adds_no_rows_or_progress():
    mail = _mailbox(threads=120)
    runtime = make_runtime(mail=mail, config=PipelineConfig(max_batches_per_invocation=1, import_mode="last_1000"))
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)
    runtime.invoke(IMPORT_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})
    command = runtime.transport.pending.popleft()

    _replay(runtime, command)
    first = runtime.jobs.get_job(job.id)
    _replay(runtime, command)
    second = runtime.jobs.get_job(job.id)

    assert first.items_done == second.items_done == 100
    assert len(runtime.client.rows("email_import_queue")) == 100
    assert second.cursor["page_tokens"] == {"SENT": "100"}
    assert mail.calls.count(("SENT", "50", 50)) == 2


def test_replaying_a_classify_command_classifies_each_item_once():
    completion = FakeCompletion()
    runtime = make_runtime(completion=completion, config=PipelineConfig(max_batches_per_invocation=1))
    seed_items(runtime, "ws-1", 150)
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.CLASSIFY, items_total=150)
    runtime.invoke(CLASSIFY_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})
    command = runtime.transport.pending.popleft()

    _replay(runtime, command)
    replayed = _replay(runtime, command)
    late = drain_while(runtime, CLASSIFY_FUNCTION)

    assert replayed["next_phase"] == "convert"
    assert [result["reason"] for result in late] == ["job already completed"]
    finished = runtime.jobs.get_job(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.items_done == 150
    assert completion.classify_calls == 6
    assert {row["status"] for row in runtime.client.rows("email_import_queue")} == {"classified"}
    sent = [command.function_name for command in runtime.transport.sent]
    assert sent.count(CONVERT_FUNCTION) == 1


def test_replaying_an_analyze_offset_does_not_double_count():
    runtime = make_runtime(
        config=PipelineConfig(max_batches_per_invocation=1, batch_sizes={JobKind.ANALYZE: 2}, min_voice_pairs=5),
    )
    rows = []
    for index in range(6):
        rows.append(
            message(
                f"in-{index}",
                thread_id=f"t-{index}",
                from_email=f"customer{index}@example.com",
                received_at=f"2026-03-01T10:0{index}:00+00:00",
            ).to_row("INBOX")
        )
        rows.append(
            message(
                f"out-{index}",
                thread_id=f"t-{index}",
                from_email="owner@business.test",
                body="Hi,\n\nYes we can.\n\nThanks",
                received_at=f"2026-03-01T11:0{index}:00+00:00",
            ).to_row("SENT")
        )
    runtime.items.upsert_items("ws-1", rows)
    for row in runtime.client.rows("email_import_queue"):
        row.update({"status": "processed", "category": "booking"})
    job = runtime.jobs.create_or_reset_job("ws-1", JobKind.ANALYZE)
    runtime.invoke(ANALYZE_FUNCTION, {"workspace_id": "ws-1", "job_id": job.id})
    command = runtime.transport.pending.popleft()
    assert command.payload["cursor"]["offset"] == 2

    _replay(runtime, command)
    first = runtime.jobs.get_job(job.id)
    _replay(runtime, command)
    second = runtime.jobs.get_job(job.id)

    assert first.items_done == second.items_done == 4
    assert second.cursor["offset"] == 4
    assert len(runtime.client.rows("reply_pairs")) == 4

    drain_while(runtime, ANALYZE_FUNCTION)

    finished = runtime.jobs.get_job(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.items_done == finished.items_total == 6
    assert len(runtime.client.rows("reply_pairs")) == 6
    (profile,) = runtime.client.rows("voice_profiles")
    assert profile["analytics"]["reply_pairs"] == 6
    assert profile["analytics"]["replies_seen"] == 6
