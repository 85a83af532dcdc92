import flask
import pytest

from src.functions.mailbox_pipeline.core.contracts.errors import PhaseFatalError
from src.functions.mailbox_pipeline.core.contracts.functions import IMPORT_FUNCTION
from src.functions.mailbox_pipeline.core.contracts.jobs import JobKind
from src.functions.mailbox_pipeline.functions import main

from tests.mailbox_pipeline.fakes import FakeMailProvider, make_runtime, seed_items

app = flask.Flask(__name__)


@pytest.fixture
def runtime(monkeypatch):
    monkeypatch.delenv("PIPELINE_WORKER_TOKEN", raising=False)
    runtime = make_runtime()
    main.set_runtime(runtime)
    yield runtime
    main.set_runtime(None)


def _call(handler, *, method="POST", json=None, headers=None):
    with app.test_request_context("/", method=method, json=json, headers=headers or {}):
        return handler(flask.request)


def test_health_check(runtime):
    response = _call(main.health_check_handler, method="GET")

    assert response.status_code == 200
    assert response.get_json() == {"status": "healthy", "module": "mailbox_pipeline"}


def test_only_post_is_accepted(runtime):
    response = _call(main.email_convert_handler, method="GET")
    assert response.status_code == 405

    preflight = _call(main.email_convert_handler, method="OPTIONS")
    assert preflight.status_code == 204
    assert "x-pipeline-worker-token" in preflight.headers["Access-Control-Allow-Headers"]


def test_worker_token_is_enforced_when_configured(runtime, monkeypatch):
    monkeypatch.setenv("PIPELINE_WORKER_TOKEN", "s3cret")

    rejected = _call(main.email_convert_handler, json={"workspace_id": "ws-1"})
    wrong = _call(main.email_convert_handler, json={"workspace_id": "ws-1"}, headers={"x-pipeline-worker-token": "nope"})
    accepted = _call(
        main.email_convert_handler,
        json={"workspace_id": "ws-1"},
        headers={"x-pipeline-worker-token": "s3cret"},
    )

    assert rejected.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert accepted.get_json()["reason"] == "no active job"


def test_invalid_trigger_payload_is_a_bad_request(runtime):
    missing = _call(main.email_classify_handler, json={})
    bad_partition = _call(
        main.email_classify_handler,
        json={"workspace_id": "ws-1", "partition_id": 3, "total_partitions": 2},
    )

    assert missing.status_code == 400
    assert "workspace_id" in missing.get_json()["message"]
    assert bad_partition.status_code == 400


def test_start_status_and_cancel(runtime):
    started = _call(main.start_pipeline_handler, json={"workspace_id": "ws-1", "import_mode": "last_100"})

    assert started.status_code == 200
    body = started.get_json()
    assert body["status"] == "started"
    assert body["job"]["kind"] == "import"
    (command,) = runtime.transport.pending
    assert command.function_name == IMPORT_FUNCTION
    assert command.payload["job_id"] == body["job"]["job_id"]

    status = _call(main.pipeline_status_handler, json={"workspace_id": "ws-1"}).get_json()
    assert status["status"] == "running"
    assert [job["kind"] for job in status["active_jobs"]] == ["import"]

    cancelled = _call(main.cancel_pipeline_handler, json={"workspace_id": "ws-1"}).get_json()
    assert cancelled["status"] == "cancelled"
    assert [job["status"] for job in cancelled["cancelled"]] == ["cancelled"]
    assert _call(main.pipeline_status_handler, json={"workspace_id": "ws-1"}).get_json()["status"] == "idle"


def test_start_rejects_unknown_import_mode(runtime):
    response = _call(main.start_pipeline_handler, json={"workspace_id": "ws-1", "import_mode": "everything"})

    assert response.status_code == 400
    assert runtime.jobs.list_active_jobs("ws-1") == []


def test_status_requires_a_workspace(runtime):
    response = _call(main.pipeline_status_handler, json={})

    assert response.status_code == 400
    assert response.get_json()["message"] == "'workspace_id' is required"


def test_failed_phase_answers_500(monkeypatch):
    monkeypatch.delenv("PIPELINE_WORKER_TOKEN", raising=False)

    class RevokedMailbox(FakeMailProvider):
        def list_messages(self, folder, page_token, limit):
            raise PhaseFatalError("Email access token expired. Reconnect the mailbox.")

    runtime = make_runtime(mail=RevokedMailbox({}))
    main.set_runtime(runtime)
    try:
        job = runtime.jobs.create_or_reset_job("ws-1", JobKind.IMPORT)
        response = _call(main.email_import_handler, json={"workspace_id": "ws-1", "job_id": job.id})
    finally:
        main.set_runtime(None)

    assert response.status_code == 500
    assert response.get_json()["status"] == "error"
    assert response.get_json()["job"]["status"] == "failed"


def test_dispatcher_endpoint_reports_workers(runtime):
    seed_items(runtime, "ws-1", 10)

    response = _call(main.classify_dispatcher_handler, json={"workspace_id": "ws-1"})

    assert response.status_code == 200
    assert response.get_json()["workers_launched"] == 1
