"""Cloud Function entry points for the mailbox pipeline.

Every phase, the classification dispatcher and the watchdog are deployed as
separate HTTP functions sharing this module. They accept the same request
shape (``workspace_id``, ``job_id``, ``cursor``, ``partition_id``,
``total_partitions``, ``_iteration``) and answer with the invocation outcome.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import flask
from pydantic import ValidationError

# Ensure project root is available on import path
project_root = Path(__file__).parent.parent.parent.parent.parent.absolute()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.shared.utils.config_validator import ConfigurationError
from src.shared.utils.env import load_env
from src.shared.utils.logging import setup_logging

from src.functions.mailbox_pipeline.core.contracts.errors import InvalidRequestError
from src.functions.mailbox_pipeline.core.contracts.functions import (
    ANALYZE_FUNCTION,
    CLASSIFY_FUNCTION,
    CONVERT_FUNCTION,
    DISPATCHER_FUNCTION,
    IMPORT_FUNCTION,
    RESEARCH_FUNCTION,
    WATCHDOG_FUNCTION,
)
from src.functions.mailbox_pipeline.core.contracts.requests import StartPipelineRequest
from src.functions.mailbox_pipeline.core.orchestration.runtime import PipelineRuntime
from src.functions.mailbox_pipeline.core.relay.chainer import WORKER_TOKEN_HEADER

load_env()
setup_logging(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

_RUNTIME: Optional[PipelineRuntime] = None


def get_runtime() -> PipelineRuntime:
    """Build the runtime on first use and reuse it across warm invocations."""
    global _RUNTIME
    if _RUNTIME is None:
        _RUNTIME = PipelineRuntime.from_env()
    return _RUNTIME


def set_runtime(runtime: Optional[PipelineRuntime]) -> None:
    global _RUNTIME
    _RUNTIME = runtime


def _invocation_handler(function_name: str) -> Callable[[flask.Request], flask.Response]:
    def handler(request: flask.Request) -> flask.Response:
        return _guarded(
            request,
            function_name,
            lambda runtime, payload: runtime.invoke(function_name, payload),
        )

    handler.__name__ = f"{function_name.replace('-', '_')}_handler"
    return handler


email_import_handler = _invocation_handler(IMPORT_FUNCTION)
email_classify_handler = _invocation_handler(CLASSIFY_FUNCTION)
email_convert_handler = _invocation_handler(CONVERT_FUNCTION)
email_analyze_handler = _invocation_handler(ANALYZE_FUNCTION)
competitor_research_handler = _invocation_handler(RESEARCH_FUNCTION)
classify_dispatcher_handler = _invocation_handler(DISPATCHER_FUNCTION)
pipeline_watchdog_handler = _invocation_handler(WATCHDOG_FUNCTION)


def start_pipeline_handler(request: flask.Request) -> flask.Response:
    """Create (or reset) the first job of a pipeline and kick it off."""

    return _guarded(
        request,
        "start-pipeline",
        lambda runtime, payload: runtime.start_pipeline(StartPipelineRequest.model_validate(payload)),
    )


def cancel_pipeline_handler(request: flask.Request) -> flask.Response:
    return _guarded(
        request,
        "cancel-pipeline",
        lambda runtime, payload: runtime.cancel_pipeline(_workspace_id(payload)),
    )


def pipeline_status_handler(request: flask.Request) -> flask.Response:
    return _guarded(
        request,
        "pipeline-status",
        lambda runtime, payload: runtime.pipeline_status(_workspace_id(payload)),
    )


def health_check_handler(request: flask.Request) -> flask.Response:
    """Health check endpoint returning module status."""

    return _cors_response({"status": "healthy", "module": "mailbox_pipeline"})


def _workspace_id(payload: Dict[str, Any]) -> str:
    workspace_id = payload.get("workspace_id")
    if not isinstance(workspace_id, str) or not workspace_id:
        raise InvalidRequestError("'workspace_id' is required")
    return workspace_id


def _guarded(
    request: flask.Request,
    name: str,
    action: Callable[[PipelineRuntime, Dict[str, Any]], Dict[str, Any]],
) -> flask.Response:
    if request.method == "OPTIONS":
        return _cors_response({}, status=204)

    if request.method != "POST":
        return _error_response("Method not allowed. Use POST.", status=405)

    if not _authorized(request):
        return _error_response("Invalid or missing worker token", status=401)

    payload = request.get_json(silent=True) or {}
    logger.info("Received %s invocation with payload keys: %s", name, list(payload.keys()))

    try:
        body = action(get_runtime(), payload)
    except ValidationError as exc:
        return _error_response(f"Invalid request: {_validation_message(exc)}", status=400)
    except InvalidRequestError as exc:
        return _error_response(str(exc), status=400)
    except ConfigurationError as exc:
        logger.error("Configuration error in %s: %s", name, exc)
        return _error_response(f"Configuration error: {exc}", status=500)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error in %s", name)
        return _error_response(f"Internal error: {exc}", status=500)

    status = 500 if body.get("status") == "error" else 200
    return _cors_response(body, status=status)


def _authorized(request: flask.Request) -> bool:
    expected = os.getenv("PIPELINE_WORKER_TOKEN")
    if not expected:
        return True
    supplied = request.headers.get(WORKER_TOKEN_HEADER, "")
    return hmac.compare_digest(supplied, expected)


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "request"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _cors_response(body: dict[str, Any] | Iterable[Any], status: int = 200) -> flask.Response:
    response = flask.make_response(json.dumps(body, ensure_ascii=False, default=str), status)
    headers = response.headers
    headers["Content-Type"] = "application/json"
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "POST,OPTIONS"
    headers["Access-Control-Allow-Headers"] = f"Content-Type,Authorization,{WORKER_TOKEN_HEADER}"
    return response


def _error_response(message: str, status: int) -> flask.Response:
    return _cors_response({"status": "error", "message": message}, status=status)


try:  # pragma: no cover - optional registration for local emulators
    import functions_framework
except ImportError:  # pragma: no cover
    functions_framework = None

if functions_framework is not None:

    @functions_framework.http
    def email_import(request: flask.Request):
        return email_import_handler(request)

    @functions_framework.http
    def email_classify(request: flask.Request):
        return email_classify_handler(request)

    @functions_framework.http
    def email_convert(request: flask.Request):
        return email_convert_handler(request)

    @functions_framework.http
    def email_analyze(request: flask.Request):
        return email_analyze_handler(request)

    @functions_framework.http
    def competitor_research(request: flask.Request):
        return competitor_research_handler(request)

    @functions_framework.http
    def classify_dispatcher(request: flask.Request):
        return classify_dispatcher_handler(request)

    @functions_framework.http
    def pipeline_watchdog(request: flask.Request):
        return pipeline_watchdog_handler(request)

    @functions_framework.http
    def start_pipeline(request: flask.Request):
        return start_pipeline_handler(request)

    @functions_framework.http
    def cancel_pipeline(request: flask.Request):
        return cancel_pipeline_handler(request)

    @functions_framework.http
    def pipeline_status(request: flask.Request):
        return pipeline_status_handler(request)

    @functions_framework.http
    def health_check(request: flask.Request):
        return health_check_handler(request)
