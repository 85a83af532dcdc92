"""Deployment wrapper for the mailbox pipeline Cloud Functions.

Each function is deployed from the repository root with ``--entry-point`` set
to one of the names below; they all share one runtime per instance.
"""

from __future__ import annotations

import sys
from pathlib import Path

import flask

project_root = Path(__file__).resolve().parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.functions.mailbox_pipeline.functions.main import (
    cancel_pipeline_handler,
    classify_dispatcher_handler,
    competitor_research_handler,
    email_analyze_handler,
    email_classify_handler,
    email_convert_handler,
    email_import_handler,
    health_check_handler,
    pipeline_status_handler,
    pipeline_watchdog_handler,
    start_pipeline_handler,
)


def email_import(request: flask.Request) -> flask.Response:
    return email_import_handler(request)


def email_classify(request: flask.Request) -> flask.Response:
    return email_classify_handler(request)


def email_convert(request: flask.Request) -> flask.Response:
    return email_convert_handler(request)


def email_analyze(request: flask.Request) -> flask.Response:
    return email_analyze_handler(request)


def competitor_research(request: flask.Request) -> flask.Response:
    return competitor_research_handler(request)


def classify_dispatcher(request: flask.Request) -> flask.Response:
    return classify_dispatcher_handler(request)


def pipeline_watchdog(request: flask.Request) -> flask.Response:
    return pipeline_watchdog_handler(request)


def start_pipeline(request: flask.Request) -> flask.Response:
    return start_pipeline_handler(request)


def cancel_pipeline(request: flask.Request) -> flask.Response:
    return cancel_pipeline_handler(request)


def pipeline_status(request: flask.Request) -> flask.Response:
    return pipeline_status_handler(request)


def health_check(request: flask.Request) -> flask.Response:
    return health_check_handler(request)
