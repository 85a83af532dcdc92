"""Wiring of stores, services and handlers for one deployment.

Every HTTP entry point and the local CLI go through :class:`PipelineRuntime`:
it owns the Supabase client and the relay, builds a fresh phase handler per
invocation and routes a ``(function_name, payload)`` pair to the right
operation.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from src.shared.db import SupabaseConfig, get_supabase_client

from ..contracts.config import PipelineConfig, SupabaseSettings
from ..contracts.errors import InvalidRequestError
from ..contracts.functions import (
    DISPATCHER_FUNCTION,
    HANDLER_FUNCTIONS,
    WATCHDOG_FUNCTION,
    entry_function,
)
from ..contracts.jobs import PHASE_ORDER, JobKind, utc_now
from ..contracts.requests import StartPipelineRequest, TriggerRequest
from ..db.job_store import SUPERSEDED_MESSAGE, JobStore
from ..db.lock_store import ExecutionLockStore
from ..db.progress_writer import ProgressWriter
from ..db.work_items import WorkItemRepository
from ..dispatch.dispatcher import PartitionDispatcher
from ..handlers.analyze import AnalyzeHandler
from ..handlers.base import INPUT_KEY, PhaseDependencies, PhaseHandler
from ..handlers.classify import ClassifyHandler
from ..handlers.convert import ConvertHandler
from ..handlers.import_phase import ImportHandler
from ..handlers.research import ResearchHandler
from ..integration.completion import CompletionService, OpenAICompletionClient
from ..integration.mail_provider import AURINKO_API_BASE, AurinkoMailClient, MailboxCredentials, MailProvider
from ..integration.research import HttpResearchClient, ResearchService
from ..monitoring.watchdog import Watchdog
from ..relay.chainer import HttpInvocationTransport, InvocationTransport, RelayChainer
from .config_loader import (
    build_completion_settings,
    build_pipeline_config,
    build_relay_settings,
    build_research_endpoint,
    build_supabase_settings,
)

logger = logging.getLogger(__name__)

_KIND_BY_FUNCTION = {name: kind for kind, name in HANDLER_FUNCTIONS.items()}


class PipelineRuntime:
    def __init__(
        self,
        client,
        config: PipelineConfig,
        transport: InvocationTransport,
        *,
        settings: Optional[SupabaseSettings] = None,
        completion_factory: Optional[Callable[[], CompletionService]] = None,
        research_factory: Optional[Callable[[], ResearchService]] = None,
        mail_factory: Optional[Callable[[str], MailProvider]] = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.config = config
        self.transport = transport
        self.completion_factory = completion_factory or _default_completion
        self.research_factory = research_factory or _default_research
        self.mail_factory = mail_factory or self._default_mail
        self.timer = timer

        tables = settings.model_dump() if settings is not None else _default_tables()
        self.jobs = JobStore(client, table_name=tables["jobs_table"], clock=clock)
        self.items = WorkItemRepository(client, table_name=tables["work_item_table"], clock=clock)
        self.sites = WorkItemRepository(
            client,
            table_name=tables["site_table"],
            order_columns=("created_at", "external_id"),
            clock=clock,
        )
        self.locks = ExecutionLockStore(
            client,
            ttl_seconds=config.lock_ttl_seconds,
            table_name=tables["lock_table"],
            clock=clock,
        )
        self.progress = ProgressWriter(
            client,
            stale_after_seconds=config.stale_threshold_seconds,
            table_name=tables["progress_table"],
            clock=clock,
        )
        self.chainer = RelayChainer(transport, max_iterations=config.max_iterations)

    @classmethod
    def from_env(
        cls,
        overrides: Optional[Dict[str, object]] = None,
        *,
        transport: Optional[InvocationTransport] = None,
    ) -> "PipelineRuntime":
        """Build a runtime from ``SUPABASE_*`` and ``PIPELINE_*`` variables.

        Chained invocations go over HTTP unless another ``transport`` is given.
        """
        config = build_pipeline_config(overrides)
        settings = build_supabase_settings()
        client = get_supabase_client(
            SupabaseConfig(
                url=str(settings.url),
                key=settings.key,
                schema=settings.schema,
                timeout_seconds=settings.request_timeout,
            )
        )
        if transport is None:
            transport = HttpInvocationTransport(build_relay_settings())
        return cls(client, config, transport, settings=settings)

    # ------------------------------------------------------------------
    # Building blocks
    # ------------------------------------------------------------------

    def dependencies(self) -> PhaseDependencies:
        return PhaseDependencies(
            jobs=self.jobs,
            locks=self.locks,
            progress=self.progress,
            chainer=self.chainer,
            config=self.config,
            timer=self.timer,
        )

    def handler(self, kind: JobKind) -> PhaseHandler:
        deps = self.dependencies()
        if kind is JobKind.IMPORT:
            return ImportHandler(deps, self.items, self.mail_factory)
        if kind is JobKind.CLASSIFY:
            return ClassifyHandler(deps, self.items, self.completion_factory())
        if kind is JobKind.CONVERT:
            return ConvertHandler(deps, self.items, self.client)
        if kind is JobKind.ANALYZE:
            return AnalyzeHandler(deps, self.items, self.completion_factory(), self.client)
        if kind is JobKind.RESEARCH:
            return ResearchHandler(deps, self.sites, self.research_factory(), self.client)
        raise ValueError(f"Unknown job kind: {kind}")

    def dispatcher(self) -> PartitionDispatcher:
        return PartitionDispatcher(self.jobs, self.items, self.progress, self.chainer, self.config)

    def watchdog(self) -> Watchdog:
        return Watchdog(self.jobs, self.locks, self.progress, self.chainer, self.config, timer=self.timer)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def invoke(self, function_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run one invocation of ``function_name`` and return its response body."""
        if function_name == WATCHDOG_FUNCTION:
            report = self.watchdog().sweep()
            return {"status": "complete", **report.to_dict()}

        request = TriggerRequest.model_validate(payload)
        if function_name == DISPATCHER_FUNCTION:
            return self.dispatcher().dispatch(request.workspace_id, request.job_id).to_response()

        kind = _KIND_BY_FUNCTION.get(function_name)
        if kind is None:
            raise InvalidRequestError(f"Unknown function: {function_name}")
        return self.handler(kind).run(request).to_response()

    def start_pipeline(self, request: StartPipelineRequest) -> Dict[str, Any]:
        if request.pipeline == "research":
            kind = JobKind.RESEARCH
            cursor: Dict[str, Any] = {}
        else:
            kind = JobKind.IMPORT
            cursor = {INPUT_KEY: {"import_mode": request.import_mode}}
            if request.reset:
                self._supersede_downstream(request.workspace_id)

        job = self.jobs.create_or_reset_job(request.workspace_id, kind, cursor=cursor, reset=request.reset)
        fired = self.chainer.fire(
            entry_function(kind),
            {"workspace_id": request.workspace_id, "job_id": job.id},
        )
        self.progress.report(job)
        logger.info("Started %s pipeline for workspace %s (job %s)", request.pipeline, request.workspace_id, job.id)
        return {"status": "started", "job": job.summary(), "invoked": fired}

    def _supersede_downstream(self, workspace_id: str) -> None:
        for job in self.jobs.list_active_jobs(workspace_id):
            if job.kind in PHASE_ORDER and job.kind is not JobKind.IMPORT:
                self.jobs.fail(job.id, SUPERSEDED_MESSAGE)

    def cancel_pipeline(self, workspace_id: str) -> Dict[str, Any]:
        cancelled = []
        for job in self.jobs.list_active_jobs(workspace_id):
            updated = self.jobs.cancel(job.id)
            if updated is not None:
                cancelled.append(updated.summary())
                self.progress.report(updated)
        return {"status": "cancelled", "cancelled": cancelled}

    def pipeline_status(self, workspace_id: str) -> Dict[str, Any]:
        active = self.jobs.list_active_jobs(workspace_id)
        recent = self.jobs.list_recent_jobs(workspace_id, limit=10)
        return {
            "status": "running" if active else "idle",
            "workspace_id": workspace_id,
            "active_jobs": [job.summary() for job in active],
            "recent_jobs": [job.summary() for job in recent],
        }

    def _default_mail(self, workspace_id: str) -> MailProvider:
        token = MailboxCredentials(self.client).access_token(workspace_id)
        return AurinkoMailClient(token, base_url=os.getenv("AURINKO_API_BASE", AURINKO_API_BASE))


def _default_tables() -> Dict[str, str]:
    defaults = SupabaseSettings.model_fields
    return {name: defaults[name].default for name in (
        "jobs_table", "work_item_table", "site_table", "lock_table", "progress_table"
    )}


def _default_completion() -> CompletionService:
    return OpenAICompletionClient(build_completion_settings())


def _default_research() -> ResearchService:
    return HttpResearchClient(build_research_endpoint())
