"""Configuration models for the mailbox pipeline."""

from __future__ import annotations

import math
from typing import Dict, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator

from .jobs import JobKind

IMPORT_TARGETS: Dict[str, int] = {
    "last_100": 100,
    "last_1000": 1000,
    "full": 30000,
}


class SupabaseSettings(BaseModel):
    """Settings required to reach Supabase tables and functions."""

    url: HttpUrl = Field(..., description="Supabase project URL")
    key: str = Field(..., min_length=10, description="Supabase service role key")
    schema: str = Field(default="public", description="Target database schema")
    jobs_table: str = Field(default="pipeline_jobs")
    work_item_table: str = Field(default="email_import_queue")
    site_table: str = Field(default="competitor_sites")
    lock_table: str = Field(default="pipeline_locks")
    progress_table: str = Field(default="email_import_progress")
    request_timeout: int = Field(default=30, ge=5, le=120)


class ServiceEndpointConfig(BaseModel):
    """HTTP endpoint definition for an external service call."""

    url: HttpUrl
    timeout_seconds: int = Field(default=60, ge=5, le=300)
    api_key: Optional[str] = Field(
        default=None,
        description="Optional API key sent via X-API-Key header",
    )
    authorization: Optional[str] = Field(
        default=None,
        description="Optional Authorization header value",
    )
    additional_headers: Dict[str, str] = Field(default_factory=dict)

    def build_headers(self) -> Dict[str, str]:
        """Return headers that should be attached to the request."""

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.authorization:
            headers["Authorization"] = self.authorization
        headers.update(self.additional_headers)
        return headers


class RelaySettings(BaseModel):
    """Where chained invocations are sent."""

    functions_base_url: HttpUrl = Field(..., description="Base URL the phase functions are deployed under")
    worker_token: Optional[str] = Field(
        default=None,
        description="Shared secret sent as x-pipeline-worker-token on chained calls",
    )
    ack_timeout_seconds: float = Field(
        default=1.5,
        gt=0,
        le=10,
        description="How long to wait for a chained call to be accepted before letting go",
    )

    def function_url(self, function_name: str) -> str:
        return f"{str(self.functions_base_url).rstrip('/')}/{function_name}"


class CompletionSettings(BaseModel):
    """Completion service used for classification and voice profiles."""

    api_key: str = Field(..., min_length=1)
    model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    timeout_seconds: int = Field(default=45, ge=5, le=300)
    base_url: Optional[str] = None


class PipelineConfig(BaseModel):
    """Operational thresholds shared by handlers, dispatcher and watchdog."""

    time_budget_seconds: float = Field(default=55.0, ge=5, le=540)
    time_guard_ratio: float = Field(
        default=0.8,
        gt=0,
        lt=1,
        description="Fraction of the budget after which an invocation stops claiming work",
    )
    max_batches_per_invocation: Optional[int] = Field(default=None, ge=1)
    batch_sizes: Dict[JobKind, int] = Field(
        default_factory=lambda: {
            JobKind.IMPORT: 50,
            JobKind.CLASSIFY: 50,
            JobKind.CONVERT: 50,
            JobKind.ANALYZE: 100,
            JobKind.RESEARCH: 3,
        }
    )
    completion_batch_size: int = Field(default=25, ge=1, le=200)
    stale_threshold_seconds: int = Field(default=480, ge=60)
    lock_ttl_seconds: int = Field(default=180, ge=10)
    max_retries: int = Field(default=3, ge=0, le=20)
    item_max_retries: int = Field(default=3, ge=1, le=20)
    items_per_worker: int = Field(default=2500, ge=1)
    max_workers: int = Field(default=10, ge=1, le=50)
    max_iterations: int = Field(default=200, ge=1)
    default_pause_seconds: float = Field(default=30.0, gt=0)
    import_mode: str = Field(default="last_1000")
    voice_sample_limit: int = Field(default=20, ge=1, le=100)
    min_voice_pairs: int = Field(default=5, ge=1)

    @field_validator("import_mode")
    @classmethod
    def _validate_import_mode(cls, value: str) -> str:
        if value not in IMPORT_TARGETS:
            msg = f"import_mode must be one of {', '.join(IMPORT_TARGETS)}"
            raise ValueError(msg)
        return value

    @field_validator("batch_sizes")
    @classmethod
    def _validate_batch_sizes(cls, value: Dict[JobKind, int]) -> Dict[JobKind, int]:
        for kind, size in value.items():
            if size < 1:
                msg = f"batch size for {kind.value} must be positive"
                raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _check_thresholds(self) -> "PipelineConfig":
        if self.lock_ttl_seconds >= self.stale_threshold_seconds:
            raise ValueError("lock_ttl_seconds must be shorter than stale_threshold_seconds")
        if self.stale_threshold_seconds <= self.time_budget_seconds:
            raise ValueError("stale_threshold_seconds must exceed time_budget_seconds")
        return self

    @property
    def time_guard_seconds(self) -> float:
        return self.time_budget_seconds * self.time_guard_ratio

    @property
    def import_target(self) -> int:
        return IMPORT_TARGETS[self.import_mode]

    def batch_size(self, kind: JobKind) -> int:
        return self.batch_sizes.get(kind, 50)

    def worker_count(self, total_items: int) -> int:
        """Workers to launch for ``total_items``; zero means nothing to dispatch."""
        if total_items <= 0:
            return 0
        return min(math.ceil(total_items / self.items_per_worker), self.max_workers)

    def snapshot(self) -> Dict[str, object]:
        """Return a serialisable snapshot for reporting."""

        return self.model_dump(mode="json")
