"""Utility helpers to construct pipeline configuration from the environment."""

from __future__ import annotations

import os
from typing import Dict, Optional

from src.shared.utils.config_validator import (
    ConfigurationError,
    require_any_env,
    require_env,
)
from src.shared.utils.env import float_from_env, int_from_env

from ..contracts.config import (
    CompletionSettings,
    PipelineConfig,
    RelaySettings,
    ServiceEndpointConfig,
    SupabaseSettings,
)
from ..contracts.jobs import JobKind


def _override(overrides: Dict[str, object], key: str, default):
    value = overrides.get(key)
    return default if value is None else value


def build_pipeline_config(overrides: Optional[Dict[str, object]] = None) -> PipelineConfig:
    overrides = overrides or {}
    batch_sizes = {
        kind: int_from_env(f"PIPELINE_{kind.value.upper()}_BATCH_SIZE", default)
        for kind, default in PipelineConfig().batch_sizes.items()
    }
    for kind, size in (overrides.get("batch_sizes") or {}).items():
        try:
            batch_sizes[JobKind(kind)] = size
        except ValueError as exc:
            raise ConfigurationError(f"Unknown batch size kind: {kind}") from exc

    max_batches = overrides.get("max_batches_per_invocation")
    if max_batches is None:
        raw = os.getenv("PIPELINE_MAX_BATCHES_PER_INVOCATION")
        max_batches = int(raw) if raw and raw.isdigit() else None

    try:
        return PipelineConfig(
            time_budget_seconds=_override(
                overrides, "time_budget_seconds", float_from_env("PIPELINE_TIME_BUDGET_SECONDS", 55.0)
            ),
            time_guard_ratio=_override(
                overrides, "time_guard_ratio", float_from_env("PIPELINE_TIME_GUARD_RATIO", 0.8)
            ),
            max_batches_per_invocation=max_batches,
            batch_sizes=batch_sizes,
            completion_batch_size=_override(
                overrides, "completion_batch_size", int_from_env("PIPELINE_COMPLETION_BATCH_SIZE", 25)
            ),
            stale_threshold_seconds=_override(
                overrides, "stale_threshold_seconds", int_from_env("PIPELINE_STALE_THRESHOLD_SECONDS", 480)
            ),
            lock_ttl_seconds=_override(overrides, "lock_ttl_seconds", int_from_env("PIPELINE_LOCK_TTL_SECONDS", 180)),
            max_retries=_override(overrides, "max_retries", int_from_env("PIPELINE_MAX_RETRIES", 3)),
            item_max_retries=_override(overrides, "item_max_retries", int_from_env("PIPELINE_ITEM_MAX_RETRIES", 3)),
            items_per_worker=_override(overrides, "items_per_worker", int_from_env("PIPELINE_ITEMS_PER_WORKER", 2500)),
            max_workers=_override(overrides, "max_workers", int_from_env("PIPELINE_MAX_WORKERS", 10)),
            max_iterations=_override(overrides, "max_iterations", int_from_env("PIPELINE_MAX_ITERATIONS", 200)),
            default_pause_seconds=_override(
                overrides, "default_pause_seconds", float_from_env("PIPELINE_DEFAULT_PAUSE_SECONDS", 30.0)
            ),
            import_mode=_override(overrides, "import_mode", os.getenv("PIPELINE_IMPORT_MODE", "last_1000")),
            voice_sample_limit=_override(
                overrides, "voice_sample_limit", int_from_env("PIPELINE_VOICE_SAMPLE_LIMIT", 20)
            ),
            min_voice_pairs=_override(overrides, "min_voice_pairs", int_from_env("PIPELINE_MIN_VOICE_PAIRS", 5)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc


def build_supabase_settings(overrides: Optional[Dict[str, object]] = None) -> SupabaseSettings:
    """Build Supabase settings with validation."""
    overrides = overrides or {}
    try:
        url = overrides.get("url") or require_env("SUPABASE_URL", "Supabase project URL")
        key = overrides.get("key") or require_any_env(
            ["SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY"],
            "Supabase service role key",
        )
    except ConfigurationError as exc:
        raise ConfigurationError(
            f"{exc}\nRequired for the mailbox pipeline. "
            "See .env.example for configuration template."
        )

    return SupabaseSettings(
        url=url,
        key=key,
        schema=overrides.get("schema") or os.getenv("SUPABASE_SCHEMA", "public"),
        jobs_table=overrides.get("jobs_table") or os.getenv("PIPELINE_JOBS_TABLE", "pipeline_jobs"),
        work_item_table=overrides.get("work_item_table") or os.getenv("PIPELINE_WORK_ITEM_TABLE", "email_import_queue"),
        site_table=overrides.get("site_table") or os.getenv("PIPELINE_SITE_TABLE", "competitor_sites"),
        lock_table=overrides.get("lock_table") or os.getenv("PIPELINE_LOCK_TABLE", "pipeline_locks"),
        progress_table=overrides.get("progress_table") or os.getenv("PIPELINE_PROGRESS_TABLE", "email_import_progress"),
        request_timeout=int_from_env("SUPABASE_REQUEST_TIMEOUT", 30),
    )


def build_relay_settings(overrides: Optional[Dict[str, object]] = None) -> RelaySettings:
    overrides = overrides or {}
    base_url = overrides.get("functions_base_url") or os.getenv("PIPELINE_FUNCTIONS_BASE_URL")
    if not base_url:
        raise ConfigurationError(
            "Missing required environment variable: PIPELINE_FUNCTIONS_BASE_URL "
            "(base URL the phase functions are deployed under)"
        )
    return RelaySettings(
        functions_base_url=base_url,
        worker_token=overrides.get("worker_token") or os.getenv("PIPELINE_WORKER_TOKEN"),
        ack_timeout_seconds=float_from_env("PIPELINE_ACK_TIMEOUT_SECONDS", 1.5),
    )


def build_completion_settings(overrides: Optional[Dict[str, object]] = None) -> CompletionSettings:
    overrides = overrides or {}
    api_key = overrides.get("api_key") or require_env("OPENAI_API_KEY", "completion service key")
    return CompletionSettings(
        api_key=api_key,
        model=overrides.get("model") or os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        temperature=float_from_env("OPENAI_TEMPERATURE", 0.0),
        timeout_seconds=int_from_env("OPENAI_TIMEOUT_SECONDS", 45),
        base_url=overrides.get("base_url") or os.getenv("OPENAI_BASE_URL"),
    )


def build_research_endpoint(override: Optional[Dict[str, object]] = None) -> ServiceEndpointConfig:
    """Endpoint of the FAQ extraction service (``RESEARCH_*`` variables)."""
    if isinstance(override, ServiceEndpointConfig):
        return override
    override = override or {}
    url = override.get("url") or os.getenv("RESEARCH_URL") or os.getenv("RESEARCH_ENDPOINT")
    if not url:
        raise ConfigurationError("Missing required environment variable: RESEARCH_URL (FAQ extraction service)")
    additional_headers = {
        key[len("RESEARCH_HEADER_"):]: value
        for key, value in os.environ.items()
        if key.startswith("RESEARCH_HEADER_")
    }
    additional_headers.update(override.get("additional_headers") or {})
    return ServiceEndpointConfig(
        url=url,
        timeout_seconds=int(override.get("timeout_seconds") or int_from_env("RESEARCH_TIMEOUT", 60)),
        api_key=override.get("api_key") or os.getenv("RESEARCH_API_KEY"),
        authorization=override.get("authorization") or os.getenv("RESEARCH_AUTHORIZATION"),
        additional_headers=additional_headers,
    )

