import pytest

from src.functions.mailbox_pipeline.core.contracts.config import PipelineConfig
from src.functions.mailbox_pipeline.core.contracts.jobs import JobKind
from src.functions.mailbox_pipeline.core.orchestration.config_loader import (
    build_pipeline_config,
    build_relay_settings,
    build_research_endpoint,
    build_supabase_settings,
)
from src.shared.utils.config_validator import ConfigurationError


def test_defaults():
    config = PipelineConfig()

    assert config.batch_size(JobKind.ANALYZE) == 100
    assert config.batch_size(JobKind.RESEARCH) == 3
    assert config.time_guard_seconds == pytest.approx(44.0)
    assert config.import_target == 1000
    assert config.worker_count(0) == 0
    assert config.worker_count(2500) == 1
    assert config.worker_count(2501) == 2
    assert config.worker_count(1_000_000) == 10


def test_environment_and_overrides(monkeypatch):
    monkeypatch.setenv("PIPELINE_CLASSIFY_BATCH_SIZE", "20")
    monkeypatch.setenv("PIPELINE_MAX_WORKERS", "4")
    monkeypatch.setenv("PIPELINE_ITEMS_PER_WORKER", "not-a-number")

    config = build_pipeline_config({"import_mode": "full", "batch_sizes": {"convert": 7}})

    assert config.batch_size(JobKind.CLASSIFY) == 20
    assert config.batch_size(JobKind.CONVERT) == 7
    assert config.max_workers == 4
    assert config.items_per_worker == 2500
    assert config.import_target == 30000


def test_invalid_values_become_configuration_errors():
    with pytest.raises(ConfigurationError):
        build_pipeline_config({"import_mode": "everything"})
    with pytest.raises(ConfigurationError):
        build_pipeline_config({"lock_ttl_seconds": 600})


def test_supabase_settings_require_url_and_key(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    with pytest.raises(ConfigurationError):
        build_supabase_settings()

    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.test")
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    monkeypatch.setenv("SUPABASE_KEY", "service-role-key")

    settings = build_supabase_settings({"jobs_table": "jobs_v2"})

    assert settings.key == "service-role-key"
    assert settings.jobs_table == "jobs_v2"
    assert settings.work_item_table == "email_import_queue"


def test_relay_settings(monkeypatch):
    monkeypatch.delenv("PIPELINE_FUNCTIONS_BASE_URL", raising=False)
    with pytest.raises(ConfigurationError):
        build_relay_settings()

    monkeypatch.setenv("PIPELINE_WORKER_TOKEN", "s3cret")
    settings = build_relay_settings({"functions_base_url": "https://region-project.functions.test"})

    assert settings.worker_token == "s3cret"
    assert settings.function_url("email-analyze") == "https://region-project.functions.test/email-analyze"


def test_research_endpoint_collects_extra_headers(monkeypatch):
    monkeypatch.delenv("RESEARCH_URL", raising=False)
    monkeypatch.delenv("RESEARCH_ENDPOINT", raising=False)
    with pytest.raises(ConfigurationError):
        build_research_endpoint()

    monkeypatch.setenv("RESEARCH_URL", "https://research.test/extract")
    monkeypatch.setenv("RESEARCH_API_KEY", "k-123")
    monkeypatch.setenv("RESEARCH_HEADER_X-Tenant", "acme")

    headers = build_research_endpoint().build_headers()

    assert headers["X-API-Key"] == "k-123"
    assert headers["X-Tenant"] == "acme"
