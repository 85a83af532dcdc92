"""Shared Supabase connection utilities.

Pipeline functions talk to Postgres exclusively through the Supabase
PostgREST client created here. Functions always run with the service role
key, sessions are never persisted, and every request carries an
``x-client-info`` header so database logs can be traced back to a function.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_KEY_VARIABLES = ("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY")


@dataclass
class SupabaseConfig:
    """Configuration for a service-role Supabase connection.

    Attributes:
        url: Supabase project URL
        key: Service role key
        schema: Database schema to use (default: public)
        client_name: Value reported in the ``x-client-info`` header
        timeout_seconds: PostgREST request timeout
    """

    url: str
    key: str
    schema: str = "public"
    client_name: str = "mailbox-pipeline"
    timeout_seconds: int = 30
    extra_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(
        cls,
        url_var: str = "SUPABASE_URL",
        schema_var: str = "SUPABASE_SCHEMA",
    ) -> SupabaseConfig:
        """Create configuration from environment variables.

        The key is read from ``SUPABASE_SERVICE_ROLE_KEY`` and falls back to
        ``SUPABASE_KEY``.

        Raises:
            ValueError: If the URL or key is not set
        """
        url = os.getenv(url_var)
        key = next((os.getenv(name) for name in _KEY_VARIABLES if os.getenv(name)), None)
        if not url or not key:
            raise ValueError(
                f"Missing required environment variables: {url_var} and/or "
                f"{' / '.join(_KEY_VARIABLES)}. Set them in your .env file or environment."
            )
        return cls(url=url, key=key, schema=os.getenv(schema_var, "public"))

    def headers(self) -> Dict[str, str]:
        headers = {"x-client-info": self.client_name}
        headers.update(self.extra_headers)
        return headers


def get_supabase_client(config: Optional[SupabaseConfig] = None):
    """Create a Supabase client for server-side use.

    Args:
        config: Optional SupabaseConfig. If None, loads from environment.

    Returns:
        Supabase client instance

    Example:
        >>> client = get_supabase_client()
        >>> client.table("pipeline_jobs").select("*").eq("status", "running").execute()
    """
    try:
        from supabase import ClientOptions, create_client
    except ImportError:
        raise ImportError(
            "supabase package is not installed. "
            "Install it with: pip install supabase"
        )

    if config is None:
        config = SupabaseConfig.from_env()

    logger.debug("Creating Supabase client for %s (schema=%s)", config.url, config.schema)
    options = ClientOptions(
        schema=config.schema,
        headers=config.headers(),
        auto_refresh_token=False,
        persist_session=False,
        postgrest_client_timeout=config.timeout_seconds,
    )
    return create_client(config.url, config.key, options=options)
