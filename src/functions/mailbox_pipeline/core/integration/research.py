"""Competitor research extraction service."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..backoff.rate_limit import raise_for_rate_limit
from ..contracts.config import ServiceEndpointConfig
from ..contracts.errors import ResearchServiceError

logger = logging.getLogger(__name__)


class ResearchService(Protocol):
    def extract_faqs(self, site_url: str) -> List[Dict[str, str]]:
        """Return ``[{"question": ..., "answer": ...}]`` found on ``site_url``."""
        ...


class HttpResearchClient:
    """Calls a scraping/extraction endpoint that returns FAQs for a site."""

    def __init__(
        self,
        endpoint: ServiceEndpointConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = httpx.Client(
            timeout=endpoint.timeout_seconds,
            headers=endpoint.build_headers(),
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    def extract_faqs(self, site_url: str) -> List[Dict[str, str]]:
        response = self._client.post(str(self.endpoint.url), json={"url": site_url})
        raise_for_rate_limit(
            response.status_code,
            response.headers,
            body_text=response.text,
            source="research service",
        )
        if response.status_code >= 400:
            raise ResearchServiceError(f"Extraction failed for {site_url}: HTTP {response.status_code}")

        payload: Any = response.json()
        faqs = payload.get("faqs") if isinstance(payload, dict) else payload
        if not isinstance(faqs, list):
            raise ResearchServiceError(f"Extraction for {site_url} returned no FAQ list")
        cleaned = []
        for entry in faqs:
            if not isinstance(entry, dict):
                continue
            question = str(entry.get("question") or "").strip()
            if question:
                cleaned.append({"question": question, "answer": str(entry.get("answer") or "").strip()})
        logger.debug("Extracted %d FAQs from %s", len(cleaned), site_url)
        return cleaned
