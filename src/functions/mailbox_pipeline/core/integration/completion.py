"""Completion service: email classification and voice profiles via OpenAI."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import APIConnectionError, APIStatusError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError

from ..backoff.rate_limit import RateLimited, RateLimitError, classify_response
from ..contracts.config import CompletionSettings
from ..contracts.errors import CompletionServiceError

logger = logging.getLogger(__name__)

CATEGORIES = (
    "inquiry",
    "booking",
    "quote",
    "complaint",
    "follow_up",
    "spam",
    "notification",
    "personal",
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


@dataclass(frozen=True)
class ClassificationInput:
    item_id: str
    from_email: str
    subject: str
    snippet: str


@dataclass(frozen=True)
class Classification:
    category: str
    requires_reply: bool
    confidence: float = 0.8


class CompletionService(Protocol):
    def classify(self, items: Sequence[ClassificationInput]) -> Dict[str, Classification]:
        """Classify ``items``; ids missing from the result count as item failures."""
        ...

    def derive_voice_profile(self, samples: Sequence[Dict[str, Any]], stats: Dict[str, Any]) -> Dict[str, Any]:
        ...


def extract_json(text: Optional[str]) -> Any:
    """Parse JSON from a model reply, tolerating a fenced code block."""
    if not text:
        raise CompletionServiceError("Empty completion response")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    match = _FENCED_JSON.search(text)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass
    raise CompletionServiceError(f"Completion response is not JSON: {text[:200]}")


def build_classification_prompt(items: Sequence[ClassificationInput]) -> str:
    lines = [
        f"{index}|{item.from_email}|{item.subject or '(none)'}|{item.snippet[:150]}"
        for index, item in enumerate(items)
    ]
    return (
        f"Classify each email. Categories: {', '.join(CATEGORIES)}.\n\n"
        'Return a JSON object: {"results": [{"i": 0, "c": "inquiry", "r": true, "p": 0.9}]}\n'
        "Where: i=index, c=category, r=requires_reply, p=confidence between 0 and 1.\n\n"
        "EMAILS (format: index|from|subject|snippet):\n" + "\n".join(lines)
    )


def parse_classifications(payload: Any, items: Sequence[ClassificationInput]) -> Dict[str, Classification]:
    """Map the model's indexed answers back to item ids; drops anything invalid."""
    entries = payload.get("results") if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise CompletionServiceError("Classification response has no result list")

    results: Dict[str, Classification] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            index = int(entry.get("i"))
        except (TypeError, ValueError):
            continue
        category = str(entry.get("c") or "").strip().lower()
        if not 0 <= index < len(items) or category not in CATEGORIES:
            continue
        try:
            confidence = float(entry.get("p", 0.8))
        except (TypeError, ValueError):
            confidence = 0.8
        results[items[index].item_id] = Classification(
            category=category,
            requires_reply=bool(entry.get("r", False)),
            confidence=max(0.0, min(1.0, confidence)),
        )
    return results


class OpenAICompletionClient:
    """Chat-completions backed implementation of :class:`CompletionService`."""

    def __init__(self, settings: CompletionSettings, *, client: Optional[OpenAI] = None) -> None:
        self.settings = settings
        self._client = client or OpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=float(settings.timeout_seconds),
            max_retries=0,
        )

    def classify(self, items: Sequence[ClassificationInput]) -> Dict[str, Classification]:
        if not items:
            return {}
        text = self._complete(
            "You triage a small business inbox. Answer with JSON only.",
            build_classification_prompt(items),
        )
        results = parse_classifications(extract_json(text), items)
        if len(results) < len(items):
            logger.info("Model classified %d of %d emails", len(results), len(items))
        return results

    def derive_voice_profile(self, samples: Sequence[Dict[str, Any]], stats: Dict[str, Any]) -> Dict[str, Any]:
        examples = "\n\n".join(
            f"CUSTOMER: {sample.get('inbound', '')[:400]}\nREPLY: {sample.get('outbound', '')[:600]}"
            for sample in samples
        )
        prompt = (
            "Describe how this business writes email replies.\n"
            'Return a JSON object with keys "tone", "formality" (1-10), "greetings", '
            '"signoffs", "common_phrases", "avg_reply_length" and "summary".\n\n'
            f"Reply statistics: {json.dumps(stats, ensure_ascii=False)}\n\n"
            f"Examples:\n{examples}"
        )
        payload = extract_json(self._complete("You analyse writing style. Answer with JSON only.", prompt))
        if not isinstance(payload, dict):
            raise CompletionServiceError("Voice profile response is not an object")
        return payload

    def _complete(self, system_prompt: str, prompt: str) -> str:
        try:
            response = self._client.chat.completions.create(
                model=self.settings.model,
                temperature=self.settings.temperature,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )
        except OpenAIRateLimitError as exc:
            headers = getattr(getattr(exc, "response", None), "headers", None)
            decision = classify_response(429, headers, body_text=str(exc))
            delay = decision.retry_after_seconds if isinstance(decision, RateLimited) else None
            raise RateLimitError("completion service rate limited", retry_after_seconds=delay or 30.0) from exc
        except (APIConnectionError, APIStatusError) as exc:
            raise CompletionServiceError(f"Completion request failed: {exc}") from exc

        choices = getattr(response, "choices", None) or []
        if not choices:
            raise CompletionServiceError("Completion response has no choices")
        return choices[0].message.content or ""
