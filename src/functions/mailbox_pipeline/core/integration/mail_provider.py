"""Mail provider access (Aurinko REST API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..backoff.rate_limit import raise_for_rate_limit
from ..contracts.errors import MailProviderError, PhaseFatalError

logger = logging.getLogger(__name__)

AURINKO_API_BASE = "https://api.aurinko.io/v1"
FOLDERS = ("SENT", "INBOX")


@dataclass
class MailMessage:
    external_id: str
    thread_id: Optional[str]
    from_email: str
    from_name: Optional[str]
    to_emails: List[str]
    subject: str
    body: str
    received_at: Optional[str]
    body_html: Optional[str] = None

    @classmethod
    def from_api(cls, record: Dict[str, Any]) -> "MailMessage":
        sender = record.get("from") or {}
        return cls(
            external_id=str(record["id"]),
            thread_id=record.get("threadId"),
            from_email=(sender.get("address") or "").lower(),
            from_name=sender.get("name"),
            to_emails=[(entry.get("address") or "").lower() for entry in record.get("to") or []],
            subject=record.get("subject") or "",
            body=record.get("textBody") or record.get("bodySnippet") or "",
            received_at=record.get("receivedAt") or record.get("createdAt"),
            body_html=record.get("htmlBody"),
        )

    def to_row(self, folder: str) -> Dict[str, Any]:
        """Work item columns for this message as imported from ``folder``."""
        return {
            "external_id": self.external_id,
            "thread_id": self.thread_id or self.external_id,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "to_emails": self.to_emails,
            "subject": self.subject,
            "body": self.body,
            "body_html": self.body_html,
            "received_at": self.received_at,
            "direction": "outbound" if folder == "SENT" else "inbound",
        }


@dataclass
class MessagePage:
    messages: List[MailMessage] = field(default_factory=list)
    next_page_token: Optional[str] = None


class MailProvider(Protocol):
    def list_messages(self, folder: str, page_token: Optional[str], limit: int) -> MessagePage:
        ...

    def get_message(self, message_id: str) -> MailMessage:
        ...


class AurinkoMailClient:
    """Thin httpx client over the Aurinko email endpoints.

    Rate limits surface as ``RateLimitError``; an expired token is
    phase-fatal because no retry can fix it.
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = AURINKO_API_BASE,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> "AurinkoMailClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def list_messages(self, folder: str, page_token: Optional[str], limit: int) -> MessagePage:
        params: Dict[str, Any] = {"folder": folder, "limit": limit}
        if page_token:
            params["pageToken"] = page_token
        data = self._get("/email/messages", params=params)
        return MessagePage(
            messages=[MailMessage.from_api(record) for record in data.get("records") or []],
            next_page_token=data.get("nextPageToken"),
        )

    def get_message(self, message_id: str) -> MailMessage:
        return MailMessage.from_api(self._get(f"/email/messages/{message_id}"))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = self._client.get(path, params=params)
        raise_for_rate_limit(
            response.status_code,
            response.headers,
            body_text=response.text,
            source="mail provider",
        )
        if response.status_code == 401:
            raise PhaseFatalError("Email access token expired. Reconnect the mailbox.")
        if response.status_code >= 400:
            raise MailProviderError(
                f"Mail provider error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()


class MailboxCredentials:
    """Looks up the mailbox connected to a workspace."""

    def __init__(self, client, *, table_name: str = "email_provider_configs") -> None:
        self.client = client
        self.table_name = table_name

    def access_token(self, workspace_id: str) -> str:
        response = (
            self.client.table(self.table_name)
            .select("id,email_address")
            .eq("workspace_id", workspace_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise PhaseFatalError("Email not connected. Connect a mailbox first.")

        token = self.client.rpc("get_decrypted_access_token", {"config_id": rows[0]["id"]}).execute().data
        if not token:
            raise PhaseFatalError("Email access token is missing. Reconnect the mailbox.")
        return str(token)
