"""Transactional email through the Resend REST API."""

import base64
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ..config import get_settings
from ..logging import get_context_logger, log_email_sent

logger = get_context_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"


class EmailError(Exception):
    """Raised when Resend rejects or fails to send an email."""


class EmailAttachment(BaseModel):
    filename: str
    content: bytes


class EmailMessage(BaseModel):
    sender: str
    to: list[str]
    subject: str
    html: str
    attachments: list[EmailAttachment] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "html": self.html,
        }
        if self.attachments:
            payload["attachments"] = [
                {"filename": a.filename, "content": base64.b64encode(a.content).decode("ascii")}
                for a in self.attachments
            ]
        return payload


class EmailClient:
    """Sends email with Resend."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, api_key: str | None = None):
        self._http_client = http_client
        self.api_key = api_key if api_key is not None else get_settings().resend_api_key

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, message: EmailMessage, kind: str = "email") -> str | None:
        """Send an email.

        Args:
            message: The email
            kind: Label for the log line (invoice, reminder, new_case, ...)

        Returns:
            Resend message id

        Raises:
            EmailError: If Resend is not configured or rejects the email
        """
        if not self.api_key:
            raise EmailError("Email service not configured")

        try:
            response = await self.http_client.post(
                RESEND_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=message.to_payload(),
            )
        except httpx.HTTPError as e:
            raise EmailError(f"Failed to reach Resend: {e}") from e

        if response.status_code >= 400:
            raise EmailError(f"Resend rejected email ({response.status_code}): {response.text}")

        message_id = response.json().get("id")
        for recipient in message.to:
            log_email_sent(kind, recipient, message_id)
        return message_id


_email_client: EmailClient | None = None


def get_email_client() -> EmailClient:
    """Get the email client singleton."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
