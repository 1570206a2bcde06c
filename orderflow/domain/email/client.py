from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from orderflow.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class SendResult:
    message_id: str
    raw: dict[str, Any] | None = None


class EmailSendError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class EmailClient(Protocol):
    def send(self, message: EmailMessage) -> SendResult:
        ...


class ResendEmailClient:
    """Transactional email over the Resend HTTP API."""

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.email_api_base_url.rstrip("/")
        self.timeout = max(1.0, float(self.settings.email_timeout_seconds))
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.email_api_key}",
            "Content-Type": "application/json",
        }

    def send(self, message: EmailMessage) -> SendResult:
        body = {
            "from": self.settings.email_from_address,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
            "tags": [{"name": key, "value": value} for key, value in message.tags.items()],
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/emails", headers=self._headers(), json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise EmailSendError(f"email provider timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise EmailSendError(
                f"email provider rejected message: status={status}",
                retryable=status >= 500 or status == 429,
            ) from exc
        except httpx.HTTPError as exc:
            raise EmailSendError(f"email provider unreachable: {exc}") from exc

        payload = response.json() if response.content else {}
        message_id = payload.get("id") if isinstance(payload, dict) else None
        if not message_id:
            raise EmailSendError("email provider response missing message id", retryable=False)
        return SendResult(message_id=str(message_id), raw=payload)


def build_email_client(settings: Settings | None = None) -> EmailClient | None:
    cfg = settings or get_settings()
    if not cfg.email_api_key:
        logger.info("email api key not configured; transactional email disabled")
        return None
    return ResendEmailClient(cfg)
