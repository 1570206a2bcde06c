from __future__ import annotations

from typing import Any


class WebhookError(Exception):
    status_code: int = 500
    code: str = "webhook_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class InvalidSignature(WebhookError):
    status_code = 400
    code = "invalid_signature"


class MalformedEvent(WebhookError):
    status_code = 400
    code = "malformed_event"


class ConfigurationError(WebhookError):
    status_code = 500
    code = "configuration_error"


class UnknownEventType(WebhookError):
    status_code = 200
    code = "unknown_event_type"


class PartialSideEffectFailure(WebhookError):
    """A side effect failed after the order itself was recorded."""

    status_code = 200
    code = "partial_side_effect_failure"


class OversellWarning(WebhookError):
    status_code = 200
    code = "oversell"


class RetryableStoreError(WebhookError):
    status_code = 500
    code = "retryable_failure"
