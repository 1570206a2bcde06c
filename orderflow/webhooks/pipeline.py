from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.errors import MalformedEvent, RetryableStoreError, WebhookError
from orderflow.persistence.pg import session_scope
from orderflow.webhooks import dedup
from orderflow.webhooks.context import PipelineContext, PipelineResult
from orderflow.webhooks.dispatcher import CARRIER_HANDLERS, PAYMENT_HANDLERS, Handler, dispatch
from orderflow.webhooks.events import WebhookEvent, parse_event, parse_payload
from orderflow.webhooks.verification import verify_signature

logger = logging.getLogger(__name__)


def _audit(source: str, event_type: str | None, event_id: str | None, status: str) -> None:
    logger.info("WEBHOOK_AUDIT source=%s event=%s id=%s status=%s", source, event_type, event_id, status)


class WebhookPipeline:
    """Verify, deduplicate, dispatch and settle a single webhook delivery."""

    def __init__(self, ctx: PipelineContext, source: str, secret: str | None, handlers: dict[str, Handler]):
        self.ctx = ctx
        self.source = source
        self.secret = secret
        self.handlers = handlers

    @classmethod
    def for_payments(cls, ctx: PipelineContext) -> WebhookPipeline:
        return cls(ctx, "payments", ctx.settings.payments_webhook_secret, PAYMENT_HANDLERS)

    @classmethod
    def for_carrier(cls, ctx: PipelineContext) -> WebhookPipeline:
        return cls(ctx, "carrier", ctx.settings.carrier_webhook_secret, CARRIER_HANDLERS)

    def _reject(self, exc: WebhookError, event: WebhookEvent | None = None) -> PipelineResult:
        _audit(self.source, event.type if event else None, event.id if event else None, f"rejected:{exc.code}")
        return PipelineResult(exc.status_code, {"received": False, **exc.to_dict()})

    def _release(self, event: WebhookEvent) -> None:
        try:
            with session_scope(self.ctx.session_factory) as session:
                dedup.release(session, self.source, event.id)
        except SQLAlchemyError:
            # The lease expiry lets a later delivery take the claim over.
            logger.exception("could not release claim: source=%s event=%s", self.source, event.id)

    def process(self, body: bytes, signature: str | None) -> PipelineResult:
        settings = self.ctx.settings
        try:
            verify_signature(
                body,
                signature,
                self.secret,
                tolerance_seconds=settings.signature_tolerance_seconds,
                bypass=settings.webhook_signature_bypass,
            )
            event = parse_event(body)
        except WebhookError as exc:
            return self._reject(exc)

        try:
            payload = parse_payload(event)
        except MalformedEvent as exc:
            return self._reject(exc, event)

        try:
            with session_scope(self.ctx.session_factory) as session:
                claim = dedup.claim(
                    session,
                    self.source,
                    event.id,
                    event.type,
                    lease_seconds=settings.dedup_lease_seconds,
                    payload_sha256=hashlib.sha256(body).hexdigest(),
                )
        except SQLAlchemyError as exc:
            logger.warning("dedup store unavailable: event=%s error=%s", event.id, exc)
            return self._reject(RetryableStoreError("dedup store unavailable"), event)

        if not claim.claimed:
            _audit(self.source, event.type, event.id, claim.state)
            body_out: dict[str, Any] = {"received": True, "type": event.type, "duplicate": True}
            if claim.state == dedup.BUSY:
                body_out["in_progress"] = True
            return PipelineResult(200, body_out)

        try:
            result = dispatch(self.handlers, self.ctx, event, payload)
        except MalformedEvent as exc:
            self._release(event)
            return self._reject(exc, event)
        except (SQLAlchemyError, RetryableStoreError) as exc:
            logger.warning("retryable failure handling event=%s: %s", event.id, exc)
            self._release(event)
            return self._reject(RetryableStoreError("store operation failed; retry later", event_id=event.id), event)
        except Exception:
            logger.exception("unhandled error processing event=%s type=%s", event.id, event.type)
            self._release(event)
            return PipelineResult(500, {"received": False, "error": "internal_error", "event_id": event.id})

        outcome = {"type": event.type, **result.to_dict()}
        try:
            with session_scope(self.ctx.session_factory) as session:
                dedup.complete(session, self.source, event.id, outcome)
        except SQLAlchemyError as exc:
            # Side effects are done; leaving the claim in progress lets the lease decide.
            logger.warning("could not mark event complete: event=%s error=%s", event.id, exc)
            return self._reject(RetryableStoreError("could not record completion", event_id=event.id), event)

        _audit(self.source, event.type, event.id, "ignored" if result.actions == ["ignored"] else "processed")
        return PipelineResult(200, {"received": True, **outcome})
