from __future__ import annotations

import logging
from typing import Any, Callable

from orderflow.core.errors import UnknownEventType
from orderflow.webhooks import handlers
from orderflow.webhooks.context import HandlerResult, PipelineContext
from orderflow.webhooks.events import WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[PipelineContext, WebhookEvent, Any], HandlerResult]

PAYMENT_HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": handlers.handle_checkout_completed,
    "checkout.session.async_payment_succeeded": handlers.handle_checkout_completed,
    "checkout.session.async_payment_failed": handlers.handle_async_payment_failed,
    "checkout.session.expired": handlers.handle_checkout_expired,
    "payment_intent.succeeded": handlers.handle_payment_succeeded,
    "payment_intent.canceled": handlers.handle_payment_canceled,
    "payment_intent.payment_failed": handlers.handle_payment_failed,
    "charge.refunded": handlers.handle_charge_refunded,
    "charge.refund.created": handlers.handle_refund_updated,
    "charge.refund.updated": handlers.handle_refund_updated,
    "charge.dispute.created": handlers.handle_dispute_created,
    "charge.dispute.closed": handlers.handle_dispute_closed,
    "coupon.created": handlers.handle_coupon,
    "coupon.updated": handlers.handle_coupon,
    "coupon.deleted": handlers.handle_coupon,
    "customer.created": handlers.handle_customer,
    "customer.updated": handlers.handle_customer,
    "customer.deleted": handlers.handle_customer,
    "invoice.finalized": handlers.handle_invoice,
    "invoice.paid": handlers.handle_invoice,
    "invoice.payment_failed": handlers.handle_invoice,
    "invoice.voided": handlers.handle_invoice,
    "invoice.updated": handlers.handle_invoice,
}

CARRIER_HANDLERS: dict[str, Handler] = {
    "tracker.created": handlers.handle_tracker,
    "tracker.updated": handlers.handle_tracker,
}


def dispatch(
    table: dict[str, Handler],
    ctx: PipelineContext,
    event: WebhookEvent,
    payload: Any,
) -> HandlerResult:
    """Route an event to exactly one handler; unknown types are acknowledged as no-ops."""
    handler = table.get(event.type)
    if handler is None:
        ignored = UnknownEventType("no handler for event type", event_type=event.type, event_id=event.id)
        logger.info("ignoring event: %s", ignored.to_dict())
        return HandlerResult(actions=["ignored"])
    return handler(ctx, event, payload)
