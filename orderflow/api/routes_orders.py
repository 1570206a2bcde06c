from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from orderflow.api.routes_webhooks import get_email_client
from orderflow.core.security import Actor, get_actor, require_operator
from orderflow.core.timeutils import isoformat_z
from orderflow.domain.customers.linker import customer_aliases
from orderflow.domain.email import ledger
from orderflow.domain.email.client import EmailClient
from orderflow.domain.email.sender import send_order_email
from orderflow.domain.email.templates import EMAIL_KINDS
from orderflow.domain.fulfillment.carrier import shipping_log_for
from orderflow.domain.inventory.reservations import reservations_for
from orderflow.domain.orders.repository import get_order, list_order_events
from orderflow.persistence.models import OrderModel
from orderflow.persistence.pg import get_session, session_scope

router = APIRouter(tags=["orders"])


def order_view(session: Session, order: OrderModel) -> dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "status_changed_at": isoformat_z(order.status_changed_at),
        "payment_ref": order.payment_ref,
        "payment_status": order.payment_status,
        "checkout_session_id": order.checkout_session_id,
        "customer_ref": order.customer_ref,
        "customer_aliases": customer_aliases(session, order.customer_ref) if order.customer_ref else [],
        "invoice_ref": order.invoice_ref,
        "email": order.customer_email,
        "cart": order.cart,
        "totals": {
            "currency": order.currency,
            "subtotal_cents": order.subtotal_cents,
            "discount_cents": order.discount_cents,
            "tax_cents": order.tax_cents,
            "shipping_cents": order.shipping_cents,
            "total_cents": order.total_cents,
            "amount_refunded_cents": order.amount_refunded_cents,
        },
        "payment_failure": {"code": order.payment_failure_code, "message": order.payment_failure_message},
        "shipping_address": order.shipping_address,
        "billing_address": order.billing_address,
        "inventory_warning": order.inventory_warning,
        "fulfillment": {
            "carrier": order.carrier,
            "tracking_number": order.tracking_number,
            "tracking_url": order.tracking_url,
            "shipment_id": order.shipment_id,
            "label_url": order.label_url,
            "status": order.fulfillment_status,
            "last_event_at": isoformat_z(order.fulfillment_event_at),
            "shipped_at": isoformat_z(order.shipped_at),
            "delivered_at": isoformat_z(order.delivered_at),
        },
        "event_log": [
            {
                "entry_key": row.entry_key,
                "event_type": row.event_type,
                "provider_event_id": row.provider_event_id,
                "status": row.status,
                "label": row.label,
                "message": row.message,
                "amount_cents": row.amount_cents,
                "details": row.details,
                "occurred_at": isoformat_z(row.occurred_at),
            }
            for row in list_order_events(session, order.id)
        ],
        "email_log": [
            {
                "id": row.id,
                "email_kind": row.email_kind,
                "status": row.status,
                "provider_message_id": row.provider_message_id,
                "error": row.error,
                "retryable": row.retryable,
                "reserved_at": isoformat_z(row.reserved_at),
                "sent_at": isoformat_z(row.sent_at),
            }
            for row in ledger.entries_for(session, order.id)
        ],
        "reservations": [
            {"sku": row.sku, "quantity": row.quantity, "tracked": row.tracked, "reserved_at": isoformat_z(row.reserved_at)}
            for row in reservations_for(session, order.id)
        ],
        "shipping_log": [
            {
                "status": row.status,
                "message": row.message,
                "applied": row.applied,
                "occurred_at": isoformat_z(row.occurred_at),
            }
            for row in shipping_log_for(session, order.id)
        ],
    }


@router.get("/orders/{order_id}")
def read_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    order = get_order(session, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    return order_view(session, order)


def _rejected_permanently(order_id: str, email_kind: str) -> bool:
    with session_scope() as session:
        return ledger.permanently_failed(session, order_id, email_kind)


@router.post("/orders/{order_id}/emails/{email_kind}/resend")
async def resend_order_email(
    order_id: str,
    email_kind: str,
    force: bool = False,
    actor: Actor = Depends(require_operator),
    email_client: EmailClient | None = Depends(get_email_client),
):
    if email_kind not in EMAIL_KINDS:
        raise HTTPException(status_code=400, detail=f"unsupported email kind: {email_kind}")
    if email_client is None:
        raise HTTPException(status_code=503, detail="transactional email is not configured")
    if not force and await run_in_threadpool(_rejected_permanently, order_id, email_kind):
        raise HTTPException(
            status_code=409,
            detail=f"last {email_kind} attempt was rejected by the provider; pass force=true to send anyway",
        )

    outcome = await run_in_threadpool(send_order_email, None, email_client, order_id, email_kind)
    if outcome.status == "order_not_found":
        raise HTTPException(status_code=404, detail="order not found")
    if outcome.status == "duplicate":
        raise HTTPException(status_code=409, detail=f"{email_kind} already sent or in flight")

    body: dict[str, Any] = {"order_id": order_id, "email_kind": email_kind, "status": outcome.status}
    if outcome.message_id:
        body["provider_message_id"] = outcome.message_id
    if outcome.failure is not None:
        body["error"] = outcome.failure.to_dict()
    return body
