from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orderflow.core.errors import OversellWarning
from orderflow.core.timeutils import now_utc
from orderflow.domain.carts.expired import record_expired_checkout, record_recovered_checkout
from orderflow.domain.customers.linker import (
    link_customer,
    link_invoice,
    note_customer_deleted,
    recompute_metrics,
    sync_customer,
)
from orderflow.domain.discounts.sync import sync_coupon
from orderflow.domain.email.sender import EmailOutcome, send_order_email
from orderflow.domain.fulfillment.carrier import apply_tracker_update
from orderflow.domain.inventory.reservations import reserve_order
from orderflow.domain.orders.addresses import normalize_address
from orderflow.domain.orders.aggregates import CustomerContact, OrderDraft
from orderflow.domain.orders.materializer import materialize_checkout
from orderflow.domain.orders.repository import (
    TransitionResult,
    append_order_event,
    apply_status,
    create_order_if_absent,
    fill_missing,
    find_by_checkout_session,
    find_by_payment_ref,
    get_order,
    patch_order,
    raise_refunded_amount,
    resolve_dispute,
)
from orderflow.domain.orders.status import REVENUE_STATUSES, OrderStatus, dispute_outcome, is_at_or_past
from orderflow.persistence.models import InvoiceModel, OrderEventModel, OrderModel
from orderflow.persistence.pg import insert_if_absent, session_scope
from orderflow.webhooks.context import HandlerResult, PipelineContext
from orderflow.webhooks.events import (
    ChargePayload,
    CheckoutSessionPayload,
    CouponPayload,
    CustomerPayload,
    DisputePayload,
    InvoicePayload,
    PaymentIntentPayload,
    RefundPayload,
    TrackerPayload,
    WebhookEvent,
)

logger = logging.getLogger(__name__)


def _entry_key(event: WebhookEvent, suffix: str | None = None) -> str:
    return f"{event.id}:{suffix or event.type}"


def _log_event(
    session: Session,
    order: OrderModel,
    event: WebhookEvent,
    *,
    label: str,
    status: str | None = None,
    amount_cents: int | None = None,
    suffix: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    append_order_event(
        session,
        order.id,
        _entry_key(event, suffix),
        event.type if suffix is None else suffix,
        event.created_at,
        provider_event_id=event.id,
        status=status,
        label=label,
        amount_cents=amount_cents,
        currency=order.currency,
        details=details,
    )


def _is_paid_or_later(status: str) -> bool:
    return is_at_or_past(status, OrderStatus.PAID)


def _reserve_inventory(session: Session, order_id: str, event: WebhookEvent, result: HandlerResult) -> None:
    order = get_order(session, order_id)
    reservation = reserve_order(session, order_id, order.cart or [])
    if reservation.skipped:
        return
    result.actions.append("inventory_reserved")
    if reservation.untracked:
        logger.info("untracked skus on order=%s: %s", order_id, ",".join(reservation.untracked))
    if reservation.has_oversell:
        warning = OversellWarning("stock went negative", order_id=order_id, skus=dict(reservation.oversold))
        patch_order(session, order_id, inventory_warning=reservation.warning(now_utc()))
        _log_event(session, order, event, label="Inventory oversold", suffix="inventory_oversell", details=warning.to_dict())
        result.warnings.append(warning.to_dict())


def _send(ctx: PipelineContext, order_id: str, kind: str, event: WebhookEvent, result: HandlerResult) -> EmailOutcome:
    outcome = send_order_email(ctx.session_factory, ctx.email_client, order_id, kind, provider_event_id=event.id)
    if outcome.status == "sent":
        result.actions.append(f"email_sent:{kind}")
    elif outcome.failure is not None:
        result.warnings.append(outcome.failure.to_dict())
    return outcome


def _recompute_for(session: Session, order_id: str) -> None:
    customer_ref = session.scalar(select(OrderModel.customer_ref).where(OrderModel.id == order_id))
    if customer_ref:
        recompute_metrics(session, customer_ref)


def _record_checkout(
    ctx: PipelineContext,
    event: WebhookEvent,
    draft: OrderDraft,
    result: HandlerResult,
) -> tuple[str, TransitionResult]:
    with session_scope(ctx.session_factory) as session:
        order, created = create_order_if_absent(session, draft, ctx.settings.order_number_prefix)
        result.order_id = order.id
        if created:
            result.actions.append("order_created")

        _log_event(
            session,
            order,
            event,
            label="Checkout completed" if created else "Checkout event applied",
            status=draft.target_status,
            amount_cents=draft.totals.total_cents,
            details={"dropped_lines": draft.dropped_lines, "order_number": order.order_number},
        )
        if not draft.totals.consistent:
            _log_event(
                session,
                order,
                event,
                label="Provider totals inconsistent",
                suffix="totals_mismatch",
                details={
                    "total_cents": draft.totals.total_cents,
                    "expected_total_cents": draft.totals.expected_total_cents,
                },
            )
        for dropped in draft.dropped_lines:
            result.warnings.append({"error": "line_dropped", **dropped})

        transition = apply_status(session, order.id, draft.target_status, event.created_at)
        if transition.applied:
            result.actions.append(f"status:{transition.to_status}")

        link = link_customer(session, order.id, draft.contact)
        if link is not None:
            result.actions.append(f"customer_linked:{link.matched_by}")
        if draft.invoice_ref:
            link_invoice(session, order.id, draft.invoice_ref)
            result.actions.append("invoice_linked")

        current = get_order(session, order.id)
        if _is_paid_or_later(current.status):
            _reserve_inventory(session, order.id, event, result)
        return order.id, transition


def _mark_cart_recovered(ctx: PipelineContext, event: WebhookEvent, draft: OrderDraft, order_id: str, result: HandlerResult) -> None:
    try:
        with session_scope(ctx.session_factory) as session:
            recovered = record_recovered_checkout(
                session, draft.cart_id, draft.checkout_session_id, order_id, event.id, event.created_at
            )
    except Exception as exc:  # isolated side effect
        logger.warning("failed to mark cart recovered: order=%s error=%s", order_id, exc)
        result.warnings.append({"error": "cart_recovery_failed", "detail": str(exc)})
        return
    if recovered is not None and recovered.appended:
        result.actions.append("cart_recovered")


def handle_checkout_completed(ctx: PipelineContext, event: WebhookEvent, payload: CheckoutSessionPayload) -> HandlerResult:
    result = HandlerResult()
    draft = materialize_checkout(payload, occurred_at=event.created_at, order_number_prefix=ctx.settings.order_number_prefix)
    order_id, _ = _record_checkout(ctx, event, draft, result)

    if draft.target_status != OrderStatus.EXPIRED.value:
        _mark_cart_recovered(ctx, event, draft, order_id, result)

    with session_scope(ctx.session_factory) as session:
        status = get_order(session, order_id).status
    if _is_paid_or_later(status):
        _send(ctx, order_id, "order_confirmation", event, result)
    return result


def handle_async_payment_failed(ctx: PipelineContext, event: WebhookEvent, payload: CheckoutSessionPayload) -> HandlerResult:
    result = HandlerResult()
    draft = materialize_checkout(payload, occurred_at=event.created_at, order_number_prefix=ctx.settings.order_number_prefix)
    draft.target_status = OrderStatus.CANCELLED.value
    _record_checkout(ctx, event, draft, result)
    return result


def handle_checkout_expired(ctx: PipelineContext, event: WebhookEvent, payload: CheckoutSessionPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        logged = record_expired_checkout(session, payload, event.id, event.created_at)
    if logged.appended:
        result.actions.append("cart_expired_logged")
    return result


def _order_for_payment(session: Session, payment_ref: str | None) -> OrderModel | None:
    if not payment_ref:
        return None
    return find_by_payment_ref(session, payment_ref)


def handle_payment_succeeded(ctx: PipelineContext, event: WebhookEvent, payload: PaymentIntentPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.id)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        transition = apply_status(session, order.id, OrderStatus.PAID, event.created_at)
        _log_event(session, order, event, label="Payment succeeded", status=OrderStatus.PAID.value, amount_cents=payload.amount)
        if transition.applied:
            result.actions.append("status:paid")
            patch_order(session, order.id, payment_status="paid")
            _reserve_inventory(session, order.id, event, result)
            _recompute_for(session, order.id)

    if transition.applied:
        _send(ctx, order.id, "order_confirmation", event, result)
    return result


def handle_payment_canceled(ctx: PipelineContext, event: WebhookEvent, payload: PaymentIntentPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.id)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        transition = apply_status(session, order.id, OrderStatus.CANCELLED, event.created_at)
        _log_event(
            session,
            order,
            event,
            label="Payment canceled",
            status=OrderStatus.CANCELLED.value,
            details={"reason": payload.cancellation_reason},
        )
        if transition.applied:
            result.actions.append("status:cancelled")
            code, message = _failure_diagnostics(payload)
            fill_missing(session, order.id, "payment_failure_code", code)
            fill_missing(session, order.id, "payment_failure_message", message)
            _recompute_for(session, order.id)
    return result


def _failure_diagnostics(payload: PaymentIntentPayload) -> tuple[str | None, str | None]:
    failure = payload.last_payment_error or {}
    code = str(failure.get("code") or failure.get("decline_code") or "").strip() or None
    message = str(failure.get("message") or payload.cancellation_reason or "").strip() or None
    return code, message


def _mark_payment_failed(
    session: Session,
    order: OrderModel,
    event: WebhookEvent,
    code: str | None,
    message: str | None,
    result: HandlerResult,
) -> None:
    _log_event(
        session,
        order,
        event,
        label="Payment failed",
        status=OrderStatus.CANCELLED.value,
        suffix="payment_failed",
        details={"failure_code": code, "failure_message": message},
    )
    if OrderStatus(order.status) in REVENUE_STATUSES:
        # A failed attempt after money was captured changes nothing on the order.
        logger.info("payment failure after capture ignored: order=%s status=%s", order.id, order.status)
        result.actions.append("payment_failure_ignored")
        return

    patch_order(session, order.id, payment_status="failed", payment_failure_code=code, payment_failure_message=message)
    result.actions.append("payment_failure_recorded")
    transition = apply_status(session, order.id, OrderStatus.CANCELLED, event.created_at)
    if transition.applied:
        result.actions.append("status:cancelled")
        _recompute_for(session, order.id)


def handle_payment_failed(ctx: PipelineContext, event: WebhookEvent, payload: PaymentIntentPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.id)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        code, message = _failure_diagnostics(payload)
        _mark_payment_failed(session, order, event, code, message, result)
    return result


def _apply_refund_total(
    session: Session,
    order: OrderModel,
    event: WebhookEvent,
    refunded_cents: int,
    fully_refunded: bool,
    result: HandlerResult,
) -> bool:
    if raise_refunded_amount(session, order.id, refunded_cents):
        result.actions.append("refund_recorded")
    full = fully_refunded or refunded_cents >= order.total_cents > 0
    if not full:
        patch_order(session, order.id, payment_status="partially_refunded")
        _recompute_for(session, order.id)
        return False

    patch_order(session, order.id, payment_status="refunded")
    transition = apply_status(session, order.id, OrderStatus.REFUNDED, event.created_at)
    if transition.applied:
        result.actions.append("status:refunded")
    _recompute_for(session, order.id)
    return transition.applied


def handle_charge_refunded(ctx: PipelineContext, event: WebhookEvent, payload: ChargePayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.payment_intent)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        _log_event(session, order, event, label="Charge refunded", amount_cents=payload.amount_refunded)
        newly_refunded = _apply_refund_total(
            session,
            order,
            event,
            payload.amount_refunded,
            payload.refunded or payload.amount_refunded >= payload.amount,
            result,
        )
    if newly_refunded:
        _send(ctx, order.id, "refund_notice", event, result)
    return result


def handle_refund_updated(ctx: PipelineContext, event: WebhookEvent, payload: RefundPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.payment_intent)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        if payload.status != "succeeded":
            _log_event(session, order, event, label=f"Refund {payload.status or 'updated'}", amount_cents=payload.amount)
            return result

        # One entry per refund id, so repeated updates for a refund count once.
        append_order_event(
            session,
            order.id,
            f"refund:{payload.id}",
            "refund",
            event.created_at,
            provider_event_id=event.id,
            status=payload.status,
            label="Refund succeeded",
            amount_cents=payload.amount,
            currency=order.currency,
        )
        refunded_total = session.scalar(
            select(func.coalesce(func.sum(OrderEventModel.amount_cents), 0)).where(
                OrderEventModel.order_id == order.id, OrderEventModel.event_type == "refund"
            )
        )
        newly_refunded = _apply_refund_total(session, order, event, int(refunded_total), False, result)
    if newly_refunded:
        _send(ctx, order.id, "refund_notice", event, result)
    return result


def handle_dispute_created(ctx: PipelineContext, event: WebhookEvent, payload: DisputePayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.payment_intent)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        transition = apply_status(session, order.id, OrderStatus.DISPUTED, event.created_at)
        _log_event(
            session,
            order,
            event,
            label="Dispute opened",
            status=OrderStatus.DISPUTED.value,
            amount_cents=payload.amount,
            details={"reason": payload.reason, "dispute_id": payload.id},
        )
        if transition.applied:
            result.actions.append("status:disputed")
    return result


def handle_dispute_closed(ctx: PipelineContext, event: WebhookEvent, payload: DisputePayload) -> HandlerResult:
    result = HandlerResult()
    outcome = dispute_outcome(payload.status)
    with session_scope(ctx.session_factory) as session:
        order = _order_for_payment(session, payload.payment_intent)
        if order is None:
            result.actions.append("no_order")
            return result
        result.order_id = order.id
        if outcome is None:
            logger.warning("dispute closed without a known outcome: order=%s status=%s", order.id, payload.status)
            _log_event(
                session,
                order,
                event,
                label="Dispute closed",
                amount_cents=payload.amount,
                details={"dispute_id": payload.id, "dispute_status": payload.status},
            )
            result.actions.append("dispute_unresolved")
            return result
        transition = resolve_dispute(session, order.id, outcome, event.created_at)
        _log_event(
            session,
            order,
            event,
            label=f"Dispute {outcome}",
            status=transition.to_status,
            amount_cents=payload.amount,
            details={"dispute_id": payload.id, "dispute_status": payload.status},
        )
        if transition.applied:
            result.actions.append(f"status:{transition.to_status}")
        if outcome == "lost":
            raise_refunded_amount(session, order.id, payload.amount if payload.amount is not None else order.total_cents)
        _recompute_for(session, order.id)
    return result


def handle_coupon(ctx: PipelineContext, event: WebhookEvent, payload: CouponPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        synced = sync_coupon(session, payload, event.created_at, deleted=event.type == "coupon.deleted")
    result.actions.append(f"discount_{synced.status}")
    return result


def _contact_from_customer(payload: CustomerPayload) -> CustomerContact:
    shipping = payload.shipping or {}
    email = payload.email or payload.metadata.get("email")
    return CustomerContact(
        payment_customer_id=payload.id,
        email=str(email).strip() if email and str(email).strip() else None,
        name=payload.name or shipping.get("name"),
        phone=payload.phone or shipping.get("phone"),
        address=normalize_address(shipping.get("address") or payload.address),
    )


def handle_customer(ctx: PipelineContext, event: WebhookEvent, payload: CustomerPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        if event.type == "customer.deleted" or payload.deleted:
            customer_id = note_customer_deleted(session, payload.id)
            result.actions.append("customer_deleted" if customer_id else "no_customer")
            return result
        link = sync_customer(session, _contact_from_customer(payload))
    if link is None:
        result.actions.append("customer_skipped")
        return result
    result.actions.append("customer_created" if link.created else f"customer_synced:{link.matched_by}")
    if link.alias_added:
        result.actions.append("alias_added")
    return result


# Invoice events that mean the order's payment will not arrive.
INVOICE_FAILURES: dict[tuple[str, str | None], str] = {
    ("invoice.payment_failed", None): "invoice_payment_failed",
    ("invoice.updated", "uncollectible"): "invoice_uncollectible",
}


def _order_for_invoice(session: Session, payload: InvoicePayload) -> OrderModel | None:
    order_id = payload.metadata.get("order_id")
    if order_id:
        order = get_order(session, str(order_id))
        if order is not None:
            return order
    checkout_session_id = payload.metadata.get("checkout_session_id")
    if checkout_session_id:
        order = find_by_checkout_session(session, str(checkout_session_id))
        if order is not None:
            return order
    return _order_for_payment(session, payload.payment_intent)


def handle_invoice(ctx: PipelineContext, event: WebhookEvent, payload: InvoicePayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        fields = {
            "number": payload.number,
            "status": payload.status,
            "amount_due_cents": payload.amount_due,
            "amount_paid_cents": payload.amount_paid,
            "updated_at": now_utc(),
        }
        if insert_if_absent(session, InvoiceModel, {"id": payload.id, **fields}, index_elements=["id"]):
            result.actions.append("invoice_created")
        else:
            session.execute(
                update(InvoiceModel)
                .where(InvoiceModel.id == payload.id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            result.actions.append("invoice_updated")

        order = _order_for_invoice(session, payload)
        if order is not None:
            result.order_id = order.id
            link_invoice(session, order.id, payload.id)
            _log_event(session, order, event, label=f"Invoice {payload.status or 'updated'}", amount_cents=payload.amount_paid)
            result.actions.append("invoice_linked")
            failure_code = INVOICE_FAILURES.get((event.type, payload.status)) or INVOICE_FAILURES.get((event.type, None))
            if failure_code:
                detail = f"invoice {payload.number or payload.id} {payload.status or 'failed'}"
                _mark_payment_failed(session, get_order(session, order.id), event, failure_code, detail, result)
    return result


def handle_tracker(ctx: PipelineContext, event: WebhookEvent, payload: TrackerPayload) -> HandlerResult:
    result = HandlerResult()
    with session_scope(ctx.session_factory) as session:
        outcome = apply_tracker_update(session, payload, event.id, event.created_at)
    if outcome.order_id is None:
        result.actions.append("no_order")
        return result

    result.order_id = outcome.order_id
    result.actions.append("fulfillment_updated" if outcome.applied else "fulfillment_stale")
    if outcome.transition is not None and outcome.transition.applied:
        result.actions.append(f"status:{outcome.transition.to_status}")
    if outcome.newly_shipped:
        _send(ctx, outcome.order_id, "shipping_update", event, result)
    return result
