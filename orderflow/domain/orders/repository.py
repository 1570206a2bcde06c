from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import ensure_utc, now_utc
from orderflow.domain.orders.aggregates import OrderDraft
from orderflow.domain.orders.materializer import fallback_order_number
from orderflow.domain.orders.status import OrderStatus, can_transition, resolve_dispute_target
from orderflow.persistence.models import OrderEventModel, OrderModel
from orderflow.persistence.pg import insert_if_absent

logger = logging.getLogger(__name__)

ORDER_NAMESPACE = uuid.UUID("5f0c8a3e-2b7d-4f43-9a51-6f1f0f4f2a10")
CAS_ATTEMPTS = 3


@dataclass
class TransitionResult:
    applied: bool
    from_status: str | None
    to_status: str
    reason: str = "applied"


def order_id_for_checkout(checkout_session_id: str) -> str:
    return str(uuid.uuid5(ORDER_NAMESPACE, f"checkout:{checkout_session_id}"))


def get_order(session: Session, order_id: str) -> OrderModel | None:
    return session.get(OrderModel, order_id, populate_existing=True)


def find_by_checkout_session(session: Session, checkout_session_id: str) -> OrderModel | None:
    return session.scalar(select(OrderModel).where(OrderModel.checkout_session_id == checkout_session_id))


def find_by_payment_ref(session: Session, payment_ref: str) -> OrderModel | None:
    return session.scalar(
        select(OrderModel).where(OrderModel.payment_ref == payment_ref).order_by(OrderModel.created_at.asc()).limit(1)
    )


def _order_values(draft: OrderDraft, order_id: str, order_number: str, now: datetime) -> dict[str, Any]:
    return {
        "id": order_id,
        "order_number": order_number,
        "checkout_session_id": draft.checkout_session_id,
        "payment_ref": draft.payment_ref,
        "payment_status": draft.payment_status,
        "cart_id": draft.cart_id,
        "status": OrderStatus.NONE.value,
        "status_version": 0,
        "status_changed_at": None,
        "invoice_ref": draft.invoice_ref,
        "customer_email": draft.contact.email,
        "customer_name": draft.contact.name,
        "currency": draft.currency,
        "cart": [line.to_dict() for line in draft.lines],
        "subtotal_cents": draft.totals.subtotal_cents,
        "discount_cents": draft.totals.discount_cents,
        "tax_cents": draft.totals.tax_cents,
        "shipping_cents": draft.totals.shipping_cents,
        "total_cents": draft.totals.total_cents,
        "amount_refunded_cents": 0,
        "shipping_address": draft.shipping_address.to_dict() if draft.shipping_address else None,
        "billing_address": draft.billing_address.to_dict() if draft.billing_address else None,
        "provider_metadata": draft.provider_metadata,
        "created_at": now,
        "updated_at": now,
    }


def create_order_if_absent(session: Session, draft: OrderDraft, prefix: str = "ORD") -> tuple[OrderModel, bool]:
    """Insert the order for a checkout session unless it already exists.

    The id is derived from the checkout session id, so retried deliveries and
    racing handlers converge on one row.
    """
    order_id = order_id_for_checkout(draft.checkout_session_id)
    now = now_utc()
    order_number = draft.order_number

    for attempt in range(CAS_ATTEMPTS):
        created = insert_if_absent(session, OrderModel, _order_values(draft, order_id, order_number, now))
        existing = find_by_checkout_session(session, draft.checkout_session_id)
        if existing is not None:
            return existing, created
        # Conflict on order_number with a different order.
        logger.warning("order number collision: number=%s session=%s", order_number, draft.checkout_session_id)
        order_number = fallback_order_number(draft.checkout_session_id, prefix, salt=str(attempt + 1))

    raise RuntimeError(f"could not allocate an order number for {draft.checkout_session_id}")


def patch_order(session: Session, order_id: str, **values: Any) -> None:
    values["updated_at"] = now_utc()
    session.execute(
        update(OrderModel).where(OrderModel.id == order_id).values(**values).execution_options(synchronize_session=False)
    )


def fill_missing(session: Session, order_id: str, column: str, value: Any) -> bool:
    """Set a column only while it is still null."""
    if value is None:
        return False
    attr = getattr(OrderModel, column)
    result = session.execute(
        update(OrderModel)
        .where(OrderModel.id == order_id, attr.is_(None))
        .values({column: value, "updated_at": now_utc()})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def raise_refunded_amount(session: Session, order_id: str, amount_cents: int) -> bool:
    result = session.execute(
        update(OrderModel)
        .where(OrderModel.id == order_id, OrderModel.amount_refunded_cents < amount_cents)
        .values(amount_refunded_cents=amount_cents, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _cas_status(
    session: Session,
    order: OrderModel,
    target: str,
    occurred_at: datetime,
    extra: dict[str, Any],
) -> bool:
    stmt = (
        update(OrderModel)
        .where(
            OrderModel.id == order.id,
            OrderModel.status == order.status,
            OrderModel.status_version == order.status_version,
            or_(OrderModel.status_changed_at.is_(None), OrderModel.status_changed_at <= occurred_at),
        )
        .values(
            status=target,
            status_version=order.status_version + 1,
            status_changed_at=occurred_at,
            updated_at=now_utc(),
            **extra,
        )
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def _is_stale(order: OrderModel, occurred_at: datetime) -> bool:
    changed_at = ensure_utc(order.status_changed_at)
    return changed_at is not None and occurred_at < changed_at


def apply_status(session: Session, order_id: str, target: str | OrderStatus, occurred_at: datetime) -> TransitionResult:
    """Attempt one status transition as a compare-and-set write.

    No-ops when the move is not a forward step or when the event is older
    than the one that produced the current status.
    """
    target = OrderStatus(target).value
    occurred_at = ensure_utc(occurred_at)

    for _ in range(CAS_ATTEMPTS):
        order = get_order(session, order_id)
        if order is None:
            return TransitionResult(False, None, target, "order_not_found")
        if not can_transition(order.status, target):
            return TransitionResult(False, order.status, target, "not_forward")
        if _is_stale(order, occurred_at):
            return TransitionResult(False, order.status, target, "stale_event")

        extra: dict[str, Any] = {}
        if target == OrderStatus.DISPUTED.value:
            extra["status_before_dispute"] = order.status
        if _cas_status(session, order, target, occurred_at, extra):
            return TransitionResult(True, order.status, target)

    logger.warning("status transition lost every compare-and-set race: order=%s target=%s", order_id, target)
    return TransitionResult(False, None, target, "contention")


def resolve_dispute(session: Session, order_id: str, outcome: str, occurred_at: datetime) -> TransitionResult:
    occurred_at = ensure_utc(occurred_at)
    for _ in range(CAS_ATTEMPTS):
        order = get_order(session, order_id)
        if order is None:
            return TransitionResult(False, None, OrderStatus.DISPUTED.value, "order_not_found")
        if order.status != OrderStatus.DISPUTED.value:
            return TransitionResult(False, order.status, order.status, "not_disputed")
        target = resolve_dispute_target(order.status_before_dispute, outcome).value
        if _is_stale(order, occurred_at):
            return TransitionResult(False, order.status, target, "stale_event")
        if _cas_status(session, order, target, occurred_at, {"status_before_dispute": None}):
            return TransitionResult(True, order.status, target)
    return TransitionResult(False, None, OrderStatus.DISPUTED.value, "contention")


def append_order_event(
    session: Session,
    order_id: str,
    entry_key: str,
    event_type: str,
    occurred_at: datetime,
    *,
    provider_event_id: str | None = None,
    status: str | None = None,
    label: str | None = None,
    message: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    details: dict[str, Any] | None = None,
) -> bool:
    """Append one audit entry; replays with the same key are ignored."""
    return insert_if_absent(
        session,
        OrderEventModel,
        {
            "order_id": order_id,
            "entry_key": entry_key,
            "event_type": event_type,
            "provider_event_id": provider_event_id,
            "status": status,
            "label": label,
            "message": message,
            "amount_cents": amount_cents,
            "currency": currency,
            "details": details or {},
            "occurred_at": occurred_at,
            "recorded_at": now_utc(),
        },
        index_elements=["order_id", "entry_key"],
    )


def list_order_events(session: Session, order_id: str) -> list[OrderEventModel]:
    return list(
        session.scalars(
            select(OrderEventModel).where(OrderEventModel.order_id == order_id).order_by(OrderEventModel.id.asc())
        ).all()
    )
