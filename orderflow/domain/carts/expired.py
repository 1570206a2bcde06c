from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc
from orderflow.persistence.models import CartLogModel
from orderflow.persistence.pg import insert_if_absent
from orderflow.webhooks.events import CheckoutSessionPayload

logger = logging.getLogger(__name__)

EXPIRED = "expired"
RECOVERED = "recovered"


@dataclass
class CartLogResult:
    cart_id: str
    status: str
    appended: bool


def cart_id_for(session: CheckoutSessionPayload) -> str:
    for candidate in (session.metadata.get("cart_id"), session.client_reference_id):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return session.id


def _snapshot(checkout: CheckoutSessionPayload) -> dict:
    details = checkout.customer_details or {}
    return {
        "email": details.get("email") or checkout.customer_email,
        "name": details.get("name"),
        "phone": details.get("phone"),
    }


def record_expired_checkout(
    session: Session,
    checkout: CheckoutSessionPayload,
    provider_event_id: str,
    occurred_at: datetime,
) -> CartLogResult:
    """Append an ``expired`` cart entry; nothing outside the cart log is touched."""
    cart_id = cart_id_for(checkout)
    contact = _snapshot(checkout)
    appended = insert_if_absent(
        session,
        CartLogModel,
        {
            "cart_id": cart_id,
            "status": EXPIRED,
            "provider_event_id": provider_event_id,
            "checkout_session_id": checkout.id,
            "email": contact["email"],
            "name": contact["name"],
            "phone": contact["phone"],
            "amount_total_cents": checkout.amount_total,
            "currency": checkout.currency,
            "snapshot": {
                "metadata": dict(checkout.metadata),
                "expires_at": getattr(checkout, "expires_at", None),
                "url": getattr(checkout, "url", None),
            },
            "occurred_at": occurred_at,
            "recorded_at": now_utc(),
        },
        index_elements=["cart_id", "status", "provider_event_id"],
    )
    logger.info("checkout expired: cart=%s session=%s appended=%s", cart_id, checkout.id, appended)
    return CartLogResult(cart_id=cart_id, status=EXPIRED, appended=appended)


def record_recovered_checkout(
    session: Session,
    cart_id: str | None,
    checkout_session_id: str,
    order_id: str,
    provider_event_id: str,
    occurred_at: datetime,
) -> CartLogResult | None:
    """Note that a previously expired cart converted; no-op when it never expired."""
    keys = [checkout_session_id] + ([cart_id] if cart_id else [])
    expired = session.scalar(
        select(CartLogModel)
        .where(
            CartLogModel.status == EXPIRED,
            or_(CartLogModel.cart_id.in_(keys), CartLogModel.checkout_session_id == checkout_session_id),
        )
        .order_by(CartLogModel.id.asc())
        .limit(1)
    )
    if expired is None:
        return None

    appended = insert_if_absent(
        session,
        CartLogModel,
        {
            "cart_id": expired.cart_id,
            "status": RECOVERED,
            "provider_event_id": provider_event_id,
            "checkout_session_id": checkout_session_id,
            "order_ref": order_id,
            "email": expired.email,
            "name": expired.name,
            "phone": expired.phone,
            "amount_total_cents": expired.amount_total_cents,
            "currency": expired.currency,
            "snapshot": {},
            "occurred_at": occurred_at,
            "recorded_at": now_utc(),
        },
        index_elements=["cart_id", "status", "provider_event_id"],
    )
    return CartLogResult(cart_id=expired.cart_id, status=RECOVERED, appended=appended)


def cart_history(session: Session, cart_id: str) -> list[CartLogModel]:
    return list(
        session.scalars(select(CartLogModel).where(CartLogModel.cart_id == cart_id).order_by(CartLogModel.id.asc())).all()
    )
