from __future__ import annotations

import hashlib
import logging
import math
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from orderflow.domain.orders.addresses import normalize_address
from orderflow.domain.orders.aggregates import CustomerContact, OrderDraft, OrderLine, OrderTotals
from orderflow.domain.orders.metadata import collect_metadata, normalize_attributes, pick_sku
from orderflow.domain.orders.status import OrderStatus
from orderflow.webhooks.events import CheckoutSessionPayload

logger = logging.getLogger(__name__)

PAID_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})
FAILED_PAYMENT_STATUSES = frozenset({"canceled", "cancelled", "failed"})

_ORDER_NUMBER_RE = re.compile(r"[^A-Z0-9-]")


def _ref(value: Any) -> str | None:
    """Provider references arrive either as an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return None


def _coerce_quantity(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number) or number < 1:
        return 1
    return int(number)


def _to_cents(value: Any) -> int | None:
    """Non-finite or non-positive amounts return None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _line_items(raw: dict[str, Any] | list[Any] | None) -> list[dict[str, Any]]:
    if isinstance(raw, dict):
        raw = raw.get("data")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _unit_price_cents(item: dict[str, Any], price: dict[str, Any], quantity: int) -> int | None:
    unit = _to_cents(price.get("unit_amount"))
    if unit is None:
        unit = _to_cents(price.get("unit_amount_decimal"))
    if unit is None:
        subtotal = item.get("amount_subtotal")
        if isinstance(subtotal, (int, float)) and not isinstance(subtotal, bool):
            unit = _to_cents(Decimal(str(subtotal)) / quantity)
    return unit


def map_line_item(item: dict[str, Any]) -> OrderLine | None:
    price = item.get("price") if isinstance(item.get("price"), dict) else {}
    product = price.get("product") if isinstance(price.get("product"), dict) else {}
    quantity = _coerce_quantity(item.get("quantity", 1))

    unit_price = _unit_price_cents(item, price, quantity)
    if unit_price is None:
        return None

    metadata = collect_metadata(
        [
            ("line_item", item.get("metadata")),
            ("price", price.get("metadata")),
            ("product", product.get("metadata")),
        ]
    )
    attributes = normalize_attributes(metadata)

    line_total = unit_price * quantity
    provider_subtotal = item.get("amount_subtotal")
    if isinstance(provider_subtotal, int) and not isinstance(provider_subtotal, bool) and provider_subtotal > 0:
        line_total = provider_subtotal

    name = item.get("description") or product.get("name") or price.get("nickname") or "Item"
    return OrderLine(
        sku=pick_sku(metadata),
        name=str(name),
        quantity=quantity,
        unit_price_cents=unit_price,
        line_total_cents=line_total,
        product_ref=_ref(price.get("product")),
        price_ref=_ref(item.get("price")),
        attributes=attributes,
    )


def allocate_tax(lines: list[OrderLine], tax_cents: int) -> None:
    """Spread tax over lines in proportion to line totals (largest remainder).

    Display only; the allocated amounts always sum to ``tax_cents``.
    """
    base = sum(line.line_total_cents for line in lines)
    if not lines or tax_cents <= 0 or base <= 0:
        return

    shares = []
    for index, line in enumerate(lines):
        exact = Decimal(tax_cents) * Decimal(line.line_total_cents) / Decimal(base)
        floor = int(exact)
        shares.append((exact - floor, index, floor))

    remaining = tax_cents - sum(floor for _, _, floor in shares)
    for rank, (_, index, floor) in enumerate(sorted(shares, key=lambda s: (-s[0], s[1]))):
        lines[index].tax_cents = floor + (1 if rank < remaining else 0)


def compute_totals(session: CheckoutSessionPayload, lines: list[OrderLine]) -> OrderTotals:
    details = session.total_details
    discount = (details.amount_discount if details else None) or 0
    tax = (details.amount_tax if details else None) or 0

    shipping = None
    if session.shipping_cost is not None:
        shipping = session.shipping_cost.amount_total
    if shipping is None and details is not None:
        shipping = details.amount_shipping
    shipping = shipping or 0

    subtotal = session.amount_subtotal
    if subtotal is None:
        subtotal = sum(line.line_total_cents for line in lines)

    totals = OrderTotals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        tax_cents=tax,
        shipping_cents=shipping,
    )
    totals.total_cents = session.amount_total if session.amount_total is not None else max(totals.expected_total_cents, 0)
    return totals


def migrate_contact(session: CheckoutSessionPayload) -> CustomerContact:
    """Fold the legacy embedded customer object and customer_details into one contact."""
    details = session.customer_details or {}
    legacy = session.customer if isinstance(session.customer, dict) else {}

    email = details.get("email") or session.customer_email or legacy.get("email")
    return CustomerContact(
        payment_customer_id=_ref(session.customer),
        email=email.strip() if isinstance(email, str) and email.strip() else None,
        name=details.get("name") or legacy.get("name"),
        phone=details.get("phone") or legacy.get("phone"),
        address=normalize_address(details.get("address") or legacy.get("address")),
    )


def _sanitize_order_number(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = _ORDER_NUMBER_RE.sub("", value.strip().upper())
    return cleaned[:32] or None


def order_number_for(session: CheckoutSessionPayload, prefix: str) -> str:
    explicit = _sanitize_order_number(session.metadata.get("order_number"))
    if explicit:
        return explicit
    if isinstance(session.invoice, dict):
        from_invoice = _sanitize_order_number(session.invoice.get("number"))
        if from_invoice:
            return from_invoice
    return fallback_order_number(session.id, prefix)


def fallback_order_number(seed: str, prefix: str, salt: str = "") -> str:
    digits = "".join(ch for ch in seed if ch.isdigit())
    if salt or len(digits) < 6:
        digest = hashlib.sha256(f"{seed}{salt}".encode("utf-8")).hexdigest()
        digits = str(int(digest[:12], 16))
    return f"{prefix}-{digits[-6:].zfill(6)}"


def target_status(session: CheckoutSessionPayload) -> OrderStatus:
    if (session.status or "").lower() == "expired":
        return OrderStatus.EXPIRED
    payment_status = (session.payment_status or "").lower()
    if payment_status in PAID_PAYMENT_STATUSES:
        return OrderStatus.PAID
    if payment_status in FAILED_PAYMENT_STATUSES:
        return OrderStatus.CANCELLED
    return OrderStatus.PENDING


def materialize_checkout(
    session: CheckoutSessionPayload,
    *,
    occurred_at: datetime,
    order_number_prefix: str = "ORD",
) -> OrderDraft:
    lines: list[OrderLine] = []
    dropped: list[dict[str, Any]] = []
    for index, item in enumerate(_line_items(session.line_items)):
        line = map_line_item(item)
        if line is None:
            logger.warning(
                "dropping line item with unusable price: session=%s index=%s item=%s",
                session.id,
                index,
                item.get("id"),
            )
            dropped.append({"index": index, "line_item_id": item.get("id"), "reason": "invalid_unit_price"})
            continue
        lines.append(line)

    totals = compute_totals(session, lines)
    if not totals.consistent:
        logger.warning(
            "provider totals do not add up: session=%s total=%s expected=%s",
            session.id,
            totals.total_cents,
            totals.expected_total_cents,
        )
    allocate_tax(lines, totals.tax_cents)

    contact = migrate_contact(session)
    shipping_source = session.shipping_details or session.shipping or session.metadata.get("shipping_address")
    shipping_address = normalize_address(shipping_source)
    billing_address = contact.address

    cart_id = session.metadata.get("cart_id") or session.client_reference_id
    return OrderDraft(
        checkout_session_id=session.id,
        order_number=order_number_for(session, order_number_prefix),
        target_status=target_status(session).value,
        currency=(session.currency or "").lower() or None,
        lines=lines,
        totals=totals,
        contact=contact,
        occurred_at=occurred_at,
        payment_ref=_ref(session.payment_intent),
        payment_status=session.payment_status,
        invoice_ref=_ref(session.invoice) or session.metadata.get("invoice_id"),
        cart_id=str(cart_id) if cart_id else None,
        shipping_address=shipping_address,
        billing_address=billing_address,
        provider_metadata=dict(session.metadata),
        dropped_lines=dropped,
    )
