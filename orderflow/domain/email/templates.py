from __future__ import annotations

from html import escape

from orderflow.domain.email.client import EmailMessage
from orderflow.persistence.models import OrderModel

EMAIL_KINDS = ("order_confirmation", "refund_notice", "shipping_update")


def _money(cents: int, currency: str | None) -> str:
    return f"{cents / 100:.2f} {(currency or 'usd').upper()}"


def _greeting(order: OrderModel) -> str:
    name = order.customer_name or (order.customer_email or "").split("@")[0] or "there"
    return f"Hi {name},"


def _confirmation(order: OrderModel) -> tuple[str, list[str]]:
    lines = [f"Thanks for your order {order.order_number}. Here is what we received:"]
    for item in order.cart or []:
        summary = f" ({item['option_summary']})" if item.get("option_summary") else ""
        lines.append(
            f"{item.get('quantity', 1)} x {item.get('name')}{summary}: "
            f"{_money(int(item.get('line_total_cents', 0)), order.currency)}"
        )
    lines.append(f"Total: {_money(order.total_cents, order.currency)}")
    return f"Order {order.order_number} confirmed", lines


def _refund(order: OrderModel) -> tuple[str, list[str]]:
    return (
        f"Refund issued for order {order.order_number}",
        [f"We refunded {_money(order.amount_refunded_cents, order.currency)} for order {order.order_number}."],
    )


def _shipping(order: OrderModel) -> tuple[str, list[str]]:
    lines = [f"Order {order.order_number} is on its way."]
    if order.carrier or order.tracking_number:
        lines.append(f"Carrier: {order.carrier or 'n/a'}, tracking number: {order.tracking_number or 'n/a'}")
    if order.tracking_url:
        lines.append(f"Track it here: {order.tracking_url}")
    return f"Order {order.order_number} has shipped", lines


_BUILDERS = {
    "order_confirmation": _confirmation,
    "refund_notice": _refund,
    "shipping_update": _shipping,
}


def render(kind: str, order: OrderModel, recipient: str) -> EmailMessage:
    builder = _BUILDERS.get(kind)
    if builder is None:
        raise ValueError(f"unsupported email kind: {kind}")
    subject, body_lines = builder(order)
    lines = [_greeting(order), *body_lines]
    return EmailMessage(
        to=recipient,
        subject=subject,
        text="\n\n".join(lines),
        html="".join(f"<p>{escape(line)}</p>" for line in lines),
        tags={"order_id": order.id, "email_kind": kind},
    )
