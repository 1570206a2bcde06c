from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from orderflow.domain.orders.addresses import Address
from orderflow.domain.orders.metadata import LineAttribute, option_summary

TOTALS_TOLERANCE_CENTS = 1


@dataclass
class OrderLine:
    sku: str | None
    name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    tax_cents: int = 0
    product_ref: str | None = None
    price_ref: str | None = None
    attributes: list[LineAttribute] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sku": self.sku,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "tax_cents": self.tax_cents,
            "product_ref": self.product_ref,
            "price_ref": self.price_ref,
            "option_summary": option_summary(self.attributes),
            "attributes": [attribute.to_dict() for attribute in self.attributes],
        }


@dataclass
class OrderTotals:
    subtotal_cents: int = 0
    discount_cents: int = 0
    tax_cents: int = 0
    shipping_cents: int = 0
    total_cents: int = 0

    @property
    def expected_total_cents(self) -> int:
        return self.subtotal_cents - self.discount_cents + self.tax_cents + self.shipping_cents

    @property
    def consistent(self) -> bool:
        return abs(self.total_cents - self.expected_total_cents) <= TOTALS_TOLERANCE_CENTS


@dataclass
class CustomerContact:
    """Payment identity plus the contact snapshot captured at checkout."""

    payment_customer_id: str | None = None
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    address: Address | None = None


@dataclass
class OrderDraft:
    checkout_session_id: str
    order_number: str
    target_status: str
    currency: str | None
    lines: list[OrderLine]
    totals: OrderTotals
    contact: CustomerContact
    occurred_at: datetime
    payment_ref: str | None = None
    payment_status: str | None = None
    invoice_ref: str | None = None
    cart_id: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    dropped_lines: list[dict[str, Any]] = field(default_factory=list)
