from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class Base(DeclarativeBase):
    pass


class ProcessedEventModel(Base):
    __tablename__ = "processed_events"

    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_progress")
    outcome: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    payload_sha256: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class OrderModel(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, unique=True)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    payment_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cart_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    status_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status_before_dispute: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    customer_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    invoice_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    cart: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    subtotal_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    shipping_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_refunded_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    payment_failure_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    shipping_address: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    billing_address: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    inventory_warning: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    provider_metadata: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)

    carrier: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    shipment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    label_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fulfillment_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    fulfillment_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderEventModel(Base):
    __tablename__ = "order_events"
    __table_args__ = (UniqueConstraint("order_id", "entry_key", name="uq_order_events_entry"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_key: Mapped[str] = mapped_column(String(320), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    details: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CustomerModel(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    primary_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    email_normalized: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    address: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_spend_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CustomerAliasModel(Base):
    __tablename__ = "customer_payment_aliases"

    payment_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InvoiceModel(Base):
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    amount_due_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_paid_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ProductStockModel(Base):
    __tablename__ = "product_stock"

    sku: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class InventoryReservationModel(Base):
    __tablename__ = "inventory_reservations"

    sku: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tracked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EmailLogModel(Base):
    __tablename__ = "email_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    # Holds "<order_id>:<kind>" while the entry is reserved or sent; cleared on failure.
    active_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # False when the provider rejected the message outright; automated retries skip it.
    retryable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CartLogModel(Base):
    __tablename__ = "cart_log"
    __table_args__ = (
        UniqueConstraint("cart_id", "status", "provider_event_id", name="uq_cart_log_entry"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cart_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    order_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount_total_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    snapshot: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ShippingLogModel(Base):
    __tablename__ = "shipping_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tracking_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DiscountModel(Base):
    __tablename__ = "discounts"

    coupon_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    percent_off_bp: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    amount_off_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    duration: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    duration_in_months: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    redeem_by: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    max_redemptions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    times_redeemed: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    coupon_metadata: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    source_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_orders_payment_ref", OrderModel.payment_ref)
Index("ix_orders_customer_ref", OrderModel.customer_ref)
Index("ix_orders_tracking_number", OrderModel.tracking_number)
Index("ix_orders_shipment_id", OrderModel.shipment_id)
Index("ix_order_events_order_id", OrderEventModel.order_id)
Index("ix_customers_email_normalized", CustomerModel.email_normalized)
Index("ix_alias_customer_id", CustomerAliasModel.customer_id)
Index("ix_reservations_order_id", InventoryReservationModel.order_id)
Index("ix_email_log_order_kind", EmailLogModel.order_id, EmailLogModel.email_kind)
Index("ix_cart_log_cart_id", CartLogModel.cart_id)
Index("ix_shipping_log_order_id", ShippingLogModel.order_id)
