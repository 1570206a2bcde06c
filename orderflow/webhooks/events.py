from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from orderflow.core.errors import MalformedEvent
from orderflow.core.timeutils import parse_timestamp


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class TotalDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount_discount: int | None = Field(default=None, ge=0, description="int cents")
    amount_shipping: int | None = Field(default=None, ge=0, description="int cents")
    amount_tax: int | None = Field(default=None, ge=0, description="int cents")


class ShippingCost(BaseModel):
    model_config = ConfigDict(extra="allow")

    amount_total: int | None = Field(default=None, ge=0, description="int cents")
    amount_subtotal: int | None = Field(default=None, ge=0, description="int cents")


class CheckoutSessionPayload(_ProviderObject):
    status: str | None = None
    payment_status: str | None = None
    mode: str | None = None
    customer: str | dict[str, Any] | None = None
    customer_email: str | None = None
    customer_details: dict[str, Any] | None = None
    client_reference_id: str | None = None
    payment_intent: str | dict[str, Any] | None = None
    invoice: str | dict[str, Any] | None = None
    currency: str | None = None
    amount_subtotal: int | None = Field(default=None, ge=0, description="int cents")
    amount_total: int | None = Field(default=None, ge=0, description="int cents")
    total_details: TotalDetails | None = None
    shipping_cost: ShippingCost | None = None
    shipping_details: dict[str, Any] | None = None
    shipping: dict[str, Any] | None = None
    line_items: dict[str, Any] | list[Any] | None = None
    created: int | None = None


class PaymentIntentPayload(_ProviderObject):
    status: str | None = None
    amount: int | None = Field(default=None, ge=0, description="int cents")
    currency: str | None = None
    customer: str | None = None
    cancellation_reason: str | None = None
    last_payment_error: dict[str, Any] | None = None


class ChargePayload(_ProviderObject):
    payment_intent: str | None = None
    amount: int = Field(ge=0, description="int cents")
    amount_refunded: int = Field(default=0, ge=0, description="int cents")
    refunded: bool = False
    currency: str | None = None


class RefundPayload(_ProviderObject):
    charge: str | None = None
    payment_intent: str | None = None
    amount: int = Field(ge=0, description="int cents")
    status: str | None = None
    currency: str | None = None


class DisputePayload(_ProviderObject):
    charge: str | None = None
    payment_intent: str | None = None
    amount: int | None = Field(default=None, ge=0, description="int cents")
    status: str | None = None
    reason: str | None = None


class CustomerPayload(_ProviderObject):
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    address: dict[str, Any] | None = None
    shipping: dict[str, Any] | None = None
    deleted: bool = False


class CouponPayload(_ProviderObject):
    name: str | None = None
    percent_off: float | None = Field(default=None, ge=0, le=100)
    amount_off: int | None = Field(default=None, ge=0, description="int cents")
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    valid: bool = True
    redeem_by: int | None = None
    max_redemptions: int | None = None
    times_redeemed: int | None = None


class InvoicePayload(_ProviderObject):
    number: str | None = None
    status: str | None = None
    customer: str | None = None
    payment_intent: str | None = None
    amount_due: int = Field(default=0, ge=0, description="int cents")
    amount_paid: int = Field(default=0, ge=0, description="int cents")


class TrackerPayload(_ProviderObject):
    status: str = Field(min_length=1)
    tracking_code: str | None = None
    carrier: str | None = None
    public_url: str | None = None
    shipment_id: str | None = None
    status_detail: str | None = None
    updated_at: str | None = None
    tracking_details: list[dict[str, Any]] = Field(default_factory=list)
    shipment: dict[str, Any] | None = None
    postage_label: dict[str, Any] | None = None


PAYLOAD_MODELS: dict[str, type[_ProviderObject]] = {
    "checkout.session.completed": CheckoutSessionPayload,
    "checkout.session.async_payment_succeeded": CheckoutSessionPayload,
    "checkout.session.async_payment_failed": CheckoutSessionPayload,
    "checkout.session.expired": CheckoutSessionPayload,
    "payment_intent.succeeded": PaymentIntentPayload,
    "payment_intent.canceled": PaymentIntentPayload,
    "payment_intent.payment_failed": PaymentIntentPayload,
    "charge.refunded": ChargePayload,
    "charge.refund.created": RefundPayload,
    "charge.refund.updated": RefundPayload,
    "charge.dispute.created": DisputePayload,
    "charge.dispute.closed": DisputePayload,
    "coupon.created": CouponPayload,
    "coupon.updated": CouponPayload,
    "coupon.deleted": CouponPayload,
    "customer.created": CustomerPayload,
    "customer.updated": CustomerPayload,
    "customer.deleted": CustomerPayload,
    "invoice.finalized": InvoicePayload,
    "invoice.paid": InvoicePayload,
    "invoice.payment_failed": InvoicePayload,
    "invoice.voided": InvoicePayload,
    "invoice.updated": InvoicePayload,
    "tracker.created": TrackerPayload,
    "tracker.updated": TrackerPayload,
}


class WebhookEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created_at: datetime
    payload: dict[str, Any]

    @model_validator(mode="before")
    @classmethod
    def _normalize_envelope(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            raise ValueError("event body must be a JSON object")
        event_type = raw.get("type")
        payload = raw.get("payload")
        if payload is None:
            data = raw.get("data")
            if isinstance(data, dict) and isinstance(data.get("object"), dict):
                payload = data["object"]
            elif isinstance(raw.get("result"), dict):
                # Carrier envelope: {"object": "Event", "description": "tracker.updated", "result": {...}}
                payload = raw["result"]
                event_type = event_type or raw.get("description")
        created = raw.get("createdAt", raw.get("created", raw.get("created_at")))
        return {
            "id": raw.get("id"),
            "type": event_type,
            "created_at": parse_timestamp(created),
            "payload": payload,
        }


def parse_event(body: bytes) -> WebhookEvent:
    try:
        raw = json.loads(body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent("body is not valid JSON") from exc
    try:
        return WebhookEvent.model_validate(raw)
    except ValidationError as exc:
        raise MalformedEvent("invalid event envelope", errors=_error_locations(exc)) from exc


def parse_payload(event: WebhookEvent) -> _ProviderObject | None:
    """Validate the payload for the declared type; None for types nobody handles."""
    model = PAYLOAD_MODELS.get(event.type)
    if model is None:
        return None
    try:
        return model.model_validate(event.payload)
    except ValidationError as exc:
        raise MalformedEvent(
            f"invalid payload for {event.type}",
            event_id=event.id,
            errors=_error_locations(exc),
        ) from exc


def _error_locations(exc: ValidationError) -> list[str]:
    return [".".join(str(part) for part in err["loc"]) or "body" for err in exc.errors()]
