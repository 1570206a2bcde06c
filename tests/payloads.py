from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

BASE_TS = int(time.time()) - 600


def line_item(
    sku: str | None = "SKU-1",
    quantity: int = 1,
    unit_amount: Any = 2500,
    *,
    item_id: str = "li_1",
    name: str = "Widget",
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    product_metadata = {"sku": sku} if sku else {}
    return {
        "id": item_id,
        "description": name,
        "quantity": quantity,
        "amount_subtotal": unit_amount * quantity if isinstance(unit_amount, int) else None,
        "price": {
            "id": f"price_{item_id}",
            "unit_amount": unit_amount,
            "product": {"id": f"prod_{item_id}", "name": name, "metadata": product_metadata},
            "metadata": {},
        },
        "metadata": metadata or {},
    }


def checkout_session(
    session_id: str = "cs_test_0001",
    *,
    customer: str | dict[str, Any] | None = "cus_A",
    email: str | None = "buyer@example.com",
    payment_intent: str | None = "pi_A",
    payment_status: str = "paid",
    status: str = "complete",
    items: list[dict[str, Any]] | None = None,
    tax: int = 0,
    shipping: int = 0,
    discount: int = 0,
    amount_total: int | None = None,
    metadata: dict[str, Any] | None = None,
    client_reference_id: str | None = None,
) -> dict[str, Any]:
    items = items if items is not None else [line_item()]
    subtotal = sum(item["amount_subtotal"] or 0 for item in items)
    total = amount_total if amount_total is not None else subtotal - discount + tax + shipping
    return {
        "id": session_id,
        "object": "checkout.session",
        "status": status,
        "payment_status": payment_status,
        "mode": "payment",
        "customer": customer,
        "customer_email": email,
        "customer_details": {
            "email": email,
            "name": "Pat Buyer",
            "phone": "+15555550100",
            "address": {
                "line1": "1 Main St",
                "city": "Springfield",
                "state": "IL",
                "postal_code": "62701",
                "country": "US",
            },
        },
        "client_reference_id": client_reference_id,
        "payment_intent": payment_intent,
        "currency": "usd",
        "amount_subtotal": subtotal,
        "amount_total": total,
        "total_details": {"amount_discount": discount, "amount_shipping": shipping, "amount_tax": tax},
        "shipping_details": {
            "name": "Pat Buyer",
            "address": {"line1": "1 Main St", "city": "Springfield", "state": "IL", "postal_code": "62701", "country": "US"},
        },
        "line_items": {"object": "list", "data": items},
        "metadata": metadata or {},
    }


def event(event_id: str, event_type: str, obj: dict[str, Any], created: int | None = None) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": BASE_TS if created is None else created,
        "data": {"object": obj},
    }


def payment_intent(pi_id: str = "pi_A", amount: int = 2500, **extra: Any) -> dict[str, Any]:
    return {"id": pi_id, "object": "payment_intent", "status": "succeeded", "amount": amount, "currency": "usd", **extra}


def charge(pi_id: str = "pi_A", amount: int = 2500, refunded_amount: int = 2500, **extra: Any) -> dict[str, Any]:
    return {
        "id": f"ch_{pi_id}",
        "object": "charge",
        "payment_intent": pi_id,
        "amount": amount,
        "amount_refunded": refunded_amount,
        "refunded": refunded_amount >= amount,
        "currency": "usd",
        **extra,
    }


def dispute(pi_id: str = "pi_A", status: str = "needs_response", amount: int = 2500) -> dict[str, Any]:
    return {
        "id": f"dp_{pi_id}",
        "object": "dispute",
        "charge": f"ch_{pi_id}",
        "payment_intent": pi_id,
        "amount": amount,
        "status": status,
        "reason": "fraudulent",
    }


def tracker(
    status: str,
    *,
    tracking_code: str = "EZ1000000001",
    order_id: str | None = None,
    updated_at: str | None = None,
    tracker_id: str = "trk_1",
) -> dict[str, Any]:
    return {
        "id": tracker_id,
        "object": "Tracker",
        "status": status,
        "tracking_code": tracking_code,
        "carrier": "USPS",
        "public_url": f"https://track.example.com/{tracking_code}",
        "shipment_id": "shp_1",
        "updated_at": updated_at,
        "metadata": {"order_id": order_id} if order_id else {},
        "tracking_details": [
            {"message": f"Status {status}", "tracking_location": {"city": "Chicago", "state": "IL"}},
        ],
    }


def carrier_event(event_id: str, obj: dict[str, Any], description: str = "tracker.updated", created: int | None = None) -> dict[str, Any]:
    ts = BASE_TS + 60 if created is None else created
    return {
        "id": event_id,
        "object": "Event",
        "description": description,
        "created_at": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
        "result": obj,
    }


def refund(refund_id: str, pi_id: str = "pi_A", amount: int = 1000, status: str = "succeeded") -> dict[str, Any]:
    return {
        "id": refund_id,
        "object": "refund",
        "charge": f"ch_{pi_id}",
        "payment_intent": pi_id,
        "amount": amount,
        "status": status,
        "currency": "usd",
    }


def customer(customer_id: str, email: str | None = "buyer@example.com", name: str | None = "Pat Buyer", **extra: Any) -> dict[str, Any]:
    return {"id": customer_id, "object": "customer", "email": email, "name": name, **extra}


def invoice(invoice_id: str, pi_id: str = "pi_A", status: str = "open", amount: int = 2500) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "number": f"INV-{invoice_id}",
        "status": status,
        "customer": "cus_A",
        "payment_intent": pi_id,
        "amount_due": amount,
        "amount_paid": amount if status == "paid" else 0,
    }
