from __future__ import annotations

from datetime import datetime, timezone

from orderflow.domain.orders.aggregates import OrderLine
from orderflow.domain.orders.materializer import (
    allocate_tax,
    fallback_order_number,
    map_line_item,
    materialize_checkout,
    target_status,
)
from orderflow.webhooks.events import CheckoutSessionPayload
from payloads import checkout_session, line_item

AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _materialize(**kwargs):
    return materialize_checkout(CheckoutSessionPayload.model_validate(checkout_session(**kwargs)), occurred_at=AT)


def test_lines_keep_sku_quantity_and_price():
    draft = _materialize(items=[line_item("SKU-1", 2, 1500), line_item("SKU-2", 1, 999, item_id="li_2")])

    assert [(line.sku, line.quantity, line.unit_price_cents) for line in draft.lines] == [
        ("SKU-1", 2, 1500),
        ("SKU-2", 1, 999),
    ]
    assert draft.totals.subtotal_cents == 3999


def test_totals_hold_the_invariant():
    draft = _materialize(items=[line_item("SKU-1", 1, 10000)], discount=1000, tax=720, shipping=500)
    totals = draft.totals

    assert totals.total_cents == 10000 - 1000 + 720 + 500
    assert totals.consistent


def test_unusable_price_drops_the_line_and_keeps_the_order():
    items = [line_item("SKU-1", 1, 2500), line_item("SKU-BAD", 1, "NaN", item_id="li_bad")]
    draft = _materialize(items=items)

    assert [line.sku for line in draft.lines] == ["SKU-1"]
    assert draft.dropped_lines == [{"index": 1, "line_item_id": "li_bad", "reason": "invalid_unit_price"}]


def test_zero_and_negative_prices_are_invalid():
    assert map_line_item(line_item("A", 1, 0)) is None
    assert map_line_item(line_item("A", 1, -5)) is None


def test_quantity_defaults_to_one_when_invalid():
    item = line_item("A", 1, 500)
    item["quantity"] = "abc"
    item["amount_subtotal"] = None
    line = map_line_item(item)

    assert line.quantity == 1
    assert line.line_total_cents == 500


def test_tax_allocation_sums_to_total():
    lines = [
        OrderLine(sku="A", name="A", quantity=1, unit_price_cents=333, line_total_cents=333),
        OrderLine(sku="B", name="B", quantity=1, unit_price_cents=333, line_total_cents=333),
        OrderLine(sku="C", name="C", quantity=1, unit_price_cents=334, line_total_cents=334),
    ]
    allocate_tax(lines, 100)

    assert sum(line.tax_cents for line in lines) == 100


def test_target_status_mapping():
    def status(**kwargs):
        return target_status(CheckoutSessionPayload.model_validate(checkout_session(**kwargs))).value

    assert status(payment_status="paid") == "paid"
    assert status(payment_status="no_payment_required") == "paid"
    assert status(payment_status="unpaid") == "pending"
    assert status(payment_status="unpaid", status="expired") == "expired"


def test_legacy_customer_object_is_migrated():
    payload = checkout_session(customer={"id": "cus_legacy", "email": "Legacy@Example.com", "name": "Old Shape"}, email=None)
    payload["customer_details"] = None
    draft = materialize_checkout(CheckoutSessionPayload.model_validate(payload), occurred_at=AT)

    assert draft.contact.payment_customer_id == "cus_legacy"
    assert draft.contact.email == "Legacy@Example.com"
    assert draft.contact.name == "Old Shape"


def test_order_number_prefers_metadata_then_falls_back():
    explicit = _materialize(metadata={"order_number": " ord-77 "})
    fallback = _materialize(session_id="cs_test_a1b2c3d4e5f6g7")

    assert explicit.order_number == "ORD-77"
    assert fallback.order_number.startswith("ORD-")
    assert fallback.order_number == fallback_order_number("cs_test_a1b2c3d4e5f6g7", "ORD")


def test_options_from_metadata_are_typed():
    item = line_item("SKU-9", 1, 4200, metadata={"option1_name": "Color", "option1_value": "Red", "upgrade": "Wax, Gloss"})
    line = map_line_item(item)

    kinds = {(attr.kind, attr.name, attr.value) for attr in line.attributes}
    assert ("option", "Color", "Red") in kinds
    assert ("upgrade", "Upgrade", "Wax") in kinds
    assert ("upgrade", "Upgrade", "Gloss") in kinds
    assert line.to_dict()["option_summary"] == "Color: Red"


def test_shipping_address_and_cart_id():
    draft = _materialize(metadata={"cart_id": "cart_42"})

    assert draft.cart_id == "cart_42"
    assert draft.shipping_address.city == "Springfield"
    assert draft.shipping_address.name == "Pat Buyer"
