from __future__ import annotations

from orderflow.domain.orders.metadata import collect_metadata, humanize, normalize_attributes, option_summary, pick_sku


def _attrs(metadata):
    return [(attr.kind, attr.name, attr.value) for attr in normalize_attributes(collect_metadata([("line_item", metadata)]))]


def test_first_source_wins():
    merged = collect_metadata([("line_item", {"sku": "A", "color": "red"}), ("product", {"sku": "B", "size": "L"})])

    assert merged["sku"] == ("A", "line_item")
    assert merged["size"] == ("L", "product")
    assert pick_sku(merged) == "A"


def test_prefixed_keys():
    assert _attrs({"option:Finish": "Matte", "upgrade:Extras": "Case|Strap"}) == [
        ("option", "Finish", "Matte"),
        ("upgrade", "Extras", "Case"),
        ("upgrade", "Extras", "Strap"),
    ]


def test_keyword_keys_and_shipping_option_exclusion():
    attrs = _attrs({"vehicle_model": "Civic", "shipping_option": "express", "gift_note": "hi"})

    assert ("option", "Vehicle Model", "Civic") in attrs
    assert ("meta", "shipping_option", "express") in attrs
    assert ("meta", "gift_note", "hi") in attrs


def test_slot_without_value_is_skipped():
    assert _attrs({"option2_name": "Size"}) == []


def test_sku_keys_are_not_attributes():
    assert _attrs({"product_sku": "X-1"}) == []


def test_duplicates_collapse():
    attrs = _attrs({"option:Color": "Red", "option_color_value": "Red", "option_color_name": "Color"})

    assert attrs == [("option", "Color", "Red")]


def test_helpers():
    assert humanize("addOn_extra-item") == "Add On Extra Item"
    assert option_summary([]) is None
