from __future__ import annotations

from orderflow.domain.orders.addresses import normalize_address, parse_address_string


def test_combined_string_is_split():
    address = parse_address_string("12 Oak Ave Apt 3, Portland, or 97201")

    assert address.line1 == "12 Oak Ave Apt 3"
    assert address.city == "Portland"
    assert address.state == "OR"
    assert address.postal_code == "97201"
    assert address.country == "US"
    assert address.raw is None


def test_multiline_string_takes_first_line_as_name():
    address = parse_address_string("Jane Doe\n500 Pine St\nSeattle, WA 98101-1234, Canada")

    assert address.name == "Jane Doe"
    assert address.line1 == "500 Pine St"
    assert address.postal_code == "98101-1234"
    assert address.country == "Canada"


def test_unparseable_string_is_kept_raw():
    address = parse_address_string("somewhere over the rainbow")

    assert address.raw == "somewhere over the rainbow"
    assert address.line1 is None


def test_provider_shape_with_nested_address():
    address = normalize_address(
        {"name": "Pat", "phone": "+1555", "address": {"line1": "1 Main St", "city": "Springfield", "postal_code": "62701"}}
    )

    assert address.name == "Pat"
    assert address.phone == "+1555"
    assert address.line1 == "1 Main St"


def test_legacy_keys_and_combined_fallback():
    legacy = normalize_address({"street1": "9 Elm", "city_locality": "Austin", "state_province": "TX", "zip": "73301"})
    combined = normalize_address({"name": "Sam", "formatted": "9 Elm, Austin, TX 73301"})

    assert (legacy.line1, legacy.city, legacy.state, legacy.postal_code) == ("9 Elm", "Austin", "TX", "73301")
    assert combined.name == "Sam"
    assert combined.city == "Austin"


def test_empty_inputs_normalize_to_none():
    assert normalize_address(None) is None
    assert normalize_address({}) is None
    assert normalize_address("   ") is None
    assert normalize_address(42) is None
