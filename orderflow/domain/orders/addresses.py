from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

_COMBINED_RE = re.compile(
    r"^\s*(?P<street>.+?)\s*,\s*(?P<city>[^,]+?)\s*,\s*"
    r"(?P<state>[A-Za-z]{2})\s+(?P<postal>\d{5}(?:-\d{4})?)"
    r"(?:\s*,\s*(?P<country>[A-Za-z][A-Za-z .]*?))?\s*$"
)

_LINE1_KEYS = ("line1", "address_line1", "addressLine1", "street1", "street")
_LINE2_KEYS = ("line2", "address_line2", "addressLine2", "street2")
_CITY_KEYS = ("city", "city_locality")
_STATE_KEYS = ("state", "state_province", "stateProvince", "region")
_POSTAL_KEYS = ("postal_code", "postalCode", "zip")
_COUNTRY_KEYS = ("country", "country_code")
_COMBINED_KEYS = ("full", "formatted", "address")


@dataclass
class Address:
    name: str | None = None
    line1: str | None = None
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    phone: str | None = None
    email: str | None = None
    # Original text kept when a combined string could not be split.
    raw: str | None = None

    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _first_text(source: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_address_string(text: str) -> Address:
    """Best-effort split of a "street, city, ST 12345[, country]" string.

    Multi-line input is accepted; with three or more lines the first one is
    taken as the recipient name. Anything that does not fit keeps the input
    in ``raw`` instead of raising.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        return Address()

    lines = [line.strip() for line in re.split(r"\r?\n", cleaned) if line.strip()]
    name = None
    if len(lines) > 2:
        name, lines = lines[0], lines[1:]
    candidate = ", ".join(line.rstrip(",") for line in lines)

    match = _COMBINED_RE.match(candidate)
    if not match:
        return Address(name=name, raw=cleaned)

    return Address(
        name=name,
        line1=match.group("street"),
        city=match.group("city"),
        state=match.group("state").upper(),
        postal_code=match.group("postal"),
        country=(match.group("country") or "US").strip(),
    )


def normalize_address(value: Any) -> Address | None:
    """Fold provider, legacy and combined-string address shapes into one ``Address``."""
    if value is None:
        return None
    if isinstance(value, Address):
        return None if value.is_empty() else value
    if isinstance(value, str):
        parsed = parse_address_string(value)
        return None if parsed.is_empty() else parsed
    if not isinstance(value, dict):
        return None

    # Provider shape: {"name", "phone", "address": {...}}
    nested = value.get("address")
    fields = dict(value)
    if isinstance(nested, dict):
        fields = {**nested, **{k: v for k, v in value.items() if k != "address"}}

    address = Address(
        name=_first_text(fields, ("name",)),
        line1=_first_text(fields, _LINE1_KEYS),
        line2=_first_text(fields, _LINE2_KEYS),
        city=_first_text(fields, _CITY_KEYS),
        state=_first_text(fields, _STATE_KEYS),
        postal_code=_first_text(fields, _POSTAL_KEYS),
        country=_first_text(fields, _COUNTRY_KEYS),
        phone=_first_text(fields, ("phone",)),
        email=_first_text(fields, ("email",)),
    )

    if not (address.line1 or address.city or address.postal_code):
        combined = _first_text(fields, _COMBINED_KEYS)
        if combined:
            parsed = parse_address_string(combined)
            parsed.name = parsed.name or address.name
            parsed.phone = address.phone
            parsed.email = address.email
            return parsed

    return None if address.is_empty() else address
