from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Literal

AttributeKind = Literal["option", "upgrade", "meta"]

OPTION_KEYWORDS = ("option", "vehicle", "fitment", "model", "variant", "trim", "package")
UPGRADE_KEYWORDS = ("upgrade", "addon", "add_on", "add-on")
IGNORED_OPTION_KEYS = ("shipping_option", "shipping_options", "shippingoption")
SKU_KEYS = ("sku", "SKU", "product_sku", "productSku", "item_sku", "variant_sku", "inventory_sku")

_OPTION_SLOT_RE = re.compile(r"^option[_-]?([a-z0-9]+?)?[_-]?(name|value)$")
_UPGRADE_SPLIT_RE = re.compile(r"[,;|]")


@dataclass(frozen=True)
class LineAttribute:
    kind: AttributeKind
    name: str
    value: str
    source: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (bool, int, float)):
        return str(value)
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError):
        return None


def collect_metadata(sources: Iterable[tuple[str, dict[str, Any] | None]]) -> dict[str, tuple[str, str]]:
    """Merge metadata maps in priority order; the first source to set a key wins."""
    merged: dict[str, tuple[str, str]] = {}
    for source, data in sources:
        if not isinstance(data, dict):
            continue
        for raw_key, raw_value in data.items():
            key = str(raw_key or "").strip()
            value = _to_text(raw_value)
            if not key or value is None or key in merged:
                continue
            merged[key] = (value, source)
    return merged


def humanize(text: str) -> str:
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", re.sub(r"[_\-.]+", " ", text or ""))
    return " ".join(part[:1].upper() + part[1:] for part in spaced.split())


def pick_sku(metadata: dict[str, tuple[str, str]]) -> str | None:
    for key in SKU_KEYS:
        if key in metadata:
            return metadata[key][0]
    return None


def _split_upgrades(value: str) -> list[str]:
    tokens = [part.strip() for part in _UPGRADE_SPLIT_RE.split(value) if part.strip()]
    return tokens or [value.strip()]


def normalize_attributes(metadata: dict[str, tuple[str, str]]) -> list[LineAttribute]:
    """Turn a flat metadata map into a typed attribute list.

    Recognized conventions: ``option:<name>`` and ``upgrade:<name>`` keys,
    ``option<slot>_name``/``option<slot>_value`` pairs, and keys containing
    option or upgrade keywords. Every other key is kept verbatim as ``meta``.
    """
    attributes: list[LineAttribute] = []
    slots: dict[str, dict[str, str]] = {}
    slot_sources: dict[str, str] = {}

    for key, (value, source) in metadata.items():
        lower = key.lower()
        prefix, sep, rest = key.partition(":")
        if sep and prefix.lower() == "option" and rest.strip():
            attributes.append(LineAttribute("option", rest.strip(), value, source))
            continue
        if sep and prefix.lower() == "upgrade" and rest.strip():
            for token in _split_upgrades(value):
                attributes.append(LineAttribute("upgrade", rest.strip(), token, source))
            continue

        slot_match = _OPTION_SLOT_RE.match(lower)
        if slot_match:
            slot = slot_match.group(1) or ""
            slots.setdefault(slot, {})[slot_match.group(2)] = value
            slot_sources.setdefault(slot, source)
            continue

        if key in SKU_KEYS:
            continue
        if any(keyword in lower for keyword in UPGRADE_KEYWORDS):
            for token in _split_upgrades(value):
                attributes.append(LineAttribute("upgrade", humanize(key), token, source))
            continue
        if not any(ignored in lower for ignored in IGNORED_OPTION_KEYS) and any(
            keyword in lower for keyword in OPTION_KEYWORDS
        ):
            attributes.append(LineAttribute("option", humanize(key), value, source))
            continue

        attributes.append(LineAttribute("meta", key, value, source))

    for slot, pair in slots.items():
        value = (pair.get("value") or "").strip()
        if not value:
            continue
        label = (pair.get("name") or humanize(slot) or "Option").strip()
        attributes.append(LineAttribute("option", label, value, slot_sources[slot]))

    unique: list[LineAttribute] = []
    seen: set[tuple[str, str, str]] = set()
    for attribute in attributes:
        marker = (attribute.kind, attribute.name, attribute.value)
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(attribute)
    return unique


def option_summary(attributes: Iterable[LineAttribute]) -> str | None:
    parts = [f"{attr.name}: {attr.value}" for attr in attributes if attr.kind == "option"]
    return ", ".join(parts) or None
