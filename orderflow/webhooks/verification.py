"""Webhook signature verification.

Payment deliveries carry the provider's timestamped ``t=...,v1=...`` header,
checked with the Stripe SDK. Carrier deliveries carry a plain HMAC-SHA256 hex
digest of the raw body. A missing secret fails closed with
``ConfigurationError`` unless the explicit local bypass flag is set.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

import stripe

from orderflow.core.errors import ConfigurationError, InvalidSignature

logger = logging.getLogger(__name__)

_HEX_PREFIXES = ("sha256=", "hmac-sha256-hex=")


def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _is_timestamped(header: str) -> bool:
    return header.startswith("t=") or ",v1=" in header


def _verify_timestamped(secret: str, body: bytes, header: str, tolerance_seconds: int) -> None:
    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidSignature("request body is not utf-8") from exc
    try:
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=tolerance_seconds or None)
    except stripe.SignatureVerificationError as exc:
        logger.warning("timestamped webhook signature rejected: %s", exc)
        raise InvalidSignature(str(exc)) from exc


def _verify_hex(secret: str, body: bytes, header: str) -> None:
    provided = header
    for prefix in _HEX_PREFIXES:
        if header.lower().startswith(prefix):
            provided = header[len(prefix):]
            break
    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected.encode("ascii"), provided.strip().lower().encode("utf-8")):
        raise InvalidSignature("signature mismatch")


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
    bypass: bool = False,
) -> None:
    """Raise unless ``signature_header`` authenticates ``body``.

    Accepted header forms: ``t=<unix>,v1=<hex>[,v1=<hex>...]``, a bare hex
    digest, ``sha256=<hex>`` and ``hmac-sha256-hex=<hex>``. Only timestamps
    older than ``tolerance_seconds`` are rejected; zero disables the check.
    """
    if not secret:
        if bypass:
            logger.warning("webhook signature verification bypassed; local testing only")
            return
        raise ConfigurationError("webhook secret is not configured")

    header = (signature_header or "").strip()
    if not header:
        raise InvalidSignature("missing signature header")

    if _is_timestamped(header):
        _verify_timestamped(secret, body, header, tolerance_seconds)
    else:
        _verify_hex(secret, body, header)


def sign_payload(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Produce a ``t=...,v1=...`` header value for ``body``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, f'{ts}.'.encode('utf-8') + body)}"
