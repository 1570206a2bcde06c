from __future__ import annotations

import time

import pytest

from orderflow.core.errors import ConfigurationError, InvalidSignature
from orderflow.webhooks.verification import compute_signature, sign_payload, verify_signature

SECRET = "whsec_unit"
BODY = b'{"id":"evt_1","type":"checkout.session.completed"}'


def _now() -> int:
    return int(time.time())


def test_timestamped_header_round_trip():
    verify_signature(BODY, sign_payload(SECRET, BODY), SECRET)


def test_any_v1_candidate_may_match():
    ts = _now()
    good = sign_payload(SECRET, BODY, timestamp=ts).split(",v1=")[1]
    header = f"t={ts},v1={'0' * 64},v1={good}"
    verify_signature(BODY, header, SECRET)


def test_old_timestamp_is_rejected():
    header = sign_payload(SECRET, BODY, timestamp=_now() - 600)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, header, SECRET, tolerance_seconds=300)


def test_zero_tolerance_skips_the_age_check():
    header = sign_payload(SECRET, BODY, timestamp=1_700_000_000)
    verify_signature(BODY, header, SECRET, tolerance_seconds=0)


def test_future_timestamp_is_accepted():
    header = sign_payload(SECRET, BODY, timestamp=_now() + 600)
    verify_signature(BODY, header, SECRET, tolerance_seconds=300)


def test_tampered_body_is_rejected():
    header = sign_payload(SECRET, BODY)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY + b" ", header, SECRET)


def test_non_utf8_body_is_rejected():
    body = b"\xff\xfe"
    with pytest.raises(InvalidSignature):
        verify_signature(body, f"t={_now()},v1={compute_signature(SECRET, body)}", SECRET)


@pytest.mark.parametrize("prefix", ["", "sha256=", "hmac-sha256-hex="])
def test_plain_hex_forms(prefix):
    verify_signature(BODY, prefix + compute_signature(SECRET, BODY), SECRET)


def test_wrong_secret_is_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, compute_signature("other", BODY), SECRET)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, sign_payload("other", BODY), SECRET)


def test_missing_header_is_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, None, SECRET)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, "   ", SECRET)


def test_non_ascii_header_does_not_crash():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, "sha256=ünïcödé", SECRET)


def test_malformed_timestamped_header():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, "t=abc,v1=deadbeef", SECRET)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, f"t={_now()}", SECRET)


def test_missing_secret_fails_closed():
    with pytest.raises(ConfigurationError):
        verify_signature(BODY, compute_signature(SECRET, BODY), None)


def test_bypass_only_applies_without_secret():
    verify_signature(BODY, None, None, bypass=True)
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, None, SECRET, bypass=True)
