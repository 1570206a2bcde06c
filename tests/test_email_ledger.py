from __future__ import annotations

from datetime import timedelta

import httpx

from orderflow.core.config import get_settings
from orderflow.core.timeutils import now_utc
from orderflow.domain.email import ledger
from orderflow.domain.email.client import EmailMessage, EmailSendError, ResendEmailClient
from orderflow.domain.email.sender import retry_failed_emails, send_order_email
from orderflow.domain.orders.repository import list_order_events, order_id_for_checkout
from orderflow.persistence.pg import session_scope
from payloads import checkout_session, event


def test_only_one_active_slot_per_kind():
    with session_scope() as session:
        first = ledger.reserve(session, "order-1", "order_confirmation", "a@example.com")
        second = ledger.reserve(session, "order-1", "order_confirmation", "a@example.com")
        other_kind = ledger.reserve(session, "order-1", "refund_notice", "a@example.com")

    assert first is not None
    assert second is None
    assert other_kind is not None


def test_failed_entry_frees_the_slot():
    with session_scope() as session:
        entry_id = ledger.reserve(session, "order-2", "order_confirmation")
        ledger.mark_failed(session, entry_id, "boom")
    with session_scope() as session:
        retry_id = ledger.reserve(session, "order-2", "order_confirmation")
        assert retry_id is not None
        assert retry_id != entry_id
        assert [row.status for row in ledger.entries_for(session, "order-2")] == ["failed", "reserved"]


def test_sent_entry_is_final():
    with session_scope() as session:
        entry_id = ledger.reserve(session, "order-3", "shipping_update")
        assert ledger.mark_sent(session, entry_id, "msg_1")
        assert not ledger.mark_failed(session, entry_id, "late failure")
        assert ledger.reserve(session, "order-3", "shipping_update") is None


def test_stale_reservations_are_listed():
    with session_scope() as session:
        ledger.reserve(session, "order-4", "order_confirmation")
    with session_scope() as session:
        assert ledger.stale_reservations(session, now_utc() - timedelta(minutes=5)) == []
        assert [row.order_id for row in ledger.stale_reservations(session, now_utc() + timedelta(minutes=5))] == ["order-4"]


def test_send_is_exactly_once(post_payment, email_client):
    post_payment(event("evt_e1", "checkout.session.completed", checkout_session("cs_e1")))
    order_id = order_id_for_checkout("cs_e1")

    again = send_order_email(None, email_client, order_id, "order_confirmation")

    assert again.status == "duplicate"
    assert email_client.kinds() == ["order_confirmation"]
    with session_scope() as session:
        entries = ledger.entries_for(session, order_id)
        assert [(row.status, row.provider_message_id) for row in entries] == [("sent", "msg_1")]


def test_failed_send_is_recorded_and_retryable(post_payment, email_client):
    email_client.fail_with = EmailSendError("provider down")
    response = post_payment(event("evt_e2", "checkout.session.completed", checkout_session("cs_e2")))
    order_id = order_id_for_checkout("cs_e2")

    assert response.status_code == 200
    assert response.json()["warnings"][0]["error"] == "partial_side_effect_failure"
    with session_scope() as session:
        assert [row.status for row in ledger.entries_for(session, order_id)] == ["failed"]
        assert "email_failed" in [row.event_type for row in list_order_events(session, order_id)]

    email_client.fail_with = None
    outcomes = retry_failed_emails(None, email_client)

    assert [(o.order_id, o.status) for o in outcomes] == [(order_id, "sent")]
    assert retry_failed_emails(None, email_client) == []


def test_disabled_client_sends_nothing():
    assert send_order_email(None, None, "order-x", "order_confirmation").status == "disabled"


def test_resend_client_posts_to_provider():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"id": "re_123"})

    settings = get_settings().model_copy(update={"email_api_key": "re_key"})
    client = ResendEmailClient(settings, transport=httpx.MockTransport(handler))
    result = client.send(EmailMessage(to="a@example.com", subject="s", html="<p>h</p>", text="h"))

    assert result.message_id == "re_123"
    assert seen["url"] == "https://api.resend.com/emails"
    assert seen["auth"] == "Bearer re_key"


def test_resend_client_maps_errors():
    settings = get_settings().model_copy(update={"email_api_key": "re_key"})
    rejecting = ResendEmailClient(settings, transport=httpx.MockTransport(lambda request: httpx.Response(422, json={})))
    throttled = ResendEmailClient(settings, transport=httpx.MockTransport(lambda request: httpx.Response(429, json={})))
    message = EmailMessage(to="a@example.com", subject="s", html="", text="")

    for client, retryable in ((rejecting, False), (throttled, True)):
        try:
            client.send(message)
        except EmailSendError as exc:
            assert exc.retryable is retryable
        else:
            raise AssertionError("expected EmailSendError")


def test_permanent_rejection_is_not_retried(post_payment, email_client):
    email_client.fail_with = EmailSendError("provider rejected message: status=422", retryable=False)
    post_payment(event("evt_e3", "checkout.session.completed", checkout_session("cs_e3")))
    order_id = order_id_for_checkout("cs_e3")
    email_client.fail_with = None

    with session_scope() as session:
        assert [(row.status, row.retryable) for row in ledger.entries_for(session, order_id)] == [("failed", False)]
        assert ledger.permanently_failed(session, order_id, "order_confirmation")
        assert ledger.retry_candidates(session) == []
    assert retry_failed_emails(None, email_client) == []
    assert email_client.kinds() == []


def test_latest_failure_decides_retryability():
    with session_scope() as session:
        first = ledger.reserve(session, "order-5", "refund_notice")
        ledger.mark_failed(session, first, "422", retryable=False)
        second = ledger.reserve(session, "order-5", "refund_notice")
        ledger.mark_failed(session, second, "timeout")

    with session_scope() as session:
        assert not ledger.permanently_failed(session, "order-5", "refund_notice")
        assert ledger.retry_candidates(session, order_id="order-5") == [("order-5", "refund_notice")]
