from __future__ import annotations

from orderflow.core.config import get_settings
from orderflow.core.security import authenticate
from orderflow.domain.email.client import EmailSendError
from orderflow.domain.orders.repository import order_id_for_checkout
from payloads import checkout_session, event


def _seed(post_payment) -> str:
    post_payment(event("evt_api", "checkout.session.completed", checkout_session("cs_api")))
    return order_id_for_checkout("cs_api")


def test_order_view_requires_api_key(client, post_payment, auth_headers):
    order_id = _seed(post_payment)

    assert client.get(f"/orders/{order_id}").status_code == 401
    assert client.get(f"/orders/{order_id}", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.get(f"/orders/{order_id}", headers={"Authorization": "Basic abc"}).status_code == 401

    response = client.get(f"/orders/{order_id}", headers=auth_headers["system"])
    body = response.json()

    assert response.status_code == 200
    assert body["status"] == "paid"
    assert body["customer_aliases"] == ["cus_A"]
    assert body["totals"]["total_cents"] == 2500
    assert [row["email_kind"] for row in body["email_log"]] == ["order_confirmation"]
    assert [row["sku"] for row in body["reservations"]] == ["SKU-1"]
    assert "checkout.session.completed" in [row["event_type"] for row in body["event_log"]]


def test_unknown_order_is_404(client, auth_headers):
    assert client.get("/orders/nope", headers=auth_headers["operator"]).status_code == 404


def test_resend_is_operator_only(client, post_payment, auth_headers):
    order_id = _seed(post_payment)

    forbidden = client.post(f"/orders/{order_id}/emails/order_confirmation/resend", headers=auth_headers["system"])

    assert forbidden.status_code == 403


def test_resend_validates_kind_and_refuses_duplicates(client, post_payment, auth_headers):
    order_id = _seed(post_payment)

    bad_kind = client.post(f"/orders/{order_id}/emails/newsletter/resend", headers=auth_headers["operator"])
    already_sent = client.post(f"/orders/{order_id}/emails/order_confirmation/resend", headers=auth_headers["operator"])

    assert bad_kind.status_code == 400
    assert already_sent.status_code == 409


def test_resend_after_failure(client, post_payment, auth_headers, email_client):
    email_client.fail_with = EmailSendError("provider down")
    order_id = _seed(post_payment)
    email_client.fail_with = None

    response = client.post(f"/orders/{order_id}/emails/order_confirmation/resend", headers=auth_headers["operator"])

    assert response.status_code == 200
    assert response.json()["status"] == "sent"
    assert response.json()["provider_message_id"] == "msg_1"


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_resend_refuses_permanent_rejection_unless_forced(client, post_payment, auth_headers, email_client):
    email_client.fail_with = EmailSendError("provider rejected message: status=422", retryable=False)
    order_id = _seed(post_payment)
    email_client.fail_with = None
    url = f"/orders/{order_id}/emails/order_confirmation/resend"

    refused = client.post(url, headers=auth_headers["operator"])
    forced = client.post(url, params={"force": "true"}, headers=auth_headers["operator"])

    assert refused.status_code == 409
    assert forced.status_code == 200
    assert forced.json()["status"] == "sent"
    assert email_client.kinds() == ["order_confirmation"]


def test_api_keys_do_not_cross_roles():
    settings = get_settings()

    assert authenticate(settings.operator_api_key, settings).type == "operator"
    assert authenticate(settings.system_api_key, settings).type == "system"
    assert authenticate(settings.operator_api_key + "x", settings) is None
    assert authenticate("ünïcödé", settings) is None
