from __future__ import annotations

from sqlalchemy import select

from orderflow.domain.customers.linker import customer_aliases, customer_id_for, link_customer
from orderflow.domain.orders.aggregates import CustomerContact
from orderflow.domain.orders.repository import get_order, order_id_for_checkout
from orderflow.persistence.models import CustomerModel
from orderflow.persistence.pg import session_scope
from payloads import BASE_TS, checkout_session, event


def _customers(session):
    return list(session.scalars(select(CustomerModel)).all())


def test_new_payment_identity_creates_customer_with_alias(post_payment):
    response = post_payment(event("evt_new", "checkout.session.completed", checkout_session("cs_new", customer="cus_new")))
    assert response.status_code == 200

    with session_scope() as session:
        order = get_order(session, order_id_for_checkout("cs_new"))
        customer = session.get(CustomerModel, order.customer_ref)
        assert customer.primary_payment_id == "cus_new"
        assert customer.email_normalized == "buyer@example.com"
        assert customer.order_count == 1
        assert customer.lifetime_spend_cents == 2500
        assert customer_aliases(session, customer.id) == ["cus_new"]


def test_email_match_adds_alias_and_keeps_primary(post_payment):
    first = checkout_session("cs_d1", customer="cus_first", payment_intent="pi_d1", email="Shopper@Example.com")
    second = checkout_session("cs_d2", customer="cus_second", payment_intent="pi_d2", email="shopper@example.com ")
    assert post_payment(event("evt_d1", "checkout.session.completed", first)).status_code == 200
    response = post_payment(event("evt_d2", "checkout.session.completed", second, created=BASE_TS + 5))

    assert response.status_code == 200
    assert "customer_linked:email" in response.json()["actions"]
    with session_scope() as session:
        customers = _customers(session)
        assert len(customers) == 1
        customer = customers[0]
        assert customer.primary_payment_id == "cus_first"
        assert customer_aliases(session, customer.id) == ["cus_first", "cus_second"]
        assert customer.order_count == 2
        assert get_order(session, order_id_for_checkout("cs_d2")).customer_ref == customer.id


def test_aliases_only_grow(post_payment):
    post_payment(event("evt_m1", "checkout.session.completed", checkout_session("cs_m1", customer="cus_m1", payment_intent="pi_m1")))
    post_payment(event("evt_m2", "checkout.session.completed", checkout_session("cs_m2", customer="cus_m2", payment_intent="pi_m2")))
    with session_scope() as session:
        customer_id = _customers(session)[0].id
        before = customer_aliases(session, customer_id)

    # Same payment identity again: nothing added, nothing removed.
    post_payment(event("evt_m3", "checkout.session.completed", checkout_session("cs_m3", customer="cus_m1", payment_intent="pi_m3")))
    with session_scope() as session:
        after = customer_aliases(session, customer_id)

    assert set(before) <= set(after)
    assert after == before


def test_link_is_idempotent_for_the_same_order(post_payment):
    post_payment(event("evt_i1", "checkout.session.completed", checkout_session("cs_i1", customer="cus_i1")))
    order_id = order_id_for_checkout("cs_i1")
    contact = CustomerContact(payment_customer_id="cus_i1", email="buyer@example.com")

    with session_scope() as session:
        again = link_customer(session, order_id, contact)
        assert again.matched_by == "order_ref"
        assert not again.created
        assert not again.alias_added
        assert len(_customers(session)) == 1


def test_checkout_without_identity_is_not_linked(post_payment):
    payload = checkout_session("cs_anon", customer=None, email=None)
    response = post_payment(event("evt_anon", "checkout.session.completed", payload))

    assert response.status_code == 200
    with session_scope() as session:
        assert get_order(session, order_id_for_checkout("cs_anon")).customer_ref is None
        assert _customers(session) == []


def test_customer_ids_are_deterministic():
    assert customer_id_for("cus_x", None) == customer_id_for("cus_x", "other@example.com")
    assert customer_id_for(None, "A@B.com") == customer_id_for(None, "a@b.com")
    assert customer_id_for(None, None) is None
