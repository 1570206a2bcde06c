from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc
from orderflow.domain.orders.aggregates import CustomerContact
from orderflow.domain.orders.repository import fill_missing, get_order
from orderflow.domain.orders.status import REVENUE_STATUSES
from orderflow.persistence.models import CustomerAliasModel, CustomerModel, InvoiceModel, OrderModel
from orderflow.persistence.pg import insert_if_absent

logger = logging.getLogger(__name__)

CUSTOMER_NAMESPACE = uuid.UUID("0b1f8f7e-6d0e-4c59-8d3b-71a7b0f4c2de")


@dataclass
class LinkResult:
    customer_id: str
    matched_by: str
    created: bool = False
    alias_added: bool = False


def normalize_email(email: str | None) -> str | None:
    if not email or not email.strip():
        return None
    return email.strip().lower()


def customer_id_for(payment_id: str | None, email: str | None) -> str | None:
    if payment_id:
        return str(uuid.uuid5(CUSTOMER_NAMESPACE, f"payment:{payment_id}"))
    normalized = normalize_email(email)
    if normalized:
        return str(uuid.uuid5(CUSTOMER_NAMESPACE, f"email:{normalized}"))
    return None


def customer_aliases(session: Session, customer_id: str) -> list[str]:
    return list(
        session.scalars(
            select(CustomerAliasModel.payment_id)
            .where(CustomerAliasModel.customer_id == customer_id)
            .order_by(CustomerAliasModel.added_at.asc(), CustomerAliasModel.payment_id.asc())
        ).all()
    )


def _resolve_contact(session: Session, contact: CustomerContact) -> tuple[CustomerModel | None, str]:
    if contact.payment_customer_id:
        alias = session.get(CustomerAliasModel, contact.payment_customer_id, populate_existing=True)
        if alias is not None:
            customer = session.get(CustomerModel, alias.customer_id, populate_existing=True)
            if customer is not None:
                return customer, "alias"

    email = normalize_email(contact.email)
    if email:
        customer = session.scalar(
            select(CustomerModel)
            .where(CustomerModel.email_normalized == email)
            .order_by(CustomerModel.created_at.asc(), CustomerModel.id.asc())
            .limit(1)
        )
        if customer is not None:
            return customer, "email"

    return None, "created"


def _resolve(session: Session, order: OrderModel, contact: CustomerContact) -> tuple[CustomerModel | None, str]:
    if order.customer_ref:
        customer = session.get(CustomerModel, order.customer_ref, populate_existing=True)
        if customer is not None:
            return customer, "order_ref"
    return _resolve_contact(session, contact)


def _create_customer(session: Session, contact: CustomerContact, now: datetime) -> tuple[str, bool] | None:
    customer_id = customer_id_for(contact.payment_customer_id, contact.email)
    if customer_id is None:
        return None
    created = insert_if_absent(
        session,
        CustomerModel,
        {
            "id": customer_id,
            "primary_payment_id": contact.payment_customer_id,
            "email": contact.email,
            "email_normalized": normalize_email(contact.email),
            "name": contact.name,
            "phone": contact.phone,
            "address": contact.address.to_dict() if contact.address else None,
            "order_count": 0,
            "lifetime_spend_cents": 0,
            "created_at": now,
            "updated_at": now,
        },
        index_elements=["id"],
    )
    return customer_id, created


def add_alias(session: Session, customer_id: str, payment_id: str) -> bool:
    """Attach a payment id to a customer; alias rows are never removed or reassigned."""
    added = insert_if_absent(
        session,
        CustomerAliasModel,
        {"payment_id": payment_id, "customer_id": customer_id, "added_at": now_utc()},
        index_elements=["payment_id"],
    )
    if not added:
        owner = session.scalar(select(CustomerAliasModel.customer_id).where(CustomerAliasModel.payment_id == payment_id))
        if owner != customer_id:
            logger.warning(
                "payment id already aliased to another customer: payment_id=%s owner=%s requested=%s",
                payment_id,
                owner,
                customer_id,
            )
    return added


def _fill_customer_field(session: Session, customer_id: str, column: str, value) -> None:
    if value is None:
        return
    attr = getattr(CustomerModel, column)
    session.execute(
        update(CustomerModel)
        .where(CustomerModel.id == customer_id, attr.is_(None))
        .values({column: value, "updated_at": now_utc()})
        .execution_options(synchronize_session=False)
    )


def _merge_contact(session: Session, customer_id: str, contact: CustomerContact) -> None:
    _fill_customer_field(session, customer_id, "primary_payment_id", contact.payment_customer_id)
    _fill_customer_field(session, customer_id, "email", contact.email)
    _fill_customer_field(session, customer_id, "email_normalized", normalize_email(contact.email))
    _fill_customer_field(session, customer_id, "name", contact.name)
    _fill_customer_field(session, customer_id, "phone", contact.phone)
    _fill_customer_field(session, customer_id, "address", contact.address.to_dict() if contact.address else None)


def recompute_metrics(session: Session, customer_id: str) -> tuple[int, int]:
    """Derive order count and lifetime spend from the orders themselves."""
    statuses = [status.value for status in REVENUE_STATUSES]
    count, spend = session.execute(
        select(
            func.count(OrderModel.id),
            func.coalesce(func.sum(OrderModel.total_cents - OrderModel.amount_refunded_cents), 0),
        ).where(OrderModel.customer_ref == customer_id, OrderModel.status.in_(statuses))
    ).one()
    session.execute(
        update(CustomerModel)
        .where(CustomerModel.id == customer_id)
        .values(order_count=int(count), lifetime_spend_cents=int(spend), updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return int(count), int(spend)


def link_customer(session: Session, order_id: str, contact: CustomerContact) -> LinkResult | None:
    """Resolve or create the customer for an order and link the two by reference.

    Resolution order is the order's own reference, then an exact payment id
    alias, then a case-insensitive email match. Every write is either an
    insert-if-absent or a patch conditioned on the field still being empty,
    so a retried run converges on the same state.
    """
    order = get_order(session, order_id)
    if order is None:
        return None

    customer, matched_by = _resolve(session, order, contact)
    created = False
    if customer is None:
        outcome = _create_customer(session, contact, now_utc())
        if outcome is None:
            logger.info("checkout has neither payment identity nor email; customer not linked: order=%s", order_id)
            return None
        customer_id, created = outcome
    else:
        customer_id = customer.id

    alias_added = False
    if contact.payment_customer_id:
        alias_added = add_alias(session, customer_id, contact.payment_customer_id)
    _merge_contact(session, customer_id, contact)

    if not fill_missing(session, order_id, "customer_ref", customer_id) and order.customer_ref not in (None, customer_id):
        logger.warning(
            "order already references another customer: order=%s existing=%s resolved=%s",
            order_id,
            order.customer_ref,
            customer_id,
        )
    recompute_metrics(session, order.customer_ref or customer_id)
    return LinkResult(customer_id=customer_id, matched_by=matched_by, created=created, alias_added=alias_added)


def link_invoice(session: Session, order_id: str, invoice_id: str) -> None:
    """Weak order-invoice link in both directions; either side may exist first."""
    insert_if_absent(
        session,
        InvoiceModel,
        {"id": invoice_id, "order_ref": order_id, "amount_due_cents": 0, "amount_paid_cents": 0, "updated_at": now_utc()},
        index_elements=["id"],
    )
    session.execute(
        update(InvoiceModel)
        .where(InvoiceModel.id == invoice_id, InvoiceModel.order_ref.is_(None))
        .values(order_ref=order_id)
        .execution_options(synchronize_session=False)
    )
    fill_missing(session, order_id, "invoice_ref", invoice_id)


def sync_customer(session: Session, contact: CustomerContact) -> LinkResult | None:
    """Fold a provider customer record into the matching customer.

    Same resolution and fill-only merge as checkout linking, minus the
    order. Records with no alias match and no email are skipped.
    """
    customer, matched_by = _resolve_contact(session, contact)
    created = False
    if customer is None:
        if normalize_email(contact.email) is None:
            logger.info("provider customer has no email and no alias; skipped: payment_id=%s", contact.payment_customer_id)
            return None
        customer_id, created = _create_customer(session, contact, now_utc())
    else:
        customer_id = customer.id

    alias_added = False
    if contact.payment_customer_id:
        alias_added = add_alias(session, customer_id, contact.payment_customer_id)
    _merge_contact(session, customer_id, contact)
    return LinkResult(customer_id=customer_id, matched_by=matched_by, created=created, alias_added=alias_added)


def note_customer_deleted(session: Session, payment_id: str) -> str | None:
    # Aliases and history stay; only the sync time moves.
    customer_id = session.scalar(select(CustomerAliasModel.customer_id).where(CustomerAliasModel.payment_id == payment_id))
    if customer_id is None:
        return None
    session.execute(
        update(CustomerModel)
        .where(CustomerModel.id == customer_id)
        .values(updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return customer_id
