from __future__ import annotations

import logging
from dataclasses import dataclass

from orderflow.core.errors import PartialSideEffectFailure
from orderflow.core.timeutils import now_utc
from orderflow.domain.email import ledger
from orderflow.domain.email.client import EmailClient, EmailSendError
from orderflow.domain.email.templates import render
from orderflow.domain.orders.repository import append_order_event, get_order
from orderflow.persistence.pg import SessionFactory, session_scope

logger = logging.getLogger(__name__)


@dataclass
class EmailOutcome:
    order_id: str
    email_kind: str
    status: str
    entry_id: int | None = None
    message_id: str | None = None
    failure: PartialSideEffectFailure | None = None


def send_order_email(
    session_factory: SessionFactory | None,
    client: EmailClient | None,
    order_id: str,
    email_kind: str,
    *,
    provider_event_id: str | None = None,
) -> EmailOutcome:
    """Send one order email at most once, gated by the email ledger.

    The ledger slot is committed before the provider call and the result is
    committed after it, each in its own transaction, so a crash between the
    two leaves a visible ``reserved`` entry instead of a silent resend.
    """
    if client is None:
        return EmailOutcome(order_id, email_kind, "disabled")

    with session_scope(session_factory) as session:
        order = get_order(session, order_id)
        if order is None:
            return EmailOutcome(order_id, email_kind, "order_not_found")
        recipient = order.customer_email
        if not recipient:
            logger.info("no recipient for %s: order=%s", email_kind, order_id)
            return EmailOutcome(order_id, email_kind, "no_recipient")
        entry_id = ledger.reserve(session, order_id, email_kind, recipient)
        if entry_id is None:
            return EmailOutcome(order_id, email_kind, "duplicate")
        message = render(email_kind, order, recipient)

    try:
        result = client.send(message)
    except Exception as exc:  # isolated: never unwinds the order work already committed
        retryable = exc.retryable if isinstance(exc, EmailSendError) else True
        failure = PartialSideEffectFailure(
            f"{email_kind} send failed",
            order_id=order_id,
            email_kind=email_kind,
            reason=str(exc),
            retryable=retryable,
        )
        logger.warning(
            "email send failed: order=%s kind=%s retryable=%s error=%s", order_id, email_kind, retryable, exc
        )
        with session_scope(session_factory) as session:
            ledger.mark_failed(session, entry_id, str(exc) or exc.__class__.__name__, retryable=retryable)
            append_order_event(
                session,
                order_id,
                f"email:{entry_id}:failed",
                "email_failed",
                now_utc(),
                provider_event_id=provider_event_id,
                status=ledger.FAILED,
                label=email_kind,
                message=str(exc),
                details=failure.to_dict(),
            )
        return EmailOutcome(order_id, email_kind, ledger.FAILED, entry_id=entry_id, failure=failure)

    with session_scope(session_factory) as session:
        ledger.mark_sent(session, entry_id, result.message_id)
        append_order_event(
            session,
            order_id,
            f"email:{entry_id}:sent",
            "email_sent",
            now_utc(),
            provider_event_id=provider_event_id,
            status=ledger.SENT,
            label=email_kind,
            details={"provider_message_id": result.message_id},
        )
    logger.info("email sent: order=%s kind=%s message_id=%s", order_id, email_kind, result.message_id)
    return EmailOutcome(order_id, email_kind, ledger.SENT, entry_id=entry_id, message_id=result.message_id)


def retry_failed_emails(
    session_factory: SessionFactory | None,
    client: EmailClient | None,
    *,
    order_id: str | None = None,
    email_kind: str | None = None,
    limit: int = 50,
) -> list[EmailOutcome]:
    with session_scope(session_factory) as session:
        pairs = ledger.retry_candidates(session, order_id=order_id, email_kind=email_kind, limit=limit)
    return [send_order_email(session_factory, client, pair_order, pair_kind) for pair_order, pair_kind in pairs]
