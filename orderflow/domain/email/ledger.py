from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc
from orderflow.persistence.models import EmailLogModel
from orderflow.persistence.pg import insert_if_absent

RESERVED = "reserved"
SENT = "sent"
FAILED = "failed"


def active_key_for(order_id: str, email_kind: str) -> str:
    return f"{order_id}:{email_kind}"


def reserve(session: Session, order_id: str, email_kind: str, recipient: str | None = None) -> int | None:
    """Claim the single non-failed slot for ``(order_id, email_kind)``.

    Returns the ledger entry id, or None when a reserved or sent entry
    already holds the slot.
    """
    key = active_key_for(order_id, email_kind)
    inserted = insert_if_absent(
        session,
        EmailLogModel,
        {
            "order_id": order_id,
            "email_kind": email_kind,
            "active_key": key,
            "status": RESERVED,
            "recipient": recipient,
            "reserved_at": now_utc(),
        },
        index_elements=["active_key"],
    )
    if not inserted:
        return None
    return session.scalar(select(EmailLogModel.id).where(EmailLogModel.active_key == key))


def mark_sent(session: Session, entry_id: int, provider_message_id: str) -> bool:
    result = session.execute(
        update(EmailLogModel)
        .where(EmailLogModel.id == entry_id, EmailLogModel.status == RESERVED)
        .values(status=SENT, provider_message_id=provider_message_id, sent_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_failed(session: Session, entry_id: int, error: str, *, retryable: bool = True) -> bool:
    # Clearing active_key frees the slot for a later retry.
    result = session.execute(
        update(EmailLogModel)
        .where(EmailLogModel.id == entry_id, EmailLogModel.status == RESERVED)
        .values(status=FAILED, active_key=None, error=error[:2000], retryable=retryable, failed_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def entries_for(session: Session, order_id: str) -> list[EmailLogModel]:
    return list(
        session.scalars(
            select(EmailLogModel).where(EmailLogModel.order_id == order_id).order_by(EmailLogModel.id.asc())
        ).all()
    )


def _latest_failures(
    session: Session,
    order_id: str | None = None,
    email_kind: str | None = None,
) -> dict[tuple[str, str], EmailLogModel]:
    stmt = select(EmailLogModel).where(EmailLogModel.status == FAILED)
    if order_id:
        stmt = stmt.where(EmailLogModel.order_id == order_id)
    if email_kind:
        stmt = stmt.where(EmailLogModel.email_kind == email_kind)
    latest: dict[tuple[str, str], EmailLogModel] = {}
    for row in session.scalars(stmt.order_by(EmailLogModel.id.asc())).all():
        latest[(row.order_id, row.email_kind)] = row
    return latest


def permanently_failed(session: Session, order_id: str, email_kind: str) -> bool:
    """Whether the most recent failed attempt was a rejection retrying cannot fix."""
    latest = _latest_failures(session, order_id, email_kind).get((order_id, email_kind))
    return latest is not None and not latest.retryable


def retry_candidates(
    session: Session,
    order_id: str | None = None,
    email_kind: str | None = None,
    limit: int = 50,
) -> list[tuple[str, str]]:
    """``(order_id, email_kind)`` pairs whose latest attempt failed retryably and whose slot is free."""
    latest = _latest_failures(session, order_id, email_kind)
    held = set(
        session.scalars(select(EmailLogModel.active_key).where(EmailLogModel.active_key.is_not(None))).all()
    )
    pairs = sorted(pair for pair, row in latest.items() if row.retryable and active_key_for(*pair) not in held)
    return pairs[:limit]


def stale_reservations(session: Session, older_than: datetime) -> list[EmailLogModel]:
    return list(
        session.scalars(
            select(EmailLogModel)
            .where(EmailLogModel.status == RESERVED, EmailLogModel.reserved_at < older_than)
            .order_by(EmailLogModel.reserved_at.asc())
        ).all()
    )
