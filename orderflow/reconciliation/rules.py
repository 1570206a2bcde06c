from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc
from orderflow.domain.email import ledger
from orderflow.domain.inventory.reservations import reservations_for
from orderflow.domain.orders.aggregates import TOTALS_TOLERANCE_CENTS
from orderflow.persistence.models import EmailLogModel, OrderModel

STUCK_RESERVATION_AFTER = timedelta(minutes=15)
UNRESERVED_STATUSES = {"none", "pending", "expired"}


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str
    order_id: str | None = None


def check_totals_invariant(order: OrderModel) -> ReconciliationResult:
    expected = order.subtotal_cents - order.discount_cents + order.tax_cents + order.shipping_cents
    drift = order.total_cents - expected
    passed = abs(drift) <= TOTALS_TOLERANCE_CENTS
    return ReconciliationResult(
        rule="totals_invariant",
        passed=passed,
        detail=f"total={order.total_cents}, expected={expected}, drift={drift}",
        order_id=order.id,
    )


def check_reservations_match_cart(session: Session, order: OrderModel) -> ReconciliationResult:
    wanted: dict[str, int] = {}
    for line in order.cart or []:
        sku = line.get("sku")
        if sku:
            wanted[sku] = wanted.get(sku, 0) + int(line.get("quantity") or 1)
    held = {row.sku: row.quantity for row in reservations_for(session, order.id)}

    if order.status == "cancelled":
        # A payment may be cancelled before or after capture.
        passed = not held or held == wanted
        detail = "ok" if passed else f"cart={wanted}, reserved={held}"
    elif order.status in UNRESERVED_STATUSES:
        passed = not held
        detail = "no reservations expected" if passed else f"unexpected reservations={held}"
    else:
        passed = held == wanted
        detail = "ok" if passed else f"cart={wanted}, reserved={held}"
    return ReconciliationResult(rule="reservations_match_cart", passed=passed, detail=detail, order_id=order.id)


def check_single_sent_email(session: Session, order_id: str) -> ReconciliationResult:
    rows = session.execute(
        select(EmailLogModel.email_kind, func.count())
        .where(EmailLogModel.order_id == order_id, EmailLogModel.status == ledger.SENT)
        .group_by(EmailLogModel.email_kind)
    ).all()
    repeated = {kind: int(count) for kind, count in rows if count > 1}
    return ReconciliationResult(
        rule="single_sent_email",
        passed=not repeated,
        detail="ok" if not repeated else f"repeated sends={repeated}",
        order_id=order_id,
    )


def check_stuck_email_reservations(session: Session, now: datetime | None = None) -> ReconciliationResult:
    cutoff = (now or now_utc()) - STUCK_RESERVATION_AFTER
    stuck = ledger.stale_reservations(session, cutoff)
    return ReconciliationResult(
        rule="stuck_email_reservations",
        passed=not stuck,
        detail="ok" if not stuck else "stuck=" + ",".join(f"{row.order_id}:{row.email_kind}" for row in stuck),
    )


def run_order_reconciliation(session: Session, order_id: str | None = None) -> list[ReconciliationResult]:
    stmt = select(OrderModel).order_by(OrderModel.created_at.asc())
    if order_id:
        stmt = stmt.where(OrderModel.id == order_id)
    results: list[ReconciliationResult] = []
    for order in session.scalars(stmt).all():
        results.append(check_totals_invariant(order))
        results.append(check_reservations_match_cart(session, order))
        results.append(check_single_sent_email(session, order.id))
    results.append(check_stuck_email_reservations(session))
    return results
