from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc
from orderflow.persistence.models import InventoryReservationModel, ProductStockModel
from orderflow.persistence.pg import insert_if_absent

logger = logging.getLogger(__name__)


@dataclass
class ReservationResult:
    order_id: str
    skipped: bool = False
    reserved: dict[str, int] = field(default_factory=dict)
    oversold: dict[str, int] = field(default_factory=dict)
    untracked: list[str] = field(default_factory=list)
    unskued_lines: int = 0

    @property
    def has_oversell(self) -> bool:
        return bool(self.oversold)

    def warning(self, at: datetime) -> dict[str, Any]:
        return {
            "code": "oversell",
            "skus": dict(self.oversold),
            "detected_at": at.isoformat(),
        }


def reservations_for(session: Session, order_id: str) -> list[InventoryReservationModel]:
    return list(
        session.scalars(
            select(InventoryReservationModel)
            .where(InventoryReservationModel.order_id == order_id)
            .order_by(InventoryReservationModel.sku.asc())
        ).all()
    )


def _has_reservations(session: Session, order_id: str) -> bool:
    found = session.scalar(
        select(InventoryReservationModel.sku).where(InventoryReservationModel.order_id == order_id).limit(1)
    )
    return found is not None


def _decrement(session: Session, sku: str, quantity: int) -> int | None:
    """Atomically take ``quantity`` off the counter; returns the new level, None for unknown SKUs."""
    result = session.execute(
        update(ProductStockModel)
        .where(ProductStockModel.sku == sku)
        .values(available=ProductStockModel.available - quantity, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return int(session.scalar(select(ProductStockModel.available).where(ProductStockModel.sku == sku)))


def reserve_order(session: Session, order_id: str, cart: list[dict[str, Any]]) -> ReservationResult:
    """Reserve stock for every SKU line of an order, at most once per order.

    Stock may go negative: payment has already been captured, so the sale
    stands and the shortfall is reported in ``oversold`` for the caller to
    record on the order.
    """
    result = ReservationResult(order_id=order_id)
    if _has_reservations(session, order_id):
        result.skipped = True
        return result

    quantities: dict[str, int] = {}
    for line in cart:
        sku = line.get("sku")
        if not sku:
            result.unskued_lines += 1
            continue
        quantities[sku] = quantities.get(sku, 0) + int(line.get("quantity") or 1)

    now = now_utc()
    for sku, quantity in sorted(quantities.items()):
        tracked = session.get(ProductStockModel, sku) is not None
        inserted = insert_if_absent(
            session,
            InventoryReservationModel,
            {"sku": sku, "order_id": order_id, "quantity": quantity, "tracked": tracked, "reserved_at": now},
            index_elements=["sku", "order_id"],
        )
        if not inserted:
            continue
        if not tracked:
            result.untracked.append(sku)
            continue

        remaining = _decrement(session, sku, quantity)
        if remaining is None:
            result.untracked.append(sku)
            continue
        result.reserved[sku] = quantity
        if remaining < 0:
            result.oversold[sku] = remaining
            logger.warning("oversell: order=%s sku=%s quantity=%s available_after=%s", order_id, sku, quantity, remaining)

    return result


def set_stock(session: Session, sku: str, available: int, title: str | None = None) -> None:
    existing = session.get(ProductStockModel, sku)
    if existing is None:
        session.add(ProductStockModel(sku=sku, title=title, available=available, updated_at=now_utc()))
    else:
        existing.available = available
        existing.title = title or existing.title
        existing.updated_at = now_utc()
    session.flush()
