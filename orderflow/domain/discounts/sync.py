from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import parse_timestamp
from orderflow.persistence.models import DiscountModel
from orderflow.persistence.pg import insert_if_absent
from orderflow.webhooks.events import CouponPayload


@dataclass
class DiscountSyncResult:
    coupon_id: str
    status: str  # created, updated, deleted or stale


def _discount_fields(coupon: CouponPayload, synced_at: datetime, deleted: bool) -> dict[str, Any]:
    percent_bp = None
    if coupon.percent_off is not None and math.isfinite(coupon.percent_off):
        percent_bp = int(round(coupon.percent_off * 100))
    # Percent and fixed amount are mutually exclusive on the provider side.
    amount_off = coupon.amount_off if percent_bp is None else None
    redeem_by = parse_timestamp(coupon.redeem_by) if coupon.redeem_by else None

    valid = bool(coupon.valid) and not deleted
    if valid and redeem_by is not None and redeem_by < synced_at:
        valid = False

    return {
        "name": (coupon.name or coupon.id).strip() or coupon.id,
        "percent_off_bp": percent_bp,
        "amount_off_cents": amount_off,
        "currency": coupon.currency.lower() if amount_off is not None and coupon.currency else None,
        "duration": coupon.duration,
        "duration_in_months": coupon.duration_in_months,
        "valid": valid,
        "deleted": deleted,
        "redeem_by": redeem_by,
        "max_redemptions": coupon.max_redemptions,
        "times_redeemed": coupon.times_redeemed,
        "coupon_metadata": dict(coupon.metadata),
        "source_updated_at": synced_at,
    }


def sync_coupon(session: Session, coupon: CouponPayload, occurred_at: datetime, *, deleted: bool = False) -> DiscountSyncResult:
    """Mirror a provider coupon; an older event never overwrites a newer one."""
    fields = _discount_fields(coupon, occurred_at, deleted)
    created = insert_if_absent(
        session,
        DiscountModel,
        {"coupon_id": coupon.id, **fields},
        index_elements=["coupon_id"],
    )
    if created:
        return DiscountSyncResult(coupon.id, "deleted" if deleted else "created")

    result = session.execute(
        update(DiscountModel)
        .where(DiscountModel.coupon_id == coupon.id, DiscountModel.source_updated_at <= occurred_at)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return DiscountSyncResult(coupon.id, "stale")
    return DiscountSyncResult(coupon.id, "deleted" if deleted else "updated")
