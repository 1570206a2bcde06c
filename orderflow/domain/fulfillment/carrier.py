from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from orderflow.core.timeutils import now_utc, parse_timestamp
from orderflow.domain.orders.repository import TransitionResult, apply_status, fill_missing, get_order
from orderflow.domain.orders.status import OrderStatus
from orderflow.persistence.models import OrderModel, ShippingLogModel
from orderflow.webhooks.events import TrackerPayload

logger = logging.getLogger(__name__)

CARRIER_STATUS_MAP: dict[str, OrderStatus] = {
    "pre_transit": OrderStatus.FULFILLED,
    "in_transit": OrderStatus.SHIPPED,
    "out_for_delivery": OrderStatus.SHIPPED,
    "available_for_pickup": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
}


@dataclass
class TrackerOutcome:
    order_id: str | None
    applied: bool = False
    transition: TransitionResult | None = None

    @property
    def newly_shipped(self) -> bool:
        return bool(self.transition and self.transition.applied and self.transition.to_status == OrderStatus.SHIPPED.value)


def find_order_for_tracker(session: Session, tracker: TrackerPayload) -> OrderModel | None:
    order_id = tracker.metadata.get("order_id")
    if order_id:
        order = get_order(session, str(order_id))
        if order is not None:
            return order

    clauses = []
    if tracker.shipment_id:
        clauses.append(OrderModel.shipment_id == tracker.shipment_id)
    if tracker.tracking_code:
        clauses.append(OrderModel.tracking_number == tracker.tracking_code)
    session_id = tracker.metadata.get("checkout_session_id")
    if session_id:
        clauses.append(OrderModel.checkout_session_id == str(session_id))
    if not clauses:
        return None
    return session.scalar(select(OrderModel).where(or_(*clauses)).order_by(OrderModel.created_at.asc()).limit(1))


def label_url_for(tracker: TrackerPayload) -> str | None:
    """Postage label URL from an embedded shipment, the tracker itself or its metadata."""
    for label in ((tracker.shipment or {}).get("postage_label"), tracker.postage_label):
        if isinstance(label, dict) and label.get("label_url"):
            return str(label["label_url"])
    value = tracker.metadata.get("label_url")
    return str(value) if value else None


def _latest_message(tracker: TrackerPayload) -> str:
    parts = [tracker.status]
    if tracker.tracking_details:
        latest = tracker.tracking_details[-1]
        if latest.get("message"):
            parts.append(str(latest["message"]))
        location = latest.get("tracking_location") or {}
        place = ", ".join(str(location[key]) for key in ("city", "state") if location.get(key))
        if place:
            parts.append(place)
    return " - ".join(parts)


def apply_tracker_update(
    session: Session,
    tracker: TrackerPayload,
    provider_event_id: str,
    occurred_at: datetime,
) -> TrackerOutcome:
    """Apply a carrier tracker update to its order.

    Fulfillment fields only move forward in carrier time; the shipping log
    gets an entry for every update, stale ones flagged as not applied.
    """
    order = find_order_for_tracker(session, tracker)
    if order is None:
        logger.warning(
            "no order for tracker: tracker=%s shipment=%s tracking_code=%s",
            tracker.id,
            tracker.shipment_id,
            tracker.tracking_code,
        )
        return TrackerOutcome(order_id=None)

    event_at = parse_timestamp(tracker.updated_at) or occurred_at
    result = session.execute(
        update(OrderModel)
        .where(
            OrderModel.id == order.id,
            or_(OrderModel.fulfillment_event_at.is_(None), OrderModel.fulfillment_event_at <= event_at),
        )
        .values(
            carrier=tracker.carrier or OrderModel.carrier,
            fulfillment_status=tracker.status,
            fulfillment_event_at=event_at,
            updated_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    outcome = TrackerOutcome(order_id=order.id, applied=result.rowcount == 1)

    fill_missing(session, order.id, "tracking_number", tracker.tracking_code)
    fill_missing(session, order.id, "tracking_url", tracker.public_url)
    fill_missing(session, order.id, "shipment_id", tracker.shipment_id)
    fill_missing(session, order.id, "label_url", label_url_for(tracker))

    if outcome.applied:
        target = CARRIER_STATUS_MAP.get(tracker.status)
        if target is not None:
            outcome.transition = apply_status(session, order.id, target, event_at)
        if target in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            fill_missing(session, order.id, "shipped_at", event_at)
        if target == OrderStatus.DELIVERED:
            fill_missing(session, order.id, "delivered_at", event_at)
    else:
        logger.info("stale tracker update ignored: order=%s event=%s", order.id, provider_event_id)

    session.add(
        ShippingLogModel(
            order_id=order.id,
            provider_event_id=provider_event_id,
            status=tracker.status,
            message=_latest_message(tracker),
            tracking_number=tracker.tracking_code,
            tracking_url=tracker.public_url,
            applied=outcome.applied,
            occurred_at=event_at,
            recorded_at=now_utc(),
        )
    )
    session.flush()
    return outcome


def shipping_log_for(session: Session, order_id: str) -> list[ShippingLogModel]:
    return list(
        session.scalars(
            select(ShippingLogModel).where(ShippingLogModel.order_id == order_id).order_by(ShippingLogModel.id.asc())
        ).all()
    )
