from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    FULFILLED = "fulfilled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


MAIN_CHAIN: tuple[OrderStatus, ...] = (
    OrderStatus.NONE,
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.FULFILLED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)
RANK: dict[OrderStatus, int] = {status: index for index, status in enumerate(MAIN_CHAIN)}

REFUNDABLE = frozenset({OrderStatus.PAID, OrderStatus.FULFILLED, OrderStatus.SHIPPED, OrderStatus.DISPUTED})
EXPIRABLE = frozenset({OrderStatus.NONE, OrderStatus.PENDING})

# Statuses that represent money actually taken at some point.
REVENUE_STATUSES = frozenset(
    {
        OrderStatus.PAID,
        OrderStatus.FULFILLED,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.DISPUTED,
        OrderStatus.REFUNDED,
    }
)


def can_transition(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    """Whether moving from ``current`` to ``target`` is a legal forward step.

    Main-chain targets only apply when they outrank the current status, so a
    stale event can never move an order backwards. Side branches have their
    own sources. Resolving a dispute back to the prior status is not a plain
    transition; see :func:`resolve_dispute_target`.
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current == target:
        return False

    if target in RANK:
        return current in RANK and RANK[target] > RANK[current]
    if target == OrderStatus.EXPIRED:
        return current in EXPIRABLE
    if target == OrderStatus.REFUNDED:
        return current in REFUNDABLE
    if target == OrderStatus.DISPUTED:
        return current != OrderStatus.NONE
    if target == OrderStatus.CANCELLED:
        return True
    return False


# Closed-dispute statuses: money returned to the cardholder vs. kept by the merchant.
DISPUTE_LOST_STATUSES = frozenset({"lost", "charge_refunded"})
DISPUTE_WON_STATUSES = frozenset({"won", "warning_closed"})


def dispute_outcome(provider_status: str | None) -> str | None:
    """``lost`` or ``won`` for a closed dispute; None while the outcome is undecided."""
    if provider_status in DISPUTE_LOST_STATUSES:
        return "lost"
    if provider_status in DISPUTE_WON_STATUSES:
        return "won"
    return None


def resolve_dispute_target(prior: str | None, outcome: str) -> OrderStatus:
    if outcome == "lost":
        return OrderStatus.REFUNDED
    if prior:
        return OrderStatus(prior)
    return OrderStatus.PAID


def is_at_or_past(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    current = OrderStatus(current)
    target = OrderStatus(target)
    if current == target:
        return True
    if current in RANK and target in RANK:
        return RANK[current] >= RANK[target]
    return False
