import enum
from typing import Any, Mapping, Optional


class OrderStatus(str, enum.Enum):
    """Lifecycle status of an order, shared by storage, API and calculator."""

    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"
    PARTIALLY_FULFILLED = "partially_fulfilled"
    READY_TO_FULFILL = "ready_to_fulfill"
    PAYMENT_PENDING = "payment_pending"
    ASSIGNED = "assigned"
    PENDING = "pending"

    @classmethod
    def parse(cls, value: Optional[str]) -> "OrderStatus":
        """Strict parse; raises ValueError for anything outside the enum."""
        return cls((value or "").strip().lower())


# Start states from which an order may be marked fulfilled
FULFILLABLE = frozenset(s for s in OrderStatus if s not in (OrderStatus.FULFILLED, OrderStatus.CANCELLED))


def compute_status(order: Mapping[str, Any], has_assignment: bool) -> OrderStatus:
    """Map a platform order snapshot to a lifecycle status.

    First match wins:
      1. cancelled_at set            -> cancelled
      2. fulfillment_status fulfilled -> fulfilled
      3. fulfillment_status partial   -> partially_fulfilled
      4. paid and no fulfillment_status -> ready_to_fulfill
      5. financial_status pending     -> payment_pending
      6. store assigned               -> assigned
      7. otherwise                    -> pending

    Only the snapshot and the assignment flag are read, so backfill and live
    webhooks agree for the same input.
    """
    fulfillment_status = order.get("fulfillment_status")
    financial_status = order.get("financial_status")
    if order.get("cancelled_at"):
        return OrderStatus.CANCELLED
    if fulfillment_status == "fulfilled":
        return OrderStatus.FULFILLED
    if fulfillment_status == "partial":
        return OrderStatus.PARTIALLY_FULFILLED
    if financial_status == "paid" and not fulfillment_status:
        return OrderStatus.READY_TO_FULFILL
    if financial_status == "pending":
        return OrderStatus.PAYMENT_PENDING
    if has_assignment:
        return OrderStatus.ASSIGNED
    return OrderStatus.PENDING
