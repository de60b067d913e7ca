from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import InvalidTransitionError, ShopifyError
from .logs import log_event
from .models import Order
from .status import FULFILLABLE, OrderStatus
from .store import OrderStore, utcnow


@dataclass
class FulfillmentResult:
    order: Order
    external_order_id: str
    internal_success: bool = True
    external_success: bool = False
    external_error: Optional[str] = None
    confirmation: Optional[Dict[str, Any]] = None

    @property
    def partial(self) -> bool:
        return self.internal_success and not self.external_success


class FulfillmentCoordinator:
    """Marks an order fulfilled locally, then on Shopify.

    The local write is committed first and is never rolled back: staff see
    the order as fulfilled even when Shopify is unreachable. A failed Shopify
    call comes back as a partial result carrying the error, so someone can
    retry the fulfilment on Shopify by hand.
    """

    def __init__(self, store: OrderStore, shopify=None, *, notify: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.store = store
        self.shopify = shopify
        self.notify = notify

    async def fulfill(self, order_ref: str, *, notify_customer: bool = True, internal_note: Optional[str] = None) -> FulfillmentResult:
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            if order.status not in FULFILLABLE:
                raise InvalidTransitionError(f"Order {order.order_number} is {order.status.value} and cannot be fulfilled")
            now = utcnow()
            fields: Dict[str, Any] = {
                "status": OrderStatus.FULFILLED,
                "fulfillment_status": "fulfilled",
                "fulfilled_at": now,
                "status_updated_at": now,
            }
            if internal_note:
                fields["internal_notes"] = internal_note
                fields["note_added_at"] = now
            order = await self.store.update_order(order.id, fields)

        result = FulfillmentResult(order=order, external_order_id=order.external_id)
        if self.notify is not None:
            self.notify({"type": "order.fulfilled", "id": order.id, "orderNumber": order.order_number})

        if self.shopify is None:
            result.external_error = "Shopify is not configured"
        else:
            try:
                # Pickup orders: no tracking payload
                result.confirmation = await self.shopify.create_fulfillment(order.external_id, notify_customer=notify_customer)
                result.external_success = True
            except ShopifyError as e:
                result.external_error = str(e)

        log_event("fulfillment", {
            "order_id": order.external_id,
            "order_number": order.order_number,
            "store": order.assigned_store,
            "internal_success": result.internal_success,
            "external_success": result.external_success,
            "error": result.external_error,
        })
        return result
