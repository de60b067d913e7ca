from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ValidationError
from .logs import log_event
from .models import Order
from .resolver import Assignment, AssignmentResolver, AssignmentSource
from .status import OrderStatus, compute_status
from .store import OrderStore, utcnow

CENTS = Decimal("0.01")


@dataclass
class IngestResult:
    order: Order
    created: bool
    assignment: Assignment


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        st = str(value).strip()
        if st.endswith("Z"):
            st = st[:-1] + "+00:00"
        return datetime.fromisoformat(st)
    except ValueError:
        return None


def line_total(price: Any, quantity: int) -> str:
    """unit price x quantity, rounded half-up to cents."""
    try:
        unit = Decimal(str(price if price not in (None, "") else "0"))
    except InvalidOperation:
        unit = Decimal("0")
    return str((unit * int(quantity or 0)).quantize(CENTS, rounding=ROUND_HALF_UP))


def normalize_line_items(items: Optional[List[Mapping[str, Any]]]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for item in items or []:
        qty = int(item.get("quantity") or 0)
        out.append({
            "shopify_id": _str_or_none(item.get("id")),
            "product_id": _str_or_none(item.get("product_id")),
            "variant_id": _str_or_none(item.get("variant_id")),
            "name": item.get("name"),
            "title": item.get("title"),
            "variant_title": item.get("variant_title"),
            "quantity": qty,
            "price": _str_or_none(item.get("price")),
            "total_price": line_total(item.get("price"), qty),
            "sku": item.get("sku") or None,
            "vendor": item.get("vendor"),
            "fulfillment_status": item.get("fulfillment_status"),
            "image": ((item.get("image") or {}).get("src") if isinstance(item.get("image"), dict) else item.get("image")),
        })
    return out


def normalize_customer(order: Mapping[str, Any]) -> Dict[str, Any]:
    customer = order.get("customer") or {}
    email = _str_or_none(order.get("email")) or _str_or_none(customer.get("email"))
    return {
        "id": _str_or_none(customer.get("id")),
        "email": email.lower() if email else None,
        "firstName": customer.get("first_name"),
        "lastName": customer.get("last_name"),
        "phone": customer.get("phone"),
        "acceptsMarketing": bool(customer.get("accepts_marketing") or False),
    }


def _tags(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return ", ".join(str(t).strip() for t in value if str(t).strip()) or None
    return _str_or_none(value)


def _assignment_fields(assignment: Assignment, now: datetime) -> Dict[str, Any]:
    return {
        "club_info": assignment.club_name,
        "assigned_store": assignment.store_name,
        "assigned_store_id": assignment.store_id,
        "assigned_store_email": assignment.store_email,
        "assignment_source": assignment.source.value,
        "assigned_at": now,
    }


class OrderIngestor:
    """Turns a Shopify order payload into one stored Order.

    normalize -> resolve assignment -> compute status -> persist, in one
    transaction. The Shopify order id is the idempotency key: a repeated
    delivery updates the stored row instead of adding one.
    """

    def __init__(
        self,
        store: OrderStore,
        resolver: AssignmentResolver,
        *,
        notify: Optional[Callable[[Dict[str, Any]], None]] = None,
        shop: Optional[str] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.notify = notify
        self.shop = shop

    async def ingest(self, payload: Mapping[str, Any], *, source: str = "shopify", update_existing: bool = True) -> IngestResult:
        external_id = _str_or_none(payload.get("id"))
        if not external_id:
            raise ValidationError("order id is required")
        customer = normalize_customer(payload)
        email = customer["email"]
        if not email:
            raise ValidationError("customer email is required")
        products = normalize_line_items(payload.get("line_items"))

        async with self.store.transaction():
            existing = await self.store.find_order_by_external_id(external_id)
            if existing is not None and not update_existing:
                return IngestResult(existing, False, Assignment(source=AssignmentSource.NONE))

            if existing is not None and existing.assigned_store_id:
                # Keep whatever the order already carries, manual assignments included
                assignment = Assignment(
                    source=AssignmentSource.CACHE,
                    club_name=existing.club_info,
                    store_id=existing.assigned_store_id,
                    store_name=existing.assigned_store,
                    store_email=existing.assigned_store_email,
                )
            else:
                assignment = await self.resolver.resolve(email, customer["id"], order=payload)

            stored, _ = await self.store.upsert_customer(
                email,
                shopify_id=customer["id"],
                first_name=customer["firstName"],
                last_name=customer["lastName"],
                phone=customer["phone"],
                accepts_marketing=customer["acceptsMarketing"],
            )

            order = None
            if existing is None:
                status = compute_status(payload, assignment.has_store)
                order = await self.store.create_order(
                    self._create_values(payload, external_id, customer, stored.id, products, assignment, status, source),
                    products,
                )
                if order is None:
                    # Lost the race to a concurrent delivery of the same order
                    existing = await self.store.find_order_by_external_id(external_id)
            created = order is not None
            if not created:
                order = await self.store.update_order(
                    existing.id, self._update_fields(existing, payload, customer, stored.id, assignment)
                )
            order_id, order_number, status_value = order.id, order.order_number, order.status.value

        log_event("ingest", {
            "order_id": external_id,
            "order_number": order_number,
            "email": email,
            "created": created,
            "source": source,
            "assignment": assignment.source.value,
            "store": order.assigned_store,
            "status": status_value,
            "products": len(products),
        })
        if created and assignment.has_store and self.notify is not None:
            self.notify({
                "type": "order.assigned",
                "id": order_id,
                "orderNumber": order_number,
                "storeId": assignment.store_id,
                "store": assignment.store_name,
                "storeEmail": assignment.store_email,
            })
        return IngestResult(order, created, assignment)

    def _create_values(
        self,
        payload: Mapping[str, Any],
        external_id: str,
        customer: Dict[str, Any],
        customer_id: str,
        products: List[Dict[str, Any]],
        assignment: Assignment,
        status: OrderStatus,
        source: str,
    ) -> Dict[str, Any]:
        now = utcnow()
        values: Dict[str, Any] = {
            "external_id": external_id,
            "order_number": str(payload.get("order_number") or payload.get("name") or external_id).lstrip("#"),
            "name": payload.get("name"),
            "customer_id": customer_id,
            "customer_email": customer["email"],
            "customer_snapshot": customer,
            "total_price": _str_or_none(payload.get("total_price")),
            "subtotal_price": _str_or_none(payload.get("subtotal_price")),
            "total_tax": _str_or_none(payload.get("total_tax")),
            "currency": payload.get("currency"),
            "line_items_count": len(products),
            "total_quantity": sum(p["quantity"] for p in products),
            "fulfillment_status": payload.get("fulfillment_status"),
            "financial_status": payload.get("financial_status"),
            "cancelled_at": parse_timestamp(payload.get("cancelled_at")),
            "club_info": assignment.club_name,
            "status": status,
            "shop": self.shop,
            "source": source,
            "tags": _tags(payload.get("tags")),
            "note": payload.get("note"),
            "order_status_url": payload.get("order_status_url"),
            "created_at": parse_timestamp(payload.get("created_at")) or now,
            "updated_at": parse_timestamp(payload.get("updated_at")),
            "fulfilled_at": now if status == OrderStatus.FULFILLED else None,
        }
        if assignment.has_store:
            values.update(_assignment_fields(assignment, now))
        return values

    def _update_fields(
        self,
        existing: Order,
        payload: Mapping[str, Any],
        customer: Dict[str, Any],
        customer_id: str,
        assignment: Assignment,
    ) -> Dict[str, Any]:
        now = utcnow()
        fields: Dict[str, Any] = {
            "name": payload.get("name") or existing.name,
            "customer_id": customer_id,
            "customer_snapshot": customer,
            "total_price": _str_or_none(payload.get("total_price")) or existing.total_price,
            "subtotal_price": _str_or_none(payload.get("subtotal_price")) or existing.subtotal_price,
            "total_tax": _str_or_none(payload.get("total_tax")) or existing.total_tax,
            "currency": payload.get("currency") or existing.currency,
            "fulfillment_status": payload.get("fulfillment_status"),
            "financial_status": payload.get("financial_status"),
            "cancelled_at": parse_timestamp(payload.get("cancelled_at")),
            "tags": _tags(payload.get("tags")),
            "note": payload.get("note"),
            "updated_at": parse_timestamp(payload.get("updated_at")) or existing.updated_at,
        }
        if assignment.has_store and not existing.assigned_store_id:
            fields.update(_assignment_fields(assignment, now))
        elif assignment.club_name and not existing.club_info:
            fields["club_info"] = assignment.club_name

        has_store = bool(existing.assigned_store_id) or assignment.has_store
        status = compute_status(payload, has_store)
        # Staff fulfilment is kept unless the platform cancelled the order
        if existing.status == OrderStatus.FULFILLED and status != OrderStatus.CANCELLED:
            status = OrderStatus.FULFILLED
        if status != existing.status:
            fields["status"] = status
            fields["status_updated_at"] = now
        if status == OrderStatus.FULFILLED and not existing.fulfilled_at:
            fields["fulfilled_at"] = now
        return fields
