from typing import Any, Dict, Optional

from .errors import ValidationError
from .logs import log_event
from .models import Order
from .schemas import AddNoteData, AssignStoreData, OrderUpdateBody, UpdateStatusData
from .status import OrderStatus
from .store import OrderStore, utcnow


def _parse_status(value: Optional[str]) -> OrderStatus:
    try:
        return OrderStatus.parse(value)
    except ValueError:
        raise ValidationError(f"invalid status: {value!r}")


def _status_fields(status: OrderStatus, order: Order) -> Dict[str, Any]:
    now = utcnow()
    fields: Dict[str, Any] = {"status": status, "status_updated_at": now}
    if status == OrderStatus.FULFILLED and not order.fulfilled_at:
        fields["fulfilled_at"] = now
    return fields


class OrderActions:
    """Staff edits that only touch local state."""

    def __init__(self, store: OrderStore):
        self.store = store

    async def assign_store(self, order_ref: str, data: AssignStoreData) -> Order:
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            partner = await self.store.get_store(data.storeId)
            store_name = data.storeName or (partner.name if partner else None)
            store_email = data.storeEmail or (partner.email if partner else None)
            if not store_name:
                raise ValidationError("storeName is required for an unknown store")
            club_name = data.clubName or order.club_info
            if not club_name and partner:
                club = await self.store.first_club_for_store(partner.id)
                club_name = club.name if club else None
            if not club_name:
                raise ValidationError("clubName is required: the order has no club")
            now = utcnow()
            order = await self.store.update_order(order.id, {
                "assigned_store": store_name,
                "assigned_store_id": data.storeId,
                "assigned_store_email": store_email,
                "club_info": club_name,
                "assignment_source": "manual",
                "assigned_at": now,
                "status": OrderStatus.ASSIGNED,
                "status_updated_at": now,
            })
        log_event("actions", {"action": "assign_store", "order_number": order.order_number, "store": store_name})
        return order

    async def update_status(self, order_ref: str, data: UpdateStatusData) -> Order:
        status = _parse_status(data.status)
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            fields = _status_fields(status, order)
            if data.note:
                fields["status_note"] = data.note
            order = await self.store.update_order(order.id, fields)
        log_event("actions", {"action": "update_status", "order_number": order.order_number, "status": status.value})
        return order

    async def add_note(self, order_ref: str, data: AddNoteData) -> Order:
        if not data.note.strip():
            raise ValidationError("note is required")
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            order = await self.store.update_order(order.id, {"internal_notes": data.note, "note_added_at": utcnow()})
        log_event("actions", {"action": "add_note", "order_number": order.order_number})
        return order

    async def update(self, order_ref: str, body: OrderUpdateBody) -> Order:
        changes = body.model_dump(exclude_unset=True)
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            fields: Dict[str, Any] = {}
            if "status" in changes:
                fields.update(_status_fields(_parse_status(changes.pop("status")), order))
            column_for = {
                "statusNote": "status_note",
                "internalNotes": "internal_notes",
                "trackingNumber": "tracking_number",
                "trackingUrl": "tracking_url",
                "carrier": "carrier",
                "note": "note",
            }
            for key, value in changes.items():
                fields[column_for[key]] = value
            if "internal_notes" in fields:
                fields["note_added_at"] = utcnow()
            order = await self.store.update_order(order.id, fields)
        log_event("actions", {"action": "update", "order_number": order.order_number, "fields": sorted(fields)})
        return order

    async def delete(self, order_ref: str) -> Order:
        async with self.store.transaction():
            order = await self.store.get_order(order_ref)
            order = await self.store.delete_order(order.id)
        log_event("actions", {"action": "delete", "order_number": order.order_number})
        return order
