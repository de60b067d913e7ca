from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr

from .models import Order, OrderProduct, PartnerStore


# ---------- Requests ----------
class OrderActionBody(BaseModel):
    action: str
    orderId: str
    data: Dict[str, Any] = {}


class AssignStoreData(BaseModel):
    storeId: str
    storeName: Optional[str] = None
    storeEmail: Optional[EmailStr] = None
    clubName: Optional[str] = None


class UpdateStatusData(BaseModel):
    status: str
    note: Optional[str] = None


class AddNoteData(BaseModel):
    note: str


class MarkFulfilledData(BaseModel):
    notifyCustomer: bool = True
    internalNote: Optional[str] = None


class OrderUpdateBody(BaseModel):
    """Fields staff may edit directly through PUT /api/orders."""

    status: Optional[str] = None
    statusNote: Optional[str] = None
    internalNotes: Optional[str] = None
    trackingNumber: Optional[str] = None
    trackingUrl: Optional[str] = None
    carrier: Optional[str] = None
    note: Optional[str] = None


class SyncOptions(BaseModel):
    daysBack: int = 365
    limit: int = 250


class SyncBody(BaseModel):
    action: str
    options: SyncOptions = SyncOptions()


class RefreshBody(BaseModel):
    limit: int = 50


# ---------- Responses ----------
class ProductDTO(BaseModel):
    id: Optional[str] = None
    productId: Optional[str] = None
    variantId: Optional[str] = None
    name: Optional[str] = None
    title: Optional[str] = None
    variant_title: Optional[str] = None
    quantity: int = 0
    price: Optional[str] = None
    totalPrice: Optional[str] = None
    sku: Optional[str] = None
    vendor: Optional[str] = None
    fulfillment_status: Optional[str] = None
    image: Optional[str] = None


class CustomerDTO(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None
    acceptsMarketing: bool = False


class OrderDTO(BaseModel):
    id: str
    orderId: str
    orderNumber: str
    name: Optional[str] = None
    customer: CustomerDTO
    customerEmail: str
    totalPrice: Optional[str] = None
    subtotalPrice: Optional[str] = None
    totalTax: Optional[str] = None
    currency: Optional[str] = None
    products: List[ProductDTO] = []
    lineItemsCount: int = 0
    totalQuantity: int = 0
    fulfillmentStatus: Optional[str] = None
    financialStatus: Optional[str] = None
    clubInfo: Optional[str] = None
    assignedStore: Optional[str] = None
    assignedStoreId: Optional[str] = None
    assignedStoreEmail: Optional[str] = None
    assignmentSource: Optional[str] = None
    status: str
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None
    timestamp: Optional[datetime] = None
    assignedAt: Optional[datetime] = None
    fulfilledAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    shopifyShop: Optional[str] = None
    source: str = "shopify"
    tags: Optional[str] = None
    note: Optional[str] = None
    orderStatusUrl: Optional[str] = None
    trackingNumber: Optional[str] = None
    trackingUrl: Optional[str] = None
    carrier: Optional[str] = None
    internalNotes: Optional[str] = None
    noteAddedAt: Optional[datetime] = None
    statusNote: Optional[str] = None
    statusUpdatedAt: Optional[datetime] = None


class StoreDTO(BaseModel):
    id: str
    name: str
    email: str
    active: bool


def map_product(p: OrderProduct) -> ProductDTO:
    return ProductDTO(
        id=p.shopify_id,
        productId=p.product_id,
        variantId=p.variant_id,
        name=p.name,
        title=p.title,
        variant_title=p.variant_title,
        quantity=p.quantity or 0,
        price=p.price,
        totalPrice=p.total_price,
        sku=p.sku,
        vendor=p.vendor,
        fulfillment_status=p.fulfillment_status,
        image=p.image,
    )


def map_order(order: Order) -> OrderDTO:
    snap = order.customer_snapshot or {}
    return OrderDTO(
        id=order.id,
        orderId=order.external_id,
        orderNumber=order.order_number,
        name=order.name,
        customer=CustomerDTO(
            id=snap.get("id"),
            email=snap.get("email") or order.customer_email,
            firstName=snap.get("firstName"),
            lastName=snap.get("lastName"),
            phone=snap.get("phone"),
            acceptsMarketing=bool(snap.get("acceptsMarketing") or False),
        ),
        customerEmail=order.customer_email,
        totalPrice=order.total_price,
        subtotalPrice=order.subtotal_price,
        totalTax=order.total_tax,
        currency=order.currency,
        products=[map_product(p) for p in (order.products or [])],
        lineItemsCount=order.line_items_count or 0,
        totalQuantity=order.total_quantity or 0,
        fulfillmentStatus=order.fulfillment_status,
        financialStatus=order.financial_status,
        clubInfo=order.club_info,
        assignedStore=order.assigned_store,
        assignedStoreId=order.assigned_store_id,
        assignedStoreEmail=order.assigned_store_email,
        assignmentSource=order.assignment_source,
        status=order.status.value,
        createdAt=order.created_at,
        updatedAt=order.updated_at or order.modified_at,
        timestamp=order.received_at,
        assignedAt=order.assigned_at,
        fulfilledAt=order.fulfilled_at,
        cancelledAt=order.cancelled_at,
        shopifyShop=order.shop,
        source=order.source or "shopify",
        tags=order.tags,
        note=order.note,
        orderStatusUrl=order.order_status_url,
        trackingNumber=order.tracking_number,
        trackingUrl=order.tracking_url,
        carrier=order.carrier,
        internalNotes=order.internal_notes,
        noteAddedAt=order.note_added_at,
        statusNote=order.status_note,
        statusUpdatedAt=order.status_updated_at,
    )


def map_store(store: PartnerStore) -> StoreDTO:
    return StoreDTO(id=store.id, name=store.name, email=store.email, active=bool(store.active))
