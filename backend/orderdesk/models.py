import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .db import Base
from .status import OrderStatus


def _json_type():
    """JSON type compatible with Postgres and SQLite."""
    return JSON().with_variant(JSONB, "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class PartnerStore(Base):
    __tablename__ = "partner_stores"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    clubs = relationship("Club", back_populates="partner_store")


class Club(Base):
    __tablename__ = "clubs"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), unique=True, nullable=False, index=True)
    # Shopify id of the customer whose metafields first named this club
    shopify_customer_id = Column(String(64), nullable=True)
    email = Column(String(255), nullable=True)
    partner_store_id = Column(String(36), ForeignKey("partner_stores.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    partner_store = relationship("PartnerStore", back_populates="clubs", lazy="joined")
    customers = relationship("Customer", back_populates="club")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    shopify_id = Column(String(64), nullable=True, index=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    accepts_marketing = Column(Boolean, nullable=False, default=False)
    club_id = Column(String(36), ForeignKey("clubs.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    club = relationship("Club", back_populates="customers")
    orders = relationship("Order", back_populates="customer")


class Order(Base):
    __tablename__ = "orders"
    # Fetch server-side timestamps on flush so rows can be serialized right away
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=_uuid)
    external_id = Column(String(64), unique=True, nullable=False, index=True)
    order_number = Column(String(64), nullable=False, index=True)
    name = Column(String(64), nullable=True)

    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    customer_email = Column(String(255), nullable=False, index=True)
    # Denormalized contact snapshot at ingestion time
    customer_snapshot = Column(_json_type(), nullable=True)

    total_price = Column(String(32), nullable=True)
    subtotal_price = Column(String(32), nullable=True)
    total_tax = Column(String(32), nullable=True)
    currency = Column(String(8), nullable=True)
    line_items_count = Column(Integer, nullable=False, default=0)
    total_quantity = Column(Integer, nullable=False, default=0)

    fulfillment_status = Column(String(32), nullable=True)
    financial_status = Column(String(32), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # Assignment snapshot, not a live join
    club_info = Column(String(255), nullable=True, index=True)
    assigned_store = Column(String(255), nullable=True, index=True)
    assigned_store_id = Column(String(36), nullable=True, index=True)
    assigned_store_email = Column(String(255), nullable=True)
    assignment_source = Column(String(16), nullable=True)

    status = Column(
        Enum(OrderStatus, name="order_status", native_enum=False, length=32,
             values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )

    tracking_number = Column(String(255), nullable=True)
    tracking_url = Column(String(1024), nullable=True)
    carrier = Column(String(255), nullable=True)

    internal_notes = Column(Text, nullable=True)
    status_note = Column(Text, nullable=True)

    shop = Column(String(255), nullable=True)
    source = Column(String(32), nullable=False, default="shopify")
    tags = Column(Text, nullable=True)
    note = Column(Text, nullable=True)
    order_status_url = Column(String(1024), nullable=True)

    # created_at/updated_at are the platform's timestamps
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    modified_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)
    status_updated_at = Column(DateTime(timezone=True), nullable=True)
    note_added_at = Column(DateTime(timezone=True), nullable=True)

    customer = relationship("Customer", back_populates="orders")
    products = relationship(
        "OrderProduct",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderProduct.position",
    )


class OrderProduct(Base):
    """Line item snapshot taken when the order was first ingested."""

    __tablename__ = "order_products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    shopify_id = Column(String(64), nullable=True)
    product_id = Column(String(64), nullable=True)
    variant_id = Column(String(64), nullable=True)
    name = Column(String(512), nullable=True)
    title = Column(String(512), nullable=True)
    variant_title = Column(String(512), nullable=True)
    quantity = Column(Integer, nullable=False, default=0)
    price = Column(String(32), nullable=True)
    total_price = Column(String(32), nullable=True)
    sku = Column(String(255), nullable=True, index=True)
    vendor = Column(String(255), nullable=True)
    fulfillment_status = Column(String(32), nullable=True)
    image = Column(String(1024), nullable=True)

    order = relationship("Order", back_populates="products")
