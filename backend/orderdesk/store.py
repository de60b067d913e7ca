from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .errors import NotFoundError, PersistenceError
from .models import Club, Customer, Order, OrderProduct, PartnerStore
from .status import OrderStatus

# Fields a customer upsert may touch; anything else is ignored
CUSTOMER_FIELDS = ("shopify_id", "first_name", "last_name", "phone", "accepts_marketing", "club_id")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStore:
    """Persistence for customers, clubs, partner stores and orders.

    Every "create if absent" goes through a single INSERT .. ON CONFLICT
    statement keyed on the natural unique column, so concurrent webhook
    deliveries cannot create duplicates. The store never commits on its own;
    callers wrap a unit of work in `transaction()`.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ---------- transactions ----------
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["OrderStore"]:
        try:
            yield self
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"database error: {e}") from e
        except BaseException:
            await self.session.rollback()
            raise

    def _insert(self, model):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise PersistenceError(f"upsert not supported for dialect {dialect}")

    async def _fresh(self, stmt):
        return await self.session.scalar(stmt.execution_options(populate_existing=True))

    # ---------- partner stores ----------
    async def upsert_store(self, name: str, email: str) -> Tuple[PartnerStore, bool]:
        """Return the store named `name`, creating it if absent, and whether it was created."""
        stmt = (
            self._insert(PartnerStore)
            .values(name=name, email=email, active=True)
            .on_conflict_do_nothing(index_elements=["name"])
            .returning(PartnerStore.id)
        )
        created = (await self.session.execute(stmt)).scalar_one_or_none() is not None
        store = await self._fresh(select(PartnerStore).where(PartnerStore.name == name))
        return store, created

    async def get_store(self, store_id: str) -> Optional[PartnerStore]:
        return await self.session.scalar(select(PartnerStore).where(PartnerStore.id == store_id))

    async def list_stores(self, *, active_only: bool = False) -> List[PartnerStore]:
        stmt = select(PartnerStore).order_by(PartnerStore.name)
        if active_only:
            stmt = stmt.where(PartnerStore.active.is_(True))
        return list((await self.session.scalars(stmt)).all())

    # ---------- clubs ----------
    async def upsert_club(
        self,
        name: str,
        *,
        partner_store_id: str,
        shopify_customer_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Tuple[Club, bool]:
        # First writer wins: an existing club keeps its store link
        stmt = (
            self._insert(Club)
            .values(
                name=name,
                partner_store_id=partner_store_id,
                shopify_customer_id=shopify_customer_id,
                email=email,
            )
            .on_conflict_do_nothing(index_elements=["name"])
            .returning(Club.id)
        )
        created = (await self.session.execute(stmt)).scalar_one_or_none() is not None
        club = await self._fresh(
            select(Club).options(selectinload(Club.partner_store)).where(Club.name == name)
        )
        return club, created

    async def find_club_by_name(self, name: str) -> Optional[Club]:
        return await self.session.scalar(
            select(Club)
            .options(selectinload(Club.partner_store))
            .where(func.lower(Club.name) == (name or "").strip().lower())
        )

    async def first_club_for_store(self, store_id: str) -> Optional[Club]:
        return await self.session.scalar(
            select(Club).where(Club.partner_store_id == store_id).order_by(Club.created_at).limit(1)
        )

    # ---------- customers ----------
    async def find_customer_by_email(self, email: str) -> Optional[Customer]:
        return await self._fresh(
            select(Customer)
            .options(selectinload(Customer.club).selectinload(Club.partner_store))
            .where(Customer.email == email)
        )

    async def upsert_customer(self, email: str, **fields: Any) -> Tuple[Customer, bool]:
        """Create or update the customer keyed by email.

        Only keyword fields that are passed are written on update, so a sync
        that knows nothing about clubs never clears `club_id`.
        """
        values = {k: v for k, v in fields.items() if k in CUSTOMER_FIELDS}
        if values.get("accepts_marketing") is None:
            values.pop("accepts_marketing", None)
        stmt = (
            self._insert(Customer)
            .values(email=email, **{"accepts_marketing": False, **values})
            .on_conflict_do_nothing(index_elements=["email"])
            .returning(Customer.id)
        )
        created = (await self.session.execute(stmt)).scalar_one_or_none() is not None
        if not created and values:
            await self.session.execute(
                update(Customer).where(Customer.email == email).values(**values, updated_at=utcnow())
            )
        customer = await self.find_customer_by_email(email)
        return customer, created

    async def customers_needing_refresh(self, limit: int, *, stale_after: timedelta = timedelta(days=7)) -> List[Customer]:
        cutoff = utcnow() - stale_after
        stmt = (
            select(Customer)
            .where(
                Customer.shopify_id.is_not(None),
                or_(Customer.club_id.is_(None), Customer.updated_at < cutoff),
            )
            .order_by(Customer.updated_at)
            .limit(limit)
        )
        return list((await self.session.scalars(stmt)).all())

    # ---------- orders ----------
    async def find_order_by_external_id(self, external_id: str) -> Optional[Order]:
        return await self._fresh(select(Order).where(Order.external_id == str(external_id)))

    async def find_order_by_ref(self, ref: str) -> Optional[Order]:
        """Look an order up by internal id, platform order id or order number."""
        ref = str(ref or "").strip().lstrip("#")
        if not ref:
            return None
        return await self._fresh(
            select(Order)
            .where(or_(Order.id == ref, Order.external_id == ref, Order.order_number == ref))
            .order_by(Order.received_at)
            .limit(1)
        )

    async def get_order(self, ref: str) -> Order:
        order = await self.find_order_by_ref(ref)
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def create_order(self, values: Dict[str, Any], products: Iterable[Dict[str, Any]]) -> Optional[Order]:
        """Insert the order unless its external id is already stored.

        Returns the new order, or None when another delivery got there first.
        """
        stmt = (
            self._insert(Order)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["external_id"])
            .returning(Order.id)
        )
        order_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if order_id is None:
            return None
        self.session.add_all(
            OrderProduct(order_id=order_id, position=i, **p) for i, p in enumerate(products)
        )
        await self.session.flush()
        return await self._fresh(select(Order).where(Order.id == order_id))

    async def update_order(self, order_id: str, fields: Dict[str, Any]) -> Order:
        order = await self._fresh(select(Order).where(Order.id == order_id))
        if not order:
            raise NotFoundError("Order not found")
        for key, value in fields.items():
            setattr(order, key, value)
        await self.session.flush()
        return order

    async def delete_order(self, order_id: str) -> Order:
        order = await self._fresh(select(Order).where(Order.id == order_id))
        if not order:
            raise NotFoundError("Order not found")
        await self.session.delete(order)
        await self.session.flush()
        return order

    async def list_orders(
        self,
        *,
        status: Optional[OrderStatus] = None,
        store: Optional[str] = None,
        club: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Order], int]:
        conditions = []
        if status is not None:
            conditions.append(Order.status == status)
        if store:
            conditions.append(Order.assigned_store.ilike(f"%{store}%"))
        if club:
            conditions.append(Order.club_info.ilike(f"%{club}%"))
        if search:
            pat = f"%{search.strip()}%"
            conditions.append(or_(
                Order.order_number.ilike(pat),
                Order.customer_email.ilike(pat),
                Order.club_info.ilike(pat),
                Order.assigned_store.ilike(pat),
                Order.products.any(OrderProduct.name.ilike(pat)),
                Order.products.any(OrderProduct.sku.ilike(pat)),
            ))
        items = await self.session.scalars(
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        total = await self.session.scalar(select(func.count()).select_from(Order).where(*conditions))
        return list(items.all()), int(total or 0)

    async def aggregate_order_counts(self) -> Dict[str, Any]:
        now = utcnow()
        today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        rows = (await self.session.execute(
            select(Order.status, func.count()).group_by(Order.status)
        )).all()
        by_status = {s.value: 0 for s in OrderStatus}
        for status, count in rows:
            by_status[OrderStatus(status).value] = int(count)
        total = sum(by_status.values())
        today = await self.session.scalar(
            select(func.count()).select_from(Order).where(Order.received_at >= today_start)
        )
        assigned = await self.session.scalar(
            select(func.count()).select_from(Order).where(Order.assigned_store_id.is_not(None))
        )
        return {
            "totalOrders": total,
            "todayOrders": int(today or 0),
            "assignedOrders": int(assigned or 0),
            "unassignedOrders": total - int(assigned or 0),
            "fulfilledOrders": by_status[OrderStatus.FULFILLED.value],
            "pendingOrders": by_status[OrderStatus.PENDING.value],
            "readyToFulfill": by_status[OrderStatus.READY_TO_FULFILL.value],
            "cancelledOrders": by_status[OrderStatus.CANCELLED.value],
            "byStatus": by_status,
        }
