import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .errors import OrderDeskError, ShopifyError
from .ingest import OrderIngestor
from .logs import log_event
from .shopify import Page
from .store import OrderStore, utcnow

# Shopify REST rate limit; not a tuning knob
PAGE_DELAY_SECONDS = 0.5


@dataclass
class SyncStats:
    customers_processed: int = 0
    customers_created: int = 0
    customers_updated: int = 0
    orders_processed: int = 0
    orders_created: int = 0
    orders_skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "customersProcessed": self.customers_processed,
            "customersCreated": self.customers_created,
            "customersUpdated": self.customers_updated,
            "ordersProcessed": self.orders_processed,
            "ordersCreated": self.orders_created,
            "ordersSkipped": self.orders_skipped,
            "errors": self.errors,
        }


class ShopifySyncService:
    """Backfills customers and orders from Shopify, one page at a time."""

    def __init__(
        self,
        shopify,
        store: OrderStore,
        ingestor: OrderIngestor,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.shopify = shopify
        self.store = store
        self.ingestor = ingestor
        self._sleep = sleep

    async def _pages(self, fetch: Callable[[Optional[str]], Awaitable[Page]]) -> AsyncIterator[Page]:
        page_info: Optional[str] = None
        page_count = 0
        while True:
            if page_count:
                await self._sleep(PAGE_DELAY_SECONDS)
            page = await fetch(page_info)
            page_count += 1
            log_event("sync", {"page": page_count, "items": len(page.items), "has_next": bool(page.next_page_info)})
            if not page.items:
                return
            yield page
            if not page.next_page_info:
                return
            page_info = page.next_page_info

    async def sync_customers(self, limit: int = 250, stats: Optional[SyncStats] = None) -> SyncStats:
        stats = stats or SyncStats()
        try:
            async for page in self._pages(lambda cursor: self.shopify.list_customers(cursor, limit=limit)):
                for c in page.items:
                    email = (c.get("email") or "").strip().lower()
                    if not email:
                        stats.errors.append(f"Customer {c.get('id')}: missing email")
                        continue
                    try:
                        async with self.store.transaction():
                            _, created = await self.store.upsert_customer(
                                email,
                                shopify_id=str(c.get("id")) if c.get("id") is not None else None,
                                first_name=c.get("first_name"),
                                last_name=c.get("last_name"),
                                phone=c.get("phone"),
                                accepts_marketing=bool(c.get("accepts_marketing") or False),
                            )
                    except OrderDeskError as e:
                        stats.errors.append(f"Customer {email}: {e}")
                        continue
                    stats.customers_processed += 1
                    if created:
                        stats.customers_created += 1
                    else:
                        stats.customers_updated += 1
        except ShopifyError as e:
            stats.errors.append(f"Sync failed: {e}")
        log_event("sync", {"action": "sync_customers", **stats.to_dict()})
        return stats

    async def sync_orders(self, days_back: int = 365, limit: int = 250, stats: Optional[SyncStats] = None) -> SyncStats:
        stats = stats or SyncStats()
        since = utcnow() - timedelta(days=days_back)
        try:
            async for page in self._pages(lambda cursor: self.shopify.list_orders(since, cursor, limit=limit)):
                for o in page.items:
                    try:
                        result = await self.ingestor.ingest(o, source="shopify-sync", update_existing=False)
                    except OrderDeskError as e:
                        stats.errors.append(f"Order {o.get('order_number') or o.get('id')}: {e}")
                        continue
                    stats.orders_processed += 1
                    if result.created:
                        stats.orders_created += 1
                    else:
                        stats.orders_skipped += 1
        except ShopifyError as e:
            stats.errors.append(f"Sync failed: {e}")
        log_event("sync", {"action": "sync_orders", "days_back": days_back, **stats.to_dict()})
        return stats

    async def sync_all(self, days_back: int = 365, limit: int = 250) -> Dict[str, SyncStats]:
        customers = await self.sync_customers(limit)
        orders = await self.sync_orders(days_back, limit)
        return {"customers": customers, "orders": orders}
