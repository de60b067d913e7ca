import enum
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .errors import ExternalLookupFailure, OrderDeskError
from .logs import log_event
from .models import Club, PartnerStore
from .store import OrderStore

# Customer metafields that carry the assignment
CLUB_METAFIELD = ("club", "brand")
STORE_METAFIELD = ("custom", "partner_store")

REFRESH_STALE_AFTER = timedelta(days=7)


class AssignmentSource(str, enum.Enum):
    CACHE = "cache"
    EXTERNAL = "external"
    LEGACY = "legacy"
    NONE = "none"


@dataclass
class Assignment:
    source: AssignmentSource
    club_id: Optional[str] = None
    club_name: Optional[str] = None
    store_id: Optional[str] = None
    store_name: Optional[str] = None
    store_email: Optional[str] = None

    @property
    def has_store(self) -> bool:
        return bool(self.store_id)

    @classmethod
    def from_club(cls, club: Club, source: AssignmentSource) -> "Assignment":
        store: PartnerStore = club.partner_store
        return cls(
            source=source,
            club_id=club.id,
            club_name=club.name,
            store_id=store.id,
            store_name=store.name,
            store_email=store.email,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "clubId": self.club_id,
            "clubName": self.club_name,
            "storeId": self.store_id,
            "storeName": self.store_name,
            "storeEmail": self.store_email,
        }


@dataclass
class RefreshStats:
    processed: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"processed": self.processed, "updated": self.updated, "errors": self.errors}


def store_email_for(store_name: str, domain: str = "yourstore.com") -> str:
    slug = re.sub(r"[^a-z0-9]", "", re.sub(r"\s+", "", (store_name or "").lower()))
    return f"{slug}@{domain}"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def metafield_value(metafields: Sequence[Mapping[str, Any]], namespace: str, key: str) -> Optional[str]:
    for m in metafields or []:
        if m.get("namespace") == namespace and m.get("key") == key:
            value = str(m.get("value") or "").strip()
            return value or None
    return None


class ClubHintSource(Protocol):
    def club_hint(self, order: Mapping[str, Any]) -> Optional[str]:
        ...


class LegacyClubHintSource:
    """Club name carried on the order itself.

    Older storefront flows put the club in a discount code (CLUB_*), an order
    tag ("Club: Name") or a note attribute named "club". Checked in that order.
    """

    def club_hint(self, order: Mapping[str, Any]) -> Optional[str]:
        for code in order.get("discount_codes") or []:
            value = str((code or {}).get("code") or "")
            if value.startswith("CLUB_") or "CLUB" in value:
                return value
        tags = order.get("tags")
        if isinstance(tags, list):
            tags = ",".join(str(t) for t in tags)
        if tags and "Club:" in tags:
            for tag in tags.split(","):
                tag = tag.strip()
                if tag.startswith("Club:"):
                    return tag[len("Club:"):].strip() or None
        for attr in order.get("note_attributes") or []:
            if str((attr or {}).get("name") or "").lower() == "club":
                return str(attr.get("value") or "").strip() or None
        return None


class AssignmentResolver:
    """Works out which club and partner store an order belongs to.

    Lookup order: the customer's club already stored in the database, then the
    customer's Shopify metafields (written back to the database), then any
    alternate hint sources. Shopify failures are logged and treated as "not
    found"; resolution never fails an ingestion because of them.
    """

    def __init__(
        self,
        store: OrderStore,
        shopify=None,
        *,
        store_email_domain: str = "yourstore.com",
        alternate_sources: Sequence[ClubHintSource] = (),
    ):
        self.store = store
        self.shopify = shopify
        self.store_email_domain = store_email_domain
        self.alternate_sources = list(alternate_sources)

    async def resolve(
        self,
        customer_email: str,
        shopify_customer_id: Optional[str] = None,
        *,
        order: Optional[Mapping[str, Any]] = None,
    ) -> Assignment:
        customer_email = normalize_email(customer_email)
        cached = await self.from_cache(customer_email)
        if cached:
            return cached

        if shopify_customer_id and self.shopify is not None:
            try:
                found = await self.lookup_external(str(shopify_customer_id), customer_email)
            except ExternalLookupFailure as e:
                log_event("resolver", {"email": customer_email, "customer_id": shopify_customer_id, "status": "lookup_failed", "error": str(e)})
                found = None
            if found:
                return found

        hint = None
        if order is not None:
            for source in self.alternate_sources:
                hint = source.club_hint(order)
                if not hint:
                    continue
                club = await self.store.find_club_by_name(hint)
                if club and club.partner_store:
                    log_event("resolver", {"email": customer_email, "club": club.name, "status": "legacy_hint"})
                    return Assignment.from_club(club, AssignmentSource.LEGACY)
                break

        log_event("resolver", {"email": customer_email, "customer_id": shopify_customer_id, "status": "unassigned", "hint": hint})
        return Assignment(source=AssignmentSource.NONE, club_name=hint)

    async def from_cache(self, customer_email: str) -> Optional[Assignment]:
        customer = await self.store.find_customer_by_email(normalize_email(customer_email))
        if customer and customer.club and customer.club.partner_store:
            return Assignment.from_club(customer.club, AssignmentSource.CACHE)
        return None

    async def lookup_external(self, shopify_customer_id: str, customer_email: str) -> Optional[Assignment]:
        """Read the customer's metafields and write any club/store they name.

        Raises ShopifyError when the platform call fails.
        """
        metafields = await self.shopify.get_customer_metafields(shopify_customer_id)
        club_name = metafield_value(metafields, *CLUB_METAFIELD)
        store_name = metafield_value(metafields, *STORE_METAFIELD)
        if not club_name or not store_name:
            return None

        partner_store, store_created = await self.store.upsert_store(
            store_name, store_email_for(store_name, self.store_email_domain)
        )
        club, club_created = await self.store.upsert_club(
            club_name,
            partner_store_id=partner_store.id,
            shopify_customer_id=shopify_customer_id,
            email=customer_email,
        )
        await self.store.upsert_customer(customer_email, shopify_id=shopify_customer_id, club_id=club.id)
        log_event("resolver", {
            "email": customer_email,
            "customer_id": shopify_customer_id,
            "club": club.name,
            "store": club.partner_store.name,
            "club_created": club_created,
            "store_created": store_created,
            "status": "synced",
        })
        return Assignment.from_club(club, AssignmentSource.EXTERNAL)

    async def refresh_stale_customers(self, limit: int = 50) -> RefreshStats:
        """Re-read metafields for customers with no club or a week-old record."""
        stats = RefreshStats()
        if self.shopify is None:
            stats.errors.append("Shopify is not configured")
            return stats
        candidates = await self.store.customers_needing_refresh(limit, stale_after=REFRESH_STALE_AFTER)
        # Plain values: a rollback below would expire the ORM rows
        pending = [(c.email, c.shopify_id) for c in candidates if c.shopify_id]
        for email, shopify_id in pending:
            try:
                async with self.store.transaction():
                    found = await self.lookup_external(shopify_id, email)
            except OrderDeskError as e:
                stats.errors.append(f"Customer {email}: {e}")
                continue
            stats.processed += 1
            if found:
                stats.updated += 1
        log_event("resolver", {"action": "refresh", **stats.to_dict()})
        return stats
