from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from orderdesk.auth import StaffSession, get_staff_session
from orderdesk.config import AuthConfig, Settings, ShopifyConfig
from orderdesk.db import Database
from orderdesk.errors import ShopifyError
from orderdesk.ingest import OrderIngestor
from orderdesk.main import create_app
from orderdesk.resolver import AssignmentResolver, LegacyClubHintSource
from orderdesk.shopify import Page
from orderdesk.store import OrderStore


class FakeShopify:
    """In-memory stand-in for ShopifyClient that counts calls."""

    def __init__(self):
        self.config = ShopifyConfig(shop_name="test-shop", access_token="token")
        self.metafields: Dict[str, List[Dict[str, Any]]] = {}
        self.metafield_calls: List[str] = []
        self.fail_metafields = False
        self.fail_fulfillment = False
        self.fulfillment_calls: List[str] = []
        self.order_pages: List[Page] = []
        self.customer_pages: List[Page] = []
        self.order_page_requests: List[Optional[str]] = []
        self.customer_page_requests: List[Optional[str]] = []

    def set_assignment(self, customer_id: str, club: str, store: str) -> None:
        self.metafields[customer_id] = [
            {"namespace": "club", "key": "brand", "value": club},
            {"namespace": "custom", "key": "partner_store", "value": store},
        ]

    async def get_customer_metafields(self, customer_id: str):
        self.metafield_calls.append(customer_id)
        if self.fail_metafields:
            raise ShopifyError("Shopify GET metafields failed: 500", upstream_status=500)
        return self.metafields.get(customer_id, [])

    async def create_fulfillment(self, external_order_id: str, *, notify_customer: bool = True, tracking=None):
        self.fulfillment_calls.append(external_order_id)
        if self.fail_fulfillment:
            raise ShopifyError("Order must be paid before fulfillment (current status: pending)")
        return {"fulfillment": {"id": 991, "order_id": external_order_id, "status": "success"}}

    async def list_orders(self, since, page_info=None, *, limit=250):
        self.order_page_requests.append(page_info)
        index = len(self.order_page_requests) - 1
        return self.order_pages[index] if index < len(self.order_pages) else Page([], None)

    async def list_customers(self, page_info=None, *, limit=250):
        self.customer_page_requests.append(page_info)
        index = len(self.customer_page_requests) - 1
        return self.customer_pages[index] if index < len(self.customer_pages) else Page([], None)

    async def aclose(self):
        pass


def order_payload(order_id: str = "1001", email: str = "jane@example.com", **overrides) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": order_id,
        "order_number": order_id,
        "name": f"#{order_id}",
        "email": email,
        "customer": {"id": f"c-{order_id}", "email": email, "first_name": "Jane", "last_name": "Doe"},
        "total_price": "59.90",
        "subtotal_price": "59.90",
        "total_tax": "5.45",
        "currency": "AUD",
        "financial_status": "pending",
        "fulfillment_status": None,
        "cancelled_at": None,
        "created_at": "2024-03-01T10:00:00Z",
        "line_items": [
            {"id": 1, "product_id": 11, "variant_id": 111, "name": "Club Jersey - M", "title": "Club Jersey",
             "quantity": 2, "price": "19.95", "sku": "JER-M"},
            {"id": 2, "product_id": 12, "variant_id": 121, "name": "Club Cap", "title": "Club Cap",
             "quantity": 1, "price": "20.00", "sku": "CAP"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        auth=AuthConfig(jwt_secret="test-secret"),
    )


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings.database_url)
    await db.init()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def session(database):
    async with database.sessionmaker() as s:
        yield s


@pytest.fixture
def store(session) -> OrderStore:
    return OrderStore(session)


@pytest.fixture
def shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture
def resolver(store, shopify) -> AssignmentResolver:
    return AssignmentResolver(store, shopify, alternate_sources=[LegacyClubHintSource()])


@pytest.fixture
def notifications() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def ingestor(store, resolver, notifications) -> OrderIngestor:
    return OrderIngestor(store, resolver, notify=notifications.append)


@pytest.fixture
def app(settings, database, shopify):
    application = create_app(settings=settings, database=database, shopify=shopify)
    application.dependency_overrides[get_staff_session] = lambda: StaffSession(is_authenticated=True, claims={"sub": "staff"})
    return application


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
