import base64
import hashlib
import hmac
import json
from dataclasses import replace

from httpx import ASGITransport, AsyncClient
from jose import jwt

from conftest import order_payload
from orderdesk.auth import get_staff_session
from orderdesk.main import create_app
from orderdesk.shopify import Page
from orderdesk.store import OrderStore


async def _seed_assignment(app):
    async with app.state.database.sessionmaker() as session:
        store = OrderStore(session)
        async with store.transaction():
            partner, _ = await store.upsert_store("Sydney Store", "sydney@yourstore.com")
            club, _ = await store.upsert_club("Bondi Rugby", partner_store_id=partner.id)
            await store.upsert_customer("jane@example.com", club_id=club.id)
        return partner.id


async def test_health(client):
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_create_order_returns_201(client):
    r = await client.post("/api/orders", json=order_payload("5001"))
    assert r.status_code == 201
    body = r.json()
    assert body["created"] is True
    assert body["order"]["orderId"] == "5001"
    assert body["order"]["totalQuantity"] == 3
    assert body["order"]["status"] == "payment_pending"
    assert body["assignment"]["source"] == "none"


async def test_create_order_twice_is_one_row(client):
    await client.post("/api/orders", json=order_payload("5002"))
    r = await client.post("/api/orders", json=order_payload("5002", financial_status="paid"))
    assert r.status_code == 200
    assert r.json()["created"] is False
    assert r.json()["order"]["status"] == "ready_to_fulfill"

    listing = (await client.get("/api/orders")).json()
    assert listing["pagination"]["total"] == 1


async def test_create_order_without_email_is_400(client):
    payload = order_payload("5003", email=None)
    payload["customer"]["email"] = None
    r = await client.post("/api/orders", json=payload)
    assert r.status_code == 400
    assert r.json()["error"] == "ValidationError"


async def test_list_orders_filters_and_stats(app, client):
    await _seed_assignment(app)
    await client.post("/api/orders", json=order_payload("5004", financial_status="paid"))
    await client.post("/api/orders", json=order_payload("5005", email="solo@example.com"))

    r = await client.get("/api/orders", params={"status": "ready_to_fulfill"})
    assert r.status_code == 200
    body = r.json()
    assert [o["orderId"] for o in body["orders"]] == ["5004"]
    assert body["orders"][0]["assignedStore"] == "Sydney Store"
    assert body["stats"]["totalOrders"] == 2
    assert body["stats"]["assignedOrders"] == 1
    assert body["stats"]["unassignedOrders"] == 1
    assert body["stats"]["readyToFulfill"] == 1
    assert body["pagination"] == {"total": 1, "limit": 50, "offset": 0, "hasMore": False}

    by_store = (await client.get("/api/orders", params={"store": "sydney"})).json()
    assert by_store["pagination"]["total"] == 1
    by_search = (await client.get("/api/orders", params={"search": "CAP"})).json()
    assert by_search["pagination"]["total"] == 2
    everything = (await client.get("/api/orders", params={"status": "all"})).json()
    assert everything["pagination"]["total"] == 2


async def test_list_orders_rejects_unknown_status(client):
    r = await client.get("/api/orders", params={"status": "shipped"})
    assert r.status_code == 400


async def test_mark_fulfilled_full_success(client, shopify):
    await client.post("/api/orders", json=order_payload("5006", financial_status="paid"))
    r = await client.post("/api/order-actions", json={"action": "mark_fulfilled", "orderId": "5006", "data": {}})
    assert r.status_code == 200
    body = r.json()
    assert body["internalSuccess"] is True
    assert body["externalSuccess"] is True
    assert body["shopifyFulfillment"]["id"] == 991
    assert body["order"]["status"] == "fulfilled"


async def test_mark_fulfilled_partial_is_207(client, shopify):
    await client.post("/api/orders", json=order_payload("5007"))
    shopify.fail_fulfillment = True
    r = await client.post("/api/order-actions", json={"action": "mark_fulfilled", "orderId": "5007"})
    assert r.status_code == 207
    body = r.json()
    assert body["internalSuccess"] is True
    assert body["externalSuccess"] is False
    assert "must be paid" in body["externalError"]

    listing = (await client.get("/api/orders", params={"status": "fulfilled"})).json()
    assert [o["orderId"] for o in listing["orders"]] == ["5007"]


async def test_mark_fulfilled_twice_is_409(client):
    await client.post("/api/orders", json=order_payload("5008", financial_status="paid"))
    await client.post("/api/order-actions", json={"action": "mark_fulfilled", "orderId": "5008"})
    r = await client.post("/api/order-actions", json={"action": "mark_fulfilled", "orderId": "5008"})
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidTransitionError"


async def test_action_on_unknown_order_is_404(client):
    r = await client.post("/api/order-actions", json={"action": "mark_fulfilled", "orderId": "nope"})
    assert r.status_code == 404
    assert r.json() == {"error": "NotFoundError", "message": "Order not found"}


async def test_invalid_action_is_400(client):
    await client.post("/api/orders", json=order_payload("5009"))
    r = await client.post("/api/order-actions", json={"action": "explode", "orderId": "5009"})
    assert r.status_code == 400


async def test_assign_store_update_status_and_note(app, client):
    store_id = await _seed_assignment(app)
    await client.post("/api/orders", json=order_payload("5010", email="other@example.com"))

    r = await client.post("/api/order-actions", json={
        "action": "assign_store", "orderId": "5010", "data": {"storeId": store_id},
    })
    assert r.status_code == 200
    order = r.json()["order"]
    assert order["assignedStore"] == "Sydney Store"
    assert order["clubInfo"] == "Bondi Rugby"
    assert order["assignmentSource"] == "manual"
    assert order["status"] == "assigned"

    r = await client.post("/api/order-actions", json={
        "action": "update_status", "orderId": "5010", "data": {"status": "ready_to_fulfill", "note": "paid in store"},
    })
    assert r.status_code == 200
    assert r.json()["order"]["statusNote"] == "paid in store"

    bad = await client.post("/api/order-actions", json={
        "action": "update_status", "orderId": "5010", "data": {"status": "teleported"},
    })
    assert bad.status_code == 400

    r = await client.post("/api/order-actions", json={"action": "add_note", "orderId": "5010", "data": {"note": "call first"}})
    assert r.json()["order"]["internalNotes"] == "call first"


async def test_put_and_delete_order(client):
    await client.post("/api/orders", json=order_payload("5011"))

    r = await client.put("/api/orders", params={"orderId": "5011"}, json={"trackingNumber": "TRK1", "carrier": "AusPost"})
    assert r.status_code == 200
    assert r.json()["order"]["trackingNumber"] == "TRK1"

    missing = await client.put("/api/orders", json={"note": "x"})
    assert missing.status_code == 400

    r = await client.delete("/api/orders", params={"orderId": "5011"})
    assert r.status_code == 200
    assert (await client.get("/api/orders")).json()["pagination"]["total"] == 0


async def test_stores_listing(app, client):
    await _seed_assignment(app)
    r = await client.get("/api/stores")
    assert r.status_code == 200
    assert [s["name"] for s in r.json()["stores"]] == ["Sydney Store"]


async def test_webhook_ingests_and_checks_hmac(settings, database, shopify):
    app = create_app(settings=replace(settings, webhook_secret="whsec"), database=database, shopify=shopify)
    raw = json.dumps(order_payload("5012")).encode()
    digest = base64.b64encode(hmac.new(b"whsec", raw, hashlib.sha256).digest()).decode()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        bad = await c.post("/api/shopify/webhooks/orders/create", content=raw,
                           headers={"X-Shopify-Hmac-Sha256": "wrong"})
        assert bad.status_code == 401

        r = await c.post("/api/shopify/webhooks/orders/create", content=raw, headers={
            "X-Shopify-Hmac-Sha256": digest,
            "X-Shopify-Topic": "orders/create",
            "X-Shopify-Shop-Domain": "club-shop.myshopify.com",
        })
        assert r.status_code == 200
        assert r.json()["orderId"] == "5012"
        assert r.json()["created"] is True

        raw_update = json.dumps(order_payload("5012", fulfillment_status="fulfilled")).encode()
        digest_update = base64.b64encode(hmac.new(b"whsec", raw_update, hashlib.sha256).digest()).decode()
        r = await c.post("/api/shopify/webhooks/orders/fulfilled", content=raw_update,
                         headers={"X-Shopify-Hmac-Sha256": digest_update})
        assert r.json()["created"] is False
        assert r.json()["status"] == "fulfilled"


async def test_shopify_sync_endpoint(client, shopify):
    shopify.order_pages = [Page([order_payload("5013")], None)]
    r = await client.post("/api/shopify-sync", json={"action": "sync_orders", "options": {"daysBack": 30}})
    assert r.status_code == 200
    assert r.json()["stats"]["ordersCreated"] == 1

    bad = await client.post("/api/shopify-sync", json={"action": "sync_everything"})
    assert bad.status_code == 400


async def test_sync_without_shopify_is_503(settings, database):
    app = create_app(settings=settings, database=database, shopify=None)
    app.dependency_overrides[get_staff_session] = lambda: None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        r = await c.post("/api/shopify-sync", json={"action": "sync_all"})
        assert r.status_code == 503
        r = await c.post("/api/background-sync-metafields")
        assert r.status_code == 503


async def test_background_metafield_refresh(client, shopify, store):
    async with store.transaction():
        await store.upsert_customer("a@example.com", shopify_id="c-1")
    shopify.set_assignment("c-1", "Bondi Rugby", "Sydney Store")

    r = await client.post("/api/background-sync-metafields", json={"limit": 5})
    assert r.status_code == 200
    assert r.json()["stats"] == {"processed": 1, "updated": 1, "errors": []}


async def test_staff_routes_require_token(settings, database, shopify):
    app = create_app(settings=settings, database=database, shopify=shopify)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        assert (await c.get("/api/orders")).status_code == 401
        assert (await c.get("/api/orders", headers={"Authorization": "Bearer garbage"})).status_code == 401

        token = jwt.encode({"sub": "staff-1"}, "test-secret", algorithm="HS256")
        r = await c.get("/api/orders", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200

        # Order intake stays open
        r = await c.post("/api/orders", json=order_payload("5014"))
        assert r.status_code == 201
