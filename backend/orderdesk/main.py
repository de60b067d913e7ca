import base64
import hashlib
import hmac
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from .actions import OrderActions
from .auth import StaffSession, get_staff_session
from .config import Settings, load_settings, load_shopify_config
from .db import Database, get_session
from .errors import OrderDeskError, ValidationError
from .fulfillment import FulfillmentCoordinator
from .ingest import OrderIngestor
from .logs import log_event
from .realtime import ConnectionManager
from .resolver import AssignmentResolver, LegacyClubHintSource
from .schemas import (
    AddNoteData,
    AssignStoreData,
    MarkFulfilledData,
    OrderActionBody,
    OrderUpdateBody,
    RefreshBody,
    SyncBody,
    UpdateStatusData,
    map_order,
    map_store,
)
from .seed import seed_default_stores
from .shopify import ShopifyClient
from .status import OrderStatus
from .store import OrderStore
from .sync import ShopifySyncService

router = APIRouter()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------- Dependencies ----------
def get_store(session: AsyncSession = Depends(get_session)) -> OrderStore:
    return OrderStore(session)


def get_resolver(request: Request, store: OrderStore = Depends(get_store)) -> AssignmentResolver:
    return AssignmentResolver(
        store,
        request.app.state.shopify,
        store_email_domain=request.app.state.settings.store_email_domain,
        alternate_sources=[LegacyClubHintSource()],
    )


def get_ingestor(
    request: Request,
    store: OrderStore = Depends(get_store),
    resolver: AssignmentResolver = Depends(get_resolver),
) -> OrderIngestor:
    shopify = request.app.state.shopify
    return OrderIngestor(
        store,
        resolver,
        notify=request.app.state.manager.notifier(),
        shop=shopify.config.domain if shopify is not None else None,
    )


def get_coordinator(request: Request, store: OrderStore = Depends(get_store)) -> FulfillmentCoordinator:
    return FulfillmentCoordinator(store, request.app.state.shopify, notify=request.app.state.manager.notifier())


def require_shopify(request: Request):
    shopify = request.app.state.shopify
    if shopify is None:
        raise HTTPException(status_code=503, detail="Shopify credentials not configured")
    return shopify


# ---------- Shopify webhooks ----------
def _verify_shopify_hmac(raw_body: bytes, recv_hmac: str, secret: str) -> bool:
    if not secret:
        return True
    calc = base64.b64encode(hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()).decode()
    return hmac.compare_digest((recv_hmac or "").strip(), calc)


async def _read_webhook(request: Request, x_shopify_hmac_sha256: Optional[str]) -> Dict[str, Any]:
    raw = await request.body()
    if not _verify_shopify_hmac(raw, x_shopify_hmac_sha256 or "", request.app.state.settings.webhook_secret):
        raise HTTPException(status_code=401, detail="bad hmac")
    try:
        data = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("webhook body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("webhook body must be a JSON object")
    return data


@router.post("/api/shopify/webhooks/orders/create")
@router.post("/api/shopify/webhooks/orders/updated")
@router.post("/api/shopify/webhooks/orders/fulfilled")
async def order_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(default=None),
    x_shopify_topic: Optional[str] = Header(default=None),
    x_shopify_shop_domain: Optional[str] = Header(default=None),
    ingestor: OrderIngestor = Depends(get_ingestor),
):
    data = await _read_webhook(request, x_shopify_hmac_sha256)
    if x_shopify_shop_domain:
        ingestor.shop = x_shopify_shop_domain.strip().lower()
    result = await ingestor.ingest(data, source="shopify")
    order = result.order
    log_event("webhook", {"topic": x_shopify_topic, "shop": x_shopify_shop_domain, "order_id": order.external_id, "created": result.created})
    await request.app.state.manager.broadcast({
        "type": "order.created" if result.created else "order.updated",
        "id": order.id,
        "status": order.status.value,
    })
    return {
        "message": "Order received successfully",
        "orderId": order.external_id,
        "orderNumber": order.order_number,
        "customerEmail": order.customer_email,
        "clubInfo": order.club_info,
        "assignedStore": order.assigned_store,
        "assignmentSource": result.assignment.source.value,
        "status": order.status.value,
        "created": result.created,
        "timestamp": _now_iso(),
    }


# ---------- Orders ----------
@router.get("/api/health")
async def health():
    return {"ok": True}


@router.get("/api/orders")
async def list_orders(
    status: Optional[str] = Query(None, description="Lifecycle status, or 'all'"),
    store: Optional[str] = Query(None, description="Substring of the assigned store name"),
    club: Optional[str] = Query(None, description="Substring of the club name"),
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=250),
    offset: int = Query(0, ge=0),
    order_store: OrderStore = Depends(get_store),
    _: StaffSession = Depends(get_staff_session),
):
    status_filter = None
    if status and status != "all":
        try:
            status_filter = OrderStatus.parse(status)
        except ValueError:
            raise ValidationError(f"invalid status: {status!r}")
    items, total = await order_store.list_orders(
        status=status_filter, store=store, club=club, search=search, limit=limit, offset=offset
    )
    stats = await order_store.aggregate_order_counts()
    return {
        "orders": [map_order(o) for o in items],
        "stats": stats,
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + limit < total},
        "timestamp": _now_iso(),
    }


@router.post("/api/orders", status_code=201)
async def create_order(
    request: Request,
    response: Response,
    payload: Dict[str, Any] = Body(...),
    ingestor: OrderIngestor = Depends(get_ingestor),
):
    result = await ingestor.ingest(payload, source=str(payload.get("source") or "api"))
    if not result.created:
        response.status_code = 200
    await request.app.state.manager.broadcast({
        "type": "order.created" if result.created else "order.updated",
        "id": result.order.id,
    })
    return {
        "message": "Order created successfully" if result.created else "Order updated",
        "created": result.created,
        "assignment": result.assignment.to_dict(),
        "order": map_order(result.order),
    }


@router.put("/api/orders")
async def update_order(
    request: Request,
    body: OrderUpdateBody,
    orderId: Optional[str] = Query(None),
    store: OrderStore = Depends(get_store),
    _: StaffSession = Depends(get_staff_session),
):
    if not orderId:
        raise ValidationError("Order ID is required")
    order = await OrderActions(store).update(orderId, body)
    await request.app.state.manager.broadcast({"type": "order.updated", "id": order.id})
    return {"message": "Order updated successfully", "order": map_order(order)}


@router.delete("/api/orders")
async def delete_order(
    orderId: Optional[str] = Query(None),
    store: OrderStore = Depends(get_store),
    _: StaffSession = Depends(get_staff_session),
):
    if not orderId:
        raise ValidationError("Order ID is required")
    order = await OrderActions(store).delete(orderId)
    return {"message": "Order deleted successfully", "order": map_order(order)}


@router.get("/api/stores")
async def list_stores(
    active_only: bool = Query(False),
    store: OrderStore = Depends(get_store),
    _: StaffSession = Depends(get_staff_session),
):
    return {"stores": [map_store(s) for s in await store.list_stores(active_only=active_only)]}


# ---------- Staff actions ----------
def _parse(model, data: Dict[str, Any]):
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        raise ValidationError(f"invalid data: {e.errors(include_url=False)}")


@router.post("/api/order-actions")
async def order_actions(
    request: Request,
    body: OrderActionBody,
    store: OrderStore = Depends(get_store),
    coordinator: FulfillmentCoordinator = Depends(get_coordinator),
    _: StaffSession = Depends(get_staff_session),
):
    actions = OrderActions(store)
    manager: ConnectionManager = request.app.state.manager

    if body.action == "assign_store":
        order = await actions.assign_store(body.orderId, _parse(AssignStoreData, body.data))
        await manager.broadcast({"type": "order.assigned", "id": order.id, "store": order.assigned_store})
        return {"message": "Store assigned successfully", "orderId": body.orderId, "assignedStore": order.assigned_store, "order": map_order(order)}

    if body.action == "update_status":
        order = await actions.update_status(body.orderId, _parse(UpdateStatusData, body.data))
        await manager.broadcast({"type": "order.updated", "id": order.id, "status": order.status.value})
        return {"message": "Status updated successfully", "orderId": body.orderId, "status": order.status.value, "order": map_order(order)}

    if body.action == "add_note":
        data = _parse(AddNoteData, body.data)
        order = await actions.add_note(body.orderId, data)
        return {"message": "Note added successfully", "orderId": body.orderId, "note": data.note, "order": map_order(order)}

    if body.action == "mark_fulfilled":
        data = _parse(MarkFulfilledData, body.data)
        result = await coordinator.fulfill(body.orderId, notify_customer=data.notifyCustomer, internal_note=data.internalNote)
        payload = {
            "orderId": body.orderId,
            "shopifyOrderId": result.external_order_id,
            "fulfillmentType": "pickup",
            "assignedStore": result.order.assigned_store,
            "internalSuccess": result.internal_success,
            "externalSuccess": result.external_success,
            "order": map_order(result.order).model_dump(mode="json"),
        }
        if result.partial:
            payload["message"] = "Order marked as fulfilled internally, but Shopify fulfillment failed"
            payload["externalError"] = result.external_error
            return JSONResponse(payload, status_code=207)
        payload["message"] = "Order marked as fulfilled and ready for pickup (updated in Shopify)"
        payload["shopifyFulfillment"] = (result.confirmation or {}).get("fulfillment")
        return payload

    raise ValidationError("Invalid action")


# ---------- Sync ----------
@router.post("/api/shopify-sync")
async def shopify_sync(
    body: SyncBody,
    shopify=Depends(require_shopify),
    store: OrderStore = Depends(get_store),
    ingestor: OrderIngestor = Depends(get_ingestor),
    _: StaffSession = Depends(get_staff_session),
):
    service = ShopifySyncService(shopify, store, ingestor)
    opts = body.options
    if body.action == "sync_customers":
        stats = await service.sync_customers(opts.limit)
        return {"success": True, "action": body.action, "stats": stats.to_dict(),
                "message": f"Successfully processed {stats.customers_processed} customers"}
    if body.action == "sync_orders":
        stats = await service.sync_orders(opts.daysBack, opts.limit)
        return {"success": True, "action": body.action, "stats": stats.to_dict(),
                "message": f"Successfully processed {stats.orders_processed} orders ({stats.orders_created} new)"}
    if body.action == "sync_all":
        both = await service.sync_all(opts.daysBack, opts.limit)
        return {
            "success": True,
            "action": body.action,
            "stats": {k: v.to_dict() for k, v in both.items()},
            "message": f"Sync completed! {both['customers'].customers_processed} customers, {both['orders'].orders_created} new orders",
        }
    raise ValidationError("Invalid action. Use 'sync_customers', 'sync_orders', or 'sync_all'")


@router.post("/api/background-sync-metafields")
async def background_sync_metafields(
    body: Optional[RefreshBody] = None,
    _shopify=Depends(require_shopify),
    resolver: AssignmentResolver = Depends(get_resolver),
    _: StaffSession = Depends(get_staff_session),
):
    stats = await resolver.refresh_stale_customers((body or RefreshBody()).limit)
    return {"success": True, "message": "Background sync completed", "stats": stats.to_dict(), "timestamp": _now_iso()}


# ---------- Live updates ----------
@router.websocket("/ws")
async def ws_updates(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.manager
    await manager.connect(websocket)
    try:
        while True:
            # Keep-alive; we don't require messages from the client
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# ---------- App ----------
async def _handle_orderdesk_error(request: Request, exc: OrderDeskError):
    return JSONResponse({"error": exc.__class__.__name__, "message": exc.message}, status_code=exc.status_code)


async def _handle_request_validation(request: Request, exc: RequestValidationError):
    return JSONResponse({"error": "ValidationError", "message": str(exc.errors())}, status_code=400)


_UNSET: Any = object()


def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    shopify: Optional[ShopifyClient] = _UNSET,
) -> FastAPI:
    """Build the API around explicitly constructed collaborators.

    Anything not passed in is loaded from the environment. Passing
    `shopify=None` runs without a Shopify client.
    """
    settings = settings or load_settings()
    if shopify is _UNSET:
        shopify_config, config_error = load_shopify_config()
        shopify = ShopifyClient(shopify_config) if shopify_config else None
        if config_error:
            print(f"[CONFIG] Shopify calls disabled: {config_error.message}")
    database = database or Database(settings.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await database.init()
        except Exception as e:
            print(f"[DB] Failed to init tables: {e}")
            raise
        if settings.seed_stores:
            async with database.sessionmaker() as session:
                await seed_default_stores(OrderStore(session))
        yield
        if shopify is not None:
            await shopify.aclose()
        await database.dispose()
        print("[DB] Engine disposed")

    app = FastAPI(title="Club Order Desk API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = database
    app.state.shopify = shopify
    app.state.manager = ConnectionManager()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Compress JSON responses to reduce payload sizes for large order lists
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.add_exception_handler(OrderDeskError, _handle_orderdesk_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.include_router(router)
    return app


app = create_app()
