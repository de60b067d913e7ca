import asyncio
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional

import httpx

from .config import ShopifyConfig
from .errors import ShopifyError
from .logs import log_event

# page_info cursor inside the rel="next" part of a Link header
_PAGE_INFO_RE = re.compile(r"[?&]page_info=([^&>]+)")


class Page(NamedTuple):
    items: List[Dict[str, Any]]
    next_page_info: Optional[str]


@dataclass
class TrackingInfo:
    number: str
    company: Optional[str] = None
    url: Optional[str] = None


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the page_info cursor of the rel="next" link, if any."""
    for part in (link_header or "").split(","):
        if 'rel="next"' not in part:
            continue
        m = _PAGE_INFO_RE.search(part)
        if m:
            return m.group(1)
    return None


def _body(r: httpx.Response) -> Dict[str, Any]:
    """Decoded JSON object of a successful response; anything else is a ShopifyError."""
    method, path = r.request.method, r.request.url.path
    try:
        data = r.json()
    except ValueError:
        log_event("shopify", {"method": method, "path": path, "status": r.status_code, "body": (r.text or "")[:200]})
        raise ShopifyError(f"Shopify {method} {path} returned invalid JSON", upstream_status=r.status_code)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ShopifyError(f"Shopify {method} {path} returned invalid JSON", upstream_status=r.status_code)
    return data


class ShopifyClient:
    """Thin async client for the Shopify Admin REST API.

    Throttled answers (429/430/503) and transport errors are retried with
    exponential backoff; anything else that is not 2xx raises ShopifyError.
    """

    max_retries = 5
    base_delay = 0.35

    def __init__(self, config: ShopifyConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 30):
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "X-Shopify-Access-Token": config.access_token,
            },
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, 0.15)

    async def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, json: Any = None) -> httpx.Response:
        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                r = await self._client.request(method, path, params=params, json=json)
            except httpx.HTTPError as e:
                last_exc = e
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(self._backoff(attempt))
                    continue
                break
            if r.status_code in (429, 430, 503) and attempt < self.max_retries - 1:
                ra = r.headers.get("Retry-After")
                try:
                    wait = float(ra) if ra else self._backoff(attempt)
                except ValueError:
                    wait = self._backoff(attempt)
                await asyncio.sleep(wait)
                continue
            if r.is_success:
                return r
            detail = (r.text or "")[:500]
            log_event("shopify", {"method": method, "path": path, "status": r.status_code, "body": detail})
            raise ShopifyError(f"Shopify {method} {path} failed: {r.status_code} - {detail[:200]}", upstream_status=r.status_code)
        raise ShopifyError(f"Shopify request failed: {last_exc}")

    # ---------- orders ----------
    async def get_order(self, external_id: str) -> Dict[str, Any]:
        r = await self._request("GET", f"/orders/{external_id}.json")
        order = _body(r).get("order")
        if not order:
            raise ShopifyError(f"Order {external_id} not found", upstream_status=404)
        return order

    async def list_orders(self, since: datetime, page_info: Optional[str] = None, *, limit: int = 250) -> Page:
        # Shopify rejects filters alongside page_info; the cursor already carries them
        if page_info:
            params: Dict[str, Any] = {"limit": limit, "page_info": page_info}
        else:
            params = {"limit": limit, "status": "any", "created_at_min": since.isoformat()}
        r = await self._request("GET", "/orders.json", params=params)
        return Page(_body(r).get("orders") or [], parse_next_page_info(r.headers.get("Link")))

    # ---------- customers ----------
    async def list_customers(self, page_info: Optional[str] = None, *, limit: int = 250) -> Page:
        params: Dict[str, Any] = {"limit": limit}
        if page_info:
            params["page_info"] = page_info
        r = await self._request("GET", "/customers.json", params=params)
        return Page(_body(r).get("customers") or [], parse_next_page_info(r.headers.get("Link")))

    async def get_customer_metafields(self, customer_id: str) -> List[Dict[str, Any]]:
        r = await self._request("GET", f"/customers/{customer_id}/metafields.json")
        return [
            {"namespace": m.get("namespace"), "key": m.get("key"), "value": m.get("value")}
            for m in (_body(r).get("metafields") or [])
        ]

    # ---------- fulfillment ----------
    async def create_fulfillment(
        self,
        external_order_id: str,
        *,
        notify_customer: bool = True,
        tracking: Optional[TrackingInfo] = None,
    ) -> Dict[str, Any]:
        """Fulfil every open line of the order.

        The order is checked first (not fulfilled, not cancelled, paid). The
        fulfillment-orders endpoint is preferred; if it cannot be used the
        legacy per-order endpoint is tried with the first active location.
        """
        order = await self.get_order(external_order_id)
        if order.get("fulfillment_status") == "fulfilled":
            raise ShopifyError(f"Order {external_order_id} is already fulfilled")
        if order.get("cancelled_at"):
            raise ShopifyError(f"Order {external_order_id} is cancelled and cannot be fulfilled")
        if order.get("financial_status") != "paid":
            raise ShopifyError(
                f"Order {external_order_id} must be paid before fulfillment (current status: {order.get('financial_status')})"
            )
        try:
            return await self._fulfill_via_fulfillment_orders(external_order_id, notify_customer, tracking)
        except ShopifyError as e:
            log_event("shopify", {"order_id": external_order_id, "action": "fulfillment_orders", "error": str(e), "fallback": "legacy"})
            return await self._fulfill_legacy(external_order_id, order, notify_customer, tracking)

    async def _fulfill_via_fulfillment_orders(self, order_id: str, notify_customer: bool, tracking: Optional[TrackingInfo]) -> Dict[str, Any]:
        r = await self._request("GET", f"/orders/{order_id}/fulfillment_orders.json")
        fulfillment_orders = _body(r).get("fulfillment_orders") or []
        if not fulfillment_orders:
            raise ShopifyError("No fulfillment orders found for this order")
        fo = fulfillment_orders[0]
        if "create_fulfillment" not in (fo.get("supported_actions") or []):
            raise ShopifyError("Fulfillment order does not support create_fulfillment action")
        payload: Dict[str, Any] = {
            "line_items_by_fulfillment_order": [{
                "fulfillment_order_id": fo.get("id"),
                "fulfillment_order_line_items": [
                    {"id": li.get("id"), "quantity": li.get("quantity")} for li in (fo.get("line_items") or [])
                ],
            }],
            "notify_customer": bool(notify_customer),
        }
        if tracking and tracking.number:
            info = {"number": tracking.number, "company": tracking.company or "Other"}
            if tracking.url:
                info["url"] = tracking.url
            payload["tracking_info"] = info
        r = await self._request("POST", "/fulfillments.json", json={"fulfillment": payload})
        return _body(r)

    async def _first_active_location_id(self) -> Optional[int]:
        try:
            r = await self._request("GET", "/locations.json")
        except ShopifyError:
            return None
        for loc in (_body(r).get("locations") or []):
            if loc.get("active"):
                return loc.get("id")
        return None

    async def _fulfill_legacy(self, order_id: str, order: Dict[str, Any], notify_customer: bool, tracking: Optional[TrackingInfo]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "notify_customer": bool(notify_customer),
            "line_items": [{"id": li.get("id"), "quantity": li.get("quantity")} for li in (order.get("line_items") or [])],
        }
        location_id = await self._first_active_location_id()
        if location_id:
            payload["location_id"] = location_id
        if tracking and tracking.number:
            payload["tracking_number"] = tracking.number
            if tracking.url:
                payload["tracking_urls"] = [tracking.url]
            if tracking.company:
                payload["tracking_company"] = tracking.company
        r = await self._request("POST", f"/orders/{order_id}/fulfillments.json", json={"fulfillment": payload})
        return _body(r)
