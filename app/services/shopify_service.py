"""
Shopify Admin API service - authenticated REST reads used by the import and connect flows.
API version comes from settings (default 2024-01). Never log or expose access_token.
Supports cursor pagination (Link header) so the import walks every page, not just the first 250.
"""
import logging
import re
from datetime import datetime
from typing import AsyncIterator, Optional

import httpx

from app.config import settings
from app.exceptions import (
    ShopifyAuthError,
    ShopifyNotFoundError,
    ShopifyPlatformError,
    ShopifyRateLimitedError,
)

logger = logging.getLogger(__name__)

_SHOP_PROTOCOL_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_shop_domain(shop: str) -> str:
    """'https://Store.myshopify.com/admin' or 'store' -> 'store.myshopify.com'."""
    value = _SHOP_PROTOCOL_RE.sub("", (shop or "").strip()).split("/")[0].lower()
    if not value:
        raise ValueError("Shop domain is empty")
    if "." not in value:
        value = f"{value}.myshopify.com"
    return value


def _base_url(shop_domain: str) -> str:
    return f"https://{normalize_shop_domain(shop_domain)}/admin/api/{settings.SHOPIFY_API_VERSION}"


def _headers(access_token: str) -> dict:
    return {
        "X-Shopify-Access-Token": access_token,
        "Content-Type": "application/json",
    }


def _parse_link_next(link_header: Optional[str]) -> Optional[str]:
    """Parse Link header; return URL for rel=next if present. Shopify uses cursor pagination."""
    if not link_header:
        return None
    # Format: <url>; rel="next", <url>; rel="previous"
    for part in link_header.split(","):
        part = part.strip()
        if 'rel="next"' in part.lower() or "rel=next" in part.lower():
            match = re.search(r"<([^>]+)>", part)
            if match:
                return match.group(1).strip()
    return None


def _log_shopify_response(method: str, url: str, status: int, body_preview: str = "") -> None:
    """Log every Shopify API call. URL and status only; bodies are truncated and never include tokens."""
    if status >= 400:
        logger.warning("Shopify API %s %s -> %s %s", method, url, status, body_preview[:200] if body_preview else "")
    else:
        logger.info("Shopify API %s %s -> %s", method, url, status)


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def raise_for_shopify_status(response: httpx.Response) -> None:
    """Map a non-2xx Shopify response onto the typed error hierarchy."""
    status = response.status_code
    if status < 400:
        return
    detail = f"Shopify API {response.request.method} {response.request.url.path} failed: {status}"
    if status in (401, 403):
        raise ShopifyAuthError(detail, status_code=status)
    if status == 404:
        raise ShopifyNotFoundError(detail, status_code=status)
    if status == 429:
        raise ShopifyRateLimitedError(detail, status_code=status, retry_after=_retry_after(response))
    # 5xx and any other 4xx
    raise ShopifyPlatformError(detail, status_code=status)


def shopify_json(response: httpx.Response) -> dict:
    """Decode a 2xx Shopify body. An HTML maintenance page or non-object body is a platform error."""
    try:
        body = response.json()
    except ValueError as e:
        raise ShopifyPlatformError(
            f"Shopify API {response.request.method} {response.request.url.path} returned an undecodable body",
            status_code=response.status_code,
        ) from e
    if not isinstance(body, dict):
        raise ShopifyPlatformError(
            f"Shopify API {response.request.method} {response.request.url.path} returned a non-object body",
            status_code=response.status_code,
        )
    return body


async def send_shopify_request(
    method: str,
    url: str,
    access_token: str,
    *,
    params: Optional[dict] = None,
    json: Optional[dict] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """
    Single Shopify call bounded by SHOPIFY_HTTP_TIMEOUT. No retries here; callers decide.
    Transport failures and timeouts surface as ShopifyPlatformError.
    """
    try:
        async with httpx.AsyncClient(timeout=settings.SHOPIFY_HTTP_TIMEOUT, transport=transport) as client:
            response = await client.request(method, url, params=params, json=json, headers=_headers(access_token))
    except httpx.TimeoutException as e:
        logger.warning("Shopify API %s %s timed out: %s", method, url, e)
        raise ShopifyPlatformError(f"Shopify API {method} timed out") from e
    except httpx.TransportError as e:
        logger.warning("Shopify API %s %s transport error: %s", method, url, e)
        raise ShopifyPlatformError(f"Shopify API {method} transport error: {e}") from e
    _log_shopify_response(method, url, response.status_code, response.text if response.status_code >= 400 else "")
    return response


async def get_shop_info(
    shop_domain: str,
    access_token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """GET /shop.json. Returns the shop object."""
    response = await send_shopify_request("GET", f"{_base_url(shop_domain)}/shop.json", access_token, transport=transport)
    raise_for_shopify_status(response)
    return shopify_json(response).get("shop", {})


def _order_window_params(created_at_min: datetime, created_at_max: datetime) -> dict:
    return {
        "status": "any",
        "created_at_min": created_at_min.isoformat(),
        "created_at_max": created_at_max.isoformat(),
    }


async def count_orders(
    shop_domain: str,
    access_token: str,
    created_at_min: datetime,
    created_at_max: datetime,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """GET /orders/count.json for the import window."""
    response = await send_shopify_request(
        "GET",
        f"{_base_url(shop_domain)}/orders/count.json",
        access_token,
        params=_order_window_params(created_at_min, created_at_max),
        transport=transport,
    )
    raise_for_shopify_status(response)
    return int(shopify_json(response).get("count", 0) or 0)


async def iter_order_pages(
    shop_domain: str,
    access_token: str,
    created_at_min: datetime,
    created_at_max: datetime,
    page_limit: int = 50,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[list[dict]]:
    """
    Yield raw order pages (full payload including line_items and tax_lines) for the window.
    Follows rel=next until there is none or a short page comes back.
    """
    url = f"{_base_url(shop_domain)}/orders.json"
    params: dict = {**_order_window_params(created_at_min, created_at_max), "limit": page_limit}
    page = 0
    while True:
        page += 1
        response = await send_shopify_request("GET", url, access_token, params=params, transport=transport)
        raise_for_shopify_status(response)
        orders = shopify_json(response).get("orders") or []
        logger.info("Shopify orders page %s: got %s", page, len(orders))
        if orders:
            yield orders
        if len(orders) < page_limit:
            break
        next_url = _parse_link_next(response.headers.get("link"))
        if not next_url:
            break
        url = next_url
        params = {}  # page_info URL already carries its params
