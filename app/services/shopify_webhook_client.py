"""
Shopify webhook subscription API: list, create, delete.
Each call is one request with no retry; retry policy belongs to the WebhookManager.
Shopify accepts duplicate registrations for a topic, so callers must de-duplicate by topic first.
"""
import logging
from typing import Optional

import httpx

from app.exceptions import ShopifyNotFoundError
from app.services.shopify_service import (
    _base_url,
    raise_for_shopify_status,
    send_shopify_request,
    shopify_json,
)

logger = logging.getLogger(__name__)


def _subscription(raw: dict) -> dict:
    return {
        "id": str(raw.get("id")),
        "topic": raw.get("topic"),
        "address": raw.get("address"),
        "format": raw.get("format", "json"),
    }


class ShopifyWebhookClient:
    """Adapter over /admin/api/{version}/webhooks.json for one (shop, token) pair per call."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def list_webhooks(self, shop: str, access_token: str) -> list[dict]:
        """GET webhooks.json -> [{id, topic, address, format}]."""
        response = await send_shopify_request(
            "GET",
            f"{_base_url(shop)}/webhooks.json",
            access_token,
            params={"limit": 250},
            transport=self.transport,
        )
        raise_for_shopify_status(response)
        return [_subscription(w) for w in shopify_json(response).get("webhooks") or []]

    async def create_webhook(self, shop: str, access_token: str, topic: str, address: str) -> dict:
        """POST webhooks.json -> {id, topic, address, format}."""
        response = await send_shopify_request(
            "POST",
            f"{_base_url(shop)}/webhooks.json",
            access_token,
            json={"webhook": {"topic": topic, "address": address, "format": "json"}},
            transport=self.transport,
        )
        raise_for_shopify_status(response)
        created = _subscription(shopify_json(response).get("webhook") or {})
        logger.info("Created Shopify webhook %s for %s on %s", created["id"], topic, shop)
        return created

    async def delete_webhook(self, shop: str, access_token: str, webhook_id: str) -> None:
        """DELETE webhooks/{id}.json. A 404 means it is already gone, which counts as success."""
        response = await send_shopify_request(
            "DELETE",
            f"{_base_url(shop)}/webhooks/{webhook_id}.json",
            access_token,
            transport=self.transport,
        )
        try:
            raise_for_shopify_status(response)
        except ShopifyNotFoundError:
            logger.info("Shopify webhook %s on %s already deleted", webhook_id, shop)
            return
        logger.info("Deleted Shopify webhook %s on %s", webhook_id, shop)
