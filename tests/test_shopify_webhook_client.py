"""
Shopify webhook registry client tests against httpx.MockTransport
"""
import json

import httpx
import pytest

from app.exceptions import (
    ShopifyAuthError,
    ShopifyNotFoundError,
    ShopifyPlatformError,
    ShopifyRateLimitedError,
)
from app.services.shopify_webhook_client import ShopifyWebhookClient

SHOP = "test.myshopify.com"


def _client(handler):
    return ShopifyWebhookClient(transport=httpx.MockTransport(handler))


class TestShopifyWebhookClient:

    @pytest.mark.asyncio
    async def test_list_webhooks(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["token"] = request.headers.get("X-Shopify-Access-Token")
            return httpx.Response(200, json={"webhooks": [
                {"id": 1, "topic": "orders/create", "address": "https://a.test/api/webhooks/shopify", "format": "json"},
            ]})

        webhooks = await _client(handler).list_webhooks(SHOP, "shpat_x")
        assert webhooks == [{
            "id": "1",
            "topic": "orders/create",
            "address": "https://a.test/api/webhooks/shopify",
            "format": "json",
        }]
        assert seen["url"].startswith(f"https://{SHOP}/admin/api/2024-01/webhooks.json")
        assert seen["token"] == "shpat_x"

    @pytest.mark.asyncio
    async def test_create_webhook_posts_topic_and_address(self):
        captured = {}

        def handler(request):
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"webhook": {"id": 77, "topic": "orders/create", "address": "https://a.test/cb"}})

        created = await _client(handler).create_webhook(SHOP, "shpat_x", "orders/create", "https://a.test/cb")
        assert captured["method"] == "POST"
        assert captured["body"] == {"webhook": {"topic": "orders/create", "address": "https://a.test/cb", "format": "json"}}
        assert created["id"] == "77"

    @pytest.mark.asyncio
    async def test_delete_404_is_success(self):
        client = _client(lambda request: httpx.Response(404, json={"errors": "Not Found"}))
        assert await client.delete_webhook(SHOP, "shpat_x", "77") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code,error", [
        (401, ShopifyAuthError),
        (403, ShopifyAuthError),
        (404, ShopifyNotFoundError),
        (429, ShopifyRateLimitedError),
        (500, ShopifyPlatformError),
        (503, ShopifyPlatformError),
        (400, ShopifyPlatformError),
        (422, ShopifyPlatformError),
    ])
    async def test_error_mapping(self, status_code, error):
        client = _client(lambda request: httpx.Response(status_code, headers={"Retry-After": "2.0"}))
        with pytest.raises(error) as exc_info:
            await client.list_webhooks(SHOP, "shpat_x")
        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_undecodable_success_body_is_platform_error(self):
        html = _client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(ShopifyPlatformError) as exc_info:
            await html.list_webhooks(SHOP, "shpat_x")
        assert exc_info.value.status_code == 200

        not_an_object = _client(lambda request: httpx.Response(201, json=["unexpected"]))
        with pytest.raises(ShopifyPlatformError):
            await not_an_object.create_webhook(SHOP, "shpat_x", "orders/create", "https://a.test/cb")

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        client = _client(lambda request: httpx.Response(429, headers={"Retry-After": "4"}))
        with pytest.raises(ShopifyRateLimitedError) as exc_info:
            await client.create_webhook(SHOP, "shpat_x", "orders/create", "https://a.test/cb")
        assert exc_info.value.retry_after == 4.0

    @pytest.mark.asyncio
    async def test_transport_error_is_platform_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ShopifyPlatformError):
            await _client(handler).list_webhooks(SHOP, "shpat_x")

    @pytest.mark.asyncio
    async def test_delete_server_error_propagates(self):
        client = _client(lambda request: httpx.Response(502))
        with pytest.raises(ShopifyPlatformError):
            await client.delete_webhook(SHOP, "shpat_x", "77")
