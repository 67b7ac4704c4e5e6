"""
Webhook Manager: converge a shop's Shopify webhook subscriptions to the required topic set,
all pointed at the unified callback URL.

Per topic:  MISSING -(create)-> HEALTHY;  HEALTHY -(address mismatch)-> MISCONFIGURED.
MISCONFIGURED is left alone until an operator runs reset_webhooks.
Current subscriptions are always re-listed right before deciding what to create, so concurrent
runs (connect + scheduled check) never act on cached state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import (
    IntegrationNotFoundError,
    InvalidCredentialsError,
    ShopifyAPIError,
)
from app.models import Integration, IntegrationStatus, IntegrationType, SyncStatus
from app.services.credentials import get_integration_credentials
from app.services.shopify_webhook_client import ShopifyWebhookClient

logger = logging.getLogger(__name__)

REQUIRED_TOPICS = [
    "orders/create",
    "orders/updated",
    "orders/cancelled",
    "refunds/create",
    "app/uninstalled",
]

HEALTHY = "healthy"
MISSING = "missing"
MISCONFIGURED = "misconfigured"

OVERALL_HEALTHY = "healthy"
OVERALL_DEGRADED = "degraded"
OVERALL_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _same_address(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().rstrip("/") == (b or "").strip().rstrip("/")


@dataclass
class WebhookHealth:
    topic: str
    status: str
    address: Optional[str] = None
    webhook_id: Optional[str] = None
    created: bool = False
    error: Optional[str] = None
    stale_addresses: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "status": self.status,
            "address": self.address,
            "webhookId": self.webhook_id,
            "created": self.created,
            "error": self.error,
            "staleAddresses": list(self.stale_addresses),
        }


@dataclass
class IntegrationHealth:
    integration_id: str
    shop: Optional[str]
    overall_status: str
    webhooks: list[WebhookHealth] = field(default_factory=list)
    consecutive_failures: int = 0
    checked_at: datetime = field(default_factory=_utcnow)
    error: Optional[str] = None

    @property
    def created_topics(self) -> list[str]:
        return [w.topic for w in self.webhooks if w.created]

    @property
    def next_check_at(self) -> datetime:
        return self.checked_at + timedelta(hours=settings.WEBHOOK_HEALTH_CHECK_INTERVAL_HOURS)

    def to_dict(self) -> dict:
        return {
            "integrationId": self.integration_id,
            "shop": self.shop,
            "overallStatus": self.overall_status,
            "webhooks": [w.to_dict() for w in self.webhooks],
            "createdTopics": self.created_topics,
            "consecutiveFailures": self.consecutive_failures,
            "checkedAt": self.checked_at.isoformat(),
            "nextCheckAt": self.next_check_at.isoformat(),
            "error": self.error,
        }


def calculate_overall_health(webhooks: list[WebhookHealth]) -> str:
    """healthy if every topic is healthy; failed if any is still missing; degraded otherwise."""
    if not webhooks:
        return OVERALL_FAILED
    if any(w.status == MISSING for w in webhooks):
        return OVERALL_FAILED
    if all(w.status == HEALTHY for w in webhooks):
        return OVERALL_HEALTHY
    return OVERALL_DEGRADED


class WebhookManager:
    """
    Convergence and health tracking for one callback URL.
    `client` is anything with async list_webhooks/create_webhook/delete_webhook (ShopifyWebhookClient by default).
    """

    def __init__(self, client=None, callback_url: Optional[str] = None):
        self.client = client or ShopifyWebhookClient()
        if callback_url is None and settings.WEBHOOK_BASE_URL:
            callback_url = settings.webhook_callback_url
        self.callback_url = callback_url

    def _get_integration(self, db: Session, integration_id: str) -> Integration:
        integration = db.query(Integration).filter(Integration.id == integration_id).first()
        if not integration:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        return integration

    async def _converge(self, shop: str, access_token: str) -> list[WebhookHealth]:
        existing = await self.client.list_webhooks(shop, access_token)
        results = []
        for topic in REQUIRED_TOPICS:
            subscriptions = [w for w in existing if w.get("topic") == topic]
            correct = [w for w in subscriptions if _same_address(w.get("address"), self.callback_url)]
            stale = [w for w in subscriptions if not _same_address(w.get("address"), self.callback_url)]
            stale_addresses = [w.get("address") for w in stale]

            if correct:
                keep = correct[0]
                for duplicate in correct[1:]:
                    try:
                        await self.client.delete_webhook(shop, access_token, duplicate["id"])
                        logger.info("Pruned duplicate %s webhook %s on %s", topic, duplicate["id"], shop)
                    except ShopifyAPIError as e:
                        logger.warning("Could not prune duplicate %s webhook %s on %s: %s", topic, duplicate["id"], shop, e)
                results.append(WebhookHealth(
                    topic=topic,
                    status=HEALTHY,
                    address=keep.get("address"),
                    webhook_id=keep.get("id"),
                    stale_addresses=stale_addresses,
                ))
                continue

            if stale:
                logger.warning("Webhook %s on %s points at %s, expected %s", topic, shop, stale_addresses, self.callback_url)
                results.append(WebhookHealth(
                    topic=topic,
                    status=MISCONFIGURED,
                    address=stale[0].get("address"),
                    webhook_id=stale[0].get("id"),
                    stale_addresses=stale_addresses,
                ))
                continue

            try:
                created = await self.client.create_webhook(shop, access_token, topic, self.callback_url)
            except ShopifyAPIError as e:
                logger.warning("Failed to create %s webhook on %s: %s", topic, shop, e)
                results.append(WebhookHealth(topic=topic, status=MISSING, error=str(e)))
                continue
            results.append(WebhookHealth(
                topic=topic,
                status=HEALTHY,
                address=created.get("address") or self.callback_url,
                webhook_id=created.get("id"),
                created=True,
            ))
        return results

    def _record(self, db: Session, integration: Integration, health: IntegrationHealth) -> IntegrationHealth:
        """Persist the health record and the consecutive-failure counter on the integration."""
        if health.overall_status == OVERALL_FAILED:
            failures = (integration.webhook_consecutive_failures or 0) + 1
        else:
            failures = 0
        health.consecutive_failures = failures

        integration.webhook_consecutive_failures = failures
        integration.webhook_checked_at = health.checked_at
        integration.webhook_health = health.to_dict()
        if failures >= settings.WEBHOOK_MAX_CONSECUTIVE_FAILURES:
            integration.sync_status = SyncStatus.ERROR
            integration.sync_error = (
                f"Webhook health check failed {failures} consecutive times: "
                f"{health.error or 'missing webhook subscriptions'}"
            )[:500]
        elif failures == 0 and integration.sync_status == SyncStatus.ERROR:
            integration.sync_status = SyncStatus.IDLE
            integration.sync_error = None
        db.commit()
        return health

    async def ensure_webhook_health(self, db: Session, integration_id: str) -> IntegrationHealth:
        """
        Converge one integration and return its health record.
        Platform and credential failures are recorded as a failed check, never raised.
        """
        integration = self._get_integration(db, integration_id)
        shop = integration.shop_domain

        if not self.callback_url:
            health = IntegrationHealth(integration.id, shop, OVERALL_FAILED, error="WEBHOOK_BASE_URL is not configured")
            logger.error("Webhook health for %s: %s", shop, health.error)
            return self._record(db, integration, health)

        try:
            credentials = get_integration_credentials(integration)
            webhooks = await self._converge(credentials.shop, credentials.access_token)
        except (InvalidCredentialsError, ShopifyAPIError) as e:
            health = IntegrationHealth(integration.id, shop, OVERALL_FAILED, error=str(e))
            logger.warning("Webhook health for %s (%s) failed: %s", shop, integration.id, e)
            return self._record(db, integration, health)

        health = IntegrationHealth(
            integration_id=integration.id,
            shop=shop,
            overall_status=calculate_overall_health(webhooks),
            webhooks=webhooks,
        )
        missing = [w.topic for w in webhooks if w.status == MISSING]
        if missing:
            health.error = f"Missing webhooks after repair: {', '.join(missing)}"
        logger.info(
            "Webhook health for %s (%s): %s, created=%s",
            shop, integration.id, health.overall_status, health.created_topics,
        )
        return self._record(db, integration, health)

    async def run_global_health_check(self, db: Session) -> list[IntegrationHealth]:
        """One pass over every CONNECTED Shopify integration. Intended for an external scheduler."""
        integration_ids = [
            row.id
            for row in db.query(Integration.id).filter(
                Integration.type == IntegrationType.SHOPIFY,
                Integration.status == IntegrationStatus.CONNECTED,
            )
        ]
        logger.info("Global webhook health check: %s integration(s)", len(integration_ids))
        results = []
        for integration_id in integration_ids:
            try:
                results.append(await self.ensure_webhook_health(db, integration_id))
            except Exception as e:
                # One integration must not abort the pass for the rest of the fleet
                logger.exception("Webhook health check for integration %s crashed", integration_id)
                db.rollback()
                integration = self._get_integration(db, integration_id)
                health = IntegrationHealth(
                    integration.id, integration.shop_domain, OVERALL_FAILED, error=f"Unexpected error: {e}"[:500],
                )
                results.append(self._record(db, integration, health))
        summary = {status: 0 for status in (OVERALL_HEALTHY, OVERALL_DEGRADED, OVERALL_FAILED)}
        for health in results:
            summary[health.overall_status] += 1
        logger.info("Global webhook health check done: %s", summary)
        return results

    async def setup_webhooks(self, db: Session, integration_id: str) -> IntegrationHealth:
        """Initial registration after connect. Marks the integration CONNECTED unless registration failed."""
        health = await self.ensure_webhook_health(db, integration_id)
        if health.overall_status != OVERALL_FAILED:
            integration = self._get_integration(db, integration_id)
            integration.status = IntegrationStatus.CONNECTED
            db.commit()
            logger.info("Integration %s connected with webhooks %s", integration_id, health.overall_status)
        return health

    async def remove_webhooks(self, db: Session, integration_id: str) -> dict:
        """Best-effort delete of every subscription at the callback URL. Failures are collected, not raised."""
        integration = self._get_integration(db, integration_id)
        errors = []
        removed = 0
        try:
            credentials = get_integration_credentials(integration)
            existing = await self.client.list_webhooks(credentials.shop, credentials.access_token)
        except (InvalidCredentialsError, ShopifyAPIError) as e:
            logger.warning("Skipping webhook removal for %s: %s", integration.shop_domain, e)
            return {"removed": 0, "errors": [str(e)]}

        for webhook in existing:
            if not _same_address(webhook.get("address"), self.callback_url):
                continue
            try:
                await self.client.delete_webhook(credentials.shop, credentials.access_token, webhook["id"])
                removed += 1
            except ShopifyAPIError as e:
                logger.warning("Failed to delete webhook %s on %s: %s", webhook["id"], credentials.shop, e)
                errors.append(f"{webhook.get('topic')}: {e}")
        return {"removed": removed, "errors": errors}

    async def reset_webhooks(self, db: Session, integration_id: str) -> dict:
        """
        Operator cleanup for MISCONFIGURED topics: delete required-topic subscriptions that point
        anywhere but the callback URL, then converge again.
        """
        integration = self._get_integration(db, integration_id)
        credentials = get_integration_credentials(integration)
        existing = await self.client.list_webhooks(credentials.shop, credentials.access_token)
        deleted = []
        errors = []
        for webhook in existing:
            if webhook.get("topic") not in REQUIRED_TOPICS or _same_address(webhook.get("address"), self.callback_url):
                continue
            try:
                await self.client.delete_webhook(credentials.shop, credentials.access_token, webhook["id"])
                deleted.append({"id": webhook["id"], "topic": webhook.get("topic"), "address": webhook.get("address")})
            except ShopifyAPIError as e:
                errors.append(f"{webhook.get('topic')}: {e}")
        logger.info("Reset webhooks for %s: deleted %s stale subscription(s)", credentials.shop, len(deleted))
        health = await self.ensure_webhook_health(db, integration_id)
        return {"deleted": deleted, "errors": errors, "health": health.to_dict()}
