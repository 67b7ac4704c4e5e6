"""
Shopify integration lifecycle: connect (validate token, store encrypted, register webhooks),
disconnect (best-effort webhook removal, clear credentials) and shop lookup for inbound webhooks.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from sqlalchemy import case
from sqlalchemy.orm import Session

from app.exceptions import IntegrationNotFoundError, InvalidCredentialsError, ShopifyAuthError
from app.models import (
    Integration,
    IntegrationStatus,
    IntegrationType,
    Organization,
    SyncStatus,
    Transaction,
)
from app.services.credentials import ShopInfo, encrypt_token
from app.services.shopify_service import get_shop_info, normalize_shop_domain
from app.services.webhook_manager import WebhookManager

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def find_integration_by_shop(db: Session, shop_domain: str) -> Optional[Integration]:
    """
    Shopify integration for a shop domain. Connected integrations win over disconnected ones,
    then the most recently updated.
    """
    try:
        shop = normalize_shop_domain(shop_domain)
    except ValueError:
        return None
    return (
        db.query(Integration)
        .filter(Integration.type == IntegrationType.SHOPIFY, Integration.shop_domain == shop)
        .order_by(
            case((Integration.status == IntegrationStatus.CONNECTED, 0), else_=1),
            Integration.updated_at.desc(),
        )
        .first()
    )


def get_integration(db: Session, integration_id: str) -> Integration:
    integration = db.query(Integration).filter(Integration.id == integration_id).first()
    if not integration:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found")
    return integration


async def connect_shopify_integration(
    db: Session,
    organization_id: str,
    shop_domain: str,
    access_token: str,
    name: Optional[str] = None,
    scopes: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Integration:
    """
    Validate the token against /shop.json, then create or refresh the integration for
    (organization, SHOPIFY, shop). Webhook registration is a separate step (WebhookManager.setup_webhooks).
    """
    if not db.query(Organization).filter(Organization.id == organization_id).first():
        raise IntegrationNotFoundError(f"Organization {organization_id} not found")
    if not access_token:
        raise InvalidCredentialsError("Access token is required")
    try:
        shop = normalize_shop_domain(shop_domain)
    except ValueError as e:
        raise InvalidCredentialsError(str(e)) from e

    try:
        shop_payload = await get_shop_info(shop, access_token, transport=transport)
    except ShopifyAuthError as e:
        raise InvalidCredentialsError(f"Shopify rejected the access token for {shop}") from e
    shop_info = ShopInfo.from_shopify(shop_payload)

    integration = (
        db.query(Integration)
        .filter(
            Integration.organization_id == organization_id,
            Integration.type == IntegrationType.SHOPIFY,
            Integration.shop_domain == shop,
        )
        .first()
    )
    if integration is None:
        integration = Integration(
            organization_id=organization_id,
            type=IntegrationType.SHOPIFY,
            shop_domain=shop,
        )
        db.add(integration)
        logger.info("Creating Shopify integration for %s (org %s)", shop, organization_id)
    else:
        logger.info("Refreshing Shopify integration %s for %s", integration.id, shop)

    integration.name = name or shop_payload.get("name") or shop
    integration.access_token = encrypt_token(access_token)
    integration.scopes = scopes
    integration.shop_info = shop_info.model_dump()
    integration.status = IntegrationStatus.PENDING_USER_LINK
    integration.sync_status = SyncStatus.IDLE
    integration.sync_error = None
    integration.webhook_consecutive_failures = 0
    integration.extra = {**(integration.extra or {}), "connectedAt": _utcnow().isoformat()}
    db.commit()
    db.refresh(integration)
    return integration


async def disconnect_integration(
    db: Session,
    integration_id: str,
    purge_transactions: bool = False,
    manager: Optional[WebhookManager] = None,
) -> dict:
    """
    Remove platform webhooks (best effort), clear credentials and mark DISCONNECTED.
    Transactions are kept unless purge_transactions is set.
    """
    integration = get_integration(db, integration_id)
    manager = manager or WebhookManager()
    removal = await manager.remove_webhooks(db, integration_id)

    purged = 0
    if purge_transactions:
        purged = (
            db.query(Transaction)
            .filter(Transaction.integration_id == integration.id)
            .delete(synchronize_session=False)
        )

    integration.status = IntegrationStatus.DISCONNECTED
    integration.access_token = None
    integration.sync_status = SyncStatus.IDLE
    integration.sync_error = None
    integration.webhook_health = None
    integration.webhook_consecutive_failures = 0
    integration.extra = {**(integration.extra or {}), "disconnectedAt": _utcnow().isoformat()}
    db.commit()
    logger.info(
        "Disconnected integration %s (%s): %s webhook(s) removed, %s transaction(s) purged",
        integration.id, integration.shop_domain, removal["removed"], purged,
    )
    return {
        "integrationId": integration.id,
        "webhooksRemoved": removal["removed"],
        "webhookErrors": removal["errors"],
        "transactionsPurged": purged,
    }
