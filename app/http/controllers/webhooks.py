"""
Webhook routes. The Shopify receiver is public (no JWT) and authenticated by HMAC only;
health, setup, reset and the event log require an operator token.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.auth import Operator, get_current_operator
from app.config import settings
from app.database import get_db
from app.exceptions import IntegrationNotFoundError, InvalidCredentialsError, ShopifyAPIError, WebhookValidationError
from app.http.requests.schemas import WebhookHealthRequest
from app.models import Integration, WebhookEvent
from app.services.shopify_service import normalize_shop_domain
from app.services.shopify_webhook_handler import process_shopify_webhook
from app.services.webhook_manager import OVERALL_DEGRADED, OVERALL_FAILED, OVERALL_HEALTHY, WebhookManager
from app.services.webhook_signature import verify_webhook_hmac

logger = logging.getLogger(__name__)
router = APIRouter()


def get_webhook_manager() -> WebhookManager:
    """Dependency so tests can swap in a fake registry client."""
    return WebhookManager()


def _topic_from_path(topic_path: Optional[str]) -> str:
    """Legacy per-topic callback URLs: orders-create -> orders/create."""
    if not topic_path:
        return ""
    topic_path = topic_path.strip("/")
    if "/" in topic_path:
        return topic_path
    return topic_path.replace("-", "/", 1)


def _payload_summary(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    oid = payload.get("id")
    summary = f"id={oid}" if oid is not None else None
    if payload.get("order_id") is not None:
        summary = f"{summary + ' ' if summary else ''}order_id={payload['order_id']}"
    return summary


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _record_event_error(db: Session, event_id: str, error: str) -> None:
    ev = db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
    if ev:
        ev.error = error[:500]
        db.commit()


@router.post("/shopify")
@router.post("/shopify/{topic_path:path}")
async def shopify_webhook_receive(
    request: Request,
    topic_path: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Public endpoint for Shopify webhooks. No JWT.
    Raw body first, then X-Shopify-Hmac-Sha256 against the app secret, then parse and process.
    400 missing headers/bad payload, 401 bad signature, 500 processing failure so Shopify redelivers.
    """
    raw_body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256")
    raw_shop = (request.headers.get("X-Shopify-Shop-Domain") or "").strip()
    topic = (request.headers.get("X-Shopify-Topic") or "").strip() or _topic_from_path(topic_path)
    webhook_id = request.headers.get("X-Shopify-Webhook-Id")

    if not raw_shop or not hmac_header:
        logger.warning("Shopify webhook: missing %s", "X-Shopify-Shop-Domain" if not raw_shop else "X-Shopify-Hmac-Sha256")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required Shopify headers")
    try:
        shop_domain = normalize_shop_domain(raw_shop)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid shop domain")

    secret = settings.webhook_secret
    if not secret:
        logger.error("Shopify webhook: no webhook secret configured (SHOPIFY_WEBHOOK_SECRET / SHOPIFY_API_SECRET)")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook secret not configured")
    if not verify_webhook_hmac(raw_body, hmac_header, secret):
        logger.warning("Shopify webhook: shop=%s topic=%s status=401 (HMAC verification failed)", shop_domain, topic)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    if not topic:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-Shopify-Topic")
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Shopify webhook: shop=%s topic=%s status=400 (invalid JSON: %s)", shop_domain, topic, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    event = WebhookEvent(
        id=str(uuid.uuid4()),
        source="shopify",
        shop_domain=shop_domain,
        topic=topic,
        webhook_id=webhook_id,
        payload_summary=_payload_summary(payload),
    )
    db.add(event)
    db.commit()

    try:
        result = process_shopify_webhook(db, shop_domain, topic, payload)
        event.processed_at = _utcnow()
        db.commit()
    except WebhookValidationError as e:
        db.rollback()
        _record_event_error(db, event.id, e.message)
        logger.warning("Shopify webhook: shop=%s topic=%s status=400 (%s)", shop_domain, topic, e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Exception as e:
        db.rollback()
        logger.exception("Shopify webhook: shop=%s topic=%s status=500", shop_domain, topic)
        _record_event_error(db, event.id, str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")

    logger.info("Shopify webhook: shop=%s topic=%s status=200 action=%s", shop_domain, topic, result.get("action"))
    return result


@router.get("/health")
async def global_webhook_health(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Fleet-wide check over every CONNECTED Shopify integration (called by the external scheduler)."""
    results = await manager.run_global_health_check(db)
    summary = {OVERALL_HEALTHY: 0, OVERALL_DEGRADED: 0, OVERALL_FAILED: 0}
    for health in results:
        summary[health.overall_status] += 1
    return {
        "success": True,
        "checked": len(results),
        "summary": summary,
        "integrations": [h.to_dict() for h in results],
    }


@router.post("/health")
async def integration_webhook_health(
    body: WebhookHealthRequest,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Converge and report one integration."""
    try:
        health = await manager.ensure_webhook_health(db, body.integrationId)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"success": health.overall_status != OVERALL_FAILED, **health.to_dict()}


@router.post("/setup/{integration_id}")
async def setup_integration_webhooks(
    integration_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Register the required topics after connect; marks the integration CONNECTED on success."""
    try:
        health = await manager.setup_webhooks(db, integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"success": health.overall_status != OVERALL_FAILED, **health.to_dict()}


@router.post("/reset/{integration_id}")
async def reset_integration_webhooks(
    integration_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Manual cleanup for misconfigured topics: delete stale-address subscriptions, then re-converge."""
    try:
        result = await manager.reset_webhooks(db, integration_id)
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ShopifyAPIError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return {"success": not result["errors"], **result}


@router.get("/events")
async def get_webhook_events(
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    limit: int = Query(50, le=100),
    shop: Optional[str] = Query(None),
    topic: Optional[str] = Query(None),
):
    """Recent persisted webhook deliveries. Operators bound to an organization see only its shops."""
    query = db.query(WebhookEvent).order_by(WebhookEvent.created_at.desc())
    if operator.org_id:
        shops = [
            row.shop_domain
            for row in db.query(Integration.shop_domain).filter(Integration.organization_id == operator.org_id)
        ]
        query = query.filter(WebhookEvent.shop_domain.in_(shops))
    if shop:
        query = query.filter(WebhookEvent.shop_domain == shop.strip().lower())
    if topic:
        query = query.filter(WebhookEvent.topic == topic)
    rows = query.limit(limit).all()
    return [
        {
            "id": r.id,
            "source": r.source,
            "shopDomain": r.shop_domain,
            "topic": r.topic,
            "webhookId": r.webhook_id,
            "payloadSummary": r.payload_summary,
            "processedAt": r.processed_at.isoformat() if r.processed_at else None,
            "error": r.error,
            "createdAt": r.created_at.isoformat() if r.created_at else None,
        }
        for r in rows
    ]
