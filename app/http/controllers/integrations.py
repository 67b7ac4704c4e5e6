"""
Integration lifecycle endpoints: Shopify connect hand-off, disconnect, historical import.
Never expose access_token to the frontend.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.auth import Operator, get_current_operator
from app.database import get_db
from app.exceptions import IntegrationNotFoundError, InvalidCredentialsError, ShopifyAPIError
from app.http.controllers.webhooks import get_webhook_manager
from app.http.requests.schemas import DisconnectRequest, ImportRequest, ShopifyConnectRequest
from app.models import Integration
from app.services.historical_import import get_import_status, run_import_job, serialize_import_job, start_import_job
from app.services.integration_service import connect_shopify_integration, disconnect_integration
from app.services.webhook_manager import WebhookManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _serialize_integration(integration: Integration) -> dict:
    return {
        "id": integration.id,
        "organizationId": integration.organization_id,
        "type": integration.type.value,
        "status": integration.status.value,
        "name": integration.name,
        "shop": integration.shop_domain,
        "shopInfo": integration.shop_info,
        "syncStatus": integration.sync_status.value if integration.sync_status else None,
        "syncError": integration.sync_error,
        "lastSyncAt": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
        "webhookCheckedAt": integration.webhook_checked_at.isoformat() if integration.webhook_checked_at else None,
        "webhookConsecutiveFailures": integration.webhook_consecutive_failures or 0,
    }


def _get_scoped_integration(db: Session, integration_id: str, operator: Operator) -> Integration:
    integration = db.query(Integration).filter(Integration.id == integration_id).first()
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")
    if operator.org_id and integration.organization_id != operator.org_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return integration


@router.post("/shopify/connect")
async def connect_shopify(
    body: ShopifyConnectRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Store the OAuth result, register webhooks, and queue the historical import."""
    if operator.org_id and body.organizationId != operator.org_id:
        raise HTTPException(status_code=403, detail="Access denied")
    try:
        integration = await connect_shopify_integration(
            db,
            organization_id=body.organizationId,
            shop_domain=body.shop,
            access_token=body.accessToken,
            name=body.name,
            scopes=body.scopes,
        )
    except IntegrationNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ShopifyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)

    health = await manager.setup_webhooks(db, integration.id)
    db.refresh(integration)

    import_job = None
    if body.startImport:
        job, created = start_import_job(db, integration.id, body.daysBack)
        if created:
            background_tasks.add_task(run_import_job, job.id)
        import_job = serialize_import_job(job)

    return {
        "success": True,
        "integration": _serialize_integration(integration),
        "webhooks": health.to_dict(),
        "importJob": import_job,
    }


@router.post("/{integration_id}/disconnect")
async def disconnect(
    integration_id: str,
    body: DisconnectRequest = DisconnectRequest(),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
    manager: WebhookManager = Depends(get_webhook_manager),
):
    """Best-effort webhook removal, then DISCONNECTED with credentials cleared."""
    _get_scoped_integration(db, integration_id, operator)
    result = await disconnect_integration(
        db, integration_id, purge_transactions=body.purgeTransactions, manager=manager
    )
    return {"success": True, **result}


@router.post("/{integration_id}/import")
async def trigger_import(
    integration_id: str,
    background_tasks: BackgroundTasks,
    body: ImportRequest = ImportRequest(),
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    """Queue a historical import; poll /import-status for progress."""
    _get_scoped_integration(db, integration_id, operator)
    try:
        job, created = start_import_job(db, integration_id, body.daysBack)
    except InvalidCredentialsError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if created:
        background_tasks.add_task(run_import_job, job.id)
    return {
        "success": True,
        "message": "Historical import started" if created else "Historical import already in progress",
        **serialize_import_job(job),
    }


@router.get("/{integration_id}/import-status")
async def import_status(
    integration_id: str,
    db: Session = Depends(get_db),
    operator: Operator = Depends(get_current_operator),
):
    _get_scoped_integration(db, integration_id, operator)
    job = get_import_status(db, integration_id)
    if job is None:
        return {"integrationId": integration_id, "status": None}
    return job
