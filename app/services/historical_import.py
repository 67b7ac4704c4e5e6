"""
Historical order import: pull a date window of orders from Shopify and reconcile each one
exactly like an orders/create webhook. Progress lives on ImportJob so any instance can serve polling.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.exceptions import IntegrationNotFoundError, InvalidCredentialsError, ShopifyAPIError
from app.models import ImportJob, ImportJobStatus, ImportLog, Integration, LogLevel
from app.services.credentials import get_integration_credentials
from app.services.shopify_service import count_orders, iter_order_pages
from app.services.shopify_webhook_handler import parse_order_payload, reconcile_order

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ImportJobStatus.QUEUED, ImportJobStatus.RUNNING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def start_import_job(db: Session, integration_id: str, days_back: Optional[int] = None) -> tuple[ImportJob, bool]:
    """
    Queue an import for the last `days_back` days. Returns (job, created).
    An integration with a queued or running job gets that job back instead of a second one.
    """
    integration = db.query(Integration).filter(Integration.id == integration_id).first()
    if not integration:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found")
    get_integration_credentials(integration)

    active = (
        db.query(ImportJob)
        .filter(ImportJob.integration_id == integration_id, ImportJob.status.in_(ACTIVE_STATUSES))
        .order_by(ImportJob.created_at.desc())
        .first()
    )
    if active:
        logger.info("Import already %s for integration %s (job %s)", active.status.value, integration_id, active.id)
        return active, False

    days_back = days_back or settings.HISTORICAL_IMPORT_DAYS_BACK
    now = _utcnow()
    job = ImportJob(
        integration_id=integration_id,
        status=ImportJobStatus.QUEUED,
        days_back=days_back,
        window_start=now - timedelta(days=days_back),
        window_end=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("Queued historical import %s for integration %s (%s days)", job.id, integration_id, days_back)
    return job, True


def _fail_job(db: Session, job: ImportJob, message: str) -> None:
    """Terminal FAILED state so start_import_job no longer treats the job as active."""
    db.rollback()
    job.status = ImportJobStatus.FAILED
    job.finished_at = _utcnow()
    job.error_message = message[:500]
    db.add(ImportLog(import_job_id=job.id, level=LogLevel.ERROR, message=job.error_message))
    db.commit()


async def run_historical_import(
    db: Session,
    job_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ImportJob:
    """Run a queued job to completion. One bad order is logged and skipped; a platform error fails the job."""
    job = db.query(ImportJob).filter(ImportJob.id == job_id).first()
    if not job:
        raise IntegrationNotFoundError(f"Import job {job_id} not found")
    integration = job.integration
    max_orders = settings.HISTORICAL_IMPORT_MAX_ORDERS

    job.status = ImportJobStatus.RUNNING
    job.started_at = _utcnow()
    job.records_processed = 0
    job.records_failed = 0
    db.commit()

    try:
        credentials = get_integration_credentials(integration)
        total = await count_orders(
            credentials.shop, credentials.access_token, job.window_start, job.window_end, transport=transport
        )
        job.total = min(total, max_orders)
        db.commit()
        logger.info("Import %s: %s order(s) in window for %s", job.id, job.total, credentials.shop)

        seen = 0
        async for page in iter_order_pages(
            credentials.shop,
            credentials.access_token,
            job.window_start,
            job.window_end,
            page_limit=settings.HISTORICAL_IMPORT_BATCH_SIZE,
            transport=transport,
        ):
            for raw_order in page:
                if seen >= max_orders:
                    break
                seen += 1
                external_id = str(raw_order.get("id")) if isinstance(raw_order, dict) else None
                try:
                    with db.begin_nested():
                        reconcile_order(db, integration, parse_order_payload(raw_order))
                    job.records_processed += 1
                except Exception as e:
                    job.records_failed += 1
                    db.add(ImportLog(
                        import_job_id=job.id,
                        level=LogLevel.ERROR,
                        external_id=external_id,
                        message=str(e)[:500],
                    ))
                    logger.warning("Import %s: order %s failed: %s", job.id, external_id, e)
                db.commit()
            if seen >= max_orders:
                logger.info("Import %s: reached HISTORICAL_IMPORT_MAX_ORDERS=%s", job.id, max_orders)
                break

        job.status = ImportJobStatus.SUCCESS
        job.finished_at = _utcnow()
        integration.last_sync_at = job.finished_at
        db.add(ImportLog(
            import_job_id=job.id,
            level=LogLevel.INFO,
            message=f"Imported {job.records_processed} order(s), {job.records_failed} failed",
        ))
        db.commit()
        logger.info(
            "Import %s finished: processed=%s failed=%s",
            job.id, job.records_processed, job.records_failed,
        )
    except (InvalidCredentialsError, ShopifyAPIError) as e:
        _fail_job(db, job, str(e))
        logger.error("Import %s failed: %s", job.id, e)
    except Exception as e:
        logger.exception("Import %s aborted by unexpected error", job.id)
        _fail_job(db, job, f"Unexpected error: {e}")
    return job


async def run_import_job(job_id: str, session_factory=SessionLocal) -> None:
    """Background-task entry point: the request's session is closed by the time this runs."""
    db = session_factory()
    try:
        await run_historical_import(db, job_id)
    finally:
        db.close()


def serialize_import_job(job: ImportJob) -> dict:
    total = job.total or 0
    done = (job.records_processed or 0) + (job.records_failed or 0)
    return {
        "jobId": job.id,
        "integrationId": job.integration_id,
        "status": job.status.value,
        "processed": job.records_processed or 0,
        "failed": job.records_failed or 0,
        "total": job.total,
        "progress": round(done * 100 / total) if total else (100 if job.status == ImportJobStatus.SUCCESS else 0),
        "windowStart": job.window_start.isoformat() if job.window_start else None,
        "windowEnd": job.window_end.isoformat() if job.window_end else None,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
        "error": job.error_message,
    }


def get_import_status(db: Session, integration_id: str, job_id: Optional[str] = None) -> Optional[dict]:
    """Latest job for the integration (or a specific one). None if nothing was ever imported."""
    if not db.query(Integration.id).filter(Integration.id == integration_id).first():
        raise IntegrationNotFoundError(f"Integration {integration_id} not found")
    query = db.query(ImportJob).filter(ImportJob.integration_id == integration_id)
    if job_id:
        query = query.filter(ImportJob.id == job_id)
    job = query.order_by(ImportJob.created_at.desc()).first()
    return serialize_import_job(job) if job else None
