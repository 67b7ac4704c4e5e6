"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    integrations,
    webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(webhooks.router, prefix="/api/webhooks", tags=["webhooks"])
    app.include_router(integrations.router, prefix="/api/integrations", tags=["integrations"])
    if not settings.WEBHOOK_BASE_URL:
        logger.warning("WEBHOOK_BASE_URL is not set; webhook registration and health checks will fail")
