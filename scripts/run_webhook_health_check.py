#!/usr/bin/env python3
"""
Webhook health check - one pass over every CONNECTED Shopify integration, then exit.
Run from cron every WEBHOOK_HEALTH_CHECK_INTERVAL_HOURS; the API never schedules this itself.
"""
import asyncio
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings
from app.database import SessionLocal
from app.services.webhook_manager import OVERALL_FAILED, WebhookManager

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL), format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def run_health_check(integration_id=None) -> int:
    """Returns the number of integrations whose check failed."""
    db = SessionLocal()
    manager = WebhookManager()
    try:
        if integration_id:
            results = [await manager.ensure_webhook_health(db, integration_id)]
        else:
            results = await manager.run_global_health_check(db)
        failed = 0
        for health in results:
            logger.info(
                "  %s (%s): %s consecutive_failures=%s created=%s%s",
                health.shop, health.integration_id, health.overall_status, health.consecutive_failures,
                health.created_topics, f" error={health.error}" if health.error else "",
            )
            if health.overall_status == OVERALL_FAILED:
                failed += 1
        logger.info("Webhook health check completed: %s checked, %s failed", len(results), failed)
        return failed
    finally:
        db.close()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] in ("-h", "--help"):
        print("Usage: python scripts/run_webhook_health_check.py [integration_id]")
        sys.exit(0)
    failed = asyncio.run(run_health_check(sys.argv[1] if len(sys.argv) > 1 else None))
    sys.exit(1 if failed else 0)
