"""APScheduler setup for the daily sync of all connected integrations."""

import asyncio
import logging
import uuid
from typing import Any, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings, get_settings
from app.core.database import async_session_maker
from app.services.errors import IntegrationError
from app.services.metrics import SyncMetrics
from app.services.store import IntegrationStore
from app.services.sync import PROVIDER, SyncService
from app.services.vault import CredentialVault
from app.services.whoop import WhoopClient

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_scheduled_sync(
    vault: CredentialVault,
    http_client: httpx.AsyncClient,
    metrics: Optional[SyncMetrics] = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session_maker,
    settings: Optional[Settings] = None,
) -> dict[str, Any]:
    """Sync every connected WHOOP integration.

    Each integration runs in its own session; at most ``sync_concurrency``
    run at once. One failing integration does not stop the others.
    """
    settings = settings or get_settings()
    logger.info("Starting scheduled sync job")

    async with session_factory() as session:
        integrations = await IntegrationStore(session).list_connected_integrations(PROVIDER)

    semaphore = asyncio.Semaphore(max(1, settings.sync_concurrency))
    whoop = WhoopClient.from_settings(http_client, settings, metrics=metrics)

    async def _sync_one(integration) -> bool:
        correlation_id = f"scheduled-{uuid.uuid4().hex[:12]}"
        async with semaphore:
            async with session_factory() as session:
                service = SyncService(
                    IntegrationStore(session),
                    vault,
                    whoop,
                    metrics=metrics,
                    redirect_uri=settings.whoop_redirect_uri,
                    sync_timeout=settings.sync_timeout,
                )
                try:
                    await service.run_sync(integration.user_id, integration.id, correlation_id)
                    return True
                except IntegrationError as e:
                    logger.error(f"Scheduled sync failed for integration {integration.id}: {e}")
                    return False
                except Exception as e:
                    logger.exception(f"Unexpected error syncing integration {integration.id}: {e}")
                    return False

    results = await asyncio.gather(*(_sync_one(i) for i in integrations))
    summary = {
        "total": len(results),
        "succeeded": sum(1 for ok in results if ok),
        "failed": sum(1 for ok in results if not ok),
    }
    logger.info(f"Scheduled sync completed: {summary}")
    return summary


def start_scheduler(
    vault: CredentialVault,
    http_client: httpx.AsyncClient,
    metrics: Optional[SyncMetrics] = None,
):
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_scheduled_sync,
        CronTrigger(hour=settings.sync_hour, minute=settings.sync_minute),
        kwargs={"vault": vault, "http_client": http_client, "metrics": metrics},
        id="daily_whoop_sync",
        name="Daily WHOOP sync",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started - daily sync at {settings.sync_hour}:{settings.sync_minute:02d}")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
