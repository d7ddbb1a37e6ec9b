import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from app.api import integrations
from app.core.config import get_settings
from app.core.database import init_db
from app.services.metrics import SyncMetrics
from app.services.scheduler import start_scheduler, stop_scheduler
from app.services.vault import CredentialVault

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Startup; a missing or malformed key aborts here
    vault = CredentialVault.from_settings(settings)
    http_client = httpx.AsyncClient(timeout=settings.whoop_request_timeout)
    metrics = SyncMetrics()

    app.state.vault = vault
    app.state.http_client = http_client
    app.state.metrics = metrics

    await init_db()
    start_scheduler(vault, http_client, metrics)
    logger.info("Integration service started")
    yield
    # Shutdown
    stop_scheduler()
    await http_client.aclose()


# Create FastAPI application
app = FastAPI(
    title="Integration Sync",
    description="Connects WHOOP accounts and syncs their data into normalized tables",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(integrations.router)
