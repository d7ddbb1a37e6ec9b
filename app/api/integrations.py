"""WHOOP integration API endpoints."""

import logging
import uuid

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.services.errors import (
    DecryptionFailed,
    IntegrationError,
    InvalidRequest,
    MissingToken,
    NotFound,
    PersistenceError,
)
from app.services.metrics import SyncMetrics
from app.services.store import STATUS_CONNECTED, IntegrationStore
from app.services.sync import PROVIDER, SyncService
from app.services.vault import CredentialVault
from app.services.whoop import WhoopClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/integrations/whoop", tags=["whoop"])


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class ExchangeRequest(_CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    code: str = Field(min_length=1)
    redirect_uri: str = Field(alias="redirectUri", min_length=1)


class UserRequest(_CamelModel):
    user_id: str = Field(alias="userId", min_length=1)


class StatusResponse(BaseModel):
    status: str


class SyncResultResponse(BaseModel):
    status: str
    integration_id: int
    counts: dict[str, int]
    duration_ms: int


def get_correlation_id(x_request_id: str | None = Header(default=None)) -> str:
    """Correlation id from X-Request-ID, generated when absent."""
    value = (x_request_id or "").strip()
    return value or uuid.uuid4().hex


def get_metrics(request: Request) -> SyncMetrics:
    return request.app.state.metrics


def get_sync_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SyncService:
    """Build a SyncService from the process-wide vault, HTTP client and metrics."""
    vault: CredentialVault = request.app.state.vault
    http_client: httpx.AsyncClient = request.app.state.http_client
    metrics: SyncMetrics = request.app.state.metrics
    return SyncService(
        IntegrationStore(db),
        vault,
        WhoopClient.from_settings(http_client, settings, metrics=metrics),
        metrics=metrics,
        redirect_uri=settings.whoop_redirect_uri,
        sync_timeout=settings.sync_timeout,
    )


def _server_error(e: IntegrationError) -> HTTPException:
    logger.error(f"Integration request failed ({e.kind}): {e}")
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=500, detail="db error")
    if isinstance(e, DecryptionFailed):
        return HTTPException(status_code=500, detail="stored credentials are unreadable")
    return HTTPException(status_code=500, detail="internal error")


@router.post("/exchange", response_model=StatusResponse)
async def exchange(
    body: ExchangeRequest,
    service: SyncService = Depends(get_sync_service),
    correlation_id: str = Depends(get_correlation_id),
):
    """Exchange an OAuth authorization code and connect the integration."""
    try:
        await service.exchange_credentials(body.user_id, body.code, body.redirect_uri, correlation_id)
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=e.message)
    except (PersistenceError, DecryptionFailed) as e:
        raise _server_error(e)
    except IntegrationError as e:
        if e.steps and e.steps[0] == "encrypt tokens":
            raise HTTPException(status_code=500, detail="encrypt failed")
        raise HTTPException(status_code=502, detail="token exchange failed")
    return StatusResponse(status="ok")


@router.post("/sync", response_model=SyncResultResponse)
async def sync(
    body: UserRequest,
    service: SyncService = Depends(get_sync_service),
    correlation_id: str = Depends(get_correlation_id),
):
    """Run a sync for the user's WHOOP integration."""
    try:
        integration = await service.store.get_integration(body.user_id, PROVIDER)
    except NotFound:
        raise HTTPException(status_code=404, detail="integration not found")
    except PersistenceError as e:
        raise _server_error(e)

    if integration.status != STATUS_CONNECTED:
        raise HTTPException(status_code=409, detail="integration not connected")

    try:
        result = await service.run_sync(body.user_id, integration.id, correlation_id)
    except MissingToken:
        raise HTTPException(status_code=400, detail="missing token")
    except (PersistenceError, DecryptionFailed) as e:
        raise _server_error(e)
    except IntegrationError:
        raise HTTPException(status_code=502, detail="sync failed")

    return SyncResultResponse(status="ok", **result)


@router.post("/disconnect", response_model=StatusResponse)
async def disconnect(
    body: UserRequest,
    service: SyncService = Depends(get_sync_service),
    correlation_id: str = Depends(get_correlation_id),
):
    """Delete stored tokens and mark the integration disconnected."""
    try:
        await service.disconnect(body.user_id, correlation_id)
    except NotFound:
        raise HTTPException(status_code=404, detail="integration not found")
    except IntegrationError as e:
        raise _server_error(e)
    return StatusResponse(status="ok")


@router.get("/metrics")
async def metrics_snapshot(metrics: SyncMetrics = Depends(get_metrics)):
    """Snapshot of in-memory integration counters."""
    return metrics.snapshot()
