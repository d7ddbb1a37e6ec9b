"""Sync orchestration - coordinates token handling, fetching and storage."""

import asyncio
import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Optional

from app.models.database import utc_now
from app.services import normalizer
from app.services.errors import (
    IntegrationError,
    InvalidRequest,
    PersistenceError,
    UpstreamTimeout,
)
from app.services.metrics import SyncMetrics
from app.services.normalizer import (
    RESOURCE_BODY_MEASUREMENT,
    RESOURCE_CYCLE,
    RESOURCE_PROFILE,
    RESOURCE_RECOVERY,
    RESOURCE_SLEEP,
    RESOURCE_WORKOUT,
    extract_source_id,
)
from app.services.payload import id_to_string
from app.services.store import IntegrationStore
from app.services.tokens import TokenManager, expiry_from
from app.services.vault import CredentialVault
from app.services.whoop import (
    BODY_MEASUREMENT_PATH,
    CYCLE_PATH,
    PROFILE_PATH,
    RECOVERY_PATH,
    SLEEP_PATH,
    WORKOUT_PATH,
    WhoopClient,
)

logger = logging.getLogger(__name__)

PROVIDER = "whoop"
MAX_ERROR_LENGTH = 500

SINGLE_OBJECTS = [
    (RESOURCE_PROFILE, PROFILE_PATH, "profile"),
    (RESOURCE_BODY_MEASUREMENT, BODY_MEASUREMENT_PATH, "body measurement"),
]

COLLECTIONS = [
    (RESOURCE_CYCLE, CYCLE_PATH),
    (RESOURCE_RECOVERY, RECOVERY_PATH),
    (RESOURCE_SLEEP, SLEEP_PATH),
    (RESOURCE_WORKOUT, WORKOUT_PATH),
]


@contextmanager
def _step(name: str):
    """Label any IntegrationError raised inside with the step name."""
    try:
        yield
    except IntegrationError as e:
        e.add_step(name)
        raise


def truncate_error(error: BaseException) -> str:
    return str(error)[:MAX_ERROR_LENGTH]


class SyncService:
    """Entry points for connecting, syncing and disconnecting a WHOOP integration."""

    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        whoop: WhoopClient,
        metrics: Optional[SyncMetrics] = None,
        clock: Callable[[], datetime] = utc_now,
        redirect_uri: Optional[str] = None,
        sync_timeout: Optional[float] = None,
    ):
        self.store = store
        self.vault = vault
        self.whoop = whoop
        self.metrics = metrics
        self.clock = clock
        self.redirect_uri = redirect_uri
        self.sync_timeout = sync_timeout
        self.tokens = TokenManager(store, vault, whoop, clock=clock, metrics=metrics)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def exchange_credentials(
        self,
        user_id: str,
        auth_code: str,
        redirect_uri: str,
        correlation_id: Optional[str] = None,
    ) -> int:
        """Exchange an OAuth code, store encrypted tokens and mark the integration connected.

        Returns:
            The integration id.
        """
        try:
            if not self.redirect_uri or redirect_uri != self.redirect_uri:
                raise InvalidRequest("invalid redirect_uri")

            with _step("token exchange"):
                grant = await self.whoop.exchange_code(auth_code, redirect_uri)

            with _step("encrypt tokens"):
                access_encrypted = self.vault.encrypt(grant.access_token)
                refresh_encrypted = self.vault.encrypt(grant.refresh_token) if grant.refresh_token else None

            integration_id = await self.store.upsert_integration(user_id, PROVIDER)
            logger.info(f"request_id={correlation_id} integration created user={user_id} integration={integration_id}")

            await self.store.upsert_token(
                integration_id,
                access_encrypted,
                refresh_encrypted,
                expiry_from(grant, self.clock()),
                grant.scopes or [],
            )
            await self.store.mark_connected(integration_id)
        except IntegrationError as e:
            logger.warning(f"request_id={correlation_id} whoop exchange failed user={user_id} err={e}")
            self._record("exchange", e)
            raise

        logger.info(f"request_id={correlation_id} integration tokens stored user={user_id} integration={integration_id}")
        self._record("exchange", None)
        return integration_id

    async def disconnect(self, user_id: str, correlation_id: Optional[str] = None) -> None:
        """Delete stored tokens and mark the integration disconnected.

        Raises:
            NotFound: If the user has no WHOOP integration.
        """
        try:
            integration = await self.store.get_integration(user_id, PROVIDER)
            await self.store.delete_tokens(integration.id)
            await self.store.mark_disconnected(integration.id)
        except IntegrationError as e:
            logger.warning(f"request_id={correlation_id} whoop disconnect failed user={user_id} err={e}")
            self._record("disconnect", e)
            raise

        logger.info(f"request_id={correlation_id} integration disconnected user={user_id} integration={integration.id}")
        self._record("disconnect", None)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def run_sync(
        self,
        user_id: str,
        integration_id: int,
        correlation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Run one full sync for an integration.

        Records the outcome (last error, sync log, metrics) before returning
        or raising. Rows stored before a failure are kept.

        Returns:
            Summary dict with per-resource counts and duration.
        """
        started_at = self.clock()
        started = time.monotonic()
        counts: dict[str, int] = {}

        try:
            if self.sync_timeout:
                await asyncio.wait_for(
                    self._sync(integration_id, counts, correlation_id), timeout=self.sync_timeout
                )
            else:
                await self._sync(integration_id, counts, correlation_id)
        except asyncio.TimeoutError as e:
            error = UpstreamTimeout(f"sync exceeded deadline of {self.sync_timeout}s")
            await self._fail(user_id, integration_id, correlation_id, started_at, started, counts, error)
            raise error from e
        except Exception as e:
            await self._fail(user_id, integration_id, correlation_id, started_at, started, counts, e)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            await self.store.upsert_last_error(integration_id, None)
        except PersistenceError as e:
            logger.warning(f"request_id={correlation_id} could not clear last error integration={integration_id}: {e}")
        await self._log_run(integration_id, correlation_id, started_at, duration_ms, "success", counts)

        self._record_sync(duration_ms, None)
        logger.info(
            f"request_id={correlation_id} whoop sync completed user={user_id} "
            f"integration={integration_id} duration_ms={duration_ms} counts={counts}"
        )
        return {"integration_id": integration_id, "counts": counts, "duration_ms": duration_ms}

    async def _sync(self, integration_id: int, counts: dict[str, int], correlation_id: Optional[str]) -> None:
        with _step("check token"):
            access_token = await self.tokens.ensure_access_token(integration_id, correlation_id)

        with _step("fetch whoop data"):
            for resource_type, path, label in SINGLE_OBJECTS:
                await self._sync_object(integration_id, access_token, resource_type, path, label, counts)

            for resource_type, path in COLLECTIONS:
                with _step(f"{resource_type} fetch"):
                    await self._sync_collection(integration_id, access_token, resource_type, path, counts)

        with _step("update last sync"):
            await self.store.update_last_sync(integration_id, self.clock())

    async def _sync_object(
        self,
        integration_id: int,
        access_token: str,
        resource_type: str,
        path: str,
        label: str,
        counts: dict[str, int],
    ) -> None:
        with _step(f"{label} fetch"):
            payload = await self.whoop.fetch_object(access_token, path)

        source_id = extract_source_id(payload) or resource_type
        with _step(f"{label} store"):
            await self.store.upsert_raw_event(integration_id, resource_type, source_id, payload)
        counts[resource_type] = 1

        if resource_type == RESOURCE_PROFILE:
            provider_user_id = id_to_string(payload.get("user_id"))
            if provider_user_id:
                try:
                    await self.store.upsert_provider_user_id(integration_id, provider_user_id)
                except PersistenceError as e:
                    logger.warning(f"Could not store provider user id for integration {integration_id}: {e}")

    async def _sync_collection(
        self,
        integration_id: int,
        access_token: str,
        resource_type: str,
        path: str,
        counts: dict[str, int],
    ) -> None:
        upsert = {
            RESOURCE_SLEEP: self.store.upsert_sleep,
            RESOURCE_RECOVERY: self.store.upsert_recovery,
            RESOURCE_WORKOUT: self.store.upsert_workout,
            RESOURCE_CYCLE: self.store.upsert_cycle,
        }[resource_type]

        raw_count = 0
        normalized_count = 0
        async for records in self.whoop.iter_collection(access_token, path):
            for record in records:
                source_id = extract_source_id(record)
                if not source_id:
                    logger.debug(f"Skipping {resource_type} record without an id")
                    continue

                await self.store.upsert_raw_event(integration_id, resource_type, source_id, record)
                raw_count += 1

                row = normalizer.normalize_record(resource_type, integration_id, record)
                if row is not None:
                    await upsert(row)
                    normalized_count += 1

        counts[resource_type] = raw_count
        counts[f"{resource_type}_normalized"] = normalized_count

        if resource_type == RESOURCE_SLEEP:
            with _step("select primary sleep"):
                await self.store.select_primary_sleep(integration_id)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _fail(
        self,
        user_id: str,
        integration_id: int,
        correlation_id: Optional[str],
        started_at: datetime,
        started: float,
        counts: dict[str, int],
        error: Exception,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        message = truncate_error(error)
        logger.error(
            f"request_id={correlation_id} whoop sync failed user={user_id} "
            f"integration={integration_id} duration_ms={duration_ms} err={message}"
        )
        self._record_sync(duration_ms, error)

        try:
            await self.store.rollback()
            await self.store.upsert_last_error(integration_id, message)
        except PersistenceError as e:
            logger.error(f"request_id={correlation_id} could not record last error integration={integration_id}: {e}")
        await self._log_run(integration_id, correlation_id, started_at, duration_ms, "failed", counts, message)

    async def _log_run(
        self,
        integration_id: int,
        correlation_id: Optional[str],
        started_at: datetime,
        duration_ms: int,
        status: str,
        counts: dict[str, int],
        error_message: Optional[str] = None,
    ) -> None:
        try:
            await self.store.record_sync_run(
                integration_id,
                correlation_id,
                started_at,
                duration_ms,
                status,
                details={"counts": dict(counts)},
                error_message=error_message,
            )
        except PersistenceError as e:
            logger.warning(f"request_id={correlation_id} could not write sync log integration={integration_id}: {e}")

    def _record(self, operation: str, error: Optional[Exception]) -> None:
        if self.metrics is None:
            return
        if operation == "exchange":
            self.metrics.record_exchange(error)
        elif operation == "disconnect":
            self.metrics.record_disconnect(error)

    def _record_sync(self, duration_ms: int, error: Optional[Exception]) -> None:
        if self.metrics is not None:
            self.metrics.record_sync(duration_ms, error)
