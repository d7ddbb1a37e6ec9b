"""Token lifecycle: load, decrypt, refresh before expiry, re-store."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from app.models.database import utc_now
from app.services.errors import IntegrationError, MissingToken, NotFound
from app.services.metrics import SyncMetrics
from app.services.store import IntegrationStore
from app.services.vault import CredentialVault
from app.services.whoop import TokenGrant, WhoopClient

logger = logging.getLogger(__name__)

REFRESH_MARGIN = timedelta(minutes=1)


def expiry_from(grant: TokenGrant, now: datetime) -> datetime:
    return now + timedelta(seconds=grant.expires_in)


class TokenManager:
    """Hands out a usable WHOOP access token for an integration.

    States:
        no token row            -> MissingToken, nothing fetched
        expires beyond margin   -> stored access token
        expires within margin   -> refresh, persist, new access token
                                   (MissingToken if there is no refresh token)
    """

    def __init__(
        self,
        store: IntegrationStore,
        vault: CredentialVault,
        whoop: WhoopClient,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.store = store
        self.vault = vault
        self.whoop = whoop
        self.clock = clock
        self.metrics = metrics

    async def ensure_access_token(self, integration_id: int, correlation_id: Optional[str] = None) -> str:
        if not await self.store.has_token(integration_id):
            raise MissingToken()

        try:
            record = await self.store.get_token(integration_id)
        except NotFound:
            raise MissingToken()

        access_token = self.vault.decrypt(record.access_token_encrypted)
        refresh_token = None
        if record.refresh_token_encrypted:
            refresh_token = self.vault.decrypt(record.refresh_token_encrypted)

        now = self.clock()
        if record.expires_at is None or record.expires_at > now + REFRESH_MARGIN:
            return access_token

        if not refresh_token:
            logger.info(
                f"request_id={correlation_id} integration={integration_id} "
                f"token expired and no refresh token is stored"
            )
            raise MissingToken("access token expired and no refresh token is stored")

        logger.info(f"request_id={correlation_id} integration={integration_id} refreshing access token")
        try:
            grant = await self.whoop.refresh(refresh_token)
        except IntegrationError as e:
            self._record_refresh(e)
            raise
        self._record_refresh(None)

        # Must be persisted before the caller fetches any data
        await self.store.upsert_token(
            integration_id,
            self.vault.encrypt(grant.access_token),
            self.vault.encrypt(grant.refresh_token) if grant.refresh_token else record.refresh_token_encrypted,
            expiry_from(grant, self.clock()),
            grant.scopes if grant.scopes is not None else record.scopes,
        )
        return grant.access_token

    def _record_refresh(self, error: Optional[Exception]) -> None:
        if self.metrics is not None:
            self.metrics.record_refresh(error)
