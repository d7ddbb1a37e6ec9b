"""WHOOP API client: OAuth token calls and data retrieval.

API base: https://api.prod.whoop.com/developer

Endpoints used:
    /v2/user/profile/basic     - Profile (single object)
    /v2/user/measurement/body  - Body measurements (single object)
    /v2/cycle                  - Physiological cycles (paginated)
    /v2/recovery               - Recovery scores (paginated)
    /v2/activity/sleep         - Sleep sessions (paginated)
    /v2/activity/workout       - Workouts (paginated)

Every failure is classified into the errors in ``app.services.errors``; there
are no retries here.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from app.core.config import Settings
from app.services.errors import (
    IntegrationError,
    ParseError,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnauthorized,
)
from app.services.metrics import SyncMetrics

logger = logging.getLogger(__name__)

PROFILE_PATH = "/v2/user/profile/basic"
BODY_MEASUREMENT_PATH = "/v2/user/measurement/body"
CYCLE_PATH = "/v2/cycle"
RECOVERY_PATH = "/v2/recovery"
SLEEP_PATH = "/v2/activity/sleep"
WORKOUT_PATH = "/v2/activity/workout"

PAGE_LIMIT = 25
MAX_PAGES = 5
DEFAULT_EXPIRES_IN = 3600


@dataclass
class TokenGrant:
    """Tokens returned by the WHOOP token endpoint."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = DEFAULT_EXPIRES_IN
    scopes: Optional[list[str]] = None

    @classmethod
    def from_response(cls, data: Any) -> "TokenGrant":
        if not isinstance(data, dict):
            raise ParseError("token response is not a JSON object")
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ParseError("token response has no access_token")

        expires_in = data.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            expires_in = DEFAULT_EXPIRES_IN

        refresh_token = data.get("refresh_token")
        scope = data.get("scope")
        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_in=int(expires_in),
            scopes=scope.split() if isinstance(scope, str) else None,
        )


class WhoopClient:
    """Async client for the WHOOP developer API.

    The ``httpx.AsyncClient`` is injected so callers own its lifecycle and
    tests can substitute an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        client_secret: str,
        token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token",
        api_base: str = "https://api.prod.whoop.com/developer",
        token_timeout: float = 10.0,
        request_timeout: float = 30.0,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.http = http_client
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.api_base = api_base.rstrip("/")
        self.token_timeout = token_timeout
        self.request_timeout = request_timeout
        self.metrics = metrics

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        settings: Settings,
        metrics: Optional[SyncMetrics] = None,
    ) -> "WhoopClient":
        return cls(
            http_client,
            client_id=settings.whoop_client_id,
            client_secret=settings.whoop_client_secret,
            token_url=settings.whoop_token_url,
            api_base=settings.whoop_api_base,
            token_timeout=settings.whoop_token_timeout,
            request_timeout=settings.whoop_request_timeout,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Transport and classification
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"whoop request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"whoop transport error: {e}") from e

        if response.status_code == 401:
            raise UpstreamUnauthorized()
        if response.status_code >= 400:
            raise UpstreamError(
                f"whoop api error: {response.status_code} {response.reason_phrase}".rstrip(),
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _decode(response: httpx.Response, context: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(f"{context}: invalid JSON body: {response.text[:200]}") from e

    def _record_api(self, error: Optional[Exception]) -> None:
        if self.metrics is not None:
            self.metrics.record_whoop_api(error)

    async def _get_json(self, access_token: str, path: str, params: dict | None = None) -> dict:
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        try:
            response = await self._send(
                "GET",
                f"{self.api_base}{path}",
                params=params or {},
                headers=headers,
                timeout=self.request_timeout,
            )
            payload = self._decode(response, path)
            if not isinstance(payload, dict):
                raise ParseError(f"{path}: expected a JSON object")
        except IntegrationError as e:
            logger.warning(f"WHOOP GET {path} failed ({e.kind}): {e}")
            self._record_api(e)
            raise
        self._record_api(None)
        return payload

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        response = await self._send(
            "POST",
            self.token_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.token_timeout,
        )
        return TokenGrant.from_response(self._decode(response, "token endpoint"))

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an OAuth authorization code for tokens."""
        return await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": redirect_uri,
        })

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Trade a refresh token for a new access token."""
        return await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": "offline",
        })

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def fetch_object(self, access_token: str, path: str) -> dict:
        """GET a single-object endpoint."""
        return await self._get_json(access_token, path)

    async def iter_collection(self, access_token: str, path: str) -> AsyncIterator[list[dict]]:
        """Yield record pages from a paginated endpoint.

        Stops when ``next_token`` is empty or after MAX_PAGES requests,
        whichever comes first.
        """
        next_token = ""
        for page in range(MAX_PAGES):
            params: dict[str, Any] = {"limit": PAGE_LIMIT}
            if next_token:
                params["nextToken"] = next_token

            payload = await self._get_json(access_token, path, params)
            records = payload.get("records") or []
            if not isinstance(records, list):
                raise ParseError(f"{path}: records is not a list")

            yield [r for r in records if isinstance(r, dict)]

            next_token = payload.get("next_token") or ""
            if not isinstance(next_token, str) or not next_token:
                return
            logger.debug(f"WHOOP {path}: page {page + 1} has a continuation token")

        logger.info(f"WHOOP {path}: stopped after {MAX_PAGES} pages")
