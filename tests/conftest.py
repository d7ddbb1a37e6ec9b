"""Shared test fixtures for the integration sync test suite."""

import json
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.database import Base
# Import all models so their metadata is registered on Base
import app.models.database  # noqa: F401
import app.models.sync_log  # noqa: F401
from app.services.metrics import SyncMetrics
from app.services.vault import CredentialVault, generate_key
from app.services.whoop import WhoopClient


FIXTURES_DIR = Path(__file__).parent / "fixtures"

TOKEN_URL = "https://whoop.test/oauth/oauth2/token"
API_BASE = "https://whoop.test/developer"
REDIRECT_URI = "https://app.test/whoop/callback"


def load_fixture(filename: str) -> dict | list:
    """Load a JSON fixture file."""
    with open(FIXTURES_DIR / filename) as f:
        return json.load(f)


class FakeWhoop:
    """In-process stand-in for the WHOOP token endpoint and developer API.

    ``pages[path]`` is a list of responses served in order for that path; the
    last one repeats once the list is exhausted. A response is a dict (sent as
    JSON with status 200), an ``httpx.Response`` or an exception to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_response: dict | httpx.Response | Exception = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "scope": "offline read:sleep",
            "token_type": "bearer",
        }
        self.pages: dict[str, list] = {
            "/v2/user/profile/basic": [load_fixture("whoop_profile.json")],
            "/v2/user/measurement/body": [load_fixture("whoop_body.json")],
            "/v2/cycle": [{"records": [], "next_token": ""}],
            "/v2/recovery": [{"records": [], "next_token": ""}],
            "/v2/activity/sleep": [{"records": [], "next_token": ""}],
            "/v2/activity/workout": [{"records": [], "next_token": ""}],
        }
        self._served: dict[str, int] = {}

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    @property
    def token_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == TOKEN_URL]

    @staticmethod
    def _respond(response) -> httpx.Response:
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if str(request.url) == TOKEN_URL:
            return self._respond(self.token_response)

        path = request.url.path.removeprefix("/developer")
        responses = self.pages.get(path)
        if not responses:
            return httpx.Response(404, json={"error": "not found"})
        index = self._served.get(path, 0)
        self._served[path] = index + 1
        return self._respond(responses[min(index, len(responses) - 1)])


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with all tables; one shared connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(session_factory):
    """
    Provide an in-memory SQLite async session for tests.

    Each test gets a clean database.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def vault():
    return CredentialVault.from_encoded_key(generate_key())


@pytest.fixture
def metrics():
    return SyncMetrics()


@pytest.fixture
def fake_whoop():
    return FakeWhoop()


@pytest_asyncio.fixture
async def http_client(fake_whoop):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_whoop.handler)) as client:
        yield client


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        db_path=":memory:",
        whoop_client_id="client-id",
        whoop_client_secret="client-secret",
        whoop_redirect_uri=REDIRECT_URI,
        whoop_token_url=TOKEN_URL,
        whoop_api_base=API_BASE,
        whoop_token_encryption_key=generate_key(),
        sync_concurrency=1,
    )


@pytest.fixture
def whoop_client(http_client, settings, metrics):
    return WhoopClient.from_settings(http_client, settings, metrics=metrics)
