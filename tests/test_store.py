"""Tests for IntegrationStore persistence and the primary-sleep pass."""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select, text

from app.models.database import (
    Integration,
    IntegrationRawEvent,
    IntegrationSleep,
    IntegrationToken,
)
from app.models.sync_log import SyncLog
from app.services.errors import NotFound, PersistenceError
from app.services.store import STATUS_CONNECTED, STATUS_DISCONNECTED, IntegrationStore


async def _fetch_all(session, model, *where):
    result = await session.execute(
        select(model).where(*where).execution_options(populate_existing=True)
    )
    return result.scalars().all()


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _sleep(integration_id, external_id, start, hours, local_day=date(2025, 1, 28), nap=False):
    return IntegrationSleep(
        integration_id=integration_id,
        external_id=external_id,
        start_at=start,
        end_at=start + timedelta(hours=hours),
        local_date=local_day,
        source_tz_offset_minutes=0,
        duration_seconds=int(hours * 3600),
        is_nap=nap,
        is_primary=False,
        extras={"id": external_id},
    )


@pytest.fixture
def store(async_session):
    return IntegrationStore(async_session)


class TestIntegrations:

    @pytest.mark.asyncio
    async def test_upsert_integration_is_idempotent(self, store, async_session):
        first = await store.upsert_integration("user-1", "whoop")
        second = await store.upsert_integration("user-1", "whoop")
        assert first == second
        assert await _count(async_session, Integration) == 1

    @pytest.mark.asyncio
    async def test_new_integration_starts_disconnected(self, store):
        await store.upsert_integration("user-1", "whoop")
        integration = await store.get_integration("user-1", "whoop")
        assert integration.status == STATUS_DISCONNECTED

    @pytest.mark.asyncio
    async def test_mark_connected_and_disconnected(self, store):
        integration_id = await store.upsert_integration("user-1", "whoop")

        await store.mark_connected(integration_id)
        assert (await store.get_integration("user-1", "whoop")).status == STATUS_CONNECTED

        await store.mark_disconnected(integration_id)
        assert (await store.get_integration("user-1", "whoop")).status == STATUS_DISCONNECTED

    @pytest.mark.asyncio
    async def test_get_unknown_integration_raises(self, store):
        with pytest.raises(NotFound):
            await store.get_integration("nobody", "whoop")

    @pytest.mark.asyncio
    async def test_list_connected_integrations(self, store):
        connected = await store.upsert_integration("user-1", "whoop")
        await store.upsert_integration("user-2", "whoop")
        other = await store.upsert_integration("user-3", "oura")
        await store.mark_connected(connected)
        await store.mark_connected(other)

        integrations = await store.list_connected_integrations("whoop")
        assert [i.id for i in integrations] == [connected]
        assert integrations[0].user_id == "user-1"

    @pytest.mark.asyncio
    async def test_update_last_sync(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        synced_at = datetime(2025, 1, 28, 6, 0)
        await store.update_last_sync(integration_id, synced_at)

        rows = await _fetch_all(async_session, Integration, Integration.id == integration_id)
        assert rows[0].last_sync_at == synced_at


class TestTokens:

    @pytest.mark.asyncio
    async def test_upsert_token_replaces_row(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        expires = datetime(2025, 1, 28, 7, 0)

        await store.upsert_token(integration_id, "enc-a", "enc-r", expires, ["offline"])
        await store.upsert_token(integration_id, "enc-b", None, None, [])

        assert await _count(async_session, IntegrationToken) == 1
        token = await store.get_token(integration_id)
        assert token.access_token_encrypted == "enc-b"
        assert token.refresh_token_encrypted is None
        assert token.expires_at is None
        assert token.scopes == []

    @pytest.mark.asyncio
    async def test_get_token_round_trips_fields(self, store):
        integration_id = await store.upsert_integration("user-1", "whoop")
        expires = datetime(2025, 1, 28, 7, 0)
        await store.upsert_token(integration_id, "enc-a", "enc-r", expires, ["offline", "read:sleep"])

        token = await store.get_token(integration_id)
        assert token.refresh_token_encrypted == "enc-r"
        assert token.expires_at == expires
        assert token.scopes == ["offline", "read:sleep"]

    @pytest.mark.asyncio
    async def test_has_token_and_delete(self, store):
        integration_id = await store.upsert_integration("user-1", "whoop")
        assert await store.has_token(integration_id) is False

        await store.upsert_token(integration_id, "enc-a", None, None, [])
        assert await store.has_token(integration_id) is True

        await store.delete_tokens(integration_id)
        assert await store.has_token(integration_id) is False
        with pytest.raises(NotFound):
            await store.get_token(integration_id)


class TestConnection:

    @pytest.mark.asyncio
    async def test_last_error_set_and_cleared(self, store):
        integration_id = await store.upsert_integration("user-1", "whoop")

        await store.upsert_last_error(integration_id, "cycle fetch: boom")
        assert (await store.get_connection(integration_id)).last_error == "cycle fetch: boom"

        await store.upsert_last_error(integration_id, None)
        connection = await store.get_connection(integration_id)
        assert connection.last_error is None

    @pytest.mark.asyncio
    async def test_provider_user_id_keeps_last_error(self, store):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await store.upsert_last_error(integration_id, "boom")
        await store.upsert_provider_user_id(integration_id, "10129")

        connection = await store.get_connection(integration_id)
        assert connection.provider_user_id == "10129"
        assert connection.last_error == "boom"


class TestRecords:

    @pytest.mark.asyncio
    async def test_raw_event_upsert_replaces_payload(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await store.upsert_raw_event(integration_id, "sleep", "s1", {"v": 1})
        await store.upsert_raw_event(integration_id, "sleep", "s1", {"v": 2})

        rows = await _fetch_all(async_session, IntegrationRawEvent)
        assert len(rows) == 1
        assert rows[0].payload == {"v": 2}

    @pytest.mark.asyncio
    async def test_normalized_upsert_replaces_row(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        start = datetime(2025, 1, 27, 23, 0)
        await store.upsert_sleep(_sleep(integration_id, "s1", start, 7))
        await store.upsert_sleep(_sleep(integration_id, "s1", start, 8))

        rows = await _fetch_all(async_session, IntegrationSleep)
        assert len(rows) == 1
        assert rows[0].duration_seconds == 8 * 3600

    @pytest.mark.asyncio
    async def test_record_sync_run(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        started = datetime(2025, 1, 28, 6, 0)
        await store.record_sync_run(
            integration_id, "req-1", started, 1234, "failed",
            details={"counts": {"cycle": 2}}, error_message="boom",
        )

        logs = await _fetch_all(async_session, SyncLog)
        assert len(logs) == 1
        assert logs[0].correlation_id == "req-1"
        assert logs[0].duration_ms == 1234
        assert logs[0].details == {"counts": {"cycle": 2}}
        assert logs[0].completed_at is not None


class TestDatabaseErrors:

    @pytest.mark.asyncio
    async def test_failed_write_raises_persistence_error(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await async_session.execute(text("DROP TABLE integration_sleep"))
        await async_session.commit()

        with pytest.raises(PersistenceError) as exc_info:
            await store.upsert_sleep(_sleep(integration_id, "s1", datetime(2025, 1, 27, 23, 0), 7))

        assert str(exc_info.value).startswith("upsert sleep: OperationalError: no such table")
        assert exc_info.value.kind == "persistence_error"

    @pytest.mark.asyncio
    async def test_session_usable_after_failed_write(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await async_session.execute(text("DROP TABLE integration_raw_event"))
        await async_session.commit()

        with pytest.raises(PersistenceError):
            await store.upsert_raw_event(integration_id, "sleep", "s1", {"v": 1})

        await store.mark_connected(integration_id)
        assert (await store.get_integration("user-1", "whoop")).status == STATUS_CONNECTED

    @pytest.mark.asyncio
    async def test_error_message_omits_sql_and_parameters(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await async_session.execute(text("DROP TABLE integration_token"))
        await async_session.commit()

        with pytest.raises(PersistenceError) as exc_info:
            await store.upsert_token(integration_id, "ciphertext-abc", "ciphertext-def", None, [])

        message = str(exc_info.value)
        assert "[SQL" not in message
        assert "[parameters" not in message
        assert "ciphertext-abc" not in message

    @pytest.mark.asyncio
    async def test_failed_read_raises_persistence_error(self, store, async_session):
        await async_session.execute(text("DROP TABLE integration"))
        await async_session.commit()

        with pytest.raises(PersistenceError) as exc_info:
            await store.get_integration("user-1", "whoop")

        assert str(exc_info.value).startswith("get integration:")


class TestPrimarySleep:

    @pytest.mark.asyncio
    async def test_longest_sleep_per_day_is_primary(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await store.upsert_sleep(_sleep(integration_id, "main", datetime(2025, 1, 27, 23, 0), 7.5))
        await store.upsert_sleep(_sleep(integration_id, "nap", datetime(2025, 1, 28, 14, 0), 0.5, nap=True))
        await store.upsert_sleep(_sleep(
            integration_id, "next", datetime(2025, 1, 28, 23, 0), 6, local_day=date(2025, 1, 29),
        ))

        assert await store.select_primary_sleep(integration_id) == 2

        rows = {r.external_id: r for r in await _fetch_all(async_session, IntegrationSleep)}
        assert rows["main"].is_primary is True
        assert rows["nap"].is_primary is False
        assert rows["next"].is_primary is True

    @pytest.mark.asyncio
    async def test_exactly_one_primary_after_longer_sleep_arrives(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await store.upsert_sleep(_sleep(integration_id, "a", datetime(2025, 1, 28, 1, 0), 5))
        await store.select_primary_sleep(integration_id)

        await store.upsert_sleep(_sleep(integration_id, "b", datetime(2025, 1, 28, 8, 0), 6))
        await store.select_primary_sleep(integration_id)

        rows = await _fetch_all(async_session, IntegrationSleep)
        primaries = [r.external_id for r in rows if r.is_primary]
        assert primaries == ["b"]

    @pytest.mark.asyncio
    async def test_equal_duration_prefers_earliest_start(self, store, async_session):
        integration_id = await store.upsert_integration("user-1", "whoop")
        await store.upsert_sleep(_sleep(integration_id, "late", datetime(2025, 1, 28, 13, 0), 2))
        await store.upsert_sleep(_sleep(integration_id, "early", datetime(2025, 1, 28, 1, 0), 2))

        await store.select_primary_sleep(integration_id)

        rows = {r.external_id: r for r in await _fetch_all(async_session, IntegrationSleep)}
        assert rows["early"].is_primary is True
        assert rows["late"].is_primary is False

    @pytest.mark.asyncio
    async def test_other_integrations_untouched(self, store, async_session):
        mine = await store.upsert_integration("user-1", "whoop")
        theirs = await store.upsert_integration("user-2", "whoop")
        await store.upsert_sleep(_sleep(theirs, "t1", datetime(2025, 1, 28, 1, 0), 5))

        assert await store.select_primary_sleep(mine) == 0
        rows = await _fetch_all(async_session, IntegrationSleep)
        assert rows[0].is_primary is False
