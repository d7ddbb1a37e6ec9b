"""SQLAlchemy-backed persistence for integrations, tokens and synced records.

``IntegrationStore`` is the persistence contract the token manager and sync
orchestrator depend on. Every write commits on its own: upserts are atomic per
row and no transaction spans a whole sync run, so partial progress survives a
failure and the next run repairs it by idempotent replace-on-conflict.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from itertools import groupby
from typing import Any, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import (
    Integration,
    IntegrationConnection,
    IntegrationCycle,
    IntegrationRawEvent,
    IntegrationRecovery,
    IntegrationSleep,
    IntegrationToken,
    IntegrationWorkout,
    utc_now,
)
from app.models.sync_log import SyncLog
from app.services.errors import NotFound, PersistenceError

logger = logging.getLogger(__name__)

STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"


@dataclass
class IntegrationRecord:
    id: int
    user_id: str
    status: str


@dataclass
class TokenRecord:
    access_token_encrypted: str
    refresh_token_encrypted: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: list[str] = field(default_factory=list)


def _row_values(row, skip: tuple[str, ...] = ("id",)) -> dict[str, Any]:
    """Column values of an unsaved ORM object, excluding the primary key."""
    return {
        col.name: getattr(row, col.name, None)
        for col in row.__table__.columns
        if col.name not in skip
    }


def _describe(e: SQLAlchemyError) -> str:
    """Driver error without the SQL text or bound parameters SQLAlchemy appends."""
    orig = getattr(e, "orig", None)
    if orig is not None:
        return f"{type(orig).__name__}: {orig}"
    return type(e).__name__


class IntegrationStore:
    """Persistence contract implemented over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @asynccontextmanager
    async def _write(self, action: str):
        try:
            yield
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            message = _describe(e)
            logger.error(f"Database error ({action}): {message}")
            raise PersistenceError(f"{action}: {message}") from e

    @asynccontextmanager
    async def _read(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            message = _describe(e)
            logger.error(f"Database error ({action}): {message}")
            raise PersistenceError(f"{action}: {message}") from e

    async def rollback(self) -> None:
        """Discard any half-finished statement (e.g. after a cancelled call)."""
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            raise PersistenceError(f"rollback: {_describe(e)}") from e

    async def _upsert(self, model_class, values: dict[str, Any], keys: list[str]) -> None:
        stmt = insert(model_class.__table__).values(**values).on_conflict_do_update(
            index_elements=keys,
            set_={k: v for k, v in values.items() if k not in keys},
        )
        await self.session.execute(stmt)

    # ------------------------------------------------------------------
    # Integrations and tokens
    # ------------------------------------------------------------------

    async def upsert_integration(self, user_id: str, provider: str) -> int:
        """Create the integration row if needed and return its id."""
        async with self._write("upsert integration"):
            now = utc_now()
            stmt = insert(Integration.__table__).values(
                user_id=user_id,
                provider=provider,
                status=STATUS_DISCONNECTED,
                created_at=now,
                updated_at=now,
            ).on_conflict_do_update(
                index_elements=["user_id", "provider"],
                set_={"updated_at": now},
            )
            await self.session.execute(stmt)
            result = await self.session.execute(
                select(Integration.id).where(
                    Integration.user_id == user_id,
                    Integration.provider == provider,
                )
            )
            integration_id = result.scalar_one()
        return integration_id

    async def upsert_token(
        self,
        integration_id: int,
        access_encrypted: str,
        refresh_encrypted: Optional[str],
        expires_at: Optional[datetime],
        scopes: list[str],
    ) -> None:
        async with self._write("upsert integration token"):
            await self._upsert(
                IntegrationToken,
                {
                    "integration_id": integration_id,
                    "access_token_encrypted": access_encrypted,
                    "refresh_token_encrypted": refresh_encrypted,
                    "expires_at": expires_at,
                    "scopes": list(scopes),
                    "updated_at": utc_now(),
                },
                ["integration_id"],
            )

    async def _set_status(self, integration_id: int, status: str) -> None:
        async with self._write(f"mark integration {status}"):
            await self.session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(status=status, updated_at=utc_now())
            )

    async def mark_connected(self, integration_id: int) -> None:
        await self._set_status(integration_id, STATUS_CONNECTED)

    async def mark_disconnected(self, integration_id: int) -> None:
        await self._set_status(integration_id, STATUS_DISCONNECTED)

    async def get_integration(self, user_id: str, provider: str) -> IntegrationRecord:
        async with self._read("get integration"):
            result = await self.session.execute(
                select(Integration)
                .where(Integration.user_id == user_id, Integration.provider == provider)
                .execution_options(populate_existing=True)
            )
            integration = result.scalar_one_or_none()
        if integration is None:
            raise NotFound(f"no {provider} integration for user {user_id}")
        return IntegrationRecord(id=integration.id, user_id=integration.user_id, status=integration.status)

    async def list_connected_integrations(self, provider: str) -> list[IntegrationRecord]:
        async with self._read("list connected integrations"):
            result = await self.session.execute(
                select(Integration)
                .where(Integration.provider == provider, Integration.status == STATUS_CONNECTED)
                .order_by(Integration.id)
                .execution_options(populate_existing=True)
            )
            rows = result.scalars().all()
        return [IntegrationRecord(id=r.id, user_id=r.user_id, status=r.status) for r in rows]

    async def has_token(self, integration_id: int) -> bool:
        async with self._read("check integration token"):
            result = await self.session.execute(
                select(IntegrationToken.id).where(IntegrationToken.integration_id == integration_id).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def get_token(self, integration_id: int) -> TokenRecord:
        async with self._read("get integration token"):
            result = await self.session.execute(
                select(IntegrationToken)
                .where(IntegrationToken.integration_id == integration_id)
                .execution_options(populate_existing=True)
            )
            token = result.scalar_one_or_none()
        if token is None:
            raise NotFound(f"no token for integration {integration_id}")
        return TokenRecord(
            access_token_encrypted=token.access_token_encrypted,
            refresh_token_encrypted=token.refresh_token_encrypted,
            expires_at=token.expires_at,
            scopes=list(token.scopes or []),
        )

    async def delete_tokens(self, integration_id: int) -> None:
        async with self._write("delete integration tokens"):
            await self.session.execute(
                delete(IntegrationToken).where(IntegrationToken.integration_id == integration_id)
            )

    async def update_last_sync(self, integration_id: int, synced_at: datetime) -> None:
        async with self._write("update last sync"):
            await self.session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(last_sync_at=synced_at, updated_at=utc_now())
            )

    # ------------------------------------------------------------------
    # Connection side record
    # ------------------------------------------------------------------

    async def upsert_last_error(self, integration_id: int, message: Optional[str]) -> None:
        async with self._write("upsert last error"):
            await self._upsert(
                IntegrationConnection,
                {"integration_id": integration_id, "last_error": message, "updated_at": utc_now()},
                ["integration_id"],
            )

    async def upsert_provider_user_id(self, integration_id: int, provider_user_id: str) -> None:
        async with self._write("upsert provider user id"):
            await self._upsert(
                IntegrationConnection,
                {"integration_id": integration_id, "provider_user_id": provider_user_id, "updated_at": utc_now()},
                ["integration_id"],
            )

    async def get_connection(self, integration_id: int) -> Optional[IntegrationConnection]:
        async with self._read("get integration connection"):
            result = await self.session.execute(
                select(IntegrationConnection)
                .where(IntegrationConnection.integration_id == integration_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Synced data
    # ------------------------------------------------------------------

    async def upsert_raw_event(
        self, integration_id: int, resource_type: str, source_id: str, payload: dict
    ) -> None:
        async with self._write(f"upsert raw {resource_type}"):
            await self._upsert(
                IntegrationRawEvent,
                {
                    "integration_id": integration_id,
                    "resource_type": resource_type,
                    "source_id": source_id,
                    "payload": payload,
                    "fetched_at": utc_now(),
                },
                ["integration_id", "resource_type", "source_id"],
            )

    async def _upsert_normalized(self, row, action: str) -> None:
        async with self._write(action):
            await self._upsert(row.__class__, _row_values(row), ["integration_id", "external_id"])

    async def upsert_sleep(self, row: IntegrationSleep) -> None:
        await self._upsert_normalized(row, "upsert sleep")

    async def upsert_recovery(self, row: IntegrationRecovery) -> None:
        await self._upsert_normalized(row, "upsert recovery")

    async def upsert_workout(self, row: IntegrationWorkout) -> None:
        await self._upsert_normalized(row, "upsert workout")

    async def upsert_cycle(self, row: IntegrationCycle) -> None:
        await self._upsert_normalized(row, "upsert cycle")

    async def select_primary_sleep(self, integration_id: int) -> int:
        """Flag the longest sleep per local date as primary and clear the rest.

        Ties on duration go to the earliest start, then the lowest row id.
        Returns the number of primary rows.
        """
        async with self._write("select primary sleep"):
            result = await self.session.execute(
                select(
                    IntegrationSleep.id,
                    IntegrationSleep.local_date,
                    IntegrationSleep.duration_seconds,
                    IntegrationSleep.start_at,
                )
                .where(IntegrationSleep.integration_id == integration_id)
                .order_by(IntegrationSleep.local_date)
            )
            rows = result.all()

            primary_ids = []
            for _, day_rows in groupby(rows, key=lambda r: r.local_date):
                best = min(day_rows, key=lambda r: (-(r.duration_seconds or 0), r.start_at, r.id))
                primary_ids.append(best.id)

            await self.session.execute(
                update(IntegrationSleep)
                .where(IntegrationSleep.integration_id == integration_id)
                .values(is_primary=IntegrationSleep.id.in_(primary_ids))
                .execution_options(synchronize_session=False)
            )
        return len(primary_ids)

    async def record_sync_run(
        self,
        integration_id: int,
        correlation_id: Optional[str],
        started_at: datetime,
        duration_ms: int,
        status: str,
        details: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._write("record sync run"):
            self.session.add(SyncLog(
                integration_id=integration_id,
                correlation_id=correlation_id,
                started_at=started_at,
                completed_at=utc_now(),
                duration_ms=duration_ms,
                status=status,
                details=details,
                error_message=error_message,
            ))
