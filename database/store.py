"""
SyncStore — the persistence contract used by the connection manager, the
token refresh service and the sync orchestrator, plus its SQLAlchemy
implementation.

Encrypted tokens are only ever written as whole ``EncryptedSecret`` values,
so the four components of a secret always change together.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.base import RemoteCalendar, RemoteItem
from connectors.errors import SyncRunFinalized
from connectors.vault import EncryptedSecret
from database.models import (
    CalendarEvent,
    Connection,
    ConnectionStatus,
    ExternalCalendar,
    OrganizationStorageSettings,
    SyncedFile,
    SyncLease,
    SyncRun,
    SyncRunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_OPEN_RUN_STATES = (SyncRunStatus.QUEUED.value, SyncRunStatus.RUNNING.value)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


class SyncStore(Protocol):
    # ── connections ─────────────────────────────────────────────────────
    async def get_connection(self, connection_id: uuid.UUID) -> Optional[Connection]: ...

    async def find_connection(self, user_id: str, provider: str) -> Optional[Connection]: ...

    async def list_connections(
        self, user_id: str, *, provider: Optional[str] = None, status: Optional[str] = None
    ) -> List[Connection]: ...

    async def list_all_connections(self) -> List[Connection]: ...

    async def upsert_connection(
        self,
        *,
        organization_id: str,
        user_id: str,
        provider: str,
        account_email: Optional[str],
        access_token: EncryptedSecret,
        refresh_token: Optional[EncryptedSecret],
        expires_at: Optional[datetime],
    ) -> Connection: ...

    async def update_tokens(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: EncryptedSecret,
        refresh_token: Optional[EncryptedSecret],
        expires_at: Optional[datetime],
    ) -> None: ...

    async def replace_secrets(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: Optional[EncryptedSecret] = None,
        refresh_token: Optional[EncryptedSecret] = None,
    ) -> None: ...

    async def mark_connection_error(self, connection_id: uuid.UUID, message: str) -> None: ...

    async def mark_synced(self, connection_id: uuid.UUID, synced_at: datetime) -> None: ...

    async def revoke_connection(self, connection_id: uuid.UUID) -> None: ...

    async def delete_mirrored_data(self, connection_id: uuid.UUID) -> int: ...

    # ── sync runs ───────────────────────────────────────────────────────
    async def create_sync_run(self, connection: Connection) -> SyncRun: ...

    async def finish_sync_run(
        self,
        run_id: uuid.UUID,
        *,
        status: SyncRunStatus,
        stats: Dict[str, Any],
        error: Optional[str] = None,
    ) -> SyncRun: ...

    async def list_sync_runs(
        self,
        *,
        connection_id: Optional[uuid.UUID] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[SyncRun]: ...

    # ── leases ──────────────────────────────────────────────────────────
    async def acquire_lease(self, connection_id: uuid.UUID, holder: str, ttl_seconds: int) -> bool: ...

    async def renew_lease(self, connection_id: uuid.UUID, holder: str, ttl_seconds: int) -> bool: ...

    async def release_lease(self, connection_id: uuid.UUID, holder: str) -> None: ...

    # ── calendars ───────────────────────────────────────────────────────
    async def upsert_calendars(
        self, connection: Connection, calendars: List[RemoteCalendar]
    ) -> List[ExternalCalendar]: ...

    async def list_calendars(
        self, *, connection_id: Optional[uuid.UUID] = None, user_id: Optional[str] = None
    ) -> List[ExternalCalendar]: ...

    async def get_calendar(self, calendar_id: uuid.UUID) -> Optional[ExternalCalendar]: ...

    async def set_calendar_enabled(self, calendar_id: uuid.UUID, enabled: bool) -> ExternalCalendar: ...

    async def upsert_event(self, calendar: ExternalCalendar, item: RemoteItem) -> None: ...

    # ── files / org settings ────────────────────────────────────────────
    async def upsert_synced_file(
        self, connection: Connection, item: RemoteItem, destination_key: str, content_type: Optional[str]
    ) -> None: ...

    async def get_storage_settings(self, organization_id: str) -> Optional[OrganizationStorageSettings]: ...


class SqlAlchemyStore:
    """``SyncStore`` over an async SQLAlchemy session factory (PostgreSQL)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── connections ─────────────────────────────────────────────────────

    async def get_connection(self, connection_id: uuid.UUID) -> Optional[Connection]:
        async with self._session_factory() as session:
            return await session.get(Connection, _to_uuid(connection_id))

    async def find_connection(self, user_id: str, provider: str) -> Optional[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(
                    Connection.user_id == user_id,
                    Connection.provider == provider,
                )
            )
            return result.scalar_one_or_none()

    async def list_connections(
        self, user_id: str, *, provider: Optional[str] = None, status: Optional[str] = None
    ) -> List[Connection]:
        stmt = select(Connection).where(Connection.user_id == user_id)
        if provider:
            stmt = stmt.where(Connection.provider == provider)
        if status:
            stmt = stmt.where(Connection.status == status)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(Connection.created_at))
            return list(result.scalars().all())

    async def list_all_connections(self) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(select(Connection).order_by(Connection.created_at))
            return list(result.scalars().all())

    async def upsert_connection(
        self,
        *,
        organization_id: str,
        user_id: str,
        provider: str,
        account_email: Optional[str],
        access_token: EncryptedSecret,
        refresh_token: Optional[EncryptedSecret],
        expires_at: Optional[datetime],
    ) -> Connection:
        values = {
            "organization_id": organization_id,
            "account_email": account_email,
            "access_token_enc": access_token.to_dict(),
            "refresh_token_enc": refresh_token.to_dict() if refresh_token else None,
            "expires_at": expires_at,
            "status": ConnectionStatus.ACTIVE.value,
            "last_synced_at": None,
            "error_message": None,
            "updated_at": utcnow(),
        }
        stmt = pg_insert(Connection).values(
            id=uuid.uuid4(), user_id=user_id, provider=provider, created_at=utcnow(), **values
        )
        stmt = stmt.on_conflict_do_update(
            constraint="connections_user_provider_unique",
            set_=values,
        ).returning(Connection.id)

        async with self._session_factory() as session:
            connection_id = (await session.execute(stmt)).scalar_one()
            await session.commit()
            logger.info("Stored %s connection %s for user %s", provider, connection_id, user_id)
            return await session.get(Connection, connection_id, populate_existing=True)

    async def update_tokens(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: EncryptedSecret,
        refresh_token: Optional[EncryptedSecret],
        expires_at: Optional[datetime],
    ) -> None:
        values: Dict[str, Any] = {
            "access_token_enc": access_token.to_dict(),
            "expires_at": expires_at,
            "status": ConnectionStatus.ACTIVE.value,
            "error_message": None,
            "updated_at": utcnow(),
        }
        if refresh_token is not None:
            values["refresh_token_enc"] = refresh_token.to_dict()
        async with self._session_factory() as session:
            await session.execute(
                update(Connection).where(Connection.id == _to_uuid(connection_id)).values(**values)
            )
            await session.commit()

    async def replace_secrets(
        self,
        connection_id: uuid.UUID,
        *,
        access_token: Optional[EncryptedSecret] = None,
        refresh_token: Optional[EncryptedSecret] = None,
    ) -> None:
        values: Dict[str, Any] = {"updated_at": utcnow()}
        if access_token is not None:
            values["access_token_enc"] = access_token.to_dict()
        if refresh_token is not None:
            values["refresh_token_enc"] = refresh_token.to_dict()
        async with self._session_factory() as session:
            await session.execute(
                update(Connection).where(Connection.id == _to_uuid(connection_id)).values(**values)
            )
            await session.commit()

    async def mark_connection_error(self, connection_id: uuid.UUID, message: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Connection)
                .where(Connection.id == _to_uuid(connection_id))
                .values(status=ConnectionStatus.ERROR.value, error_message=message, updated_at=utcnow())
            )
            await session.commit()

    async def mark_synced(self, connection_id: uuid.UUID, synced_at: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Connection)
                .where(Connection.id == _to_uuid(connection_id))
                .values(last_synced_at=synced_at, updated_at=utcnow())
            )
            await session.commit()

    async def revoke_connection(self, connection_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Connection)
                .where(Connection.id == _to_uuid(connection_id))
                .values(
                    status=ConnectionStatus.REVOKED.value,
                    access_token_enc=None,
                    refresh_token_enc=None,
                    expires_at=None,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def delete_mirrored_data(self, connection_id: uuid.UUID) -> int:
        cid = _to_uuid(connection_id)
        async with self._session_factory() as session:
            calendar_ids = select(ExternalCalendar.id).where(ExternalCalendar.connection_id == cid)
            events = await session.execute(delete(CalendarEvent).where(CalendarEvent.calendar_id.in_(calendar_ids)))
            calendars = await session.execute(delete(ExternalCalendar).where(ExternalCalendar.connection_id == cid))
            files = await session.execute(delete(SyncedFile).where(SyncedFile.connection_id == cid))
            await session.commit()
        return events.rowcount + calendars.rowcount + files.rowcount

    # ── sync runs ───────────────────────────────────────────────────────

    async def create_sync_run(self, connection: Connection) -> SyncRun:
        run = SyncRun(
            id=uuid.uuid4(),
            connection_id=connection.id,
            organization_id=connection.organization_id,
            user_id=connection.user_id,
            provider=connection.provider,
            status=SyncRunStatus.RUNNING.value,
            started_at=utcnow(),
            stats={},
        )
        async with self._session_factory() as session:
            session.add(run)
            await session.commit()
        return run

    async def finish_sync_run(
        self,
        run_id: uuid.UUID,
        *,
        status: SyncRunStatus,
        stats: Dict[str, Any],
        error: Optional[str] = None,
    ) -> SyncRun:
        stmt = (
            update(SyncRun)
            .where(SyncRun.id == _to_uuid(run_id), SyncRun.status.in_(_OPEN_RUN_STATES))
            .values(status=status.value, finished_at=utcnow(), stats=stats, error_message=error)
            .returning(SyncRun)
        )
        async with self._session_factory() as session:
            run = (await session.execute(stmt)).scalar_one_or_none()
            if run is None:
                await session.rollback()
                raise SyncRunFinalized(f"Sync run {run_id} is already finished or does not exist")
            await session.commit()
            return run

    async def list_sync_runs(
        self,
        *,
        connection_id: Optional[uuid.UUID] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[SyncRun]:
        stmt = select(SyncRun)
        if connection_id is not None:
            stmt = stmt.where(SyncRun.connection_id == _to_uuid(connection_id))
        if organization_id is not None:
            stmt = stmt.where(SyncRun.organization_id == organization_id)
        if user_id is not None:
            stmt = stmt.where(SyncRun.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(SyncRun.started_at.desc()).limit(limit))
            return list(result.scalars().all())

    # ── leases ──────────────────────────────────────────────────────────

    async def acquire_lease(self, connection_id: uuid.UUID, holder: str, ttl_seconds: int) -> bool:
        now = utcnow()
        stmt = pg_insert(SyncLease).values(
            connection_id=_to_uuid(connection_id),
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        # Take over only a lease that has lapsed (crashed run) or is already ours.
        stmt = stmt.on_conflict_do_update(
            index_elements=["connection_id"],
            set_={
                "holder": stmt.excluded.holder,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=(SyncLease.expires_at < now) | (SyncLease.holder == holder),
        ).returning(SyncLease.holder)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()
        return row is not None

    async def renew_lease(self, connection_id: uuid.UUID, holder: str, ttl_seconds: int) -> bool:
        """Push the lease's expiry out; False once another holder has taken it."""
        stmt = (
            update(SyncLease)
            .where(
                SyncLease.connection_id == _to_uuid(connection_id),
                SyncLease.holder == holder,
            )
            .values(expires_at=utcnow() + timedelta(seconds=ttl_seconds))
            .returning(SyncLease.holder)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
            await session.commit()
        return row is not None

    async def release_lease(self, connection_id: uuid.UUID, holder: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(SyncLease).where(
                    SyncLease.connection_id == _to_uuid(connection_id),
                    SyncLease.holder == holder,
                )
            )
            await session.commit()

    # ── calendars ───────────────────────────────────────────────────────

    async def upsert_calendars(
        self, connection: Connection, calendars: List[RemoteCalendar]
    ) -> List[ExternalCalendar]:
        async with self._session_factory() as session:
            for cal in calendars:
                stmt = pg_insert(ExternalCalendar).values(
                    id=uuid.uuid4(),
                    connection_id=connection.id,
                    organization_id=connection.organization_id,
                    user_id=connection.user_id,
                    external_id=cal.external_id,
                    name=cal.name,
                    time_zone=cal.time_zone,
                    is_primary=cal.is_primary,
                    is_enabled=True,
                    created_at=utcnow(),
                    updated_at=utcnow(),
                )
                # is_enabled is the user's choice and survives re-listing.
                stmt = stmt.on_conflict_do_update(
                    constraint="external_calendars_external_unique",
                    set_={
                        "name": stmt.excluded.name,
                        "time_zone": stmt.excluded.time_zone,
                        "is_primary": stmt.excluded.is_primary,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
            await session.commit()
            result = await session.execute(
                select(ExternalCalendar)
                .where(ExternalCalendar.connection_id == connection.id)
                .order_by(ExternalCalendar.created_at)
            )
            return list(result.scalars().all())

    async def list_calendars(
        self, *, connection_id: Optional[uuid.UUID] = None, user_id: Optional[str] = None
    ) -> List[ExternalCalendar]:
        stmt = select(ExternalCalendar)
        if connection_id is not None:
            stmt = stmt.where(ExternalCalendar.connection_id == _to_uuid(connection_id))
        if user_id is not None:
            stmt = stmt.where(ExternalCalendar.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(ExternalCalendar.created_at))
            return list(result.scalars().all())

    async def get_calendar(self, calendar_id: uuid.UUID) -> Optional[ExternalCalendar]:
        async with self._session_factory() as session:
            return await session.get(ExternalCalendar, _to_uuid(calendar_id))

    async def set_calendar_enabled(self, calendar_id: uuid.UUID, enabled: bool) -> ExternalCalendar:
        async with self._session_factory() as session:
            calendar = await session.get(ExternalCalendar, _to_uuid(calendar_id))
            calendar.is_enabled = enabled
            calendar.updated_at = utcnow()
            await session.commit()
            return calendar

    async def upsert_event(self, calendar: ExternalCalendar, item: RemoteItem) -> None:
        stmt = pg_insert(CalendarEvent).values(
            id=uuid.uuid4(),
            calendar_id=calendar.id,
            organization_id=calendar.organization_id,
            user_id=calendar.user_id,
            external_id=item.id,
            title=item.name,
            start_at=item.starts_at,
            end_at=item.ends_at or item.starts_at,
            is_busy=item.is_busy,
            external_modified_at=item.modified_at,
            synced_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            constraint="calendar_events_external_unique",
            set_={
                "title": stmt.excluded.title,
                "start_at": stmt.excluded.start_at,
                "end_at": stmt.excluded.end_at,
                "is_busy": stmt.excluded.is_busy,
                "external_modified_at": stmt.excluded.external_modified_at,
                "synced_at": stmt.excluded.synced_at,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    # ── files / org settings ────────────────────────────────────────────

    async def upsert_synced_file(
        self, connection: Connection, item: RemoteItem, destination_key: str, content_type: Optional[str]
    ) -> None:
        stmt = pg_insert(SyncedFile).values(
            id=uuid.uuid4(),
            connection_id=connection.id,
            organization_id=connection.organization_id,
            user_id=connection.user_id,
            provider=connection.provider,
            external_id=item.id,
            name=item.name,
            content_type=content_type,
            size_bytes=item.size,
            source_path=item.parent_path,
            destination_key=destination_key,
            external_modified_at=item.modified_at,
            synced_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            constraint="synced_files_external_unique",
            set_={
                "name": stmt.excluded.name,
                "content_type": stmt.excluded.content_type,
                "size_bytes": stmt.excluded.size_bytes,
                "source_path": stmt.excluded.source_path,
                "destination_key": stmt.excluded.destination_key,
                "external_modified_at": stmt.excluded.external_modified_at,
                "synced_at": stmt.excluded.synced_at,
            },
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_storage_settings(self, organization_id: str) -> Optional[OrganizationStorageSettings]:
        async with self._session_factory() as session:
            return await session.get(OrganizationStorageSettings, organization_id)
