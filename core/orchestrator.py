"""
SyncOrchestrator — pulls remote data for a user's active connections.

Connections run in parallel (bounded by ``config.sync_max_concurrency``)
while pagination inside one connection stays sequential.  Faults are
contained at two levels:

* item level — a failed download / write / upsert bumps ``stats.errors``
  and the loop moves on;
* connection level — an ``AuthExpired`` or any unexpected exception fails
  that connection's SyncRun only.

``sync_connections`` always returns one result per connection and never
raises.  A persisted lease per connection keeps a second sync of the same
connection from starting while one is running, across processes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from datetime import datetime
from typing import List, Optional

import httpx
from pydantic import BaseModel, Field

from config.settings import config
from connectors.base import AdapterKind, CalendarAdapter, ProviderAdapter
from connectors.errors import (
    ConfigurationError,
    DecryptionError,
    ProviderError,
    ProviderErrorKind,
    StorageError,
)
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from database.models import Connection, ConnectionStatus, SyncRunStatus, utcnow
from database.store import SyncStore
from storage.object_store import ObjectStore
from utils.paths import build_destination_prefix, destination_key

logger = logging.getLogger(__name__)

# Item-level faults; anything else ends the connection's run.
_ITEM_ERRORS = (ProviderError, StorageError, httpx.HTTPError)

MAX_HOST_LENGTH = 200


class SyncStats(BaseModel):
    listed: int = 0
    downloaded: int = 0
    skipped: int = 0
    errors: int = 0
    upserted: int = 0


class SyncResult(BaseModel):
    provider: str
    connection_id: Optional[str] = None
    run_id: Optional[str] = None
    status: str
    stats: SyncStats = Field(default_factory=SyncStats)
    error: Optional[str] = None


class _ConnectionAborted(Exception):
    """Run-level failure raised from inside the item loops."""


def _raise_if_fatal(exc: Exception) -> None:
    if isinstance(exc, ProviderError) and exc.kind == ProviderErrorKind.AUTH_EXPIRED:
        raise exc


def lease_holder() -> str:
    """``host:pid:nonce`` naming this process's claim on a connection lease."""
    host = socket.gethostname()[:MAX_HOST_LENGTH]
    return f"{host}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _is_newer(modified_at: Optional[datetime], last_synced_at: Optional[datetime]) -> bool:
    if last_synced_at is None or modified_at is None:
        return True
    return modified_at > last_synced_at


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        token_manager: TokenManager,
        object_store: ObjectStore,
        registry: Optional[ConnectorRegistry] = None,
        *,
        max_concurrency: Optional[int] = None,
        lease_seconds: Optional[int] = None,
    ) -> None:
        self._store = store
        self._tokens = token_manager
        self._objects = object_store
        self._registry = registry or ConnectorRegistry()
        self._max_concurrency = max_concurrency or config.sync_max_concurrency
        self._lease_seconds = lease_seconds or config.sync_lease_seconds

    # ── public entry point ──────────────────────────────────────────────

    async def sync_connections(self, user_id: str, provider: Optional[str] = None) -> List[SyncResult]:
        connections = await self._store.list_connections(
            user_id, provider=provider, status=ConnectionStatus.ACTIVE.value
        )
        if not connections:
            return []

        logger.info("Syncing %d connection(s) for user %s", len(connections), user_id)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(conn: Connection) -> SyncResult:
            async with semaphore:
                return await self.sync_connection(conn)

        results = await asyncio.gather(
            *[_bounded(conn) for conn in connections],
            return_exceptions=True,
        )

        out: List[SyncResult] = []
        for conn, result in zip(connections, results):
            if isinstance(result, BaseException):
                logger.error("Sync of connection %s raised: %s", conn.id, result)
                out.append(
                    SyncResult(
                        provider=conn.provider,
                        connection_id=str(conn.id),
                        status=SyncRunStatus.FAILED.value,
                        error=str(result),
                    )
                )
            else:
                out.append(result)
        return out

    async def sync_connection(self, connection: Connection) -> SyncResult:
        holder = lease_holder()
        if not await self._store.acquire_lease(connection.id, holder, self._lease_seconds):
            logger.info("Connection %s is already syncing; request rejected", connection.id)
            return SyncResult(
                provider=connection.provider,
                connection_id=str(connection.id),
                status="rejected",
                error="A sync is already running for this connection",
            )

        heartbeat = asyncio.create_task(self._keep_lease(connection.id, holder))
        try:
            return await self._run(connection, holder)
        finally:
            heartbeat.cancel()
            [outcome] = await asyncio.gather(heartbeat, return_exceptions=True)
            if isinstance(outcome, Exception):
                logger.error("Lease heartbeat for connection %s failed: %s", connection.id, outcome)
            await self._store.release_lease(connection.id, holder)

    async def _keep_lease(self, connection_id: uuid.UUID, holder: str) -> None:
        """Extend the lease while a run is in progress; stops once it is lost."""
        interval = max(self._lease_seconds / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            if not await self._store.renew_lease(connection_id, holder, self._lease_seconds):
                logger.warning("Lease on connection %s lost by %s", connection_id, holder)
                return

    async def _check_lease(self, connection: Connection, holder: str) -> None:
        if not await self._store.renew_lease(connection.id, holder, self._lease_seconds):
            raise _ConnectionAborted("Lease lost")

    # ── one connection ──────────────────────────────────────────────────

    async def _run(self, connection: Connection, holder: str) -> SyncResult:
        run = await self._store.create_sync_run(connection)
        stats = SyncStats()
        started_at = run.started_at or utcnow()
        status = SyncRunStatus.SUCCEEDED
        error: Optional[str] = None

        try:
            adapter = self._registry.get(connection.provider)
            if adapter is None:
                raise ConfigurationError(f"No adapter registered for provider {connection.provider}")
            access_token = await self._tokens.get_access_token(connection)
            if adapter.kind == AdapterKind.CALENDAR:
                await self._sync_calendars(connection, adapter, access_token, stats, holder)
            else:
                await self._sync_files(connection, adapter, access_token, stats, holder)
        except (ProviderError, ConfigurationError, DecryptionError, _ConnectionAborted) as exc:
            status, error = SyncRunStatus.FAILED, str(exc)
            logger.warning("Sync failed for %s connection %s: %s", connection.provider, connection.id, exc)
        except Exception as exc:
            status, error = SyncRunStatus.FAILED, f"{type(exc).__name__}: {exc}"
            logger.exception("Unexpected error syncing connection %s", connection.id)

        await self._store.finish_sync_run(run.id, status=status, stats=stats.model_dump(), error=error)
        if status == SyncRunStatus.SUCCEEDED:
            await self._store.mark_synced(connection.id, started_at)
            connection.last_synced_at = started_at

        logger.info(
            "Sync %s for %s connection %s: %s",
            status.value, connection.provider, connection.id, stats.model_dump(),
        )
        return SyncResult(
            provider=connection.provider,
            connection_id=str(connection.id),
            run_id=str(run.id),
            status=status.value,
            stats=stats,
            error=error,
        )

    async def _sync_files(
        self,
        connection: Connection,
        adapter: ProviderAdapter,
        access_token: str,
        stats: SyncStats,
        holder: str,
    ) -> None:
        settings = await self._store.get_storage_settings(connection.organization_id)
        if settings is not None and not settings.enabled:
            raise _ConnectionAborted("File sync is disabled for this organization")

        prefix = build_destination_prefix(
            connection.organization_id,
            connection.provider,
            connection.user_id,
            settings.prefix if settings is not None else None,
        )

        token: Optional[str] = None
        while True:
            await self._check_lease(connection, holder)
            page = await adapter.list_items(access_token, token)
            for item in page.items:
                stats.listed += 1
                if item.is_folder or not item.downloadable:
                    stats.skipped += 1
                    continue
                if not _is_newer(item.modified_at, connection.last_synced_at):
                    stats.skipped += 1
                    continue
                try:
                    downloaded = await adapter.download_item(access_token, item)
                    key = destination_key(prefix, item.id, item.name)
                    content_type = downloaded.content_type or item.content_type
                    await self._objects.put(key, downloaded.content, content_type)
                    await self._store.upsert_synced_file(connection, item, key, content_type)
                    stats.downloaded += 1
                except _ITEM_ERRORS as exc:
                    _raise_if_fatal(exc)
                    stats.errors += 1
                    logger.warning("Item %s of connection %s failed: %s", item.id, connection.id, exc)

            if not page.next_continuation_token or page.next_continuation_token == token:
                break
            token = page.next_continuation_token

    async def _sync_calendars(
        self,
        connection: Connection,
        adapter: CalendarAdapter,
        access_token: str,
        stats: SyncStats,
        holder: str,
    ) -> None:
        remote = await adapter.list_calendars(access_token)
        calendars = await self._store.upsert_calendars(connection, remote)

        for calendar in calendars:
            if not calendar.is_enabled:
                continue
            token: Optional[str] = None
            while True:
                await self._check_lease(connection, holder)
                try:
                    page = await adapter.list_items(access_token, token, container_id=calendar.external_id)
                except ProviderError as exc:
                    _raise_if_fatal(exc)
                    # One unreachable calendar does not fail the others.
                    stats.errors += 1
                    logger.warning("Listing calendar %s of connection %s failed: %s", calendar.external_id, connection.id, exc)
                    break

                for item in page.items:
                    stats.listed += 1
                    if item.starts_at is None:
                        stats.skipped += 1
                        continue
                    try:
                        await self._store.upsert_event(calendar, item)
                        stats.upserted += 1
                    except _ITEM_ERRORS as exc:
                        _raise_if_fatal(exc)
                        stats.errors += 1
                        logger.warning("Event %s of calendar %s failed: %s", item.id, calendar.external_id, exc)

                if not page.next_continuation_token or page.next_continuation_token == token:
                    break
                token = page.next_continuation_token
