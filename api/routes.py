"""
REST API routes — trigger sync, sync history, calendar opt-in/out.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.dependencies import get_connection_manager, get_orchestrator, get_store
from auth.dependencies import get_current_user
from auth.models import CurrentUser
from connectors.manager import ConnectionManager
from core.orchestrator import SyncOrchestrator, SyncResult
from database.models import ExternalCalendar, SyncRun
from database.store import SyncStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


class SyncRequest(BaseModel):
    provider: Optional[str] = None


class CalendarToggle(BaseModel):
    is_enabled: bool


def _run_dict(run: SyncRun) -> Dict[str, Any]:
    return {
        "run_id": str(run.id),
        "connection_id": str(run.connection_id),
        "provider": run.provider,
        "status": run.status,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "stats": run.stats or {},
        "error": run.error_message,
    }


def _calendar_dict(cal: ExternalCalendar) -> Dict[str, Any]:
    return {
        "calendar_id": str(cal.id),
        "connection_id": str(cal.connection_id),
        "external_id": cal.external_id,
        "name": cal.name,
        "time_zone": cal.time_zone,
        "is_primary": cal.is_primary,
        "is_enabled": cal.is_enabled,
    }


@router.post("/sync", response_model=List[SyncResult])
async def trigger_sync(
    req: Optional[SyncRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> List[SyncResult]:
    """Sync the caller's active connections; one result per connection."""
    provider = req.provider if req else None
    results = await orchestrator.sync_connections(user.user_id, provider)
    logger.info("Sync for user %s finished: %d connection(s)", user.user_id, len(results))
    return results


@router.get("/sync/runs")
async def list_sync_runs(
    connection_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    store: SyncStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    runs = await store.list_sync_runs(connection_id=connection_id, user_id=user.user_id, limit=limit)
    return [_run_dict(r) for r in runs]


@router.get("/calendars")
async def list_calendars(
    user: CurrentUser = Depends(get_current_user),
    store: SyncStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    return [_calendar_dict(c) for c in await store.list_calendars(user_id=user.user_id)]


@router.patch("/calendars/{calendar_id}")
async def toggle_calendar(
    calendar_id: uuid.UUID,
    req: CalendarToggle,
    user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """Opt one remote calendar in or out of sync."""
    calendar = await manager.toggle_calendar(user, calendar_id, req.is_enabled)
    return _calendar_dict(calendar)
