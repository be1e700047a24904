"""
Connector API routes — authorize/callback, app-password linking, list
connections, disconnect.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from api.dependencies import get_connection_manager, get_store
from auth.dependencies import get_current_user
from auth.models import CurrentUser
from config.settings import config
from connectors.errors import ConnectorError
from connectors.manager import ConnectionManager
from connectors.registry import ConnectorRegistry
from connectors.state import STATE_COOKIE, USER_COOKIE
from database.models import Connection
from database.store import SyncStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


# ── Schemas ────────────────────────────────────────────────────────────


class ConnectionOut(BaseModel):
    connection_id: str
    provider: str
    account_email: Optional[str] = None
    status: str
    expires_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, conn: Connection) -> "ConnectionOut":
        return cls(
            connection_id=str(conn.id),
            provider=conn.provider,
            account_email=conn.account_email,
            status=conn.status,
            expires_at=conn.expires_at.isoformat() if conn.expires_at else None,
            last_synced_at=conn.last_synced_at.isoformat() if conn.last_synced_at else None,
            error_message=conn.error_message,
        )


class AppPasswordRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=255)
    app_password: str = Field(..., min_length=4, max_length=128)


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> List[Dict[str, Any]]:
    """
    List all available connector providers and their configuration status.
    No auth required — used by frontend to show available connectors.
    """
    return ConnectorRegistry().list_providers()


@router.get("/connections", response_model=List[ConnectionOut])
async def list_connections(
    user: CurrentUser = Depends(get_current_user),
    store: SyncStore = Depends(get_store),
) -> List[ConnectionOut]:
    """List the caller's connections (no token material)."""
    return [ConnectionOut.from_row(c) for c in await store.list_connections(user.user_id)]


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    redirect: bool = Query(False, description="302 to the provider instead of returning JSON"),
    user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """
    Start linking: returns the provider's authorization URL and sets the
    signed CSRF cookie pair.  Frontend opens the URL in a popup window.
    """
    url, cookies = manager.initiate(user, provider)
    if redirect:
        response = RedirectResponse(url, status_code=302)
    else:
        response = JSONResponse({"auth_url": url, "provider": provider})
    for name, value in cookies.items():
        response.set_cookie(
            name,
            value,
            max_age=config.oauth_state_ttl_seconds,
            httponly=True,
            secure=config.oauth_cookie_secure,
            samesite="lax",
            path="/api/v1/connectors",
        )
    return response


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Returns a small HTML page that notifies the opener window and
    auto-closes.  The cookie pair is cleared whatever the outcome.
    """
    if error:
        page = _callback_html(success=False, message=f"Provider returned: {error}", provider=provider)
    else:
        try:
            conn = await manager.complete(user, provider, code, state, request.cookies)
            label = conn.account_email or provider
            page = _callback_html(success=True, message=f"Connected as {label}", provider=provider)
        except ConnectorError as exc:
            logger.warning("OAuth callback failed for %s/%s: %s", provider, user.user_id, exc)
            page = _callback_html(success=False, message=f"Connection failed: {exc}", provider=provider)

    response = HTMLResponse(content=page, status_code=200)
    for name in (STATE_COOKIE, USER_COOKIE):
        response.delete_cookie(name, path="/api/v1/connectors")
    return response


@router.post("/{provider}/app-password", response_model=ConnectionOut)
async def connect_app_password(
    provider: str,
    req: AppPasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> ConnectionOut:
    """Link a provider that uses an app-specific password (Apple CalDAV)."""
    conn = await manager.connect_app_password(user, provider, req.username, req.app_password)
    return ConnectionOut.from_row(conn)


@router.delete("/{provider}")
async def disconnect(
    provider: str,
    user: CurrentUser = Depends(get_current_user),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> Dict[str, Any]:
    """Revoke the connection; always succeeds locally once it exists."""
    conn = await manager.disconnect(user, provider)
    return {"status": "disconnected", "provider": provider, "connection_id": str(conn.id)}


# ── Helpers ────────────────────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    payload = json.dumps({"type": "oauth-callback", "provider": provider, "success": success, "message": message})
    payload = payload.replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{ text-align: center; padding: 40px; max-width: 400px; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({payload}, window.location.origin);
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
