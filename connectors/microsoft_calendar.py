"""
MicrosoftCalendarAdapter — Outlook / Microsoft 365 calendars via Microsoft Graph.

Continuation tokens are Graph's full ``@odata.nextLink`` URLs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote, urlencode

import httpx

from config.settings import config
from connectors.base import (
    AccountProfile,
    AdapterKind,
    AuthMode,
    DownloadedItem,
    ItemPage,
    Provider,
    RemoteCalendar,
    RemoteItem,
    TokenGrant,
)
from connectors.errors import ProviderError
from connectors.http import bearer, make_client, parse_timestamp, parse_token_response, send

logger = logging.getLogger(__name__)

_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
_GRAPH = "https://graph.microsoft.com/v1.0"


class MicrosoftCalendarAdapter:
    provider = Provider.MICROSOFT_CALENDAR
    display_name = "Outlook Calendar"
    kind = AdapterKind.CALENDAR
    auth_mode = AuthMode.OAUTH
    scopes = ["offline_access", "User.Read", "Calendars.Read"]

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(config.microsoft_client_id and config.microsoft_client_secret)

    def build_authorization_url(self, client_id: str, redirect_uri: str, csrf_state: str) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(self.scopes),
            "state": csrf_state,
            "prompt": "consent",
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="Microsoft token exchange",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                    "scope": " ".join(self.scopes),
                },
            )
        return parse_token_response(resp.json(), action="Microsoft token exchange")

    async def fetch_account_profile(self, access_token: str) -> AccountProfile:
        async with make_client(self._transport) as client:
            resp = await send(client, "GET", f"{_GRAPH}/me", action="Microsoft profile", headers=bearer(access_token))
        data = resp.json()
        return AccountProfile(
            email=data.get("mail") or data.get("userPrincipalName"),
            account_id=data.get("id"),
            name=data.get("displayName"),
        )

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        form = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": " ".join(self.scopes),
        }
        if redirect_uri:
            form["redirect_uri"] = redirect_uri
        async with make_client(self._transport) as client:
            resp = await send(client, "POST", _TOKEN_URL, action="Microsoft token refresh", data=form)
        return parse_token_response(resp.json(), action="Microsoft token refresh")

    async def list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_GRAPH}/me/calendars",
                action="Microsoft calendar list",
                headers=bearer(access_token),
            )
        return [
            RemoteCalendar(
                external_id=cal["id"],
                name=cal.get("name") or cal["id"],
                is_primary=bool(cal.get("isDefaultCalendar")),
            )
            for cal in resp.json().get("value", [])
        ]

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage:
        if continuation_token:
            url = continuation_token
        else:
            if not container_id:
                raise ProviderError("Microsoft calendar listing needs a calendar id")
            now = datetime.now(timezone.utc)
            params = {
                "startDateTime": (now - timedelta(days=config.calendar_sync_days_behind)).isoformat(),
                "endDateTime": (now + timedelta(days=config.calendar_sync_days_ahead)).isoformat(),
                "$select": "id,subject,start,end,showAs,isCancelled,lastModifiedDateTime",
                "$top": "250",
            }
            url = f"{_GRAPH}/me/calendars/{quote(container_id, safe='')}/calendarView?{urlencode(params)}"

        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", url,
                action="Microsoft event listing",
                headers={**bearer(access_token), "Prefer": 'outlook.timezone="UTC"'},
            )
        data = resp.json()
        items = [
            _normalize_event(event, container_id)
            for event in data.get("value", [])
            if not event.get("isCancelled")
        ]
        return ItemPage(items=items, next_continuation_token=data.get("@odata.nextLink"))

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_GRAPH}/me/events/{quote(item.id, safe='')}",
                action="Microsoft event fetch",
                headers=bearer(access_token),
            )
        return DownloadedItem(content=resp.content, content_type="application/json")

    async def revoke_token(self, access_token: str) -> bool:
        # Graph has no token revocation endpoint for delegated tokens.
        return False


def _graph_time(value: Optional[dict]) -> Optional[datetime]:
    if not value:
        return None
    return parse_timestamp(value.get("dateTime"))


def _normalize_event(event: dict, calendar_id: Optional[str]) -> RemoteItem:
    return RemoteItem(
        id=event["id"],
        name=event.get("subject") or "(no title)",
        content_type="application/json",
        modified_at=parse_timestamp(event.get("lastModifiedDateTime")),
        parent_path=calendar_id,
        starts_at=_graph_time(event.get("start")),
        ends_at=_graph_time(event.get("end")),
        is_busy=event.get("showAs") != "free",
    )
