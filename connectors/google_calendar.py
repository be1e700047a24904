"""
GoogleCalendarAdapter — OAuth2 authorization-code flow for Google Calendar.

Events are listed per calendar inside the configured sync window; the
continuation token is Google's bare ``nextPageToken`` string.
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

_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_TOKEN_URL = "https://oauth2.googleapis.com/token"
_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


class GoogleCalendarAdapter:
    provider = Provider.GOOGLE_CALENDAR
    display_name = "Google Calendar"
    kind = AdapterKind.CALENDAR
    auth_mode = AuthMode.OAUTH
    scopes = [
        "openid",
        "email",
        "https://www.googleapis.com/auth/calendar.readonly",
    ]

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    def build_authorization_url(self, client_id: str, redirect_uri: str, csrf_state: str) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": csrf_state,
            "access_type": "offline",   # ask for a refresh token
            "prompt": "consent",
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="Google token exchange",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        return parse_token_response(resp.json(), action="Google token exchange")

    async def fetch_account_profile(self, access_token: str) -> AccountProfile:
        async with make_client(self._transport) as client:
            resp = await send(client, "GET", _USERINFO_URL, action="Google profile", headers=bearer(access_token))
        data = resp.json()
        return AccountProfile(email=data.get("email"), account_id=data.get("id"), name=data.get("name"))

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="Google token refresh",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        return parse_token_response(resp.json(), action="Google token refresh")

    async def list_calendars(self, access_token: str) -> List[RemoteCalendar]:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_CALENDAR_API}/users/me/calendarList",
                action="Google calendar list",
                headers=bearer(access_token),
            )
        return [
            RemoteCalendar(
                external_id=cal["id"],
                name=cal.get("summary") or cal["id"],
                time_zone=cal.get("timeZone"),
                is_primary=bool(cal.get("primary")),
            )
            for cal in resp.json().get("items", [])
        ]

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage:
        if not container_id:
            raise ProviderError("Google Calendar listing needs a calendar id")
        now = datetime.now(timezone.utc)
        params = {
            "maxResults": "250",
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": (now - timedelta(days=config.calendar_sync_days_behind)).isoformat(),
            "timeMax": (now + timedelta(days=config.calendar_sync_days_ahead)).isoformat(),
        }
        if continuation_token:
            params["pageToken"] = continuation_token

        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_CALENDAR_API}/calendars/{quote(container_id, safe='')}/events",
                action="Google event listing",
                headers=bearer(access_token),
                params=params,
            )
        data = resp.json()
        items = [
            _normalize_event(event, container_id)
            for event in data.get("items", [])
            if event.get("status") != "cancelled"
        ]
        return ItemPage(items=items, next_continuation_token=data.get("nextPageToken"))

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        calendar_id = item.parent_path or "primary"
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET",
                f"{_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events/{quote(item.id, safe='')}",
                action="Google event fetch",
                headers=bearer(access_token),
            )
        return DownloadedItem(content=resp.content, content_type="application/json")

    async def revoke_token(self, access_token: str) -> bool:
        async with make_client(self._transport) as client:
            resp = await client.post(_REVOKE_URL, params={"token": access_token})
        return resp.status_code == 200


def _normalize_event(event: dict, calendar_id: str) -> RemoteItem:
    start = event.get("start") or {}
    end = event.get("end") or {}
    return RemoteItem(
        id=event["id"],
        name=event.get("summary") or "(no title)",
        content_type="application/json",
        modified_at=parse_timestamp(event.get("updated")),
        parent_path=calendar_id,
        starts_at=parse_timestamp(start.get("dateTime") or start.get("date")),
        ends_at=parse_timestamp(end.get("dateTime") or end.get("date")),
        is_busy=event.get("transparency") != "transparent",
    )
