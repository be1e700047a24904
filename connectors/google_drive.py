"""
GoogleDriveAdapter — OAuth2 file listing and download for Google Drive.
"""

from __future__ import annotations

import logging
from typing import Optional
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
    RemoteItem,
    TokenGrant,
)
from connectors.http import bearer, make_client, parse_timestamp, parse_token_response, send

logger = logging.getLogger(__name__)

_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_TOKEN_URL = "https://oauth2.googleapis.com/token"
_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_DRIVE_API = "https://www.googleapis.com/drive/v3"

_FOLDER_MIME = "application/vnd.google-apps.folder"
_NATIVE_PREFIX = "application/vnd.google-apps"
_PAGE_SIZE = 100


class GoogleDriveAdapter:
    provider = Provider.GOOGLE_DRIVE
    display_name = "Google Drive"
    kind = AdapterKind.FILES
    auth_mode = AuthMode.OAUTH
    scopes = [
        "openid",
        "email",
        "https://www.googleapis.com/auth/drive.readonly",
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
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="Google Drive token exchange",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        return parse_token_response(resp.json(), action="Google Drive token exchange")

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
                action="Google Drive token refresh",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        return parse_token_response(resp.json(), action="Google Drive token refresh")

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage:
        params = {
            "pageSize": str(_PAGE_SIZE),
            "fields": "nextPageToken,files(id,name,mimeType,size,modifiedTime,parents)",
            "q": "trashed = false",
            "orderBy": "modifiedTime desc",
        }
        if continuation_token:
            params["pageToken"] = continuation_token

        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_DRIVE_API}/files",
                action="Google Drive listing",
                headers=bearer(access_token),
                params=params,
            )
        data = resp.json()
        items = []
        for f in data.get("files", []):
            mime = f.get("mimeType") or ""
            items.append(
                RemoteItem(
                    id=f["id"],
                    name=f.get("name") or f["id"],
                    content_type=mime or None,
                    size=int(f["size"]) if f.get("size") else None,
                    modified_at=parse_timestamp(f.get("modifiedTime")),
                    parent_path=(f.get("parents") or ["root"])[0],
                    is_folder=mime == _FOLDER_MIME,
                    # Docs/Sheets/Slides have no binary content to fetch.
                    downloadable=not mime.startswith(_NATIVE_PREFIX),
                )
            )
        return ItemPage(items=items, next_continuation_token=data.get("nextPageToken"))

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_DRIVE_API}/files/{quote(item.id, safe='')}",
                action="Google Drive download",
                headers=bearer(access_token),
                params={"alt": "media"},
            )
        return DownloadedItem(
            content=resp.content,
            content_type=resp.headers.get("content-type") or item.content_type,
        )

    async def revoke_token(self, access_token: str) -> bool:
        async with make_client(self._transport) as client:
            resp = await client.post(_REVOKE_URL, params={"token": access_token})
        return resp.status_code == 200
