"""
OneDriveAdapter — Microsoft OneDrive files via Microsoft Graph.

Lists the drive root's children; the continuation token is the full
``@odata.nextLink`` URL.
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

_AUTH_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
_GRAPH = "https://graph.microsoft.com/v1.0"
_PAGE_SIZE = 100


class OneDriveAdapter:
    provider = Provider.MICROSOFT_ONEDRIVE
    display_name = "OneDrive"
    kind = AdapterKind.FILES
    auth_mode = AuthMode.OAUTH
    scopes = ["offline_access", "User.Read", "Files.Read"]

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
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="OneDrive token exchange",
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                    "scope": " ".join(self.scopes),
                },
            )
        return parse_token_response(resp.json(), action="OneDrive token exchange")

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
            resp = await send(client, "POST", _TOKEN_URL, action="OneDrive token refresh", data=form)
        return parse_token_response(resp.json(), action="OneDrive token refresh")

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
            params = {
                "$top": str(_PAGE_SIZE),
                "$select": "id,name,size,file,folder,lastModifiedDateTime,parentReference",
            }
            url = f"{_GRAPH}/me/drive/root/children?{urlencode(params)}"

        async with make_client(self._transport) as client:
            resp = await send(client, "GET", url, action="OneDrive listing", headers=bearer(access_token))
        data = resp.json()
        items = []
        for entry in data.get("value", []):
            file_facet = entry.get("file")
            items.append(
                RemoteItem(
                    id=entry["id"],
                    name=entry.get("name") or entry["id"],
                    content_type=(file_facet or {}).get("mimeType"),
                    size=entry.get("size") if isinstance(entry.get("size"), int) else None,
                    modified_at=parse_timestamp(entry.get("lastModifiedDateTime")),
                    parent_path=(entry.get("parentReference") or {}).get("path") or "root",
                    is_folder="folder" in entry,
                    downloadable=file_facet is not None,
                )
            )
        return ItemPage(items=items, next_continuation_token=data.get("@odata.nextLink"))

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        # /content answers with a 302 to a pre-authenticated download URL.
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", f"{_GRAPH}/me/drive/items/{quote(item.id, safe='')}/content",
                action="OneDrive download",
                headers=bearer(access_token),
                follow_redirects=True,
            )
        return DownloadedItem(
            content=resp.content,
            content_type=resp.headers.get("content-type") or item.content_type,
        )

    async def revoke_token(self, access_token: str) -> bool:
        return False
