"""
DropboxAdapter — OAuth2 for Dropbox.

Dropbox's token endpoint authenticates the client with HTTP Basic
(client_id:client_secret) rather than body parameters.  Listing pages are
continued with a bare ``cursor`` string.
"""

from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.parse import urlencode

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
from connectors.errors import ProviderError, ProviderErrorKind
from connectors.http import bearer, make_client, parse_timestamp, parse_token_response, send

logger = logging.getLogger(__name__)

_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
_TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
_API = "https://api.dropboxapi.com/2"
_CONTENT_API = "https://content.dropboxapi.com/2"
_PAGE_SIZE = 100


class DropboxAdapter:
    provider = Provider.DROPBOX
    display_name = "Dropbox"
    kind = AdapterKind.FILES
    auth_mode = AuthMode.OAUTH
    scopes = ["account_info.read", "files.metadata.read", "files.content.read"]

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(config.dropbox_client_id and config.dropbox_client_secret)

    def build_authorization_url(self, client_id: str, redirect_uri: str, csrf_state: str) -> str:
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": csrf_state,
            "token_access_type": "offline",     # ask for a refresh token
            "scope": " ".join(self.scopes),
        }
        return f"{_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", _TOKEN_URL,
                action="Dropbox token exchange",
                auth=(client_id, client_secret),
                data={
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
            )
        return parse_token_response(resp.json(), action="Dropbox token exchange")

    async def fetch_account_profile(self, access_token: str) -> AccountProfile:
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", f"{_API}/users/get_current_account",
                action="Dropbox profile",
                headers=bearer(access_token),
            )
        data = resp.json()
        return AccountProfile(
            email=data.get("email"),
            account_id=data.get("account_id"),
            name=(data.get("name") or {}).get("display_name"),
        )

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
                action="Dropbox token refresh",
                auth=(client_id, client_secret),
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        return parse_token_response(resp.json(), action="Dropbox token refresh")

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage:
        if continuation_token:
            url = f"{_API}/files/list_folder/continue"
            body = {"cursor": continuation_token}
        else:
            url = f"{_API}/files/list_folder"
            body = {"path": container_id or "", "recursive": True, "limit": _PAGE_SIZE}

        async with make_client(self._transport) as client:
            resp = await send(client, "POST", url, action="Dropbox listing", headers=bearer(access_token), json=body)
        data = resp.json()
        items = []
        for entry in data.get("entries", []):
            tag = entry.get(".tag")
            if tag == "deleted":
                continue
            items.append(
                RemoteItem(
                    id=entry.get("id") or entry.get("path_lower") or entry["name"],
                    name=entry["name"],
                    size=entry.get("size"),
                    modified_at=parse_timestamp(entry.get("server_modified")),
                    parent_path=entry.get("path_display"),
                    ref=entry.get("path_lower"),
                    is_folder=tag == "folder",
                    downloadable=tag == "file" and bool(entry.get("path_lower")),
                )
            )
        next_token = data.get("cursor") if data.get("has_more") else None
        return ItemPage(items=items, next_continuation_token=next_token)

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        if not item.ref:
            raise ProviderError(f"Dropbox item {item.id} has no path", ProviderErrorKind.NOT_FOUND)
        async with make_client(self._transport) as client:
            resp = await send(
                client, "POST", f"{_CONTENT_API}/files/download",
                action="Dropbox download",
                headers={
                    **bearer(access_token),
                    "Dropbox-API-Arg": json.dumps({"path": item.ref}),
                },
            )
        return DownloadedItem(content=resp.content, content_type=resp.headers.get("content-type"))

    async def revoke_token(self, access_token: str) -> bool:
        async with make_client(self._transport) as client:
            resp = await client.post(f"{_API}/auth/token/revoke", headers=bearer(access_token))
        return resp.status_code == 200
