"""
AppleCalDAVAdapter — iCloud calendars over CalDAV with an app-specific password.

There is no redirect flow: ``verify_credentials`` probes the calendar home
with a ``PROPFIND`` and, on success, the Basic credential itself becomes the
stored "access token" (no expiry, never refreshed).  Calendar object
resources (.ics) are mirrored like files.

The continuation token is a newline-separated queue of calendar collection
hrefs still to be walked.
"""

from __future__ import annotations

import base64
import binascii
import logging
import xml.etree.ElementTree as ET
from email.utils import parsedate_to_datetime
from typing import List, Optional
from urllib.parse import quote, unquote, urljoin, urlparse

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
from connectors.errors import (
    ConfigurationError,
    ExchangeFailed,
    ProviderError,
    ProviderErrorKind,
)
from connectors.http import make_client, send

logger = logging.getLogger(__name__)

_DAV = "{DAV:}"

_PROBE_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:displayname/>
  </d:prop>
</d:propfind>"""

_LIST_BODY = """<?xml version="1.0" encoding="UTF-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <d:getcontenttype/>
    <d:getcontentlength/>
    <d:getlastmodified/>
  </d:prop>
</d:propfind>"""


def encode_credential(username: str, app_password: str) -> str:
    return base64.b64encode(f"{username}:{app_password}".encode("utf-8")).decode("ascii")


def _username(access_token: str) -> str:
    try:
        decoded = base64.b64decode(access_token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ProviderError("Malformed CalDAV credential", ProviderErrorKind.AUTH_EXPIRED) from exc
    return decoded.split(":", 1)[0]


class AppleCalDAVAdapter:
    provider = Provider.APPLE_CALDAV
    display_name = "Apple iCloud Calendar"
    kind = AdapterKind.FILES
    auth_mode = AuthMode.APP_PASSWORD
    scopes = ["calendars"]

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._base_url = (base_url or config.caldav_base_url).rstrip("/")

    def is_configured(self) -> bool:
        return bool(self._base_url)

    def _home_url(self, username: str) -> str:
        return f"{self._base_url}/{quote(username, safe='@')}/calendars/"

    # ── Redirect-flow operations do not apply ──────────────────────────

    def build_authorization_url(self, client_id: str, redirect_uri: str, csrf_state: str) -> str:
        raise ConfigurationError("Apple CalDAV is linked with an app-specific password, not OAuth")

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant:
        raise ConfigurationError("Apple CalDAV is linked with an app-specific password, not OAuth")

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        raise ConfigurationError("Apple CalDAV app passwords do not expire and cannot be refreshed")

    async def revoke_token(self, access_token: str) -> bool:
        # App-specific passwords are revoked by the user at appleid.apple.com.
        return False

    # ── Credential probe ───────────────────────────────────────────────

    async def verify_credentials(self, username: str, app_password: str) -> TokenGrant:
        credential = encode_credential(username, app_password)
        async with make_client(self._transport) as client:
            try:
                await send(
                    client, "PROPFIND", self._home_url(username),
                    action="CalDAV credential probe",
                    headers={
                        "Authorization": f"Basic {credential}",
                        "Content-Type": "application/xml",
                        "Depth": "0",
                    },
                    content=_PROBE_BODY,
                )
            except ProviderError as exc:
                if exc.kind == ProviderErrorKind.AUTH_EXPIRED:
                    raise ExchangeFailed(
                        "Invalid credentials. Check the Apple ID and app-specific password."
                    ) from exc
                raise
        return TokenGrant(access_token=credential, refresh_token=None, expires_in_seconds=None)

    async def fetch_account_profile(self, access_token: str) -> AccountProfile:
        username = _username(access_token)
        return AccountProfile(email=username, account_id=username)

    # ── Listing / download ─────────────────────────────────────────────

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage:
        at_home = continuation_token is None
        if at_home:
            pending: List[str] = [container_id or self._home_url(_username(access_token))]
        else:
            pending = [href for href in continuation_token.split("\n") if href]
        if not pending:
            return ItemPage()

        current = pending.pop(0)
        url = urljoin(self._base_url + "/", current)
        async with make_client(self._transport) as client:
            resp = await send(
                client, "PROPFIND", url,
                action="CalDAV listing",
                headers={
                    "Authorization": f"Basic {access_token}",
                    "Content-Type": "application/xml",
                    "Depth": "1",
                },
                content=_LIST_BODY,
            )

        items: List[RemoteItem] = []
        current_path = urlparse(url).path.rstrip("/")
        for entry in _parse_multistatus(resp.content):
            if urlparse(entry["href"]).path.rstrip("/") == current_path:
                continue
            if entry["is_collection"]:
                # Only the calendar home's children are walked; no deeper.
                if at_home:
                    pending.append(entry["href"])
                continue
            items.append(
                RemoteItem(
                    id=entry["href"],
                    name=entry["name"],
                    content_type=entry["content_type"] or "text/calendar",
                    size=entry["size"],
                    modified_at=entry["modified_at"],
                    parent_path=current,
                    ref=entry["href"],
                )
            )
        return ItemPage(items=items, next_continuation_token="\n".join(pending) or None)

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem:
        url = urljoin(self._base_url + "/", item.ref or item.id)
        async with make_client(self._transport) as client:
            resp = await send(
                client, "GET", url,
                action="CalDAV download",
                headers={"Authorization": f"Basic {access_token}"},
            )
        return DownloadedItem(
            content=resp.content,
            content_type=resp.headers.get("content-type") or "text/calendar",
        )


def _parse_multistatus(body: bytes) -> List[dict]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ProviderError(f"Unparseable CalDAV response: {exc}", ProviderErrorKind.UNKNOWN) from exc

    entries = []
    for response in root.iter(f"{_DAV}response"):
        href = response.findtext(f"{_DAV}href")
        if not href:
            continue
        # A response can split its properties across several propstat blocks.
        props = response.findall(f".//{_DAV}prop")
        if not props:
            continue

        def _text(tag: str) -> Optional[str]:
            for prop in props:
                value = prop.findtext(f"{_DAV}{tag}")
                if value:
                    return value.strip()
            return None

        resourcetype = next(
            (rt for rt in (p.find(f"{_DAV}resourcetype") for p in props) if rt is not None),
            None,
        )
        length = _text("getcontentlength")
        modified = _text("getlastmodified")
        modified_at = None
        if modified:
            try:
                modified_at = parsedate_to_datetime(modified)
            except (TypeError, ValueError):
                modified_at = None
        entries.append(
            {
                "href": href,
                "name": _text("displayname") or unquote(href.rstrip("/").rsplit("/", 1)[-1]),
                "is_collection": resourcetype is not None and resourcetype.find(f"{_DAV}collection") is not None,
                "content_type": _text("getcontenttype"),
                "size": int(length) if length and length.isdigit() else None,
                "modified_at": modified_at,
            }
        )
    return entries
