"""
ProviderAdapter — the capability set every provider implements.

Adapters are plain classes that satisfy this protocol; nothing subclasses a
shared base.  They are looked up by their ``Provider`` tag in the registry.
Continuation tokens returned from ``list_items`` are opaque to callers and
only ever handed back to the adapter that produced them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class Provider(str, Enum):
    GOOGLE_CALENDAR = "google_calendar"
    MICROSOFT_CALENDAR = "microsoft_calendar"
    GOOGLE_DRIVE = "google_drive"
    MICROSOFT_ONEDRIVE = "microsoft_onedrive"
    DROPBOX = "dropbox"
    APPLE_CALDAV = "apple_caldav"


class AdapterKind(str, Enum):
    CALENDAR = "calendar"
    FILES = "files"


class AuthMode(str, Enum):
    OAUTH = "oauth"
    APP_PASSWORD = "app_password"


# ── Normalized payloads ─────────────────────────────────────────────────


class TokenGrant(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in_seconds: Optional[int] = None


class AccountProfile(BaseModel):
    email: Optional[str] = None
    account_id: Optional[str] = None
    name: Optional[str] = None


class RemoteItem(BaseModel):
    """One listed file or calendar event; never persisted past a run."""

    id: str
    name: str
    content_type: Optional[str] = None
    size: Optional[int] = None
    modified_at: Optional[datetime] = None
    parent_path: Optional[str] = None
    ref: Optional[str] = None           # adapter-specific download handle
    is_folder: bool = False
    downloadable: bool = True

    # calendar events only
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_busy: bool = True


class ItemPage(BaseModel):
    items: List[RemoteItem] = Field(default_factory=list)
    next_continuation_token: Optional[str] = None


class DownloadedItem(BaseModel):
    content: bytes
    content_type: Optional[str] = None


class RemoteCalendar(BaseModel):
    external_id: str
    name: str
    time_zone: Optional[str] = None
    is_primary: bool = False


# ── Capability set ──────────────────────────────────────────────────────


@runtime_checkable
class ProviderAdapter(Protocol):
    provider: Provider
    display_name: str
    kind: AdapterKind
    auth_mode: AuthMode
    scopes: List[str]

    def is_configured(self) -> bool: ...

    def build_authorization_url(self, client_id: str, redirect_uri: str, csrf_state: str) -> str: ...

    async def exchange_code(
        self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenGrant: ...

    async def fetch_account_profile(self, access_token: str) -> AccountProfile: ...

    async def refresh_access_token(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant: ...

    async def list_items(
        self,
        access_token: str,
        continuation_token: Optional[str] = None,
        *,
        container_id: Optional[str] = None,
    ) -> ItemPage: ...

    async def download_item(self, access_token: str, item: RemoteItem) -> DownloadedItem: ...

    async def revoke_token(self, access_token: str) -> bool: ...


@runtime_checkable
class CalendarAdapter(ProviderAdapter, Protocol):
    async def list_calendars(self, access_token: str) -> List[RemoteCalendar]: ...
