"""
Provider adapter tests against httpx.MockTransport.
"""

import base64
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.apple_caldav import AppleCalDAVAdapter, encode_credential
from connectors.base import CalendarAdapter, ProviderAdapter, RemoteItem
from connectors.dropbox import DropboxAdapter
from connectors.errors import ConfigurationError, ExchangeFailed, ProviderError, ProviderErrorKind
from connectors.google_calendar import GoogleCalendarAdapter
from connectors.google_drive import GoogleDriveAdapter
from connectors.http import parse_timestamp
from connectors.microsoft_calendar import MicrosoftCalendarAdapter
from connectors.onedrive import OneDriveAdapter


def _transport(handler, seen=None):
    def _wrapped(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return handler(request)
    return httpx.MockTransport(_wrapped)


def _status(code, body=None):
    return _transport(lambda request: httpx.Response(code, json=body or {"error": "x"}))


class TestCapabilitySet:
    @pytest.mark.parametrize(
        "adapter",
        [GoogleCalendarAdapter(), MicrosoftCalendarAdapter(), GoogleDriveAdapter(),
         OneDriveAdapter(), DropboxAdapter(), AppleCalDAVAdapter()],
    )
    def test_every_adapter_satisfies_protocol(self, adapter):
        assert isinstance(adapter, ProviderAdapter)

    def test_calendar_adapters(self):
        assert isinstance(GoogleCalendarAdapter(), CalendarAdapter)
        assert isinstance(MicrosoftCalendarAdapter(), CalendarAdapter)


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code, kind, retryable",
        [
            (401, ProviderErrorKind.AUTH_EXPIRED, False),
            (403, ProviderErrorKind.AUTH_EXPIRED, False),
            (404, ProviderErrorKind.NOT_FOUND, False),
            (410, ProviderErrorKind.NOT_FOUND, False),
            (429, ProviderErrorKind.RATE_LIMITED, True),
            (500, ProviderErrorKind.UNKNOWN, True),
            (503, ProviderErrorKind.UNKNOWN, True),
            (400, ProviderErrorKind.UNKNOWN, False),
        ],
    )
    async def test_status_codes(self, code, kind, retryable):
        adapter = GoogleDriveAdapter(transport=_status(code))
        with pytest.raises(ProviderError) as info:
            await adapter.list_items("token")
        assert info.value.kind == kind
        assert info.value.retryable is retryable
        assert info.value.status_code == code

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def _boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = DropboxAdapter(transport=httpx.MockTransport(_boom))
        with pytest.raises(ProviderError) as info:
            await adapter.list_items("token")
        assert info.value.kind == ProviderErrorKind.UNKNOWN
        assert info.value.retryable is True

    @pytest.mark.asyncio
    async def test_token_error_body(self):
        adapter = GoogleCalendarAdapter(
            transport=_transport(lambda r: httpx.Response(200, json={"error": "invalid_grant"}))
        )
        with pytest.raises(ProviderError, match="invalid_grant"):
            await adapter.exchange_code("code", "cid", "secret", "https://app/cb")


class TestGoogleCalendar:
    def test_authorization_url(self):
        url = GoogleCalendarAdapter().build_authorization_url("cid", "https://app/cb", "csrf-1")
        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["cid"]
        assert query["state"] == ["csrf-1"]
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["redirect_uri"] == ["https://app/cb"]

    @pytest.mark.asyncio
    async def test_exchange_posts_form(self):
        seen = []
        adapter = GoogleCalendarAdapter(transport=_transport(
            lambda r: httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3599}),
            seen,
        ))
        grant = await adapter.exchange_code("code-1", "cid", "secret", "https://app/cb")
        assert (grant.access_token, grant.refresh_token, grant.expires_in_seconds) == ("at", "rt", 3599)
        form = parse_qs(seen[0].content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["client_secret"] == ["secret"]
        assert seen[0].headers["content-type"].startswith("application/x-www-form-urlencoded")

    @pytest.mark.asyncio
    async def test_events_page_token_and_cancelled(self):
        seen = []
        body = {
            "items": [
                {"id": "e1", "summary": "Standup", "status": "confirmed",
                 "start": {"dateTime": "2024-05-01T09:00:00Z"}, "end": {"dateTime": "2024-05-01T09:15:00Z"},
                 "updated": "2024-04-30T10:00:00.123Z"},
                {"id": "e2", "status": "cancelled"},
                {"id": "e3", "summary": "Focus", "transparency": "transparent",
                 "start": {"date": "2024-05-02"}, "end": {"date": "2024-05-03"}},
            ],
            "nextPageToken": "page-2",
        }
        adapter = GoogleCalendarAdapter(transport=_transport(lambda r: httpx.Response(200, json=body), seen))

        page = await adapter.list_items("token", "page-1", container_id="team@group.calendar.google.com")

        assert [i.id for i in page.items] == ["e1", "e3"]
        assert page.next_continuation_token == "page-2"
        assert page.items[0].is_busy is True
        assert page.items[1].is_busy is False
        assert page.items[0].starts_at.isoformat() == "2024-05-01T09:00:00+00:00"
        params = seen[0].url.params
        assert params["pageToken"] == "page-1"
        assert params["singleEvents"] == "true"
        assert seen[0].headers["authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_listing_requires_calendar(self):
        with pytest.raises(ProviderError):
            await GoogleCalendarAdapter(transport=_status(200)).list_items("token")


class TestMicrosoftCalendar:
    def test_authorization_url(self):
        url = MicrosoftCalendarAdapter().build_authorization_url("cid", "https://app/cb", "csrf-1")
        query = parse_qs(urlparse(url).query)
        assert query["response_mode"] == ["query"]
        assert "offline_access" in query["scope"][0]

    @pytest.mark.asyncio
    async def test_next_link_is_used_verbatim(self):
        next_link = "https://graph.microsoft.com/v1.0/me/calendars/c1/calendarView?$skiptoken=abc"
        seen = []
        body = {
            "value": [
                {"id": "m1", "subject": "1:1", "showAs": "free",
                 "start": {"dateTime": "2024-05-01T09:00:00.0000000"},
                 "end": {"dateTime": "2024-05-01T09:30:00.0000000"}},
                {"id": "m2", "isCancelled": True},
            ],
            "@odata.nextLink": next_link,
        }
        adapter = MicrosoftCalendarAdapter(transport=_transport(lambda r: httpx.Response(200, json=body), seen))

        first = await adapter.list_items("token", container_id="c1")
        assert [i.id for i in first.items] == ["m1"]
        assert first.items[0].is_busy is False
        assert first.next_continuation_token == next_link

        await adapter.list_items("token", first.next_continuation_token, container_id="c1")
        assert seen[1].url.path == "/v1.0/me/calendars/c1/calendarView"
        assert seen[1].url.params["$skiptoken"] == "abc"

    @pytest.mark.asyncio
    async def test_profile_falls_back_to_upn(self):
        adapter = MicrosoftCalendarAdapter(transport=_transport(
            lambda r: httpx.Response(200, json={"id": "u1", "mail": None, "userPrincipalName": "me@corp.com"})
        ))
        profile = await adapter.fetch_account_profile("token")
        assert profile.email == "me@corp.com"

    @pytest.mark.asyncio
    async def test_no_remote_revocation(self):
        assert await MicrosoftCalendarAdapter().revoke_token("token") is False


class TestGoogleDrive:
    @pytest.mark.asyncio
    async def test_listing_flags_folders_and_native_docs(self):
        body = {
            "files": [
                {"id": "f1", "name": "Reports", "mimeType": "application/vnd.google-apps.folder"},
                {"id": "f2", "name": "Plan", "mimeType": "application/vnd.google-apps.document"},
                {"id": "f3", "name": "a.pdf", "mimeType": "application/pdf", "size": "2048",
                 "modifiedTime": "2024-04-01T12:00:00.000Z", "parents": ["p1"]},
            ],
        }
        adapter = GoogleDriveAdapter(transport=_transport(lambda r: httpx.Response(200, json=body)))
        page = await adapter.list_items("token")
        folder, doc, pdf = page.items
        assert folder.is_folder and not pdf.is_folder
        assert doc.downloadable is False
        assert pdf.downloadable is True
        assert pdf.size == 2048
        assert pdf.parent_path == "p1"
        assert page.next_continuation_token is None

    @pytest.mark.asyncio
    async def test_download_uses_alt_media(self):
        seen = []
        adapter = GoogleDriveAdapter(transport=_transport(
            lambda r: httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf"}), seen
        ))
        result = await adapter.download_item("token", RemoteItem(id="f3", name="a.pdf"))
        assert result.content == b"%PDF"
        assert result.content_type == "application/pdf"
        assert seen[0].url.params["alt"] == "media"


class TestOneDrive:
    @pytest.mark.asyncio
    async def test_listing(self):
        body = {
            "value": [
                {"id": "d1", "name": "Docs", "folder": {"childCount": 2}},
                {"id": "d2", "name": "notes.txt", "size": 12, "file": {"mimeType": "text/plain"},
                 "lastModifiedDateTime": "2024-04-01T12:00:00Z"},
            ],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/drive/root/children?$skiptoken=x",
        }
        adapter = OneDriveAdapter(transport=_transport(lambda r: httpx.Response(200, json=body)))
        page = await adapter.list_items("token")
        assert page.items[0].is_folder is True
        assert page.items[0].downloadable is False
        assert page.items[1].content_type == "text/plain"
        assert page.next_continuation_token.endswith("$skiptoken=x")

    @pytest.mark.asyncio
    async def test_download_follows_redirect(self):
        def handler(request):
            if request.url.path.endswith("/content"):
                return httpx.Response(302, headers={"location": "https://files.example.com/blob/d2"})
            return httpx.Response(200, content=b"hello", headers={"content-type": "text/plain"})

        adapter = OneDriveAdapter(transport=_transport(handler))
        result = await adapter.download_item("token", RemoteItem(id="d2", name="notes.txt"))
        assert result.content == b"hello"


class TestDropbox:
    @pytest.mark.asyncio
    async def test_token_exchange_uses_basic_auth(self):
        seen = []
        adapter = DropboxAdapter(transport=_transport(
            lambda r: httpx.Response(200, json={"access_token": "sl.at", "expires_in": 14400, "refresh_token": "rt"}),
            seen,
        ))
        grant = await adapter.exchange_code("code-1", "app-key", "app-secret", "https://app/cb")
        assert grant.access_token == "sl.at"
        expected = "Basic " + base64.b64encode(b"app-key:app-secret").decode()
        assert seen[0].headers["authorization"] == expected
        form = parse_qs(seen[0].content.decode())
        assert "client_secret" not in form
        assert form["code"] == ["code-1"]

    @pytest.mark.asyncio
    async def test_refresh_uses_basic_auth(self):
        seen = []
        adapter = DropboxAdapter(transport=_transport(
            lambda r: httpx.Response(200, json={"access_token": "sl.new", "expires_in": 14400}), seen
        ))
        grant = await adapter.refresh_access_token("app-key", "app-secret", "rt")
        assert grant.refresh_token is None
        assert seen[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_cursor_paging(self):
        seen = []

        def handler(request):
            if request.url.path.endswith("/continue"):
                return httpx.Response(200, json={"entries": [], "cursor": "c2", "has_more": False})
            return httpx.Response(200, json={
                "entries": [
                    {".tag": "file", "id": "id:1", "name": "a.txt", "path_lower": "/a.txt",
                     "path_display": "/a.txt", "size": 3, "server_modified": "2024-04-01T12:00:00Z"},
                    {".tag": "folder", "id": "id:2", "name": "dir", "path_lower": "/dir"},
                    {".tag": "deleted", "name": "gone.txt", "path_lower": "/gone.txt"},
                ],
                "cursor": "c1",
                "has_more": True,
            })

        adapter = DropboxAdapter(transport=_transport(handler, seen))
        first = await adapter.list_items("token")
        assert [i.id for i in first.items] == ["id:1", "id:2"]
        assert first.items[0].ref == "/a.txt"
        assert first.items[1].is_folder is True
        assert first.next_continuation_token == "c1"

        second = await adapter.list_items("token", first.next_continuation_token)
        assert json.loads(seen[1].content) == {"cursor": "c1"}
        assert second.next_continuation_token is None

    @pytest.mark.asyncio
    async def test_download_sends_api_arg(self):
        seen = []
        adapter = DropboxAdapter(transport=_transport(lambda r: httpx.Response(200, content=b"abc"), seen))
        result = await adapter.download_item("token", RemoteItem(id="id:1", name="a.txt", ref="/a.txt"))
        assert result.content == b"abc"
        assert json.loads(seen[0].headers["dropbox-api-arg"]) == {"path": "/a.txt"}


_HOME = """<?xml version="1.0" encoding="UTF-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/me@icloud.com/calendars/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/me@icloud.com/calendars/work/</d:href>
    <d:propstat><d:prop>
      <d:displayname>Work</d:displayname>
      <d:resourcetype><d:collection/></d:resourcetype>
    </d:prop></d:propstat>
  </d:response>
</d:multistatus>"""

_WORK = """<?xml version="1.0" encoding="UTF-8"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/me@icloud.com/calendars/work/</d:href>
    <d:propstat><d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop></d:propstat>
  </d:response>
  <d:response>
    <d:href>/me@icloud.com/calendars/work/event-1.ics</d:href>
    <d:propstat><d:prop>
      <d:resourcetype/>
      <d:getcontenttype>text/calendar; charset=utf-8</d:getcontenttype>
      <d:getcontentlength>512</d:getcontentlength>
    </d:prop></d:propstat>
    <d:propstat><d:prop>
      <d:getlastmodified>Wed, 01 May 2024 09:00:00 GMT</d:getlastmodified>
    </d:prop></d:propstat>
  </d:response>
</d:multistatus>"""


class TestAppleCalDAV:
    @pytest.mark.asyncio
    async def test_verify_credentials_probe(self):
        seen = []
        adapter = AppleCalDAVAdapter(
            transport=_transport(lambda r: httpx.Response(207, content=_HOME.encode()), seen),
            base_url="https://caldav.example.com",
        )
        grant = await adapter.verify_credentials("me@icloud.com", "abcd-efgh-ijkl-mnop")

        assert grant.access_token == encode_credential("me@icloud.com", "abcd-efgh-ijkl-mnop")
        assert grant.refresh_token is None
        assert grant.expires_in_seconds is None
        assert seen[0].method == "PROPFIND"
        assert seen[0].headers["depth"] == "0"
        assert seen[0].url.path == "/me@icloud.com/calendars/"

    @pytest.mark.asyncio
    async def test_bad_password(self):
        adapter = AppleCalDAVAdapter(transport=_status(401), base_url="https://caldav.example.com")
        with pytest.raises(ExchangeFailed):
            await adapter.verify_credentials("me@icloud.com", "wrong")

    @pytest.mark.asyncio
    async def test_walks_collections(self):
        def handler(request):
            body = _WORK if request.url.path.rstrip("/").endswith("/work") else _HOME
            return httpx.Response(207, content=body.encode())

        adapter = AppleCalDAVAdapter(transport=_transport(handler), base_url="https://caldav.example.com")
        token = encode_credential("me@icloud.com", "pw")

        home = await adapter.list_items(token)
        assert home.items == []
        assert home.next_continuation_token == "/me@icloud.com/calendars/work/"

        work = await adapter.list_items(token, home.next_continuation_token)
        assert work.next_continuation_token is None
        [event] = work.items
        assert event.id == "/me@icloud.com/calendars/work/event-1.ics"
        assert event.name == "event-1.ics"
        assert event.size == 512
        assert event.modified_at is not None

    @pytest.mark.asyncio
    async def test_profile_is_username(self):
        profile = await AppleCalDAVAdapter().fetch_account_profile(encode_credential("me@icloud.com", "pw"))
        assert profile.email == "me@icloud.com"

    def test_no_redirect_flow(self):
        with pytest.raises(ConfigurationError):
            AppleCalDAVAdapter().build_authorization_url("cid", "https://app/cb", "state")


class TestTimestamps:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2024-05-01T09:00:00Z", "2024-05-01T09:00:00+00:00"),
            ("2024-05-01T09:00:00.1234567", "2024-05-01T09:00:00.123456+00:00"),
            ("2024-05-01T09:00:00.5Z", "2024-05-01T09:00:00.500000+00:00"),
            ("2024-05-01", "2024-05-01T00:00:00+00:00"),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_timestamp(raw).isoformat() == expected

    @pytest.mark.parametrize("raw", [None, "", "not a date"])
    def test_unparseable(self, raw):
        assert parse_timestamp(raw) is None
