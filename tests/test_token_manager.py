"""
Tests for access-token reuse and refresh-before-expiry.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from config.settings import config
from connectors.base import Provider, TokenGrant
from connectors.errors import AuthExpired, ConfigurationError, DecryptionError, ProviderError, ProviderErrorKind
from connectors.token_manager import TokenManager
from database.models import ConnectionStatus
from tests.fakes import FakeFileAdapter


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def adapter(registry):
    fake = FakeFileAdapter(Provider.DROPBOX)
    fake.refresh_access_token = AsyncMock(
        return_value=TokenGrant(access_token="new-access", expires_in_seconds=3600)
    )
    registry.register(fake)
    return fake


@pytest.fixture
def credentials():
    with patch.object(config, "dropbox_client_id", "dbx-id"), \
            patch.object(config, "dropbox_client_secret", "dbx-secret"):
        yield


@pytest.fixture
def tokens(store, vault, registry):
    return TokenManager(store, vault, registry, refresh_margin_seconds=60)


class TestReuse:
    @pytest.mark.asyncio
    async def test_no_expiry_reuses_token(self, tokens, adapter, store, vault):
        conn = store.add_connection(vault, expires_at=None)
        assert await tokens.get_access_token(conn) == "access-token"
        adapter.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_far_expiry_reuses_token(self, tokens, adapter, store, vault):
        conn = store.add_connection(vault, expires_at=_now() + timedelta(hours=1))
        assert await tokens.get_access_token(conn) == "access-token"
        adapter.refresh_access_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inside_margin_refreshes(self, tokens, adapter, credentials, store, vault):
        conn = store.add_connection(vault, expires_at=_now() + timedelta(seconds=30))
        assert await tokens.get_access_token(conn) == "new-access"
        adapter.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_tampered_token(self, tokens, adapter, store, vault):
        conn = store.add_connection(vault, expires_at=None)
        conn.access_token_enc = {**conn.access_token_enc, "salt": vault.encrypt("x").salt}
        with pytest.raises(DecryptionError):
            await tokens.get_access_token(conn)

    @pytest.mark.asyncio
    async def test_revoked_connection_has_no_token(self, tokens, adapter, store, vault):
        conn = store.add_connection(vault)
        conn.access_token_enc = None
        with pytest.raises(AuthExpired):
            await tokens.get_access_token(conn)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once_and_persisted(self, tokens, adapter, credentials, store, vault):
        conn = store.add_connection(vault, expires_at=_now() - timedelta(minutes=5))

        token = await tokens.get_access_token(conn)

        assert token == "new-access"
        adapter.refresh_access_token.assert_awaited_once_with(
            "dbx-id", "dbx-secret", "refresh-token", config.redirect_uri("dropbox")
        )
        stored = store.connections[conn.id]
        assert vault.decrypt(stored.access_token_secret) == "new-access"
        # No rotated refresh token: the old one stays.
        assert vault.decrypt(stored.refresh_token_secret) == "refresh-token"
        assert stored.expires_at > _now() + timedelta(minutes=59)

        # Fresh expiry: the next call does not refresh again.
        assert await tokens.get_access_token(conn) == "new-access"
        adapter.refresh_access_token.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_stored(self, tokens, adapter, credentials, store, vault):
        adapter.refresh_access_token.return_value = TokenGrant(
            access_token="new-access", refresh_token="rotated", expires_in_seconds=3600
        )
        conn = store.add_connection(vault, expires_at=_now() - timedelta(minutes=5))
        await tokens.get_access_token(conn)
        assert vault.decrypt(store.connections[conn.id].refresh_token_secret) == "rotated"

    @pytest.mark.asyncio
    async def test_refresh_failure_marks_error(self, tokens, adapter, credentials, store, vault):
        adapter.refresh_access_token.side_effect = ProviderError("invalid_grant", ProviderErrorKind.AUTH_EXPIRED)
        conn = store.add_connection(vault, expires_at=_now() - timedelta(minutes=5))

        with pytest.raises(AuthExpired):
            await tokens.get_access_token(conn)

        stored = store.connections[conn.id]
        assert stored.status == ConnectionStatus.ERROR.value
        assert "invalid_grant" in stored.error_message

    @pytest.mark.asyncio
    async def test_transport_failure_marks_error(self, tokens, adapter, credentials, store, vault):
        adapter.refresh_access_token.side_effect = httpx.ConnectError("no route")
        conn = store.add_connection(vault, expires_at=_now() - timedelta(minutes=5))
        with pytest.raises(AuthExpired):
            await tokens.get_access_token(conn)
        assert store.connections[conn.id].status == ConnectionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, tokens, adapter, credentials, store, vault):
        conn = store.add_connection(vault, refresh_token=None, expires_at=_now() - timedelta(minutes=5))
        with pytest.raises(AuthExpired):
            await tokens.get_access_token(conn)
        adapter.refresh_access_token.assert_not_awaited()
        assert store.connections[conn.id].status == ConnectionStatus.ERROR.value

    @pytest.mark.asyncio
    async def test_missing_client_credentials(self, tokens, adapter, store, vault):
        conn = store.add_connection(vault, expires_at=_now() - timedelta(minutes=5))
        with patch.object(config, "dropbox_client_id", ""):
            with pytest.raises(ConfigurationError):
                await tokens.get_access_token(conn)
        adapter.refresh_access_token.assert_not_awaited()
        assert store.connections[conn.id].status == ConnectionStatus.ERROR.value
        assert "client credentials" in store.connections[conn.id].error_message

    @pytest.mark.asyncio
    async def test_unknown_provider_marks_error(self, tokens, registry, store, vault):
        conn = store.add_connection(vault, provider="myspace", expires_at=_now() - timedelta(minutes=5))
        with pytest.raises(ConfigurationError):
            await tokens.get_access_token(conn)
        assert store.connections[conn.id].status == ConnectionStatus.ERROR.value
        assert "myspace" in store.connections[conn.id].error_message
