"""
Token manager — hands out a usable access token for a Connection.

This is the single interface the orchestrator uses before any adapter call.
Tokens close to expiry are refreshed through the provider adapter and the
rotated values are re-encrypted and persisted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from config.settings import config
from connectors.errors import AuthExpired, ConfigurationError, ProviderError
from connectors.registry import ConnectorRegistry
from connectors.vault import CredentialVault
from database.models import Connection
from database.store import SyncStore

logger = logging.getLogger(__name__)


def expiry_from(expires_in_seconds: Optional[int], now: Optional[datetime] = None) -> Optional[datetime]:
    if expires_in_seconds is None:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in_seconds)


class TokenManager:
    def __init__(
        self,
        store: SyncStore,
        vault: CredentialVault,
        registry: Optional[ConnectorRegistry] = None,
        *,
        refresh_margin_seconds: Optional[int] = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._registry = registry or ConnectorRegistry()
        self._margin = timedelta(
            seconds=config.token_refresh_margin_seconds if refresh_margin_seconds is None else refresh_margin_seconds
        )

    def needs_refresh(self, connection: Connection, now: Optional[datetime] = None) -> bool:
        if connection.expires_at is None:
            return False
        return connection.expires_at <= (now or datetime.now(timezone.utc)) + self._margin

    async def get_access_token(self, connection: Connection) -> str:
        """
        Return a plaintext access token valid for at least the refresh margin.

        Raises ``AuthExpired`` when the token cannot be refreshed (the
        Connection is marked ``error`` first), ``DecryptionError`` when the
        stored secret does not decrypt.
        """
        secret = connection.access_token_secret
        if secret is None:
            raise AuthExpired(f"Connection {connection.id} has no usable access token")

        if not self.needs_refresh(connection):
            return self._vault.decrypt(secret)
        return await self._refresh(connection)

    async def _refresh(self, connection: Connection) -> str:
        adapter = self._registry.get(connection.provider)
        if adapter is None:
            message = f"No adapter registered for provider {connection.provider}"
            await self._record_error(connection, message)
            raise ConfigurationError(message)

        refresh_secret = connection.refresh_token_secret
        if refresh_secret is None:
            return await self._fail(connection, "Token expired and no refresh token available")

        client_id, client_secret = config.provider_credentials(connection.provider)
        if not client_id or not client_secret:
            message = f"{connection.provider} client credentials are not configured"
            await self._record_error(connection, message)
            raise ConfigurationError(message)

        try:
            grant = await adapter.refresh_access_token(
                client_id,
                client_secret,
                self._vault.decrypt(refresh_secret),
                config.redirect_uri(connection.provider),
            )
        except (ProviderError, ConfigurationError, httpx.HTTPError) as exc:
            return await self._fail(connection, f"Refresh failed: {exc}")

        access_enc = self._vault.encrypt(grant.access_token)
        # Providers that rotate refresh tokens return a new one; otherwise keep ours.
        refresh_enc = self._vault.encrypt(grant.refresh_token) if grant.refresh_token else None
        expires_at = expiry_from(grant.expires_in_seconds)
        await self._store.update_tokens(
            connection.id,
            access_token=access_enc,
            refresh_token=refresh_enc,
            expires_at=expires_at,
        )

        connection.access_token_enc = access_enc.to_dict()
        if refresh_enc is not None:
            connection.refresh_token_enc = refresh_enc.to_dict()
        connection.expires_at = expires_at
        logger.info("Refreshed %s token for user %s", connection.provider, connection.user_id)
        return grant.access_token

    async def _fail(self, connection: Connection, message: str) -> str:
        await self._record_error(connection, message)
        raise AuthExpired(message)

    async def _record_error(self, connection: Connection, message: str) -> None:
        """Park the connection in ``error`` so it drops out of scheduled syncs."""
        logger.warning(
            "Token refresh failed for %s/%s (connection %s): %s",
            connection.provider, connection.user_id, connection.id, message,
        )
        await self._store.mark_connection_error(connection.id, message)
        connection.status = "error"
        connection.error_message = message
