"""
ConnectionManager — links and unlinks third-party accounts.

Linking a redirect-flow provider is a two-step affair:

1. ``initiate`` checks the caller's role and the provider's client
   credentials, draws a random CSRF state and returns the authorization URL
   together with the signed ``oauth_state`` / ``oauth_user`` cookie pair.
2. ``complete`` runs on the provider's redirect: it verifies the cookie pair
   against the returned state and the current user, exchanges the code,
   looks up the account e-mail (best-effort) and upserts the Connection with
   both tokens encrypted through the vault.

Apple CalDAV skips the redirect and is linked by ``connect_app_password``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Dict, List, Mapping, Optional, Tuple

import httpx

from auth.models import CurrentUser
from config.settings import config
from connectors.base import AuthMode, ProviderAdapter, TokenGrant
from connectors.errors import (
    CalendarNotFound,
    ConfigurationError,
    ConnectionNotFound,
    ConnectorError,
    ExchangeFailed,
    NotAuthorized,
    ProviderError,
)
from connectors.registry import ConnectorRegistry
from connectors.state import issue_cookie_pair, new_csrf_state, verify_cookie_pair
from connectors.token_manager import expiry_from
from connectors.vault import CredentialVault
from database.models import Connection, ConnectionStatus, ExternalCalendar
from database.store import SyncStore

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(
        self,
        store: SyncStore,
        vault: CredentialVault,
        registry: Optional[ConnectorRegistry] = None,
        *,
        admin_roles: Optional[List[str]] = None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._registry = registry or ConnectorRegistry()
        self._admin_roles = set(config.connection_admin_roles if admin_roles is None else admin_roles)

    # ── helpers ─────────────────────────────────────────────────────────

    def _adapter(self, provider: str) -> ProviderAdapter:
        adapter = self._registry.get(provider)
        if adapter is None:
            raise ConfigurationError(f"Unknown provider '{provider}'")
        return adapter

    def _require_role(self, user: CurrentUser) -> None:
        if user.role not in self._admin_roles:
            raise NotAuthorized(f"Role '{user.role}' may not link external accounts")

    @staticmethod
    def _credentials(provider: str) -> Tuple[str, str]:
        client_id, client_secret = config.provider_credentials(provider)
        if not client_id or not client_secret:
            raise ConfigurationError(f"{provider} OAuth client id/secret are not configured")
        return client_id, client_secret

    async def _persist(
        self, user: CurrentUser, adapter: ProviderAdapter, grant: TokenGrant
    ) -> Connection:
        account_email: Optional[str] = None
        try:
            profile = await adapter.fetch_account_profile(grant.access_token)
            account_email = profile.email
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("Profile lookup failed for %s/%s: %s", adapter.provider.value, user.user_id, exc)

        return await self._store.upsert_connection(
            organization_id=user.organization_id,
            user_id=user.user_id,
            provider=adapter.provider.value,
            account_email=account_email,
            access_token=self._vault.encrypt(grant.access_token),
            refresh_token=self._vault.encrypt(grant.refresh_token) if grant.refresh_token else None,
            expires_at=expiry_from(grant.expires_in_seconds),
        )

    # ── linking ─────────────────────────────────────────────────────────

    def initiate(self, user: CurrentUser, provider: str) -> Tuple[str, Dict[str, str]]:
        """Return ``(authorization_url, cookies)`` for a new linking attempt."""
        self._require_role(user)
        adapter = self._adapter(provider)
        if adapter.auth_mode != AuthMode.OAUTH:
            raise ConfigurationError(f"{provider} is linked with an app password, not a redirect")
        client_id, _ = self._credentials(adapter.provider.value)

        csrf_state = new_csrf_state()
        url = adapter.build_authorization_url(
            client_id, config.redirect_uri(adapter.provider.value), csrf_state
        )
        logger.info("Issued %s authorization URL for user %s", adapter.provider.value, user.user_id)
        return url, issue_cookie_pair(csrf_state, user.user_id)

    async def complete(
        self,
        user: CurrentUser,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        cookies: Mapping[str, str],
    ) -> Connection:
        """
        Finish a linking attempt on the provider redirect.

        Raises ``InvalidState`` before anything else, so a valid code with a
        forged or stale state is never exchanged.
        """
        verify_cookie_pair(cookies, state, user.user_id)
        adapter = self._adapter(provider)
        client_id, client_secret = self._credentials(adapter.provider.value)
        if not code:
            raise ExchangeFailed("Authorization code missing from callback")

        try:
            grant = await adapter.exchange_code(
                code, client_id, client_secret, config.redirect_uri(adapter.provider.value)
            )
        except (ProviderError, httpx.HTTPError) as exc:
            logger.warning("Code exchange failed for %s/%s: %s", adapter.provider.value, user.user_id, exc)
            raise ExchangeFailed(f"Token exchange failed: {exc}") from exc

        connection = await self._persist(user, adapter, grant)
        logger.info(
            "Connected %s for user %s (connection %s, account %s)",
            adapter.provider.value, user.user_id, connection.id, connection.account_email,
        )
        return connection

    async def connect_app_password(
        self, user: CurrentUser, provider: str, username: str, app_password: str
    ) -> Connection:
        self._require_role(user)
        adapter = self._adapter(provider)
        if adapter.auth_mode != AuthMode.APP_PASSWORD:
            raise ConfigurationError(f"{provider} does not accept app passwords")
        if not username or not app_password:
            raise ExchangeFailed("Username and app-specific password are required")

        try:
            grant = await adapter.verify_credentials(username, app_password)
        except ProviderError as exc:
            raise ExchangeFailed(f"Credential check failed: {exc}") from exc

        connection = await self._persist(user, adapter, grant)
        logger.info("Connected %s for user %s (connection %s)", adapter.provider.value, user.user_id, connection.id)
        return connection

    # ── unlinking ───────────────────────────────────────────────────────

    async def disconnect(self, user: CurrentUser, provider: str) -> Connection:
        """
        Revoke a Connection locally and drop everything mirrored from it.

        Remote revocation is best-effort; the Connection row and its run
        history are kept for audit.
        """
        adapter = self._adapter(provider)
        connection = await self._store.find_connection(user.user_id, adapter.provider.value)
        if connection is None:
            raise ConnectionNotFound(f"No {provider} connection for this user")

        secret = connection.access_token_secret
        if secret is not None:
            try:
                revoked = await adapter.revoke_token(self._vault.decrypt(secret))
                logger.debug("Remote revocation for %s returned %s", connection.provider, revoked)
            except (ConnectorError, httpx.HTTPError) as exc:
                logger.warning("Remote revocation failed for %s/%s: %s", connection.provider, user.user_id, exc)

        await self._store.revoke_connection(connection.id)
        removed = await self._store.delete_mirrored_data(connection.id)
        logger.info(
            "Disconnected %s for user %s (connection %s, %d mirrored rows removed)",
            connection.provider, user.user_id, connection.id, removed,
        )
        connection.status = ConnectionStatus.REVOKED.value
        connection.access_token_enc = None
        connection.refresh_token_enc = None
        connection.expires_at = None
        return connection

    # ── calendars ───────────────────────────────────────────────────────

    async def toggle_calendar(
        self, user: CurrentUser, calendar_id: uuid.UUID, enabled: bool
    ) -> ExternalCalendar:
        """Opt one remote calendar in or out of sync; only its owner may."""
        calendar = await self._store.get_calendar(calendar_id)
        if calendar is None:
            raise CalendarNotFound(f"Calendar {calendar_id} not found")
        connection = await self._store.get_connection(calendar.connection_id)
        if connection is None or connection.user_id != user.user_id:
            # Same answer as a missing calendar; do not confirm it exists.
            raise CalendarNotFound(f"Calendar {calendar_id} not found")
        return await self._store.set_calendar_enabled(calendar.id, enabled)
