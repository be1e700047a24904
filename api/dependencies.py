"""
FastAPI dependencies (shared across routes).

Services are built once per process from ``config``; tests swap them with
``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from config.settings import config
from connectors.manager import ConnectionManager
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from connectors.vault import CredentialVault
from core.orchestrator import SyncOrchestrator
from database.store import SqlAlchemyStore, SyncStore
from storage.object_store import LocalObjectStore


@lru_cache(maxsize=1)
def get_vault() -> CredentialVault:
    """Built on first use; raises ConfigurationError for a missing/short master secret."""
    return CredentialVault(config.vault_master_secret, iterations=config.vault_kdf_iterations)


@lru_cache(maxsize=1)
def get_store() -> SyncStore:
    from database.session import async_session_factory

    return SqlAlchemyStore(async_session_factory)


def get_connection_manager() -> ConnectionManager:
    return ConnectionManager(get_store(), get_vault(), ConnectorRegistry())


def get_orchestrator() -> SyncOrchestrator:
    store = get_store()
    registry = ConnectorRegistry()
    return SyncOrchestrator(
        store,
        TokenManager(store, get_vault(), registry),
        LocalObjectStore(config.destination_root),
        registry,
    )
