"""
ConnectorRegistry — resolves a provider tag to its adapter.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from connectors.apple_caldav import AppleCalDAVAdapter
from connectors.base import Provider, ProviderAdapter
from connectors.dropbox import DropboxAdapter
from connectors.google_calendar import GoogleCalendarAdapter
from connectors.google_drive import GoogleDriveAdapter
from connectors.microsoft_calendar import MicrosoftCalendarAdapter
from connectors.onedrive import OneDriveAdapter

logger = logging.getLogger(__name__)


def _default_adapters() -> List[ProviderAdapter]:
    return [
        GoogleCalendarAdapter(),
        MicrosoftCalendarAdapter(),
        GoogleDriveAdapter(),
        OneDriveAdapter(),
        DropboxAdapter(),
        AppleCalDAVAdapter(),
    ]


class ConnectorRegistry:
    """Singleton registry for all provider adapters."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._adapters = {}
            cls._instance._discovered = False
        return cls._instance

    def discover(self) -> None:
        """Register the built-in adapters and report which ones are usable."""
        if self._discovered:
            return
        for adapter in _default_adapters():
            self._adapters.setdefault(adapter.provider, adapter)
            if adapter.is_configured():
                logger.info("Connector registered: %s (%s)", adapter.display_name, adapter.provider.value)
            else:
                logger.warning(
                    "Connector %s registered but not configured (missing client_id/secret)",
                    adapter.provider.value,
                )
        self._discovered = True

    def register(self, adapter: ProviderAdapter) -> None:
        """Install or replace the adapter for its provider tag."""
        self._adapters[adapter.provider] = adapter

    def get(self, provider: Union[Provider, str]) -> Optional[ProviderAdapter]:
        self.discover()
        try:
            return self._adapters.get(Provider(provider))
        except ValueError:
            return None

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about every known provider."""
        self.discover()
        return [
            {
                "provider": a.provider.value,
                "display_name": a.display_name,
                "kind": a.kind.value,
                "auth_mode": a.auth_mode.value,
                "configured": a.is_configured(),
            }
            for a in self._adapters.values()
        ]

    @classmethod
    def reset(cls) -> None:
        """Destroy singleton — only useful in test teardown."""
        cls._instance = None
