"""
Error taxonomy for linking, credential handling and sync.

Services raise these; only the route layer maps them to HTTP responses.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ConnectorError(Exception):
    """Base for every error raised by the connector stack."""


class ConfigurationError(ConnectorError):
    """Missing client credentials, weak master secret, unsupported flow."""


class InvalidState(ConnectorError):
    """CSRF state / initiating-user mismatch, or the state cookie expired."""


class ExchangeFailed(ConnectorError):
    """The provider rejected the authorization code or the app password."""


class NotAuthorized(ConnectorError):
    """Caller's role is not allowed to link accounts."""


class ConnectionNotFound(ConnectorError):
    pass


class CalendarNotFound(ConnectorError):
    pass


class DecryptionError(ConnectorError):
    """Ciphertext failed authentication (tampered, wrong key or malformed)."""


class StorageError(ConnectorError):
    """Destination object store rejected a write."""


class SyncRunFinalized(ConnectorError):
    """A terminal SyncRun cannot be modified."""


class ProviderErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ProviderError(ConnectorError):
    """Uniform shape for provider-specific HTTP failures."""

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({str(self)!r}, kind={self.kind.value}, "
            f"retryable={self.retryable}, status_code={self.status_code})"
        )


class AuthExpired(ProviderError):
    """Access could not be (re)established; the user has to relink."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(
            message,
            ProviderErrorKind.AUTH_EXPIRED,
            retryable=False,
            status_code=status_code,
        )
