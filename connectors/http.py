"""
Shared HTTP plumbing for provider adapters.

Every adapter funnels its requests through ``send`` so provider-specific
status codes and transport failures come out as ``ProviderError``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from connectors.base import TokenGrant
from connectors.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def make_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=transport, timeout=DEFAULT_TIMEOUT)


def error_from_response(resp: httpx.Response, action: str) -> ProviderError:
    """Translate a non-2xx response into the uniform error shape."""
    code = resp.status_code
    detail = resp.text[:300] if resp.content else resp.reason_phrase
    message = f"{action} failed ({code}): {detail}"
    if code in (401, 403):
        return ProviderError(message, ProviderErrorKind.AUTH_EXPIRED, retryable=False, status_code=code)
    if code in (404, 410):
        return ProviderError(message, ProviderErrorKind.NOT_FOUND, retryable=False, status_code=code)
    if code == 429:
        return ProviderError(message, ProviderErrorKind.RATE_LIMITED, retryable=True, status_code=code)
    return ProviderError(message, ProviderErrorKind.UNKNOWN, retryable=code >= 500, status_code=code)


async def send(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    action: str,
    **kwargs: Any,
) -> httpx.Response:
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise ProviderError(
            f"{action} failed: {exc.__class__.__name__}: {exc}",
            ProviderErrorKind.UNKNOWN,
            retryable=True,
        ) from exc
    if resp.status_code >= 400:
        raise error_from_response(resp, action)
    return resp


def bearer(access_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}


def parse_token_response(data: Dict[str, Any], *, action: str) -> TokenGrant:
    if "error" in data or not data.get("access_token"):
        raise ProviderError(
            f"{action} error: {data.get('error_description', data.get('error', 'no access_token'))}",
            ProviderErrorKind.UNKNOWN,
        )
    expires_in = data.get("expires_in")
    return TokenGrant(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_in_seconds=int(expires_in) if expires_in is not None else None,
    )


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse provider ISO-8601 timestamps (``Z`` suffix, 7-digit fractions)."""
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph returns 100ns precision, which fromisoformat rejects on older interpreters.
    if "." in text:
        head, _, tail = text.partition(".")
        frac = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            frac += ch
        text = f"{head}.{frac[:6].ljust(6, '0')}{rest}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
