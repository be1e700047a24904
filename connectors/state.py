"""
CSRF state helpers — the short-lived signed cookie pair set when a linking
attempt starts.

``oauth_state`` carries the random state handed to the provider and
``oauth_user`` carries the initiating user id.  Both are HMAC-signed with
``config.oauth_state_secret`` and expire after ``config.oauth_state_ttl_seconds``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Dict, Mapping, Optional

from config.settings import config
from connectors.errors import InvalidState

STATE_COOKIE = "oauth_state"
USER_COOKIE = "oauth_user"


def new_csrf_state() -> str:
    return secrets.token_urlsafe(32)


def _sign(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()


def sign_cookie(value: str, ttl: Optional[int] = None) -> str:
    """Encode ``value`` with an expiry and sign it."""
    ttl = config.oauth_state_ttl_seconds if ttl is None else ttl
    raw = json.dumps({"v": value, "exp": int(time.time()) + ttl}).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw)


def read_cookie(cookie: Optional[str]) -> str:
    """Verify a signed cookie and return its value. Raises InvalidState."""
    if not cookie:
        raise InvalidState("OAuth state cookie missing or expired")
    try:
        encoded, sig = cookie.split(".", 1)
        raw = urlsafe_b64decode(encoded.encode())
        payload = json.loads(raw)
    except (ValueError, TypeError) as exc:
        raise InvalidState("Malformed OAuth state cookie") from exc
    if not hmac.compare_digest(sig.encode(), _sign(raw).encode()):
        raise InvalidState("OAuth state cookie signature mismatch")
    if payload.get("exp", 0) < time.time():
        raise InvalidState("OAuth state expired")
    value = payload.get("v")
    if not isinstance(value, str):
        raise InvalidState("Malformed OAuth state cookie")
    return value


def issue_cookie_pair(csrf_state: str, user_id: str) -> Dict[str, str]:
    return {
        STATE_COOKIE: sign_cookie(csrf_state),
        USER_COOKIE: sign_cookie(user_id),
    }


def verify_cookie_pair(cookies: Mapping[str, str], returned_state: Optional[str], user_id: str) -> None:
    """
    Check the callback against the pair issued at authorization time.

    The returned state must equal the stored one exactly and the current
    user must be the one who started the attempt.
    """
    stored_state = read_cookie(cookies.get(STATE_COOKIE))
    stored_user = read_cookie(cookies.get(USER_COOKIE))
    if not returned_state or not hmac.compare_digest(returned_state.encode(), stored_state.encode()):
        raise InvalidState("OAuth state mismatch")
    if not hmac.compare_digest(stored_user.encode(), str(user_id).encode()):
        raise InvalidState("OAuth attempt was started by a different user")
