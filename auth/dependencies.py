"""
FastAPI dependencies for authentication.

``get_current_user`` accepts the signed token either as a Bearer header
(API clients) or in the ``session`` cookie (browser redirects such as the
OAuth callback, which cannot carry a header).
"""

from __future__ import annotations

from typing import Optional

from fastapi import Cookie, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from auth.models import CurrentUser

SESSION_COOKIE = "session"

_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> CurrentUser:
    token = credentials.credentials if credentials else session_token
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token or session cookie",
        )
    return verify_token(token)
