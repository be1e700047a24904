"""
Authenticated caller as seen by the connector services.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class CurrentUser(BaseModel):
    user_id: str
    organization_id: str
    role: Optional[str] = None
    email: Optional[str] = None
