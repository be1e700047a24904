"""
Destination key helpers for mirrored files.
"""

from __future__ import annotations

import re
from typing import Optional

MAX_NAME_LENGTH = 200

_SEPARATORS = re.compile(r"[\\/]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def normalize_path(path: Optional[str]) -> Optional[str]:
    """
    Strip leading / trailing separators and collapse empty segments.

    >>> normalize_path("/a/b/")
    'a/b'
    >>> normalize_path("") is None
    True
    """
    if not path:
        return None
    parts = [p for p in path.replace("\\", "/").split("/") if p.strip()]
    return "/".join(parts) or None


def build_destination_prefix(
    organization_id: str,
    provider: str,
    user_id: str,
    override_prefix: Optional[str] = None,
) -> str:
    root = normalize_path(override_prefix) or f"orgs/{organization_id}/files"
    return f"{root}/{provider}/{user_id}"


def sanitize_key_part(name: Optional[str], fallback: str = "file") -> str:
    """Make a remote name safe to use as one key segment."""
    cleaned = _CONTROL_CHARS.sub("", _SEPARATORS.sub("_", name or "")).strip()
    cleaned = cleaned[:MAX_NAME_LENGTH].strip()
    if cleaned in ("", ".", ".."):
        return fallback
    return cleaned


def destination_key(prefix: str, item_id: str, item_name: Optional[str]) -> str:
    safe_id = sanitize_key_part(item_id, fallback="item")
    return f"{prefix}/{safe_id}/{sanitize_key_part(item_name, fallback=f'file-{safe_id}')}"
