"""
Destination object store — where mirrored file bytes end up.

The orchestrator only needs ``put(key, data, content_type)``; keys are
already namespaced per organization / provider / user by the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

from connectors.errors import StorageError

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None: ...


class LocalObjectStore:
    """Writes objects under a root directory; content type goes to a ``.meta`` sidecar."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path_for(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root != path and self._root not in path.parents:
            raise StorageError(f"Object key escapes the storage root: {key!r}")
        return path

    def _write(self, path: Path, data: bytes, content_type: Optional[str]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)
        if content_type:
            path.with_name(path.name + ".meta").write_text(json.dumps({"content_type": content_type}))

    async def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data, content_type)
        except OSError as exc:
            raise StorageError(f"Failed to write {key}: {exc}") from exc
        logger.debug("Stored %d bytes at %s", len(data), key)
