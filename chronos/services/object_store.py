"""
Content-object store.

The pipeline only ever needs ``get(key) -> bytes`` (uploaded media for paid
transcription). LocalObjectStore serves keys from a directory; any other
backend only has to implement the same coroutine.
"""

import asyncio
from pathlib import Path
from typing import Protocol

from chronos.core.exceptions import UnsupportedSourceError


class ObjectStore(Protocol):
    async def get(self, key: str) -> bytes:
        ...


class LocalObjectStore:
    """Objects stored as files under a root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root not in path.parents and path != self.root:
            raise UnsupportedSourceError(f"Object key escapes store root: {key}")
        return path

    async def get(self, key: str) -> bytes:
        """
        Read an object.

        Raises:
            FileNotFoundError: no object under this key
        """
        path = self._path(key)
        return await asyncio.to_thread(path.read_bytes)
