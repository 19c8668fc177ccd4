"""Filesystem blob store."""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path

from ...exceptions import CacheWriteFailure
from .base import BaseBlobStore


class FilesystemBlobStore(BaseBlobStore):
    """Store blobs as files under ``root``, sharded by the first two key chars."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / key[:2] / key

    # ------------------------------------------------------------------
    # Blocking helpers, run through ``asyncio.to_thread``
    def _write(self, key: str, data: bytes) -> str:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return str(target)

    def _read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise KeyError(key) from None

    def _unlink(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Blob store API
    async def put(self, key: str, data: bytes) -> str:
        try:
            return await asyncio.to_thread(self._write, key, data)
        except OSError as exc:
            raise CacheWriteFailure(f"failed to write blob {key}: {exc}") from exc

    async def get(self, key: str) -> bytes:
        return await asyncio.to_thread(self._read, key)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._unlink, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)
