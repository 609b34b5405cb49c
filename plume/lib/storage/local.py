"""Local filesystem publication backend."""

from __future__ import annotations

import asyncio
import hashlib
import os
import uuid
from pathlib import Path

from plume.lib.concurrency import to_thread_shielded
from plume.lib.paths import resolve_absolute, to_web_path
from plume.lib.storage.base import StoredFile


class LocalStorageBackend:
    """Store keys as files below ``base_path``, served under ``url_prefix``.

    Keys are scene-addressed relative paths (``articles/images/2025/01/x.webp``)
    and are checked against traversal on every access.
    """

    name = "local"

    def __init__(self, base_path: Path, url_prefix: str = "/uploads/remote") -> None:
        self._base_path = base_path
        self._url_prefix = url_prefix

    async def put(self, key: str, data: bytes, content_type: str) -> StoredFile:
        path = self._key_to_path(key)
        await to_thread_shielded(self._write_file, path, data)
        return StoredFile(
            key=key,
            url=self._build_url(key),
            content_type=content_type,
            size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        path = self._key_to_path(key)
        return await asyncio.to_thread(path.read_bytes)

    async def delete(self, key: str) -> None:
        path = self._key_to_path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    async def exists(self, key: str) -> bool:
        path = self._key_to_path(key)
        return await asyncio.to_thread(path.is_file)

    async def get_url(self, key: str) -> str:
        return self._build_url(key)

    async def close(self) -> None:
        """Nothing to release."""

    def _key_to_path(self, key: str) -> Path:
        return resolve_absolute(self._base_path, key)

    def _build_url(self, key: str) -> str:
        return to_web_path(key, self._url_prefix)

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        partial = path.with_name(f".{path.name}.{uuid.uuid4().hex}.part")
        try:
            partial.write_bytes(data)
            os.replace(partial, path)
        except OSError:
            partial.unlink(missing_ok=True)
            raise
