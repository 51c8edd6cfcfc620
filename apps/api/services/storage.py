"""Object storage adapter backed by the local filesystem.

Keys are slash-separated paths inside a bucket directory. Writes go to a
temporary sibling file first and are moved into place with ``os.replace``,
so re-writing a key overwrites it atomically and a retried chunk upload
never leaves a half-written object behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath

from config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an object cannot be written, read or removed."""


class LocalObjectStorage:
    """Bucketed key/value byte store rooted at a directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, bucket: str, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not bucket or not parts or any(part in ("..", "") for part in parts) or PurePosixPath(key).is_absolute():
            raise StorageError(f"Invalid storage key: {bucket}/{key}")
        return self.root.joinpath(bucket, *parts)

    def _write_sync(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def write(self, bucket: str, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any existing object."""
        path = self._resolve(bucket, key)
        try:
            await asyncio.to_thread(self._write_sync, path, data)
        except OSError as exc:
            logger.error("Storage write failed for %s/%s: %s", bucket, key, exc)
            raise StorageError(f"Failed to write {key}") from exc

    async def read(self, bucket: str, key: str) -> bytes:
        path = self._resolve(bucket, key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {key}") from exc

    async def exists(self, bucket: str, key: str) -> bool:
        path = self._resolve(bucket, key)
        return await asyncio.to_thread(path.is_file)

    async def delete_prefix(self, bucket: str, prefix: str) -> None:
        """Remove every object stored under ``prefix``."""
        base = self._resolve(bucket, prefix)
        try:
            await asyncio.to_thread(shutil.rmtree, base, ignore_errors=False)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"Failed to delete {prefix}") from exc


def get_storage() -> LocalObjectStorage:
    """FastAPI dependency returning the configured object store."""
    return LocalObjectStorage(settings.STORAGE_ROOT)
