# utils/storage.py

"""
Storage adapters: "download bytes by key" / "upload bytes to key".

Both adapters raise `StorageObjectNotFound` for a missing key so the ingestion
pipeline can tell "the file is gone" apart from every other storage failure.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class StorageObjectNotFound(Exception):
    """The requested key does not exist in the backing store"""

    def __init__(self, key: str, detail: Optional[str] = None):
        self.key = key
        message = f"Object not found for key '{key}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StorageAdapter:
    """Interface consumed by the worker"""

    async def download(self, key: str) -> bytes:
        raise NotImplementedError("Subclasses must override download().")

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        raise NotImplementedError("Subclasses must override upload().")


class FilesystemStorage(StorageAdapter):
    """Keys are relative paths under `base_dir`"""

    def __init__(self, base_dir: Union[str, Path] = "uploads"):
        self.base_dir = Path(base_dir).expanduser().resolve()

    def _path_for(self, key: str) -> Path:
        path = (self.base_dir / key.lstrip("/")).resolve()
        if path != self.base_dir and self.base_dir not in path.parents:
            raise ValueError(f"Storage key escapes the uploads directory: {key}")
        return path

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageObjectNotFound(key, str(e)) from e

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path_for(key)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug(f"Stored {len(data):,} bytes at {path}")
