"""
Key/value byte stores used to persist the indexes.

``FileStorageBackend`` writes through ``aiofiles`` with an atomic
temp-file-then-replace; ``MemoryStorageBackend`` keeps everything in a
dict for tests and throwaway sessions. Missing resources raise
``FileNotFoundError`` from ``read`` and ``stat``.
"""

from __future__ import annotations

import asyncio
import os
import pathlib
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import aiofiles

from .errors import StorageError


@dataclass
class StorageStat:
    size: int
    mtime: float


@runtime_checkable
class StorageBackend(Protocol):
    async def read(self, path: str) -> bytes: ...

    async def write(self, path: str, data: bytes) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def stat(self, path: str) -> StorageStat: ...

    async def list_dir(self, path: str) -> list[str]: ...


class FileStorageBackend:
    """Stores each resource as a file below *root*."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = pathlib.Path(root).expanduser()

    def _resolve(self, path: str) -> pathlib.Path:
        return self.root / path

    async def read(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to read {target}", original_error=exc) from exc

    async def write(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        tmp_path = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write: write to temp then replace
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            tmp_path.replace(target)
        except OSError as exc:
            raise StorageError(f"Failed to write {target}", original_error=exc) from exc

    async def delete(self, path: str) -> None:
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}", original_error=exc) from exc

    async def stat(self, path: str) -> StorageStat:
        st = await asyncio.to_thread(os.stat, self._resolve(path))
        return StorageStat(size=st.st_size, mtime=st.st_mtime)

    async def list_dir(self, path: str) -> list[str]:
        target = self._resolve(path)
        if not target.is_dir():
            return []
        return sorted(p.name for p in target.iterdir())


class MemoryStorageBackend:
    """Dict-backed storage. Nothing survives the process."""

    def __init__(self) -> None:
        self._files: dict[str, tuple[bytes, float]] = {}

    async def read(self, path: str) -> bytes:
        try:
            return self._files[path][0]
        except KeyError:
            raise FileNotFoundError(path) from None

    async def write(self, path: str, data: bytes) -> None:
        self._files[path] = (bytes(data), time.time())

    async def delete(self, path: str) -> None:
        self._files.pop(path, None)

    async def stat(self, path: str) -> StorageStat:
        try:
            data, mtime = self._files[path]
        except KeyError:
            raise FileNotFoundError(path) from None
        return StorageStat(size=len(data), mtime=mtime)

    async def list_dir(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/" if path else ""
        names = {
            key[len(prefix):].split("/", 1)[0]
            for key in self._files
            if key.startswith(prefix)
        }
        return sorted(names)
