"""
Crash-safe, concurrency-safe file mutation.

Every mutation of a given path runs behind a per-path ``KeyedMutex`` so that
read-modify-write sequences (appends, JSON updates) never interleave. Whole
file writes go to a hidden sibling temp file and are renamed over the target.
When the backend cannot rename, the store falls back to writing the target
directly, which is logged because a crash mid-write can then leave a torn file.
"""

from __future__ import annotations

import asyncio
import json
import os
import secrets
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import Any, Protocol, runtime_checkable

import structlog

from taskwave.constants import TEMP_FILE_PREFIX, TEMP_FILE_SUFFIX
from taskwave.utils.concurrency import KeyedMutex
from taskwave.utils.fs import fsync_directory, write_durable

PathLike = str | os.PathLike[str]


class StorageError(OSError):
    """Raised when content could not be persisted by any write path."""


class RenameUnsupportedError(StorageError):
    """Raised by backends that cannot rename files."""


@runtime_checkable
class StorageBackend(Protocol):
    """Minimal async file API the store needs."""

    async def read(self, path: str) -> bytes | None: ...

    async def write(self, path: str, data: bytes) -> None: ...

    async def rename(self, source: str, target: str, *, overwrite: bool = True) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def list(self, directory: str) -> tuple[str, ...]: ...


class LocalFileBackend:
    """Local filesystem backend; blocking calls run in a worker thread."""

    async def read(self, path: str) -> bytes | None:
        return await asyncio.to_thread(self._read, path)

    async def write(self, path: str, data: bytes) -> None:
        await asyncio.to_thread(write_durable, path, data)

    async def rename(self, source: str, target: str, *, overwrite: bool = True) -> None:
        await asyncio.to_thread(self._rename, source, target, overwrite)

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(Path(path).unlink, missing_ok=True)

    async def list(self, directory: str) -> tuple[str, ...]:
        return await asyncio.to_thread(self._list, directory)

    @staticmethod
    def _read(path: str) -> bytes | None:
        try:
            return Path(path).read_bytes()
        except FileNotFoundError:
            return None

    @staticmethod
    def _rename(source: str, target: str, overwrite: bool) -> None:
        target_path = Path(target)
        if not overwrite and target_path.exists():
            raise FileExistsError(f"rename target exists: {target}")
        os.replace(source, target_path)
        fsync_directory(target_path.parent)

    @staticmethod
    def _list(directory: str) -> tuple[str, ...]:
        root = Path(directory)
        if not root.is_dir():
            return ()
        return tuple(sorted(entry.name for entry in root.iterdir() if entry.is_file()))


class MemoryBackend:
    """In-process backend keyed by POSIX-normalized path."""

    def __init__(
        self,
        files: dict[str, bytes] | None = None,
        *,
        supports_rename: bool = True,
    ) -> None:
        self.files: dict[str, bytes] = {}
        for path, data in (files or {}).items():
            self.files[self._normalize(path)] = data
        self.supports_rename = supports_rename

    async def read(self, path: str) -> bytes | None:
        return self.files.get(self._normalize(path))

    async def write(self, path: str, data: bytes) -> None:
        self.files[self._normalize(path)] = bytes(data)

    async def rename(self, source: str, target: str, *, overwrite: bool = True) -> None:
        if not self.supports_rename:
            raise RenameUnsupportedError("rename is not supported by this backend")
        source_key = self._normalize(source)
        target_key = self._normalize(target)
        if source_key not in self.files:
            raise FileNotFoundError(source)
        if not overwrite and target_key in self.files:
            raise FileExistsError(target)
        self.files[target_key] = self.files.pop(source_key)

    async def delete(self, path: str) -> None:
        self.files.pop(self._normalize(path), None)

    async def list(self, directory: str) -> tuple[str, ...]:
        root = self._normalize(directory)
        return tuple(
            sorted(
                str(PurePosixPath(path).name)
                for path in self.files
                if str(PurePosixPath(path).parent) == root
            )
        )

    @staticmethod
    def _normalize(path: str) -> str:
        return str(PurePosixPath(os.fspath(path).replace("\\", "/")))


class SafeStore:
    """Serialized, crash-safe read/write/append over a ``StorageBackend``."""

    def __init__(
        self,
        backend: StorageBackend | None = None,
        *,
        allow_direct_write_fallback: bool = True,
        encoding: str = "utf-8",
        logger: Any | None = None,
    ) -> None:
        self._backend: StorageBackend = backend if backend is not None else LocalFileBackend()
        self._allow_direct_write_fallback = allow_direct_write_fallback
        self._encoding = encoding
        self._locks = KeyedMutex()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def locks(self) -> KeyedMutex:
        return self._locks

    async def atomic_write(self, path: PathLike, data: str | bytes) -> None:
        """
        Replace ``path`` with ``data`` through a temp file and rename.

        Does not take the per-path lock; callers inside a locked section use
        this directly and everyone else uses :meth:`safe_write`.
        """
        target = os.fspath(path)
        payload = self._encode(data)
        temp = _temp_sibling(target)

        try:
            await self._backend.write(temp, payload)
            await self._backend.rename(temp, target, overwrite=True)
            return
        except OSError as exc:
            await self._discard_temp(temp)
            if not self._allow_direct_write_fallback:
                raise StorageError(f"atomic write failed for {target}: {exc}") from exc
            self._logger.warning(
                "atomic_write_fallback",
                path=target,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        try:
            await self._backend.write(target, payload)
        except OSError as exc:
            raise StorageError(f"direct write failed for {target}: {exc}") from exc

    async def safe_write(self, path: PathLike, data: str | bytes) -> None:
        async with self._locks.hold(_lock_key(path)):
            await self.atomic_write(path, data)

    async def safe_read(self, path: PathLike) -> str:
        """Read ``path`` after pending mutations of it; missing files read as ``""``."""
        async with self._locks.hold(_lock_key(path)):
            return await self._read_text(path)

    async def safe_append(
        self,
        path: PathLike,
        content: str,
        header: str | None = None,
        *,
        dedup: bool = True,
    ) -> bool:
        """
        Append ``content`` to ``path`` as one locked read-modify-write.

        With ``dedup`` the append is skipped when the existing text, ignoring
        trailing whitespace, already ends with ``content``. ``header`` is only
        written when the file is empty. Returns ``True`` when the file changed.
        """
        async with self._locks.hold(_lock_key(path)):
            existing = await self._read_text(path)

            if dedup and existing.strip() and existing.rstrip().endswith(content.rstrip()):
                self._logger.debug("safe_append_deduplicated", path=os.fspath(path))
                return False

            if not existing.strip() and header is not None:
                updated = header + content
            else:
                updated = existing + content

            await self.atomic_write(path, updated)
            return True

    async def update_json(
        self,
        path: PathLike,
        fn: Callable[[Any], Any],
        *,
        default: Any = None,
    ) -> Any:
        """Apply ``fn`` to the decoded JSON document at ``path`` and store the result."""
        async with self._locks.hold(_lock_key(path)):
            text = await self._read_text(path)
            if text.strip():
                try:
                    current = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise StorageError(f"{os.fspath(path)} is not valid JSON: {exc}") from exc
            else:
                current = default

            updated = fn(current)
            await self.atomic_write(path, json.dumps(updated, indent=2, sort_keys=True) + "\n")
            return updated

    async def cleanup_temp_files(self, directory: PathLike) -> int:
        """Remove leftover ``.<name>.<hex>.tmp`` files. Never raises."""
        root = os.fspath(directory)
        try:
            names = await self._backend.list(root)
        except OSError as exc:
            self._logger.warning("temp_cleanup_failed", directory=root, error=str(exc))
            return 0

        removed = 0
        for name in names:
            if not (name.startswith(TEMP_FILE_PREFIX) and name.endswith(TEMP_FILE_SUFFIX)):
                continue
            candidate = os.path.join(root, name)
            try:
                await self._backend.delete(candidate)
            except OSError as exc:
                self._logger.warning("temp_cleanup_failed", path=candidate, error=str(exc))
                continue
            removed += 1

        if removed:
            self._logger.info("temp_files_removed", directory=root, count=removed)
        return removed

    async def _read_text(self, path: PathLike) -> str:
        raw = await self._backend.read(os.fspath(path))
        if raw is None:
            return ""
        return raw.decode(self._encoding)

    async def _discard_temp(self, temp: str) -> None:
        try:
            await self._backend.delete(temp)
        except OSError as exc:
            self._logger.debug("temp_discard_failed", path=temp, error=str(exc))

    def _encode(self, data: str | bytes) -> bytes:
        if isinstance(data, bytes):
            return data
        return data.encode(self._encoding)


def _temp_sibling(target: str) -> str:
    parent, name = os.path.split(target)
    temp_name = f"{TEMP_FILE_PREFIX}{name}.{secrets.token_hex(6)}{TEMP_FILE_SUFFIX}"
    return os.path.join(parent, temp_name)


def _lock_key(path: PathLike) -> str:
    return os.path.normpath(os.fspath(path))


__all__ = [
    "LocalFileBackend",
    "MemoryBackend",
    "RenameUnsupportedError",
    "SafeStore",
    "StorageBackend",
    "StorageError",
]
