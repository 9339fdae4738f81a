"""Concurrency-safe persistence over pluggable storage backends."""

from taskwave.persistence.safe_io import (
    LocalFileBackend,
    MemoryBackend,
    RenameUnsupportedError,
    SafeStore,
    StorageBackend,
    StorageError,
)

__all__ = [
    "LocalFileBackend",
    "MemoryBackend",
    "RenameUnsupportedError",
    "SafeStore",
    "StorageBackend",
    "StorageError",
]
