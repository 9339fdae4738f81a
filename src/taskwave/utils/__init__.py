"""Utility exports for filesystem and concurrency helpers."""

from taskwave.utils.concurrency import CancellationToken, KeyedMutex
from taskwave.utils.fs import fsync_directory, is_within, safe_delete, write_durable

__all__ = [
    "CancellationToken",
    "KeyedMutex",
    "fsync_directory",
    "is_within",
    "safe_delete",
    "write_durable",
]
