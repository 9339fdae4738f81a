"""Async concurrency primitives shared by storage and scheduling."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Hashable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


class KeyedMutex:
    """
    Per-key FIFO mutual exclusion.

    Each holder chains a future behind the current tail for its key and waits
    for that tail before entering. Holders of different keys never wait on each
    other. A key's entry is dropped once its chain has drained, so the map only
    holds keys with an operation in flight.
    """

    def __init__(self) -> None:
        self._tails: dict[Hashable, asyncio.Future[None]] = {}

    def __len__(self) -> int:
        return len(self._tails)

    def is_locked(self, key: Hashable) -> bool:
        return key in self._tails

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        previous = self._tails.get(key)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._tails[key] = done

        entered = False
        try:
            if previous is not None and not previous.done():
                # A cancelled waiter must not cancel the holder it waits on.
                await asyncio.shield(previous)
            entered = True
            yield
        finally:
            if entered or previous is None or previous.done():
                self._release(key, done)
            else:
                # Cancelled while queued: successors still wait for ``previous``.
                previous.add_done_callback(lambda _future: self._release(key, done))

    async def run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` once every earlier operation on ``key`` has finished."""
        async with self.hold(key):
            return await fn()

    def _release(self, key: Hashable, done: asyncio.Future[None]) -> None:
        if not done.done():
            done.set_result(None)
        if self._tails.get(key) is done:
            del self._tails[key]


__all__ = [
    "CancellationToken",
    "KeyedMutex",
]
