"""Unit tests for keyed mutual exclusion and cancellation tokens."""

from __future__ import annotations

import asyncio

import pytest

from taskwave.utils.concurrency import CancellationToken, KeyedMutex


@pytest.mark.asyncio
async def test_same_key_operations_run_one_at_a_time_in_arrival_order() -> None:
    mutex = KeyedMutex()
    entered: list[str] = []
    active = 0
    max_active = 0

    async def operation(name: str) -> None:
        nonlocal active, max_active
        async with mutex.hold("state.json"):
            active += 1
            max_active = max(max_active, active)
            entered.append(name)
            await asyncio.sleep(0.01)
            active -= 1

    await asyncio.gather(*(operation(name) for name in ("first", "second", "third")))

    assert entered == ["first", "second", "third"]
    assert max_active == 1
    assert len(mutex) == 0


@pytest.mark.asyncio
async def test_different_keys_do_not_block_each_other() -> None:
    mutex = KeyedMutex()
    release = asyncio.Event()
    other_entered = asyncio.Event()

    async def hold_a() -> None:
        async with mutex.hold("a"):
            await release.wait()

    async def hold_b() -> None:
        async with mutex.hold("b"):
            other_entered.set()

    holder = asyncio.create_task(hold_a())
    await asyncio.sleep(0)
    await asyncio.wait_for(hold_b(), timeout=1)

    assert other_entered.is_set()
    assert mutex.is_locked("a")
    assert not mutex.is_locked("b")

    release.set()
    await holder
    assert not mutex.is_locked("a")


@pytest.mark.asyncio
async def test_cancelled_waiter_keeps_the_queue_intact() -> None:
    mutex = KeyedMutex()
    release = asyncio.Event()
    order: list[str] = []

    async def holder() -> None:
        async with mutex.hold("k"):
            order.append("holder")
            await release.wait()

    async def waiter(name: str) -> None:
        async with mutex.hold("k"):
            order.append(name)

    first = asyncio.create_task(holder())
    await asyncio.sleep(0)
    cancelled = asyncio.create_task(waiter("cancelled"))
    await asyncio.sleep(0)
    last = asyncio.create_task(waiter("last"))
    await asyncio.sleep(0)

    cancelled.cancel()
    with pytest.raises(asyncio.CancelledError):
        await cancelled
    assert not last.done()

    release.set()
    await asyncio.wait_for(asyncio.gather(first, last), timeout=1)

    assert order == ["holder", "last"]
    assert len(mutex) == 0


@pytest.mark.asyncio
async def test_run_returns_the_operation_result() -> None:
    mutex = KeyedMutex()

    async def compute() -> int:
        return 42

    assert await mutex.run("key", compute) == 42


@pytest.mark.asyncio
async def test_cancellation_token() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel()
    assert token.is_cancelled
    await asyncio.wait_for(token.wait(), timeout=1)
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()
