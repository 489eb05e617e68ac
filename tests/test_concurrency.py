"""Tests for ConcurrencyLimiter — bounded parallelism with FIFO hand-off."""
from __future__ import annotations

import asyncio

import pytest

from commander.concurrency import ConcurrencyLimiter


def _run(coro):
    return asyncio.run(coro)


def test_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)


def test_never_exceeds_limit():
    limiter = ConcurrencyLimiter(2)
    peak = 0

    async def work():
        nonlocal peak
        peak = max(peak, limiter.active)
        await asyncio.sleep(0.01)
        return "done"

    async def scenario():
        return await asyncio.gather(*(limiter.limit(work) for _ in range(6)))

    assert _run(scenario()) == ["done"] * 6
    assert peak == 2
    assert limiter.active == 0


def test_waiters_run_in_arrival_order():
    limiter = ConcurrencyLimiter(1)
    started = []

    async def work(n):
        started.append(n)
        await asyncio.sleep(0)

    async def scenario():
        await asyncio.gather(*(limiter.limit(lambda n=n: work(n)) for n in range(5)))

    _run(scenario())
    assert started == [0, 1, 2, 3, 4]


def test_slot_released_when_work_raises():
    limiter = ConcurrencyLimiter(1)

    async def boom():
        raise RuntimeError("boom")

    async def ok():
        return 42

    async def scenario():
        with pytest.raises(RuntimeError):
            await limiter.limit(boom)
        return await limiter.limit(ok)

    assert _run(scenario()) == 42
    assert limiter.active == 0


def test_cancelled_waiter_does_not_leak_slot():
    limiter = ConcurrencyLimiter(1)
    gate = None

    async def hold():
        await gate.wait()

    async def quick():
        return "ran"

    async def scenario():
        nonlocal gate
        gate = asyncio.Event()
        holder = asyncio.ensure_future(limiter.limit(hold))
        await asyncio.sleep(0)
        waiter = asyncio.ensure_future(limiter.limit(quick))
        await asyncio.sleep(0)
        assert limiter.pending == 1
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)
        gate.set()
        await holder
        return await limiter.limit(quick)

    assert _run(scenario()) == "ran"
    assert limiter.active == 0
    assert limiter.pending == 0
