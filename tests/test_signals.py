from __future__ import annotations

import asyncio
import logging

import pytest

from fstar_lsp.signals import AsyncRateLimiter, Debouncer, RateLimiter


@pytest.mark.asyncio
async def test_debouncer_runs_once_after_last_fire() -> None:
    calls: list[int] = []
    debouncer = Debouncer(20, lambda: calls.append(1))
    for _ in range(3):
        debouncer.fire()
        await asyncio.sleep(0.005)
    assert calls == []
    assert debouncer.pending
    await asyncio.sleep(0.06)
    assert calls == [1]
    assert not debouncer.pending


@pytest.mark.asyncio
async def test_debouncer_cancel_drops_pending_call() -> None:
    calls: list[int] = []
    debouncer = Debouncer(10, lambda: calls.append(1))
    debouncer.fire()
    debouncer.cancel()
    await asyncio.sleep(0.04)
    assert calls == []


@pytest.mark.asyncio
async def test_rate_limiter_collapses_fires_during_cooldown() -> None:
    calls: list[int] = []
    limiter = RateLimiter(100, lambda: calls.append(1))
    limiter.fire()
    await asyncio.sleep(0.01)
    assert calls == [1]
    limiter.fire()
    limiter.fire()
    await asyncio.sleep(0.01)
    assert calls == [1]
    await asyncio.sleep(0.14)
    assert calls == [1, 1]
    await asyncio.sleep(0.15)
    assert calls == [1, 1]


@pytest.mark.asyncio
async def test_rate_limiter_timeline_with_a_late_fire() -> None:
    # Fires at 0, 50, 120 and 300 ms against a 100 ms window.
    loop = asyncio.get_running_loop()
    start = loop.time()
    calls: list[float] = []
    limiter = RateLimiter(100, lambda: calls.append(loop.time() - start))
    limiter.fire()
    await asyncio.sleep(0.05)
    limiter.fire()
    await asyncio.sleep(0.07)
    limiter.fire()
    await asyncio.sleep(0.18)
    last_fire = loop.time() - start
    limiter.fire()
    await asyncio.sleep(0.15)
    assert len(calls) == 4
    assert calls[1] >= 0.09 and calls[2] >= 0.19
    assert calls[3] >= last_fire - 0.01


@pytest.mark.asyncio
async def test_rate_limiter_single_fire_runs_once() -> None:
    calls: list[int] = []
    limiter = RateLimiter(30, lambda: calls.append(1))
    limiter.fire()
    await asyncio.sleep(0.1)
    assert calls == [1]


@pytest.mark.asyncio
async def test_rate_limiter_cancel_forgets_missed_fire() -> None:
    calls: list[int] = []
    limiter = RateLimiter(50, lambda: calls.append(1))
    limiter.fire()
    limiter.fire()
    limiter.cancel()
    await asyncio.sleep(0.1)
    assert calls == [1]


@pytest.mark.asyncio
async def test_async_rate_limiter_keeps_only_latest_pending_handler() -> None:
    loop = asyncio.get_running_loop()
    log: list[str] = []
    times: dict[str, float] = {}
    gate = asyncio.Event()
    limiter = AsyncRateLimiter(30)

    async def first() -> None:
        log.append("first:start")
        await gate.wait()
        log.append("first:end")
        times["first:end"] = loop.time()

    async def dropped() -> None:
        log.append("dropped")

    async def latest() -> None:
        times["latest"] = loop.time()
        log.append("latest")

    limiter.fire(first)
    await asyncio.sleep(0)
    assert limiter.running
    limiter.fire(dropped)
    limiter.fire(latest)
    settled = limiter.settled
    gate.set()
    await settled

    assert log == ["first:start", "first:end", "latest"]
    assert times["latest"] - times["first:end"] >= 0.025


@pytest.mark.asyncio
async def test_async_rate_limiter_settled_is_done_when_idle() -> None:
    limiter = AsyncRateLimiter(10)
    await asyncio.wait_for(limiter.settled, timeout=0.1)
    assert not limiter.running


@pytest.mark.asyncio
async def test_async_rate_limiter_logs_handler_errors(caplog: pytest.LogCaptureFixture) -> None:
    limiter = AsyncRateLimiter(0)

    async def boom() -> None:
        raise ValueError("boom")

    with caplog.at_level(logging.ERROR, logger="fstar_lsp.signals"):
        limiter.fire(boom)
        await limiter.settled
    assert "rate-limited handler failed" in caplog.text


@pytest.mark.asyncio
async def test_async_rate_limiter_cancel_settles_waiters() -> None:
    gate = asyncio.Event()
    limiter = AsyncRateLimiter(10)

    async def blocked() -> None:
        await gate.wait()

    limiter.fire(blocked)
    settled = limiter.settled
    limiter.cancel()
    await asyncio.wait_for(settled, timeout=0.1)
    assert not limiter.running
