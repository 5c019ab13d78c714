from __future__ import annotations

import asyncio

import pytest

from titlesearch.scheduler import TaskScheduler

from conftest import ManualClock


@pytest.mark.asyncio
async def test_tasks_run_once_when_due(scheduler: TaskScheduler, clock: ManualClock) -> None:
    calls: list[str] = []
    scheduler.schedule("late", 10, lambda: calls.append("late"))
    scheduler.schedule("early", 5, lambda: calls.append("early"))

    assert await scheduler.run_due() == []
    assert scheduler.next_due() == clock.now + 5

    clock.advance(10)
    assert await scheduler.run_due() == ["early", "late"]
    assert calls == ["early", "late"]
    assert not scheduler.has("early")
    assert await scheduler.run_due() == []


@pytest.mark.asyncio
async def test_rescheduling_a_key_replaces_it(scheduler: TaskScheduler, clock: ManualClock) -> None:
    calls: list[int] = []
    scheduler.schedule("retry", 5, lambda: calls.append(1))
    scheduler.schedule("retry", 20, lambda: calls.append(2))

    clock.advance(5)
    assert await scheduler.run_due() == []
    clock.advance(15)
    assert await scheduler.run_due() == ["retry"]
    assert calls == [2]


@pytest.mark.asyncio
async def test_interval_tasks_rearm(scheduler: TaskScheduler, clock: ManualClock) -> None:
    calls: list[float] = []

    async def tick() -> None:
        calls.append(clock.now)

    scheduler.schedule("day-check", 60, tick, interval=60)

    clock.advance(60)
    await scheduler.run_due()
    await scheduler.wait_idle()
    clock.advance(60)
    await scheduler.run_due()
    await scheduler.wait_idle()

    assert len(calls) == 2
    assert scheduler.due_at("day-check") == clock.now + 60


@pytest.mark.asyncio
async def test_cancel_and_clear(scheduler: TaskScheduler, clock: ManualClock) -> None:
    calls: list[str] = []
    scheduler.schedule("a", 1, lambda: calls.append("a"))
    scheduler.schedule("b", 1, lambda: calls.append("b"))

    assert scheduler.cancel("a")
    assert not scheduler.cancel("a")
    clock.advance(1)
    assert await scheduler.run_due() == ["b"]

    scheduler.schedule("c", 1, lambda: calls.append("c"))
    scheduler.clear()
    assert scheduler.next_due() is None
    assert calls == ["b"]


@pytest.mark.asyncio
async def test_callback_can_cancel_a_later_task(scheduler: TaskScheduler, clock: ManualClock) -> None:
    calls: list[str] = []

    def first() -> None:
        calls.append("first")
        scheduler.cancel("second")

    scheduler.schedule("first", 1, first)
    scheduler.schedule("second", 2, lambda: calls.append("second"))

    clock.advance(5)
    assert await scheduler.run_due() == ["first"]
    assert calls == ["first"]


@pytest.mark.asyncio
async def test_awaitable_callbacks_run_in_the_background(scheduler: TaskScheduler, clock: ManualClock) -> None:
    release = asyncio.Event()
    finished: list[str] = []

    async def slow() -> None:
        await release.wait()
        finished.append("slow")

    async def quick() -> None:
        finished.append("quick")

    scheduler.schedule("slow", 1, slow)
    scheduler.schedule("quick", 2, quick)
    clock.advance(2)

    assert await scheduler.run_due() == ["slow", "quick"]
    assert scheduler.running() == 2

    await asyncio.sleep(0)
    assert finished == ["quick"]

    release.set()
    await scheduler.wait_idle()
    assert finished == ["quick", "slow"]
    assert scheduler.running() == 0


@pytest.mark.asyncio
async def test_clear_cancels_running_callbacks(scheduler: TaskScheduler, clock: ManualClock) -> None:
    async def never() -> None:
        await asyncio.Event().wait()

    scheduler.schedule("never", 0, never)
    await scheduler.run_due()
    assert scheduler.running() == 1

    scheduler.clear()
    await scheduler.wait_idle()
    assert scheduler.running() == 0
