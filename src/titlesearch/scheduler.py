"""Deferred and periodic task scheduling for the session loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Set

logger = logging.getLogger(__name__)

TaskCallback = Callable[[], Awaitable[Any] | Any]
Clock = Callable[[], float]


@dataclass(slots=True)
class ScheduledTask:
    key: str
    due_at: float
    callback: TaskCallback
    interval: float | None = None


class TaskScheduler:
    """Keyed list of tasks with due times.

    Scheduling a key that is already present replaces the earlier task. Periodic
    tasks are re-armed after each run. The clock is injectable so tests can
    advance time without sleeping.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or time.monotonic
        self._tasks: Dict[str, ScheduledTask] = {}
        self._running: Set[asyncio.Future[Any]] = set()

    def now(self) -> float:
        return self._clock()

    def schedule(
        self,
        key: str,
        delay: float,
        callback: TaskCallback,
        *,
        interval: float | None = None,
    ) -> ScheduledTask:
        task = ScheduledTask(
            key=key,
            due_at=self._clock() + max(delay, 0.0),
            callback=callback,
            interval=interval,
        )
        self._tasks[key] = task
        logger.debug("scheduler.scheduled key=%s delay=%.2f interval=%s", key, delay, interval)
        return task

    def cancel(self, key: str) -> bool:
        return self._tasks.pop(key, None) is not None

    def has(self, key: str) -> bool:
        return key in self._tasks

    def due_at(self, key: str) -> float | None:
        task = self._tasks.get(key)
        return task.due_at if task else None

    def next_due(self) -> float | None:
        if not self._tasks:
            return None
        return min(task.due_at for task in self._tasks.values())

    def clear(self) -> None:
        self._tasks.clear()
        for handle in list(self._running):
            handle.cancel()

    def due_tasks(self, *, now: float | None = None) -> list[ScheduledTask]:
        current = self._clock() if now is None else now
        due = [task for task in self._tasks.values() if task.due_at <= current]
        return sorted(due, key=lambda task: task.due_at)

    async def run_due(self, *, now: float | None = None) -> list[str]:
        """Fire every task whose due time has passed, returning their keys.

        Plain callbacks run inline. Awaitable results are started as background
        tasks, so a long callback never holds up later ticks or other owners of
        the loop; ``wait_idle`` awaits them.
        """

        current = self._clock() if now is None else now
        ran: list[str] = []
        for task in self.due_tasks(now=current):
            # A task may have been cancelled or replaced by an earlier callback.
            if self._tasks.get(task.key) is not task:
                continue
            if task.interval is not None:
                task.due_at = current + task.interval
            else:
                del self._tasks[task.key]
            try:
                result = task.callback()
                if inspect.isawaitable(result):
                    self._track(task.key, result)
            except Exception as exc:  # pragma: no cover - defensive guard
                logger.exception("scheduler.task.failed key=%s error=%s", task.key, exc)
            ran.append(task.key)
        return ran

    def running(self) -> int:
        return len(self._running)

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def _track(self, key: str, awaitable: Awaitable[Any]) -> None:
        handle = asyncio.ensure_future(awaitable)
        self._running.add(handle)
        handle.add_done_callback(lambda done: self._finished(key, done))

    def _finished(self, key: str, handle: asyncio.Future[Any]) -> None:
        self._running.discard(handle)
        if handle.cancelled():
            return
        error = handle.exception()
        if error is not None:
            logger.error("scheduler.task.failed key=%s error=%s", key, error)


__all__ = ["ScheduledTask", "TaskScheduler"]
