"""Simulated file transfers that feed uploaded documents into the pipeline."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

from .pipeline import DocumentPipeline
from .projects import DocumentStatus, ProjectStore, UploadedFile

logger = logging.getLogger(__name__)

NETWORK_FAILURE_MESSAGE = "Network interruption during upload."

Sleep = Callable[[float], Awaitable[None]]


class UploadSimulator:
    """Advance document upload progress at a random speed, occasionally failing.

    Each transfer picks a speed between ``min_kbps`` and ``max_kbps`` KiB/s and
    ticks every ``tick_seconds`` with 0.8x-1.2x jitter. With probability
    ``failure_chance`` the transfer aborts somewhere between 10% and 90%.
    """

    def __init__(
        self,
        store: ProjectStore,
        pipeline: DocumentPipeline,
        *,
        min_kbps: float = 50.0,
        max_kbps: float = 500.0,
        tick_seconds: float = 0.1,
        failure_chance: float = 0.15,
        rng: random.Random | None = None,
        sleep: Sleep | None = None,
    ) -> None:
        if min_kbps <= 0 or max_kbps < min_kbps:
            raise ValueError("upload speed bounds must satisfy 0 < min_kbps <= max_kbps")
        self._store = store
        self._pipeline = pipeline
        self._min_kbps = min_kbps
        self._max_kbps = max_kbps
        self._tick_seconds = tick_seconds
        self._failure_chance = failure_chance
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._tasks: set[asyncio.Task[bool]] = set()

    def start(self, project_id: str, document_id: str, file: UploadedFile) -> asyncio.Task[bool]:
        """Run :meth:`simulate` in the background and keep a handle until it finishes."""

        task = asyncio.create_task(self.simulate(project_id, document_id, file))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def simulate(self, project_id: str, document_id: str, file: UploadedFile) -> bool:
        """Drive one transfer to completion; return True when the document was enqueued."""

        speed_bytes = self._rng.uniform(self._min_kbps, self._max_kbps) * 1024
        will_fail = self._rng.random() < self._failure_chance
        fail_at = self._rng.uniform(10.0, 90.0) if will_fail else None
        total = max(file.size, 1)
        sent = 0.0
        progress = 0

        logger.info(
            "upload.started project=%s doc_id=%s bytes=%s kbps=%.0f",
            project_id,
            document_id,
            file.size,
            speed_bytes / 1024,
        )
        while progress < 100:
            await self._sleep(self._tick_seconds)
            if self._store.get_document(project_id, document_id) is None:
                logger.info("upload.abandoned project=%s doc_id=%s", project_id, document_id)
                return False

            jitter = self._rng.uniform(0.8, 1.2)
            sent += speed_bytes * self._tick_seconds * jitter
            progress = min(100, int(sent * 100 / total))

            if fail_at is not None and progress >= fail_at:
                self._store.update_document(
                    project_id,
                    document_id,
                    status=DocumentStatus.ERROR,
                    error=NETWORK_FAILURE_MESSAGE,
                    progress=int(fail_at),
                )
                logger.warning(
                    "upload.failed project=%s doc_id=%s progress=%s",
                    project_id,
                    document_id,
                    int(fail_at),
                )
                return False

            if progress < 100:
                self._store.update_document(project_id, document_id, progress=progress)

        self._store.update_document(
            project_id,
            document_id,
            status=DocumentStatus.UPLOADED,
            progress=100,
            error=None,
        )
        self._pipeline.enqueue(project_id, document_id, file)
        logger.info("upload.completed project=%s doc_id=%s", project_id, document_id)
        return True


__all__ = ["NETWORK_FAILURE_MESSAGE", "UploadSimulator"]
