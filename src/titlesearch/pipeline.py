"""Single-worker FIFO pipeline that extracts and classifies uploaded documents."""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque

from .gateway import AIGateway
from .ledger import QuotaLedger
from .observability import MetricsRecorder
from .projects import Document, DocumentStatus, ProjectStore, UploadedFile
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

RESUME_TASK_KEY = "pipeline.resume"
UNSUPPORTED_MESSAGE = "This file type can be stored but not analyzed by AI."
ALLOWANCE_DENIED_MESSAGE = "Usage allowance exceeded. Please upgrade your plan or wait for the next cycle."
MISSING_FILE_MESSAGE = "File data is no longer available. Please re-upload."

EXTRACTION_OUTPUT_TOKENS = 2000
CLASSIFICATION_INPUT_TOKENS = 500
CLASSIFICATION_OUTPUT_TOKENS = 50


class PollOutcome:
    IDLE = "idle"
    BUSY = "busy"
    PAUSED = "paused"
    DROPPED = "dropped"
    PROCESSED = "processed"
    UNSUPPORTED = "unsupported"
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass(slots=True)
class ProcessingQueueItem:
    project_id: str
    document_id: str
    file: UploadedFile | None = None


class _StageFailed(RuntimeError):
    """Raised when a gateway stage returns an error result."""


class DocumentPipeline:
    """Process queued documents one at a time.

    ``poll_once`` is the tick: when idle, unpaused and non-empty it takes the
    head job through extraction and classification. A rate-limited call keeps
    the job at the head and pauses the whole queue for ``backoff_seconds``.
    """

    def __init__(
        self,
        store: ProjectStore,
        gateway: AIGateway,
        ledger: QuotaLedger,
        scheduler: TaskScheduler,
        *,
        backoff_seconds: float = 20.0,
        on_document_processed: Callable[[str], object] | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._ledger = ledger
        self._scheduler = scheduler
        self._backoff_seconds = backoff_seconds
        self._on_document_processed = on_document_processed
        self._metrics = metrics
        self._queue: Deque[ProcessingQueueItem] = deque()
        self._busy = False
        self._paused = False

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pending(self) -> list[ProcessingQueueItem]:
        return list(self._queue)

    def set_processed_callback(self, callback: Callable[[str], object] | None) -> None:
        self._on_document_processed = callback

    def enqueue(self, project_id: str, document_id: str, file: UploadedFile | None) -> ProcessingQueueItem:
        item = ProcessingQueueItem(project_id=project_id, document_id=document_id, file=file)
        self._queue.append(item)
        logger.info(
            "pipeline.enqueued project=%s doc_id=%s depth=%s",
            project_id,
            document_id,
            len(self._queue),
        )
        self._report_depth()
        return item

    def clear(self) -> None:
        self._queue.clear()
        self._paused = False
        self._scheduler.cancel(RESUME_TASK_KEY)
        self._report_depth()
        logger.info("pipeline.cleared")

    def resume(self) -> None:
        if self._paused:
            logger.info("pipeline.resumed depth=%s", len(self._queue))
        self._paused = False

    async def poll_once(self) -> str:
        if self._busy:
            return PollOutcome.BUSY
        if self._paused:
            return PollOutcome.PAUSED
        if not self._queue:
            return PollOutcome.IDLE

        job = self._queue[0]
        document = self._store.get_document(job.project_id, job.document_id)
        if document is None:
            self._dequeue(job)
            logger.info("pipeline.dropped project=%s doc_id=%s reason=missing", job.project_id, job.document_id)
            return PollOutcome.DROPPED

        self._busy = True
        try:
            outcome = await self._process(job, document)
        except Exception as exc:
            message = str(exc) or "AI processing failed"
            logger.error(
                "pipeline.document.failed project=%s doc_id=%s error=%s",
                job.project_id,
                job.document_id,
                message,
            )
            self._store.update_document(
                job.project_id,
                job.document_id,
                status=DocumentStatus.ERROR,
                error=message,
            )
            self._dequeue(job)
            outcome = PollOutcome.ERROR
        finally:
            self._busy = False

        if self._metrics is not None:
            self._metrics.increment("pipeline.documents", outcome=outcome)
        return outcome

    async def _process(self, job: ProcessingQueueItem, document: Document) -> str:
        upload = job.file or document.file
        if upload is None:
            raise _StageFailed(MISSING_FILE_MESSAGE)

        self._update(job, status=DocumentStatus.EXTRACTING, error=None)
        estimated_input = math.ceil(upload.size / 4096)
        if not await self._ledger.check_token_allowance(estimated_input, EXTRACTION_OUTPUT_TOKENS):
            return self._deny(job)

        extraction = await self._gateway.extract_text(upload, estimated_input, EXTRACTION_OUTPUT_TOKENS)
        if extraction.rate_limited:
            return self._pause(job)
        if extraction.unsupported:
            self._update(job, status=DocumentStatus.UNSUPPORTED, error=UNSUPPORTED_MESSAGE)
            self._dequeue(job)
            logger.info("pipeline.document.unsupported project=%s doc_id=%s", job.project_id, job.document_id)
            self._notify_processed(job.project_id)
            return PollOutcome.UNSUPPORTED
        if not extraction.ok or not extraction.value:
            raise _StageFailed(extraction.error or "Error: The text extraction process failed.")

        text = extraction.value
        self._update(job, extracted_text=text, status=DocumentStatus.CLASSIFYING)
        if not await self._ledger.check_token_allowance(
            CLASSIFICATION_INPUT_TOKENS,
            CLASSIFICATION_OUTPUT_TOKENS,
        ):
            return self._deny(job)

        classification = await self._gateway.classify_document(
            text,
            CLASSIFICATION_INPUT_TOKENS,
            CLASSIFICATION_OUTPUT_TOKENS,
        )
        if classification.rate_limited:
            return self._pause(job)
        if not classification.ok or not classification.value:
            raise _StageFailed(classification.error or "Document classification failed.")

        label = classification.value
        self._update(job, doc_types=[label], status=DocumentStatus.PROCESSED, error=None)
        self._dequeue(job)
        logger.info(
            "pipeline.document.processed project=%s doc_id=%s label=%s",
            job.project_id,
            job.document_id,
            label,
        )
        self._notify_processed(job.project_id)
        return PollOutcome.PROCESSED

    def _update(self, job: ProcessingQueueItem, **changes: object) -> None:
        self._store.update_document(job.project_id, job.document_id, **changes)

    def _deny(self, job: ProcessingQueueItem) -> str:
        self._update(job, status=DocumentStatus.ERROR, error=ALLOWANCE_DENIED_MESSAGE)
        self._dequeue(job)
        logger.info("pipeline.document.denied project=%s doc_id=%s", job.project_id, job.document_id)
        return PollOutcome.DENIED

    def _pause(self, job: ProcessingQueueItem) -> str:
        self._paused = True
        self._scheduler.schedule(RESUME_TASK_KEY, self._backoff_seconds, self.resume)
        logger.warning(
            "pipeline.paused project=%s doc_id=%s backoff=%.1f",
            job.project_id,
            job.document_id,
            self._backoff_seconds,
        )
        return PollOutcome.RATE_LIMITED

    def _dequeue(self, job: ProcessingQueueItem) -> None:
        if self._queue and self._queue[0] is job:
            self._queue.popleft()
        else:
            try:
                self._queue.remove(job)
            except ValueError:
                pass
        self._report_depth()

    def _notify_processed(self, project_id: str) -> None:
        if self._on_document_processed is None:
            return
        try:
            self._on_document_processed(project_id)
        except Exception as exc:  # pragma: no cover - defensive guard
            logger.error("pipeline.callback.failed project=%s error=%s", project_id, exc)

    def _report_depth(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge("pipeline.queue_depth", len(self._queue))


__all__ = ["DocumentPipeline", "PollOutcome", "ProcessingQueueItem"]
