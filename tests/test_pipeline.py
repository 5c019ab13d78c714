from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from titlesearch.gateway import AIGateway
from titlesearch.ledger import ApiLimits
from titlesearch.llm import LLMResponse
from titlesearch.pipeline import (
    ALLOWANCE_DENIED_MESSAGE,
    RESUME_TASK_KEY,
    UNSUPPORTED_MESSAGE,
    DocumentPipeline,
    PollOutcome,
)
from titlesearch.projects import DocumentStatus, Project, ProjectStore, UploadedFile, new_document

from conftest import FakeBackend, make_upload

IN_FLIGHT = {DocumentStatus.EXTRACTING, DocumentStatus.CLASSIFYING}


class _InFlightCheckingBackend(FakeBackend):
    """Records how many documents were mid-processing whenever the provider is called."""

    def __init__(self, store: ProjectStore) -> None:
        super().__init__()
        self._store = store
        self.in_flight_counts: List[int] = []

    async def generate(self, operation: str, prompt: str, **kwargs: Any) -> LLMResponse:
        count = sum(
            1
            for project in self._store.list_projects()
            for document in project.documents
            if document.status in IN_FLIGHT
        )
        self.in_flight_counts.append(count)
        return await super().generate(operation, prompt, **kwargs)


def _add_project(store: ProjectStore, *uploads: UploadedFile, project_id: str = "proj-1") -> Project:
    project = Project(
        id=project_id,
        project_name="Baner Plot",
        property_address="Plot 12, Baner",
        client_name="A. Kulkarni",
        search_period="30 years",
        created_at="2025-03-14T10:00:00+00:00",
    )
    project.documents = [new_document(project_id, upload, status=DocumentStatus.UPLOADED) for upload in uploads]
    return store.add_project(project)


def _pipeline(store, gateway, ledger, scheduler, processed: list[str], metrics=None) -> DocumentPipeline:
    return DocumentPipeline(
        store,
        gateway,
        ledger,
        scheduler,
        backoff_seconds=20.0,
        on_document_processed=processed.append,
        metrics=metrics,
    )


def _enqueue_all(pipeline: DocumentPipeline, project: Project) -> None:
    for document in project.documents:
        pipeline.enqueue(project.id, document.id, document.file)


@pytest.mark.asyncio
async def test_documents_are_processed_in_order(store, gateway, ledger, scheduler, backend: FakeBackend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    processed: list[str] = []
    pipeline = _pipeline(store, gateway, ledger, scheduler, processed)
    _enqueue_all(pipeline, project)
    backend.script("extractTextFromFile", "text of a", "text of b")

    assert await pipeline.poll_once() == PollOutcome.PROCESSED
    assert await pipeline.poll_once() == PollOutcome.PROCESSED
    assert await pipeline.poll_once() == PollOutcome.IDLE

    first, second = store.get_project("proj-1").documents
    assert (first.status, first.extracted_text, first.doc_types) == (DocumentStatus.PROCESSED, "text of a", ["Sale Deed"])
    assert (second.status, second.extracted_text) == (DocumentStatus.PROCESSED, "text of b")
    assert processed == ["proj-1", "proj-1"]
    assert pipeline.pending() == []


@pytest.mark.asyncio
async def test_only_one_document_in_flight(store, ledger, scheduler) -> None:
    await ledger.load("user-1")
    backend = _InFlightCheckingBackend(store)
    gateway = AIGateway(backend, ledger)  # type: ignore[arg-type]
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"), make_upload("c.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)

    outcomes = await asyncio.gather(pipeline.poll_once(), pipeline.poll_once())
    assert sorted(outcomes) == sorted([PollOutcome.PROCESSED, PollOutcome.BUSY])
    while await pipeline.poll_once() != PollOutcome.IDLE:
        pass

    assert backend.in_flight_counts
    assert max(backend.in_flight_counts) == 1
    assert all(document.status == DocumentStatus.PROCESSED for document in store.get_project("proj-1").documents)


@pytest.mark.asyncio
async def test_rate_limit_pauses_queue_and_keeps_job(store, gateway, ledger, scheduler, clock, backend: FakeBackend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)
    backend.script("extractTextFromFile", RuntimeError("429 Too Many Requests"))

    assert await pipeline.poll_once() == PollOutcome.RATE_LIMITED
    assert pipeline.is_paused
    assert scheduler.has(RESUME_TASK_KEY)
    assert len(pipeline.pending()) == 2
    assert pipeline.pending()[0].document_id == project.documents[0].id
    assert store.get_project("proj-1").documents[0].status == DocumentStatus.EXTRACTING
    assert await pipeline.poll_once() == PollOutcome.PAUSED

    clock.advance(19)
    assert await scheduler.run_due() == []
    assert await pipeline.poll_once() == PollOutcome.PAUSED

    clock.advance(1)
    assert await scheduler.run_due() == [RESUME_TASK_KEY]
    assert await pipeline.poll_once() == PollOutcome.PROCESSED
    assert store.get_project("proj-1").documents[0].status == DocumentStatus.PROCESSED


@pytest.mark.asyncio
async def test_classification_rate_limit_retries_whole_job(
    store, gateway, ledger, scheduler, clock, backend: FakeBackend
) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)
    backend.script("classifyDocument", RuntimeError("rate limit reached"))

    assert await pipeline.poll_once() == PollOutcome.RATE_LIMITED
    assert store.get_project("proj-1").documents[0].status == DocumentStatus.CLASSIFYING

    clock.advance(20)
    await scheduler.run_due()
    assert await pipeline.poll_once() == PollOutcome.PROCESSED
    assert len(backend.calls_for("extractTextFromFile")) == 2


@pytest.mark.asyncio
async def test_unsupported_file_is_stored_but_not_analyzed(store, gateway, ledger, scheduler, backend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("table.csv", mime_type="text/csv"))
    processed: list[str] = []
    pipeline = _pipeline(store, gateway, ledger, scheduler, processed)
    _enqueue_all(pipeline, project)

    assert await pipeline.poll_once() == PollOutcome.UNSUPPORTED

    document = store.get_project("proj-1").documents[0]
    assert document.status == DocumentStatus.UNSUPPORTED
    assert document.error == UNSUPPORTED_MESSAGE
    assert processed == ["proj-1"]
    assert backend.calls == []


@pytest.mark.asyncio
async def test_extraction_error_marks_document_and_advances(store, gateway, ledger, scheduler, backend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    processed: list[str] = []
    pipeline = _pipeline(store, gateway, ledger, scheduler, processed)
    _enqueue_all(pipeline, project)
    backend.script("extractTextFromFile", "Error: the scan is unreadable", "second text")

    assert await pipeline.poll_once() == PollOutcome.ERROR
    assert await pipeline.poll_once() == PollOutcome.PROCESSED

    first, second = store.get_project("proj-1").documents
    assert first.status == DocumentStatus.ERROR
    assert first.error == "Error: the scan is unreadable"
    assert second.status == DocumentStatus.PROCESSED
    assert processed == ["proj-1"]


@pytest.mark.asyncio
async def test_deleted_document_job_is_dropped(store, gateway, ledger, scheduler) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)

    store.remove_document("proj-1", project.documents[0].id)

    assert await pipeline.poll_once() == PollOutcome.DROPPED
    assert await pipeline.poll_once() == PollOutcome.PROCESSED
    remaining = store.get_project("proj-1").documents
    assert len(remaining) == 1
    assert remaining[0].status == DocumentStatus.PROCESSED


@pytest.mark.asyncio
async def test_denied_allowance_marks_error(store, gateway, ledger, scheduler, repository, backend, notifier) -> None:
    repository.limits["user-1"] = ApiLimits(
        user_id="user-1",
        plan_id=1,
        reset_date="2025-03-01",
        input_tokens_used_monthly=2_000_000,
    )
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)

    assert await pipeline.poll_once() == PollOutcome.DENIED

    document = store.get_project("proj-1").documents[0]
    assert document.status == DocumentStatus.ERROR
    assert document.error == ALLOWANCE_DENIED_MESSAGE
    assert backend.calls == []
    assert pipeline.pending() == []
    assert "Monthly input token limit" in notifier.latest().message


@pytest.mark.asyncio
async def test_unknown_labels_resolve_to_other(store, gateway, ledger, scheduler, backend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [])
    _enqueue_all(pipeline, project)
    backend.script("classifyDocument", "Birth Certificate", "Ration Card")

    await pipeline.poll_once()
    await pipeline.poll_once()

    documents = store.get_project("proj-1").documents
    assert [document.status for document in documents] == [DocumentStatus.PROCESSED] * 2
    assert [document.doc_types for document in documents] == [["Other"], ["Other"]]


@pytest.mark.asyncio
async def test_pipeline_metrics_and_clear(store, gateway, ledger, scheduler, metrics, backend) -> None:
    await ledger.load("user-1")
    project = _add_project(store, make_upload("a.pdf"), make_upload("b.pdf"))
    pipeline = _pipeline(store, gateway, ledger, scheduler, [], metrics=metrics)
    _enqueue_all(pipeline, project)
    assert metrics.gauge_value("pipeline.queue_depth") == 2

    await pipeline.poll_once()
    assert metrics.counter_value("pipeline.documents", outcome="processed") == 1
    assert metrics.gauge_value("pipeline.queue_depth") == 1

    backend.script("extractTextFromFile", RuntimeError("429"))
    await pipeline.poll_once()
    assert pipeline.is_paused

    pipeline.clear()
    assert pipeline.pending() == []
    assert not pipeline.is_paused
    assert not scheduler.has(RESUME_TASK_KEY)
    assert await pipeline.poll_once() == PollOutcome.IDLE
