"""Re-derive project details, scenario and missing documents from processed text."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from .gateway import AIGateway, ProjectDetails, aggregate_processed_text, estimate_tokens
from .ledger import QuotaLedger
from .projects import Project, ProjectStore, copy_project
from .scenarios import normalize_scenario, required_documents
from .scheduler import TaskScheduler

logger = logging.getLogger(__name__)

DEFAULT_INPUT_ESTIMATE = 3000
METADATA_OUTPUT_TOKENS = 300
RETRY_KEY_PREFIX = "derive:"


class DeriveOutcome:
    SKIPPED = "skipped"
    MISSING = "missing"
    NO_TEXT = "no_text"
    DENIED = "denied"
    RATE_LIMITED = "rate_limited"
    ABANDONED = "abandoned"
    ERROR = "error"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def merge_project_details(project: Project, details: ProjectDetails) -> dict[str, Any]:
    """Return field changes for ``project``; blank values keep what the project already has.

    The scenario is always replaced, falling back to ``UNKNOWN``.
    """

    return {
        "project_name": details.project_name or project.project_name,
        "property_address": details.property_address or project.property_address,
        "client_name": details.client_name or project.client_name,
        "search_period": details.search_period or project.search_period,
        "scenario": normalize_scenario(details.scenario),
    }


def _details_differ(before: Project, changes: dict[str, Any]) -> bool:
    return any(getattr(before, name) != value for name, value in changes.items())


class MetadataDeriver:
    """Per-project serialised metadata derivation.

    A project id sits in ``_active`` from the moment a run starts until it
    finishes, which includes any pending rate-limit retry. Requests for a
    project that is already active are dropped.
    """

    def __init__(
        self,
        store: ProjectStore,
        gateway: AIGateway,
        ledger: QuotaLedger,
        scheduler: TaskScheduler,
        *,
        retry_delay_seconds: float = 20.0,
        max_retries: int | None = 5,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._ledger = ledger
        self._scheduler = scheduler
        self._retry_delay_seconds = retry_delay_seconds
        self._max_retries = max_retries
        self._active: set[str] = set()
        self._retries: dict[str, int] = {}
        self._tasks: set[asyncio.Task[str]] = set()

    def is_active(self, project_id: str) -> bool:
        return project_id in self._active

    def trigger(self, project_id: str) -> asyncio.Task[str] | None:
        """Start a derivation in the background unless one is already running."""

        if project_id in self._active:
            logger.info("deriver.skipped project=%s reason=active", project_id)
            return None
        self._acquire(project_id)
        return self._spawn(self._derive(project_id))

    async def run(self, project_id: str) -> str:
        if project_id in self._active:
            logger.info("deriver.skipped project=%s reason=active", project_id)
            return DeriveOutcome.SKIPPED
        self._acquire(project_id)
        return await self._derive(project_id)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        for project_id in list(self._active):
            self._scheduler.cancel(RETRY_KEY_PREFIX + project_id)
        self._active.clear()
        self._retries.clear()

    def refresh_completeness(self, project_id: str) -> list[str] | None:
        """Recompute ``missing_documents`` for the project's current scenario and labels."""

        project = self._store.get_project(project_id)
        if project is None:
            return None
        uploaded = [label for document in project.documents for label in document.doc_types]
        missing = self._gateway.analyze_completeness(uploaded, required_documents(project.scenario))
        self._store.update_project(project_id, missing_documents=missing)
        logger.info(
            "deriver.completeness project=%s scenario=%s missing=%s",
            project_id,
            project.scenario,
            len(missing),
        )
        return missing

    async def _derive(self, project_id: str) -> str:
        keep_lock = False
        try:
            outcome = await self._derive_locked(project_id)
            keep_lock = outcome == DeriveOutcome.RATE_LIMITED
            return outcome
        except Exception as exc:
            logger.exception("deriver.failed project=%s error=%s", project_id, exc)
            return DeriveOutcome.ERROR
        finally:
            if not keep_lock:
                self._release(project_id)

    async def _derive_locked(self, project_id: str) -> str:
        project = self._store.get_project(project_id)
        if project is None:
            logger.info("deriver.project_missing project=%s", project_id)
            return DeriveOutcome.MISSING

        text = aggregate_processed_text(project.documents)
        if not text:
            self.refresh_completeness(project_id)
            return DeriveOutcome.NO_TEXT

        estimated_input = estimate_tokens(text) or DEFAULT_INPUT_ESTIMATE
        if not await self._ledger.check_token_allowance(estimated_input, METADATA_OUTPUT_TOKENS):
            logger.info("deriver.denied project=%s estimated_input=%s", project_id, estimated_input)
            return DeriveOutcome.DENIED

        before = copy_project(project)
        result = await self._gateway.derive_metadata(text, estimated_input, METADATA_OUTPUT_TOKENS)
        if result.rate_limited:
            return self._schedule_retry(project_id)
        if not result.ok or result.value is None:
            logger.error("deriver.metadata_failed project=%s error=%s", project_id, result.error)
            return DeriveOutcome.ERROR

        current = self._store.get_project(project_id)
        if current is None:
            logger.info("deriver.project_missing project=%s stage=merge", project_id)
            return DeriveOutcome.MISSING
        changes = merge_project_details(current, result.value)
        changed = _details_differ(before, changes)
        self._store.update_project(project_id, **changes)
        self.refresh_completeness(project_id)
        logger.info(
            "deriver.completed project=%s scenario=%s changed=%s",
            project_id,
            changes["scenario"],
            changed,
        )
        return DeriveOutcome.UPDATED if changed else DeriveOutcome.UNCHANGED

    def _schedule_retry(self, project_id: str) -> str:
        attempts = self._retries.get(project_id, 0) + 1
        if self._max_retries is not None and attempts > self._max_retries:
            logger.warning(
                "deriver.retries_exhausted project=%s attempts=%s",
                project_id,
                attempts - 1,
            )
            self._retries.pop(project_id, None)
            return DeriveOutcome.ABANDONED
        self._retries[project_id] = attempts
        self._scheduler.schedule(
            RETRY_KEY_PREFIX + project_id,
            self._retry_delay_seconds,
            lambda: self._spawn(self._retry(project_id)),
        )
        logger.warning(
            "deriver.rate_limited project=%s attempt=%s delay=%.1f",
            project_id,
            attempts,
            self._retry_delay_seconds,
        )
        return DeriveOutcome.RATE_LIMITED

    async def _retry(self, project_id: str) -> str:
        if project_id not in self._active:
            return DeriveOutcome.SKIPPED
        logger.info("deriver.retry project=%s attempt=%s", project_id, self._retries.get(project_id, 0))
        return await self._derive(project_id)

    def _spawn(self, coro: Coroutine[Any, Any, str]) -> asyncio.Task[str]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _acquire(self, project_id: str) -> None:
        self._active.add(project_id)
        self._retries.pop(project_id, None)

    def _release(self, project_id: str) -> None:
        self._active.discard(project_id)
        if not self._scheduler.has(RETRY_KEY_PREFIX + project_id):
            self._retries.pop(project_id, None)


__all__ = ["DeriveOutcome", "MetadataDeriver", "merge_project_details"]
