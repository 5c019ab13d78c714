"""Application session: the single owner of projects, usage accounting and AI work."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence
from uuid import uuid4

from .config import Settings
from .deriver import MetadataDeriver
from .gateway import AIGateway, ProjectDetails, aggregate_processed_text, estimate_tokens
from .ledger import QuotaLedger, SQLiteUsageRepository, UsageRepository, UsageSnapshot, UsageType
from .llm import LLMBackend
from .notifications import Notifier
from .observability import MetricsRecorder
from .pipeline import DocumentPipeline
from .projects import (
    NOT_PROVIDED,
    UNNAMED_PROJECT,
    Document,
    DocumentStatus,
    Project,
    ProjectStore,
    Report,
    UploadedFile,
    new_document,
    new_project_id,
)
from .scenarios import normalize_scenario
from .scheduler import Clock, TaskScheduler
from .storage import LocalStorage
from .uploads import Sleep, UploadSimulator

logger = logging.getLogger(__name__)

DAY_CHECK_TASK_KEY = "ledger.day_check"
REPORT_INPUT_OVERHEAD = 5000
REPORT_OUTPUT_TOKENS = 10000
REFORMAT_INPUT_OVERHEAD = 1000
REFORMAT_OUTPUT_TOKENS = 8000
RATE_LIMITED_NOTICE = "The AI service is busy right now. Please try again shortly."

_EDITABLE_PROJECT_FIELDS = frozenset(
    {"project_name", "property_address", "client_name", "search_period", "scenario", "advocate_instructions"}
)


class SessionError(RuntimeError):
    """Base class for session-level failures surfaced to callers."""


class NotSignedIn(SessionError):
    pass


class ProjectNotFound(SessionError, LookupError):
    pass


class DocumentNotFound(SessionError, LookupError):
    pass


@dataclass(slots=True)
class User:
    id: str
    email: str = ""
    name: str = ""
    firm_name: str = ""
    plan_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "firmName": self.firm_name,
            "planName": self.plan_name,
        }


class TitleSearchSession:
    """Compose the store, ledger, gateway, pipeline and deriver for one signed-in user."""

    def __init__(
        self,
        *,
        settings: Settings,
        store: ProjectStore,
        ledger: QuotaLedger,
        gateway: AIGateway,
        pipeline: DocumentPipeline,
        deriver: MetadataDeriver,
        uploads: UploadSimulator,
        scheduler: TaskScheduler,
        notifier: Notifier,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.ledger = ledger
        self.gateway = gateway
        self.pipeline = pipeline
        self.deriver = deriver
        self.uploads = uploads
        self.scheduler = scheduler
        self.notifier = notifier
        self.metrics = metrics
        self._user: User | None = None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @property
    def user(self) -> User | None:
        return self._user

    async def sign_in(self, user: User) -> UsageSnapshot | None:
        if self._user is not None and self._user.id != user.id:
            await self.sign_out()
        self._user = user
        snapshot = await self.ledger.load(user.id)
        if self.ledger.plan is not None:
            user.plan_name = self.ledger.plan.name
        self.scheduler.schedule(
            DAY_CHECK_TASK_KEY,
            self.settings.day_check_interval_seconds,
            self.ledger.refresh_if_day_changed,
            interval=self.settings.day_check_interval_seconds,
        )
        logger.info("session.signed_in user=%s plan=%s", user.id, user.plan_name)
        return snapshot

    async def sign_out(self) -> None:
        user_id = self._user.id if self._user else None
        self._user = None
        self.ledger.clear()
        self.pipeline.clear()
        self.deriver.reset()
        self.uploads.cancel_all()
        self.scheduler.clear()
        logger.info("session.signed_out user=%s", user_id)

    async def handle_auth_event(self, event: str, user: User | None = None) -> None:
        """Apply an authentication state change reported by the identity provider."""

        normalized = (event or "").strip().upper()
        if normalized in {"SIGNED_IN", "INITIAL_SESSION"} and user is not None:
            if self._user is None or self._user.id != user.id:
                await self.sign_in(user)
        elif normalized == "USER_UPDATED" and user is not None and self._user is not None:
            user.plan_name = self._user.plan_name
            self._user = user
        elif normalized == "SIGNED_OUT" or (normalized == "INITIAL_SESSION" and user is None):
            if self._user is not None:
                await self.sign_out()
        else:
            logger.debug("session.auth_event.ignored event=%s", event)

    def usage(self) -> UsageSnapshot | None:
        return self.ledger.snapshot()

    # ------------------------------------------------------------------
    # Projects and documents
    # ------------------------------------------------------------------
    def list_projects(self) -> list[Project]:
        return self.store.list_projects()

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return project

    async def create_project(
        self,
        details: ProjectDetails,
        files: Sequence[UploadedFile] = (),
        *,
        advocate_instructions: str = "",
    ) -> Project | None:
        """Create a project from ``details`` and queue ``files`` for processing.

        Returns ``None`` when the upload size gate rejects the batch.
        """

        self._require_user()
        files = list(files)
        if files:
            total_mb = sum(upload.size_mb for upload in files)
            if not await self.ledger.check_allowance(UsageType.FILE_SIZE_TOTAL_PER_PROJECT, total_mb):
                return None

        project_id = new_project_id()
        documents = [new_document(project_id, upload, status=DocumentStatus.UPLOADED) for upload in files]
        project = Project(
            id=project_id,
            project_name=details.project_name or UNNAMED_PROJECT,
            property_address=details.property_address or NOT_PROVIDED,
            client_name=details.client_name or NOT_PROVIDED,
            search_period=details.search_period or NOT_PROVIDED,
            created_at=_now(),
            documents=documents,
            scenario=normalize_scenario(details.scenario),
            advocate_instructions=advocate_instructions,
        )
        self.store.add_project(project)
        self.deriver.refresh_completeness(project_id)
        for document in documents:
            self.pipeline.enqueue(project_id, document.id, document.file)
        self.notifier.success(f"Project '{project.project_name}' created.")
        return project

    async def upload_documents(self, project_id: str, files: Sequence[UploadedFile]) -> list[Document]:
        self._require_user()
        self.get_project(project_id)

        accepted: list[UploadedFile] = []
        for upload in files:
            if await self.ledger.check_allowance(UsageType.FILE_SIZE_PER_DOCUMENT, upload.size_mb):
                accepted.append(upload)
            else:
                logger.info("session.upload.skipped project=%s file=%s", project_id, upload.name)
        if not accepted:
            return []

        total_mb = sum(upload.size_mb for upload in accepted)
        if not await self.ledger.check_allowance(UsageType.FILE_SIZE_TOTAL_PER_PROJECT, total_mb):
            return []

        documents = [new_document(project_id, upload, status=DocumentStatus.UPLOADING) for upload in accepted]
        self.store.add_documents(project_id, documents)
        for document, upload in zip(documents, accepted):
            self.uploads.start(project_id, document.id, upload)
        return documents

    def delete_document(self, project_id: str, document_id: str) -> None:
        project = self.get_project(project_id)
        document = project.find_document(document_id)
        if document is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        self.store.remove_document(project_id, document_id)
        self.deriver.refresh_completeness(project_id)
        self.notifier.info(f"Document '{document.file_name}' deleted.")

    def delete_project(self, project_id: str) -> None:
        project = self.get_project(project_id)
        self.store.remove_project(project_id)
        self.notifier.info(f"Project '{project.project_name}' deleted.")

    def update_project_details(self, project_id: str, **changes: Any) -> Project:
        self.get_project(project_id)
        unknown = set(changes) - _EDITABLE_PROJECT_FIELDS
        if unknown:
            raise ValueError(f"Unsupported project fields: {', '.join(sorted(unknown))}")
        if "scenario" in changes:
            changes["scenario"] = normalize_scenario(changes["scenario"])
        project = self.store.update_project(project_id, **changes) or self.get_project(project_id)
        if "scenario" in changes:
            self.deriver.refresh_completeness(project_id)
        return project

    def set_advocate_instructions(self, project_id: str, instructions: str) -> Project:
        return self.update_project_details(project_id, advocate_instructions=instructions or "")

    def assign_document_type(self, project_id: str, document_id: str, doc_type: str) -> Document:
        """Add a manual label to a document; derivation is not re-run.

        The label is stored as chosen, so any checklist entry can be satisfied,
        including ones outside the classification vocabulary.
        """

        self.get_project(project_id)
        label = (doc_type or "").strip()
        if not label:
            raise ValueError("Document type must not be empty")
        document = self.store.append_document_type(project_id, document_id, label)
        if document is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        self.deriver.refresh_completeness(project_id)
        return document

    async def derive_metadata(self, project_id: str) -> str:
        self._require_user()
        self.get_project(project_id)
        return await self.deriver.run(project_id)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------
    async def generate_report(self, project_id: str, report_format: str) -> Report | None:
        self._require_user()
        project = self.get_project(project_id)
        context = aggregate_processed_text(project.documents)
        estimated_input = estimate_tokens(context) + REPORT_INPUT_OVERHEAD

        if not await self.ledger.check_allowance(UsageType.STR_GENERATION, 1):
            return None
        if not await self.ledger.check_token_allowance(estimated_input, REPORT_OUTPUT_TOKENS):
            return None

        result = await self.gateway.generate_report(project, report_format, estimated_input, REPORT_OUTPUT_TOKENS)
        if result.rate_limited:
            self.notifier.error(RATE_LIMITED_NOTICE)
            return None
        if not result.ok or result.value is None:
            self.notifier.error(f"Failed to generate report: {result.error}")
            return None

        draft = result.value
        report = Report(
            id=f"report-{uuid4().hex}",
            project_id=project_id,
            generated_at=_now(),
            status="Finalized",
            content=draft.content,
            str_category=draft.str_category,
            summary=draft.summary,
            risk_flags=list(draft.risk_flags),
            report_format_used=report_format,
        )
        self.store.set_report(project_id, report)
        self.notifier.success("Report generated successfully.")
        logger.info("session.report.generated project=%s format=%s", project_id, report_format)
        return report

    async def reformat_report(
        self,
        project_id: str,
        target_format: str,
        content: str | None = None,
    ) -> Report | None:
        self._require_user()
        project = self.get_project(project_id)
        source = content if content is not None else (project.report.content if project.report else "")
        estimated_input = estimate_tokens(source) + REFORMAT_INPUT_OVERHEAD
        if source.strip() and not await self.ledger.check_token_allowance(estimated_input, REFORMAT_OUTPUT_TOKENS):
            return None

        result = await self.gateway.reformat_report(
            source,
            target_format,
            project.advocate_instructions,
            estimated_input,
            REFORMAT_OUTPUT_TOKENS,
        )
        if result.rate_limited:
            self.notifier.error(RATE_LIMITED_NOTICE)
            return None
        if not result.ok or result.value is None:
            self.notifier.error(f"Failed to re-format report: {result.error}")
            return None

        if project.report is not None:
            report = project.report
            report.content = result.value.content
            report.report_format_used = target_format
            report.generated_at = _now()
        else:
            report = Report(
                id=f"report-{uuid4().hex}",
                project_id=project_id,
                generated_at=_now(),
                status="Draft",
                content=result.value.content,
                report_format_used=target_format,
            )
        self.store.set_report(project_id, report)
        self.notifier.success(f"Report re-formatted to {target_format}.")
        return report

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def tick(self) -> str:
        """Advance both loops by one step: fire due tasks, then poll the pipeline once."""

        await self.scheduler.run_due()
        return await self.pipeline.poll_once()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Drive the scheduler and the pipeline until ``stop_event`` is set.

        Each runs in its own task, so a document stuck in extraction never delays
        a deriver retry or the day check, and a slow scheduled task never delays
        the pipeline.
        """

        interval = max(self.settings.pipeline_poll_interval, 0.01)
        logger.info("session.loop.started interval=%.2f", interval)
        loops = [
            asyncio.create_task(self._drive("scheduler", self.scheduler.run_due, interval, stop_event)),
            asyncio.create_task(self._drive("pipeline", self.pipeline.poll_once, interval, stop_event)),
        ]
        try:
            await asyncio.gather(*loops)
        finally:
            for loop_task in loops:
                loop_task.cancel()
            logger.info("session.loop.stopped")

    async def _drive(
        self,
        name: str,
        step: Callable[[], Awaitable[Any]],
        interval: float,
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            try:
                await step()
            except Exception as exc:  # pragma: no cover - defensive guard
                logger.exception("session.%s.step_failed error=%s", name, exc)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def _require_user(self) -> User:
        if self._user is None:
            raise NotSignedIn("Sign in to continue.")
        return self._user


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_session(
    settings: Settings,
    *,
    backend: LLMBackend | None = None,
    repository: UsageRepository | None = None,
    metrics: MetricsRecorder | None = None,
    clock: Clock | None = None,
    rng: random.Random | None = None,
    sleep: Sleep | None = None,
) -> TitleSearchSession:
    """Wire a :class:`TitleSearchSession` from ``settings``."""

    notifier = Notifier()
    metrics = metrics or settings.build_metrics_recorder()
    storage = LocalStorage(settings.storage_path(), max_bytes=settings.storage_max_bytes)
    store = ProjectStore(storage, storage_key=settings.storage_key, notifier=notifier)
    if repository is None:
        db_path = Path(settings.usage_db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        repository = SQLiteUsageRepository(db_path)
    ledger = QuotaLedger(repository, notifier=notifier, default_plan_name=settings.default_plan_name)
    gateway = AIGateway(backend or LLMBackend(settings), ledger, metrics=metrics)
    scheduler = TaskScheduler(clock=clock)
    pipeline = DocumentPipeline(
        store,
        gateway,
        ledger,
        scheduler,
        backoff_seconds=settings.rate_limit_backoff_seconds,
        metrics=metrics,
    )
    deriver = MetadataDeriver(
        store,
        gateway,
        ledger,
        scheduler,
        retry_delay_seconds=settings.derive_retry_delay_seconds,
        max_retries=settings.derive_max_retries,
    )
    pipeline.set_processed_callback(deriver.trigger)
    uploads = UploadSimulator(
        store,
        pipeline,
        min_kbps=settings.upload_min_kbps,
        max_kbps=settings.upload_max_kbps,
        tick_seconds=settings.upload_tick_seconds,
        failure_chance=settings.upload_failure_chance,
        rng=rng,
        sleep=sleep,
    )
    logger.info(
        "session.built data_dir=%s backend=%s projects=%s",
        settings.data_dir,
        settings.ai_backend,
        len(store.list_projects()),
    )
    return TitleSearchSession(
        settings=settings,
        store=store,
        ledger=ledger,
        gateway=gateway,
        pipeline=pipeline,
        deriver=deriver,
        uploads=uploads,
        scheduler=scheduler,
        notifier=notifier,
        metrics=metrics,
    )


__all__ = [
    "DocumentNotFound",
    "NotSignedIn",
    "ProjectNotFound",
    "SessionError",
    "TitleSearchSession",
    "User",
    "build_session",
]
