"""Title search projects, their documents and the persistent project store."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
import json
import logging
from typing import Any, Iterable
from uuid import uuid4

from .notifications import Notifier
from .scenarios import UNKNOWN_SCENARIO, is_known_scenario
from .storage import LocalStorage, StorageQuotaExceeded

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "legalAiProjects"
QUOTA_WARNING = "Storage Limit Reached: Some data may not be saved. Consider deleting old projects."
INTERRUPTED_MESSAGE = "Processing was interrupted. Please re-upload."
UNNAMED_PROJECT = "Unnamed Project"
NOT_PROVIDED = "Not Provided"


class DocumentStatus:
    UPLOADING = "Uploading"
    UPLOADED = "Uploaded"
    EXTRACTING = "Extracting"
    CLASSIFYING = "Classifying"
    PROCESSED = "Processed"
    UNSUPPORTED = "Unsupported"
    ERROR = "Error"

    # Older snapshots used this label for the extraction stage.
    LEGACY_EXTRACTING = "Extracting Text"

    TRANSIENT = frozenset({UPLOADING, UPLOADED, EXTRACTING, LEGACY_EXTRACTING, CLASSIFYING})
    ALL = frozenset({UPLOADING, UPLOADED, EXTRACTING, CLASSIFYING, PROCESSED, UNSUPPORTED, ERROR})


@dataclass(slots=True)
class UploadedFile:
    """In-memory file handed over by the user; never persisted."""

    name: str
    data: bytes
    mime_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)


@dataclass(slots=True)
class Document:
    id: str
    project_id: str
    file_name: str
    file_type: str
    upload_date: str
    status: str
    doc_types: list[str] = field(default_factory=list)
    extracted_text: str | None = None
    progress: int = 0
    error: str | None = None
    file: UploadedFile | None = None


@dataclass(slots=True)
class Report:
    id: str
    project_id: str
    generated_at: str
    status: str
    content: str
    str_category: str | None = None
    summary: str | None = None
    risk_flags: list[str] = field(default_factory=list)
    rule_engine_flags: dict[str, Any] = field(default_factory=dict)
    report_format_used: str | None = None


@dataclass(slots=True)
class Project:
    """A title search engagement: descriptive fields, documents and an optional report."""

    id: str
    project_name: str
    property_address: str
    client_name: str
    search_period: str
    created_at: str
    documents: list[Document] = field(default_factory=list)
    report: Report | None = None
    scenario: str = UNKNOWN_SCENARIO
    missing_documents: list[str] = field(default_factory=list)
    advocate_instructions: str = ""

    def find_document(self, document_id: str) -> Document | None:
        for document in self.documents:
            if document.id == document_id:
                return document
        return None


def new_document(project_id: str, upload: UploadedFile, *, status: str) -> Document:
    return Document(
        id=f"doc-{uuid4().hex}",
        project_id=project_id,
        file_name=upload.name,
        file_type=upload.mime_type,
        upload_date=_now(),
        status=status,
        progress=100 if status != DocumentStatus.UPLOADING else 0,
        file=upload,
    )


def new_project_id() -> str:
    return f"proj-{uuid4().hex}"


def document_to_payload(document: Document) -> dict[str, Any]:
    return {
        "id": document.id,
        "projectId": document.project_id,
        "fileName": document.file_name,
        "fileType": document.file_type,
        "uploadDate": document.upload_date,
        "status": document.status,
        "docTypes": list(document.doc_types),
        "extractedText": document.extracted_text,
        "progress": document.progress,
        "error": document.error,
    }


def report_to_payload(report: Report) -> dict[str, Any]:
    return {
        "id": report.id,
        "projectId": report.project_id,
        "generatedAt": report.generated_at,
        "status": report.status,
        "content": report.content,
        "strCategory": report.str_category,
        "summary": report.summary,
        "riskFlags": list(report.risk_flags),
        "ruleEngineFlags": dict(report.rule_engine_flags),
        "reportFormatUsed": report.report_format_used,
    }


def project_to_payload(project: Project) -> dict[str, Any]:
    """Serialise ``project`` without any in-memory file references."""

    return {
        "id": project.id,
        "projectName": project.project_name,
        "propertyAddress": project.property_address,
        "clientName": project.client_name,
        "searchPeriod": project.search_period,
        "createdAt": project.created_at,
        "documents": [document_to_payload(document) for document in project.documents],
        "report": report_to_payload(project.report) if project.report else None,
        "scenario": project.scenario,
        "missingDocuments": list(project.missing_documents),
        "advocateInstructions": project.advocate_instructions,
    }


class ProjectStore:
    """In-memory project collection that snapshots itself to local storage on every change."""

    def __init__(
        self,
        storage: LocalStorage,
        *,
        storage_key: str = DEFAULT_STORAGE_KEY,
        notifier: Notifier | None = None,
        autoload: bool = True,
    ) -> None:
        self._storage = storage
        self._storage_key = storage_key
        self._notifier = notifier
        self._projects: list[Project] = []
        if autoload:
            self.load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load(self) -> list[Project]:
        """Rebuild the collection from storage, skipping anything malformed."""

        self._projects = []
        try:
            raw = self._storage.get(self._storage_key)
        except OSError as exc:
            logger.error("project.store.read_failed key=%s error=%s", self._storage_key, exc)
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("project.store.corrupt key=%s error=%s", self._storage_key, exc)
            return []
        if not isinstance(data, list):
            logger.error("project.store.unexpected_shape key=%s type=%s", self._storage_key, type(data).__name__)
            return []

        for entry in data:
            if not isinstance(entry, dict) or not entry.get("id"):
                logger.warning("project.store.skip_malformed entry=%r", entry if not isinstance(entry, dict) else "no-id")
                continue
            try:
                self._projects.append(_project_from_payload(entry))
            except Exception as exc:  # pragma: no cover - defensive guard
                logger.warning("project.store.skip_entry id=%s error=%s", entry.get("id"), exc)
        logger.info("project.store.loaded count=%s", len(self._projects))
        return list(self._projects)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_projects(self) -> list[Project]:
        return list(self._projects)

    def get_project(self, project_id: str) -> Project | None:
        for project in self._projects:
            if project.id == project_id:
                return project
        return None

    def get_document(self, project_id: str, document_id: str) -> Document | None:
        project = self.get_project(project_id)
        if project is None:
            return None
        return project.find_document(document_id)

    # ------------------------------------------------------------------
    # Mutations (each one persists)
    # ------------------------------------------------------------------
    def add_project(self, project: Project) -> Project:
        self._projects.insert(0, project)
        self._persist()
        logger.info("project.created id=%s documents=%s", project.id, len(project.documents))
        return project

    def update_project(self, project_id: str, **changes: Any) -> Project | None:
        project = self.get_project(project_id)
        if project is None:
            return None
        _apply_changes(project, changes)
        self._persist()
        return project

    def replace_project(self, updated: Project) -> Project | None:
        for index, project in enumerate(self._projects):
            if project.id == updated.id:
                self._projects[index] = updated
                self._persist()
                return updated
        return None

    def remove_project(self, project_id: str) -> bool:
        before = len(self._projects)
        self._projects = [project for project in self._projects if project.id != project_id]
        if len(self._projects) == before:
            return False
        self._persist()
        logger.info("project.deleted id=%s", project_id)
        return True

    def add_documents(self, project_id: str, documents: Iterable[Document]) -> list[Document]:
        project = self.get_project(project_id)
        if project is None:
            return []
        added = list(documents)
        project.documents.extend(added)
        self._persist()
        logger.info("project.documents.added project=%s count=%s", project_id, len(added))
        return added

    def update_document(self, project_id: str, document_id: str, **changes: Any) -> Document | None:
        document = self.get_document(project_id, document_id)
        if document is None:
            return None
        _apply_changes(document, changes)
        self._persist()
        return document

    def remove_document(self, project_id: str, document_id: str) -> bool:
        project = self.get_project(project_id)
        if project is None:
            return False
        remaining = [document for document in project.documents if document.id != document_id]
        if len(remaining) == len(project.documents):
            return False
        project.documents = remaining
        self._persist()
        logger.info("project.document.deleted project=%s doc_id=%s", project_id, document_id)
        return True

    def append_document_type(self, project_id: str, document_id: str, doc_type: str) -> Document | None:
        """Add ``doc_type`` to the document's labels unless it is already there."""

        document = self.get_document(project_id, document_id)
        if document is None:
            return None
        if doc_type not in document.doc_types:
            document.doc_types.append(doc_type)
            self._persist()
        return document

    def set_report(self, project_id: str, report: Report | None) -> Project | None:
        return self.update_project(project_id, report=report)

    def snapshot(self) -> list[dict[str, Any]]:
        return [project_to_payload(project) for project in self._projects]

    def _persist(self) -> None:
        payload = json.dumps(self.snapshot(), ensure_ascii=False)
        try:
            self._storage.set(self._storage_key, payload)
        except StorageQuotaExceeded as exc:
            logger.error("project.store.quota_exceeded key=%s error=%s", self._storage_key, exc)
            self._warn_quota()
        except OSError as exc:
            logger.error("project.store.write_failed key=%s error=%s", self._storage_key, exc)

    def _warn_quota(self) -> None:
        if self._notifier is None:
            return
        if any(item.message == QUOTA_WARNING for item in self._notifier.active()):
            return
        self._notifier.error(QUOTA_WARNING)


def _apply_changes(target: Any, changes: dict[str, Any]) -> None:
    allowed = {item.name for item in fields(target)}
    for key, value in changes.items():
        if key not in allowed:
            raise AttributeError(f"{type(target).__name__} has no field '{key}'")
        setattr(target, key, value)


def _project_from_payload(entry: dict[str, Any]) -> Project:
    project_id = str(entry["id"])
    documents: list[Document] = []
    for raw in entry.get("documents") or []:
        if not isinstance(raw, dict) or not raw.get("id"):
            logger.warning("project.store.skip_document project=%s", project_id)
            continue
        documents.append(_document_from_payload(project_id, raw))

    scenario = entry.get("scenario")
    report_raw = entry.get("report")
    return Project(
        id=project_id,
        project_name=_text_or(entry.get("projectName"), UNNAMED_PROJECT),
        property_address=_text_or(entry.get("propertyAddress"), NOT_PROVIDED),
        client_name=_text_or(entry.get("clientName"), NOT_PROVIDED),
        search_period=_text_or(entry.get("searchPeriod"), NOT_PROVIDED),
        created_at=_text_or(entry.get("createdAt"), _now()),
        documents=documents,
        report=_report_from_payload(project_id, report_raw) if isinstance(report_raw, dict) else None,
        scenario=scenario if is_known_scenario(scenario) else UNKNOWN_SCENARIO,
        missing_documents=[str(item) for item in entry.get("missingDocuments") or [] if item],
        advocate_instructions=str(entry.get("advocateInstructions") or ""),
    )


def _document_from_payload(project_id: str, raw: dict[str, Any]) -> Document:
    doc_types = [str(item) for item in raw.get("docTypes") or [] if item]
    for legacy_key in ("docType", "doc_type"):
        legacy = raw.get(legacy_key)
        if legacy and legacy not in doc_types:
            doc_types.append(str(legacy))

    status = str(raw.get("status") or DocumentStatus.ERROR)
    progress = _int_or(raw.get("progress"), 0)
    error = raw.get("error")
    if status in DocumentStatus.TRANSIENT:
        status = DocumentStatus.ERROR
        error = INTERRUPTED_MESSAGE
        progress = 0
    elif status not in DocumentStatus.ALL:
        status = DocumentStatus.ERROR
        error = error or INTERRUPTED_MESSAGE

    return Document(
        id=str(raw["id"]),
        project_id=str(raw.get("projectId") or project_id),
        file_name=str(raw.get("fileName") or "unknown"),
        file_type=str(raw.get("fileType") or ""),
        upload_date=str(raw.get("uploadDate") or _now()),
        status=status,
        doc_types=doc_types,
        extracted_text=raw.get("extractedText"),
        progress=progress,
        error=error,
    )


def _report_from_payload(project_id: str, raw: dict[str, Any]) -> Report:
    return Report(
        id=str(raw.get("id") or f"report-{uuid4().hex}"),
        project_id=str(raw.get("projectId") or project_id),
        generated_at=str(raw.get("generatedAt") or _now()),
        status=str(raw.get("status") or "Draft"),
        content=str(raw.get("content") or ""),
        str_category=raw.get("strCategory"),
        summary=raw.get("summary"),
        risk_flags=[str(item) for item in raw.get("riskFlags") or []],
        rule_engine_flags=dict(raw.get("ruleEngineFlags") or {}),
        report_format_used=raw.get("reportFormatUsed"),
    )


def _text_or(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    return fallback


def _int_or(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def copy_project(project: Project) -> Project:
    """Shallow copy with independent list fields, used for change detection."""

    return replace(
        project,
        documents=list(project.documents),
        missing_documents=list(project.missing_documents),
    )


__all__ = [
    "DEFAULT_STORAGE_KEY",
    "Document",
    "DocumentStatus",
    "Project",
    "ProjectStore",
    "Report",
    "UploadedFile",
    "copy_project",
    "document_to_payload",
    "new_document",
    "new_project_id",
    "project_to_payload",
]
