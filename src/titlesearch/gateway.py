"""AI gateway: one logical AI operation per method, reduced to a tagged result.

Every method returns a :class:`GatewayResult` whose status is ``ok``,
``rate_limited`` (retry later), ``unsupported`` (the input cannot be
analysed) or ``error``. Each provider call is followed by exactly one
``QuotaLedger.record_usage`` call, whatever the outcome.
"""

from __future__ import annotations

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, TypeVar

import httpx
import openai

from .ledger import QuotaLedger
from .llm import LLMBackend, LLMResponse
from .observability import MetricsRecorder
from .projects import Document, DocumentStatus, Project, UploadedFile
from .prompts import (
    EXTRACTION_PROMPT,
    METADATA_SCHEMA,
    REFORMAT_SYSTEM_PROMPT,
    REPORT_SCHEMA,
    REPORT_SYSTEM_PROMPT,
    classification_prompt,
    metadata_prompt,
    reformat_prompt,
    report_prompt,
)
from .scenarios import match_document_type, missing_documents, normalize_scenario

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_OK = "ok"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_UNSUPPORTED = "unsupported"
STATUS_ERROR = "error"

CLIENT_UNSUPPORTED_MODEL = "N/A_CLIENT_UNSUPPORTED"
RATE_LIMIT_MESSAGE = "Rate limit exceeded"
EMPTY_RESPONSE_MESSAGE = "Empty response from AI."
NO_PROCESSED_DOCUMENTS = "No processed documents found to generate report."
NO_REFORMAT_CONTENT = "No content provided for re-formatting."

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

SUPPORTED_EXTRACTION_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/webp",
        "application/pdf",
        "image/gif",
        "image/bmp",
        "image/heic",
        "image/heif",
        "application/vnd.ms-excel",
        "text/html",
    }
)

KNOWN_UNSUPPORTED_MIME_TYPES = frozenset(
    {
        "application/msword",
        DOCX_MIME_TYPE,
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/csv",
        "application/zip",
        "application/x-zip-compressed",
        "video/x-msvideo",
        "text/css",
        "application/xml",
        "text/xml",
        "application/octet-stream",
    }
)

_RATE_LIMIT_MARKERS = ("429", "RESOURCE_EXHAUSTED", "RESOURCE_EXCEEDED")
_RATE_LIMIT_PHRASES = ("rate limit", "too many requests")
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass(slots=True)
class GatewayResult(Generic[T]):
    status: str
    value: T | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: T) -> "GatewayResult[T]":
        return cls(status=STATUS_OK, value=value)

    @classmethod
    def limited(cls) -> "GatewayResult[T]":
        return cls(status=STATUS_RATE_LIMITED, error=RATE_LIMIT_MESSAGE)

    @classmethod
    def unsupported_input(cls, message: str | None = None) -> "GatewayResult[T]":
        return cls(status=STATUS_UNSUPPORTED, error=message)

    @classmethod
    def failure(cls, error: str) -> "GatewayResult[T]":
        return cls(status=STATUS_ERROR, error=error)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def rate_limited(self) -> bool:
        return self.status == STATUS_RATE_LIMITED

    @property
    def unsupported(self) -> bool:
        return self.status == STATUS_UNSUPPORTED


@dataclass(slots=True)
class ProjectDetails:
    """Project fields proposed by metadata derivation; ``None`` means "not returned"."""

    project_name: str | None = None
    property_address: str | None = None
    client_name: str | None = None
    search_period: str | None = None
    scenario: str | None = None

    def is_empty(self) -> bool:
        return not any(
            (self.project_name, self.property_address, self.client_name, self.search_period, self.scenario)
        )


@dataclass(slots=True)
class ReportDraft:
    content: str
    summary: str | None = None
    str_category: str | None = None
    risk_flags: list[str] = field(default_factory=list)


def estimate_tokens(text: str | None) -> int:
    """Approximate token count: one token per four characters, rounded up."""

    if not text:
        return 0
    return math.ceil(len(text) / 4)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, openai.RateLimitError):
        return True
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return True
    if getattr(exc, "status_code", None) == 429:
        return True
    message = str(exc)
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return True
    lowered = message.lower()
    return any(phrase in lowered for phrase in _RATE_LIMIT_PHRASES)


def aggregate_processed_text(documents: Iterable[Document]) -> str:
    """Concatenate extracted text of processed documents, each chunk labelled with its file name."""

    chunks = [
        f"--- Document: {document.file_name} ---\n{document.extracted_text}"
        for document in documents
        if document.status == DocumentStatus.PROCESSED and document.extracted_text
    ]
    return "\n\n".join(chunks)


class AIGateway:
    """Perform AI operations against an :class:`LLMBackend` and meter them in the ledger."""

    def __init__(
        self,
        backend: LLMBackend,
        ledger: QuotaLedger,
        *,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._backend = backend
        self._ledger = ledger
        self._metrics = metrics

    async def extract_text(
        self,
        file: UploadedFile,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
    ) -> GatewayResult[str]:
        operation = "extractTextFromFile"
        mime_type = (file.mime_type or "").strip().lower()
        if not mime_type or mime_type in KNOWN_UNSUPPORTED_MIME_TYPES:
            await self._ledger.record_usage(
                operation,
                CLIENT_UNSUPPORTED_MODEL,
                estimated_input_tokens,
                0,
                True,
                "Client-side unsupported file type",
            )
            self._count(operation, STATUS_UNSUPPORTED if mime_type != DOCX_MIME_TYPE else STATUS_OK)
            if mime_type == DOCX_MIME_TYPE:
                return GatewayResult.success(
                    f"[Text content from DOCX file: {file.name}. Direct AI text extraction for DOCX is "
                    "not fully supported for initial document processing. Please consider converting "
                    "to PDF or copy-pasting content for re-formatting.]"
                )
            logger.info("gateway.extract.unsupported file=%s mime=%s", file.name, mime_type or "-")
            return GatewayResult.unsupported_input()

        if mime_type not in SUPPORTED_EXTRACTION_MIME_TYPES:
            message = (
                f"Error: Unsupported file type for AI text extraction: {file.name}. "
                "Only images and PDFs can be processed."
            )
            await self._ledger.record_usage(
                operation,
                CLIENT_UNSUPPORTED_MODEL,
                estimated_input_tokens,
                0,
                False,
                message,
            )
            self._count(operation, STATUS_ERROR)
            return GatewayResult.failure(message)

        return await self._invoke(
            operation,
            EXTRACTION_PROMPT,
            parse=_parse_extracted_text,
            estimated_input_tokens=estimated_input_tokens,
            attachment_tokens=estimated_input_tokens,
            attachment=file,
        )

    async def classify_document(
        self,
        text: str,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
    ) -> GatewayResult[str]:
        return await self._invoke(
            "classifyDocument",
            classification_prompt(text),
            parse=match_document_type,
            estimated_input_tokens=estimated_input_tokens,
            allow_empty=True,
        )

    async def derive_metadata(
        self,
        text: str,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
    ) -> GatewayResult[ProjectDetails]:
        if not text or not text.strip():
            return GatewayResult.success(ProjectDetails())
        return await self._invoke(
            "extractProjectDetailsAndScenario",
            metadata_prompt(text),
            parse=_parse_project_details,
            estimated_input_tokens=estimated_input_tokens,
            json_schema=METADATA_SCHEMA,
            schema_name="project_details",
        )

    def analyze_completeness(self, uploaded: Iterable[str], required: Iterable[str]) -> list[str]:
        """Return required document labels with no case-insensitive match among ``uploaded``.

        Computed locally: no provider call and no usage record.
        """

        return missing_documents(uploaded, required)

    async def generate_report(
        self,
        project: Project,
        report_format: str,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
    ) -> GatewayResult[ReportDraft]:
        context = aggregate_processed_text(project.documents)
        if not context:
            return GatewayResult.failure(NO_PROCESSED_DOCUMENTS)
        prompt = report_prompt(
            client_name=project.client_name,
            property_address=project.property_address,
            search_period=project.search_period,
            report_format=report_format,
            context=context,
            advocate_instructions=project.advocate_instructions,
        )
        return await self._invoke(
            "generateReport",
            prompt,
            parse=_parse_report_draft,
            estimated_input_tokens=estimated_input_tokens,
            system=REPORT_SYSTEM_PROMPT,
            json_schema=REPORT_SCHEMA,
            schema_name="title_search_report",
        )

    async def reformat_report(
        self,
        content: str,
        target_format: str,
        advocate_instructions: str | None = None,
        estimated_input_tokens: int = 0,
        estimated_output_tokens: int = 0,
    ) -> GatewayResult[ReportDraft]:
        if not content or not content.strip():
            return GatewayResult.failure(NO_REFORMAT_CONTENT)
        return await self._invoke(
            "reformatReport",
            reformat_prompt(content, target_format, advocate_instructions),
            parse=lambda text: ReportDraft(content=text),
            estimated_input_tokens=estimated_input_tokens,
            system=REFORMAT_SYSTEM_PROMPT,
        )

    async def _invoke(
        self,
        operation: str,
        prompt: str,
        *,
        parse: Callable[[str], T],
        estimated_input_tokens: int = 0,
        attachment_tokens: int = 0,
        allow_empty: bool = False,
        **request: Any,
    ) -> GatewayResult[T]:
        model = self._backend.model_for(operation)
        prompt_tokens = (estimate_tokens(prompt) + attachment_tokens) or estimated_input_tokens
        completion_tokens = 0
        success = False
        error: str | None = None
        result: GatewayResult[T] = GatewayResult.failure("AI call did not complete")
        start = time.perf_counter()
        try:
            response: LLMResponse = await self._backend.generate(operation, prompt, **request)
        except Exception as exc:
            if is_rate_limit_error(exc):
                logger.warning("gateway.rate_limited operation=%s model=%s", operation, model)
                error = RATE_LIMIT_MESSAGE
                result = GatewayResult.limited()
            else:
                logger.error("gateway.failed operation=%s model=%s error=%s", operation, model, exc)
                error = str(exc) or exc.__class__.__name__
                result = GatewayResult.failure(error)
        else:
            if response.prompt_tokens is not None:
                prompt_tokens = response.prompt_tokens
            text = (response.text or "").strip()
            if text:
                completion_tokens = (
                    response.completion_tokens
                    if response.completion_tokens is not None
                    else estimate_tokens(text)
                )
            if not text and not allow_empty:
                error = EMPTY_RESPONSE_MESSAGE
                result = GatewayResult.failure(error)
            else:
                if not text:
                    error = EMPTY_RESPONSE_MESSAGE
                try:
                    value = parse(text)
                except ValueError as exc:
                    logger.error("gateway.parse_failed operation=%s error=%s", operation, exc)
                    error = str(exc)
                    result = GatewayResult.failure(error)
                else:
                    success = bool(text)
                    result = GatewayResult.success(value)
        finally:
            await self._ledger.record_usage(
                operation,
                model,
                prompt_tokens,
                completion_tokens,
                success,
                error,
            )
            if self._metrics is not None:
                self._metrics.record_timing(
                    "gateway.duration",
                    time.perf_counter() - start,
                    operation=operation,
                )
        self._count(operation, result.status)
        return result

    def _count(self, operation: str, status: str) -> None:
        if self._metrics is None:
            return
        self._metrics.increment("gateway.calls", operation=operation, status=status)
        if status == STATUS_RATE_LIMITED:
            self._metrics.increment("gateway.rate_limited", operation=operation)


def _parse_extracted_text(text: str) -> str:
    if text.startswith("Error"):
        raise ValueError(text)
    return text


def _load_json_object(text: str) -> dict[str, Any]:
    cleaned = _CODE_FENCE_RE.sub("", text.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse AI response: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Failed to parse AI response: expected a JSON object")
    return data


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_project_details(text: str) -> ProjectDetails:
    data = _load_json_object(text)
    raw_scenario = _clean_str(data.get("scenario"))
    return ProjectDetails(
        project_name=_clean_str(data.get("projectName")),
        property_address=_clean_str(data.get("propertyAddress")),
        client_name=_clean_str(data.get("clientName")),
        search_period=_clean_str(data.get("searchPeriod")),
        scenario=normalize_scenario(raw_scenario) if raw_scenario else None,
    )


def _parse_report_draft(text: str) -> ReportDraft:
    data = _load_json_object(text)
    content = _clean_str(data.get("content"))
    if content is None:
        raise ValueError("Failed to parse AI response: report content is missing")
    flags = data.get("riskFlags") or []
    return ReportDraft(
        content=content,
        summary=_clean_str(data.get("summary")),
        str_category=_clean_str(data.get("strCategory")),
        risk_flags=[str(flag) for flag in flags if str(flag).strip()] if isinstance(flags, list) else [],
    )


__all__ = [
    "AIGateway",
    "GatewayResult",
    "ProjectDetails",
    "ReportDraft",
    "aggregate_processed_text",
    "estimate_tokens",
    "is_rate_limit_error",
]
