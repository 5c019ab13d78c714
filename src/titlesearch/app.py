"""FastAPI surface over a :class:`TitleSearchSession`."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from .config import Settings
from .gateway import ProjectDetails
from .notifications import Notifier
from .observability import MetricsRecorder
from .projects import UploadedFile, document_to_payload, project_to_payload, report_to_payload
from .prompts import DEFAULT_REPORT_FORMAT, report_format_names
from .session import (
    DocumentNotFound,
    NotSignedIn,
    ProjectNotFound,
    TitleSearchSession,
    User,
    build_session,
)

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = {
    "projectName": "project_name",
    "propertyAddress": "property_address",
    "clientName": "client_name",
    "searchPeriod": "search_period",
    "scenario": "scenario",
    "advocateInstructions": "advocate_instructions",
}

_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    package_logger = logging.getLogger("titlesearch")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        package_logger.handlers = []
        for handler in handlers:
            package_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        package_logger.addHandler(handler)

    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Runtime dependencies shared by the request handlers."""

    def __init__(self, *, settings: Settings, session: TitleSearchSession) -> None:
        self.settings = settings
        self.session = session
        self.stop_event: asyncio.Event | None = None
        self.loop_task: asyncio.Task[None] | None = None

    @property
    def notifier(self) -> Notifier:
        return self.session.notifier

    @property
    def metrics(self) -> MetricsRecorder | None:
        return self.session.metrics


def create_app(
    *,
    settings: Settings | None = None,
    session: TitleSearchSession | None = None,
    run_loop: bool = True,
) -> FastAPI:
    """Create the FastAPI application and, optionally, the background session loop."""

    _ensure_logging()

    settings = settings or (session.settings if session is not None else Settings.from_env())
    session = session or build_session(settings)
    logger.info(
        "app.start data_dir=%s backend=%s projects=%s",
        settings.data_dir,
        settings.ai_backend,
        len(session.list_projects()),
    )

    app = FastAPI()
    app.state.services = ApplicationState(settings=settings, session=session)

    @app.on_event("startup")
    async def _start_session_loop() -> None:
        if not run_loop:
            return
        state: ApplicationState = app.state.services
        state.stop_event = asyncio.Event()
        state.loop_task = asyncio.create_task(state.session.run(state.stop_event))

    @app.on_event("shutdown")
    async def _stop_session_loop() -> None:
        state: ApplicationState = app.state.services
        if state.stop_event is not None:
            state.stop_event.set()
        if state.loop_task is not None:
            try:
                await state.loop_task
            except asyncio.CancelledError:  # pragma: no cover - defensive guard
                pass
            state.loop_task = None

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_session(request: Request) -> TitleSearchSession:
        return request.app.state.services.session

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return request.app.state.services.metrics

    def _conflict(session: TitleSearchSession, fallback: str) -> HTTPException:
        latest = session.notifier.latest()
        detail = latest.message if latest is not None and latest.level == "error" else fallback
        return HTTPException(status_code=409, detail=detail)

    def _resolve_project(session: TitleSearchSession, project_id: str):
        try:
            return session.get_project(project_id)
        except ProjectNotFound as exc:
            raise HTTPException(status_code=404, detail="Project not found") from exc

    async def _read_uploads(files: List[UploadFile] | None) -> list[UploadedFile]:
        uploads: list[UploadedFile] = []
        for upload in files or []:
            data = await upload.read()
            uploads.append(
                UploadedFile(
                    name=upload.filename or "upload",
                    data=data,
                    mime_type=upload.content_type or "",
                )
            )
        return uploads

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    @app.post("/session/sign-in", response_class=JSONResponse)
    async def sign_in(request: Request, session: TitleSearchSession = Depends(get_session)) -> JSONResponse:
        payload = await request.json()
        if not isinstance(payload, dict):  # pragma: no cover - defensive guard
            raise HTTPException(status_code=400, detail="Invalid payload")
        user_id = str(payload.get("id", "")).strip()
        if not user_id:
            raise HTTPException(status_code=400, detail="id is required")
        user = User(
            id=user_id,
            email=str(payload.get("email") or ""),
            name=str(payload.get("name") or ""),
            firm_name=str(payload.get("firmName") or ""),
        )
        snapshot = await session.sign_in(user)
        return JSONResponse(
            {
                "user": user.to_dict(),
                "usage": snapshot.to_dict() if snapshot is not None else None,
            }
        )

    @app.post("/session/sign-out", response_class=Response)
    async def sign_out(session: TitleSearchSession = Depends(get_session)) -> Response:
        await session.sign_out()
        return Response(status_code=204)

    @app.get("/session/usage", response_class=JSONResponse)
    async def usage(session: TitleSearchSession = Depends(get_session)) -> JSONResponse:
        if session.user is None:
            raise HTTPException(status_code=401, detail="Sign in to continue.")
        snapshot = session.usage()
        if snapshot is None:
            raise HTTPException(status_code=409, detail="API limits not loaded. Please try again later.")
        return JSONResponse(snapshot.to_dict())

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    @app.get("/projects", response_class=JSONResponse)
    async def list_projects(session: TitleSearchSession = Depends(get_session)) -> JSONResponse:
        return JSONResponse([project_to_payload(project) for project in session.list_projects()])

    @app.post("/projects", response_class=JSONResponse)
    async def create_project(
        session: TitleSearchSession = Depends(get_session),
        project_name: Optional[str] = Form(None, alias="projectName"),
        property_address: Optional[str] = Form(None, alias="propertyAddress"),
        client_name: Optional[str] = Form(None, alias="clientName"),
        search_period: Optional[str] = Form(None, alias="searchPeriod"),
        scenario: Optional[str] = Form(None),
        advocate_instructions: Optional[str] = Form(None, alias="advocateInstructions"),
        files: Optional[List[UploadFile]] = File(None),
    ) -> JSONResponse:
        uploads = await _read_uploads(files)
        details = ProjectDetails(
            project_name=(project_name or "").strip() or None,
            property_address=(property_address or "").strip() or None,
            client_name=(client_name or "").strip() or None,
            search_period=(search_period or "").strip() or None,
            scenario=(scenario or "").strip() or None,
        )
        try:
            project = await session.create_project(
                details,
                uploads,
                advocate_instructions=advocate_instructions or "",
            )
        except NotSignedIn as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if project is None:
            raise _conflict(session, "Project could not be created.")
        return JSONResponse(project_to_payload(project), status_code=201)

    @app.get("/projects/{project_id}", response_class=JSONResponse)
    async def get_project(project_id: str, session: TitleSearchSession = Depends(get_session)) -> JSONResponse:
        project = _resolve_project(session, project_id)
        return JSONResponse(project_to_payload(project))

    @app.patch("/projects/{project_id}", response_class=JSONResponse)
    async def update_project(
        project_id: str,
        request: Request,
        session: TitleSearchSession = Depends(get_session),
    ) -> JSONResponse:
        _resolve_project(session, project_id)
        payload = await request.json()
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        unknown = sorted(set(payload) - set(_EDITABLE_FIELDS))
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unsupported fields: {', '.join(unknown)}")
        changes = {_EDITABLE_FIELDS[key]: str(value or "") for key, value in payload.items()}
        project = session.update_project_details(project_id, **changes)
        return JSONResponse(project_to_payload(project))

    @app.delete("/projects/{project_id}", response_class=Response)
    async def delete_project(project_id: str, session: TitleSearchSession = Depends(get_session)) -> Response:
        try:
            session.delete_project(project_id)
        except ProjectNotFound as exc:
            raise HTTPException(status_code=404, detail="Project not found") from exc
        return Response(status_code=204)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------
    @app.post("/projects/{project_id}/documents", response_class=JSONResponse)
    async def upload_documents(
        project_id: str,
        session: TitleSearchSession = Depends(get_session),
        files: List[UploadFile] = File(...),
    ) -> JSONResponse:
        _resolve_project(session, project_id)
        uploads = await _read_uploads(files)
        try:
            documents = await session.upload_documents(project_id, uploads)
        except NotSignedIn as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if not documents:
            raise _conflict(session, "No documents were accepted.")
        return JSONResponse(
            {"projectId": project_id, "documents": [document_to_payload(document) for document in documents]},
            status_code=202,
        )

    @app.delete("/projects/{project_id}/documents/{document_id}", response_class=Response)
    async def delete_document(
        project_id: str,
        document_id: str,
        session: TitleSearchSession = Depends(get_session),
    ) -> Response:
        try:
            session.delete_document(project_id, document_id)
        except ProjectNotFound as exc:
            raise HTTPException(status_code=404, detail="Project not found") from exc
        except DocumentNotFound as exc:
            raise HTTPException(status_code=404, detail="Document not found") from exc
        return Response(status_code=204)

    @app.post("/projects/{project_id}/documents/{document_id}/types", response_class=JSONResponse)
    async def assign_document_type(
        project_id: str,
        document_id: str,
        request: Request,
        session: TitleSearchSession = Depends(get_session),
    ) -> JSONResponse:
        payload = await request.json()
        doc_type = str((payload or {}).get("docType", "")).strip() if isinstance(payload, dict) else ""
        if not doc_type:
            raise HTTPException(status_code=400, detail="docType is required")
        try:
            document = session.assign_document_type(project_id, document_id, doc_type)
        except ProjectNotFound as exc:
            raise HTTPException(status_code=404, detail="Project not found") from exc
        except DocumentNotFound as exc:
            raise HTTPException(status_code=404, detail="Document not found") from exc
        return JSONResponse(document_to_payload(document))

    # ------------------------------------------------------------------
    # Derivation and reports
    # ------------------------------------------------------------------
    @app.post("/projects/{project_id}/derive", response_class=JSONResponse)
    async def derive_metadata(project_id: str, session: TitleSearchSession = Depends(get_session)) -> JSONResponse:
        _resolve_project(session, project_id)
        try:
            outcome = await session.derive_metadata(project_id)
        except NotSignedIn as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        project = session.get_project(project_id)
        return JSONResponse({"outcome": outcome, "project": project_to_payload(project)})

    @app.get("/report-formats", response_class=JSONResponse)
    async def list_report_formats() -> JSONResponse:
        return JSONResponse({"formats": report_format_names(), "default": DEFAULT_REPORT_FORMAT})

    @app.post("/projects/{project_id}/report", response_class=JSONResponse)
    async def generate_report(
        project_id: str,
        request: Request,
        session: TitleSearchSession = Depends(get_session),
    ) -> JSONResponse:
        _resolve_project(session, project_id)
        payload = await _optional_json(request)
        report_format = str(payload.get("reportFormat") or DEFAULT_REPORT_FORMAT)
        try:
            report = await session.generate_report(project_id, report_format)
        except NotSignedIn as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if report is None:
            raise _conflict(session, "Report could not be generated.")
        return JSONResponse(report_to_payload(report), status_code=201)

    @app.post("/projects/{project_id}/report/reformat", response_class=JSONResponse)
    async def reformat_report(
        project_id: str,
        request: Request,
        session: TitleSearchSession = Depends(get_session),
    ) -> JSONResponse:
        _resolve_project(session, project_id)
        payload = await _optional_json(request)
        target_format = str(payload.get("targetFormat") or "").strip()
        if not target_format:
            raise HTTPException(status_code=400, detail="targetFormat is required")
        content = payload.get("content")
        try:
            report = await session.reformat_report(
                project_id,
                target_format,
                str(content) if content is not None else None,
            )
        except NotSignedIn as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc
        if report is None:
            raise _conflict(session, "Report could not be re-formatted.")
        return JSONResponse(report_to_payload(report))

    # ------------------------------------------------------------------
    # Notifications and metrics
    # ------------------------------------------------------------------
    @app.get("/notifications", response_class=JSONResponse)
    async def list_notifications(state: ApplicationState = Depends(get_state)) -> JSONResponse:
        return JSONResponse([item.to_dict() for item in state.notifier.active()])

    @app.post("/notifications/{notification_id}/dismiss", response_class=Response)
    async def dismiss_notification(
        notification_id: str,
        state: ApplicationState = Depends(get_state),
    ) -> Response:
        if not state.notifier.dismiss(notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return Response(status_code=204)

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        try:
            payload = metrics.render_prometheus()
        except RuntimeError as exc:  # pragma: no cover - defensive guard
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return Response(content=payload, media_type=metrics.prometheus_content_type)

    return app


async def _optional_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    payload = await request.json()
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return payload


__all__ = ["ApplicationState", "create_app"]
