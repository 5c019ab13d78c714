"""Title search workbench: document pipeline, usage ledger and AI gateway."""

from __future__ import annotations

from .config import Settings
from .ledger import QuotaLedger, UsageType
from .projects import Document, DocumentStatus, Project, ProjectStore, UploadedFile

__all__ = [
    "Settings",
    "QuotaLedger",
    "UsageType",
    "Document",
    "DocumentStatus",
    "Project",
    "ProjectStore",
    "UploadedFile",
    "TitleSearchSession",
    "build_session",
    "create_app",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name in {"TitleSearchSession", "build_session"}:
        from .session import TitleSearchSession, build_session

        return {"TitleSearchSession": TitleSearchSession, "build_session": build_session}[name]
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'titlesearch' has no attribute {name}")
