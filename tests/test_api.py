from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from titlesearch.app import create_app
from titlesearch.observability import MetricsRecorder
from titlesearch.projects import Document, DocumentStatus, Project
from titlesearch.prompts import DEFAULT_REPORT_FORMAT
from titlesearch.scenarios import required_documents
from titlesearch.session import TitleSearchSession, build_session

from conftest import no_sleep

PDF_BYTES = b"%PDF-1.4 sale deed"


@pytest.fixture()
def session(settings, backend, repository, clock, rng) -> TitleSearchSession:
    return build_session(settings, backend=backend, repository=repository, clock=clock, rng=rng, sleep=no_sleep)


@pytest.fixture()
def client(session: TitleSearchSession) -> Iterator[TestClient]:
    app = create_app(session=session, run_loop=False)
    with TestClient(app) as test_client:
        yield test_client


def _sign_in(client: TestClient) -> dict:
    response = client.post("/session/sign-in", json={"id": "user-1", "email": "advocate@example.com"})
    assert response.status_code == 200
    return response.json()


def _seed_processed_project(session: TitleSearchSession) -> Project:
    return session.store.add_project(
        Project(
            id="proj-seeded",
            project_name="Baner Plot",
            property_address="Plot 12, Baner",
            client_name="A. Kulkarni",
            search_period="30 years",
            created_at="2025-03-14T10:00:00+00:00",
            documents=[
                Document(
                    id="doc-1",
                    project_id="proj-seeded",
                    file_name="deed.pdf",
                    file_type="application/pdf",
                    upload_date="2025-03-14T10:00:00+00:00",
                    status=DocumentStatus.PROCESSED,
                    doc_types=["Sale Deed"],
                    extracted_text="Sale deed between A. Kulkarni and B. Joshi dated 2001.",
                    progress=100,
                )
            ],
        )
    )


def test_sign_in_returns_user_and_usage(client: TestClient) -> None:
    assert client.get("/session/usage").status_code == 401

    payload = _sign_in(client)

    assert payload["user"]["planName"] == "Basic"
    assert payload["usage"]["maxStrsMonthly"] == 20
    usage = client.get("/session/usage")
    assert usage.status_code == 200
    assert usage.json()["strsUsedMonthly"] == 0

    assert client.post("/session/sign-out").status_code == 204
    assert client.get("/session/usage").status_code == 401


def test_sign_in_requires_id(client: TestClient) -> None:
    response = client.post("/session/sign-in", json={"email": "x@example.com"})
    assert response.status_code == 400


def test_create_project_requires_sign_in(client: TestClient) -> None:
    response = client.post("/projects", data={"projectName": "Baner Plot"})
    assert response.status_code == 401


def test_create_project_with_files(client: TestClient, session: TitleSearchSession) -> None:
    _sign_in(client)

    response = client.post(
        "/projects",
        data={"projectName": "Baner Plot", "scenario": "na_plot", "advocateInstructions": "Check NA order."},
        files=[("files", ("deed.pdf", PDF_BYTES, "application/pdf"))],
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["projectName"] == "Baner Plot"
    assert payload["clientName"] == "Not Provided"
    assert payload["scenario"] == "NA_PLOT"
    assert payload["advocateInstructions"] == "Check NA order."
    assert payload["missingDocuments"] == required_documents("NA_PLOT")
    [document] = payload["documents"]
    assert document["fileName"] == "deed.pdf"
    assert document["status"] == "Uploaded"
    assert [job.document_id for job in session.pipeline.pending()] == [document["id"]]

    listing = client.get("/projects").json()
    assert [item["id"] for item in listing] == [payload["id"]]


def test_project_crud(client: TestClient) -> None:
    _sign_in(client)
    created = client.post("/projects", data={"projectName": "Baner Plot"}).json()
    project_id = created["id"]

    assert client.get("/projects/missing").status_code == 404

    patched = client.patch(f"/projects/{project_id}", json={"clientName": "S. Patil", "scenario": "JOINT_OWNERSHIP"})
    assert patched.status_code == 200
    assert patched.json()["clientName"] == "S. Patil"
    assert patched.json()["missingDocuments"] == required_documents("JOINT_OWNERSHIP")

    rejected = client.patch(f"/projects/{project_id}", json={"createdAt": "yesterday"})
    assert rejected.status_code == 400

    assert client.delete(f"/projects/{project_id}").status_code == 204
    assert client.get(f"/projects/{project_id}").status_code == 404
    assert client.delete(f"/projects/{project_id}").status_code == 404


def test_upload_documents_endpoint(client: TestClient, session: TitleSearchSession) -> None:
    _sign_in(client)
    project_id = client.post("/projects", data={"projectName": "Baner Plot"}).json()["id"]

    response = client.post(
        f"/projects/{project_id}/documents",
        files=[("files", ("tax.pdf", PDF_BYTES, "application/pdf"))],
    )

    assert response.status_code == 202
    [document] = response.json()["documents"]
    assert document["fileName"] == "tax.pdf"
    assert session.store.get_document(project_id, document["id"]) is not None

    missing = client.post("/projects/missing/documents", files=[("files", ("a.pdf", PDF_BYTES, "application/pdf"))])
    assert missing.status_code == 404


def test_document_type_assignment_and_deletion(client: TestClient, session: TitleSearchSession) -> None:
    _sign_in(client)
    project = _seed_processed_project(session)

    assigned = client.post(f"/projects/{project.id}/documents/doc-1/types", json={"docType": " Mutation Entry "})
    assert assigned.status_code == 200
    assert assigned.json()["docTypes"] == ["Sale Deed", "Mutation Entry"]
    assert session.get_project(project.id).missing_documents == [
        "Property Tax Receipt",
        "Encumbrance Certificate",
    ]

    assert client.post(f"/projects/{project.id}/documents/doc-1/types", json={}).status_code == 400
    assert client.post(f"/projects/{project.id}/documents/nope/types", json={"docType": "Other"}).status_code == 404

    assert client.delete(f"/projects/{project.id}/documents/doc-1").status_code == 204
    assert client.delete(f"/projects/{project.id}/documents/doc-1").status_code == 404
    assert client.delete("/projects/missing/documents/doc-1").status_code == 404


def test_derive_endpoint_updates_project(client: TestClient, session: TitleSearchSession) -> None:
    _sign_in(client)
    project = _seed_processed_project(session)

    response = client.post(f"/projects/{project.id}/derive")

    assert response.status_code == 200
    payload = response.json()
    assert payload["outcome"] == "updated"
    assert payload["project"]["projectName"] == "Search for A. Kulkarni"
    assert payload["project"]["scenario"] == "CLEAR_FREEHOLD_PLOT"
    assert "Sale Deed" not in payload["project"]["missingDocuments"]


def test_report_generation_and_reformat(client: TestClient, session: TitleSearchSession) -> None:
    _sign_in(client)
    project = _seed_processed_project(session)

    formats = client.get("/report-formats").json()
    assert formats["default"] == DEFAULT_REPORT_FORMAT
    assert "HDFC Format" in formats["formats"]

    generated = client.post(f"/projects/{project.id}/report", json={"reportFormat": "HDFC Format"})
    assert generated.status_code == 201
    report = generated.json()
    assert report["status"] == "Finalized"
    assert report["strCategory"] == "Clear"
    assert report["reportFormatUsed"] == "HDFC Format"
    assert client.get("/session/usage").json()["strsUsedMonthly"] == 1

    assert client.post(f"/projects/{project.id}/report/reformat", json={}).status_code == 400
    reformatted = client.post(f"/projects/{project.id}/report/reformat", json={"targetFormat": "LSR Format"})
    assert reformatted.status_code == 200
    assert reformatted.json()["content"] == "# Reformatted Report"
    assert reformatted.json()["id"] == report["id"]


def test_report_without_processed_documents_conflicts(client: TestClient) -> None:
    _sign_in(client)
    project_id = client.post("/projects", data={"projectName": "Empty"}).json()["id"]

    response = client.post(f"/projects/{project_id}/report")

    assert response.status_code == 409
    assert response.json()["detail"].startswith("Failed to generate report")


def test_notifications_can_be_dismissed(client: TestClient) -> None:
    _sign_in(client)
    client.post("/projects", data={"projectName": "Baner Plot"})

    notifications = client.get("/notifications").json()
    assert notifications[-1]["message"] == "Project 'Baner Plot' created."
    assert notifications[-1]["type"] == "success"

    notification_id = notifications[-1]["id"]
    assert client.post(f"/notifications/{notification_id}/dismiss").status_code == 204
    assert client.post(f"/notifications/{notification_id}/dismiss").status_code == 404


def test_metrics_endpoint_disabled_by_default(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 404


def test_metrics_endpoint_exports_prometheus(settings, backend, repository, clock, rng) -> None:
    metrics = MetricsRecorder(enabled=True, namespace="titlesearch_test", prometheus_enabled=True)
    session = build_session(
        settings,
        backend=backend,
        repository=repository,
        metrics=metrics,
        clock=clock,
        rng=rng,
        sleep=no_sleep,
    )
    metrics.increment("pipeline.documents", outcome="processed")

    with TestClient(create_app(session=session, run_loop=False)) as client:
        response = client.get("/metrics")

    assert response.status_code == 200
    assert "titlesearch_test_pipeline_documents" in response.text
