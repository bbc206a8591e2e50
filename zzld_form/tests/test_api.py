import re

import pytest
from fastapi.testclient import TestClient

from zzld_form.app.core.errors import DocumentStoreError, TemplateError
from zzld_form.app.main import create_app
from zzld_form.tests.fixtures.fakes import InMemoryDocumentStore
from zzld_form.tests.fixtures.services import (
    VALID_REQUEST,
    make_form_service,
    make_settings,
)

PROBLEM_JSON = "application/problem+json"


class BrokenFormService:
    async def generate(self, request):
        raise RuntimeError("connection pool exhausted")

    async def retrieve(self, form_id):
        raise RuntimeError("connection pool exhausted")


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def client(store):
    app = create_app(settings=make_settings(), form_service=make_form_service(store))
    with TestClient(app) as test_client:
        yield test_client


# ------------------------------------------------------------------
# POST /api/form/generate
# ------------------------------------------------------------------

def test_generate_returns_download_link(client):
    response = client.post("/api/form/generate", json=VALID_REQUEST)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert re.match(r"^\d{14}_[0-9a-f]+$", body["formId"])
    assert body["downloadUrl"]
    assert body["blobName"].startswith("generated/")
    assert "errorKind" not in body
    assert "error_kind" not in body


def test_generate_invalid_egn_is_bad_request(client, store):
    response = client.post("/api/form/generate", json={**VALID_REQUEST, "egn": "123"})

    assert response.status_code == 400
    assert response.headers["content-type"].startswith(PROBLEM_JSON)
    problem = response.json()
    assert problem["status"] == 400
    assert "EGN must be exactly 10 digits" in problem["detail"]
    assert store.upload_calls == 0


def test_generate_malformed_body_is_bad_request(client):
    response = client.post(
        "/api/form/generate",
        json={**VALID_REQUEST, "dateOfBirth": "not-a-date"},
    )

    assert response.status_code == 400
    assert response.headers["content-type"].startswith(PROBLEM_JSON)
    assert "dateOfBirth" in response.json()["detail"]


def test_generate_storage_failure_is_server_error(client, store):
    store.upload_error = DocumentStoreError("Storage operation 'upload_blob' failed: HTTP 503")

    response = client.post("/api/form/generate", json=VALID_REQUEST)

    assert response.status_code == 500
    assert response.json()["title"] == "Form storage unavailable"


# ------------------------------------------------------------------
# GET /api/form/{formId}
# ------------------------------------------------------------------

def test_retrieve_generated_form(client):
    generated = client.post("/api/form/generate", json=VALID_REQUEST).json()

    response = client.get(f"/api/form/{generated['formId']}")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["formId"] == generated["formId"]
    assert body["downloadUrl"]


def test_retrieve_unknown_form_is_not_found(client):
    response = client.get("/api/form/non-existent-id")

    assert response.status_code == 404
    problem = response.json()
    assert problem["status"] == 404
    assert "not found" in problem["detail"]


# ------------------------------------------------------------------
# Unexpected failures
# ------------------------------------------------------------------

def test_unexpected_error_is_opaque_server_error():
    app = create_app(settings=make_settings(), form_service=BrokenFormService())

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.post("/api/form/generate", json=VALID_REQUEST)

    assert response.status_code == 500
    assert response.headers["content-type"].startswith(PROBLEM_JSON)
    assert "RuntimeError" not in response.text
    assert "connection pool exhausted" not in response.text


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------

def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "Healthy"
    assert body["timestamp"]
    assert body["version"]


# ------------------------------------------------------------------
# Startup wiring
# ------------------------------------------------------------------

def test_startup_wires_azure_backed_service():
    app = create_app(settings=make_settings())

    with TestClient(app) as client:
        assert client.get("/api/health").status_code == 200
        assert app.state.form_service is not None


def test_startup_fails_fast_without_template(tmp_path):
    app = create_app(settings=make_settings(template_path=tmp_path / "absent.pdf"))

    with pytest.raises(TemplateError):
        with TestClient(app):
            pass
