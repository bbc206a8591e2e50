import re

import anyio
import pytest

from zzld_form.app.core.errors import DocumentStoreError, FormErrorKind, RenderError
from zzld_form.app.schemas.personal_data import FormGenerationRequest
from zzld_form.app.services.form_service import new_form_id
from zzld_form.tests.fixtures.fakes import InMemoryDocumentStore
from zzld_form.tests.fixtures.services import VALID_REQUEST, make_form_service

pytestmark = pytest.mark.anyio

FORM_ID_RE = re.compile(r"^\d{14}_[0-9a-f]{32}$")


class ExplodingRenderer:
    def render(self, record, template):
        raise RenderError("font resource missing")


def request(**overrides) -> FormGenerationRequest:
    body = dict(VALID_REQUEST)
    body.update(overrides)
    return FormGenerationRequest.model_validate(body)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def service(store):
    return make_form_service(store)


# ------------------------------------------------------------------
# Generate
# ------------------------------------------------------------------

async def test_generate_valid_record(service, store):
    result = await service.generate(request())

    assert result.success is True
    assert FORM_ID_RE.match(result.form_id)
    assert "sig=" in result.download_url
    assert result.error_message is None
    assert result.blob_name in store.blobs
    assert store.blobs[result.blob_name].startswith(b"%PDF-")
    assert result.expires_at > result.generated_at


async def test_generate_records_metadata_without_leaking_it(service, store):
    result = await service.generate(request(middleName="Георгиев", email="ivan@example.bg"))

    metadata = store.metadata_for(result.form_id)
    assert metadata.full_name == "Иван Георгиев Петров"
    assert metadata.egn == "1234567890"
    assert metadata.email == "ivan@example.bg"
    assert metadata.generated_at == result.generated_at


async def test_generate_rejects_short_egn_without_upload(service, store):
    result = await service.generate(request(egn="123"))

    assert result.success is False
    assert result.error_kind is FormErrorKind.VALIDATION
    assert "EGN" in result.error_message
    assert "10" in result.error_message
    assert result.form_id is None and result.download_url is None
    assert store.upload_calls == 0


async def test_generate_joins_all_violations(service):
    result = await service.generate(request(egn="", postalCode="12"))

    assert result.error_message == (
        "EGN is required; Postal code must be exactly 4 digits"
    )


async def test_generate_missing_template(store, tmp_path):
    service = make_form_service(store, template_path=tmp_path / "absent.pdf")

    result = await service.generate(request())

    assert result.success is False
    assert result.error_kind is FormErrorKind.TEMPLATE
    assert store.upload_calls == 0


async def test_generate_render_failure(store):
    service = make_form_service(store, renderer=ExplodingRenderer())

    result = await service.generate(request())

    assert result.success is False
    assert result.error_kind is FormErrorKind.RENDER
    assert "font resource missing" in result.error_message
    assert store.upload_calls == 0


async def test_generate_storage_failure(store):
    store.upload_error = DocumentStoreError("Storage operation 'upload_blob' failed: HTTP 503")
    service = make_form_service(store)

    result = await service.generate(request())

    assert result.success is False
    assert result.error_kind is FormErrorKind.STORAGE
    assert "HTTP 503" in result.error_message
    assert store.upload_calls == 1


async def test_generate_does_not_swallow_unexpected_errors(store):
    store.upload_error = RuntimeError("boom")
    service = make_form_service(store)

    with pytest.raises(RuntimeError, match="boom"):
        await service.generate(request())


async def test_concurrent_generation_yields_distinct_ids(service):
    results = []

    async def generate_one(index: int) -> None:
        results.append(await service.generate(request(number=str(index))))

    async with anyio.create_task_group() as tg:
        for index in range(20):
            tg.start_soon(generate_one, index)

    form_ids = {r.form_id for r in results}
    assert all(r.success for r in results)
    assert len(form_ids) == 20

    for form_id in form_ids:
        retrieved = await service.retrieve(form_id)
        assert retrieved.success is True
        assert retrieved.form_id == form_id


# ------------------------------------------------------------------
# Retrieve
# ------------------------------------------------------------------

async def test_round_trip(service, store):
    generated = await service.generate(request())

    retrieved = await service.retrieve(generated.form_id)

    assert retrieved.success is True
    assert retrieved.form_id == generated.form_id
    assert retrieved.blob_name == generated.blob_name
    assert retrieved.generated_at == generated.generated_at
    assert "sig=" in retrieved.download_url
    metadata = store.metadata_for(retrieved.form_id)
    assert metadata.egn == "1234567890"
    assert metadata.full_name == "Иван Петров"


async def test_retrieve_unknown_form(service):
    result = await service.retrieve("non-existent-id")

    assert result.success is False
    assert result.error_kind is FormErrorKind.NOT_FOUND
    assert "not found" in result.error_message


async def test_retrieve_blank_form_id(service):
    result = await service.retrieve("  ")

    assert result.success is False
    assert result.error_kind is FormErrorKind.VALIDATION


async def test_retrieve_storage_failure(store, service):
    store.lookup_error = DocumentStoreError("Storage operation 'list_blobs' failed: HTTP 500")

    result = await service.retrieve("20250615120000_0123456789abcdef0123456789abcdef")

    assert result.success is False
    assert result.error_kind is FormErrorKind.STORAGE


def test_form_ids_are_unique_within_one_second():
    ids = {new_form_id() for _ in range(1000)}

    assert len(ids) == 1000
    assert all(FORM_ID_RE.match(i) for i in ids)
