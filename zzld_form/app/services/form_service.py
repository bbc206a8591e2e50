"""
Form generation orchestrator.

Per request:

    Received -> Validated -> Rendered -> Stored -> Succeeded

Validation failures exit right after Received. Template, render and
storage failures exit at the step that failed. Every expected failure is
returned as a GenerationResult tagged with a FormErrorKind; only
unexpected exceptions (and cancellation) propagate.

The orchestrator holds no per-request state and performs no retries of its
own. The document store retries transient storage faults internally.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from functools import partial
from typing import Optional

import anyio
import anyio.to_thread

from zzld_form.app.core.errors import (
    DocumentNotFoundError,
    DocumentStoreError,
    FormErrorKind,
    RenderError,
    TemplateError,
)
from zzld_form.app.schemas.personal_data import FormGenerationRequest, PersonalData
from zzld_form.app.schemas.results import (
    GenerationResult,
    StoredDocumentMetadata,
    utcnow,
)
from zzld_form.app.services.blob_store import TIMESTAMP_FORMAT, DocumentStore
from zzld_form.app.services.renderer import PdfFormRenderer
from zzld_form.app.services.template_locator import TemplateLocator
from zzld_form.app.validation.personal_data import (
    join_violations,
    validate_personal_data,
)

logger = logging.getLogger("zzld_form.form_service")


def new_form_id(now: Optional[datetime] = None) -> str:
    """``{yyyyMMddHHmmss}_{32 hex}``, unique even within the same second."""
    stamp = (now or utcnow()).strftime(TIMESTAMP_FORMAT)
    return f"{stamp}_{uuid.uuid4().hex}"


class FormService:
    def __init__(
        self,
        *,
        locator: TemplateLocator,
        renderer: PdfFormRenderer,
        store: DocumentStore,
    ) -> None:
        self._locator = locator
        self._renderer = renderer
        self._store = store

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    async def generate(self, request: FormGenerationRequest) -> GenerationResult:
        """
        Validate, render, store, and return a download link.

        NOTE:
        - The EGN is never logged
        - No store call is made unless rendering succeeded
        """
        record = PersonalData.from_request(request)

        violations = validate_personal_data(record)
        if violations:
            logger.info(
                "form_validation_failed",
                extra={"fields": ",".join(sorted({v.field for v in violations}))},
            )
            return GenerationResult.failure(
                FormErrorKind.VALIDATION,
                join_violations(violations),
            )

        try:
            template = self._locator.resolve()
        except TemplateError as exc:
            return GenerationResult.failure(FormErrorKind.TEMPLATE, str(exc))

        try:
            pdf_bytes = await anyio.to_thread.run_sync(
                partial(self._renderer.render, record, template)
            )
        except TemplateError as exc:
            logger.error("form_template_unusable", extra={"template": template.name})
            return GenerationResult.failure(FormErrorKind.TEMPLATE, str(exc))
        except RenderError as exc:
            logger.error(
                "form_render_failed",
                extra={"template": template.name, "error_type": type(exc).__name__},
            )
            return GenerationResult.failure(
                FormErrorKind.RENDER,
                f"Error generating form: {exc}",
            )

        generated_at = utcnow()
        form_id = new_form_id(generated_at)
        metadata = StoredDocumentMetadata(
            form_id=form_id,
            full_name=record.full_name(),
            generated_at=generated_at,
            egn=record.egn,
            email=record.email,
        )

        try:
            receipt = await self._store.upload(pdf_bytes, metadata)
        except DocumentStoreError as exc:
            return GenerationResult.failure(
                FormErrorKind.STORAGE,
                f"Error storing form: {exc}",
            )

        logger.info(
            "form_generated",
            extra={
                "form_id": form_id,
                "blob_name": receipt.locator,
                "size_bytes": len(pdf_bytes),
            },
        )
        return GenerationResult(
            success=True,
            form_id=form_id,
            download_url=receipt.download_url,
            blob_name=receipt.locator,
            generated_at=generated_at,
            expires_at=receipt.expires_at,
        )

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    async def retrieve(self, form_id: str) -> GenerationResult:
        """Look up a stored form and issue a fresh download link."""
        form_id = (form_id or "").strip()
        if not form_id:
            return GenerationResult.failure(
                FormErrorKind.VALIDATION,
                "Form ID is required",
            )

        try:
            document = await self._store.find_by_id(form_id)
        except DocumentNotFoundError as exc:
            return GenerationResult.failure(FormErrorKind.NOT_FOUND, str(exc))
        except DocumentStoreError as exc:
            return GenerationResult.failure(
                FormErrorKind.STORAGE,
                f"Error retrieving form: {exc}",
            )

        logger.info(
            "form_retrieved",
            extra={"form_id": form_id, "blob_name": document.locator},
        )
        return GenerationResult(
            success=True,
            form_id=document.metadata.form_id,
            download_url=document.download_url,
            blob_name=document.locator,
            generated_at=document.metadata.generated_at,
            expires_at=document.expires_at,
        )
