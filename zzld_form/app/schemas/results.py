"""
Result and storage schemas.

GenerationResult is the outcome of one generate-or-retrieve call and the
JSON body returned by the API. StoredDocumentMetadata is the sidecar
metadata written next to every stored PDF and read back verbatim on
retrieval.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from zzld_form.app.core.errors import FormErrorKind


PDF_CONTENT_TYPE = "application/pdf"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Storage records
# ----------------------------------------------------------------------

class StoredDocumentMetadata(BaseModel):
    """
    Subset of the personal data plus generation facts attached to a blob.

    ``form_id`` is globally unique and is the only lookup key.
    """

    form_id: str = Field(..., min_length=1)
    full_name: str = ""
    generated_at: datetime
    egn: str = ""
    email: str = ""
    content_type: str = PDF_CONTENT_TYPE

    model_config = ConfigDict(frozen=True)


class UploadReceipt(BaseModel):
    locator: str
    download_url: str
    expires_at: datetime

    model_config = ConfigDict(frozen=True)


class StoredDocument(BaseModel):
    locator: str
    download_url: str
    expires_at: datetime
    metadata: StoredDocumentMetadata

    model_config = ConfigDict(frozen=True)


# ----------------------------------------------------------------------
# Generation result
# ----------------------------------------------------------------------

class GenerationResult(BaseModel):
    """
    Outcome of a generate or retrieve operation.

    Exactly one of ``error_message`` or (``form_id`` and ``download_url``)
    is populated. ``error_kind`` drives the HTTP status and is never
    serialized.
    """

    success: bool
    form_id: Optional[str] = None
    download_url: Optional[str] = None
    blob_name: Optional[str] = None
    generated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_kind: Optional[FormErrorKind] = Field(default=None, exclude=True)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    @model_validator(mode="after")
    def outcome_is_exclusive(self) -> "GenerationResult":
        located = bool(self.form_id) and bool(self.download_url)
        if self.success:
            if not located or self.error_message is not None:
                raise ValueError(
                    "successful result requires form_id and download_url "
                    "and must not carry an error message"
                )
        else:
            if not self.error_message or self.form_id or self.download_url:
                raise ValueError(
                    "failed result requires an error message and must not "
                    "carry form_id or download_url"
                )
            if self.error_kind is None:
                raise ValueError("failed result requires an error kind")
        return self

    @classmethod
    def failure(cls, kind: FormErrorKind, message: str) -> "GenerationResult":
        return cls(
            success=False,
            error_message=message,
            error_kind=kind,
            generated_at=utcnow(),
        )


# ----------------------------------------------------------------------
# Transport bodies
# ----------------------------------------------------------------------

class ProblemDetails(BaseModel):
    """RFC 7807 problem body returned on every failed request."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime
    version: str
