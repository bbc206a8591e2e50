"""
Error taxonomy for the form service.

Components raise these typed failures. The form service catches them and
converts each into a failed GenerationResult tagged with a FormErrorKind;
the HTTP layer maps the kind onto a status code. Raw transport exceptions
never reach the caller.
"""

from enum import Enum


class FormErrorKind(str, Enum):
    """Failure classes surfaced by the form service."""

    VALIDATION = "validation"
    TEMPLATE = "template"
    RENDER = "render"
    NOT_FOUND = "not_found"
    STORAGE = "storage"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    FormErrorKind.VALIDATION: 400,
    FormErrorKind.NOT_FOUND: 404,
    FormErrorKind.TEMPLATE: 500,
    FormErrorKind.RENDER: 500,
    FormErrorKind.STORAGE: 500,
}


class FormServiceError(RuntimeError):
    """Base class for expected form service failures."""


class RenderError(FormServiceError):
    """Raised when drawing the form onto the template fails."""


class TemplateError(RenderError):
    """Raised when the form template is missing or unreadable."""


class FontConfigurationError(ValueError):
    """Raised at startup when the configured font cannot render the form."""


class DocumentStoreError(FormServiceError):
    """Raised on storage faults after retries are exhausted."""


class DocumentNotFoundError(DocumentStoreError):
    """Raised when no stored document carries the requested form id."""

    def __init__(self, form_id: str) -> None:
        self.form_id = form_id
        super().__init__(f"Form with ID {form_id} not found")
