import logging
from typing import Annotated, Optional

import anyio
from fastapi import APIRouter, Body, Depends, Path, Request, status
from fastapi.responses import ORJSONResponse

from zzld_form.app.core.errors import FormErrorKind
from zzld_form.app.schemas.personal_data import FormGenerationRequest
from zzld_form.app.schemas.results import GenerationResult, ProblemDetails
from zzld_form.app.services.form_service import FormService

logger = logging.getLogger("zzld_form.api")

router = APIRouter(prefix="/api/form", tags=["Declaration Forms"])

PROBLEM_MEDIA_TYPE = "application/problem+json"

_PROBLEM_TITLES = {
    FormErrorKind.VALIDATION: "Invalid personal data",
    FormErrorKind.TEMPLATE: "Form template unavailable",
    FormErrorKind.RENDER: "Form generation failed",
    FormErrorKind.NOT_FOUND: "Form not found",
    FormErrorKind.STORAGE: "Form storage unavailable",
}

_PROBLEM_RESPONSES = {
    400: {"model": ProblemDetails, "description": "Invalid personal data"},
    500: {"model": ProblemDetails, "description": "Generation or storage failure"},
}


# =============================================================================
# Helpers
# =============================================================================

def problem_response(
    status_code: int,
    title: str,
    detail: Optional[str] = None,
) -> ORJSONResponse:
    """Serialize an RFC 7807 problem body."""
    problem = ProblemDetails(title=title, status=status_code, detail=detail)
    return ORJSONResponse(
        status_code=status_code,
        content=problem.model_dump(mode="json"),
        media_type=PROBLEM_MEDIA_TYPE,
    )


def result_response(result: GenerationResult) -> ORJSONResponse:
    if result.success:
        return ORJSONResponse(
            status_code=status.HTTP_200_OK,
            content=result.model_dump(mode="json", by_alias=True),
        )

    kind = result.error_kind
    return problem_response(
        kind.http_status,
        _PROBLEM_TITLES[kind],
        result.error_message,
    )


def timeout_response() -> ORJSONResponse:
    return problem_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Request timed out",
        "The form request did not complete in time.",
    )


# =============================================================================
# Dependency providers
# =============================================================================

def get_form_service(request: Request) -> FormService:
    service = getattr(request.app.state, "form_service", None)
    if service is None:
        raise RuntimeError("form service not initialized")
    return service


def get_request_timeout(request: Request) -> float:
    return request.app.state.settings.request_timeout_seconds


# =============================================================================
# POST /api/form/generate
# =============================================================================

@router.post(
    "/generate",
    summary="Generate a filled ZZLD declaration form",
    response_model=GenerationResult,
    responses=_PROBLEM_RESPONSES,
)
async def generate_form(
    payload: Annotated[FormGenerationRequest, Body()],
    service: Annotated[FormService, Depends(get_form_service)],
    timeout: Annotated[float, Depends(get_request_timeout)],
) -> ORJSONResponse:
    """
    Render the submitted personal data onto the declaration form, store
    the PDF and return a time-limited download URL.
    """
    try:
        with anyio.fail_after(timeout):
            result = await service.generate(payload)
    except TimeoutError:
        logger.error("form_generate_timeout", extra={"timeout_s": timeout})
        return timeout_response()

    if not result.success:
        logger.warning(
            "form_generate_rejected",
            extra={"error_kind": result.error_kind.value},
        )
    return result_response(result)


# =============================================================================
# GET /api/form/{formId}
# =============================================================================

@router.get(
    "/{formId}",
    summary="Retrieve a previously generated form",
    response_model=GenerationResult,
    responses={
        404: {"model": ProblemDetails, "description": "Form not found"},
        500: _PROBLEM_RESPONSES[500],
    },
)
async def get_form(
    form_id: Annotated[str, Path(alias="formId", min_length=1, max_length=128)],
    service: Annotated[FormService, Depends(get_form_service)],
    timeout: Annotated[float, Depends(get_request_timeout)],
) -> ORJSONResponse:
    """Issue a fresh download URL for a stored form."""
    try:
        with anyio.fail_after(timeout):
            result = await service.retrieve(form_id)
    except TimeoutError:
        logger.error("form_retrieve_timeout", extra={"timeout_s": timeout})
        return timeout_response()

    return result_response(result)
