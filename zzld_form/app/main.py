import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from zzld_form.app.api.routes import problem_response
from zzld_form.app.api.routes import router as form_router
from zzld_form.app.core.config import Settings, get_settings
from zzld_form.app.core.logging import configure_logging
from zzld_form.app.schemas.results import HealthStatus, utcnow
from zzld_form.app.services.blob_store import build_blob_document_store
from zzld_form.app.services.fonts import FormFont
from zzld_form.app.services.form_service import FormService
from zzld_form.app.services.renderer import FORM_CAPTIONS, PdfFormRenderer
from zzld_form.app.services.template_locator import TemplateLocator

logger = logging.getLogger("zzld_form.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the release version when running from source.
    """
    try:
        return version("zzld-form")
    except PackageNotFoundError:
        return "1.0.0"


def build_form_service(settings: Settings):
    """
    Wire the production form service.

    Fails fast if the font cannot render Cyrillic or the template is
    missing. Returns the service and the store, which the caller closes.
    """
    font = FormFont.load(settings.font_path)

    locator = TemplateLocator(settings.template_path)
    locator.resolve()

    store = build_blob_document_store(settings)
    service = FormService(
        locator=locator,
        renderer=PdfFormRenderer(
            font,
            font_size=settings.font_size,
            captions=FORM_CAPTIONS if settings.draw_captions else (),
        ),
        store=store,
    )
    return service, store


def _validation_detail(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        msg = error.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Malformed request"


def create_app(
    settings: Optional[Settings] = None,
    form_service: Optional[FormService] = None,
) -> FastAPI:
    """
    Application factory for the ZZLD form service.

    Settings are loaded here, so misconfiguration stops the process before
    it binds a port. Serve with ``uvicorn --factory``.

    NOTE:
    - ``form_service`` replaces the Azure-backed service (tests)
    - Store clients are opened in the lifespan and closed on shutdown
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        logger.info(
            "zzld_form_startup_begin",
            extra={
                "service": "zzld-form",
                "version": app.version,
                "container": settings.storage_container_name,
            },
        )

        store = None
        if form_service is None:
            try:
                app.state.form_service, store = build_form_service(settings)
            except Exception:
                logger.exception("zzld_form_startup_failed")
                raise
        else:
            app.state.form_service = form_service

        try:
            yield
        finally:
            logger.info("zzld_form_shutdown_begin")
            if store is not None:
                try:
                    await store.close()
                except Exception:
                    logger.warning("blob_store_shutdown_failed", exc_info=True)

    app = FastAPI(
        title="ZZLD Declaration Form Service",
        description=(
            "Renders personal data declarations under the Bulgarian "
            "Personal Data Protection Act and serves them from Azure "
            "Blob Storage."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.form_service = form_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> ORJSONResponse:
        logger.info(
            "malformed_request",
            extra={"path": request.url.path, "error_count": len(exc.errors())},
        )
        return problem_response(
            status.HTTP_400_BAD_REQUEST,
            "Malformed request",
            _validation_detail(exc),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> ORJSONResponse:
        logger.exception(
            "unhandled_exception",
            extra={"path": request.url.path, "error_type": type(exc).__name__},
        )
        return problem_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            "An unexpected error occurred while processing the request.",
        )

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    app.include_router(form_router)

    @app.get(
        "/api/health",
        tags=["Monitoring"],
        summary="Liveness probe",
        response_model=HealthStatus,
    )
    async def health_check():
        """
        Verifies that the runtime is alive.

        NOTE:
        - Does NOT call Azure
        """
        return HealthStatus(
            status="Healthy",
            timestamp=utcnow(),
            version=app.version,
        )

    return app
