"""FastAPI application factory for Eduverse-Engine."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eduverse_engine.common.config import get_settings
from eduverse_engine.common.exceptions import (
    DomainRejection,
    EduverseError,
    InvalidDurationError,
    LicenseNotFoundError,
    NotEligibleError,
    OperationFailedError,
    OperationRejectedError,
    UnknownSectionError,
)
from eduverse_engine.common.logging import setup_logging
from eduverse_engine.common.schemas import ErrorResponse, HealthResponse
from eduverse_engine.engine import EduverseEngine


def _status_for(exc: EduverseError) -> int:
    if isinstance(exc, (LicenseNotFoundError, UnknownSectionError)):
        return 404
    if isinstance(exc, InvalidDurationError):
        return 422
    if isinstance(exc, DomainRejection):
        return 409
    if isinstance(exc, OperationRejectedError):
        return 422
    if isinstance(exc, OperationFailedError):
        return 503
    return 502


async def _eduverse_error_handler(request: Request, exc: EduverseError) -> JSONResponse:
    body = ErrorResponse(
        error=type(exc).__name__,
        code=exc.code,
        detail=exc.message,
        reasons=exc.reasons if isinstance(exc, NotEligibleError) else None,
    )
    return JSONResponse(status_code=_status_for(exc), content=body.model_dump(exclude_none=True))


def create_app(engine: Optional[EduverseEngine] = None) -> FastAPI:
    """Build the app. A supplied ``engine`` stays owned by the caller."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)
        owned = None
        if getattr(app.state, "engine", None) is None:
            owned = app.state.engine = EduverseEngine.from_settings(settings)
        yield
        # Shutdown
        if owned is not None:
            await owned.teardown()
            app.state.engine = None

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EduverseError, _eduverse_error_handler)

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    # Mount routers
    from eduverse_engine.licensing.router import router as licensing_router
    from eduverse_engine.progress.router import router as progress_router
    from eduverse_engine.certificates.router import router as certificate_router
    from eduverse_engine.access.router import router as access_router
    from eduverse_engine.reconciliation.router import router as reconciliation_router

    prefix = settings.api_prefix
    app.include_router(licensing_router, prefix=prefix, tags=["licensing"])
    app.include_router(progress_router, prefix=prefix, tags=["progress"])
    app.include_router(certificate_router, prefix=prefix, tags=["certificates"])
    app.include_router(access_router, prefix=prefix, tags=["access"])
    app.include_router(reconciliation_router, prefix=prefix, tags=["reconciliation"])

    return app
