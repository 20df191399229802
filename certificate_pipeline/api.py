"""
FastAPI application for the Certificate Pipeline.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Dict, Type

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .db.base import init_database
from .errors import (
    ArtifactPersistError,
    CertificateNotFoundError,
    CertificateNotSettledError,
    CertificatePipelineError,
    ClaimNotFoundError,
    ClaimNotPayableError,
    ConversionFailedError,
    InvalidTemplateError,
    InvalidTransitionError,
    LeaseLostError,
    RegistrationAllocationError,
    TemplateNotFoundByIdError,
    TemplateNotFoundError,
    TooManyUnitsError,
)
from .logging_config import configure_logging
from .routes import certificates_router, claims_router, templates_router

# Initialize structured logging
logger = structlog.get_logger()

settings = get_settings()

# Most specific class first
ERROR_STATUS: Dict[Type[CertificatePipelineError], int] = {
    ClaimNotFoundError: 404,
    CertificateNotFoundError: 404,
    TemplateNotFoundByIdError: 404,
    ClaimNotPayableError: 409,
    CertificateNotSettledError: 409,
    InvalidTransitionError: 409,
    LeaseLostError: 409,
    TemplateNotFoundError: 422,
    InvalidTemplateError: 422,
    TooManyUnitsError: 422,
    ConversionFailedError: 502,
    ArtifactPersistError: 503,
    RegistrationAllocationError: 503,
}


def status_for(error: CertificatePipelineError) -> int:
    for error_class, status_code in ERROR_STATUS.items():
        if isinstance(error, error_class):
            return status_code
    return 500


def _version() -> str:
    return importlib.metadata.version("certificate-pipeline")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    configure_logging(settings)
    logger.info("Starting Certificate Pipeline")

    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to start application: {e}")
        raise

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title="Certificate Pipeline",
    description="Generates, stores and delivers course certificates and transcripts",
    version=_version(),
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CertificatePipelineError)
async def pipeline_error_handler(request: Request, exc: CertificatePipelineError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": {
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                }
            }
        },
    )


app.include_router(claims_router)
app.include_router(certificates_router)
app.include_router(templates_router)


# Health and Info Endpoints
@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": _version()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
