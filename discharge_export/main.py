"""
Main FastAPI application
"""

from typing import Optional

import uvicorn
from discharge_export.api import exports, health, metrics
from discharge_export.core.api_envelope import validation_error_response
from discharge_export.core.config import settings
from discharge_export.core.dependencies import ExportServices, build_export_services
from discharge_export.core.logging import configure_logging, get_logger
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Configure structured logging
configure_logging()
logger = get_logger(__name__)


def create_app(services: Optional[ExportServices] = None) -> FastAPI:
    """
    Create the application.

    Args:
        services: Pre-assembled pipeline; built from settings at startup when omitted
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
        description="""
    Discharge Export Service

    ## Features
    - Exports discharge documents from a source EHR (Cerner/Epic FHIR R4)
      into a destination FHIR store as Binary, DocumentReference and Composition
    - Patient identity mapping across both systems
    - Duplicate-safe, idempotent exports
    - One published event per export outcome
    - Prometheus metrics
    """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.export_services = services

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(metrics.router)
    app.include_router(exports.router)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=validation_error_response(errors),
        )

    @app.on_event("startup")
    async def startup_event():
        """Application startup tasks"""
        logger.info(
            "application_startup",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            source_vendor=settings.SOURCE_VENDOR,
        )
        if app.state.export_services is None:
            app.state.export_services = build_export_services()
        await app.state.export_services.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Application shutdown tasks"""
        logger.info(
            "application_shutdown",
            app_name=settings.APP_NAME,
            version=settings.APP_VERSION,
        )
        if app.state.export_services is not None:
            await app.state.export_services.stop()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "discharge_export.main:app",
        host="0.0.0.0",  # nosec B104 - intentional for Docker container
        port=8000,
        reload=settings.DEBUG,
    )
