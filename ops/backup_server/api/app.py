"""
FastAPI application factory for the backup server.

This module creates the FastAPI app with:
- CORS configuration for the intranet frontend
- Backup, restore, job, log and progress routes under /api/v1
- BackupError to JSON error mapping
- Progress stream shutdown and job draining on exit
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..errors import BackupError, InvalidArgumentError
from ..service import BackupService
from .routes import router
from .settings import ApiSettings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Close progress streams and drain running jobs when the app stops."""
    yield

    service: BackupService = app.state.service
    await service.shutdown()


def create_app(service: BackupService, settings: ApiSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or ApiSettings()

    app = FastAPI(
        title="Backup Server",
        description="Full backups, incremental exports and restores with live progress.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.settings = settings

    # CORS for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(BackupError)
    async def backup_error_handler(request: Request, exc: BackupError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.warning(
                f"Request failed: {exc.message}",
                extra={"path": request.url.path, "error_code": exc.code},
            )
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = InvalidArgumentError(
            "Request validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(status_code=error.http_status, content={"error": error.to_dict()})

    # API routes
    app.include_router(router, prefix="/api/v1")

    # Health endpoint at root
    @app.get("/health")
    async def health():
        body = {
            "status": "healthy",
            "service": "backup-server",
            "version": __version__,
            "running_jobs": service.running_tasks,
            "subscribers": service.broadcaster.subscriber_count,
        }
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            body["scheduler"] = scheduler.status()
        return body

    return app
