"""
FastAPI application entry point for the trip planner backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tripkit.config import Settings, get_settings
from tripkit.errors import (
    BlobOperationError,
    FolderNotEmptyError,
    GatewayWriteError,
    NotAuthenticatedError,
    NotFoundError,
    OrphanedStateError,
    PartialBatchError,
    TripkitError,
    ValidationError,
)
from tripkit.gateway import Gateway, build_gateway
from tripkit.routes import router
from tripkit.schemas import BatchFailureOut, ErrorResponse

logger = logging.getLogger(__name__)

# Most specific first.
STATUS_CODES: list[tuple[type, int]] = [
    (FolderNotEmptyError, 409),
    (ValidationError, 400),
    (NotAuthenticatedError, 401),
    (NotFoundError, 404),
    (OrphanedStateError, 500),
    (GatewayWriteError, 502),
    (BlobOperationError, 502),
    (PartialBatchError, 502),
]


def status_for(exc: TripkitError) -> int:
    for error_type, status in STATUS_CODES:
        if isinstance(exc, error_type):
            return status
    return 400


async def handle_tripkit_error(request: Request, exc: TripkitError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    body = ErrorResponse(
        detail=str(exc),
        error=exc.code,
        orphaned=isinstance(exc, OrphanedStateError),
    )
    if isinstance(exc, PartialBatchError):
        body.failures = [
            BatchFailureOut(
                item=f.item,
                error=f.message,
                code=getattr(f.error, "code", "error"),
            )
            for f in exc.result.failures
        ]
    return JSONResponse(status_code=status, content=body.model_dump())


def create_app(
    settings: Optional[Settings] = None, gateway: Optional[Gateway] = None
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.gateway = gateway or build_gateway(settings)
        try:
            yield
        finally:
            app.state.gateway.close()

    app = FastAPI(title="Trip Planner Backend (FastAPI)", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.add_exception_handler(TripkitError, handle_tripkit_error)
    app.include_router(router, prefix=settings.api_prefix)
    return app
