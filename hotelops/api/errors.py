from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hotelops.core.errors import (
    AuthorizationError,
    HotelOpsError,
    IdempotencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses come before their bases.
STATUS_BY_ERROR: tuple[tuple[type[HotelOpsError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (IdempotencyConflictError, 409),
    (AuthorizationError, 403),
    (TransientStoreError, 503),
)


def status_for(exc: HotelOpsError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def handle_hotelops_error(request: Request, exc: HotelOpsError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": exc.code})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HotelOpsError, handle_hotelops_error)  # type: ignore[arg-type]
