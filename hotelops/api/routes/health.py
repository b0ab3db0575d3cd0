from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from hotelops.core.errors import TransientStoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return JSONResponse(status_code=503, content={"status": "unavailable", "database": False})
    try:
        await services.database.ping()
    except TransientStoreError as exc:
        logger.warning("Database ping failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "degraded", "database": False})
    return JSONResponse(status_code=200, content={"status": "ok", "database": True})
