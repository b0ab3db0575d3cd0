"""Resolve the calling actor once per request."""

from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from hotelops.dependencies.auth import resolve_actor_from_headers

PUBLIC_PATHS = frozenset({"/health", "/docs", "/openapi.json"})


class ActorMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.actor`` from the gateway's identity headers."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        try:
            request.state.actor = resolve_actor_from_headers(request.headers)
        except HTTPException as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        return await call_next(request)
