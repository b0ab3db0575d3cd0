from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from hotelops.api.errors import register_error_handlers
from hotelops.api.routes import departments, health, imports, jobs, tickets
from hotelops.core.config import get_settings
from hotelops.core.logging import configure_logging, init_tracer, shutdown_tracer
from hotelops.middleware.actor import ActorMiddleware
from hotelops.services.container import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.services = None
    try:
        app.state.services = await build_services(settings)
    except Exception:
        # keep serving /health so orchestration can see the degraded state
        logger.exception("Service initialisation failed")
    try:
        yield
    finally:
        if app.state.services is not None:
            await app.state.services.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(ActorMiddleware)
    register_error_handlers(app)
    app.include_router(health.router)
    app.include_router(tickets.router)
    app.include_router(departments.router)
    app.include_router(imports.router)
    app.include_router(jobs.router)
    return app


app = create_app()
