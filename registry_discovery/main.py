from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from registry_discovery.api.router import api_router
from registry_discovery.core.config import Settings, get_settings
from registry_discovery.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from registry_discovery.services.repository import get_repository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        shutdown_telemetry(app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()


async def log_request(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.middleware("http")(log_request)
    application.include_router(api_router)
    # Instrumentation adds middleware, so it has to happen before the app starts.
    application.state.telemetry = setup_telemetry(settings, service_suffix="api", app=application)
    return application


app = create_app()
