from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from gitsync.api.router import api_router
from gitsync.core.config import get_settings
from gitsync.core.telemetry import (
    TelemetryRuntime,
    configure_logging,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from gitsync.jobs.runner import get_drift_poller
from gitsync.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    poller_task: asyncio.Task | None = None
    if settings.drift_poll_enabled:
        poller_task = asyncio.create_task(get_drift_poller().start(stop_event))
        logger.info("drift poller scheduled interval_seconds=%s", settings.drift_poll_interval_seconds)
    try:
        yield
    finally:
        stop_event.set()
        if poller_task is not None:
            await poller_task
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()
        get_drift_poller.cache_clear()


configure_logging(settings.log_level, log_correlation=settings.otel_log_correlation)
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
