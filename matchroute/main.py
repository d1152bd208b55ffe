import asyncio
from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from matchroute.api.router import api_router
from matchroute.core.config import get_settings
from matchroute.core.telemetry import TelemetryRuntime, configure_logging, setup_api_telemetry, shutdown_api_telemetry
from matchroute.services.repository import get_repository
from matchroute.services.workflow import get_workflow
from matchroute.workers.main import run_scheduler

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    scheduler_task: asyncio.Task[None] | None = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(run_scheduler(get_workflow(), settings, stop_event=stop_event))
        logger.info("in-process scheduler started")
    try:
        yield
    finally:
        if scheduler_task is not None:
            stop_event.set()
            await scheduler_task
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_workflow().drain()
        # Ensure asyncpg pool shuts down on app teardown.
        await get_repository().close()
        get_workflow.cache_clear()
        get_repository.cache_clear()


configure_logging()
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
