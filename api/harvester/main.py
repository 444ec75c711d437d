from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from harvester.api.router import api_router
from harvester.core.config import get_settings
from harvester.core.telemetry import setup_api_telemetry, shutdown_api_telemetry
from harvester.services.dependencies import reset_service_caches
from harvester.services.store import get_store

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    tracer_provider = setup_api_telemetry(settings)
    try:
        yield
    finally:
        # The asyncpg pool belongs to the store; close it before telemetry flushes.
        await get_store().close()
        reset_service_caches()
        shutdown_api_telemetry(tracer_provider)


app = FastAPI(title=settings.app_name, lifespan=lifespan)


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
