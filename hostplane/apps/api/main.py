from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from hostplane.apps.api.errors import (
    hostplane_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from hostplane.apps.api.response import API_VERSION
from hostplane.apps.api.routes.catalog import router as catalog_router
from hostplane.apps.api.routes.health import router as health_router
from hostplane.apps.api.routes.ops import router as ops_router
from hostplane.apps.api.routes.servers import router as servers_router
from hostplane.core.config import get_settings
from hostplane.core.errors import HostplaneError
from hostplane.core.logging import configure_logging
from hostplane.providers.factory import close_provider_clients
from hostplane.services.provisioning.queue import is_inline_mode
from hostplane.services.telemetry import increment_counter
from hostplane.workers.pool import build_worker_pool


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Inline mode runs the worker pool inside the API process.
    pool = None
    if is_inline_mode():
        pool = build_worker_pool()
        await pool.start()
        app.state.worker_pool = pool
    try:
        yield
    finally:
        if pool is not None:
            await pool.stop(timeout_s=get_settings().worker_shutdown_grace_s)
        await close_provider_clients()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="hostplane API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HostplaneError, hostplane_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(servers_router, prefix=f"/{API_VERSION}")
    app.include_router(catalog_router, prefix=f"/{API_VERSION}")
    # Queue, dead-letter and metrics visibility for operators.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
