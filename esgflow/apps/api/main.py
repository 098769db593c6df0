from __future__ import annotations

from contextlib import asynccontextmanager
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from esgflow.apps.api.errors import (
    esgflow_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from esgflow.apps.api.routes.audit import router as audit_router
from esgflow.apps.api.routes.connectors import router as connectors_router
from esgflow.apps.api.routes.demo import router as demo_router
from esgflow.apps.api.routes.health import router as health_router
from esgflow.apps.api.routes.kpi import router as kpi_router
from esgflow.apps.api.routes.mappings import router as mappings_router
from esgflow.apps.api.routes.sync import router as sync_router
from esgflow.core.errors import EsgFlowError
from esgflow.core.logging import configure_logging
from esgflow.services.sync_jobs import shutdown_inline_jobs
from esgflow.services.telemetry import increment_counter


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # In-process sync tasks must leave terminal sync logs before the loop closes.
    await shutdown_inline_jobs()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="ESGFlow API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.1f}"
        increment_counter(f"http_responses_{response.status_code // 100}xx_total")
        return response

    @app.exception_handler(EsgFlowError)
    async def _esgflow_exception_handler(request: Request, exc: EsgFlowError):
        return await esgflow_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(connectors_router)
    # Sync runs, background jobs and sync log polling.
    app.include_router(sync_router)
    app.include_router(mappings_router)
    app.include_router(kpi_router)
    app.include_router(audit_router)
    app.include_router(demo_router)
    return app


app = create_app()
