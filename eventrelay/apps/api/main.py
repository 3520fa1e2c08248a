from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from eventrelay.apps.api.errors import (
    eventrelay_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from eventrelay.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from eventrelay.apps.api.routes.events import router as events_router
from eventrelay.apps.api.routes.health import router as health_router
from eventrelay.apps.api.routes.ops import router as ops_router
from eventrelay.core.config import get_settings
from eventrelay.core.errors import EventRelayError
from eventrelay.core.logging import configure_logging
from eventrelay.services.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the HTTP app.

    An injected runtime is attached immediately, so in-process test clients
    that skip lifespan events still have their collaborators. Without one the
    runtime is built during startup, which fails fast on invalid webhook
    configuration.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        active = app.state.runtime or build_runtime(get_settings())
        app.state.runtime = active
        await active.startup()
        if active.settings.delivery_worker_mode == "inline":
            active.worker.start()
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(title="eventrelay API", lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EventRelayError, eventrelay_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(events_router, prefix=prefix)
    app.include_router(ops_router, prefix=prefix)
    return app


app = create_app()
