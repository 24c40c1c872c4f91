from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantplane.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantplane.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from tenantplane.apps.api.routes.bootstrap import router as bootstrap_router
from tenantplane.apps.api.routes.health import router as health_router
from tenantplane.apps.api.routes.provisioning import router as provisioning_router
from tenantplane.core.config import get_settings
from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.services.container import get_container
from tenantplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    container = get_container()
    if settings.auto_bootstrap:
        result = await container.bootstrap.run()
        if result.success:
            logger.info("auto_bootstrap_completed message=%s", result.message)
        else:
            # Keep serving; operators can rerun bootstrap once the cause is fixed.
            logger.error("auto_bootstrap_failed step=%s message=%s", result.failed_step, result.message)
    yield
    await container.tracker.drain()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Tenant Plane API", version=API_VERSION, lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total_{response.status_code // 100}xx")
        logger.debug(
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
    app.add_exception_handler(TenantPlaneError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(provisioning_router, prefix=f"/{API_VERSION}")
    app.include_router(bootstrap_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
