from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from supportai.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from supportai.apps.api.response import API_VERSION, REQUEST_ID_HEADER, resolve_request_id
from supportai.apps.api.routes.channels import router as channels_router
from supportai.apps.api.routes.chat import router as chat_router
from supportai.apps.api.routes.health import router as health_router
from supportai.apps.api.routes.knowledge import router as knowledge_router
from supportai.apps.api.routes.simulation import router as simulation_router
from supportai.apps.api.routes.tenant import router as tenant_router
from supportai.core.config import get_settings
from supportai.core.errors import SupportAIError
from supportai.core.logging import configure_logging
from supportai.persistence.guards import TenantPredicateError
from supportai.services.audit import get_audit_logger


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("api_started app=%s", get_settings().app_name)
    yield
    # Buffered audit events are written before the process exits.
    await get_audit_logger().close()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="SupportAI API",
        version=API_VERSION,
        lifespan=lifespan,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = resolve_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "http_request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(SupportAIError)
    async def _domain_exception_handler(request: Request, exc: SupportAIError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    for router in (
        health_router,
        chat_router,
        knowledge_router,
        simulation_router,
        channels_router,
        tenant_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
