from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from supportai.apps.api.response import error_response
from supportai.core.errors import (
    ChunkingError,
    ConversationNotFoundError,
    ExtractionError,
    KnowledgeSourceNotFoundError,
    SupportAIError,
    TenantNotFoundError,
)
from supportai.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a {"code", "message", ...} dict or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code, message, details, exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(request, exc.status_code, code, message, details, exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        {"errors": exc.errors()},
    )


async def domain_exception_handler(request: Request, exc: SupportAIError) -> JSONResponse:
    # Domain errors that escape a route map onto stable HTTP codes.
    if isinstance(exc, TenantNotFoundError):
        return _envelope(request, 404, "TENANT_NOT_FOUND", "Tenant not found")
    if isinstance(exc, ConversationNotFoundError):
        return _envelope(request, 404, "CONVERSATION_NOT_FOUND", "Conversation not found")
    if isinstance(exc, KnowledgeSourceNotFoundError):
        return _envelope(request, 404, "KNOWLEDGE_SOURCE_NOT_FOUND", "Knowledge source not found")
    if isinstance(exc, (ExtractionError, ChunkingError)):
        return _envelope(request, 422, "KNOWLEDGE_INVALID", str(exc))
    logger.exception("unhandled_domain_error path=%s", request.url.path)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    # A query without a tenant filter is a server bug, never the caller's fault.
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    return _envelope(request, 500, "TENANT_SCOPE_ERROR", "Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
