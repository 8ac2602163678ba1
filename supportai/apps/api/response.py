from __future__ import annotations

import re
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

# Caller-supplied ids end up in logs and audit payloads.
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    """Every 2xx JSON body under /v1: ``{"data": ..., "meta": {...}}``."""

    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    """Every error body: ``{"error": {code, message, details?}, "meta": {...}}``."""

    error: ErrorDetail
    meta: ResponseMeta


def resolve_request_id(request: Request) -> str:
    """Return the id bound to this request, binding one on first use.

    A well-formed ``X-Request-Id`` from the caller is kept; anything else is
    replaced by a fresh UUID.
    """
    bound = getattr(request.state, "request_id", None)
    if bound:
        return bound
    candidate = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    request_id = candidate if _REQUEST_ID_RE.match(candidate) else str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=resolve_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorDetail(code=code, message=message, details=details).model_dump(exclude_none=True)
    return {"error": body, "meta": _meta(request)}
