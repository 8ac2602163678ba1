from __future__ import annotations

from typing import Any

from supportai.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {"example": _error_example(code=code, message=message, details=details)}
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid API key"),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    429: _response(
        "Rate limited",
        "RATE_LIMITED",
        "Too many requests",
        details={"scope": "tenant", "retry_after_s": 12},
    ),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
