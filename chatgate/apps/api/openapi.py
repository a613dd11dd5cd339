from __future__ import annotations

from typing import Any

from chatgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
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
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Authentication required"),
    402: _response(
        "Subscription required or quota exceeded",
        "QUOTA_EXCEEDED",
        "Monthly message limit (1000) exceeded",
        details={"tier": "basic", "limit": 1000, "current": 1000, "metric": "messages"},
    ),
    403: _response("Forbidden", "ACCESS_DENIED", "Bot not found or access denied"),
    422: _response("Validation error", "VALIDATION_ERROR", "Messages must be a non-empty array"),
    429: _response("Rate limited", "RATE_LIMITED", "Rate limit exceeded"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
