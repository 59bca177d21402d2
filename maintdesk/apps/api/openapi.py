from __future__ import annotations

from typing import Any

from maintdesk.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Bad request or invalid webhook signature",
        _error_example(code="WEBHOOK_SIGNATURE_INVALID", message="Webhook signature missing or invalid"),
    ),
    401: _response(
        "Missing identity",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-User-Id header is required"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Resource not found"),
    ),
    412: _response(
        "Plan does not allow the operation",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Your plan allows 3 active preventive templates and you already have 3. "
            "Pause or archive one, or upgrade your plan.",
            details={"kind": "preventives", "limit": 3, "used": 3},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="time_of_day must be HH:MM", details={"field": "time_of_day"}),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Store unavailable, safe to retry",
        _error_example(code="STORE_UNAVAILABLE", message="Transaction contention or store I/O failure"),
    ),
}
