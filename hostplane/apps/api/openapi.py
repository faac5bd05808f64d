from __future__ import annotations

from typing import Any

from hostplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error("Bad request", "BAD_REQUEST", "X-Tenant-Id header is required"),
    404: _error("Not found", "NOT_FOUND", "Resource not found"),
    409: _error("Conflict", "INVALID_TRANSITION", "Resource cannot move from deleted to resizing"),
    422: _error("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    502: _error("Provider error", "PROVIDER_ERROR", "Cloud provider request failed"),
    503: _error("Service unavailable", "QUEUE_UNAVAILABLE", "Task broker unavailable"),
}
