from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hostplane.apps.api.response import error_response
from hostplane.core.errors import (
    CatalogEntryNotFoundError,
    HostplaneError,
    InvalidTransitionError,
    PermanentProviderError,
    ProviderConfigError,
    ProviderError,
    QueueUnavailableError,
    ResourceNotFoundError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _status_for(exc: HostplaneError) -> tuple[int, str]:
    if isinstance(exc, ResourceNotFoundError):
        return 404, "NOT_FOUND"
    if isinstance(exc, CatalogEntryNotFoundError):
        return 404, "CATALOG_ENTRY_NOT_FOUND"
    if isinstance(exc, InvalidTransitionError):
        return 409, "INVALID_TRANSITION"
    if isinstance(exc, QueueUnavailableError):
        return 503, "QUEUE_UNAVAILABLE"
    if isinstance(exc, ProviderConfigError):
        return 503, "PROVIDER_NOT_CONFIGURED"
    if isinstance(exc, PermanentProviderError):
        return 502, "PROVIDER_REJECTED"
    if isinstance(exc, ProviderError):
        return 502, "PROVIDER_UNAVAILABLE"
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI and Starlette HTTP exceptions.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def hostplane_exception_handler(request: Request, exc: HostplaneError) -> JSONResponse:
    status_code, code = _status_for(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=str(exc))
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)


def bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})
