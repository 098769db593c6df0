from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from esgflow.core.errors import (
    ConfigurationError,
    ConflictError,
    EsgFlowError,
    IntegrityError,
    NotFoundError,
    TransientError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; SyncInProgressError resolves through TransientError.
_STATUS_BY_ERROR: tuple[tuple[type[EsgFlowError], int], ...] = (
    (ConfigurationError, 400),
    (TransientError, 503),
    (ValidationError, 422),
    (IntegrityError, 409),
    (ConflictError, 409),
    (NotFoundError, 404),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for(exc: EsgFlowError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def error_body(message: str, code: str, **extra) -> dict:
    return {"error": message, "code": code, **extra}


async def esgflow_exception_handler(request: Request, exc: EsgFlowError) -> JSONResponse:
    # Domain errors map onto stable status codes with the error code attached.
    status_code = status_for(exc)
    extra = {}
    if isinstance(exc, IntegrityError):
        extra = {"broken_at": exc.broken_at, "entry_id": exc.entry_id}
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s status=%s", request.url.path, exc.code, status_code)
    return JSONResponse(content=error_body(str(exc), exc.code, **extra), status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = str(detail.get("message") or "Request failed")
        code = str(detail.get("code") or _default_code(exc.status_code))
    else:
        message = str(detail)
        code = _default_code(exc.status_code)
    return JSONResponse(content=error_body(message, code), status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface request validation errors with structured details for clients.
    return JSONResponse(
        content=error_body("Validation error", "REQUEST_VALIDATION_ERROR", details=exc.errors()),
        status_code=422,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("request_crashed path=%s", request.url.path)
    return JSONResponse(content=error_body("Internal server error", "INTERNAL_ERROR"), status_code=500)
