from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from genflow.apps.api.response import error_response
from genflow.core.errors import (
    AuthenticationFailed,
    Forbidden,
    GenflowError,
    InsufficientCredits,
    InvalidTransition,
    MissingCredential,
    NotFound,
    ProviderFailure,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
}

# Most specific class first; anything unlisted is a server-side failure.
_STATUS_BY_ERROR: tuple[tuple[type[GenflowError], int], ...] = (
    (ValidationError, 400),
    (InsufficientCredits, 402),
    (Forbidden, 403),
    (NotFound, 404),
    (InvalidTransition, 409),
    (MissingCredential, 412),
    (AuthenticationFailed, 422),
    (ProviderFailure, 502),
)


def status_for(exc: GenflowError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


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


async def genflow_exception_handler(request: Request, exc: GenflowError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code == 500:
        logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
        # Server-side detail stays in the logs.
        payload = error_response(request=request, code=exc.code, message="Internal server error")
    else:
        if status_code == 502:
            # Provider messages never include the key, so they are returned as is.
            logger.warning("upstream_failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        payload = error_response(
            request=request,
            code=exc.code,
            message=exc.message,
            details=jsonable_encoder(exc.details),
        )
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed request bodies share the 400 contract with domain validation.
    payload = error_response(
        request=request,
        code=ValidationError.code,
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("request_failed path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
