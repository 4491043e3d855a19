from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from platformcore.apps.api.cors import apply_cors_headers
from platformcore.apps.api.response import error_response, is_versioned_request
from platformcore.core.errors import InvalidCredential, PlatformError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_FAILURE",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Accept detail={"code", "message", ...extra} as well as plain string details.
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
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    response = JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=headers)
    apply_cors_headers(request, response)
    return response


async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, InvalidCredential) else None
    if exc.status_code >= 500:
        logger.error(
            "platform_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message
        )
    if not is_versioned_request(request):
        return JSONResponse(
            content={"detail": {"code": exc.code, "message": exc.message}},
            status_code=exc.status_code,
            headers=headers,
        )
    return _envelope(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


def _field_errors(exc: RequestValidationError) -> dict[str, str]:
    # Flatten pydantic locations ("body", "callback_url") into dotted field names.
    fields: dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(location) or "body"] = str(error.get("msg") or "invalid")
    return fields


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    return _envelope(
        request,
        status_code=400,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"fields": _field_errors(exc)},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces stay in server logs; clients get a stable envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    return _envelope(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
