from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from platformcore.apps.api.cors import apply_cors_headers
from platformcore.apps.api.cors import router as cors_router
from platformcore.apps.api.errors import (
    http_exception_handler,
    platform_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from platformcore.apps.api.response import API_PREFIX, API_VERSION, is_versioned_request
from platformcore.apps.api.routes.accounts import router as accounts_router
from platformcore.apps.api.routes.cli_auth import router as cli_auth_router
from platformcore.apps.api.routes.health import router as health_router
from platformcore.apps.api.routes.oauth_signup import router as oauth_signup_router
from platformcore.apps.api.routes.transactions import router as transactions_router
from platformcore.apps.api.routes.workflows import router as workflows_router
from platformcore.core.config import get_settings
from platformcore.core.errors import PlatformError
from platformcore.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    f"{API_PREFIX}/openapi.json",
    f"{API_PREFIX}/docs",
)
_PUBLIC_PATHS = {
    f"{API_PREFIX}/health",
    f"{API_PREFIX}/auth/cli/login",
    f"{API_PREFIX}/auth/cli/callback",
    f"{API_PREFIX}/auth/cli/complete",
    f"{API_PREFIX}/auth/cli/refresh",
    f"{API_PREFIX}/auth/cli/revoke",
    f"{API_PREFIX}/auth/oauth/signup",
    f"{API_PREFIX}/auth/oauth/callback",
}


def _wrap_envelope(response, request_id: str):
    raw_body = getattr(response, "body", None)
    if not raw_body:
        return response
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return response
    is_enveloped = (
        isinstance(payload, dict)
        and "meta" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )
    if is_enveloped:
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
        status_code=response.status_code,
    )
    for key, value in response.headers.items():
        if key.lower() in {"content-length", "content-type"}:
            continue
        wrapped.headers[key] = value
    return wrapped


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="Platform Core API",
        openapi_url=f"{API_PREFIX}/openapi.json",
        docs_url=f"{API_PREFIX}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            response = _wrap_envelope(response, request_id)
        if is_versioned_request(request):
            apply_cors_headers(request, response)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(PlatformError)
    async def _platform_error_handler(request: Request, exc: PlatformError):
        return await platform_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=API_PREFIX)
    # CLI login, session management and account administration.
    app.include_router(cli_auth_router, prefix=API_PREFIX)
    app.include_router(accounts_router, prefix=API_PREFIX)
    app.include_router(oauth_signup_router, prefix=API_PREFIX)
    # Scoped business endpoints.
    app.include_router(workflows_router, prefix=API_PREFIX)
    app.include_router(transactions_router, prefix=API_PREFIX)
    # Shared preflight responder goes last so it never shadows a real route.
    app.include_router(cors_router, prefix=API_PREFIX)

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="Platform Core API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": settings.api_base_url}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
