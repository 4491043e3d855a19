from __future__ import annotations

from fastapi import APIRouter, Request, Response

from platformcore.core.config import get_settings


ALLOWED_METHODS = "GET, POST, PATCH, DELETE, OPTIONS"
ALLOWED_HEADERS = "Authorization, Content-Type, Idempotency-Key, X-Request-Id"

router = APIRouter(tags=["cors"])


def _allowed_origins() -> list[str]:
    raw = get_settings().cors_allowed_origins or "*"
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def resolve_allow_origin(request_origin: str | None) -> str | None:
    # Echo an explicitly allowed origin; "*" in the list allows every origin.
    allowed = _allowed_origins()
    if "*" in allowed:
        return "*"
    if request_origin and request_origin in allowed:
        return request_origin
    return None


def apply_cors_headers(request: Request, response: Response) -> Response:
    allow_origin = resolve_allow_origin(request.headers.get("origin"))
    if allow_origin is None:
        return response
    response.headers["Access-Control-Allow-Origin"] = allow_origin
    if allow_origin != "*":
        response.headers["Vary"] = "Origin"
    return response


def preflight_response(request: Request) -> Response:
    response = Response(status_code=204)
    apply_cors_headers(request, response)
    response.headers["Access-Control-Allow-Methods"] = ALLOWED_METHODS
    response.headers["Access-Control-Allow-Headers"] = ALLOWED_HEADERS
    response.headers["Access-Control-Max-Age"] = str(get_settings().cors_max_age_s)
    return response


@router.options("/{path:path}", include_in_schema=False)
async def cors_preflight(path: str, request: Request) -> Response:
    # One responder for every versioned path; auth never runs on preflight.
    return preflight_response(request)
