from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
API_PREFIX = f"/api/{API_VERSION}"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    """Typed success body for OpenAPI; handlers return plain dicts of this shape."""

    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Middleware id first, then the client's X-Request-Id, else a fresh one pinned to the request.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(API_PREFIX)


def response_meta(request: Request) -> dict[str, str]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Unversioned paths (none are mounted today) get the bare payload.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": response_meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details or None)
    return {"error": error.model_dump(exclude_none=True), "meta": response_meta(request)}
