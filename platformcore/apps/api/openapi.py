from __future__ import annotations

from typing import Any

from platformcore.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
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


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Validation error",
        _error_example(
            code="VALIDATION_ERROR",
            message="Validation error",
            details={"fields": {"callback_url": "Field required"}},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Invalid or expired credential"),
    ),
    403: _response(
        "Insufficient scope",
        _error_example(
            code="AUTH_INSUFFICIENT_SCOPE",
            message="Missing required scopes: workflows:write",
            details={"missing_scopes": ["workflows:write"]},
        ),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Upstream failure",
        _error_example(
            code="UPSTREAM_FAILURE",
            message="github token exchange failed: bad_verification_code",
            details={"provider": "github", "upstream_status": 400},
        ),
    ),
    503: _response(
        "Credential system unavailable",
        _error_example(code="AUTH_UNAVAILABLE", message="Authentication unavailable"),
    ),
}
