from __future__ import annotations

from typing import Any


class PlatformError(Exception):
    """Base error for platformcore services."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigurationError(PlatformError):
    """A required environment secret or setting is missing."""

    status_code = 500
    code = "CONFIGURATION_ERROR"


class CredentialSystemUnavailable(PlatformError):
    """The credential hasher or credential store failed; never reported as an invalid credential."""

    status_code = 503
    code = "AUTH_UNAVAILABLE"


class InvalidCredential(PlatformError):
    """Malformed, unknown, expired or revoked bearer credential."""

    status_code = 401
    code = "AUTH_UNAUTHORIZED"


class InsufficientScope(PlatformError):
    """The credential is valid but lacks one or more scopes."""

    status_code = 403
    code = "AUTH_INSUFFICIENT_SCOPE"

    def __init__(self, missing_scopes: list[str]) -> None:
        super().__init__(
            f"Missing required scopes: {', '.join(missing_scopes)}",
            details={"missing_scopes": list(missing_scopes)},
        )
        self.missing_scopes = list(missing_scopes)


class MembershipRequired(PlatformError):
    """The caller is not a member of the requested organization."""

    status_code = 403
    code = "AUTH_FORBIDDEN"


class NotFoundError(PlatformError):
    """Resource is absent or belongs to another organization."""

    status_code = 404
    code = "NOT_FOUND"


class UpstreamFailure(PlatformError):
    """An OAuth provider or third-party API answered with a non-2xx status."""

    status_code = 502
    code = "UPSTREAM_FAILURE"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        upstream_status: int | None = None,
        upstream_text: str | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(message, details=details or None)
        self.provider = provider
        self.upstream_status = upstream_status
        self.upstream_text = upstream_text


class ValidationFailure(PlatformError):
    """Required request fields are missing or malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message, details={"fields": field_errors} if field_errors else None)
        self.field_errors = dict(field_errors or {})


class LoginStateInvalid(PlatformError):
    """Login/signup state is unknown, expired or already consumed."""

    status_code = 400
    code = "AUTH_STATE_INVALID"


class UnsupportedProviderError(PlatformError):
    """OAuth provider name is not one of the supported providers."""

    status_code = 400
    code = "UNSUPPORTED_PROVIDER"
