from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """A refusal from one of the authorities, rendered as an error envelope.

    Subclasses pin the HTTP status and the stable ``error_code`` clients
    branch on. ``detail`` carries machine-readable context such as
    ``retry_after`` for rate limits or the conflicting ``field``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail) if detail else {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class BadRequestError(ServiceError):
    """Unusable email address, fingerprint or admin form input."""


class AuthenticationError(ServiceError):
    """No credential, or one whose signature, scope or row does not check out."""

    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """The login token or session outlived its expiry and grace window."""

    error_code = "expired"


class ForbiddenError(ServiceError):
    """The principal is known but banned, disconnected or not yet approved."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """A single-use transition (decide, redeem, renew, ban) already happened."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many live login requests for one email address."""

    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "AuthenticationError",
    "BadRequestError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "SessionExpiredError",
]
