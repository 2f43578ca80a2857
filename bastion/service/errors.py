from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code``
    (the user-visible error kind):

    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def kind(self) -> str:
        return self.error_code


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class UnknownPermissionError(ValidationError):
    """Permission name is not in the registry."""


class WeakPasswordError(ValidationError):
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class TokenError(AuthenticationError):
    """Bearer credential could not be accepted.

    ``reason`` is one of ``malformed``, ``signature_invalid`` or ``expired``.
    """

    reason = "malformed"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("reason", self.reason)
        super().__init__(message, detail=detail, **kwargs)


class MalformedTokenError(TokenError):
    reason = "malformed"


class SignatureInvalidError(TokenError):
    reason = "signature_invalid"


class TokenExpiredError(TokenError):
    reason = "expired"


class MFARequiredError(AuthenticationError):
    """Second factor required but not supplied (401)."""

    def __init__(self, message: str = "mfa code required", **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("reason", "mfa_required")
        super().__init__(message, detail=detail, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyAssignedError(ConflictError):
    """A live assignment for the same user, role and project already exists."""


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many attempts",
        *,
        retry_after: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnknownPermissionError",
    "WeakPasswordError",
    "AuthenticationError",
    "SessionExpiredError",
    "TokenError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "TokenExpiredError",
    "MFARequiredError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AlreadyAssignedError",
    "RateLimitedError",
    "ServerError",
]
