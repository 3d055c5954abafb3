from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - validation_error (400)
    - unauthorized / invalid_credentials / token_expired / refresh_invalid /
      invalid_two_factor_code / password_mismatch (401)
    - forbidden / account_inactive / email_not_verified (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; never says which."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    """Access token is well-formed but past its expiry; clients should refresh."""

    error_code = "token_expired"


class RefreshInvalidError(AuthenticationError):
    """Refresh token missing, expired, revoked or reused; clients must log in again."""

    error_code = "refresh_invalid"


class InvalidTwoFactorCodeError(AuthenticationError):
    """Wrong, stale or already-used TOTP/backup code."""

    error_code = "invalid_two_factor_code"

    def __init__(self, message: str = "Invalid two-factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordMismatchError(AuthenticationError):
    """Re-entered account password did not match."""

    error_code = "password_mismatch"

    def __init__(self, message: str = "Password is incorrect", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountInactiveError(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "Account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"

    def __init__(
        self,
        message: str = "Please verify your email address before logging in",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class TwoFactorStateError(ValidationError):
    """Operation not allowed in the current two-factor state (400)."""


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenExpiredError",
    "RefreshInvalidError",
    "InvalidTwoFactorCodeError",
    "PasswordMismatchError",
    "ForbiddenError",
    "AccountInactiveError",
    "EmailNotVerifiedError",
    "TwoFactorStateError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
