from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - invalid_credentials (401)
    - invalid_token (400, 401 for refresh)
    - invalid_mfa_code (400)
    - unauthorized (401)
    - forbidden / account_inactive (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error / transaction_failure (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; the two are indistinguishable (401)."""
    error_code = "invalid_credentials"
    default_message = "invalid email or password"


class InvalidTokenError(ServiceError):
    """Missing, expired, used or forged token (400)."""
    status_code = 400
    error_code = "invalid_token"
    default_message = "invalid or expired token"


class InvalidMfaCodeError(ServiceError):
    """Second-factor code rejected (400)."""
    status_code = 400
    error_code = "invalid_mfa_code"
    default_message = "invalid verification code"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class AccountInactiveError(ForbiddenError):
    """Account is inactive or suspended (403)."""
    error_code = "account_inactive"
    default_message = "account is not active"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or role name (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "too many requests, try again later"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class TransactionFailureError(ServerError):
    """A storage transaction failed and was rolled back (500)."""
    error_code = "transaction_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidMfaCodeError",
    "ForbiddenError",
    "AccountInactiveError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "TransactionFailureError",
]
