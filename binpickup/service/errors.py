from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Domain failure with an HTTP status and a stable internal code.

    ``error_code`` is only logged; the API handlers decide what the client
    is told.
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
    """Malformed or rule-breaking input (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Duplicate resource such as an existing email (400)."""
    status_code = 400
    error_code = "conflict"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; both look the same to the caller."""
    status_code = 401
    error_code = "invalid_credentials"


class AccountLockedError(ServiceError):
    """Login refused while the account is locked out (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, lock_until: datetime, message: str = "Account is temporarily locked") -> None:
        super().__init__(message, detail={"lock_until": lock_until.isoformat()})
        self.lock_until = lock_until


class AuthenticationError(ServiceError):
    """Missing or unusable credentials (401); subclasses name the reason."""
    status_code = 401
    error_code = "unauthorized"


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenStaleError(AuthenticationError):
    """Token was issued before the last password change."""
    error_code = "token_stale"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class WrongTokenTypeError(AuthenticationError):
    error_code = "wrong_token_type"


class AccountNotFoundError(AuthenticationError):
    """Token is well formed but its subject no longer exists or is inactive."""
    error_code = "account_not_found"


class ForbiddenError(ServiceError):
    """Authenticated, but the role may not do this (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No such pickup or account (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Too many attempts from one subject (429)."""
    status_code = 429
    error_code = "rate_limited"


class UpstreamUnavailableError(ServiceError):
    """The credential store could not be reached (503)."""
    status_code = 503
    error_code = "upstream_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AuthenticationError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenStaleError",
    "TokenRevokedError",
    "WrongTokenTypeError",
    "AccountNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "UpstreamUnavailableError",
]
