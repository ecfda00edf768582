from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on. Messages are human readable and
    safe to return verbatim.
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


class NotFoundError(ServiceError):
    """No account or pending registration for the identity (404)."""
    status_code = 404
    error_code = "not_found"


class DuplicateIdentityError(ServiceError):
    """An account already exists for the email (400)."""
    status_code = 400
    error_code = "duplicate_identity"


class InvalidOrExpiredChallengeError(ServiceError):
    """Wrong or expired passcode; the two causes are reported identically (400)."""
    status_code = 400
    error_code = "invalid_or_expired_challenge"


class InvalidCredentialsError(ServiceError):
    status_code = 400
    error_code = "invalid_credentials"


class NotVerifiedError(ServiceError):
    status_code = 403
    error_code = "not_verified"


class AlreadyVerifiedError(ServiceError):
    status_code = 400
    error_code = "already_verified"


class InvalidOrRevokedTokenError(ServiceError):
    """Bad signature, wrong type, expired, or present in the revocation registry (401)."""
    status_code = 401
    error_code = "invalid_or_revoked_token"


class ForbiddenError(ServiceError):
    """Access denied - role not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class NotApprovedError(ForbiddenError):
    """Vendor account has not been approved by an admin (403)."""
    error_code = "not_approved"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EmailDeliveryError(ServerError):
    """A passcode email could not be delivered (500)."""
    error_code = "email_delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "DuplicateIdentityError",
    "InvalidOrExpiredChallengeError",
    "InvalidCredentialsError",
    "NotVerifiedError",
    "AlreadyVerifiedError",
    "InvalidOrRevokedTokenError",
    "ForbiddenError",
    "NotApprovedError",
    "RateLimitedError",
    "ServerError",
    "EmailDeliveryError",
]
