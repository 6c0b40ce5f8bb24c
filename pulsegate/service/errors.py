from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - challenge_invalid (401)
    - mfa_required (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - integrity_violation (500)
    - configuration_error (500)
    - dependency_unavailable (503)
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


class Unauthenticated(ServiceError):
    """No session, or the session is invalid or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ChallengeInvalid(Unauthenticated):
    """OTP/TOTP mismatch or expired challenge (401)."""
    error_code = "challenge_invalid"


class SecondFactorRequired(Unauthenticated):
    """Operation needs a recent second factor or a trusted device (401)."""
    error_code = "mfa_required"


class Unauthorized(ServiceError):
    """Session is valid but a required permission is missing (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(int(retry_after), 0)
        self.detail.setdefault("retry_after", self.retry_after)


class DependencyUnavailable(ServiceError):
    """Store or downstream collaborator failed or timed out (503)."""
    status_code = 503
    error_code = "dependency_unavailable"


class CircuitOpenError(DependencyUnavailable):
    """Call rejected without invoking the dependency because its breaker is open."""

    def __init__(self, operation: str, *, retry_after: float = 0.0) -> None:
        super().__init__(
            f"{operation} is temporarily unavailable",
            detail={"operation": operation, "retry_after": round(retry_after, 3)},
        )
        self.operation = operation
        self.retry_after = retry_after


class IntegrityViolation(ServiceError):
    """Stored data failed an integrity check (500)."""
    status_code = 500
    error_code = "integrity_violation"


class DecryptionError(IntegrityViolation):
    """Ciphertext could not be authenticated."""


class ConfigurationError(ServiceError):
    """Missing required secret or invalid role definition; fatal at startup."""
    status_code = 500
    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "Unauthenticated",
    "ChallengeInvalid",
    "SecondFactorRequired",
    "Unauthorized",
    "NotFoundError",
    "RateLimited",
    "DependencyUnavailable",
    "CircuitOpenError",
    "IntegrityViolation",
    "DecryptionError",
    "ConfigurationError",
]
