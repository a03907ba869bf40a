"""
Failure kinds surfaced by login/refresh.

Every SessionError other than RateLimitExceeded means the presented
credential is dead from the client's point of view. Only InvalidCredentials is retryable (with corrected input).
TokenStoreError is not a SessionError: a storage outage surfaces as 503,
never as an invalid token.
"""
from __future__ import annotations


class SessionError(Exception):
    code = "SESSION_ERROR"
    message = "Session error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class InvalidCredentials(SessionError):
    code = "INVALID_CREDENTIALS"
    message = "Invalid username or password"


class TokenNotFound(SessionError):
    code = "TOKEN_NOT_FOUND"
    message = "Refresh token not recognized"


class TokenRevoked(SessionError):
    code = "TOKEN_REVOKED"
    message = "Refresh token has been revoked"


class TokenExpired(SessionError):
    code = "TOKEN_EXPIRED"
    message = "Refresh token has expired"


class FamilyCompromised(SessionError):
    code = "FAMILY_COMPROMISED"
    message = "Session was revoked after a token reuse; please log in again"


class TokenReuseDetected(SessionError):
    code = "TOKEN_REUSE_DETECTED"
    message = "Token reuse detected - all tokens revoked"


class RateLimitExceeded(SessionError):
    code = "ROTATION_RATE_LIMITED"
    message = "Token rotation rate limit exceeded"


class RotationLimitExceeded(SessionError):
    code = "ROTATION_LIMIT_EXCEEDED"
    message = "Token rotation limit exceeded"


class TokenStoreError(RuntimeError):
    """Transient storage failure (connection lost, timeout, ...)."""
