from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each class carries an HTTP ``status_code`` and a stable ``error_code`` so
    an outer HTTP layer can map faults without inspecting messages:
    - unauthorized (401)
    - invalid_token (401)
    - token_expired (401)
    - server_error (500)

    Expected business failures (duplicate username, bad credentials, stale
    refresh tokens) are returned as ``AuthResult`` values and never raised.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Access token is malformed, tampered with, or issued for someone else."""
    error_code = "invalid_token"


class TokenExpiredError(InvalidTokenError):
    """Access token is authentic but past its ``exp`` claim."""
    error_code = "token_expired"


class ConfigurationError(ServiceError):
    """Subsystem cannot start with the supplied configuration (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ConfigurationError",
]
