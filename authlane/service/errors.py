from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An engine failure the HTTP boundary renders as ``{error, message}``.

    Subclasses pin ``status_code`` and the stable ``error_code`` category;
    ``detail`` carries log-only context and is never sent to clients.
    """

    status_code: int = 400
    error_code: str = "invalid_input"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def is_server_fault(self) -> bool:
        return self.status_code >= 500


class ValidationError(ServiceError):
    status_code = 400
    error_code = "invalid_input"


class AuthenticationError(ServiceError):
    """Bad credentials, or a token that is invalid, expired or revoked."""

    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after: int = 0,
        limit: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(0, int(retry_after))
        self.limit = limit


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class UnavailableError(ServiceError):
    """The credential or revocation store could not complete the call."""

    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UnavailableError",
]
