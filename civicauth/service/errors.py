from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from civicauth.storage.errors import StorageUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that the API layer renders into the error envelope.
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
    """Authentication failed or missing (401).

    Subclasses are the authentication-boundary failures; the API layer renders
    all of them identically so the caller cannot tell them apart.
    """
    status_code = 401
    error_code = "unauthorized"


class MissingCredential(AuthenticationError):
    """No bearer token was presented."""


class InvalidToken(AuthenticationError):
    """Bad signature, malformed structure, or expired token."""


class TokenRevoked(AuthenticationError):
    """The token has a live deny-list entry."""


class WrongTokenKind(AuthenticationError):
    """A refresh token was presented where an access token is required, or vice versa."""


class RotationError(ServiceError):
    """Refresh token not found, already revoked, expired, or owned by someone else."""
    status_code = 401
    error_code = "rotation_failed"


class ReplayDetected(ServiceError):
    """Passkey assertion counter did not increase."""
    status_code = 401
    error_code = "replay_detected"


class InvalidOAuthState(ServiceError):
    """OAuth state missing, expired, or already consumed."""
    status_code = 400
    error_code = "invalid_oauth_state"


class SecondFactorFailed(ServiceError):
    """Second-factor code missing or incorrect."""
    status_code = 401
    error_code = "mfa_failed"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class PersistenceError(ServiceError):
    """Durable store unavailable (503)."""
    status_code = 503
    error_code = "unavailable"


class SecretMisconfigured(RuntimeError):
    """Signing secret absent or weak in a production configuration.

    Not a ServiceError: it is raised while the process starts and must abort it.
    """

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


@contextmanager
def persistence_guard(operation: str) -> Iterator[None]:
    """Translate store outages inside the block into ``PersistenceError``."""
    try:
        yield
    except StorageUnavailable as exc:
        raise PersistenceError(f"{operation} failed") from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingCredential",
    "InvalidToken",
    "TokenRevoked",
    "WrongTokenKind",
    "RotationError",
    "ReplayDetected",
    "InvalidOAuthState",
    "SecondFactorFailed",
    "NotFoundError",
    "ConflictError",
    "PersistenceError",
    "SecretMisconfigured",
    "persistence_guard",
]
