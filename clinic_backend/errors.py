"""
Authentication error taxonomy.

Messages are deliberately generic: callers (and the API) must not learn
anything about internal state beyond the error code.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)


class InvalidRequest(ValueError):
    """Malformed or rejected input: 400 invalid_request at the API."""

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "detail": str(self)}


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 423
    message = "Account temporarily locked. Try again later."


class TokenNotFound(AuthError):
    code = "token_not_found"
    status_code = 401
    message = "Invalid two-factor token."


class TokenExpired(AuthError):
    code = "token_expired"
    status_code = 401
    message = "Two-factor token expired. Please log in again."


class InvalidCode(AuthError):
    code = "invalid_code"
    status_code = 400
    message = "Invalid verification code."


class MethodNotEnrolled(AuthError):
    code = "method_not_enrolled"
    status_code = 400
    message = "This verification method is not enabled for the account."


class BackupCodeAlreadyUsed(AuthError):
    code = "backup_code_already_used"
    status_code = 400
    message = "This backup code has already been used."


class ServiceUnavailable(AuthError):
    code = "service_unavailable"
    status_code = 503
    message = "Service temporarily unavailable."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 401
    message = "Invalid refresh token."


class EmailCodeCooldown(AuthError):
    code = "email_code_cooldown"
    status_code = 429
    message = "A code was sent moments ago. Wait before asking for another one."


@contextmanager
def infrastructure_errors() -> Iterator[None]:
    """Persistence faults reach callers as ServiceUnavailable, details only in the log."""
    try:
        yield
    except OperationalError as e:
        logger.exception("Persistence failure")
        raise ServiceUnavailable() from e
