"""
auth/errors.py -- Exception taxonomy for the authentication core.

Raised inside AuthService and caught at the operation boundary, where they
become an AuthErr result. "Unauthenticated" is deliberately absent: a missing
or dead session is a normal negative answer, not a fault.
"""

from __future__ import annotations

from datetime import datetime

from auth.models import ErrorKind


class AuthError(Exception):
    """Base class. message is safe to show to the end user."""

    kind: ErrorKind = ErrorKind.internal

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AuthError):
    kind = ErrorKind.validation


class InvalidCredentials(AuthError):
    """Same wording for an unknown handle and a wrong secret."""

    kind = ErrorKind.invalid_credentials


class AccountLocked(AuthError):
    kind = ErrorKind.account_locked

    def __init__(self, message: str, locked_until: datetime) -> None:
        super().__init__(message)
        self.locked_until = locked_until


class InternalError(AuthError):
    """Storage or infrastructure failure. The cause is chained, never shown."""

    kind = ErrorKind.internal
