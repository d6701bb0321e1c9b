"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores and the
AuthService do the work; these types only carry shape.

SessionContext is the explicit stand-in for the server-side "interactive
context" (the cookie session of a browser). The AuthService takes one in and
hands a possibly new one back; the HTTP layer persists it between requests.

Layer rule: no imports from api/ or questionnaire/.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union

ROLES: tuple[str, ...] = ("admin", "editor", "viewer")


@dataclass
class Account:
    """A person who can log in to the admin area.

    username is the primary handle, email the optional alternate handle;
    authentication accepts either. password_hash is a bcrypt hash.

    failed_attempts and locked_until implement the lockout policy. They are
    mutated only by the AuthService.
    """

    username: str
    role: str  # "admin" | "editor" | "viewer"
    id: Optional[int] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[str] = None
    created_at: Optional[str] = None

    def profile(self) -> Profile:
        return Profile(
            id=self.id,
            username=self.username,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            role=self.role,
        )


@dataclass(frozen=True)
class Profile:
    """Public view of an Account. Never carries the hash or lockout state."""

    id: Optional[int]
    username: str
    email: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    role: str


@dataclass
class Session:
    """A persisted login.

    Valid only while is_active is set AND the current time is before
    expires_at. Rows are never deleted; logout and revocation clear is_active.
    """

    account_id: int
    token: str
    expires_at: datetime
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    def is_valid(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at


@dataclass
class ActivityRecord:
    """Write-once audit entry. user_id is None for logins with an unknown handle."""

    action: str
    user_id: Optional[int] = None
    details: Optional[str] = None  # JSON text
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True
    id: Optional[int] = None
    created_at: Optional[str] = None
    username: Optional[str] = None  # joined for the log viewer, not stored


@dataclass(frozen=True)
class ClientInfo:
    """Network metadata of the caller, resolved once per request."""

    address: str = "unknown"
    user_agent: Optional[str] = None


def new_context_id() -> str:
    return secrets.token_urlsafe(32)


@dataclass
class SessionContext:
    """Server-side state of one interactive (browser) context.

    context_id is rotated on every successful login so a context identifier
    planted before authentication is worthless afterwards.
    """

    context_id: str = field(default_factory=new_context_id)
    authenticated: bool = False
    account_id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[str] = None
    session_token: Optional[str] = None
    csrf_token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "context_id": self.context_id,
            "authenticated": self.authenticated,
            "account_id": self.account_id,
            "username": self.username,
            "role": self.role,
            "session_token": self.session_token,
            "csrf_token": self.csrf_token,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> SessionContext:
        """Rebuild a context from its stored form. Missing or malformed data gives a fresh context."""
        if not isinstance(data, dict) or not data.get("context_id"):
            return cls()
        return cls(
            context_id=str(data["context_id"]),
            authenticated=data.get("authenticated") is True,
            account_id=data.get("account_id"),
            username=data.get("username"),
            role=data.get("role"),
            session_token=data.get("session_token"),
            csrf_token=data.get("csrf_token"),
        )


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    validation = "validation"
    invalid_credentials = "invalid_credentials"
    account_locked = "account_locked"
    unauthenticated = "unauthenticated"
    internal = "internal"


@dataclass(frozen=True)
class AuthOk:
    profile: Profile
    permissions: list[str]
    csrf_token: str

    ok = True


@dataclass(frozen=True)
class AuthErr:
    kind: ErrorKind
    message: str
    locked_until: Optional[datetime] = None

    ok = False


AuthResult = Union[AuthOk, AuthErr]


@dataclass(frozen=True)
class SessionStatus:
    """Answer to "who is this context?". profile is None when not authenticated."""

    authenticated: bool
    profile: Optional[Profile] = None
    permissions: list[str] = field(default_factory=list)
    csrf_token: Optional[str] = None
