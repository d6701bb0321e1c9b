"""
auth/tokens.py -- Password hashing and random token utilities.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Its cost factor makes
       brute force expensive for low-entropy secrets. checkpw compares in
       constant time. The _DUMMY_HASH constant enables timing equalization in
       AuthService.authenticate() so response time does not reveal whether a
       handle exists.

  Session tokens: secrets.token_hex(32) gives 256 bits of entropy from the
       OS CSPRNG. Collisions are treated as impossible and not checked.

  Anti-forgery tokens: same generator, separate value, bound to one
       interactive context. They are not authentication credentials.

  Log safety: only token_prefix() output may be written to logs or the
       activity table.

Layer rule: no imports from api/ or questionnaire/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import secrets

import bcrypt

from core.config import get_settings

_settings = get_settings()

_TOKEN_BYTES = 32
_PREFIX_LENGTH = 8


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are rejected by bcrypt 4.x; the API layer
    caps password length well below that.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("serviceportal_timing_dummy")


def verify_dummy(plain: str) -> None:
    """Burn one bcrypt verification for a handle that does not exist."""
    verify_password(plain, _DUMMY_HASH)


def generate_session_token() -> str:
    return secrets.token_hex(_TOKEN_BYTES)


def generate_csrf_token() -> str:
    return secrets.token_hex(_TOKEN_BYTES)


def token_prefix(token: str | None) -> str | None:
    """Return a log-safe abbreviation such as 'a1b2c3d4...'."""
    if not token:
        return None
    return f"{token[:_PREFIX_LENGTH]}..."
