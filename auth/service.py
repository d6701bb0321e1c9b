"""
auth/service.py -- Login, session lifecycle and account lockout.

AuthService orchestrates the credential store, the session store, the
permission resolver and the audit logger. All collaborators are injected at
construction; the service holds no request state. Interactive-context state
travels explicitly as a SessionContext that callers pass in and persist
whatever comes back.

Lockout policy (defaults from core.config):
  - every wrong secret for an existing account increments failed_attempts
  - reaching max_failed_attempts (4) sets locked_until = now + 30 minutes
  - while locked_until is in the future every attempt fails with
    AccountLocked, even with the correct secret
  - once the lock has lapsed, the next attempt starts from a zero counter
  - a successful login resets the counter and clears the lock

Error policy:
  - ValidationError / InvalidCredentials / AccountLocked are turned into an
    AuthErr result by authenticate(); they never escape it.
  - SQLAlchemy errors from the stores become InternalError (logged with the
    traceback, user sees a generic message).
  - Audit writes cannot fail from the caller's point of view.

Layer rule: no imports from api/ or questionnaire/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from auth.audit import AuditLogger
from auth.errors import AccountLocked, AuthError, InternalError, InvalidCredentials, ValidationError
from auth.models import (
    Account,
    AuthErr,
    AuthOk,
    AuthResult,
    ClientInfo,
    Session,
    SessionContext,
    SessionStatus,
)
from auth.permissions import PermissionResolver
from auth.store import AccountStore, SessionStore
from auth.tokens import generate_csrf_token, generate_session_token, token_prefix, verify_dummy, verify_password
from core.config import Settings
from core.database import to_iso, utcnow

logger = logging.getLogger("serviceportal.auth")

MSG_CREDENTIALS_REQUIRED = "Benutzername und Passwort sind erforderlich."
MSG_INVALID_CREDENTIALS = "Ungültige Anmeldedaten."
MSG_ACCOUNT_LOCKED = "Konto gesperrt bis {time}. Zu viele Fehlversuche."
MSG_INTERNAL = "Interner Serverfehler. Bitte versuchen Sie es später erneut."


@dataclass(frozen=True)
class AuthPolicy:
    session_ttl: timedelta = timedelta(hours=1)
    remember_ttl: timedelta = timedelta(days=30)
    max_failed_attempts: int = 4
    lockout_duration: timedelta = timedelta(minutes=30)
    display_timezone: str = "Europe/Berlin"

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthPolicy:
        return cls(
            session_ttl=timedelta(seconds=settings.session_ttl_seconds),
            remember_ttl=timedelta(seconds=settings.remember_ttl_seconds),
            max_failed_attempts=settings.max_failed_attempts,
            lockout_duration=timedelta(seconds=settings.lockout_seconds),
            display_timezone=settings.display_timezone,
        )


class AuthService:
    """Authentication and session lifecycle.

    Usage:
        service = AuthService(accounts, sessions, PermissionResolver(accounts), AuditLogger(engine))
        result, context = service.authenticate("admin", "secret", False, SessionContext(), client)
        if result.ok:
            ...persist context...
    """

    def __init__(
        self,
        accounts: AccountStore,
        sessions: SessionStore,
        permissions: PermissionResolver,
        audit: AuditLogger,
        policy: Optional[AuthPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._accounts = accounts
        self._sessions = sessions
        self._permissions = permissions
        self._audit = audit
        self._policy = policy or AuthPolicy()
        self._clock = clock
        self._display_tz = ZoneInfo(self._policy.display_timezone)

    @contextmanager
    def _storage(self) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.exception("Storage failure during auth operation")
            raise InternalError(MSG_INTERNAL) from exc

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def authenticate(
        self,
        handle: str,
        secret: str,
        remember: bool,
        context: SessionContext,
        client: Optional[ClientInfo] = None,
    ) -> tuple[AuthResult, SessionContext]:
        """Verify credentials and open a session.

        On success the returned context is a NEW context (new context_id,
        fresh anti-forgery token); the old one must be discarded by the
        caller. On failure the input context is returned unchanged.
        """
        client = client or ClientInfo()
        try:
            account = self._check_credentials(handle, secret, client)
            with self._storage():
                self._accounts.update_last_login(account.id, self._clock())
            token = self.create_session(account.id, remember, client)
            permissions = sorted(self._permissions.permissions_for(account.role))
        except AuthError as exc:
            locked_until = getattr(exc, "locked_until", None)
            return AuthErr(kind=exc.kind, message=exc.message, locked_until=locked_until), context

        self._audit.record(
            account.id,
            "login_success",
            {"username": account.username, "role": account.role, "remember_me": remember},
            client,
        )
        logger.info("Login succeeded for account_id=%s from %s", account.id, client.address)

        new_context = SessionContext(
            authenticated=True,
            account_id=account.id,
            username=account.username,
            role=account.role,
            session_token=token,
            csrf_token=generate_csrf_token(),
        )
        result = AuthOk(profile=account.profile(), permissions=permissions, csrf_token=new_context.csrf_token)
        return result, new_context

    def _check_credentials(self, handle: str, secret: str, client: ClientInfo) -> Account:
        handle = (handle or "").strip()
        if not handle or not secret:
            raise ValidationError(MSG_CREDENTIALS_REQUIRED)

        with self._storage():
            account = self._accounts.find_active_by_handle(handle)
        if account is None:
            # Same bcrypt cost as a real check; the response must not reveal the handle is unknown.
            verify_dummy(secret)
            self._record_failure(None, handle, "unknown_handle", client)
            raise InvalidCredentials(MSG_INVALID_CREDENTIALS)

        now = self._clock()
        if account.locked_until is not None:
            if account.locked_until > now:
                self._record_failure(account.id, handle, "account_locked", client)
                raise AccountLocked(self._locked_message(account.locked_until), account.locked_until)
            with self._storage():
                self._accounts.reset_failed_attempts(account.id)

        if not verify_password(secret, account.password_hash or ""):
            self._register_failed_attempt(account, handle, now, client)
            raise InvalidCredentials(MSG_INVALID_CREDENTIALS)

        with self._storage():
            self._accounts.reset_failed_attempts(account.id)
        return account

    def _register_failed_attempt(self, account: Account, handle: str, now: datetime, client: ClientInfo) -> None:
        # Read then write, not atomic. Concurrent failures may under-count.
        with self._storage():
            attempts = self._accounts.get_failed_attempts(account.id) + 1
            locked_until = None
            if attempts >= self._policy.max_failed_attempts:
                locked_until = now + self._policy.lockout_duration
            self._accounts.set_failed_attempts(account.id, attempts, locked_until)
        if locked_until is not None:
            logger.warning("Account %s locked until %s after %d failed attempts", account.id, locked_until, attempts)
        self._record_failure(account.id, handle, "wrong_password", client, attempts=attempts)

    def _record_failure(
        self,
        account_id: Optional[int],
        handle: str,
        reason: str,
        client: ClientInfo,
        attempts: Optional[int] = None,
    ) -> None:
        logger.warning("Failed login attempt: %s - %s - IP: %s", handle, reason, client.address)
        details: dict = {"username": handle, "reason": reason}
        if attempts is not None:
            details["attempts"] = attempts
        self._audit.record(account_id, "login_failed", details, client, success=False)

    def _locked_message(self, locked_until: datetime) -> str:
        return MSG_ACCOUNT_LOCKED.format(time=locked_until.astimezone(self._display_tz).strftime("%H:%M"))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, account_id: int, remember: bool, client: Optional[ClientInfo] = None) -> str:
        """Persist a new session and return its token."""
        client = client or ClientInfo()
        now = self._clock()
        ttl = self._policy.remember_ttl if remember else self._policy.session_ttl
        token = generate_session_token()
        session = Session(
            account_id=account_id,
            token=token,
            created_at=now,
            expires_at=now + ttl,
            ip_address=client.address,
            user_agent=client.user_agent,
        )
        with self._storage():
            self._sessions.create(session)
        self._audit.record(
            account_id,
            "session_created",
            {
                "remember": remember,
                "expires_at": to_iso(session.expires_at),
                "session_token_prefix": token_prefix(token),
            },
            client,
        )
        return token

    def validate_session(
        self, token: Optional[str], context: SessionContext
    ) -> tuple[Optional[Account], SessionContext]:
        """Resolve token to its account, or None when not authenticated.

        A dead session (unknown, logged out, expired, or owned by a disabled
        account) also resets the context. A live one refreshes the cached
        identity on the context and issues an anti-forgery token if missing.
        """
        if not token:
            return None, context
        with self._storage():
            session = self._sessions.get_active(token)
            if session is None or not session.is_valid(self._clock()):
                return None, SessionContext()
            account = self._accounts.get_by_id(session.account_id)
        if account is None or not account.is_active:
            return None, SessionContext()

        context = replace(
            context,
            authenticated=True,
            account_id=account.id,
            username=account.username,
            role=account.role,
            session_token=token,
        )
        if not context.csrf_token:
            context = replace(context, csrf_token=generate_csrf_token())
        return account, context

    def refresh_session(self, token: Optional[str]) -> None:
        """Push expiry to now + session_ttl. Missing token is a no-op."""
        if not token:
            return
        with self._storage():
            self._sessions.extend(token, self._clock() + self._policy.session_ttl)

    def logout(
        self,
        token: Optional[str],
        account_id: Optional[int],
        context: SessionContext,
        client: Optional[ClientInfo] = None,
    ) -> SessionContext:
        """Deactivate the session and return a brand-new, empty context."""
        if token:
            with self._storage():
                self._sessions.deactivate(token)
        if account_id is not None:
            self._audit.record(account_id, "logout", {"session_token_prefix": token_prefix(token)}, client)
            logger.info("Logout for account_id=%s", account_id)
        return SessionContext()

    def revoke_session(self, session_id: int, actor_id: Optional[int], client: Optional[ClientInfo] = None) -> bool:
        """Server-side revocation of someone's session. False if no active session has that id."""
        with self._storage():
            session = self._sessions.get_by_id(session_id)
            revoked = session is not None and self._sessions.deactivate_by_id(session_id)
        if revoked:
            self._audit.record(
                actor_id,
                "session_terminated",
                {"session_id": session_id, "owner_id": session.account_id},
                client,
            )
        return revoked

    def set_account_active(
        self, account_id: int, active: bool, actor_id: Optional[int], client: Optional[ClientInfo] = None
    ) -> bool:
        """Enable or disable an account. False if account_id does not exist.

        A disabled account cannot log in, and its open sessions fail
        validation on their next request.
        """
        with self._storage():
            changed = self._accounts.set_active(account_id, active)
        if changed:
            action = "account_enabled" if active else "account_disabled"
            self._audit.record(actor_id, action, {"account_id": account_id}, client)
            logger.info("%s account_id=%s by actor_id=%s", action, account_id, actor_id)
        return changed

    # ------------------------------------------------------------------
    # Produced interface for the request layer
    # ------------------------------------------------------------------

    def session_status(self, context: SessionContext) -> tuple[SessionStatus, SessionContext]:
        if not context.authenticated or not context.session_token:
            return SessionStatus(authenticated=False), context
        account, context = self.validate_session(context.session_token, context)
        if account is None:
            return SessionStatus(authenticated=False), context
        return (
            SessionStatus(
                authenticated=True,
                profile=account.profile(),
                permissions=sorted(self._permissions.permissions_for(account.role)),
                csrf_token=context.csrf_token,
            ),
            context,
        )

    def current_account(self, context: SessionContext) -> tuple[Optional[Account], SessionContext]:
        if not context.authenticated:
            return None, context
        return self.validate_session(context.session_token, context)

    def end_session(self, context: SessionContext, client: Optional[ClientInfo] = None) -> SessionContext:
        return self.logout(context.session_token, context.account_id, context, client)

    def refresh(self, context: SessionContext) -> tuple[bool, SessionContext]:
        account, context = self.current_account(context)
        if account is None:
            return False, context
        self.refresh_session(context.session_token)
        return True, context

    def has_permission(self, context: SessionContext, permission_key: str) -> bool:
        if not context.authenticated:
            return False
        return self._permissions.is_granted(context.role, permission_key)

    def permissions_for(self, role: Optional[str]) -> list[str]:
        return sorted(self._permissions.permissions_for(role))
