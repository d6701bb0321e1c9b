"""
tests/test_auth_service.py -- Unit tests for AuthService against in-memory stores.

Covers:
  - login by username and by e-mail, profile/permissions in the result
  - lockout: 4th failure locks for 30 minutes, correct password rejected while locked
  - lapsed lock restarts the counter; success resets it
  - unknown handle indistinguishable from a wrong password
  - session TTLs (1 hour / 30 days), expiry, logout, disabled accounts
  - refresh extends and never shortens
  - context rotation on login (session fixation defense)
  - storage failures surface as InternalError / AuthErr(internal)
  - the non-atomic failed-attempt counter under-counts concurrent failures
"""

from __future__ import annotations

import json
import re
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import InternalError
from auth.models import Account, AuthErr, AuthOk, ClientInfo, ErrorKind, Session, SessionContext
from auth.permissions import PermissionResolver
from auth.service import (
    MSG_CREDENTIALS_REQUIRED,
    MSG_INTERNAL,
    MSG_INVALID_CREDENTIALS,
    AuthService,
)
from auth.store import AccountStore
from auth.tokens import generate_session_token, hash_password
from core.database import to_iso

CLIENT = ClientInfo(address="203.0.113.5", user_agent="pytest")


def _login(service: AuthService, handle: str, secret: str, remember: bool = False):
    return service.authenticate(handle, secret, remember, SessionContext(), CLIENT)


def _activity(audit, action: str) -> list:
    return [r for r in audit.query(limit=200, action=action).items]


# ---------------------------------------------------------------------------
# Successful login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_by_username_returns_profile_and_permissions(self, auth_service, make_account):
        account_id = make_account("alice", role="editor")
        result, context = _login(auth_service, "alice", "correct-horse")

        assert isinstance(result, AuthOk)
        assert result.ok is True
        assert result.profile.id == account_id
        assert result.profile.username == "alice"
        assert result.permissions == ["manage_questionnaires", "view_submissions"]
        assert context.authenticated is True
        assert context.account_id == account_id
        assert context.csrf_token == result.csrf_token

    def test_login_by_email_handle(self, auth_service, make_account):
        make_account("bob", email="bob@example.com")
        result, _ = _login(auth_service, "bob@example.com", "correct-horse")
        assert result.ok is True
        assert result.profile.username == "bob"

    def test_success_stamps_last_login_and_audits(self, auth_service, make_account, accounts, audit):
        account_id = make_account("carol")
        _login(auth_service, "carol", "correct-horse")

        assert accounts.get_by_id(account_id).last_login is not None
        records = _activity(audit, "login_success")
        assert len(records) == 1
        assert records[0].user_id == account_id
        assert records[0].ip_address == "203.0.113.5"

    def test_session_created_audit_carries_only_token_prefix(self, auth_service, make_account, audit):
        make_account("dave")
        _, context = _login(auth_service, "dave", "correct-horse")

        record = _activity(audit, "session_created")[0]
        details = json.loads(record.details)
        assert details["session_token_prefix"] == context.session_token[:8] + "..."
        assert context.session_token not in record.details

    def test_inactive_account_cannot_log_in(self, auth_service, make_account):
        make_account("erin", is_active=False)
        result, _ = _login(auth_service, "erin", "correct-horse")
        assert result.ok is False
        assert result.kind == ErrorKind.invalid_credentials


# ---------------------------------------------------------------------------
# Validation and credential errors
# ---------------------------------------------------------------------------


class TestCredentialErrors:
    @pytest.mark.parametrize("handle,secret", [("", "pw"), ("alice", ""), ("   ", "pw"), ("", "")])
    def test_empty_input_is_validation_error(self, auth_service, handle, secret):
        result, _ = _login(auth_service, handle, secret)
        assert isinstance(result, AuthErr)
        assert result.kind == ErrorKind.validation
        assert result.message == MSG_CREDENTIALS_REQUIRED

    def test_unknown_handle_matches_wrong_password(self, auth_service, make_account, audit):
        make_account("frank")
        unknown, _ = _login(auth_service, "ghost", "whatever")
        wrong, _ = _login(auth_service, "frank", "wrong")

        assert unknown.kind == wrong.kind == ErrorKind.invalid_credentials
        assert unknown.message == wrong.message == MSG_INVALID_CREDENTIALS

        failures = _activity(audit, "login_failed")
        ghost = [r for r in failures if json.loads(r.details)["username"] == "ghost"]
        assert len(ghost) == 1
        assert ghost[0].user_id is None
        assert ghost[0].success is False

    def test_failed_login_returns_input_context_unchanged(self, auth_service, make_account):
        make_account("gina")
        before = SessionContext()
        _, after = auth_service.authenticate("gina", "wrong", False, before, CLIENT)
        assert after is before


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------


class TestLockout:
    def test_three_failures_do_not_lock(self, auth_service, make_account, accounts):
        account_id = make_account("hank")
        for _ in range(3):
            _login(auth_service, "hank", "wrong")
        account = accounts.get_by_id(account_id)
        assert account.failed_attempts == 3
        assert account.locked_until is None

    def test_fourth_failure_locks_for_thirty_minutes(self, auth_service, make_account, accounts, clock):
        account_id = make_account("ivan")
        for _ in range(4):
            _login(auth_service, "ivan", "wrong")
        account = accounts.get_by_id(account_id)
        assert account.failed_attempts == 4
        assert account.locked_until == clock.now + timedelta(minutes=30)

    def test_correct_password_rejected_while_locked(self, auth_service, make_account, clock):
        make_account("jane")
        for _ in range(4):
            _login(auth_service, "jane", "wrong")
        clock.advance(minutes=29)

        result, context = _login(auth_service, "jane", "correct-horse")
        assert result.ok is False
        assert result.kind == ErrorKind.account_locked
        assert result.locked_until is not None
        assert re.fullmatch(r"Konto gesperrt bis \d{2}:\d{2}\. Zu viele Fehlversuche\.", result.message)
        assert context.authenticated is False

    def test_lock_message_uses_display_timezone(self, auth_service, make_account):
        make_account("kate")
        for _ in range(4):
            _login(auth_service, "kate", "wrong")
        result, _ = _login(auth_service, "kate", "correct-horse")
        # 12:00 UTC + 30 min, shown in Europe/Berlin (UTC+1 on 2024-03-01)
        assert "13:30" in result.message

    def test_locked_attempt_is_audited(self, auth_service, make_account, audit):
        make_account("liam")
        for _ in range(4):
            _login(auth_service, "liam", "wrong")
        _login(auth_service, "liam", "correct-horse")
        reasons = [json.loads(r.details)["reason"] for r in _activity(audit, "login_failed")]
        assert reasons.count("wrong_password") == 4
        assert reasons.count("account_locked") == 1

    def test_audit_timestamps_follow_the_service_clock(self, auth_service, make_account, accounts, audit, clock):
        account_id = make_account("olga")
        clock.advance(hours=5)
        for _ in range(4):
            _login(auth_service, "olga", "wrong")

        failures = _activity(audit, "login_failed")
        assert {r.created_at for r in failures} == {to_iso(clock.now)}
        assert accounts.get_by_id(account_id).locked_until == clock.now + timedelta(minutes=30)

    def test_login_succeeds_after_lock_lapses(self, auth_service, make_account, accounts, clock):
        account_id = make_account("mia")
        for _ in range(4):
            _login(auth_service, "mia", "wrong")
        clock.advance(minutes=31)

        result, _ = _login(auth_service, "mia", "correct-horse")
        assert result.ok is True
        account = accounts.get_by_id(account_id)
        assert account.failed_attempts == 0
        assert account.locked_until is None

    def test_failure_after_lapsed_lock_starts_from_zero(self, auth_service, make_account, accounts, clock):
        account_id = make_account("nina")
        for _ in range(4):
            _login(auth_service, "nina", "wrong")
        clock.advance(minutes=31)

        result, _ = _login(auth_service, "nina", "wrong")
        assert result.kind == ErrorKind.invalid_credentials
        account = accounts.get_by_id(account_id)
        assert account.failed_attempts == 1
        assert account.locked_until is None

    def test_success_resets_counter(self, auth_service, make_account, accounts):
        account_id = make_account("owen")
        for _ in range(3):
            _login(auth_service, "owen", "wrong")
        assert _login(auth_service, "owen", "correct-horse")[0].ok is True
        assert accounts.get_by_id(account_id).failed_attempts == 0

        # Three more failures must not lock: the counter started over.
        for _ in range(3):
            _login(auth_service, "owen", "wrong")
        assert accounts.get_by_id(account_id).locked_until is None

    def test_concurrent_failures_can_under_count(self, engine, sessions, audit, clock):
        """The read-modify-write on failed_attempts is not atomic.

        Two failures that both read the counter before either writes it leave
        the counter at 1, not 2. This documents current behavior.
        """

        class StaleReadStore(AccountStore):
            snapshot = None

            def get_failed_attempts(self, account_id):
                if self.snapshot is not None:
                    return self.snapshot
                return super().get_failed_attempts(account_id)

        store = StaleReadStore(engine)
        account_id = store.create_account(Account(username="race", role="viewer", password_hash=hash_password("pw")))
        service = AuthService(store, sessions, PermissionResolver(store), audit, clock=clock)

        store.snapshot = 0  # both "concurrent" requests observed zero
        _login(service, "race", "wrong")
        _login(service, "race", "wrong")

        assert store.get_by_id(account_id).failed_attempts == 1


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_default_session_lasts_one_hour(self, auth_service, make_account, sessions, clock):
        make_account("paul")
        _, context = _login(auth_service, "paul", "correct-horse")
        session = sessions.get_by_token(context.session_token)
        assert session.expires_at == clock.now + timedelta(hours=1)

    def test_remember_me_lasts_thirty_days(self, auth_service, make_account, sessions, clock):
        make_account("quinn")
        _, context = _login(auth_service, "quinn", "correct-horse", remember=True)
        session = sessions.get_by_token(context.session_token)
        delta = session.expires_at - (clock.now + timedelta(days=30))
        assert abs(delta.total_seconds()) <= 5

    def test_session_token_is_64_hex_chars(self, auth_service, make_account):
        make_account("rita")
        _, context = _login(auth_service, "rita", "correct-horse")
        assert re.fullmatch(r"[0-9a-f]{64}", context.session_token)

    def test_tokens_are_unique(self):
        tokens = {generate_session_token() for _ in range(10_000)}
        assert len(tokens) == 10_000

    def test_validate_live_session(self, auth_service, make_account):
        account_id = make_account("sam")
        _, context = _login(auth_service, "sam", "correct-horse")
        account, new_context = auth_service.validate_session(context.session_token, context)
        assert account.id == account_id
        assert new_context.authenticated is True

    def test_validate_without_token(self, auth_service):
        context = SessionContext()
        account, returned = auth_service.validate_session(None, context)
        assert account is None
        assert returned is context

    def test_expired_session_is_unauthenticated(self, auth_service, make_account, clock):
        make_account("tina")
        _, context = _login(auth_service, "tina", "correct-horse")
        clock.advance(hours=1, seconds=1)

        account, new_context = auth_service.validate_session(context.session_token, context)
        assert account is None
        assert new_context.authenticated is False
        assert new_context.context_id != context.context_id

    def test_session_of_disabled_account_is_unauthenticated(self, auth_service, make_account, accounts):
        account_id = make_account("uma")
        _, context = _login(auth_service, "uma", "correct-horse")
        accounts.set_active(account_id, False)

        account, _ = auth_service.validate_session(context.session_token, context)
        assert account is None

    def test_logout_deactivates_and_returns_fresh_context(self, auth_service, make_account, sessions, audit):
        make_account("vera")
        _, context = _login(auth_service, "vera", "correct-horse")

        new_context = auth_service.end_session(context, CLIENT)
        assert new_context.authenticated is False
        assert new_context.context_id != context.context_id
        assert sessions.get_by_token(context.session_token).is_active is False
        assert auth_service.validate_session(context.session_token, context)[0] is None
        assert len(_activity(audit, "logout")) == 1

    def test_login_rotates_context(self, auth_service, make_account):
        make_account("walt")
        planted = SessionContext(csrf_token="attacker-known")
        result, context = auth_service.authenticate("walt", "correct-horse", False, planted, CLIENT)

        assert result.ok is True
        assert context.context_id != planted.context_id
        assert context.csrf_token != planted.csrf_token

    def test_status_reports_profile_for_live_context(self, auth_service, make_account):
        make_account("xena", role="admin")
        _, context = _login(auth_service, "xena", "correct-horse")
        status, _ = auth_service.session_status(context)
        assert status.authenticated is True
        assert status.profile.username == "xena"
        assert "view_logs" in status.permissions

    def test_status_for_empty_context(self, auth_service):
        status, _ = auth_service.session_status(SessionContext())
        assert status.authenticated is False
        assert status.profile is None

    def test_has_permission(self, auth_service, make_account):
        make_account("yuri", role="viewer")
        _, context = _login(auth_service, "yuri", "correct-horse")
        assert auth_service.has_permission(context, "view_submissions") is True
        assert auth_service.has_permission(context, "view_logs") is False
        assert auth_service.has_permission(SessionContext(), "view_submissions") is False


class TestRefresh:
    def test_refresh_moves_expiry_forward(self, auth_service, make_account, sessions, clock):
        make_account("zoe")
        _, context = _login(auth_service, "zoe", "correct-horse")
        before = sessions.get_by_token(context.session_token).expires_at

        clock.advance(minutes=30)
        refreshed, _ = auth_service.refresh(context)

        after = sessions.get_by_token(context.session_token).expires_at
        assert refreshed is True
        assert after > before
        assert after == clock.now + timedelta(hours=1)

    def test_refresh_never_shortens_remember_me(self, auth_service, make_account, sessions, clock):
        make_account("abe")
        _, context = _login(auth_service, "abe", "correct-horse", remember=True)
        before = sessions.get_by_token(context.session_token).expires_at

        clock.advance(minutes=5)
        auth_service.refresh_session(context.session_token)
        assert sessions.get_by_token(context.session_token).expires_at == before

    def test_refresh_without_token_is_noop(self, auth_service):
        auth_service.refresh_session(None)

    def test_refresh_of_unauthenticated_context(self, auth_service):
        refreshed, _ = auth_service.refresh(SessionContext())
        assert refreshed is False


class TestAccountActivation:
    def test_disable_ends_open_session_and_is_audited(self, auth_service, make_account, audit):
        admin_id = make_account("root", role="admin")
        account_id = make_account("kim")
        _, context = _login(auth_service, "kim", "correct-horse")

        assert auth_service.set_account_active(account_id, False, admin_id, CLIENT) is True
        account, reset = auth_service.validate_session(context.session_token, context)
        assert account is None
        assert reset.authenticated is False

        entry = _activity(audit, "account_disabled")[0]
        assert entry.user_id == admin_id
        assert json.loads(entry.details) == {"account_id": account_id}

    def test_enable_restores_login(self, auth_service, make_account):
        account_id = make_account("lea", is_active=False)
        assert auth_service.set_account_active(account_id, True, None) is True
        result, _ = _login(auth_service, "lea", "correct-horse")
        assert result.ok is True

    def test_unknown_account(self, auth_service, audit):
        assert auth_service.set_account_active(424242, False, 1) is False
        assert _activity(audit, "account_disabled") == []


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------


class _BrokenAccounts(AccountStore):
    def find_active_by_handle(self, handle):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    def get_by_id(self, account_id):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))


class TestStorageFailures:
    @pytest.fixture
    def broken_service(self, engine, sessions, audit, clock):
        store = _BrokenAccounts(engine)
        return AuthService(store, sessions, PermissionResolver(store), audit, clock=clock)

    def test_authenticate_maps_storage_error_to_internal(self, broken_service, caplog):
        result, _ = _login(broken_service, "anyone", "pw")
        assert result.ok is False
        assert result.kind == ErrorKind.internal
        assert result.message == MSG_INTERNAL
        assert "Storage failure" in caplog.text

    def test_validate_session_raises_internal_error(self, broken_service, sessions, clock):
        sessions.create(Session(account_id=1, token="a" * 64, expires_at=clock.now + timedelta(hours=1)))
        with pytest.raises(InternalError) as exc_info:
            broken_service.validate_session("a" * 64, SessionContext())
        assert isinstance(exc_info.value.__cause__, OperationalError)
