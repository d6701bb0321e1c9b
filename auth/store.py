"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AccountStore (credentials, lockout
counters, permission grants) and SessionStore (login sessions) are the
repositories; the _row_to_* functions are the mappers. Service and route code
never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Session tokens are stored as issued (they are looked up by equality). The
  log viewer only ever receives token_prefix() output.

Both stores take an Engine built by core.database.create_db_engine() so they
share one database with the audit log and the questionnaire tables.

Known weakness: the failed-attempt counter is updated with a read followed by
a separate write (get_failed_attempts + set_failed_attempts). Two concurrent
failed logins can both read the same value and under-count. Left as is on
purpose; see DESIGN.md.

Layer rule: no imports from api/ or questionnaire/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import ROLES, Account, Session
from auth.tokens import token_prefix
from core.database import from_iso, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), unique=True),  # alternate login handle
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(30), nullable=False, server_default="viewer"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # No FK constraint: sessions are kept for audit even if the account goes away.
    Column("user_id", Integer, nullable=False),
    Column("session_token", String(64), nullable=False, unique=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Index("ix_user_sessions_user_id", "user_id"),
)

user_permissions = Table(
    "user_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role", String(30), nullable=False),
    Column("permission_key", String(100), nullable=False),
    Column("permission_value", Integer, nullable=False, server_default="0"),
    UniqueConstraint("role", "permission_key", name="uq_role_permission"),
)


@dataclass
class Page:
    """One page of a paginated listing."""

    items: list
    page: int
    per_page: int
    total_records: int
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total_records / self.per_page) if self.per_page else 0


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records and the role -> permission table.

    Usage:
        store = AccountStore(create_db_engine("sqlite:///:memory:"))
        store.create_account(Account(username="admin", role="admin", password_hash=hash_password("secret")))
        account = store.find_active_by_handle("admin")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its ID.

        Raises ValueError for an unknown role and
        sqlalchemy.exc.IntegrityError for a duplicate username or email.
        """
        if account.role not in ROLES:
            raise ValueError(f"Unknown role: {account.role!r}")
        if not account.password_hash:
            raise ValueError("password_hash is required")
        with self.engine.connect() as conn:
            result = conn.execute(
                users.insert().values(
                    username=account.username,
                    email=account.email,
                    password_hash=account.password_hash,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    role=account.role,
                    is_active=1 if account.is_active else 0,
                    login_attempts=0,
                    created_at=to_iso(utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_active_by_handle(self, handle: str) -> Optional[Account]:
        """Look up an active account whose username OR email equals handle."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where(
                    or_(users.c.username == handle, users.c.email == handle),
                    users.c.is_active == 1,
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_username(self, username: str) -> Optional[Account]:
        """Exact username lookup, active or not (operator tooling)."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int) -> Optional[Account]:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_failed_attempts(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            value = conn.execute(
                select(users.c.login_attempts).where(users.c.id == account_id)
            ).scalar()
        return value or 0

    def set_failed_attempts(self, account_id: int, attempts: int, locked_until: Optional[datetime]) -> None:
        """Write the counter and, when given, the lock deadline.

        locked_until=None leaves an existing lock column untouched so a
        concurrent lock is not wiped by a lower write.
        """
        values: dict = {"login_attempts": attempts}
        if locked_until is not None:
            values["locked_until"] = to_iso(locked_until)
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == account_id).values(**values))
            conn.commit()

    def reset_failed_attempts(self, account_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == account_id).values(login_attempts=0, locked_until=None))
            conn.commit()

    def update_last_login(self, account_id: int, when: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == account_id).values(last_login=to_iso(when)))
            conn.commit()

    def set_active(self, account_id: int, is_active: bool) -> bool:
        """Enable or disable an account. Returns False if account_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                users.update().where(users.c.id == account_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Permission grants (static reference data)
    # ------------------------------------------------------------------

    def granted_permissions(self, role: str) -> list[str]:
        """Return permission keys with a truthy grant for role, sorted."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(user_permissions.c.permission_key)
                .where(user_permissions.c.role == role, user_permissions.c.permission_value == 1)
                .order_by(user_permissions.c.permission_key)
            ).fetchall()
        return [r.permission_key for r in rows]

    def has_grants(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(user_permissions)).scalar()
        return (count or 0) > 0

    def set_grant(self, role: str, permission_key: str, granted: bool) -> None:
        """Insert or overwrite one (role, permission_key) grant. Provisioning only."""
        with self.engine.begin() as conn:
            updated = conn.execute(
                user_permissions.update()
                .where(user_permissions.c.role == role, user_permissions.c.permission_key == permission_key)
                .values(permission_value=1 if granted else 0)
            )
            if updated.rowcount == 0:
                conn.execute(
                    user_permissions.insert().values(
                        role=role, permission_key=permission_key, permission_value=1 if granted else 0
                    )
                )

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

_SESSION_SORT_FIELDS = {
    "created_at": user_sessions.c.created_at,
    "user_id": user_sessions.c.user_id,
    "ip_address": user_sessions.c.ip_address,
    "expires_at": user_sessions.c.expires_at,
    "is_active": user_sessions.c.is_active,
}


class SessionStore:
    """Repository for Session rows. Rows are never deleted."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def create(self, session: Session) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.insert().values(
                    user_id=session.account_id,
                    session_token=session.token,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=to_iso(session.created_at or utcnow()),
                    expires_at=to_iso(session.expires_at),
                    is_active=1 if session.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_active(self, token: str) -> Optional[Session]:
        """Return the active row for token, expired or not. Expiry is the caller's call."""
        with self.engine.connect() as conn:
            row = conn.execute(
                user_sessions.select().where(user_sessions.c.session_token == token, user_sessions.c.is_active == 1)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_token(self, token: str) -> Optional[Session]:
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.session_token == token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_id(self, session_id: int) -> Optional[Session]:
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def extend(self, token: str, expires_at: datetime) -> bool:
        """Move expires_at forward for an active session.

        The WHERE clause only matches rows whose current expiry is earlier,
        so a longer grant (remember me) is never shortened.
        """
        new_value = to_iso(expires_at)
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(
                    user_sessions.c.session_token == token,
                    user_sessions.c.is_active == 1,
                    user_sessions.c.expires_at < new_value,
                )
                .values(expires_at=new_value)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update().where(user_sessions.c.session_token == token).values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_by_id(self, session_id: int) -> bool:
        """Server-side revocation used by the log viewer."""
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(user_sessions.c.id == session_id, user_sessions.c.is_active == 1)
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def query(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        sort: str = "created_at",
        direction: str = "desc",
        search: Optional[str] = None,
        user_id: Optional[int] = None,
        status: Optional[str] = None,
        date: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Page:
        """Paginated session listing for the log viewer.

        Unknown sort fields fall back to created_at; anything but "asc" sorts
        descending. status is one of "active", "expired", "logged_out".
        Items are plain dicts with the token reduced to its prefix.
        """
        now_iso = to_iso(now or utcnow())
        joined = user_sessions.outerjoin(users, user_sessions.c.user_id == users.c.id)

        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(users.c.username.like(pattern), user_sessions.c.ip_address.like(pattern)))
        if user_id is not None:
            conditions.append(user_sessions.c.user_id == user_id)
        if status == "active":
            conditions.append(user_sessions.c.is_active == 1)
            conditions.append(user_sessions.c.expires_at > now_iso)
        elif status == "expired":
            conditions.append(user_sessions.c.is_active == 1)
            conditions.append(user_sessions.c.expires_at <= now_iso)
        elif status == "logged_out":
            conditions.append(user_sessions.c.is_active == 0)
        if date:
            conditions.append(user_sessions.c.created_at.startswith(date))

        sort_column = _SESSION_SORT_FIELDS.get(sort, user_sessions.c.created_at)
        order = sort_column.asc() if direction.lower() == "asc" else sort_column.desc()

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(joined).where(*conditions)).scalar() or 0
            rows = conn.execute(
                select(user_sessions, users.c.username)
                .select_from(joined)
                .where(*conditions)
                .order_by(order, user_sessions.c.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()

        items = []
        for row in rows:
            session = _row_to_session(row)
            if not session.is_active:
                state = "logged_out"
            elif to_iso(session.expires_at) > now_iso:
                state = "active"
            else:
                state = "expired"
            items.append(
                {
                    "id": session.id,
                    "user_id": session.account_id,
                    "username": row.username,
                    "token_prefix": token_prefix(session.token),
                    "ip_address": session.ip_address,
                    "user_agent": session.user_agent,
                    "created_at": to_iso(session.created_at) if session.created_at else None,
                    "expires_at": to_iso(session.expires_at),
                    "status": state,
                }
            )
        return Page(items=items, page=page, per_page=limit, total_records=total)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.login_attempts or 0,
        locked_until=from_iso(row.locked_until),
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        account_id=row.user_id,
        token=row.session_token,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        is_active=bool(row.is_active),
    )
