"""
auth/audit.py -- Append-only activity log and client-address resolution.

AuditLogger.record() is a side effect of other operations (login, logout,
session creation, revocation). It must never break the operation that called
it: every database error is diverted to the "serviceportal.audit" logger and
swallowed. The table (and the accounts table the viewer joins) is created
lazily on first use, so the logger works even against a database provisioned
before the activity log existed. Timestamps come from the injected clock.

resolve_client_address() is the single place that decides which network
address an event is attributed to. It trusts proxy headers in a fixed
priority order and validates the result before using it.

Layer rule: no imports from api/ or questionnaire/.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ActivityRecord, ClientInfo
from auth.store import Page, users
from core.database import to_iso, utcnow

logger = logging.getLogger("serviceportal.audit")

# Separate metadata: this table is never part of the eager create_all().
_audit_metadata = MetaData()

activity_log = Table(
    "user_activity_log",
    _audit_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Weak reference to users.id: no FK, history must not block account deletion.
    Column("user_id", Integer),
    Column("action", String(100), nullable=False),
    Column("details", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("success", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_ACTIVITY_SORT_FIELDS = {
    "timestamp": activity_log.c.created_at,
    "user_id": activity_log.c.user_id,
    "action": activity_log.c.action,
    "ip_address": activity_log.c.ip_address,
}

# ---------------------------------------------------------------------------
# Client address resolution
# ---------------------------------------------------------------------------

# Checked in this order; the first present header wins.
CLIENT_IP_HEADERS: tuple[str, ...] = (
    "cf-connecting-ip",  # edge proxy (Cloudflare)
    "client-ip",
    "x-forwarded-for",
    "x-forwarded",
    "x-cluster-client-ip",
    "forwarded-for",
    "forwarded",
)


def _normalize_ip(candidate: str) -> Optional[str]:
    ip = candidate.strip()
    if ip == "::1":
        ip = "127.0.0.1"
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return None
    return ip


def resolve_client_address(headers: Mapping[str, str], remote_addr: Optional[str]) -> str:
    """Return the caller's address.

    For each header in CLIENT_IP_HEADERS (then the raw connection address)
    take the first comma-separated entry, map ::1 to 127.0.0.1 and accept it
    only if it parses as an IP address. If nothing validates, fall back to
    the raw connection address, or "unknown" when there is none.
    """
    lowered = {str(k).lower(): v for k, v in headers.items()}
    candidates = [lowered.get(name) for name in CLIENT_IP_HEADERS]
    candidates.append(remote_addr)
    for value in candidates:
        if not value:
            continue
        ip = _normalize_ip(value.split(",")[0])
        if ip is not None:
            return ip
    return remote_addr or "unknown"


# ---------------------------------------------------------------------------
# Audit logger
# ---------------------------------------------------------------------------


class AuditLogger:
    """Append-only writer and read-only query interface for user_activity_log."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock
        self._table_ready = False

    def _ensure_table(self) -> None:
        if not self._table_ready:
            # query() joins accounts for the username; both must exist.
            users.create(self.engine, checkfirst=True)
            activity_log.create(self.engine, checkfirst=True)
            self._table_ready = True

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        details: Optional[dict[str, Any]] = None,
        client: Optional[ClientInfo] = None,
        success: bool = True,
    ) -> None:
        """Append one activity record. Never raises on database failure."""
        client = client or ClientInfo()
        payload = json.dumps(details, default=str) if details is not None else None
        try:
            self._ensure_table()
            with self.engine.connect() as conn:
                conn.execute(
                    activity_log.insert().values(
                        user_id=actor_id,
                        action=action,
                        details=payload,
                        ip_address=client.address,
                        user_agent=client.user_agent,
                        success=1 if success else 0,
                        created_at=to_iso(self._clock()),
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            self._table_ready = False
            logger.warning("Activity logging failed (action=%s user_id=%s): %s", action, actor_id, exc)

    def query(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        sort: str = "timestamp",
        direction: str = "desc",
        search: Optional[str] = None,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        date: Optional[str] = None,
    ) -> Page:
        """Paginated, filtered listing for the log viewer.

        search matches action, details and the joined username. date is
        YYYY-MM-DD (UTC). Unknown sort fields fall back to timestamp.
        Database errors propagate: unlike record(), this is a primary operation.
        """
        self._ensure_table()
        joined = activity_log.outerjoin(users, activity_log.c.user_id == users.c.id)

        conditions = []
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    activity_log.c.action.like(pattern),
                    activity_log.c.details.like(pattern),
                    users.c.username.like(pattern),
                )
            )
        if user_id is not None:
            conditions.append(activity_log.c.user_id == user_id)
        if action:
            conditions.append(activity_log.c.action == action)
        if date:
            conditions.append(activity_log.c.created_at.startswith(date))

        sort_column = _ACTIVITY_SORT_FIELDS.get(sort, activity_log.c.created_at)
        order = sort_column.asc() if direction.lower() == "asc" else sort_column.desc()

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(joined).where(*conditions)).scalar() or 0
            rows = conn.execute(
                select(activity_log, users.c.username)
                .select_from(joined)
                .where(*conditions)
                .order_by(order, activity_log.c.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return Page(items=[_row_to_record(r) for r in rows], page=page, per_page=limit, total_records=total)


def _row_to_record(row) -> ActivityRecord:
    return ActivityRecord(
        id=row.id,
        user_id=row.user_id,
        username=row.username,
        action=row.action,
        details=row.details,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        created_at=row.created_at,
    )
