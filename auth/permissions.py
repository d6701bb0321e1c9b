"""
auth/permissions.py -- Role -> permission-key resolution.

The grant table (user_permissions) is static reference data. DEFAULT_GRANTS
seeds it on first start and via `python main.py seed-permissions`.
"""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InternalError
from auth.store import AccountStore

DEFAULT_GRANTS: dict[str, dict[str, bool]] = {
    "admin": {
        "view_logs": True,
        "manage_questionnaires": True,
        "view_submissions": True,
        "manage_users": True,
    },
    "editor": {
        "view_logs": False,
        "manage_questionnaires": True,
        "view_submissions": True,
        "manage_users": False,
    },
    "viewer": {
        "view_logs": False,
        "manage_questionnaires": False,
        "view_submissions": True,
        "manage_users": False,
    },
}


class PermissionResolver:
    """Pure lookup against the grant table. Deterministic, no side effects."""

    def __init__(self, store: AccountStore) -> None:
        self._store = store

    def permissions_for(self, role: str | None) -> frozenset[str]:
        if not role:
            return frozenset()
        try:
            return frozenset(self._store.granted_permissions(role))
        except SQLAlchemyError as exc:
            raise InternalError("Berechtigungen konnten nicht geladen werden.") from exc

    def is_granted(self, role: str | None, permission_key: str) -> bool:
        return permission_key in self.permissions_for(role)


def seed_default_grants(store: AccountStore, grants: dict[str, dict[str, bool]] | None = None) -> int:
    """Write grants (DEFAULT_GRANTS by default) into the table. Returns the number of rows written."""
    written = 0
    for role, table in (grants or DEFAULT_GRANTS).items():
        for key, granted in table.items():
            store.set_grant(role, key, granted)
            written += 1
    return written
