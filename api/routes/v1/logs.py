"""
api/routes/v1/logs.py -- Read-only activity and session log viewer.

Routes:
  GET  /api/v1/logs/activity                        -- paginated activity records
  GET  /api/v1/logs/sessions                        -- paginated session listing
  POST /api/v1/logs/sessions/{session_id}/terminate -- server-side revocation

All routes require the view_logs grant. Terminate additionally requires the
X-CSRF-Token header. Session tokens are only ever exposed as an 8-character
prefix.
"""

from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import ActivityPage, ActivityRow, MessageResponse, Pagination, SessionPage, SessionRow
from auth.dependencies import get_auth_service, get_client_info, require_permission
from auth.models import Account, ActivityRecord
from auth.store import Page

# Auth policy: every route requires view_logs (require_permission).
router = APIRouter()

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
_MAX_LIMIT = 200


def _pagination(page: Page) -> Pagination:
    return Pagination(
        current_page=page.page,
        per_page=page.per_page,
        total_records=page.total_records,
        total_pages=page.total_pages,
    )


def _decode_details(raw: Optional[str]):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _activity_row(record: ActivityRecord) -> ActivityRow:
    return ActivityRow(
        id=record.id,
        user_id=record.user_id,
        username=record.username,
        action=record.action,
        details=_decode_details(record.details),
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        success=record.success,
        timestamp=record.created_at,
    )


@router.get("/logs/activity", response_model=ActivityPage)
def activity_log(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    sort: str = Query(default="timestamp"),
    order: str = Query(default="desc"),
    search: Optional[str] = Query(default=None, max_length=255),
    user: Optional[int] = Query(default=None),
    action: Optional[str] = Query(default=None, max_length=100),
    date: Optional[str] = Query(default=None, pattern=_DATE_PATTERN),
    account: Account = Depends(require_permission("view_logs")),
) -> ActivityPage:
    """Sort: timestamp | user_id | action | ip_address. Unknown values fall back to timestamp desc."""
    limit = min(limit, _MAX_LIMIT)
    result = request.app.state.audit.query(
        page=page,
        limit=limit,
        sort=sort,
        direction=order,
        search=search or None,
        user_id=user,
        action=action or None,
        date=date,
    )
    return ActivityPage(data=[_activity_row(r) for r in result.items], pagination=_pagination(result))


@router.get("/logs/sessions", response_model=SessionPage)
def session_log(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    sort: str = Query(default="created_at"),
    order: str = Query(default="desc"),
    search: Optional[str] = Query(default=None, max_length=255),
    user: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None, pattern=r"^(active|expired|logged_out)$"),
    date: Optional[str] = Query(default=None, pattern=_DATE_PATTERN),
    account: Account = Depends(require_permission("view_logs")),
) -> SessionPage:
    """Sort: created_at | user_id | ip_address | expires_at | is_active."""
    limit = min(limit, _MAX_LIMIT)
    result = request.app.state.session_store.query(
        page=page,
        limit=limit,
        sort=sort,
        direction=order,
        search=search or None,
        user_id=user,
        status=status,
        date=date,
    )
    rows = [
        SessionRow(
            id=item["id"],
            user_id=item["user_id"],
            username=item["username"],
            session_token_prefix=item["token_prefix"],
            ip_address=item["ip_address"],
            user_agent=item["user_agent"],
            created_at=item["created_at"] or "",
            expires_at=item["expires_at"],
            status=item["status"],
        )
        for item in result.items
    ]
    return SessionPage(data=rows, pagination=_pagination(result))


@router.post(
    "/logs/sessions/{session_id}/terminate",
    response_model=MessageResponse,
)
def terminate_session(
    request: Request,
    session_id: int,
    account: Account = Depends(require_permission("view_logs", csrf=True)),
) -> MessageResponse:
    service = get_auth_service(request)
    if not service.revoke_session(session_id, account.id, get_client_info(request)):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Aktive Sitzung nicht gefunden."},
        )
    return MessageResponse(message="Sitzung beendet.")
