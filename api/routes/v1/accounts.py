"""
api/routes/v1/accounts.py -- Enable and disable staff accounts.

Routes:
  POST /api/v1/accounts/{account_id}/enable
  POST /api/v1/accounts/{account_id}/disable

Both require the manage_users grant and the X-CSRF-Token header. Accounts
are created with the operator CLI (main.py); there is no HTTP endpoint for it.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import MessageResponse
from auth.dependencies import get_auth_service, get_client_info, require_permission
from auth.models import Account

# Auth policy: every route requires manage_users plus the anti-forgery header.
router = APIRouter()


def _set_active(request: Request, account_id: int, active: bool, actor: Account) -> None:
    service = get_auth_service(request)
    if not service.set_account_active(account_id, active, actor.id, get_client_info(request)):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Benutzerkonto nicht gefunden."},
        )


@router.post("/accounts/{account_id}/enable", response_model=MessageResponse)
def enable_account(
    request: Request,
    account_id: int,
    account: Account = Depends(require_permission("manage_users", csrf=True)),
) -> MessageResponse:
    _set_active(request, account_id, True, account)
    return MessageResponse(message="Benutzerkonto aktiviert.")


@router.post("/accounts/{account_id}/disable", response_model=MessageResponse)
def disable_account(
    request: Request,
    account_id: int,
    account: Account = Depends(require_permission("manage_users", csrf=True)),
) -> MessageResponse:
    if account_id == account.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation", "message": "Das eigene Konto kann nicht deaktiviert werden."},
        )
    _set_active(request, account_id, False, account)
    return MessageResponse(message="Benutzerkonto deaktiviert.")
