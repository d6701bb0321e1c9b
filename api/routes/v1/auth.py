"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login              -- credential login; rotates the context cookie
  POST /api/v1/auth/logout             -- ends the session; always 200
  GET  /api/v1/auth/session            -- current session status (public)
  POST /api/v1/auth/refresh            -- extend the session by one hour (requires auth)
  GET  /api/v1/auth/me                 -- full profile incl. last login (requires auth)
  GET  /api/v1/auth/permissions/{key}  -- does the caller hold this grant?

Security:
  POST /login is rate-limited per connection address (settings.login_rate_limit).
  AuthService.authenticate() provides timing equalization for unknown handles.
  Cache-Control: no-store on login responses.
  A successful login replaces the whole cookie content (new context id,
  new anti-forgery token) so a planted pre-login cookie is worthless.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PermissionCheckResponse,
    ProfileModel,
    SessionResponse,
)
from auth.dependencies import (
    get_auth_service,
    get_client_info,
    get_current_account,
    load_context,
    store_context,
)
from auth.models import Account, ErrorKind, Profile
from core.config import get_settings
from core.database import to_iso

_settings = get_settings()

_STATUS_BY_KIND = {
    ErrorKind.validation: 400,
    ErrorKind.invalid_credentials: 401,
    ErrorKind.account_locked: 423,
    ErrorKind.internal: 500,
}

# Auth policy:
# - POST /api/v1/auth/login:             public
# - POST /api/v1/auth/logout:            public -- ending a dead session is harmless
# - GET  /api/v1/auth/session:           public -- reports authenticated: false
# - POST /api/v1/auth/refresh:           requires auth (401 otherwise)
# - GET  /api/v1/auth/me:                requires auth (get_current_account)
# - GET  /api/v1/auth/permissions/{key}: public -- unauthenticated callers hold nothing
router = APIRouter()


def _profile_model(profile: Profile) -> ProfileModel:
    return ProfileModel(
        id=profile.id,
        username=profile.username,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        role=profile.role,
    )


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate by username or e-mail and open a session.

    Unknown handle and wrong password share one message so the response does
    not reveal which accounts exist.
    """
    service = get_auth_service(request)
    result, context = service.authenticate(
        body.username,
        body.password,
        body.remember,
        load_context(request),
        get_client_info(request),
    )

    if not result.ok:
        content = {"success": False, "code": result.kind.value, "message": result.message}
        if result.locked_until is not None:
            content["locked_until"] = to_iso(result.locked_until)
        resp = JSONResponse(status_code=_STATUS_BY_KIND.get(result.kind, 400), content=content)
        resp.headers["Cache-Control"] = "no-store"
        return resp

    store_context(request, context)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user=_profile_model(result.profile),
            permissions=result.permissions,
            csrf_token=result.csrf_token,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> MessageResponse:
    """Deactivate the session and replace the context with an empty one."""
    service = get_auth_service(request)
    context = service.end_session(load_context(request), get_client_info(request))
    store_context(request, context)
    return MessageResponse(message="Erfolgreich abgemeldet.")


@router.get("/auth/session", response_model=SessionResponse)
def session_status(request: Request) -> SessionResponse:
    service = get_auth_service(request)
    status, context = service.session_status(load_context(request))
    store_context(request, context)
    return SessionResponse(
        authenticated=status.authenticated,
        user=_profile_model(status.profile) if status.profile else None,
        permissions=status.permissions,
        csrf_token=status.csrf_token,
    )


@router.post("/auth/refresh", response_model=MessageResponse)
def refresh(request: Request) -> MessageResponse:
    """Extend the current session to now + 1 hour (never shortens a longer expiry)."""
    service = get_auth_service(request)
    refreshed, context = service.refresh(load_context(request))
    store_context(request, context)
    if not refreshed:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Nicht authentifiziert."},
        )
    return MessageResponse(message="Sitzung verlängert.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, account: Account = Depends(get_current_account)) -> MeResponse:
    service = get_auth_service(request)
    return MeResponse(
        user=_profile_model(account.profile()),
        last_login=account.last_login,
        created_at=account.created_at,
        permissions=service.permissions_for(account.role),
    )


@router.get("/auth/permissions/{permission_key}", response_model=PermissionCheckResponse)
def check_permission(request: Request, permission_key: str) -> PermissionCheckResponse:
    service = get_auth_service(request)
    account, context = service.current_account(load_context(request))
    store_context(request, context)
    granted = account is not None and service.has_permission(context, permission_key)
    return PermissionCheckResponse(permission=permission_key, granted=granted)
