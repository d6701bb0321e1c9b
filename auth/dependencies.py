"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The interactive context (SessionContext) lives in Starlette's signed session
cookie under the "ctx" key. Helpers here load it, hand it to the AuthService,
and write back whatever context the service returns. That write-back is the
only place the request layer touches context state.

get_current_account() raises HTTP 401 if unauthenticated.
require_permission(key) wraps it and raises HTTP 403 without the grant.
require_csrf() checks the X-CSRF-Token header against the context's
anti-forgery token (constant-time) and raises HTTP 403 on mismatch.

Layer rule: no imports from api/ or questionnaire/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.audit import resolve_client_address
from auth.models import Account, ClientInfo, SessionContext
from auth.service import AuthService

CONTEXT_KEY = "ctx"
CSRF_HEADER = "X-CSRF-Token"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def load_context(request: Request) -> SessionContext:
    return SessionContext.from_dict(request.session.get(CONTEXT_KEY))


def store_context(request: Request, context: SessionContext) -> None:
    """Persist context for the next request. A replaced context_id means the old cookie content is dropped."""
    request.session.clear()
    request.session[CONTEXT_KEY] = context.to_dict()


def get_client_info(request: Request) -> ClientInfo:
    remote = request.client.host if request.client else None
    return ClientInfo(
        address=resolve_client_address(request.headers, remote),
        user_agent=request.headers.get("user-agent"),
    )


def get_current_account(request: Request) -> Account:
    """Require a valid session. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    service = get_auth_service(request)
    account, context = service.current_account(load_context(request))
    store_context(request, context)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Nicht authentifiziert."},
        )
    return account


def require_permission(permission_key: str, csrf: bool = False) -> Callable[[Request], Account]:
    """Dependency factory: authenticated AND granted permission_key.

        @router.get("/logs/activity")
        def route(account: Account = Depends(require_permission("view_logs"))): ...

    csrf=True also enforces the anti-forgery header, checked after the
    grant so an anonymous caller still gets 401 rather than 403.
    """

    def dependency(request: Request, account: Account = Depends(get_current_account)) -> Account:
        service = get_auth_service(request)
        if not service.has_permission(load_context(request), permission_key):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Zugriff verweigert. Fehlende Berechtigung."},
            )
        if csrf:
            require_csrf(request)
        return account

    return dependency


def require_csrf(request: Request) -> None:
    """Reject state-changing requests without the context's anti-forgery token."""
    expected = load_context(request).csrf_token
    supplied = request.headers.get(CSRF_HEADER, "")
    if not expected or not supplied or not hmac.compare_digest(expected.encode(), supplied.encode()):
        raise HTTPException(
            status_code=403,
            detail={"code": "csrf_failed", "message": "Ungültiges oder fehlendes CSRF-Token."},
        )
