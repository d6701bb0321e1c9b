"""
api/main.py -- FastAPI application entry point for the Service Portal backend.

Exposes the auth core, account enable/disable, the log viewer, the questionnaire
builder and lead-form submissions over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie carrying the SessionContext

Lifespan builds the shared engine, the stores and the AuthService on startup
and disposes the engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.logs import router as logs_router
from api.routes.v1.questionnaires import router as questionnaires_router
from api.routes.v1.submissions import router as submissions_router
from auth.audit import AuditLogger, resolve_client_address
from auth.errors import InternalError
from auth.permissions import PermissionResolver, seed_default_grants
from auth.service import AuthPolicy, AuthService
from auth.store import AccountStore, SessionStore
from core.config import Settings, get_settings
from core.database import create_db_engine
from questionnaire.store import FixedItemError, QuestionnaireStore
from questionnaire.submission import SubmissionHandler

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("serviceportal.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_app_state(app: FastAPI, engine: Engine, settings: Optional[Settings] = None) -> None:
    """Build every store and service on one engine and attach them to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    object graph.
    """
    settings = settings or get_settings()
    accounts = AccountStore(engine)
    sessions = SessionStore(engine)
    audit = AuditLogger(engine)
    permissions = PermissionResolver(accounts)
    if not accounts.has_grants():
        written = seed_default_grants(accounts)
        logger.info("Seeded %d default permission grants", written)

    questionnaires = QuestionnaireStore(engine)

    app.state.engine = engine
    app.state.account_store = accounts
    app.state.session_store = sessions
    app.state.audit = audit
    app.state.auth_service = AuthService(
        accounts,
        sessions,
        permissions,
        audit,
        policy=AuthPolicy.from_settings(settings),
    )
    app.state.questionnaire_store = questionnaires
    app.state.submission_handler = SubmissionHandler(questionnaires)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: engine, stores, default grants. Shutdown: dispose the engine."""
    logger.info("Service Portal API starting up")
    engine = create_db_engine(_settings.database_url)
    init_app_state(app, engine, _settings)
    logger.info("Stores initialized (%s)", engine.url.render_as_string(hide_password=True))

    yield

    engine.dispose()
    logger.info("Service Portal API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Service Portal API",
    description="Staff authentication, audit log viewer, questionnaire builder and lead-form submissions.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps the stack built so far, so the LAST
# registration is the OUTERMOST layer. Registered innermost-first:
# Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="serviceportal_session",
    max_age=_settings.remember_ttl_seconds,
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    remote = request.client.host if request.client else None
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        resolve_client_address(request.headers, remote),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])
app.include_router(logs_router, prefix="/api/v1", tags=["Logs"])
app.include_router(questionnaires_router, prefix="/api/v1", tags=["Questionnaires"])
app.include_router(submissions_router, prefix="/api/v1", tags=["Submissions"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the flat ErrorResponse envelope so clients can branch
# on body["success"] and body["code"] without inspecting status codes.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(code=code, message=message, **extra).model_dump(exclude_none=True),
    )


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After set to the window of the exceeded limit.

    Plain def: SlowAPIMiddleware calls the registered handler directly, outside
    Starlette's await machinery.
    """
    try:
        retry_after = int(exc.limit.limit.get_expiry())
    except AttributeError:
        retry_after = 60
    response = _error(429, "rate_limited", "Zu viele Anfragen. Bitte versuchen Sie es später erneut.")
    response.headers["Retry-After"] = str(retry_after)
    return response


app.add_exception_handler(RateLimitExceeded, rate_limit_handler)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    return _error(422, "validation_error", "Ungültige Anfrage.", fields=[f for f in fields if f])


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Flatten HTTPException(detail={"code", "message", ...}) into the envelope."""
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        detail = dict(exc.detail)
        code = str(detail.pop("code", f"http_{exc.status_code}"))
        message = str(detail.pop("message", ""))
        response = _error(exc.status_code, code, message, **detail)
    else:
        response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if headers:
        response.headers.update(headers)
    return response


@app.exception_handler(FixedItemError)
async def fixed_item_handler(request: Request, exc: FixedItemError) -> JSONResponse:
    return _error(403, "fixed_item", "Feste Kontaktfelder können nicht geändert werden.")


@app.exception_handler(InternalError)
async def internal_error_handler(request: Request, exc: InternalError) -> JSONResponse:
    return _error(500, "internal_error", exc.message)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "Interner Serverfehler. Bitte versuchen Sie es später erneut.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "Interner Serverfehler. Bitte versuchen Sie es später erneut.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit: load balancers and monitoring must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a database probe."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
