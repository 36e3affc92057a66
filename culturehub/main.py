"""
culturehub/main.py
-----------------------------------------------------------------------------
FastAPI application entrypoint for the Culture Hub site backend.

This module is a **thin routing layer**: it wires configuration, logging,
middleware and routers together.  All behaviour lives in dedicated modules:

Domain modules
~~~~~~~~~~~~~~
- ``culturehub.config``        – Settings from the environment, validated.
- ``culturehub.logging_setup`` – error.log / combined.log / console handlers.
- ``culturehub.store``         – JSON document store with serialised writes.
- ``culturehub.validation``    – Field rules, sanitisation, entity schemas.
- ``culturehub.uploads``       – File staging, path resolution, cleanup queue.
- ``culturehub.pipeline``      – Generic CRUD pipeline and entity routers.
- ``culturehub.auth``          – Passwords, JWT sessions, CSRF, admin gate.
- ``culturehub.ratelimit``     – Sliding-window limiters.
- ``culturehub.errors``        – ApiError and the exception handlers.
- ``culturehub.schema``        – Pydantic v2 response / request models.

Run with:
    uvicorn culturehub.main:app --reload --host 127.0.0.1 --port 5000
or:
    python -m culturehub

Endpoints
---------
GET    /api/events[?page=&limit=]   → all events (or one page of them)
GET    /api/events/{id}             → one event
POST   /api/events                  → create (admin, multipart, image)
PUT    /api/events/{id}             → replace (admin, multipart, image)
DELETE /api/events/{id}             → delete (admin)
...    /api/documents, /api/reminders, /api/workplan (same shape)
POST   /api/auth/login              → set session cookie, return user
POST   /api/auth/register           → create another admin (admin)
GET    /api/auth/verify             → {valid, user?}
GET    /api/auth/csrf-token         → {csrfToken}
POST   /api/auth/logout             → clear session cookie
GET    /api/health                  → liveness and store status
GET    /uploads/{folder}/{name}     → uploaded file

Architecture notes
------------------
- ``create_app`` builds a fully independent application from a
  ``Settings`` object; tests create one per test against ``tmp_path``.
  The module-level ``app`` is built from the environment for uvicorn.
- Every non-GET request passes the app-wide CSRF dependency before any
  route-level dependency runs.
- Blocking I/O lives in regular ``def`` handlers, which FastAPI runs in a
  threadpool so the event loop is never blocked by disk writes.
"""

from __future__ import annotations

import logging
import time
import tomllib
from contextlib import asynccontextmanager
from importlib import metadata
from pathlib import Path
from typing import AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import FileResponse
from jose.exceptions import JWTError

from culturehub.auth import (
    CSRF_HEADER,
    clear_auth_cookie,
    create_access_token,
    csrf_protect,
    decode_access_token,
    hash_password,
    issue_csrf_token,
    public_user,
    read_token,
    require_admin,
    set_auth_cookie,
    uploads_gate,
    verify_password,
)
from culturehub.config import Settings
from culturehub.errors import ApiError, NotFound, register_error_handlers
from culturehub.logging_setup import configure_logging
from culturehub.pipeline import RESOURCES, PipelineContext, build_router
from culturehub.ratelimit import SlidingWindowLimiter, limit
from culturehub.schema import (
    AuthResponse,
    CsrfTokenResponse,
    HealthResponse,
    LoginRequest,
    PublicUser,
    RegisterRequest,
    RegisterResponse,
    SuccessResponse,
    VerifyResponse,
)
from culturehub.store import JsonStore, init_database, utc_now_iso
from culturehub.uploads import FileCleaner, resolve_upload_path

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------

_HERE = Path(__file__).parent
_PYPROJECT = _HERE.parent / "pyproject.toml"


def _read_version() -> str:
    """Version from pyproject.toml in a checkout, else from the installed dist."""
    if _PYPROJECT.is_file():
        with open(_PYPROJECT, "rb") as f:
            return tomllib.load(f)["project"]["version"]
    return metadata.version("culturehub")


APP_VERSION: str = _read_version()

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 6

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; img-src 'self' data: https:; script-src 'self'; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        "font-src 'self' https://fonts.gstatic.com"
    ),
}


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _store(request: Request) -> JsonStore:
    return request.app.state.store


# -----------------------------------------------------------------------------
# Auth routes
# -----------------------------------------------------------------------------

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post(
    "/login",
    response_model=AuthResponse,
    dependencies=[Depends(limit("auth"))],
    summary="Sign in and receive the session cookie",
)
def login(body: LoginRequest, request: Request, response: Response) -> AuthResponse:
    """
    Check the credentials and set the ``authToken`` cookie.

    Raises
    ------
    ApiError(400) if either field is empty.
    ApiError(401) for an unknown user or a wrong password; both cases
    answer identically.
    """
    if not body.username or not body.password:
        raise ApiError(400, "Username and password are required")

    settings = _settings(request)
    user = _store(request).collection("users").find(username=body.username)
    if user is None or not verify_password(body.password, user["password"]):
        logger.warning("Failed login for %r from %s", body.username, request.client.host if request.client else "-")
        raise ApiError(401, "Invalid username or password")

    set_auth_cookie(response, create_access_token(user, settings.jwt_secret), settings)
    logger.info("User %r signed in", user["username"])
    return AuthResponse(user=PublicUser(**public_user(user)))


@auth_router.post(
    "/register",
    status_code=201,
    response_model=RegisterResponse,
    dependencies=[Depends(limit("auth")), Depends(require_admin)],
    summary="Create another administrator",
)
def register(body: RegisterRequest, request: Request) -> RegisterResponse:
    if not body.username or not body.password:
        raise ApiError(400, "Username and password are required")
    if len(body.username) < MIN_USERNAME_LENGTH:
        raise ApiError(400, f"Username must be at least {MIN_USERNAME_LENGTH} characters")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise ApiError(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    settings = _settings(request)
    user = _store(request).collection("users").create_unique(
        {
            "username": body.username,
            "password": hash_password(body.password, rounds=settings.bcrypt_rounds),
            "role": "admin",
        }
    )
    if user is None:
        raise ApiError(400, "A user with that name already exists")
    logger.info("Registered administrator %r", user["username"])
    return RegisterResponse(message="User created", user=PublicUser(**public_user(user)))


@auth_router.get("/verify", response_model=VerifyResponse, summary="Check the current session")
def verify(request: Request) -> VerifyResponse:
    """
    Never fails: a missing, invalid or orphaned token yields ``valid: false``.

    The returned user is the snapshot embedded in the token, after checking
    that the account still exists.
    """
    token = read_token(request)
    if not token:
        return VerifyResponse(valid=False)
    try:
        claims = decode_access_token(token, _settings(request).jwt_secret)
    except JWTError as exc:
        logger.debug("Token did not verify: %s", exc)
        return VerifyResponse(valid=False)
    if _store(request).collection("users").get(claims.get("id")) is None:
        return VerifyResponse(valid=False)
    return VerifyResponse(valid=True, user=PublicUser(**public_user(claims)))


@auth_router.get("/csrf-token", response_model=CsrfTokenResponse, summary="Issue a CSRF token")
def csrf_token(request: Request, response: Response) -> CsrfTokenResponse:
    return CsrfTokenResponse(csrf_token=issue_csrf_token(request, response))


@auth_router.post("/logout", response_model=SuccessResponse, summary="Clear the session cookie")
def logout(request: Request, response: Response) -> SuccessResponse:
    clear_auth_cookie(response, _settings(request))
    return SuccessResponse()


# -----------------------------------------------------------------------------
# System routes
# -----------------------------------------------------------------------------

system_router = APIRouter()


@system_router.get("/api/health", response_model=HealthResponse, tags=["system"])
def health(request: Request) -> HealthResponse:
    settings = _settings(request)
    return HealthResponse(
        status="ok",
        timestamp=utc_now_iso(),
        database="connected" if _store(request).ping() else "error",
        uptime=round(time.monotonic() - request.app.state.started_at, 3),
        environment=settings.environment,
    )


@system_router.get(
    "/uploads/{folder}/{name}",
    dependencies=[Depends(uploads_gate)],
    include_in_schema=False,
)
def serve_upload(folder: str, name: str, request: Request) -> FileResponse:
    path = resolve_upload_path(f"/uploads/{folder}/{name}", _settings(request).uploads_dir)
    if path is None or not path.is_file():
        raise NotFound("File not found")
    return FileResponse(path, headers={"Cache-Control": "public, max-age=86400"})


# -----------------------------------------------------------------------------
# Application factory
# -----------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    settings.uploads_dir.mkdir(parents=True, exist_ok=True)
    init_database(
        app.state.store,
        username=settings.admin_username,
        password=settings.admin_password,
        rounds=settings.bcrypt_rounds,
    )
    logger.info(
        "Culture Hub %s started (%s), data file %s",
        APP_VERSION,
        settings.environment,
        settings.data_file,
    )
    yield
    # Last chance for deletions that are still queued.
    app.state.cleaner.drain()


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build an application instance.

    Parameters
    ----------
    settings : Configuration to run with; read from the environment (and
               validated) when omitted.

    Returns
    -------
    FastAPI : The app, with its store, cleaner and limiters on ``app.state``.
    """
    settings = (settings or Settings.from_env()).validate()
    configure_logging(settings)

    app = FastAPI(
        title="Culture Hub",
        description=(
            "Backend for a cultural center website: events, documents, "
            "reminders and the yearly work plan, edited by administrators."
        ),
        version=APP_VERSION,
        lifespan=lifespan,
        dependencies=[Depends(csrf_protect)],
        docs_url=None if settings.is_production else "/api/docs",
        redoc_url=None,
    )

    store = JsonStore(settings.data_file)
    cleaner = FileCleaner()
    window = settings.rate_limit_window_seconds
    app.state.settings = settings
    app.state.store = store
    app.state.cleaner = cleaner
    app.state.started_at = time.monotonic()
    app.state.limiters = {
        "auth": SlidingWindowLimiter(settings.rate_limit_auth_max, window),
        "mutation": SlidingWindowLimiter(settings.rate_limit_mutation_max, window),
        "document": SlidingWindowLimiter(settings.rate_limit_document_max, window),
    }
    app.state.pipeline = PipelineContext(
        store=store,
        cleaner=cleaner,
        uploads_root=settings.uploads_dir,
        production=settings.is_production,
    )

    # -- Middleware (last added runs first) --------------------------------

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", CSRF_HEADER],
        )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for key, value in SECURITY_HEADERS.items():
            response.headers.setdefault(key, value)
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(
            "%s %s from %s (%s)",
            request.method,
            request.url.path,
            request.client.host if request.client else "-",
            request.headers.get("user-agent", "-"),
        )
        return await call_next(request)

    # -- Routes --------------------------------------------------------------

    for resource in RESOURCES:
        app.include_router(build_router(resource))
    app.include_router(auth_router)
    app.include_router(system_router)

    register_error_handlers(app, production=settings.is_production)
    return app


app = create_app()
