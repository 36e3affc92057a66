"""
culturehub/auth.py
-----------------------------------------------------------------------------
Authentication, authorisation and CSRF protection.

Sessions
--------
A successful login issues an HS256 JWT (24 h) carrying ``id``, ``username``
and ``role``.  The token travels in the httpOnly ``authToken`` cookie; an
``Authorization: Bearer`` header is accepted as a fallback for non-browser
clients.  Verification returns the claims embedded in the token, so a role
change only takes effect at the next login.

CSRF
----
Double-submit with a cookie-bound secret: ``GET /api/auth/csrf-token``
stores a random secret in the httpOnly ``_csrf`` cookie and returns a salted
HMAC of it.  Every state-changing request must echo such a token in the
``X-CSRF-Token`` header; the server recomputes the HMAC from the cookie.
A cross-site page can make the browser send the cookie but cannot read a
token, so it cannot forge the header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Any

import bcrypt
from fastapi import Depends, Request, Response
from jose import jwt
from jose.exceptions import JWTError

from culturehub.config import Settings
from culturehub.errors import ApiError, CsrfError

logger = logging.getLogger(__name__)

AUTH_COOKIE = "authToken"
CSRF_COOKIE = "_csrf"
CSRF_HEADER = "X-CSRF-Token"

JWT_ALGORITHM = "HS256"
TOKEN_TTL_SECONDS = 24 * 60 * 60

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# bcrypt only looks at the first 72 bytes; newer releases raise instead of
# truncating, so truncate explicitly and keep hashes compatible.
_BCRYPT_MAX_BYTES = 72


# -----------------------------------------------------------------------------
# Passwords
# -----------------------------------------------------------------------------


def hash_password(password: str, *, rounds: int = 10) -> str:
    """Return a bcrypt hash (``$2b$...``) for ``password``."""
    secret = password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(secret, bcrypt.gensalt(rounds)).decode("ascii")


def verify_password(password: str, hashed: str) -> bool:
    """Constant-time comparison of ``password`` against a stored hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:_BCRYPT_MAX_BYTES], hashed.encode("ascii"))
    except ValueError:
        # Malformed hash in the store.
        logger.warning("Stored password hash could not be parsed")
        return False


# -----------------------------------------------------------------------------
# JWT
# -----------------------------------------------------------------------------


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    """The user fields that may leave the server (never the hash)."""
    return {"id": user["id"], "username": user["username"], "role": user.get("role")}


def create_access_token(user: dict[str, Any], secret: str, *, now: float | None = None) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {
        **public_user(user),
        "iat": issued_at,
        "exp": issued_at + TOKEN_TTL_SECONDS,
    }
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, secret: str) -> dict[str, Any]:
    """
    Verify signature and expiry.

    Raises
    ------
    jose.exceptions.JWTError
        For any invalid, tampered or expired token.
    """
    return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])


def read_token(request: Request) -> str | None:
    """Token from the auth cookie, else from a bearer header."""
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def authenticate_token(request: Request) -> dict[str, Any]:
    """
    Dependency: require a valid session.

    Returns
    -------
    dict : The JWT claims (``id``, ``username``, ``role``, ``iat``, ``exp``).

    Raises
    ------
    ApiError(401) when no token is presented.
    ApiError(403) when the token is invalid or expired.
    """
    token = read_token(request)
    if not token:
        raise ApiError(401, "Authentication required")
    try:
        claims = decode_access_token(token, _settings(request).jwt_secret)
    except JWTError as exc:
        logger.info("Rejected token on %s: %s", request.url.path, exc)
        raise ApiError(403, "Invalid token") from exc
    request.state.user = claims
    return claims


def require_admin(user: dict[str, Any] = Depends(authenticate_token)) -> dict[str, Any]:
    """Dependency: authenticated principal with the ``admin`` role."""
    if user.get("role") != "admin":
        raise ApiError(403, "Insufficient permissions")
    return user


def uploads_gate(request: Request) -> None:
    """Dependency for /uploads: enforce a session only when configured to."""
    if _settings(request).uploads_require_auth:
        authenticate_token(request)


# -----------------------------------------------------------------------------
# Cookies
# -----------------------------------------------------------------------------


def _cookie_options(settings: Settings) -> dict[str, Any]:
    return {
        "httponly": True,
        "samesite": settings.cookie_samesite,
        "secure": settings.cookie_secure,
        "path": "/",
    }


def set_auth_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(AUTH_COOKIE, token, max_age=TOKEN_TTL_SECONDS, **_cookie_options(settings))


def clear_auth_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(AUTH_COOKIE, **_cookie_options(settings))


# -----------------------------------------------------------------------------
# CSRF
# -----------------------------------------------------------------------------


def _csrf_digest(secret: str, salt: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), salt.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(mac).rstrip(b"=").decode("ascii")


def make_csrf_token(secret: str) -> str:
    """A fresh salted token for ``secret``; many tokens can share one secret."""
    salt = secrets.token_hex(8)
    return f"{salt}-{_csrf_digest(secret, salt)}"


def verify_csrf_token(secret: str | None, token: str | None) -> bool:
    if not secret or not token or "-" not in token:
        return False
    salt, digest = token.split("-", 1)
    return hmac.compare_digest(digest, _csrf_digest(secret, salt))


def issue_csrf_token(request: Request, response: Response) -> str:
    """
    Return a token bound to the caller's ``_csrf`` secret cookie.

    The secret is created (and the cookie set on ``response``) on the first
    call only; later calls reuse it so earlier tokens stay valid.
    """
    settings = _settings(request)
    secret = request.cookies.get(CSRF_COOKIE)
    if not secret:
        secret = secrets.token_urlsafe(24)
        options = _cookie_options(settings)
        if settings.is_production:
            # Cross-site SPA deployments need the secret on credentialed requests.
            options.update(samesite="none", secure=True)
        response.set_cookie(CSRF_COOKIE, secret, **options)
    return make_csrf_token(secret)


def csrf_protect(request: Request) -> None:
    """
    App-wide dependency: reject state-changing requests without a valid token.

    Raises
    ------
    CsrfError
        Rendered as 403 ``{"error": "Invalid CSRF token", "code": "EBADCSRFTOKEN"}``.
    """
    if request.method in _SAFE_METHODS:
        return
    secret = request.cookies.get(CSRF_COOKIE)
    token = request.headers.get(CSRF_HEADER)
    if not verify_csrf_token(secret, token):
        raise CsrfError()
