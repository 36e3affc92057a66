"""
culturehub/config.py
-----------------------------------------------------------------------------
Runtime configuration for the Culture Hub server.

All settings come from environment variables (optionally loaded from a
``.env`` file by python-dotenv) and are frozen into a single ``Settings``
object when the application is created.  Tests build their own ``Settings``
pointing at temporary directories instead of patching module globals.

Environment variables
---------------------
ENVIRONMENT / NODE_ENV  – ``development`` (default) or ``production``.
PORT                    – Port used by ``python -m culturehub``.
LOG_LEVEL               – Level name for the ``culturehub`` logger.
JWT_SECRET              – HS256 signing key.  Mandatory in production.
COOKIE_SAMESITE         – ``lax`` | ``strict`` | ``none``.
UPLOADS_REQUIRE_AUTH    – ``true`` to serve /uploads only to signed-in users.
CORS_ORIGIN             – Comma-separated list of allowed origins.
BCRYPT_ROUNDS           – bcrypt cost factor.
RATE_LIMIT_*            – Window length and per-group request budgets.
ADMIN_USERNAME/PASSWORD – Seeded administrator (first boot only).
DATA_FILE, UPLOADS_DIR, LOG_DIR – Filesystem locations.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

_ROOT = Path(__file__).parent.parent

DEV_JWT_SECRET = "dev-secret-change-in-production"

_ALLOWED_SAMESITE = ("lax", "strict", "none")
_DEFAULT_DEV_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")


class ConfigError(ValueError):
    """Raised when the environment describes an unsafe or invalid setup."""


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """
    Immutable snapshot of every configurable value.

    Paths are absolute once constructed through ``from_env``; tests may pass
    any ``Path`` directly.
    """

    environment: str = "development"
    port: int = 5000
    log_level: str = "INFO"
    jwt_secret: str = DEV_JWT_SECRET
    cookie_samesite: str = "lax"
    uploads_require_auth: bool = False
    cors_origins: tuple[str, ...] = _DEFAULT_DEV_ORIGINS
    bcrypt_rounds: int = 10
    rate_limit_window_seconds: float = 900.0
    rate_limit_auth_max: int = 20
    rate_limit_mutation_max: int = 50
    rate_limit_document_max: int = 30
    admin_username: str = "admin"
    admin_password: str = "admin123"
    data_file: Path = field(default_factory=lambda: _ROOT / "data" / "db.json")
    uploads_dir: Path = field(default_factory=lambda: _ROOT / "uploads")
    log_dir: Path = field(default_factory=lambda: _ROOT / "logs")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies are forced in production and for SameSite=None."""
        return self.is_production or self.cookie_samesite == "none"

    def validate(self) -> "Settings":
        """
        Reject configurations that must never reach a running server.

        Returns
        -------
        Settings : ``self``, so the call can be chained.

        Raises
        ------
        ConfigError
            If the SameSite policy is unknown, or production runs with a
            missing/development JWT secret or without explicit admin
            credentials.
        """
        if self.cookie_samesite not in _ALLOWED_SAMESITE:
            raise ConfigError("COOKIE_SAMESITE must be one of: lax, strict, none")
        if not self.jwt_secret:
            raise ConfigError("JWT_SECRET environment variable is required in production")
        if self.is_production:
            if "dev-secret" in self.jwt_secret:
                raise ConfigError("Please set a strong JWT_SECRET in production")
            if not self.admin_username or not self.admin_password:
                raise ConfigError("ADMIN_USERNAME and ADMIN_PASSWORD are required in production")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Build and validate settings from the current process environment."""
        environment = (
            os.getenv("ENVIRONMENT") or os.getenv("NODE_ENV") or "development"
        ).strip().lower()
        production = environment == "production"

        jwt_secret = os.getenv("JWT_SECRET") or ("" if production else DEV_JWT_SECRET)

        raw_origins = os.getenv("CORS_ORIGIN")
        if raw_origins:
            origins = tuple(o.strip() for o in raw_origins.split(",") if o.strip())
        else:
            origins = () if production else _DEFAULT_DEV_ORIGINS

        # Production never falls back to the well-known default credentials.
        admin_username = os.getenv("ADMIN_USERNAME") or ("" if production else "admin")
        admin_password = os.getenv("ADMIN_PASSWORD") or ("" if production else "admin123")

        return cls(
            environment=environment,
            port=_env_int("PORT", 5000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            jwt_secret=jwt_secret,
            cookie_samesite=(os.getenv("COOKIE_SAMESITE") or "lax").strip().lower(),
            uploads_require_auth=os.getenv("UPLOADS_REQUIRE_AUTH", "").lower() == "true",
            cors_origins=origins,
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 10),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_MS", 900_000) / 1000.0,
            rate_limit_auth_max=_env_int("RATE_LIMIT_AUTH_MAX", 20),
            rate_limit_mutation_max=_env_int("RATE_LIMIT_MUTATION_MAX", 50),
            rate_limit_document_max=_env_int("RATE_LIMIT_DOCUMENT_MAX", 30),
            admin_username=admin_username,
            admin_password=admin_password,
            data_file=Path(os.getenv("DATA_FILE", str(_ROOT / "data" / "db.json"))).resolve(),
            uploads_dir=Path(os.getenv("UPLOADS_DIR", str(_ROOT / "uploads"))).resolve(),
            log_dir=Path(os.getenv("LOG_DIR", str(_ROOT / "logs"))).resolve(),
        ).validate()
