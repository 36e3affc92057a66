"""Shared fixtures for the Culture Hub test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from culturehub.config import Settings
from culturehub.main import create_app
from culturehub.store import JsonStore

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-password"

# Smallest byte strings the upload filters will accept by name/MIME type.
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PDF_BYTES = b"%PDF-1.4\n%test\n"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Development settings isolated under ``tmp_path``, with fast bcrypt."""
    return Settings(
        environment="test",
        jwt_secret="test-jwt-secret",
        bcrypt_rounds=4,
        rate_limit_auth_max=1000,
        rate_limit_mutation_max=1000,
        rate_limit_document_max=1000,
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
        cors_origins=(),
        data_file=tmp_path / "data" / "db.json",
        uploads_dir=tmp_path / "uploads",
        log_dir=tmp_path / "logs",
    )


@pytest.fixture()
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture()
def store(app: FastAPI) -> JsonStore:
    return app.state.store


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    """Anonymous client; entering the context runs startup (admin seeding)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def csrf_headers(client: TestClient) -> dict[str, str]:
    """A valid CSRF header for ``client`` (the secret cookie is now set)."""
    token = client.get("/api/auth/csrf-token").json()["csrfToken"]
    return {"X-CSRF-Token": token}


@pytest.fixture()
def admin_client(client: TestClient, csrf_headers: dict[str, str]) -> TestClient:
    """``client`` signed in as the seeded admin, sending the CSRF header on every request."""
    response = client.post(
        "/api/auth/login",
        json={"username": ADMIN_USERNAME, "password": ADMIN_PASSWORD},
        headers=csrf_headers,
    )
    assert response.status_code == 200, response.text
    client.headers.update(csrf_headers)
    return client


@pytest.fixture()
def event_fields() -> dict[str, str]:
    return {
        "title": "Concert Night",
        "shortDescription": "A fun evening of music",
        "fullDescription": "20+ character description here",
        "date": "2025-12-01",
    }


@pytest.fixture()
def png_file() -> tuple[str, bytes, str]:
    return ("poster.png", PNG_BYTES, "image/png")


@pytest.fixture()
def pdf_file() -> tuple[str, bytes, str]:
    return ("charter.pdf", PDF_BYTES, "application/pdf")
