"""
culturehub/schema.py
-----------------------------------------------------------------------------
Pydantic v2 models for the Culture Hub API.

Design principles
-----------------
• Keep models thin – no business logic here.  Field rules for submitted
  forms live in ``culturehub.validation``; these models describe what the
  API *returns* (and the two small JSON request bodies).
• Python attributes are snake_case; the wire format is camelCase
  (``shortDescription``, ``fileUrl``, ``createdAt``) via an alias generator,
  and FastAPI serialises responses by alias.
• The same models are used by ``culturehub.client`` to parse responses, so
  server and client agree on one definition of every record.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


class Record(ApiModel):
    id: int = Field(..., description="Unique, strictly increasing per collection.")
    created_at: str | None = Field(default=None, description="ISO-8601 UTC creation time.")
    updated_at: str | None = Field(default=None, description="ISO-8601 UTC time of the last change.")


class Event(Record):
    """A news item or upcoming event shown on the public site."""

    title: str
    short_description: str
    full_description: str
    date: str = Field(..., description="Event date, YYYY-MM-DD.")
    image: str | None = Field(default=None, description="/uploads/events/... or null.")


class Document(Record):
    """A downloadable document (charter, order, report, ...)."""

    title: str
    description: str | None = None
    file_url: str = Field(..., description="/uploads/documents/...")
    category: str | None = None


class Reminder(Record):
    title: str
    description: str
    image_url: str | None = None
    date: str
    priority: Literal["high", "medium", "low"] = "medium"
    completed: Literal[0, 1] = 0


class WorkplanItem(Record):
    month: str
    year: int = Field(..., ge=2000, le=2100)
    description: str
    file_url: str | None = None


# -----------------------------------------------------------------------------
# Auth
# -----------------------------------------------------------------------------


class PublicUser(ApiModel):
    """User fields that may leave the server.  The password hash never does."""

    id: int
    username: str
    role: Literal["admin", "user"] | None = None


class LoginRequest(ApiModel):
    username: str = ""
    password: str = ""


class RegisterRequest(ApiModel):
    username: str = ""
    password: str = ""


class AuthResponse(ApiModel):
    user: PublicUser


class RegisterResponse(ApiModel):
    message: str
    user: PublicUser


class VerifyResponse(ApiModel):
    valid: bool
    user: PublicUser | None = None


class CsrfTokenResponse(ApiModel):
    csrf_token: str


# -----------------------------------------------------------------------------
# Misc
# -----------------------------------------------------------------------------


class SuccessResponse(ApiModel):
    success: bool = True


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int


class EventPage(ApiModel):
    data: list[Event]
    pagination: Pagination


class HealthResponse(ApiModel):
    status: str
    timestamp: str
    database: Literal["connected", "error"]
    uptime: float = Field(..., description="Seconds since the application started.")
    environment: str


class ErrorResponse(ApiModel):
    error: str
    details: list[str] | None = None
