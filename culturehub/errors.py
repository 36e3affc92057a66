"""
culturehub/errors.py
-----------------------------------------------------------------------------
Error taxonomy and the exception handlers that render it.

Every error response has the same body shape:

    {"error": "<human readable message>", "details": ["...", ...]}

``details`` is present only for validation failures.  Status codes:

    400 validation / malformed input      401 unauthenticated
    403 forbidden or bad CSRF token       404 not found
    429 rate limited                      500 unhandled

Unhandled exceptions are logged with their traceback and reported as a
generic message in production, or with the exception text in development.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

CSRF_ERROR_CODE = "EBADCSRFTOKEN"


class ApiError(Exception):
    """
    An error that maps directly onto an HTTP response.

    Parameters
    ----------
    status_code : HTTP status to answer with.
    message     : Value of the ``error`` field.
    details     : Optional list of per-field messages.
    code        : Optional machine-readable code (e.g. ``EBADCSRFTOKEN``).
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        details: list[str] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details
        self.code = code

    def to_body(self) -> dict:
        body: dict = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        if self.code is not None:
            body["code"] = self.code
        return body


class ValidationFailed(ApiError):
    def __init__(self, details: list[str]) -> None:
        super().__init__(400, "Validation failed", details=details)


class NotFound(ApiError):
    def __init__(self, message: str = "Not found") -> None:
        super().__init__(404, message)


class CsrfError(ApiError):
    """Missing or mismatching CSRF token on a state-changing request."""

    def __init__(self) -> None:
        super().__init__(403, "Invalid CSRF token", code=CSRF_ERROR_CODE)


def public_message(exc: BaseException, *, production: bool) -> str:
    """The text shown to clients for an unexpected exception."""
    if production:
        return "Internal Server Error"
    return str(exc) or "Internal Server Error"


def register_error_handlers(app: FastAPI, *, production: bool) -> None:
    """Install the JSON error renderers on ``app``."""

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
        if isinstance(exc, CsrfError):
            logger.warning("Rejected %s %s: invalid CSRF token", request.method, request.url.path)
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404 and exc.detail == "Not Found":
            logger.warning("404 Not Found: %s %s", request.method, request.url.path)
            return JSONResponse(
                {"error": "Endpoint not found", "path": request.url.path}, status_code=404
            )
        return JSONResponse(
            {"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        ]
        return JSONResponse({"error": "Validation failed", "details": details}, status_code=400)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            {"error": public_message(exc, production=production)}, status_code=500
        )
