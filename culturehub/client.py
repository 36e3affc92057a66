"""
culturehub/client.py
-----------------------------------------------------------------------------
Synchronous HTTP client for the Culture Hub API, used by the admin tooling
and by scripts that publish content.

Why synchronous?
----------------
Callers are scripts and a single admin session; a plain ``httpx.Client``
keeps cookies between calls (the ``authToken`` session cookie and the
``_csrf`` secret) exactly like a browser with ``credentials: include``, and
any ``httpx.Client`` subclass can be injected, including Starlette's
``TestClient``.

Resilience
----------
``api_fetch`` is the single choke point for every request:

- Each attempt has its own timeout (30 s by default).
- Only idempotent requests (GET / HEAD / OPTIONS) are retried, and only on
  transport-level failures: connection errors and timeouts.  Delays are
  1 s, 2 s, 4 s.  An HTTP error response is an answer, never retried.
- A ``threading.Event`` passed as ``cancel`` aborts the call before the
  next attempt or in the middle of a backoff wait.
- Error responses are normalised into ``ApiError`` with a readable
  message.  A 403 caused by a bad CSRF token drops the cached token so the
  next mutation fetches a fresh one.

CSRF
----
Mutations send the ``X-CSRF-Token`` header.  The token is fetched from
``/auth/csrf-token`` and cached on the client instance for five minutes;
failing to fetch one is logged and the request is sent without it (the
server then answers 403 and the caller sees the stale-session message).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Mapping, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from culturehub.auth import CSRF_HEADER
from culturehub.errors import CSRF_ERROR_CODE
from culturehub.schema import (
    AuthResponse,
    CsrfTokenResponse,
    Document,
    Event,
    EventPage,
    HealthResponse,
    RegisterResponse,
    Reminder,
    SuccessResponse,
    VerifyResponse,
    WorkplanItem,
)

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

AUTH_ERRORS: dict[str, str] = {
    "INVALID_CREDENTIALS": "Invalid username or password",
    "TOKEN_EXPIRED": "Session expired, please sign in again",
    "UNAUTHORIZED": "Authentication required",
    "FORBIDDEN": "Insufficient permissions",
}

COMMON_ERRORS: dict[str, str] = {
    "NETWORK_ERROR": "Network error, check your connection",
    "SERVER_ERROR": "Server error, please try again later",
    "NOT_FOUND": "Resource not found",
    "VALIDATION_ERROR": "Invalid data",
    "TIMEOUT": "The request timed out, check your connection and try again",
    "CANCELLED": "The request was cancelled",
}

STALE_SESSION = "Session is stale. Refresh the page and try again"


class ApiError(Exception):
    """
    Any failed API call, as seen by the caller.

    Attributes
    ----------
    message : Human-readable description.
    status  : HTTP status, or None for transport failures.
    code    : Server-provided machine code (e.g. ``EBADCSRFTOKEN``).
    details : Per-field validation messages from a 400 response.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
        details: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details or []


class RequestCancelled(ApiError):
    def __init__(self) -> None:
        super().__init__(COMMON_ERRORS["CANCELLED"])


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
CSRF_TOKEN_TTL = 5 * 60.0
# How often an in-flight request checks its cancel event.
CANCEL_POLL_SECONDS = 0.05

WORKPLAN_MONTHS: tuple[str, ...] = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

# (filename, content, content type)
FileArg = tuple[str, Union[bytes, IO[bytes]], str]


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before retry number ``attempt`` (0-based): 1, 2, 4..."""
    return float(2**attempt)


@dataclass
class CsrfTokenCache:
    """One cached CSRF token with a time-to-live."""

    ttl: float = CSRF_TOKEN_TTL
    clock: Callable[[], float] = time.monotonic
    value: str | None = None
    fetched_at: float = field(default=0.0)

    def get(self) -> str | None:
        if self.value and self.clock() - self.fetched_at < self.ttl:
            return self.value
        return None

    def store(self, token: str) -> None:
        self.value = token
        self.fetched_at = self.clock()

    def invalidate(self) -> None:
        self.value = None
        self.fetched_at = 0.0


def build_form_data(
    fields: Mapping[str, Any],
    files: Mapping[str, FileArg | None] | None = None,
) -> tuple[dict[str, str], dict[str, FileArg]]:
    """
    Split a submission into form fields and file parts.

    ``None`` values are left out entirely, so an optional field the caller
    did not set never reaches the server as the string ``"None"``.
    Booleans are sent as ``"true"``/``"false"``.
    """
    data: dict[str, str] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, bool):
            data[key] = "true" if value else "false"
        else:
            data[key] = str(value)
    parts = {key: value for key, value in (files or {}).items() if value is not None}
    return data, parts


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _is_csrf_failure(body: Mapping[str, Any]) -> bool:
    if body.get("code") == CSRF_ERROR_CODE:
        return True
    return "csrf token" in str(body.get("error") or "").lower()


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_model(model: type[ModelT], body: Any) -> ModelT:
    """Validate a response body; a body of the wrong shape is a server error."""
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        logger.warning("Unexpected %s payload: %s", model.__name__, exc)
        raise ApiError(COMMON_ERRORS["SERVER_ERROR"], code="INVALID_RESPONSE") from exc


def parse_models(model: type[ModelT], body: Any) -> list[ModelT]:
    if not isinstance(body, list):
        logger.warning("Expected a list of %s, got %s", model.__name__, type(body).__name__)
        raise ApiError(COMMON_ERRORS["SERVER_ERROR"], code="INVALID_RESPONSE")
    return [parse_model(model, item) for item in body]


def _close_abandoned(future: Future) -> None:
    """Done-callback for a request whose caller already gave up on it."""
    if not future.cancelled() and future.exception() is None:
        future.result().close()


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class ApiClient:
    """
    Client for one Culture Hub server.

    Parameters
    ----------
    base_url : API root, e.g. ``"https://example.org/api"``.
    http     : Optional pre-built ``httpx.Client``; one is created (and
               owned) otherwise.
    timeout  : Default per-attempt timeout in seconds.
    retries  : Default number of retries for idempotent requests.
    sleep    : Replaceable wait function for backoff without a cancel event.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http: httpx.Client | None = None,
        timeout: float = 30.0,
        retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.csrf = CsrfTokenCache()
        self._http = http if http is not None else httpx.Client()
        self._owns_http = http is None
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Transport ────────────────────────────────────────────────────────────

    def api_fetch(
        self,
        path: str,
        *,
        method: str = "GET",
        json: Any = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, FileArg] | None = None,
        headers: Mapping[str, str] | None = None,
        retries: int | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Any:
        """
        Send one logical request and return its decoded JSON body.

        Returns
        -------
        Any : Parsed JSON, or None for an empty body.

        Raises
        ------
        RequestCancelled : ``cancel`` was set before or during the call.
        ApiError         : Any HTTP error status or exhausted transport
                           failure, with a normalised message.
        """
        method = method.upper()
        retries = self.retries if retries is None else retries
        can_retry = method in IDEMPOTENT_METHODS
        url = f"{self.base_url}/{path.lstrip('/')}"
        request_timeout = httpx.Timeout(self.timeout if timeout is None else timeout)

        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise RequestCancelled()
            try:
                response = self._request(
                    method,
                    url,
                    cancel,
                    json=json,
                    data=data,
                    files=files,
                    headers=headers,
                    timeout=request_timeout,
                )
            except httpx.TransportError as exc:
                if can_retry and attempt < retries:
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "%s %s failed (%s), retrying in %.0fs", method, url, type(exc).__name__, delay
                    )
                    self._wait(delay, cancel)
                    attempt += 1
                    continue
                if isinstance(exc, httpx.TimeoutException):
                    raise ApiError(COMMON_ERRORS["TIMEOUT"]) from exc
                raise ApiError(COMMON_ERRORS["NETWORK_ERROR"]) from exc
            return self._handle_response(response)

    def _request(
        self, method: str, url: str, cancel: threading.Event | None, **kwargs: Any
    ) -> httpx.Response:
        """
        Perform one HTTP exchange.

        With a ``cancel`` event the exchange runs on a worker thread while
        this thread watches the event; once it is set the caller gets
        ``RequestCancelled`` straight away and the late response is closed
        when it arrives.
        """
        if cancel is None:
            return self._http.request(method, url, **kwargs)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="culturehub-client")
        future = self._executor.submit(self._http.request, method, url, **kwargs)
        while True:
            done, _ = wait((future,), timeout=CANCEL_POLL_SECONDS)
            if cancel.is_set():
                future.add_done_callback(_close_abandoned)
                raise RequestCancelled()
            if done:
                return future.result()

    def _wait(self, delay: float, cancel: threading.Event | None) -> None:
        if cancel is None:
            self._sleep(delay)
        elif cancel.wait(delay):
            raise RequestCancelled()

    def _handle_response(self, response: httpx.Response) -> Any:
        if response.is_success:
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                logger.warning("Non-JSON %s response from %s", response.status_code, response.url)
                raise ApiError(
                    COMMON_ERRORS["SERVER_ERROR"], response.status_code, code="INVALID_RESPONSE"
                ) from exc

        body = _json_or_empty(response)
        status = response.status_code
        if status == 401:
            message = AUTH_ERRORS["UNAUTHORIZED"]
        elif status == 403:
            message = AUTH_ERRORS["FORBIDDEN"]
        elif status == 404:
            message = COMMON_ERRORS["NOT_FOUND"]
        elif status in (500, 502, 503):
            message = COMMON_ERRORS["SERVER_ERROR"]
        else:
            message = body.get("message") or body.get("error") or f"Error: {status}"

        if status == 403 and _is_csrf_failure(body):
            self.csrf.invalidate()
            message = STALE_SESSION

        details = body.get("details")
        raise ApiError(
            message,
            status,
            code=body.get("code"),
            details=details if isinstance(details, list) else None,
        )

    # ── CSRF ─────────────────────────────────────────────────────────────────

    def get_csrf_token(self) -> str:
        """Cached token, or a freshly fetched one; ``""`` if none is available."""
        cached = self.csrf.get()
        if cached:
            return cached
        try:
            token = parse_model(CsrfTokenResponse, self.api_fetch("/auth/csrf-token")).csrf_token
        except ApiError as exc:
            logger.warning("Could not obtain a CSRF token: %s", exc)
            return ""
        self.csrf.store(token)
        return token

    def _send(
        self,
        method: str,
        path: str,
        *,
        fields: Mapping[str, Any] | None = None,
        files: Mapping[str, FileArg | None] | None = None,
        json: Any = None,
    ) -> Any:
        token = self.get_csrf_token()
        headers = {CSRF_HEADER: token} if token else {}
        data = parts = None
        if fields is not None or files:
            data, parts = build_form_data(fields or {}, files)
        return self.api_fetch(
            path, method=method, data=data, files=parts or None, json=json, headers=headers
        )

    # ── Entities ─────────────────────────────────────────────────────────────

    def get_events(
        self,
        page: int | None = None,
        limit: int | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> list[Event] | EventPage:
        """All events, or one page of them when ``page`` and ``limit`` are given."""
        if page is not None and limit is not None:
            body = self.api_fetch(f"/events?page={page}&limit={limit}", cancel=cancel)
            return parse_model(EventPage, body)
        return parse_models(Event, self.api_fetch("/events", cancel=cancel))

    def get_event(self, event_id: int, *, cancel: threading.Event | None = None) -> Event:
        return parse_model(Event, self.api_fetch(f"/events/{event_id}", cancel=cancel))

    def create_event(self, fields: Mapping[str, Any], image: FileArg | None = None) -> Event:
        return parse_model(Event, self._send("POST", "/events", fields=fields, files={"image": image}))

    def update_event(self, event_id: int, fields: Mapping[str, Any], image: FileArg | None = None) -> Event:
        body = self._send("PUT", f"/events/{event_id}", fields=fields, files={"image": image})
        return parse_model(Event, body)

    def delete_event(self, event_id: int) -> SuccessResponse:
        return parse_model(SuccessResponse, self._send("DELETE", f"/events/{event_id}"))

    def get_documents(self, *, cancel: threading.Event | None = None) -> list[Document]:
        return parse_models(Document, self.api_fetch("/documents", cancel=cancel))

    def get_document(self, document_id: int, *, cancel: threading.Event | None = None) -> Document:
        return parse_model(Document, self.api_fetch(f"/documents/{document_id}", cancel=cancel))

    def create_document(self, fields: Mapping[str, Any], file: FileArg | None) -> Document:
        body = self._send("POST", "/documents", fields=fields, files={"file": file})
        return parse_model(Document, body)

    def update_document(
        self, document_id: int, fields: Mapping[str, Any], file: FileArg | None = None
    ) -> Document:
        body = self._send("PUT", f"/documents/{document_id}", fields=fields, files={"file": file})
        return parse_model(Document, body)

    def delete_document(self, document_id: int) -> SuccessResponse:
        return parse_model(SuccessResponse, self._send("DELETE", f"/documents/{document_id}"))

    def get_reminders(self, *, cancel: threading.Event | None = None) -> list[Reminder]:
        return parse_models(Reminder, self.api_fetch("/reminders", cancel=cancel))

    def get_reminder(self, reminder_id: int, *, cancel: threading.Event | None = None) -> Reminder:
        return parse_model(Reminder, self.api_fetch(f"/reminders/{reminder_id}", cancel=cancel))

    def create_reminder(self, fields: Mapping[str, Any], image: FileArg | None = None) -> Reminder:
        body = self._send("POST", "/reminders", fields=fields, files={"image": image})
        return parse_model(Reminder, body)

    def update_reminder(
        self, reminder_id: int, fields: Mapping[str, Any], image: FileArg | None = None
    ) -> Reminder:
        body = self._send("PUT", f"/reminders/{reminder_id}", fields=fields, files={"image": image})
        return parse_model(Reminder, body)

    def delete_reminder(self, reminder_id: int) -> SuccessResponse:
        return parse_model(SuccessResponse, self._send("DELETE", f"/reminders/{reminder_id}"))

    def get_workplan(self, *, cancel: threading.Event | None = None) -> list[WorkplanItem]:
        return parse_models(WorkplanItem, self.api_fetch("/workplan", cancel=cancel))

    def get_workplan_item(self, item_id: int, *, cancel: threading.Event | None = None) -> WorkplanItem:
        return parse_model(WorkplanItem, self.api_fetch(f"/workplan/{item_id}", cancel=cancel))

    def create_workplan_item(self, fields: Mapping[str, Any], file: FileArg | None = None) -> WorkplanItem:
        _check_month(fields)
        body = self._send("POST", "/workplan", fields=fields, files={"file": file})
        return parse_model(WorkplanItem, body)

    def update_workplan_item(
        self, item_id: int, fields: Mapping[str, Any], file: FileArg | None = None
    ) -> WorkplanItem:
        _check_month(fields)
        body = self._send("PUT", f"/workplan/{item_id}", fields=fields, files={"file": file})
        return parse_model(WorkplanItem, body)

    def delete_workplan_item(self, item_id: int) -> SuccessResponse:
        return parse_model(SuccessResponse, self._send("DELETE", f"/workplan/{item_id}"))

    # ── Auth ─────────────────────────────────────────────────────────────────

    def login(self, username: str, password: str) -> AuthResponse:
        body = self._send("POST", "/auth/login", json={"username": username, "password": password})
        return parse_model(AuthResponse, body)

    def register(self, username: str, password: str) -> RegisterResponse:
        body = self._send("POST", "/auth/register", json={"username": username, "password": password})
        return parse_model(RegisterResponse, body)

    def verify_token(self, *, cancel: threading.Event | None = None) -> VerifyResponse:
        """Never raises: any failure means the session is not valid."""
        try:
            return parse_model(VerifyResponse, self.api_fetch("/auth/verify", cancel=cancel))
        except ApiError as exc:
            logger.debug("Token verification failed: %s", exc)
            return VerifyResponse(valid=False)

    def logout(self) -> None:
        """End the session; the cached CSRF token is dropped either way."""
        try:
            self._send("POST", "/auth/logout")
        finally:
            self.csrf.invalidate()

    def health(self, *, cancel: threading.Event | None = None) -> HealthResponse:
        return parse_model(HealthResponse, self.api_fetch("/health", cancel=cancel))


def _check_month(fields: Mapping[str, Any]) -> None:
    month = fields.get("month")
    if month not in WORKPLAN_MONTHS:
        raise ApiError(f"Unknown month: {month!r}", code="INVALID_MONTH")
