"""
culturehub/pipeline.py
-----------------------------------------------------------------------------
Generic create / update / delete pipeline shared by every content entity
(events, documents, reminders, workplan items).

Each entity is described once by an ``EntityResource``; ``build_router``
turns that description into the five REST routes.  A mutation runs as an
ordered chain:

    CSRF check (app-wide)
    → rate limiter
    → authenticate_token → require_admin
    → multipart parsing (at most one file part, in the resource's field)
    → stage_upload        file type/size gate, file written to uploads/
    → validate_and_sanitize
    → store write          (atomic, serialised)
    → file cleanup

Compensation
------------
Any failure after a file has been staged removes that file before the error
reaches the client, so a rejected mutation never leaves an orphan behind.
An old file that was replaced, or the file of a deleted record, is only
scheduled for deletion *after* the store write succeeded; the deletion runs
as a background task once the response is sent.  A crash in between leaves
at worst an unreferenced file, never a record pointing at nothing.

Blocking work (disk writes, JSON parse/serialise) happens in the sync
pipeline functions, which FastAPI runs on its threadpool.
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator, Mapping, Union

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.datastructures import UploadFile

from culturehub.auth import require_admin
from culturehub.errors import ApiError, NotFound, ValidationFailed, public_message
from culturehub.ratelimit import limit
from culturehub.schema import Document, Event, EventPage, Reminder, SuccessResponse, WorkplanItem
from culturehub.store import Collection, JsonStore
from culturehub.uploads import (
    UPLOAD_KINDS,
    FileCleaner,
    StagedFile,
    UploadKind,
    resolve_upload_path,
    stage_upload,
)
from culturehub.validation import (
    DOCUMENT_SCHEMA,
    EVENT_SCHEMA,
    REMINDER_SCHEMA,
    WORKPLAN_SCHEMA,
    Schema,
    parse_id,
    validate_and_sanitize,
)

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 50


# -----------------------------------------------------------------------------
# Resource descriptions
# -----------------------------------------------------------------------------

BuildCreate = Callable[[dict[str, Any], Mapping[str, Any]], dict[str, Any]]
BuildUpdate = Callable[[dict[str, Any], Mapping[str, Any], dict[str, Any]], dict[str, Any]]


def _copy_fields(sanitized: dict[str, Any], raw: Mapping[str, Any], *_: Any) -> dict[str, Any]:
    return dict(sanitized)


@dataclass(frozen=True)
class EntityResource:
    """
    Everything the pipeline needs to know about one entity.

    Attributes
    ----------
    collection    : Name of the array in the JSON document.
    path          : URL segment under ``/api``.
    label         : Singular noun used in log lines.
    schema        : Field rules for submitted text fields.
    upload_kind   : Where and how its file is stored.
    file_field    : Multipart field carrying the file.
    file_key      : Record key holding the file's public URL.
    file_required : Create fails with 400 when no file is sent.
    not_found     : 404 message.
    model         : Response model.
    limiter       : Rate-limit group guarding mutations.
    build_create  : sanitized, raw form → stored fields.
    build_update  : sanitized, raw form, existing record → changes.
    paginate      : List route accepts ``page``/``limit``.
    """

    collection: str
    path: str
    label: str
    schema: Schema
    upload_kind: UploadKind
    file_field: str
    file_key: str
    not_found: str
    model: type
    file_required: bool = False
    limiter: str = "mutation"
    build_create: BuildCreate = _copy_fields
    build_update: BuildUpdate = _copy_fields
    paginate: bool = False


def normalize_completed(value: Any) -> int:
    """Checkbox-ish form values → the stored 0/1 flag."""
    return 1 if value in (1, True, "1", "true") else 0


def _reminder_create(sanitized: dict[str, Any], raw: Mapping[str, Any]) -> dict[str, Any]:
    return {**sanitized, "priority": sanitized.get("priority") or "medium"}


def _reminder_update(
    sanitized: dict[str, Any], raw: Mapping[str, Any], existing: dict[str, Any]
) -> dict[str, Any]:
    return {
        **sanitized,
        "priority": sanitized.get("priority") or existing.get("priority") or "medium",
        "completed": normalize_completed(raw.get("completed")),
    }


def _workplan_fields(sanitized: dict[str, Any], raw: Mapping[str, Any], *_: Any) -> dict[str, Any]:
    return {**sanitized, "year": int(str(sanitized["year"]).strip())}


EVENTS = EntityResource(
    collection="events",
    path="events",
    label="event image",
    schema=EVENT_SCHEMA,
    upload_kind=UPLOAD_KINDS["event"],
    file_field="image",
    file_key="image",
    not_found="Event not found",
    model=Event,
    paginate=True,
)

DOCUMENTS = EntityResource(
    collection="documents",
    path="documents",
    label="document file",
    schema=DOCUMENT_SCHEMA,
    upload_kind=UPLOAD_KINDS["document"],
    file_field="file",
    file_key="fileUrl",
    not_found="Document not found",
    model=Document,
    file_required=True,
    limiter="document",
)

REMINDERS = EntityResource(
    collection="reminders",
    path="reminders",
    label="reminder image",
    schema=REMINDER_SCHEMA,
    upload_kind=UPLOAD_KINDS["reminder"],
    file_field="image",
    file_key="imageUrl",
    not_found="Reminder not found",
    model=Reminder,
    build_create=_reminder_create,
    build_update=_reminder_update,
)

WORKPLAN = EntityResource(
    collection="workplan",
    path="workplan",
    label="workplan file",
    schema=WORKPLAN_SCHEMA,
    upload_kind=UPLOAD_KINDS["workplan"],
    file_field="file",
    file_key="fileUrl",
    not_found="Workplan item not found",
    model=WorkplanItem,
    build_create=_workplan_fields,
    build_update=_workplan_fields,
)

RESOURCES: tuple[EntityResource, ...] = (EVENTS, DOCUMENTS, REMINDERS, WORKPLAN)


# -----------------------------------------------------------------------------
# Context and submissions
# -----------------------------------------------------------------------------


@dataclass
class PipelineContext:
    store: JsonStore
    cleaner: FileCleaner
    uploads_root: Path
    production: bool = False

    def collection(self, resource: EntityResource) -> Collection:
        return self.store.collection(resource.collection)


def get_context(request: Request) -> PipelineContext:
    return request.app.state.pipeline


@dataclass
class Submission:
    """Text fields and the single file part of a mutation request."""

    fields: dict[str, Any] = field(default_factory=dict)
    file: UploadFile | None = None


def submission_reader(resource: EntityResource) -> Callable[[Request], AsyncIterator[Submission]]:
    """
    Dependency factory parsing the request body for ``resource``.

    Multipart and url-encoded bodies are read through Starlette's form
    parser; JSON objects are accepted for file-less clients.  Files sent
    under any other field name, or more than one file, are rejected.
    """

    async def _read(request: Request) -> AsyncIterator[Submission]:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except json.JSONDecodeError as exc:
                raise ApiError(400, "Malformed JSON body") from exc
            if not isinstance(body, dict):
                raise ApiError(400, "Request body must be an object")
            yield Submission(fields={k: v for k, v in body.items() if v is not None})
            return

        form = await request.form()
        try:
            submission = Submission()
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    if key != resource.file_field or submission.file is not None:
                        raise ApiError(400, f"Unexpected file field: {key}")
                    submission.file = value
                else:
                    submission.fields.setdefault(key, value)
            yield submission
        finally:
            await form.close()

    return _read


# -----------------------------------------------------------------------------
# Pipeline steps
# -----------------------------------------------------------------------------


@contextmanager
def _unexpected_as_500(ctx: PipelineContext, action: str, resource: EntityResource) -> Iterator[None]:
    """Log and translate anything that is not already an ``ApiError``."""
    try:
        yield
    except ApiError:
        raise
    except Exception as exc:
        logger.exception("Failed to %s %s record", action, resource.collection)
        raise ApiError(500, public_message(exc, production=ctx.production)) from exc


@contextmanager
def _discard_on_error(ctx: PipelineContext, resource: EntityResource, staged: StagedFile | None) -> Iterator[None]:
    try:
        yield
    except BaseException:
        if staged is not None:
            ctx.cleaner.remove_now(staged.path, f"orphaned {resource.label}")
        raise


def _validated(resource: EntityResource, fields: Mapping[str, Any]) -> dict[str, Any]:
    result = validate_and_sanitize(fields, resource.schema)
    if not result.ok:
        raise ValidationFailed(result.errors)
    return result.sanitized


def create_record(resource: EntityResource, ctx: PipelineContext, submission: Submission) -> dict[str, Any]:
    """
    Stage the file, validate, persist.

    Returns
    -------
    dict : The stored record including ``id`` and timestamps.

    Raises
    ------
    ApiError : 400 for rejected files or fields (or a missing mandatory
               file), 500 for store failures.  The staged file is removed
               in every failing case.
    """
    staged = stage_upload(submission.file, resource.upload_kind, ctx.uploads_root)
    with _unexpected_as_500(ctx, "create", resource), _discard_on_error(ctx, resource, staged):
        sanitized = _validated(resource, submission.fields)
        if resource.file_required and staged is None:
            raise ApiError(400, "File is required")
        fields = resource.build_create(sanitized, submission.fields)
        fields[resource.file_key] = staged.url if staged else None
        record = ctx.collection(resource).create(fields)
    logger.info("Created %s #%s", resource.collection, record["id"])
    return record


def update_record(
    resource: EntityResource, ctx: PipelineContext, record_id: int, submission: Submission
) -> dict[str, Any]:
    """
    Replace a record's fields and, optionally, its file.

    The previous file is scheduled for deletion only after the new state
    has been saved.
    """
    staged = stage_upload(submission.file, resource.upload_kind, ctx.uploads_root)
    collection = ctx.collection(resource)
    with _unexpected_as_500(ctx, "update", resource), _discard_on_error(ctx, resource, staged):
        sanitized = _validated(resource, submission.fields)
        existing = collection.get(record_id)
        if existing is None:
            raise NotFound(resource.not_found)
        changes = resource.build_update(sanitized, submission.fields, existing)
        if staged is not None:
            changes[resource.file_key] = staged.url
        updated = collection.update(record_id, changes)
        if updated is None:
            # Deleted by a concurrent request between the read and the write.
            raise NotFound(resource.not_found)

    old_url = existing.get(resource.file_key)
    if staged is not None and old_url and old_url != staged.url:
        ctx.cleaner.schedule(resolve_upload_path(old_url, ctx.uploads_root), f"old {resource.label}")
    logger.info("Updated %s #%s", resource.collection, record_id)
    return updated


def delete_record(resource: EntityResource, ctx: PipelineContext, record_id: int) -> None:
    """Remove the record, then schedule removal of its file."""
    collection = ctx.collection(resource)
    with _unexpected_as_500(ctx, "delete", resource):
        existing = collection.get(record_id)
        if existing is None:
            raise NotFound(resource.not_found)
        collection.delete(record_id)

    url = existing.get(resource.file_key)
    if url:
        ctx.cleaner.schedule(resolve_upload_path(url, ctx.uploads_root), resource.label)
    logger.info("Deleted %s #%s", resource.collection, record_id)


def paginate(records: list[dict[str, Any]], page: str | None, limit_: str | None) -> dict[str, Any] | None:
    """
    Slice ``records`` when both ``page`` and ``limit`` are given.

    Returns None when pagination was not requested.

    Raises
    ------
    ApiError(400) for non-positive or non-numeric values, or a limit above
    ``MAX_PAGE_LIMIT``.
    """

    def _positive(raw: str | None) -> int | None:
        if raw is None or raw == "":
            return None
        try:
            value = int(raw)
        except ValueError:
            raise ApiError(400, "Invalid pagination parameters") from None
        if value < 1:
            raise ApiError(400, "Invalid pagination parameters")
        return value

    page_n = _positive(page)
    limit_n = _positive(limit_)
    if limit_n is not None and limit_n > MAX_PAGE_LIMIT:
        raise ApiError(400, f"Limit must not exceed {MAX_PAGE_LIMIT}")
    if page_n is None or limit_n is None:
        return None

    start = (page_n - 1) * limit_n
    return {
        "data": records[start : start + limit_n],
        "pagination": {
            "page": page_n,
            "limit": limit_n,
            "total": len(records),
            "totalPages": math.ceil(len(records) / limit_n),
        },
    }


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


def build_router(resource: EntityResource) -> APIRouter:
    """
    The five REST routes for ``resource`` mounted under ``/api/<path>``.

    Mutations carry, in order, the rate limiter and the admin gate; the
    body is parsed only after both passed.
    """
    router = APIRouter(prefix=f"/api/{resource.path}", tags=[resource.path])
    guards = [Depends(limit(resource.limiter)), Depends(require_admin)]
    read_submission = submission_reader(resource)
    list_model = Union[list[resource.model], EventPage] if resource.paginate else list[resource.model]

    @router.get("", response_model=list_model, summary=f"List {resource.path}")
    def list_records(
        page: str | None = None,
        limit: str | None = None,
        ctx: PipelineContext = Depends(get_context),
    ) -> Any:
        with _unexpected_as_500(ctx, "list", resource):
            records = ctx.collection(resource).all()
        if resource.paginate:
            paged = paginate(records, page, limit)
            if paged is not None:
                return paged
        return records

    @router.get("/{record_id}", response_model=resource.model, summary=f"Get one of {resource.path}")
    def get_record(record_id: str, ctx: PipelineContext = Depends(get_context)) -> Any:
        rid = parse_id(record_id)
        with _unexpected_as_500(ctx, "read", resource):
            record = ctx.collection(resource).get(rid)
        if record is None:
            raise NotFound(resource.not_found)
        return record

    @router.post(
        "",
        status_code=201,
        response_model=resource.model,
        dependencies=guards,
        summary=f"Create one of {resource.path}",
    )
    def create(
        background: BackgroundTasks,
        submission: Submission = Depends(read_submission),
        ctx: PipelineContext = Depends(get_context),
    ) -> Any:
        background.add_task(ctx.cleaner.drain)
        return create_record(resource, ctx, submission)

    @router.put(
        "/{record_id}",
        response_model=resource.model,
        dependencies=guards,
        summary=f"Update one of {resource.path}",
    )
    def update(
        record_id: str,
        background: BackgroundTasks,
        submission: Submission = Depends(read_submission),
        ctx: PipelineContext = Depends(get_context),
    ) -> Any:
        rid = parse_id(record_id)
        background.add_task(ctx.cleaner.drain)
        return update_record(resource, ctx, rid, submission)

    @router.delete(
        "/{record_id}",
        response_model=SuccessResponse,
        dependencies=guards,
        summary=f"Delete one of {resource.path}",
    )
    def delete(
        record_id: str,
        background: BackgroundTasks,
        ctx: PipelineContext = Depends(get_context),
    ) -> Any:
        rid = parse_id(record_id)
        background.add_task(ctx.cleaner.drain)
        delete_record(resource, ctx, rid)
        return {"success": True}

    return router
