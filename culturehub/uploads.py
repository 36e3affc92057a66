"""
culturehub/uploads.py
-----------------------------------------------------------------------------
Upload lifecycle: accept, stage, resolve and clean up files on disk.

Layout
------
Files live under the uploads root as ``<folder>/<prefix><ms>-<rand><ext>``
and are referenced from records by their public URL
``/uploads/<folder>/<name>``.  ``public_url`` and ``resolve_upload_path``
are the only two places that translate between the two forms, so writes and
deletes always agree on the location.

Lifecycle
---------
1. ``stage_upload`` checks the declared MIME type *and* the extension
   against the upload kind's filter before a single byte is written, then
   streams the part to disk and aborts once the size cap is exceeded.
2. If anything downstream fails (validation, missing record, store error)
   the caller hands the staged path to ``FileCleaner.remove_now``.
3. After a successful replacement or delete the previous file is handed to
   ``FileCleaner.schedule`` and removed once the response has been sent.
   Deletes that fail are kept in the queue and retried on the next drain,
   up to ``max_attempts``; nothing is dropped without an ERROR log line.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Protocol

from culturehub.errors import ApiError

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads/"

_CHUNK_SIZE = 64 * 1024

# -----------------------------------------------------------------------------
# File filters
# -----------------------------------------------------------------------------

IMAGE_EXTENSIONS = frozenset({".jpeg", ".jpg", ".png", ".gif", ".webp"})
IMAGE_MIME_TYPES = frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"})

DOCUMENT_EXTENSIONS = frozenset({".pdf", ".doc", ".docx", ".xls", ".xlsx"})
DOCUMENT_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    }
)

_FILTERS: dict[str, tuple[frozenset[str], frozenset[str], str]] = {
    "image": (IMAGE_EXTENSIONS, IMAGE_MIME_TYPES, "Only image files are allowed"),
    "document": (DOCUMENT_EXTENSIONS, DOCUMENT_MIME_TYPES, "File type not allowed"),
}


@dataclass(frozen=True)
class UploadKind:
    folder: str
    prefix: str
    max_size: int
    filter: str

    def accepts(self, filename: str, content_type: str | None) -> bool:
        """Both the extension and the declared MIME type must be allowed."""
        extensions, mime_types, _ = _FILTERS[self.filter]
        ext = PurePosixPath(filename).suffix.lower()
        mime = (content_type or "").split(";", 1)[0].strip().lower()
        return ext in extensions and mime in mime_types

    @property
    def reject_message(self) -> str:
        return _FILTERS[self.filter][2]


UPLOAD_KINDS: dict[str, UploadKind] = {
    "event": UploadKind("events", "event-", 5 * 1024 * 1024, "image"),
    "document": UploadKind("documents", "doc-", 10 * 1024 * 1024, "document"),
    "reminder": UploadKind("reminders", "reminder-", 5 * 1024 * 1024, "image"),
    "workplan": UploadKind("workplan", "workplan-", 10 * 1024 * 1024, "document"),
}


class UploadRejected(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(400, message)


class IncomingFile(Protocol):
    """The subset of ``starlette.datastructures.UploadFile`` used here."""

    filename: str | None
    content_type: str | None
    file: BinaryIO


# -----------------------------------------------------------------------------
# Paths
# -----------------------------------------------------------------------------


def public_url(kind: UploadKind, name: str) -> str:
    return f"{URL_PREFIX}{kind.folder}/{name}"


def resolve_upload_path(url: str | None, root: Path) -> Path | None:
    """
    Map a stored ``/uploads/<folder>/<name>`` reference to a file path.

    Returns
    -------
    Path | None : Absolute path inside ``root``, or None for an empty
                  reference or one that would escape the uploads root.
    """
    if not url:
        return None
    relative = url[len(URL_PREFIX):] if url.startswith(URL_PREFIX) else url
    root = root.resolve()
    candidate = (root / relative.lstrip("/")).resolve()
    if candidate == root or root not in candidate.parents:
        logger.warning("Refusing upload reference outside %s: %r", root, url)
        return None
    return candidate


def _unique_name(kind: UploadKind, original: str) -> str:
    ext = PurePosixPath(original).suffix.lower()
    return f"{kind.prefix}{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{ext}"


# -----------------------------------------------------------------------------
# Staging
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StagedFile:
    path: Path
    url: str
    size: int


def stage_upload(upload: IncomingFile | None, kind: UploadKind, root: Path) -> StagedFile | None:
    """
    Write one uploaded part to its final location.

    Parameters
    ----------
    upload : The multipart file part, or None.  A part with an empty
             filename (an untouched file input) counts as no file.
    kind   : Destination folder, prefix, size cap and filter.
    root   : Uploads root directory.

    Returns
    -------
    StagedFile | None : Where the file landed, or None if nothing was sent.

    Raises
    ------
    UploadRejected
        If the type/extension pair is not allowed or the size cap is
        exceeded.  No file is left behind in either case.
    """
    if upload is None or not upload.filename:
        return None

    if not kind.accepts(upload.filename, upload.content_type):
        raise UploadRejected(kind.reject_message)

    folder = root / kind.folder
    folder.mkdir(parents=True, exist_ok=True)
    name = _unique_name(kind, upload.filename)
    path = folder / name

    size = 0
    try:
        with path.open("xb") as out:
            while chunk := upload.file.read(_CHUNK_SIZE):
                size += len(chunk)
                if size > kind.max_size:
                    raise UploadRejected(
                        f"File too large (max {kind.max_size // (1024 * 1024)} MB)"
                    )
                out.write(chunk)
    except BaseException:
        path.unlink(missing_ok=True)
        raise

    logger.debug("Staged upload %s (%d bytes)", path, size)
    return StagedFile(path=path, url=public_url(kind, name), size=size)


# -----------------------------------------------------------------------------
# Cleanup
# -----------------------------------------------------------------------------


# Abandoned deletions are only kept for inspection.
MAX_ABANDONED = 100


@dataclass
class PendingDeletion:
    path: Path
    label: str
    attempts: int = 0


class FileCleaner:
    """
    Observable, retrying queue of file deletions.

    Parameters
    ----------
    max_attempts  : How many failed deletes a path may accumulate before it
                    is moved to ``abandoned``.
    max_abandoned : How many abandoned paths are remembered; older ones
                    are dropped first.
    """

    def __init__(self, max_attempts: int = 3, max_abandoned: int = MAX_ABANDONED) -> None:
        self.max_attempts = max_attempts
        self._queue: deque[PendingDeletion] = deque()
        self._abandoned: deque[PendingDeletion] = deque(maxlen=max_abandoned)
        self._lock = threading.Lock()

    @property
    def pending(self) -> list[Path]:
        with self._lock:
            return [item.path for item in self._queue]

    @property
    def abandoned(self) -> list[Path]:
        with self._lock:
            return [item.path for item in self._abandoned]

    def schedule(self, path: Path | None, label: str = "file") -> None:
        """Queue a delete for the next ``drain``."""
        if path is None:
            return
        with self._lock:
            self._queue.append(PendingDeletion(path, label))

    def remove_now(self, path: Path | None, label: str = "file") -> bool:
        """
        Delete immediately; on failure keep the path queued for retry.

        Returns
        -------
        bool : True if the file is gone (or never existed).
        """
        if path is None:
            return True
        item = PendingDeletion(path, label)
        if self._try_delete(item):
            return True
        with self._lock:
            self._queue.append(item)
        return False

    def drain(self) -> int:
        """
        Attempt every queued delete once.

        Returns
        -------
        int : Number of paths removed in this pass.
        """
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()

        removed = 0
        for item in batch:
            if self._try_delete(item):
                removed += 1
                continue
            with self._lock:
                if item.attempts >= self.max_attempts:
                    self._abandoned.append(item)
                    logger.error(
                        "Giving up deleting %s %s after %d attempts",
                        item.label,
                        item.path,
                        item.attempts,
                    )
                else:
                    self._queue.append(item)
        return removed

    def _try_delete(self, item: PendingDeletion) -> bool:
        try:
            item.path.unlink(missing_ok=True)
        except OSError as exc:
            item.attempts += 1
            logger.error("Failed to delete %s %s: %s", item.label, item.path, exc)
            return False
        logger.info("Deleted %s %s", item.label, item.path)
        return True
