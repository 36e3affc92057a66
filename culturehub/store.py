"""
culturehub/store.py
-----------------------------------------------------------------------------
Single-file JSON document store.

The whole site state lives in one JSON document:

    {
        "events": [...], "documents": [...], "reminders": [...],
        "workplan": [...], "users": [...],
        "_meta": {"lastEventId": 0, "lastDocumentId": 0, ...}
    }

Durability
----------
Every save writes the full document to ``<path>.tmp`` and then renames it
over the real file with ``os.replace``.  The rename is atomic on POSIX
filesystems, so a reader either sees the previous committed document or the
new one, never a half-written file.

Serialisation
-------------
All writes go through ``JsonStore.transaction()``, which holds the store's
lock across the whole load → mutate → save cycle.  Two concurrent creates
therefore run one after the other and each sees the counter bumped by the
previous one; ids are never duplicated or reused.  The design assumes one
server process owns the data file; there is no cross-process locking.

Availability
------------
``load()`` never raises: a missing or corrupt file yields a fresh default
document and a warning in the log.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from culturehub.auth import hash_password

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT: dict[str, Any] = {
    "events": [],
    "documents": [],
    "reminders": [],
    "workplan": [],
    "users": [],
    "_meta": {
        "lastEventId": 0,
        "lastDocumentId": 0,
        "lastReminderId": 0,
        "lastWorkplanId": 0,
        "lastUserId": 0,
    },
}


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _fill_defaults(document: dict[str, Any]) -> dict[str, Any]:
    # Older files may predate a collection or counter.
    for key, value in DEFAULT_DOCUMENT.items():
        if key not in document:
            document[key] = copy.deepcopy(value)
    for counter, start in DEFAULT_DOCUMENT["_meta"].items():
        document["_meta"].setdefault(counter, start)
    return document


class JsonStore:
    """
    Owner of the JSON data file.

    Parameters
    ----------
    path : Location of the JSON document.  Its parent directory is created
           on first save.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._tmp_path = self.path.with_name(self.path.name + ".tmp")
        # Re-entrant so that ``save()`` can be called inside ``transaction()``.
        self._lock = threading.RLock()

    # -- Raw document access ----------------------------------------------

    def load(self) -> dict[str, Any]:
        """
        Read and parse the whole document.

        Returns
        -------
        dict : The stored document, or a fresh copy of ``DEFAULT_DOCUMENT``
               when the file is missing, unreadable or not valid JSON.
        """
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                document = json.load(fh)
            if not isinstance(document, dict):
                raise ValueError("top-level JSON value is not an object")
        except (OSError, ValueError) as exc:
            logger.warning(
                "Failed to load database from %s, using default structure: %s",
                self.path,
                exc,
            )
            return copy.deepcopy(DEFAULT_DOCUMENT)
        return _fill_defaults(document)

    def save(self, document: dict[str, Any]) -> None:
        """
        Durably replace the stored document.

        Raises
        ------
        OSError, TypeError
            Propagated after logging when the document cannot be serialised
            or written.
        """
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                payload = json.dumps(document, indent=2, ensure_ascii=False)
                with self._tmp_path.open("w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(self._tmp_path, self.path)
            except (OSError, TypeError, ValueError):
                logger.exception("Failed to save database to %s", self.path)
                raise

    @contextmanager
    def transaction(self) -> Iterator[dict[str, Any]]:
        """
        Serialised load → mutate → save.

        The yielded document may be mutated freely; it is saved when the
        block exits normally.  If the block raises, nothing is written.
        """
        with self._lock:
            document = self.load()
            yield document
            self.save(document)

    def ping(self) -> bool:
        """True when the data file exists and parses."""
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                json.load(fh)
        except (OSError, ValueError):
            return False
        return True

    def collection(self, name: str) -> "Collection":
        return COLLECTIONS[name](self)


# -----------------------------------------------------------------------------
# Per-entity helpers
# -----------------------------------------------------------------------------


class Collection:
    """
    CRUD helpers over one top-level array of the document.

    Each call performs a full load-mutate-save cycle.  Subclasses only set
    class attributes: the array ``name``, the ``_meta`` ``counter`` used for
    id assignment, creation ``defaults`` and whether ``updatedAt`` is kept.
    """

    name: str = ""
    counter: str = ""
    defaults: dict[str, Any] = {}
    track_updates: bool = True

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    def all(self) -> list[dict[str, Any]]:
        return self.store.load()[self.name]

    def get(self, record_id: int) -> dict[str, Any] | None:
        for record in self.store.load()[self.name]:
            if record.get("id") == record_id:
                return record
        return None

    def find(self, **criteria: Any) -> dict[str, Any] | None:
        """Return the first record whose fields equal every keyword given."""
        for record in self.store.load()[self.name]:
            if all(record.get(k) == v for k, v in criteria.items()):
                return record
        return None

    def create(self, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a record with the next id from ``_meta``.

        The counter bump and the insert are written in the same save, so an
        id is consumed only if the record is persisted.
        """
        with self.store.transaction() as document:
            return self._insert(document, fields)

    def _insert(self, document: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
        meta = document["_meta"]
        meta[self.counter] = int(meta.get(self.counter, 0)) + 1
        now = utc_now_iso()
        record: dict[str, Any] = {"id": meta[self.counter], **self.defaults, **fields}
        record["createdAt"] = now
        if self.track_updates:
            record["updatedAt"] = now
        document[self.name].append(record)
        return record

    def update(self, record_id: int, changes: dict[str, Any]) -> dict[str, Any] | None:
        """Merge ``changes`` into a record; ``None`` if the id is unknown."""
        try:
            with self.store.transaction() as document:
                records = document[self.name]
                for index, record in enumerate(records):
                    if record.get("id") == record_id:
                        merged = {**record, **changes, "id": record_id}
                        if self.track_updates:
                            merged["updatedAt"] = utc_now_iso()
                        records[index] = merged
                        break
                else:
                    raise _NoChange()
        except _NoChange:
            return None
        return merged

    def delete(self, record_id: int) -> bool:
        """Remove a record.  Returns ``False`` (and writes nothing) if absent."""
        try:
            with self.store.transaction() as document:
                records = document[self.name]
                remaining = [r for r in records if r.get("id") != record_id]
                if len(remaining) == len(records):
                    raise _NoChange()
                document[self.name] = remaining
        except _NoChange:
            return False
        return True


class _NoChange(Exception):
    """Aborts a transaction without saving."""


class Events(Collection):
    name = "events"
    counter = "lastEventId"


class Documents(Collection):
    name = "documents"
    counter = "lastDocumentId"


class Reminders(Collection):
    name = "reminders"
    counter = "lastReminderId"
    defaults = {"completed": 0}


class Workplan(Collection):
    name = "workplan"
    counter = "lastWorkplanId"


class Users(Collection):
    name = "users"
    counter = "lastUserId"
    track_updates = False

    def create_unique(self, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Insert unless the username is taken (checked under the write lock)."""
        try:
            with self.store.transaction() as document:
                if any(u.get("username") == fields["username"] for u in document[self.name]):
                    raise _NoChange()
                return self._insert(document, fields)
        except _NoChange:
            return None


COLLECTIONS: dict[str, type[Collection]] = {
    cls.name: cls for cls in (Events, Documents, Reminders, Workplan, Users)
}


# -----------------------------------------------------------------------------
# Bootstrap
# -----------------------------------------------------------------------------


def init_database(store: JsonStore, *, username: str, password: str, rounds: int) -> dict[str, Any] | None:
    """
    Seed the administrator account on first boot.

    Does nothing when at least one user already exists.

    Returns
    -------
    dict | None : The created user record, or None if no seeding happened.
    """
    users = store.collection("users")
    if users.all():
        return None
    user = users.create(
        {
            "username": username,
            "password": hash_password(password, rounds=rounds),
            "role": "admin",
        }
    )
    logger.info("Seeded administrator account %r", username)
    return user
