"""Tests for culturehub/uploads.py – staging, path resolution and cleanup queue."""

from __future__ import annotations

import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from unittest.mock import patch

import pytest

from culturehub.uploads import (
    UPLOAD_KINDS,
    FileCleaner,
    UploadKind,
    UploadRejected,
    public_url,
    resolve_upload_path,
    stage_upload,
)


@dataclass
class FakeUpload:
    filename: str | None
    content_type: str | None
    file: BinaryIO


def upload(name: str, content_type: str, data: bytes = b"data") -> FakeUpload:
    return FakeUpload(name, content_type, io.BytesIO(data))


TINY = UploadKind("events", "event-", 10, "image")

# ── UploadKind ───────────────────────────────────────────────────────────────


class TestAccepts:
    @pytest.mark.parametrize(
        ("filename", "content_type"),
        [("a.png", "image/png"), ("a.JPG", "image/jpeg"), ("a.webp", "image/webp")],
    )
    def test_images(self, filename: str, content_type: str) -> None:
        assert UPLOAD_KINDS["event"].accepts(filename, content_type)

    def test_extension_and_mime_must_both_match(self) -> None:
        kind = UPLOAD_KINDS["event"]
        assert not kind.accepts("a.png", "application/pdf")
        assert not kind.accepts("a.pdf", "image/png")

    def test_documents(self) -> None:
        kind = UPLOAD_KINDS["document"]
        assert kind.accepts("report.pdf", "application/pdf")
        assert kind.accepts("budget.xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet")
        assert not kind.accepts("setup.exe", "application/x-msdownload")

    def test_mime_parameters_ignored(self) -> None:
        assert UPLOAD_KINDS["workplan"].accepts("plan.pdf", "application/pdf; charset=binary")

    def test_reject_messages(self) -> None:
        assert UPLOAD_KINDS["reminder"].reject_message == "Only image files are allowed"
        assert UPLOAD_KINDS["document"].reject_message == "File type not allowed"


def test_kind_table() -> None:
    assert {k: (v.folder, v.prefix, v.max_size) for k, v in UPLOAD_KINDS.items()} == {
        "event": ("events", "event-", 5 * 1024 * 1024),
        "document": ("documents", "doc-", 10 * 1024 * 1024),
        "reminder": ("reminders", "reminder-", 5 * 1024 * 1024),
        "workplan": ("workplan", "workplan-", 10 * 1024 * 1024),
    }


# ── Paths ────────────────────────────────────────────────────────────────────


class TestResolveUploadPath:
    def test_round_trip_with_public_url(self, tmp_path: Path) -> None:
        url = public_url(UPLOAD_KINDS["document"], "doc-1-2.pdf")
        assert url == "/uploads/documents/doc-1-2.pdf"
        assert resolve_upload_path(url, tmp_path) == (tmp_path / "documents" / "doc-1-2.pdf").resolve()

    def test_empty_reference(self, tmp_path: Path) -> None:
        assert resolve_upload_path(None, tmp_path) is None
        assert resolve_upload_path("", tmp_path) is None

    def test_traversal_refused(self, tmp_path: Path) -> None:
        assert resolve_upload_path("/uploads/../../etc/passwd", tmp_path) is None

    def test_root_itself_refused(self, tmp_path: Path) -> None:
        assert resolve_upload_path("/uploads/", tmp_path) is None


# ── stage_upload ─────────────────────────────────────────────────────────────


class TestStageUpload:
    def test_no_file(self, tmp_path: Path) -> None:
        assert stage_upload(None, TINY, tmp_path) is None

    def test_empty_filename_means_no_file(self, tmp_path: Path) -> None:
        assert stage_upload(upload("", "application/octet-stream"), TINY, tmp_path) is None

    def test_writes_file_with_generated_name(self, tmp_path: Path) -> None:
        staged = stage_upload(upload("Poster.PNG", "image/png", b"12345"), TINY, tmp_path)
        assert staged is not None
        assert staged.path.read_bytes() == b"12345"
        assert staged.size == 5
        assert re.fullmatch(r"event-\d+-\d+\.png", staged.path.name)
        assert staged.url == f"/uploads/events/{staged.path.name}"

    def test_names_are_unique(self, tmp_path: Path) -> None:
        a = stage_upload(upload("a.png", "image/png"), TINY, tmp_path)
        b = stage_upload(upload("a.png", "image/png"), TINY, tmp_path)
        assert a.path != b.path

    def test_rejected_type_writes_nothing(self, tmp_path: Path) -> None:
        with pytest.raises(UploadRejected, match="Only image files are allowed"):
            stage_upload(upload("virus.exe", "application/x-msdownload"), TINY, tmp_path)
        assert not (tmp_path / "events").exists()

    def test_too_large_removes_partial_file(self, tmp_path: Path) -> None:
        with pytest.raises(UploadRejected) as excinfo:
            stage_upload(upload("big.png", "image/png", b"x" * 11), TINY, tmp_path)
        assert excinfo.value.status_code == 400
        assert list((tmp_path / "events").iterdir()) == []

    def test_exactly_max_size_accepted(self, tmp_path: Path) -> None:
        staged = stage_upload(upload("ok.png", "image/png", b"x" * 10), TINY, tmp_path)
        assert staged.size == 10

    def test_size_message_in_megabytes(self, tmp_path: Path) -> None:
        kind = UPLOAD_KINDS["event"]
        data = b"x" * (kind.max_size + 1)
        with pytest.raises(UploadRejected, match=r"File too large \(max 5 MB\)"):
            stage_upload(upload("big.png", "image/png", data), kind, tmp_path)


# ── FileCleaner ──────────────────────────────────────────────────────────────


class TestFileCleaner:
    def test_remove_now(self, tmp_path: Path) -> None:
        target = tmp_path / "f.txt"
        target.write_text("x")
        cleaner = FileCleaner()
        assert cleaner.remove_now(target, "test file") is True
        assert not target.exists()

    def test_remove_now_missing_file_is_fine(self, tmp_path: Path) -> None:
        assert FileCleaner().remove_now(tmp_path / "gone.txt") is True

    def test_none_path_ignored(self) -> None:
        cleaner = FileCleaner()
        cleaner.schedule(None)
        assert cleaner.remove_now(None) is True
        assert cleaner.pending == []

    def test_schedule_waits_for_drain(self, tmp_path: Path) -> None:
        target = tmp_path / "old.png"
        target.write_bytes(b"x")
        cleaner = FileCleaner()
        cleaner.schedule(target, "old image")
        assert target.exists()
        assert cleaner.pending == [target]

        assert cleaner.drain() == 1
        assert not target.exists()
        assert cleaner.pending == []

    def test_failed_delete_is_retried(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        target = tmp_path / "locked.png"
        target.write_bytes(b"x")
        cleaner = FileCleaner()

        with patch.object(Path, "unlink", side_effect=PermissionError("busy")):
            assert cleaner.remove_now(target, "orphaned image") is False
        assert cleaner.pending == [target]
        assert "Failed to delete orphaned image" in caplog.text

        assert cleaner.drain() == 1
        assert not target.exists()

    def test_gives_up_after_max_attempts(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        target = tmp_path / "stuck.png"
        cleaner = FileCleaner(max_attempts=2)
        cleaner.schedule(target)

        with patch.object(Path, "unlink", side_effect=OSError("io error")):
            cleaner.drain()
            assert cleaner.pending == [target]
            cleaner.drain()

        assert cleaner.pending == []
        assert cleaner.abandoned == [target]
        assert "Giving up deleting" in caplog.text

    def test_abandoned_list_is_capped(self, tmp_path: Path) -> None:
        cleaner = FileCleaner(max_attempts=1, max_abandoned=3)
        targets = [tmp_path / f"stuck-{i}.png" for i in range(5)]
        for target in targets:
            cleaner.schedule(target)

        with patch.object(Path, "unlink", side_effect=OSError("io error")):
            cleaner.drain()

        assert cleaner.pending == []
        assert cleaner.abandoned == targets[-3:]
