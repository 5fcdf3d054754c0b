"""Tests for attachment filesystem storage and upload reading."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from agrichain.core.errors import ValidationError
from agrichain.modules.provenance.attachments import (
    AttachmentStorage,
    read_upload,
    sanitize_filename,
)
from agrichain.modules.provenance.claims import FileUpload


def _make_upload(
    content: bytes,
    filename: str = "cert.pdf",
    content_type: str | None = None,
) -> UploadFile:
    headers = Headers({"content-type": content_type}) if content_type else None
    return UploadFile(file=io.BytesIO(content), filename=filename, headers=headers)


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            ("cert.pdf", "cert.pdf"),
            ("../../etc/passwd", "passwd"),
            ("my report (final).pdf", "myreportfinal.pdf"),
            ("...", "attachment.bin"),
            ("", "attachment.bin"),
        ],
    )
    def test_sanitize(self, filename: str, expected: str) -> None:
        assert sanitize_filename(filename) == expected


class TestReadUpload:
    @pytest.mark.asyncio
    async def test_reads_content_and_type(self) -> None:
        upload = await read_upload(
            _make_upload(b"%PDF-1.4", content_type="application/pdf"), max_bytes=100
        )
        assert upload == FileUpload("cert.pdf", b"%PDF-1.4", "application/pdf")

    @pytest.mark.asyncio
    async def test_guesses_missing_content_type(self) -> None:
        upload = await read_upload(_make_upload(b"hello", filename="notes.txt"), max_bytes=100)
        assert upload.content_type == "text/plain"

    @pytest.mark.asyncio
    async def test_rejects_oversized_upload(self) -> None:
        with pytest.raises(ValidationError):
            await read_upload(_make_upload(b"x" * 11), max_bytes=10)


class TestAttachmentStorage:
    @pytest.mark.asyncio
    async def test_save_and_read(self, tmp_path: Path) -> None:
        storage = AttachmentStorage(tmp_path)
        stored = await storage.save("FARM001", FileUpload("cert.pdf", b"abc", "application/pdf"))

        path = Path(stored.storage_path)
        assert path.parent == tmp_path / "FARM001"
        assert stored.stored_name.endswith("_cert.pdf")
        assert stored.original_name == "cert.pdf"
        assert stored.size_bytes == 3
        assert await storage.read(stored.storage_path) == b"abc"

    @pytest.mark.asyncio
    async def test_same_name_never_collides(self, tmp_path: Path) -> None:
        storage = AttachmentStorage(tmp_path)
        upload = FileUpload("cert.pdf", b"abc")
        first = await storage.save("FARM001", upload)
        second = await storage.save("FARM001", upload)
        assert first.storage_path != second.storage_path

    @pytest.mark.asyncio
    async def test_remove_ignores_missing_files(self, tmp_path: Path) -> None:
        storage = AttachmentStorage(tmp_path)
        stored = await storage.save("FARM001", FileUpload("cert.pdf", b"abc"))
        await storage.remove([stored.storage_path, str(tmp_path / "missing.bin")])
        assert not Path(stored.storage_path).exists()

    @pytest.mark.asyncio
    async def test_save_all_rolls_back_on_write_failure(self, tmp_path: Path) -> None:
        storage = AttachmentStorage(tmp_path)
        uploads = [FileUpload("a.pdf", b"a"), FileUpload("b.pdf", b"b")]
        original_write = AttachmentStorage._write
        calls = {"count": 0}

        def _flaky_write(directory: Path, path: Path, content: bytes) -> None:
            calls["count"] += 1
            if calls["count"] == 2:
                raise OSError("disk full")
            original_write(directory, path, content)

        with patch.object(AttachmentStorage, "_write", staticmethod(_flaky_write)):
            with pytest.raises(OSError):
                await storage.save_all("FARM001", uploads)

        assert [path for path in tmp_path.rglob("*") if path.is_file()] == []
