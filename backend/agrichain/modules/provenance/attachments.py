"""Attachment byte storage on the local filesystem."""

from __future__ import annotations

import asyncio
import mimetypes
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from fastapi import UploadFile

from agrichain.core.errors import ValidationError
from agrichain.core.logging import get_logger
from agrichain.modules.provenance.claims import FileUpload

logger = get_logger(__name__)

_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class StoredFile:
    """Location of bytes written for one upload."""

    original_name: str
    stored_name: str
    storage_path: str
    size_bytes: int
    content_type: str


def sanitize_filename(filename: str) -> str:
    keep = [ch for ch in Path(filename).name if ch.isalnum() or ch in {"-", "_", "."}]
    sanitized = "".join(keep).strip(".")
    return sanitized or "attachment.bin"


async def read_upload(upload_file: UploadFile, *, max_bytes: int) -> FileUpload:
    """Read a multipart upload into memory, enforcing the per-file size limit while streaming."""
    filename = upload_file.filename or "attachment.bin"
    chunks: list[bytes] = []
    size_bytes = 0
    while True:
        chunk = await upload_file.read(_CHUNK_SIZE)
        if not chunk:
            break
        size_bytes += len(chunk)
        if size_bytes > max_bytes:
            raise ValidationError(
                f"Attachment exceeds max upload size ({max_bytes} bytes)",
                errors=[f"{filename}: file exceeds {max_bytes} bytes"],
            )
        chunks.append(chunk)

    content_type = (
        upload_file.content_type
        or mimetypes.guess_type(filename, strict=False)[0]
        or "application/octet-stream"
    )
    return FileUpload(filename=filename, content=b"".join(chunks), content_type=content_type)


class AttachmentStorage:
    """Writes attachment bytes under ``<root>/<producer_id>/<uuid>_<name>``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    async def save(self, producer_id: str, upload: FileUpload) -> StoredFile:
        original = upload.filename or "attachment.bin"
        stored_name = f"{uuid4().hex}_{sanitize_filename(original)}"
        directory = self._root / sanitize_filename(producer_id)
        path = directory / stored_name

        await asyncio.to_thread(self._write, directory, path, upload.content)
        logger.debug("attachment_written", path=str(path), size_bytes=upload.size)

        return StoredFile(
            original_name=original,
            stored_name=stored_name,
            storage_path=str(path),
            size_bytes=upload.size,
            content_type=upload.content_type,
        )

    async def save_all(self, producer_id: str, uploads: Iterable[FileUpload]) -> list[StoredFile]:
        """Write every upload; if one write fails the earlier ones are removed."""
        stored: list[StoredFile] = []
        try:
            for upload in uploads:
                stored.append(await self.save(producer_id, upload))
        except OSError:
            await self.remove(item.storage_path for item in stored)
            raise
        return stored

    async def remove(self, paths: Iterable[str]) -> None:
        for path in list(paths):
            try:
                await asyncio.to_thread(Path(path).unlink, True)
            except OSError:
                logger.warning("attachment_cleanup_failed", path=path, exc_info=True)

    async def read(self, storage_path: str) -> bytes:
        return await asyncio.to_thread(Path(storage_path).read_bytes)

    @staticmethod
    def _write(directory: Path, path: Path, content: bytes) -> None:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
