from __future__ import annotations

import io
import logging
import os
import pathlib
import re
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from typing import BinaryIO

from fastapi import UploadFile

from app.core.config import settings
from app.core.errors import (
    FileTooLarge,
    FileTooSmall,
    InvalidFileType,
    MissingField,
    StagingUnavailable,
    ValidationError,
)
from app.services.storage import BucketStore


log = logging.getLogger(__name__)

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}
PDF_MAGIC = b"%PDF-"
COVER_EXTENSIONS = {
    "image/jpeg": {".jpg", ".jpeg"},
    "image/png": {".png"},
    "image/webp": {".webp"},
}

_MB = 1024 * 1024


def _ext(filename: str) -> str:
    return pathlib.PurePath(str(filename or "")).suffix.lower()


def safe_filename(filename: str, *, default: str = "document.pdf") -> str:
    name = pathlib.PurePath(str(filename or "")).name
    name = re.sub(r"\s+", "_", name.strip())
    name = re.sub(r"[^A-Za-z0-9\-_.]+", "-", name).strip("-")
    return re.sub(r"-+", "-", name)[:150] or default


@dataclass
class Blob:
    """A validated file handed to the binary stores: in memory or on local disk."""

    filename: str
    content_type: str
    size: int
    path: pathlib.Path | None = None
    data: bytes | None = None
    staged_key: str | None = None

    def open(self) -> BinaryIO:
        if self.data is not None:
            return io.BytesIO(self.data)
        if self.path is None:
            raise ValueError("blob has neither data nor path")
        return open(self.path, "rb")

    def head(self, n: int) -> bytes:
        with self.open() as fh:
            return fh.read(n)


def cover_allowed_types() -> set[str]:
    return {t.strip().lower() for t in str(settings.cover_allowed_types or "").split(",") if t.strip()}


def validate_pdf_meta(filename: str | None, content_type: str | None, size: int | None) -> None:
    fn = str(filename or "").strip()
    ct = str(content_type or "").split(";", 1)[0].strip().lower()
    if _ext(fn) != ".pdf" or (ct and ct not in PDF_CONTENT_TYPES):
        raise InvalidFileType("Only PDF files are allowed")
    if size is None:
        return
    if int(size) <= 0:
        raise ValidationError("PDF file is empty")
    max_bytes = int(settings.pdf_max_bytes)
    min_bytes = int(settings.pdf_min_bytes)
    if int(size) > max_bytes:
        raise FileTooLarge(
            f"PDF file size ({size / _MB:.2f}MB) exceeds {max_bytes / _MB:.0f}MB maximum limit"
        )
    if min_bytes > 0 and int(size) < min_bytes:
        raise FileTooSmall(
            f"PDF file size ({size / _MB:.2f}MB) is less than {min_bytes / _MB:.0f}MB minimum"
        )


def validate_cover_meta(filename: str | None, content_type: str | None, size: int | None) -> None:
    ct = str(content_type or "").split(";", 1)[0].strip().lower()
    allowed = cover_allowed_types()
    if ct not in allowed or _ext(str(filename or "")) not in COVER_EXTENSIONS.get(ct, set()):
        raise InvalidFileType("Only images (JPEG, PNG, WebP) are allowed for cover")
    if size is not None and int(size) > int(settings.cover_max_bytes):
        raise FileTooLarge(f"Cover image must be less than {settings.cover_max_bytes / _MB:.0f}MB")


def upload_size(upload: UploadFile) -> int:
    size = getattr(upload, "size", None)
    if size is not None:
        return int(size)
    fh = upload.file
    pos = fh.tell()
    fh.seek(0, os.SEEK_END)
    end = fh.tell()
    fh.seek(pos)
    return int(end)


class BlobStager:
    """Turns incoming files into validated Blobs and owns every temp file it creates.

    Use as a context manager; temp files are removed on exit whatever happened.
    """

    def __init__(self, store: BucketStore, *, tmp_dir: str | None = None, threshold_bytes: int | None = None):
        self.store = store
        self.tmp_dir = tmp_dir or settings.upload_tmp_dir or tempfile.gettempdir()
        self.threshold_bytes = int(threshold_bytes if threshold_bytes is not None else settings.staging_threshold_bytes)
        self._temp_paths: list[pathlib.Path] = []
        self._staged_keys: list[str] = []

    def __enter__(self) -> "BlobStager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def temp_paths(self) -> list[pathlib.Path]:
        return list(self._temp_paths)

    def new_temp_path(self, filename: str) -> pathlib.Path:
        pathlib.Path(self.tmp_dir).mkdir(parents=True, exist_ok=True)
        fd, raw = tempfile.mkstemp(prefix=f"{uuid.uuid4().hex[:12]}-", suffix=f"-{safe_filename(filename)}", dir=self.tmp_dir)
        os.close(fd)
        path = pathlib.Path(raw)
        self._temp_paths.append(path)
        return path

    def cleanup(self) -> None:
        while self._temp_paths:
            path = self._temp_paths.pop()
            try:
                path.unlink(missing_ok=True)
            except OSError:
                log.warning("failed to remove temp file path=%s", path)

    def accept_pdf(self, upload: UploadFile) -> Blob:
        size = upload_size(upload)
        validate_pdf_meta(upload.filename, upload.content_type, size)
        blob = self._buffer(upload, size=size, content_type="application/pdf")
        self._check_pdf_magic(blob)
        return blob

    def accept_cover(self, upload: UploadFile) -> Blob:
        size = upload_size(upload)
        validate_cover_meta(upload.filename, upload.content_type, size)
        ct = str(upload.content_type or "").split(";", 1)[0].strip().lower()
        return self._buffer(upload, size=size, content_type=ct)

    def _buffer(self, upload: UploadFile, *, size: int, content_type: str) -> Blob:
        fh = upload.file
        fh.seek(0)
        filename = str(upload.filename or "document.pdf")
        if size <= self.threshold_bytes:
            return Blob(filename=filename, content_type=content_type, size=size, data=fh.read())

        path = self.new_temp_path(filename)
        with open(path, "wb") as out:
            shutil.copyfileobj(fh, out, length=1024 * 1024)
        return Blob(filename=filename, content_type=content_type, size=path.stat().st_size, path=path)

    def _check_pdf_magic(self, blob: Blob) -> None:
        if blob.head(len(PDF_MAGIC)) != PDF_MAGIC:
            raise InvalidFileType("Only PDF files are allowed")

    # -- client-side staging through the intermediate store --

    def staging_key(self, filename: str) -> str:
        prefix = str(settings.staging_prefix or "staging/")
        if not prefix.endswith("/"):
            prefix += "/"
        return f"{prefix}{uuid.uuid4()}-{safe_filename(filename)}"

    def presign(self, filename: str, *, size_bytes: int | None = None) -> dict[str, object]:
        validate_pdf_meta(filename, "application/pdf", size_bytes)
        key = self.staging_key(filename)
        # Not bound to Content-Type: browsers may send a different one.
        url = self.store.presign_put(key)
        return {"object_key": key, "upload_url": url, "threshold_bytes": self.threshold_bytes}

    def fetch_staged(self, object_key: str, *, filename: str | None = None) -> Blob:
        key = str(object_key or "").strip()
        prefix = str(settings.staging_prefix or "staging/")
        if not key:
            raise MissingField("staged_object_key is empty")
        if not key.startswith(prefix) or ".." in key:
            raise ValidationError("staged_object_key is outside the staging area")

        fn = str(filename or "").strip() or pathlib.PurePath(key).name.split("-", 5)[-1]
        info = self.store.head(key)
        if info is None:
            raise StagingUnavailable(f"staged object not found: {key}")
        # Presigned PUTs are not bound to a Content-Type; the magic bytes decide.
        validate_pdf_meta(fn, None, int(info.get("size") or 0))

        path = self.new_temp_path(fn)
        size = self.store.download_to(key, path)
        blob = Blob(filename=fn, content_type="application/pdf", size=size, path=path, staged_key=key)
        self._check_pdf_magic(blob)
        self._staged_keys.append(key)
        return blob

    def discard_staged(self) -> None:
        """Drop consumed staged objects; only called once the record is written."""
        while self._staged_keys:
            key = self._staged_keys.pop()
            if not self.store.delete(key):
                log.warning("staged object left behind key=%s", key)
