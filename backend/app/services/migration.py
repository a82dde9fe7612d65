from __future__ import annotations

import logging
import pathlib
import re
import shutil
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlparse

import httpx
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.book import StorageType, TopicBook
from app.services.binary_targets import BinaryTarget, BucketTarget, ReleaseTarget, delete_binary_best_effort
from app.services.books import BookRecorder
from app.services.releases import ReleaseClient
from app.services.staging import COVER_EXTENSIONS, Blob, BlobStager, safe_filename
from app.services.storage import BucketStore


log = logging.getLogger(__name__)

_DISPOSITION_RE = re.compile(r"filename\*=UTF-8''(.+)$|filename=\"?([^\";]+)\"?", re.IGNORECASE)
_LEGACY_COVER_RE = re.compile(r"/uploads/books/(.+)$")


class SourceFetcher:
    """Resolves a record's current bytes into a local temp file owned by the given stager."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        local_dir: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.migration_base_url).rstrip("/")
        self.local_dir = local_dir if local_dir is not None else settings.local_uploads_dir
        self._transport = transport

    def fetch(self, book: TopicBook, stager: BlobStager) -> Blob:
        url = str(book.pdf_url or "").strip()
        if not url:
            raise ValueError("Missing pdf_url")

        if url.startswith("http://") or url.startswith("https://"):
            return self.download(url, stager)

        local = self.local_path(url)
        if local is not None:
            return self._copy_local(local, stager, filename=book.pdf_filename)
        return self.download(f"{self.base_url}/{url.lstrip('/')}", stager)

    def local_path(self, url: str) -> pathlib.Path | None:
        if not self.local_dir:
            return None
        rel = url.lstrip("/")
        if rel.startswith("uploads/"):
            rel = rel[len("uploads/"):]
        root = pathlib.Path(self.local_dir).resolve()
        candidate = (root / rel).resolve()
        if root not in candidate.parents or not candidate.is_file():
            return None
        return candidate

    def _copy_local(self, src: pathlib.Path, stager: BlobStager, *, filename: str | None) -> Blob:
        name = str(filename or "").strip() or src.name
        dest = stager.new_temp_path(name)
        shutil.copyfile(src, dest)
        return Blob(filename=name, content_type="application/pdf", size=dest.stat().st_size, path=dest)

    def download(self, url: str, stager: BlobStager) -> Blob:
        timeout = httpx.Timeout(float(settings.migration_download_timeout_seconds), connect=10.0)
        with httpx.Client(timeout=timeout, follow_redirects=True, transport=self._transport) as client:
            with client.stream("GET", url, headers={"User-Agent": "GyanDhara-App/1.0"}) as resp:
                resp.raise_for_status()
                name = self._filename(resp, url)
                dest = stager.new_temp_path(name)
                with open(dest, "wb") as out:
                    for chunk in resp.iter_bytes(1024 * 1024):
                        out.write(chunk)
                content_type = str(resp.headers.get("content-type") or "").split(";", 1)[0].strip()
        return Blob(
            filename=name,
            content_type=content_type or "application/pdf",
            size=dest.stat().st_size,
            path=dest,
        )

    @staticmethod
    def _filename(resp: httpx.Response, url: str) -> str:
        disposition = str(resp.headers.get("content-disposition") or "")
        m = _DISPOSITION_RE.search(disposition)
        raw = (m.group(1) or m.group(2)) if m else ""
        if not raw:
            raw = pathlib.PurePosixPath(unquote(urlparse(url).path)).name
        return re.sub(r"\s+", "_", raw.strip()) or "document.pdf"


@dataclass
class MigrationReport:
    target: str
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    remaining: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "target": self.target,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
            "remaining": self.remaining,
            "finished": self.remaining == 0,
        }


class MigrationSweeper:
    """Moves every record not yet on the target backend onto it, one record at a time.

    A failing record is reported in-band and the sweep moves on.
    """

    def __init__(
        self,
        db: Session,
        target: BinaryTarget,
        fetcher: SourceFetcher,
        *,
        releases: ReleaseClient,
        store: BucketStore,
    ):
        self.recorder = BookRecorder(db)
        self.target = target
        self.fetcher = fetcher
        self.releases = releases
        self.store = store

    def run(self, *, limit: int | None = None, include_inactive: bool = True) -> MigrationReport:
        target = self.target.storage_type
        report = MigrationReport(target=target)
        books = self.recorder.pending_migration(target, limit=limit)
        if not books:
            return report

        try:
            self.target.prepare()
        except Exception as e:
            # Without a container nothing can move; every record fails the same way.
            log.exception("migration target unavailable target=%s", target)
            for book in books:
                report.failed += 1
                report.errors.append({"id": str(book.id), "title": book.title, "error": str(e)})
            report.remaining = self.recorder.count_pending_migration(target, include_inactive=include_inactive)
            return report

        for book in books:
            if not include_inactive and not book.is_active:
                report.skipped += 1
                continue
            book_id, title = str(book.id), book.title
            try:
                self._migrate_one(book)
                report.migrated += 1
            except Exception as e:
                report.failed += 1
                report.errors.append({"id": book_id, "title": title, "error": str(e) or type(e).__name__})
                log.warning("migration failed book_id=%s error=%s", book_id, e)

        report.remaining = self.recorder.count_pending_migration(target, include_inactive=include_inactive)
        log.info(
            "migration sweep target=%s migrated=%s skipped=%s failed=%s remaining=%s",
            target,
            report.migrated,
            report.skipped,
            report.failed,
            report.remaining,
        )
        return report

    def _migrate_one(self, book: TopicBook) -> None:
        with BlobStager(self.store) as stager:
            blob = self.fetcher.fetch(book, stager)
            stored = self.target.store(blob, name=book.title or blob.filename)
            fields = stored.record_fields()
            fields["pdf_filename"] = blob.filename
            try:
                self.recorder.update(book, fields)
            except Exception:
                # The record still points at the old binary; drop the copy nobody references.
                log.warning(
                    "discarding migrated binary book_id=%s asset_id=%s key=%s",
                    book.id,
                    stored.asset_id,
                    stored.object_key,
                )
                delete_binary_best_effort(
                    storage_type=stored.storage_type,
                    asset_id=stored.asset_id,
                    object_key=stored.object_key,
                    pdf_url=stored.download_url,
                    releases=self.releases,
                    store=self.store,
                )
                raise


def build_target(name: str | None, *, releases: ReleaseClient, store: BucketStore) -> BinaryTarget:
    name = str(name or settings.migration_target).strip()
    if name == StorageType.github_release.value:
        return ReleaseTarget(releases)
    if name == StorageType.supabase_storage.value:
        return BucketTarget(store)
    raise ValueError(f"Unknown migration target: {name!r}")


@dataclass
class CoverMigrationReport:
    updated: int = 0
    missing_file: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "updated": self.updated,
            "missingFile": self.missing_file,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class CoverSweeper:
    """Moves covers still served from the legacy uploads directory into the bucket."""

    def __init__(self, db: Session, fetcher: SourceFetcher, *, store: BucketStore, prefix: str | None = None):
        self.recorder = BookRecorder(db)
        self.fetcher = fetcher
        self.store = store
        self.prefix = prefix or settings.legacy_covers_prefix

    def run(self) -> CoverMigrationReport:
        report = CoverMigrationReport()
        for book in self.recorder.legacy_cover_candidates():
            m = _LEGACY_COVER_RE.search(str(book.cover_image_url or "").strip())
            if not m:
                report.skipped += 1
                continue
            name = m.group(1)
            local = self.fetcher.local_path(f"/uploads/books/{name}")
            book_id, title = str(book.id), book.title
            if local is None:
                report.missing_file += 1
                report.errors.append(
                    {"id": book_id, "title": title, "error": "file_not_found", "filePath": f"books/{name}"}
                )
                continue
            try:
                self._migrate_one(book, local)
                report.updated += 1
            except Exception as e:
                report.errors.append({"id": book_id, "title": title, "error": str(e) or type(e).__name__})
                log.warning("cover migration failed book_id=%s error=%s", book_id, e)

        log.info(
            "cover sweep updated=%s missing=%s skipped=%s errors=%s",
            report.updated,
            report.missing_file,
            report.skipped,
            len(report.errors),
        )
        return report

    def _migrate_one(self, book: TopicBook, local: pathlib.Path) -> None:
        key = f"{self.prefix}{safe_filename(local.name, default='cover')}"
        with open(local, "rb") as fh:
            self.store.upload(key, fh, _cover_content_type(local.name), upsert=True)
        try:
            self.recorder.update(book, {"cover_image_url": self.store.public_url(key)})
        except Exception:
            self.store.delete(key)
            raise


def _cover_content_type(filename: str) -> str:
    ext = pathlib.PurePath(filename).suffix.lower()
    for content_type, exts in COVER_EXTENSIONS.items():
        if ext in exts:
            return content_type
    return "application/octet-stream"
