from __future__ import annotations

import logging
import random
import time
from typing import Any

from fastapi import UploadFile
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import MissingField
from app.models.book import StorageType
from app.services.binary_targets import ReleaseTarget, StoredBinary, delete_binary_best_effort
from app.services.books import BookRecorder, book_to_dict, get_topic, resolve_bucket_topic
from app.services.releases import ReleaseClient
from app.services.staging import (
    Blob,
    BlobStager,
    safe_filename,
    upload_size,
    validate_cover_meta,
    validate_pdf_meta,
)
from app.services.storage import BucketStore


log = logging.getLogger(__name__)


def _has_file(upload: UploadFile | None) -> bool:
    return upload is not None and bool(str(upload.filename or "").strip())


class BookUploadService:
    """Upload, replace and delete book PDFs.

    Per request: validate, stage, upload the binary, then record metadata.
    Nothing is written to topic_books until the binary is stored, and every
    temp file is gone when a call returns or raises.
    """

    def __init__(self, db: Session, *, releases: ReleaseClient, store: BucketStore):
        self.db = db
        self.releases = releases
        self.store = store
        self.recorder = BookRecorder(db)

    def upload(
        self,
        fields: dict[str, Any],
        *,
        topic_id: str | None = None,
        theme_id: str | None = None,
        pdf: UploadFile | None = None,
        cover: UploadFile | None = None,
        staged_object_key: str | None = None,
        pdf_filename: str | None = None,
    ) -> dict[str, Any]:
        title = str(fields.get("title") or "").strip()
        staged_key = str(staged_object_key or "").strip()
        if not (topic_id or theme_id) or not title or not (_has_file(pdf) or staged_key):
            raise MissingField(
                "Missing required fields: theme_id (or topic_id), title, and pdf file are required"
            )
        self._validate_files(pdf, cover)

        if topic_id:
            topic = get_topic(self.db, topic_id)
        else:
            topic = resolve_bucket_topic(self.db, str(theme_id))

        with BlobStager(self.store) as stager:
            blob = self._stage_pdf(stager, pdf, staged_key, pdf_filename)
            cover_blob = stager.accept_cover(cover) if _has_file(cover) else None

            target = ReleaseTarget(self.releases)
            stored = target.store(blob, name=title)
            try:
                cover_url = self._store_cover(cover_blob) if cover_blob is not None else None
                record = dict(fields)
                record.update(stored.record_fields())
                record.update(
                    topic_id=topic.id,
                    title=title,
                    pdf_filename=blob.filename,
                    cover_image_url=cover_url,
                    is_active=True,
                )
                if record.get("book_number") is None:
                    record["book_number"] = 1
                if record.get("display_order") is None:
                    record["display_order"] = 1
                book = self.recorder.insert(record)
            except Exception:
                self._discard(stored)
                raise

            stager.discard_staged()

        log.info("book uploaded book_id=%s topic_id=%s asset_id=%s", book.id, topic.id, stored.asset_id)
        return {
            "success": True,
            "message": "PDF uploaded successfully to GitHub Releases",
            "book": book_to_dict(book),
            "storage": {
                "type": stored.storage_type,
                "release_tag": stored.release_tag,
                "download_url": stored.download_url,
            },
        }

    def update(
        self,
        book_id: str,
        fields: dict[str, Any],
        *,
        pdf: UploadFile | None = None,
        cover: UploadFile | None = None,
        staged_object_key: str | None = None,
        pdf_filename: str | None = None,
    ) -> dict[str, Any]:
        book = self.recorder.get(book_id)
        staged_key = str(staged_object_key or "").strip()
        replacing = _has_file(pdf) or bool(staged_key)
        self._validate_files(pdf if replacing else None, cover)

        changes = dict(fields)
        if "title" in changes and not str(changes.get("title") or "").strip():
            raise MissingField("Title cannot be empty")

        old = {
            "storage_type": book.storage_type,
            "asset_id": book.github_asset_id,
            "object_key": book.storage_object_key,
            "pdf_url": book.pdf_url,
        }

        with BlobStager(self.store) as stager:
            stored: StoredBinary | None = None
            if replacing:
                blob = self._stage_pdf(stager, pdf, staged_key, pdf_filename)
                stored = ReleaseTarget(self.releases).store(blob, name=changes.get("title") or book.title)
                changes.update(stored.record_fields())
                changes["pdf_filename"] = blob.filename

            try:
                if _has_file(cover):
                    cover_blob = stager.accept_cover(cover)
                    changes["cover_image_url"] = self._store_cover(cover_blob)
                book = self.recorder.update(book, changes)
            except Exception:
                if stored is not None:
                    self._discard(stored)
                raise

            stager.discard_staged()

        # Old binary goes only after the row points at the new one.
        if stored is not None and self._differs(old, stored):
            delete_binary_best_effort(releases=self.releases, store=self.store, **old)

        return {"success": True, "message": "Book updated successfully", "book": book_to_dict(book)}

    def delete(self, book_id: str) -> dict[str, Any]:
        book = self.recorder.get(book_id)
        binary = {
            "storage_type": book.storage_type,
            "asset_id": book.github_asset_id,
            "object_key": book.storage_object_key,
            "pdf_url": book.pdf_url,
        }
        bid = str(book.id)
        self.recorder.delete(book)

        removed = delete_binary_best_effort(releases=self.releases, store=self.store, **binary)
        if not removed and binary["storage_type"] != StorageType.local.value:
            log.warning("book deleted but binary kept book_id=%s storage_type=%s", bid, binary["storage_type"])
        return {"success": True, "message": "PDF deleted successfully", "binary_deleted": removed}

    def _validate_files(self, pdf: UploadFile | None, cover: UploadFile | None) -> None:
        if _has_file(pdf):
            validate_pdf_meta(pdf.filename, pdf.content_type, upload_size(pdf))
        if _has_file(cover):
            validate_cover_meta(cover.filename, cover.content_type, upload_size(cover))

    def _stage_pdf(
        self,
        stager: BlobStager,
        pdf: UploadFile | None,
        staged_key: str,
        pdf_filename: str | None,
    ) -> Blob:
        if _has_file(pdf):
            return stager.accept_pdf(pdf)
        return stager.fetch_staged(staged_key, filename=pdf_filename)

    def _store_cover(self, blob: Blob) -> str:
        prefix = str(settings.covers_prefix or "covers/")
        key = f"{prefix}{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{safe_filename(blob.filename, default='cover')}"
        with blob.open() as fh:
            self.store.upload(key, fh, blob.content_type, upsert=True)
        return self.store.public_url(key)

    def _discard(self, stored: StoredBinary) -> None:
        log.warning("discarding freshly stored binary asset_id=%s key=%s", stored.asset_id, stored.object_key)
        delete_binary_best_effort(
            storage_type=stored.storage_type,
            asset_id=stored.asset_id,
            object_key=stored.object_key,
            pdf_url=stored.download_url,
            releases=self.releases,
            store=self.store,
        )

    @staticmethod
    def _differs(old: dict[str, Any], stored: StoredBinary) -> bool:
        if old["storage_type"] == StorageType.github_release.value:
            return bool(old["asset_id"]) and old["asset_id"] != stored.asset_id
        if old["storage_type"] == StorageType.supabase_storage.value:
            return bool(old["object_key"] or old["pdf_url"]) and old["object_key"] != stored.object_key
        return False
