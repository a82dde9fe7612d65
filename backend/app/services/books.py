from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, UpstreamFailure, ValidationError
from app.models.book import StorageType, TopicBook
from app.models.catalog import Theme, Topic


log = logging.getLogger(__name__)

_MB = 1024 * 1024
_GB = 1024 * 1024 * 1024

BOOK_FIELDS = (
    "topic_id",
    "title",
    "description",
    "author",
    "publisher",
    "publication_year",
    "isbn",
    "book_number",
    "display_order",
    "pdf_url",
    "pdf_filename",
    "file_size_bytes",
    "cover_image_url",
    "storage_type",
    "github_asset_id",
    "github_release_tag",
    "storage_object_key",
    "is_active",
)


def parse_uuid(value: object, *, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid {field}") from e


def book_to_dict(book: TopicBook) -> dict[str, Any]:
    out: dict[str, Any] = {"id": str(book.id)}
    for name in BOOK_FIELDS:
        value = getattr(book, name)
        out[name] = str(value) if isinstance(value, uuid.UUID) else value
    out["created_at"] = book.created_at.isoformat() if book.created_at else None
    out["updated_at"] = book.updated_at.isoformat() if book.updated_at else None
    size = int(book.file_size_bytes or 0)
    out["file_size_mb"] = f"{size / _MB:.2f}"
    out["is_github_release"] = book.storage_type == StorageType.github_release.value
    return out


def check_storage_fields(fields: dict[str, Any]) -> None:
    """One authoritative binary location: backend-specific fields must match storage_type."""
    st = fields.get("storage_type")
    if st == StorageType.github_release.value:
        if not fields.get("github_asset_id") or not fields.get("github_release_tag"):
            raise ValueError("github_release records need github_asset_id and github_release_tag")
    elif st == StorageType.supabase_storage.value:
        if fields.get("github_asset_id"):
            raise ValueError("supabase_storage records must not carry github_asset_id")


class BookRecorder:
    """Sole writer of topic_books rows.

    Called only after the binary is confirmed stored; never touches blob storage.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, book_id: uuid.UUID | str) -> TopicBook:
        bid = book_id if isinstance(book_id, uuid.UUID) else parse_uuid(book_id, field="book id")
        book = self.db.scalar(select(TopicBook).where(TopicBook.id == bid))
        if book is None:
            raise NotFoundError("Book not found")
        return book

    def list_active(self, *, topic_id: uuid.UUID | None = None) -> list[TopicBook]:
        q = select(TopicBook).where(TopicBook.is_active == True)  # noqa: E712
        if topic_id is not None:
            q = q.where(TopicBook.topic_id == topic_id)
        return list(self.db.scalars(q.order_by(TopicBook.display_order, TopicBook.created_at)).all())

    def insert(self, fields: dict[str, Any]) -> TopicBook:
        check_storage_fields(fields)
        book = TopicBook(**{k: v for k, v in fields.items() if k in BOOK_FIELDS})
        self.db.add(book)
        self._commit("insert")
        self.db.refresh(book)
        return book

    def update(self, book: TopicBook, fields: dict[str, Any]) -> TopicBook:
        merged = {name: getattr(book, name) for name in BOOK_FIELDS}
        merged.update(fields)
        check_storage_fields(merged)
        for name, value in fields.items():
            if name in BOOK_FIELDS:
                setattr(book, name, value)
        book.updated_at = datetime.utcnow()
        self.db.add(book)
        self._commit("update")
        self.db.refresh(book)
        return book

    def delete(self, book: TopicBook) -> None:
        self.db.delete(book)
        self._commit("delete")

    def _commit(self, op: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise UpstreamFailure(f"metadata {op} failed: {e}") from e

    def pending_migration(self, target: str, *, limit: int | None = None) -> list[TopicBook]:
        q = (
            select(TopicBook)
            .where(or_(TopicBook.storage_type.is_(None), TopicBook.storage_type != target))
            .order_by(TopicBook.created_at.asc(), TopicBook.id.asc())
        )
        if limit:
            q = q.limit(int(limit))
        return list(self.db.scalars(q).all())

    def count_pending_migration(self, target: str, *, include_inactive: bool = True) -> int:
        q = select(func.count(TopicBook.id)).where(
            or_(TopicBook.storage_type.is_(None), TopicBook.storage_type != target)
        )
        if not include_inactive:
            q = q.where(TopicBook.is_active == True)  # noqa: E712
        return int(self.db.scalar(q) or 0)

    def legacy_cover_candidates(self) -> list[TopicBook]:
        """Rows whose cover is missing or still points into the old uploads directory."""
        q = (
            select(TopicBook)
            .where(or_(TopicBook.cover_image_url.is_(None), TopicBook.cover_image_url.ilike("%/uploads/%")))
            .order_by(TopicBook.created_at.asc(), TopicBook.id.asc())
        )
        return list(self.db.scalars(q).all())

    def referenced_asset_ids(self) -> set[int]:
        rows = self.db.scalars(select(TopicBook.github_asset_id).where(TopicBook.github_asset_id.is_not(None))).all()
        return {int(r) for r in rows if r is not None}

    def stats(self) -> dict[str, Any]:
        rows = self.db.execute(select(TopicBook.file_size_bytes, TopicBook.storage_type)).all()
        total_bytes = sum(int(size or 0) for size, _ in rows)
        github = sum(1 for _, st in rows if st == StorageType.github_release.value)
        return {
            "total_pdfs": len(rows),
            "github_releases": github,
            "supabase_storage": len(rows) - github,
            "total_size_bytes": total_bytes,
            "total_size_gb": f"{total_bytes / _GB:.2f}",
        }


def bucket_topic_title(theme_name: str) -> str:
    return f"{theme_name} PDFs"


def resolve_bucket_topic(db: Session, theme_id: uuid.UUID | str) -> Topic:
    """Find or create the per-theme topic that holds books uploaded by theme.

    The partial unique index on bucket topics turns a concurrent duplicate insert
    into an IntegrityError, after which the winner is re-read.
    """
    tid = theme_id if isinstance(theme_id, uuid.UUID) else parse_uuid(theme_id, field="theme_id")
    theme = db.scalar(select(Theme).where(Theme.id == tid))
    if theme is None:
        raise NotFoundError("Theme not found")

    title = bucket_topic_title(theme.name)
    existing = _find_bucket_topic(db, theme.id, title)
    if existing is not None:
        return existing

    topic = Topic(
        theme_id=theme.id,
        theme_name=theme.name,
        title=title,
        summary=f"PDF books for {theme.name}",
        difficulty_level="easy",
        detected_language="en",
        is_verified=True,
        is_pinned=True,
        is_book_bucket=True,
        view_count=0,
        bookmark_count=0,
    )
    db.add(topic)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_bucket_topic(db, theme.id, title)
        if existing is None:
            raise
        return existing

    log.info("created bucket topic theme_id=%s topic_id=%s", theme.id, topic.id)
    return topic


def _find_bucket_topic(db: Session, theme_id: uuid.UUID, title: str) -> Topic | None:
    return db.scalar(
        select(Topic)
        .where(Topic.theme_id == theme_id)
        .where(or_(Topic.is_book_bucket == True, Topic.title == title))  # noqa: E712
        .order_by(Topic.is_book_bucket.desc(), Topic.created_at.asc())
        .limit(1)
    )


def get_topic(db: Session, topic_id: uuid.UUID | str) -> Topic:
    tid = topic_id if isinstance(topic_id, uuid.UUID) else parse_uuid(topic_id, field="topic_id")
    topic = db.scalar(select(Topic).where(Topic.id == tid))
    if topic is None:
        raise NotFoundError("Topic not found")
    return topic
