import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class StorageType(str, enum.Enum):
    local = "local"
    supabase_storage = "supabase_storage"
    github_release = "github_release"


class TopicBook(Base):
    __tablename__ = "topic_books"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    topic_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("topics.id", ondelete="CASCADE"), index=True)

    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(String(5000), nullable=True)
    author: Mapped[str | None] = mapped_column(String(300), nullable=True)
    publisher: Mapped[str | None] = mapped_column(String(300), nullable=True)
    publication_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    isbn: Mapped[str | None] = mapped_column(String(32), nullable=True)
    book_number: Mapped[int] = mapped_column(Integer, default=1)
    display_order: Mapped[int] = mapped_column(Integer, default=1)

    pdf_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    pdf_filename: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    cover_image_url: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # Stored as plain strings: legacy rows may carry NULL.
    storage_type: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    github_asset_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    github_release_tag: Mapped[str | None] = mapped_column(String(200), nullable=True)
    storage_object_key: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
