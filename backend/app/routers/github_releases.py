from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.core.errors import ValidationError
from app.core.queue import fetch_job, get_queue
from app.core.rate_limit import rate_limit
from app.core.security import require_admin
from app.db.session import get_db
from app.models.user import User
from app.schemas.book import (
    BookStatsResponse,
    JobEnqueuedResponse,
    JobStatusResponse,
    StagingPresignRequest,
    StagingPresignResponse,
)
from app.services.book_jobs import migrate_books_job
from app.services.book_uploads import BookUploadService
from app.services.books import BookRecorder, book_to_dict, parse_uuid
from app.services.migration import CoverSweeper, MigrationSweeper, SourceFetcher, build_target
from app.services.releases import ReleaseClient, get_release_client
from app.services.staging import BlobStager
from app.services.storage import BucketStore, get_bucket_store


router = APIRouter(prefix="/github-releases", tags=["github-releases"])


def get_source_fetcher() -> SourceFetcher:
    return SourceFetcher()


def _int_field(value: str | None, *, field: str) -> int | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid {field}") from e


def _text(value: str | None) -> str | None:
    v = str(value or "").strip()
    return v or None


def _metadata_fields(
    *,
    title: str | None,
    description: str | None,
    book_number: str | None,
    author: str | None,
    publisher: str | None,
    publication_year: str | None,
    isbn: str | None,
    display_order: str | None,
    is_active: str | None = None,
    partial: bool = False,
) -> dict[str, object]:
    """Form strings to column values. With partial=True, absent form fields are left out."""
    raw = {
        "title": title,
        "description": description,
        "author": author,
        "publisher": publisher,
        "isbn": isbn,
    }
    out: dict[str, object] = {}
    for k, v in raw.items():
        if partial and v is None:
            continue
        out[k] = v.strip() if k == "title" and v is not None else _text(v)

    for k, v in (("book_number", book_number), ("publication_year", publication_year), ("display_order", display_order)):
        n = _int_field(v, field=k)
        if partial and n is None:
            continue
        out[k] = n

    if is_active is not None:
        out["is_active"] = str(is_active).strip().lower() == "true"
    return out


@router.post("/upload-pdf")
def upload_pdf(
    topic_id: str | None = Form(default=None),
    theme_id: str | None = Form(default=None),
    title: str | None = Form(default=None),
    description: str | None = Form(default=None),
    book_number: str | None = Form(default=None),
    author: str | None = Form(default=None),
    publisher: str | None = Form(default=None),
    publication_year: str | None = Form(default=None),
    isbn: str | None = Form(default=None),
    display_order: str | None = Form(default=None),
    staged_object_key: str | None = Form(default=None),
    pdf_filename: str | None = Form(default=None),
    pdf: UploadFile | None = File(default=None),
    cover_image: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    releases: ReleaseClient = Depends(get_release_client),
    store: BucketStore = Depends(get_bucket_store),
    _: User = Depends(require_admin),
    __: object = rate_limit(key_prefix="github_releases_upload", limit=30, window_seconds=60),
):
    fields = _metadata_fields(
        title=title,
        description=description,
        book_number=book_number,
        author=author,
        publisher=publisher,
        publication_year=publication_year,
        isbn=isbn,
        display_order=display_order,
    )
    service = BookUploadService(db, releases=releases, store=store)
    return service.upload(
        fields,
        topic_id=_text(topic_id),
        theme_id=_text(theme_id),
        pdf=pdf,
        cover=cover_image,
        staged_object_key=staged_object_key,
        pdf_filename=pdf_filename,
    )


@router.post("/staging/presign", response_model=StagingPresignResponse)
def presign_staging_upload(
    body: StagingPresignRequest,
    store: BucketStore = Depends(get_bucket_store),
    _: User = Depends(require_admin),
    __: object = rate_limit(key_prefix="github_releases_presign", limit=60, window_seconds=60),
):
    return BlobStager(store).presign(body.filename, size_bytes=body.size_bytes)


@router.get("/pdfs")
def list_pdfs(
    topic_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    tid = parse_uuid(topic_id, field="topic_id") if topic_id else None
    books = BookRecorder(db).list_active(topic_id=tid)
    return {"success": True, "count": len(books), "books": [book_to_dict(b) for b in books]}


@router.get("/stats", response_model=BookStatsResponse)
def stats(db: Session = Depends(get_db)):
    return {"success": True, "stats": BookRecorder(db).stats()}


@router.post("/migrate-all")
def migrate_all(
    background: bool = Query(default=False),
    limit: int | None = Query(default=None, ge=1, le=5000),
    target: str | None = Query(default=None),
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    releases: ReleaseClient = Depends(get_release_client),
    store: BucketStore = Depends(get_bucket_store),
    fetcher: SourceFetcher = Depends(get_source_fetcher),
    _: User = Depends(require_admin),
):
    try:
        backend = build_target(target, releases=releases, store=store)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    if background:
        q = get_queue()
        job = q.enqueue(
            migrate_books_job,
            target=backend.storage_type,
            limit=limit,
            include_inactive=include_inactive,
            job_timeout=60 * 60 * 2,
            result_ttl=60 * 60 * 24,
            failure_ttl=60 * 60 * 24,
        )
        return JobEnqueuedResponse(enqueued=True, job_id=str(job.id))

    sweeper = MigrationSweeper(db, backend, fetcher, releases=releases, store=store)
    return sweeper.run(limit=limit, include_inactive=include_inactive).to_dict()


@router.post("/migrate-covers")
def migrate_covers(
    db: Session = Depends(get_db),
    store: BucketStore = Depends(get_bucket_store),
    fetcher: SourceFetcher = Depends(get_source_fetcher),
    _: User = Depends(require_admin),
):
    return CoverSweeper(db, fetcher, store=store).run().to_dict()


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def job_status(job_id: str, _: User = Depends(require_admin)):
    job = fetch_job(job_id)
    if job is None:
        return JobStatusResponse(id=str(job_id), status="missing", error_message="job not found")

    status = job.get_status(refresh=True)
    error_message = None
    if status == "failed":
        error_message = str((job.meta or {}).get("error_message") or "").strip() or None
        if error_message is None:
            lines = str(job.exc_info or "").strip().splitlines()
            error_message = lines[-1][:500] if lines else None
    return JobStatusResponse(
        id=job.id,
        status=str(status),
        enqueued_at=job.enqueued_at.isoformat() if job.enqueued_at else None,
        started_at=job.started_at.isoformat() if job.started_at else None,
        ended_at=job.ended_at.isoformat() if job.ended_at else None,
        result=job.return_value() if status == "finished" else None,
        error_message=error_message,
    )


@router.put("/pdf/{book_id}")
def update_pdf(
    book_id: str,
    title: str | None = Form(default=None),
    description: str | None = Form(default=None),
    book_number: str | None = Form(default=None),
    author: str | None = Form(default=None),
    publisher: str | None = Form(default=None),
    publication_year: str | None = Form(default=None),
    isbn: str | None = Form(default=None),
    display_order: str | None = Form(default=None),
    is_active: str | None = Form(default=None),
    staged_object_key: str | None = Form(default=None),
    pdf_filename: str | None = Form(default=None),
    pdf: UploadFile | None = File(default=None),
    cover_image: UploadFile | None = File(default=None),
    db: Session = Depends(get_db),
    releases: ReleaseClient = Depends(get_release_client),
    store: BucketStore = Depends(get_bucket_store),
    _: User = Depends(require_admin),
    __: object = rate_limit(key_prefix="github_releases_update", limit=60, window_seconds=60),
):
    fields = _metadata_fields(
        title=title,
        description=description,
        book_number=book_number,
        author=author,
        publisher=publisher,
        publication_year=publication_year,
        isbn=isbn,
        display_order=display_order,
        is_active=is_active,
        partial=True,
    )
    service = BookUploadService(db, releases=releases, store=store)
    return service.update(
        book_id,
        fields,
        pdf=pdf,
        cover=cover_image,
        staged_object_key=staged_object_key,
        pdf_filename=pdf_filename,
    )


@router.delete("/pdf/{book_id}")
def delete_pdf(
    book_id: str,
    db: Session = Depends(get_db),
    releases: ReleaseClient = Depends(get_release_client),
    store: BucketStore = Depends(get_bucket_store),
    _: User = Depends(require_admin),
):
    return BookUploadService(db, releases=releases, store=store).delete(book_id)


@router.get("/asset/{asset_id}")
def stream_asset(asset_id: str, releases: ReleaseClient = Depends(get_release_client)):
    try:
        aid = int(asset_id)
    except ValueError as e:
        raise ValidationError("Invalid assetId") from e

    info = releases.get_asset_metadata(aid)
    filename = (info.name or "document.pdf").replace('"', "")
    headers = {
        "Content-Disposition": f'inline; filename="{filename}"',
        "Cache-Control": "public, max-age=86400",
    }
    if info.size:
        headers["Content-Length"] = str(info.size)
    return StreamingResponse(releases.iter_asset_bytes(aid), media_type="application/pdf", headers=headers)
