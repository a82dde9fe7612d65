from datetime import datetime, timedelta, timezone

from app.db.session import SessionLocal
from app.models.book import TopicBook
from app.services import book_jobs
from app.services.book_jobs import cleanup_staging_uploads_job, migrate_books_job, reconcile_release_assets_job
from app.services.storage import DELETE_BATCH, BucketStore

from conftest import PDF_BYTES, pdf_file


def test_staging_cleanup_only_removes_expired_objects(store):
    old = datetime.now(timezone.utc) - timedelta(hours=7)
    store.put("staging/old.pdf", PDF_BYTES, last_modified=old)
    store.put("staging/fresh.pdf", PDF_BYTES)
    store.put("covers/old.png", b"x", last_modified=old)

    out = cleanup_staging_uploads_job(ttl_hours=6, store=store)
    assert out["ok"] is True
    assert out["deleted_objects"] == 1
    assert out["deleted_bytes"] == len(PDF_BYTES)
    assert set(store.objects) == {"staging/fresh.pdf", "covers/old.png"}


def test_staging_cleanup_is_repeatable(store):
    store.put("staging/old.pdf", PDF_BYTES, last_modified=datetime.now(timezone.utc) - timedelta(days=2))
    assert cleanup_staging_uploads_job(ttl_hours=6, store=store)["deleted_objects"] == 1
    assert cleanup_staging_uploads_job(ttl_hours=6, store=store)["deleted_objects"] == 0


class _RecordingS3:
    """Lists `keys` two pages deep and records the size of every DeleteObjects call."""

    def __init__(self, keys, last_modified):
        self.keys = keys
        self.last_modified = last_modified
        self.delete_batches: list[int] = []

    def head_bucket(self, Bucket):
        return {}

    def list_objects_v2(self, Bucket, Prefix, MaxKeys, ContinuationToken=None):
        start = int(ContinuationToken or 0)
        page = self.keys[start : start + MaxKeys]
        out = {
            "Contents": [{"Key": k, "Size": 10, "LastModified": self.last_modified} for k in page],
            "IsTruncated": start + MaxKeys < len(self.keys),
        }
        if out["IsTruncated"]:
            out["NextContinuationToken"] = str(start + MaxKeys)
        return out

    def delete_objects(self, Bucket, Delete):
        self.delete_batches.append(len(Delete["Objects"]))
        return {}


def test_staging_cleanup_deletes_in_batches_of_at_most_1000():
    old = datetime.now(timezone.utc) - timedelta(hours=7)
    s3 = _RecordingS3([f"staging/{i}.pdf" for i in range(1001)], old)

    out = cleanup_staging_uploads_job(ttl_hours=6, store=BucketStore(bucket="books", client=s3))
    assert max(s3.delete_batches) <= DELETE_BATCH
    assert s3.delete_batches == [1000, 1]
    assert out["deleted_objects"] == 1001
    assert out["deleted_bytes"] == 10010


def test_reconcile_deletes_unreferenced_old_assets(client, fakes, admin_headers, topic):
    releases, _ = fakes
    r = client.post(
        "/github-releases/upload-pdf",
        headers=admin_headers,
        data={"topic_id": str(topic.id), "title": "Kept"},
        files={"pdf": pdf_file()},
    )
    kept = r.json()["book"]["github_asset_id"]

    releases.assets[1] = {"name": "1-orphan.pdf", "data": PDF_BYTES, "content_type": "application/pdf", "created_at": "2020-01-01T00:00:00Z"}
    young = datetime.now(timezone.utc).isoformat()
    releases.assets[2] = {"name": "2-inflight.pdf", "data": PDF_BYTES, "content_type": "application/pdf", "created_at": young}

    dry = reconcile_release_assets_job(min_age_hours=24, dry_run=True, releases=releases)
    assert dry["scanned"] == 3
    assert [o["asset_id"] for o in dry["orphaned"]] == [1]
    assert dry["deleted"] == 0
    assert 1 in releases.assets

    out = reconcile_release_assets_job(min_age_hours=24, releases=releases)
    assert out["deleted"] == 1
    assert out["release_tag"] == "pdf-storage-v1"
    assert set(releases.assets) == {kept, 2}


def test_migrate_job_runs_sweep_with_own_session(fakes, topic, monkeypatch):
    releases, store = fakes
    with SessionLocal() as db:
        db.add(
            TopicBook(
                topic_id=topic.id,
                title="No source",
                pdf_url=None,
                storage_type="local",
                created_at=datetime(2024, 1, 1),
            )
        )
        db.commit()

    out = migrate_books_job(limit=99999, releases=releases, store=store)
    assert out["limit"] == 5000
    assert out["failed"] == 1
    assert out["errors"][0]["error"] == "Missing pdf_url"
    assert out["finished"] is False


def test_job_meta_is_saved_when_running_in_rq(monkeypatch, store):
    saved = {}

    class _Job:
        id = "j1"
        meta = {}

        def save_meta(self):
            saved.update(self.meta)

    monkeypatch.setattr(book_jobs, "get_current_job", lambda: _Job())
    cleanup_staging_uploads_job(ttl_hours=1, store=store)
    assert saved["ok"] is True
    assert saved["deleted_objects"] == 0
