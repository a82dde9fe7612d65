from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from redis import RedisError
from rq import get_current_job

from app.core.config import settings
from app.db import session as session_module
from app.services.books import BookRecorder
from app.services.migration import CoverSweeper, MigrationSweeper, SourceFetcher, build_target
from app.services.releases import ReleaseClient, get_release_client
from app.services.storage import BucketStore, ensure_bucket_exists, get_bucket_store


log = logging.getLogger(__name__)


def _save_job_meta(out: dict) -> None:
    job = get_current_job()
    if job is None:
        return
    try:
        meta = dict(job.meta or {})
        meta.update(out)
        job.meta = meta
        job.save_meta()
    except RedisError:
        log.warning("failed to save job meta job_id=%s", job.id)


def migrate_books_job(
    *,
    target: str | None = None,
    limit: int | None = None,
    include_inactive: bool = True,
    releases: ReleaseClient | None = None,
    store: BucketStore | None = None,
) -> dict:
    """Run one migration sweep; per-record failures are in the returned report."""
    take = max(1, min(int(limit), 5000)) if limit else None
    releases = releases or get_release_client()
    store = store or get_bucket_store()

    db = session_module.SessionLocal()
    try:
        sweeper = MigrationSweeper(
            db,
            build_target(target, releases=releases, store=store),
            SourceFetcher(),
            releases=releases,
            store=store,
        )
        out = sweeper.run(limit=take, include_inactive=include_inactive).to_dict()
        out["limit"] = take
    finally:
        db.close()

    _save_job_meta(out)
    return out


def migrate_covers_job(*, store: BucketStore | None = None) -> dict:
    """Move legacy uploads-directory covers into the bucket; per-record failures are in the report."""
    store = store or get_bucket_store()
    db = session_module.SessionLocal()
    try:
        out = CoverSweeper(db, SourceFetcher(), store=store).run().to_dict()
    finally:
        db.close()

    _save_job_meta(out)
    return out


def cleanup_staging_uploads_job(
    *,
    prefix: str | None = None,
    ttl_hours: int | None = None,
    store: BucketStore | None = None,
) -> dict:
    """Best-effort cleanup of client-staged PDFs that were never consumed.

    Deletes objects under the staging prefix older than TTL. Safe to run repeatedly.
    """
    store = store or get_bucket_store()
    ensure_bucket_exists(store)

    prefix = str(prefix or settings.staging_prefix)
    ttl = int(ttl_hours if ttl_hours is not None else settings.staging_ttl_hours)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=ttl)

    stale: list[str] = []
    stale_bytes = 0
    for obj in store.iter_objects(prefix):
        lm = obj.get("last_modified")
        if not isinstance(lm, datetime):
            continue
        if lm.tzinfo is None:
            lm = lm.replace(tzinfo=timezone.utc)
        if lm <= cutoff:
            stale.append(str(obj["key"]))
            stale_bytes += int(obj.get("size") or 0)

    deleted = store.delete_many(stale) if stale else 0
    out = {
        "ok": True,
        "prefix": prefix,
        "ttl_hours": ttl,
        "cutoff": cutoff.isoformat(),
        "deleted_objects": int(deleted),
        "deleted_bytes": int(stale_bytes if deleted == len(stale) else 0),
    }
    _save_job_meta(out)
    log.info("cleanup_staging_uploads_job: prefix=%s ttl_hours=%s deleted_objects=%s", prefix, ttl, deleted)
    return out


def reconcile_release_assets_job(
    *,
    min_age_hours: int | None = None,
    dry_run: bool = False,
    releases: ReleaseClient | None = None,
) -> dict:
    """Delete release assets that no topic_books row points at.

    Covers uploads whose metadata write never happened. Assets younger than
    the cutoff are left alone: their upload may still be recording.
    """
    releases = releases or get_release_client()
    age = int(min_age_hours if min_age_hours is not None else settings.orphan_asset_min_age_hours)
    cutoff = datetime.now(timezone.utc) - timedelta(hours=age)

    container = releases.get_or_create_container()
    assets = releases.list_assets(container)

    db = session_module.SessionLocal()
    try:
        referenced = BookRecorder(db).referenced_asset_ids()
    finally:
        db.close()

    orphans = []
    for asset in assets:
        if asset.asset_id in referenced:
            continue
        created = _parse_ts(asset.created_at)
        if created is None or created > cutoff:
            continue
        orphans.append(asset)

    deleted = 0
    if not dry_run:
        for asset in orphans:
            if releases.delete_asset(asset.asset_id):
                deleted += 1

    out = {
        "ok": True,
        "release_tag": container.tag,
        "scanned": len(assets),
        "orphaned": [{"asset_id": a.asset_id, "name": a.name, "size": a.size} for a in orphans],
        "deleted": deleted,
        "dry_run": bool(dry_run),
    }
    _save_job_meta(out)
    log.info(
        "reconcile_release_assets_job: tag=%s scanned=%s orphaned=%s deleted=%s",
        container.tag,
        len(assets),
        len(orphans),
        deleted,
    )
    return out


def _parse_ts(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
