from fastapi import APIRouter, Depends, HTTPException, Request
import hmac
import logging

from botocore.exceptions import BotoCoreError, ClientError
from redis import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.core.queue import enqueue_once
from app.core.redis_client import get_redis
from app.db import session as session_module
from app.services.book_jobs import cleanup_staging_uploads_job, reconcile_release_assets_job
from app.services.storage import BucketStore, get_bucket_store

router = APIRouter(tags=["health"])

log = logging.getLogger(__name__)

STAGING_CLEANUP_LOCK = "locks:staging_cleanup"
RECONCILE_LOCK = "locks:release_asset_reconcile"


def _require_cron_secret(request: Request) -> None:
    secret = str(settings.cron_secret or "").strip()
    if not secret:
        raise HTTPException(status_code=404, detail="not found")

    provided = str(request.headers.get("x-cron-secret") or "").strip()
    if not provided or not hmac.compare_digest(provided, secret):
        raise HTTPException(status_code=403, detail="forbidden")


def _cleanup_lock_ttl() -> int:
    return max(60, int(settings.staging_cleanup_interval_minutes) * 60 - 5)


def enqueue_staging_cleanup() -> dict:
    job = enqueue_once(
        STAGING_CLEANUP_LOCK,
        _cleanup_lock_ttl(),
        cleanup_staging_uploads_job,
        ttl_hours=int(settings.staging_ttl_hours),
    )
    if job is None:
        return {"ok": True, "enqueued": False, "reason": "locked"}
    return {"ok": True, "enqueued": True, "job_id": str(job.id)}


def enqueue_asset_reconcile() -> dict:
    job = enqueue_once(
        RECONCILE_LOCK,
        60 * 60,
        reconcile_release_assets_job,
        min_age_hours=int(settings.orphan_asset_min_age_hours),
    )
    if job is None:
        return {"ok": True, "enqueued": False, "reason": "locked"}
    return {"ok": True, "enqueued": True, "job_id": str(job.id)}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/live")
def live():
    return {"status": "live"}


@router.get("/health/ready")
def ready(store: BucketStore = Depends(get_bucket_store)):
    try:
        db = session_module.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
    except SQLAlchemyError as e:
        raise HTTPException(status_code=503, detail="db not ready") from e

    try:
        r = get_redis()
        r.ping()
    except RedisError as e:
        raise HTTPException(status_code=503, detail="redis not ready") from e

    try:
        store.client.head_bucket(Bucket=store.bucket)
    except (ClientError, BotoCoreError) as e:
        raise HTTPException(status_code=503, detail="storage not ready") from e

    return {"status": "ready"}


@router.post("/health/cron/staging-cleanup")
def cron_staging_cleanup(request: Request):
    _require_cron_secret(request)
    return enqueue_staging_cleanup()


@router.post("/health/cron/reconcile-assets")
def cron_reconcile_assets(request: Request):
    _require_cron_secret(request)
    return enqueue_asset_reconcile()


@router.post("/health/cron/run-all")
def cron_run_all(request: Request):
    _require_cron_secret(request)

    results: dict[str, object] = {"ok": True, "tasks": {}}
    for name, fn in (("staging_cleanup", enqueue_staging_cleanup), ("reconcile_assets", enqueue_asset_reconcile)):
        try:
            results["tasks"][name] = fn()
        except RedisError as e:
            log.warning("cron task enqueue failed task=%s error=%s", name, e)
            results["tasks"][name] = {"ok": False, "error": str(e)}
    return results
