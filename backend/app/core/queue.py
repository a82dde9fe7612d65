from __future__ import annotations

import redis
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from app.core.config import settings
from app.core.redis_client import get_redis


def get_queue(name: str | None = None) -> Queue:
    conn = redis.Redis.from_url(settings.redis_url)
    eff = str(name or "").strip() or str(settings.rq_queue_default)
    return Queue(name=eff, connection=conn)


def fetch_job(job_id: str) -> Job | None:
    try:
        conn = redis.Redis.from_url(settings.redis_url)
        return Job.fetch(job_id, connection=conn)
    except (NoSuchJobError, redis.RedisError):
        return None


def enqueue_once(lock_key: str, lock_ttl_seconds: int, fn, **kwargs) -> Job | None:
    """Enqueue unless another scheduler tick holds the Redis lock; None when locked."""
    r = get_redis()
    acquired = r.set(lock_key, "1", nx=True, ex=max(1, int(lock_ttl_seconds)))
    if not acquired:
        return None
    q = get_queue(str(settings.rq_queue_default))
    return q.enqueue(
        fn,
        job_timeout=60 * 30,
        result_ttl=60 * 60,
        failure_ttl=60 * 60 * 24,
        **kwargs,
    )
