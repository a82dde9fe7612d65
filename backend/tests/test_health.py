from app.core.config import settings
from app.core import queue as queue_module
from app.services.storage import get_bucket_store

from conftest import FakeBucketStore


class _Job:
    def __init__(self, n: int):
        self.id = f"job-{n}"


class _Queue:
    def __init__(self):
        self.enqueued: list[tuple[str, dict]] = []

    def enqueue(self, fn, **kwargs):
        self.enqueued.append((fn.__name__, kwargs))
        return _Job(len(self.enqueued))


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"


def test_health_live(client):
    r = client.get("/health/live")
    assert r.status_code == 200
    assert r.json().get("status") == "live"
    assert r.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.headers["X-Request-ID"] == "abc-123"


def test_ready_checks_storage(client):
    store = FakeBucketStore()
    client.app.dependency_overrides[get_bucket_store] = lambda: store
    try:
        assert client.get("/health/ready").json() == {"status": "ready"}

        store.client.bucket_ready = False
        r = client.get("/health/ready")
        assert r.status_code == 503
        assert r.json()["error_message"] == "storage not ready"
    finally:
        client.app.dependency_overrides.pop(get_bucket_store, None)


def test_cron_hidden_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", None)
    r = client.post("/health/cron/staging-cleanup", headers={"X-Cron-Secret": "anything"})
    assert r.status_code == 404


def test_cron_rejects_wrong_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    r = client.post("/health/cron/staging-cleanup", headers={"X-Cron-Secret": "nope"})
    assert r.status_code == 403


def test_cron_enqueues_once_per_lock_window(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    q = _Queue()
    monkeypatch.setattr(queue_module, "get_queue", lambda *a, **k: q)

    r = client.post("/health/cron/staging-cleanup", headers={"X-Cron-Secret": "s3cret"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "enqueued": True, "job_id": "job-1"}

    r = client.post("/health/cron/staging-cleanup", headers={"X-Cron-Secret": "s3cret"})
    assert r.json() == {"ok": True, "enqueued": False, "reason": "locked"}
    assert [name for name, _ in q.enqueued] == ["cleanup_staging_uploads_job"]


def test_cron_run_all_enqueues_both_jobs(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    q = _Queue()
    monkeypatch.setattr(queue_module, "get_queue", lambda *a, **k: q)

    r = client.post("/health/cron/run-all", headers={"X-Cron-Secret": "s3cret"})
    assert r.status_code == 200
    tasks = r.json()["tasks"]
    assert tasks["staging_cleanup"]["enqueued"] is True
    assert tasks["reconcile_assets"]["enqueued"] is True
    names = [name for name, _ in q.enqueued]
    assert names == ["cleanup_staging_uploads_job", "reconcile_release_assets_job"]
    assert q.enqueued[1][1]["min_age_hours"] == settings.orphan_asset_min_age_hours
