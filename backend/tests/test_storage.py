import pytest
from botocore.exceptions import ClientError

from app.core.config import settings
from app.services.storage import ensure_bucket_exists, get_s3_client

from conftest import FakeBucketStore


def test_s3_client_built_from_settings(monkeypatch):
    monkeypatch.setattr(settings, "s3_endpoint_url", "http://minio.test:9000")
    monkeypatch.setattr(settings, "s3_max_attempts", 2)
    monkeypatch.setattr(settings, "s3_read_timeout_seconds", 12.5)
    monkeypatch.setattr(settings, "s3_addressing_style", "virtual")

    s3 = get_s3_client()
    assert s3.meta.endpoint_url == "http://minio.test:9000"
    assert s3.meta.config.read_timeout == 12.5
    assert s3.meta.config.retries["max_attempts"] == 2
    assert s3.meta.config.s3["addressing_style"] == "virtual"

    assert get_s3_client(endpoint_url="http://other.test").meta.endpoint_url == "http://other.test"


def test_missing_bucket_created_outside_production(monkeypatch):
    monkeypatch.setattr(settings, "app_env", "development")
    store = FakeBucketStore()
    store.client.bucket_ready = False

    ensure_bucket_exists(store)
    assert store.client.created == ["books"]


def test_missing_bucket_is_an_error_in_production(monkeypatch):
    monkeypatch.setattr(settings, "app_env", " Production ")
    store = FakeBucketStore()
    store.client.bucket_ready = False

    with pytest.raises(ClientError):
        ensure_bucket_exists(store)
    assert store.client.created == []
