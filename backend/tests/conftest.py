import io
import itertools
import pathlib
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.db import session as session_module

# Import models so that they are registered in Base.metadata before create_all.
from app.models.user import User, UserRole  # noqa: F401
from app.models.catalog import Theme, Topic  # noqa: F401
from app.models.book import TopicBook  # noqa: F401


# Configure test DB (SQLite in-memory) before the app is imported.
_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
Base.metadata.create_all(bind=_engine)
session_module.engine = _engine
session_module.SessionLocal = session_module.sessionmaker(autocommit=False, autoflush=False, bind=_engine)

from app.core.config import settings  # noqa: E402
from app.core.errors import AssetUploadFailed, NotFoundError  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.releases import AssetInfo, Container, Found, NotFound, UploadedAsset, namespaced_asset_name  # noqa: E402
from app.services.releases import get_release_client  # noqa: E402
from app.services.storage import get_bucket_store  # noqa: E402


PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n<<>>\n%%EOF\n" * 4
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class _MemoryRedis:
    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def ping(self):
        return True

    def _now(self) -> float:
        return time.time()

    def _get_entry(self, key: str):
        v = self._data.get(key)
        if not v:
            return None
        value, exp = v
        if exp is not None and exp <= self._now():
            self._data.pop(key, None)
            return None
        return value, exp

    def get(self, key: str):
        entry = self._get_entry(key)
        return entry[0] if entry else None

    def set(self, key: str, value: str, ex: int | None = None, nx: bool = False):
        if nx and self._get_entry(key) is not None:
            return None
        exp = (self._now() + int(ex)) if ex else None
        self._data[key] = (value, exp)
        return True

    def delete(self, key: str):
        self._data.pop(key, None)
        return 1

    def incr(self, key: str):
        cur = self.get(key)
        n = int(cur or 0) + 1
        _, exp = self._data.get(key, ("", None))
        self._data[key] = (str(n), exp)
        return n

    def expire(self, key: str, seconds: int):
        entry = self._get_entry(key)
        if not entry:
            return False
        value, _ = entry
        self._data[key] = (value, self._now() + int(seconds))
        return True

    def ttl(self, key: str):
        entry = self._get_entry(key)
        if not entry:
            return -2
        _, exp = entry
        if exp is None:
            return -1
        return max(0, int(exp - self._now()))

    def flushall(self):
        self._data.clear()


# Stub Redis at import time (rate limiting, cron locks).
_mem_redis = _MemoryRedis()
import app.core.redis_client as redis_client_module  # noqa: E402

redis_client_module.get_redis = lambda: _mem_redis

import app.core.rate_limit as rate_limit_module  # noqa: E402

rate_limit_module.get_redis = lambda: _mem_redis

import app.core.queue as queue_module  # noqa: E402

queue_module.get_redis = lambda: _mem_redis

import app.routers.health as health_router_module  # noqa: E402

health_router_module.get_redis = lambda: _mem_redis


class FakeReleaseClient:
    """In-memory release store. Every call is appended to `calls` (and to a shared event log)."""

    def __init__(self, events: list[str] | None = None, *, tag: str = "pdf-storage-v1"):
        self.events = events if events is not None else []
        self.calls: list[str] = []
        self.tag = tag
        self.container: Container | None = None
        self.assets: dict[int, dict] = {}
        self.fail_upload = False
        self.fail_container = False
        self.fail_delete = False
        self._ids = itertools.count(1000)

    def _log(self, name: str) -> None:
        self.calls.append(name)
        self.events.append(f"release.{name}")

    def lookup_container(self, tag):
        self._log("lookup_container")
        if self.container is not None and self.container.tag == tag:
            return Found(container=self.container)
        return NotFound(tag=tag)

    def create_container(self, tag):
        self._log("create_container")
        self.container = Container(id=next(self._ids), tag=tag, upload_url="https://uploads.test/assets")
        return self.container

    def get_or_create_container(self, tag=None):
        tag = tag or self.tag
        if self.fail_container:
            self._log("lookup_container")
            from app.core.errors import UpstreamFailure

            raise UpstreamFailure("Bad credentials", upstream_status=401)
        lookup = self.lookup_container(tag)
        if isinstance(lookup, Found):
            return lookup.container
        return self.create_container(tag)

    def upload_asset(self, container, body, *, name, content_type="application/pdf", size=None):
        self._log("upload_asset")
        if self.fail_upload:
            raise AssetUploadFailed("Failed to upload PDF to GitHub Releases: Server Error", upstream_status=500)
        data = body if isinstance(body, bytes) else body.read()
        asset_id = next(self._ids)
        filename = namespaced_asset_name(name)
        self.assets[asset_id] = {
            "name": filename,
            "data": data,
            "content_type": content_type,
            "created_at": "2020-01-01T00:00:00Z",
        }
        return UploadedAsset(
            asset_id=asset_id,
            download_url=f"https://github.test/releases/download/{container.tag}/{filename}",
            name=filename,
            size=len(data),
        )

    def delete_asset(self, asset_id):
        self._log("delete_asset")
        if self.fail_delete:
            return False
        self.assets.pop(int(asset_id), None)
        return True

    def get_asset_metadata(self, asset_id):
        self._log("get_asset_metadata")
        a = self.assets.get(int(asset_id))
        if a is None:
            raise NotFoundError("asset not found")
        return AssetInfo(
            asset_id=int(asset_id),
            name=a["name"],
            size=len(a["data"]),
            content_type=a["content_type"],
            created_at=a["created_at"],
        )

    def iter_asset_bytes(self, asset_id, *, chunk_size=64 * 1024):
        self._log("iter_asset_bytes")
        data = self.assets[int(asset_id)]["data"]
        for i in range(0, len(data), chunk_size):
            yield data[i : i + chunk_size]

    def list_assets(self, container):
        self._log("list_assets")
        return [self.get_asset_metadata(aid) for aid in list(self.assets)]


class _FakeS3:
    def __init__(self):
        self.bucket_ready = True
        self.created: list[str] = []

    def head_bucket(self, Bucket):
        if not self.bucket_ready:
            from botocore.exceptions import ClientError

            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadBucket")
        return {}

    def create_bucket(self, Bucket):
        self.created.append(Bucket)
        self.bucket_ready = True
        return {}


class FakeBucketStore:
    """Dict-backed stand-in for the S3-compatible intermediate store."""

    bucket = "books"

    def __init__(self, events: list[str] | None = None):
        self.events = events if events is not None else []
        self.objects: dict[str, dict] = {}
        self.fail_upload = False
        self.base = "https://storage.test/object/public"
        self.client = _FakeS3()

    def _log(self, name: str) -> None:
        self.events.append(f"store.{name}")

    def put(self, key: str, data: bytes, *, last_modified: datetime | None = None) -> None:
        self.objects[key] = {
            "data": data,
            "content_type": "application/octet-stream",
            "last_modified": last_modified or datetime.now(timezone.utc),
        }

    def upload(self, path, body, content_type, *, upsert=True):
        self._log("upload")
        if self.fail_upload:
            from app.core.errors import UpstreamFailure

            raise UpstreamFailure("storage upload failed: InternalError")
        data = body if isinstance(body, bytes) else body.read()
        self.objects[path] = {
            "data": data,
            "content_type": content_type,
            "last_modified": datetime.now(timezone.utc),
        }
        return path

    def public_url(self, path):
        return f"{self.base}/{self.bucket}/{path}"

    def key_from_url(self, url):
        prefix = f"{self.base}/{self.bucket}/"
        if url and str(url).startswith(prefix):
            return str(url)[len(prefix):]
        return None

    def presign_put(self, path, *, content_type=None, expires_seconds=None):
        return f"https://storage.test/presigned/{path}?sig=1"

    def head(self, path):
        self._log("head")
        o = self.objects.get(path)
        if o is None:
            return None
        return {"size": len(o["data"]), "content_type": o["content_type"]}

    def exists(self, path):
        return path in self.objects

    def download_to(self, path, dest: pathlib.Path) -> int:
        self._log("download_to")
        data = self.objects[path]["data"]
        pathlib.Path(dest).write_bytes(data)
        return len(data)

    def delete(self, path):
        self._log("delete")
        return self.objects.pop(path, None) is not None

    def iter_objects(self, prefix):
        for key, o in list(self.objects.items()):
            if key.startswith(prefix):
                yield {"key": key, "size": len(o["data"]), "last_modified": o["last_modified"]}

    def delete_many(self, keys):
        n = 0
        for k in keys:
            if self.objects.pop(k, None) is not None:
                n += 1
        return n


@pytest.fixture(scope="session")
def client():
    app = create_app()

    # Ensure app dependencies use our session factory.
    def _get_db_override():
        db = session_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_module.get_db] = _get_db_override
    return TestClient(app)


@pytest.fixture(autouse=True)
def _clean_state():
    yield
    with session_module.SessionLocal() as db:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
    _mem_redis.flushall()


@pytest.fixture()
def db():
    with session_module.SessionLocal() as session:
        yield session


@pytest.fixture()
def events():
    return []


@pytest.fixture()
def releases(events):
    return FakeReleaseClient(events)


@pytest.fixture()
def store(events):
    return FakeBucketStore(events)


@pytest.fixture()
def upload_tmp(tmp_path, monkeypatch):
    d = tmp_path / "uploads-tmp"
    d.mkdir()
    monkeypatch.setattr(settings, "upload_tmp_dir", str(d))
    return d


@pytest.fixture()
def fakes(client, releases, store, upload_tmp):
    app = client.app
    app.dependency_overrides[get_release_client] = lambda: releases
    app.dependency_overrides[get_bucket_store] = lambda: store
    yield releases, store
    app.dependency_overrides.pop(get_release_client, None)
    app.dependency_overrides.pop(get_bucket_store, None)


def make_user(*, role: UserRole = UserRole.admin, is_active: bool = True) -> User:
    with session_module.SessionLocal() as db:
        user = User(email=f"{uuid.uuid4().hex[:10]}@gyandhara.test", full_name="Test", role=role, is_active=is_active)
        db.add(user)
        db.commit()
        db.refresh(user)
        db.expunge(user)
        return user


def bearer(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, email=user.email, role=user.role.value)}"}


@pytest.fixture()
def admin_headers():
    return bearer(make_user(role=UserRole.admin))


@pytest.fixture()
def theme():
    with session_module.SessionLocal() as db:
        t = Theme(name=f"Science {uuid.uuid4().hex[:6]}", description=None, display_order=1)
        db.add(t)
        db.commit()
        db.refresh(t)
        db.expunge(t)
        return t


@pytest.fixture()
def topic(theme):
    with session_module.SessionLocal() as db:
        tp = Topic(theme_id=theme.id, theme_name=theme.name, title="Physics basics", summary="")
        db.add(tp)
        db.commit()
        db.refresh(tp)
        db.expunge(tp)
        return tp


def pdf_file(name: str = "book.pdf", data: bytes = PDF_BYTES, content_type: str = "application/pdf"):
    return (name, io.BytesIO(data), content_type)
