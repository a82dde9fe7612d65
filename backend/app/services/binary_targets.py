from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from app.core.config import settings
from app.models.book import StorageType
from app.services.releases import Container, ReleaseClient
from app.services.staging import Blob, safe_filename
from app.services.storage import BucketStore


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredBinary:
    storage_type: str
    download_url: str
    size: int
    asset_id: int | None = None
    release_tag: str | None = None
    object_key: str | None = None

    def record_fields(self) -> dict[str, Any]:
        return {
            "pdf_url": self.download_url,
            "file_size_bytes": self.size,
            "storage_type": self.storage_type,
            "github_asset_id": self.asset_id,
            "github_release_tag": self.release_tag,
            "storage_object_key": self.object_key,
        }


class BinaryTarget(Protocol):
    storage_type: str

    def prepare(self) -> None: ...

    def store(self, blob: Blob, *, name: str) -> StoredBinary: ...


class ReleaseTarget:
    storage_type = StorageType.github_release.value

    def __init__(self, releases: ReleaseClient, *, tag: str | None = None):
        self.releases = releases
        self.tag = tag or settings.github_release_tag
        self._container: Container | None = None

    @property
    def container(self) -> Container:
        if self._container is None:
            self.prepare()
        assert self._container is not None
        return self._container

    def prepare(self) -> None:
        if self._container is None:
            self._container = self.releases.get_or_create_container(self.tag)

    def store(self, blob: Blob, *, name: str) -> StoredBinary:
        container = self.container
        with blob.open() as fh:
            asset = self.releases.upload_asset(
                container,
                fh,
                name=name,
                content_type=blob.content_type or "application/pdf",
                size=blob.size,
            )
        return StoredBinary(
            storage_type=self.storage_type,
            download_url=asset.download_url,
            size=asset.size or blob.size,
            asset_id=asset.asset_id,
            release_tag=container.tag or self.tag,
        )


class BucketTarget:
    storage_type = StorageType.supabase_storage.value

    def __init__(self, bucket: BucketStore, *, prefix: str | None = None):
        self.bucket = bucket
        self.prefix = prefix or settings.pdfs_prefix

    def prepare(self) -> None:
        return None

    def store(self, blob: Blob, *, name: str) -> StoredBinary:
        key = f"{self.prefix}{time.time_ns()}-{safe_filename(name)}"
        with blob.open() as fh:
            self.bucket.upload(key, fh, blob.content_type or "application/pdf", upsert=True)
        return StoredBinary(
            storage_type=self.storage_type,
            download_url=self.bucket.public_url(key),
            size=blob.size,
            object_key=key,
        )


def delete_binary_best_effort(
    *,
    storage_type: str | None,
    asset_id: int | None,
    object_key: str | None,
    pdf_url: str | None,
    releases: ReleaseClient,
    store: BucketStore,
) -> bool:
    """Remove a binary from whichever backend held it; never raises."""
    try:
        if storage_type == StorageType.github_release.value and asset_id:
            return releases.delete_asset(int(asset_id))
        if storage_type == StorageType.supabase_storage.value:
            key = object_key or store.key_from_url(pdf_url)
            if key:
                return store.delete(key)
    except Exception:
        log.exception("best-effort binary delete failed storage_type=%s asset_id=%s", storage_type, asset_id)
        return False
    return False
