from __future__ import annotations

import logging
import pathlib
from collections.abc import Iterator
from datetime import datetime
from typing import BinaryIO
from urllib.parse import quote, unquote

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.errors import StagingUnavailable, UpstreamFailure


log = logging.getLogger(__name__)

DELETE_BATCH = 1000


def get_s3_client(*, endpoint_url: str | None = None):
    ep = (endpoint_url or "").strip() or None
    # Supabase Storage exposes an S3-compatible endpoint; for AWS S3 endpoint_url must be None.
    return boto3.client(
        "s3",
        endpoint_url=ep or (str(settings.s3_endpoint_url or "").strip() or None),
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        region_name=settings.s3_region_name,
        config=Config(
            signature_version="s3v4",
            connect_timeout=float(settings.s3_connect_timeout_seconds),
            read_timeout=float(settings.s3_read_timeout_seconds),
            retries={
                "max_attempts": int(settings.s3_max_attempts),
                "mode": "standard",
            },
            s3={
                "addressing_style": str(settings.s3_addressing_style),
            },
        ),
    )


def _error_message(e: Exception) -> str:
    if isinstance(e, ClientError):
        err = (e.response or {}).get("Error") or {}
        code = str(err.get("Code") or "").strip()
        msg = str(err.get("Message") or "").strip()
        return f"{code}: {msg}" if code and msg else (code or msg or str(e))
    return str(e)


def _is_not_found(e: Exception) -> bool:
    if not isinstance(e, ClientError):
        return False
    code = str(((e.response or {}).get("Error") or {}).get("Code") or "")
    return code in {"404", "NoSuchKey", "NotFound"}


class BucketStore:
    """Intermediate object store: covers always, oversized PDFs while staged."""

    def __init__(self, *, bucket: str | None = None, client=None, public_base_url: str | None = None):
        self.bucket = bucket or settings.s3_bucket
        self._client = client
        self._public_base_url = public_base_url if public_base_url is not None else settings.s3_public_base_url

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def upload(self, path: str, body: bytes | BinaryIO, content_type: str | None, *, upsert: bool = True) -> str:
        if not upsert and self.exists(path):
            raise UpstreamFailure(f"object already exists: {path}", upstream_status=409)
        params: dict[str, object] = {"Bucket": self.bucket, "Key": path, "Body": body}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (ClientError, BotoCoreError) as e:
            raise UpstreamFailure(f"storage upload failed: {_error_message(e)}") from e
        return path

    def public_url(self, path: str) -> str:
        base = (self._public_base_url or "").strip().rstrip("/")
        if not base:
            base = f"{str(settings.s3_endpoint_url or '').rstrip('/')}"
        return f"{base}/{self.bucket}/{quote(path)}"

    def key_from_url(self, url: str | None) -> str | None:
        """Inverse of public_url for URLs this store handed out."""
        raw = str(url or "").strip()
        if not raw:
            return None
        prefix = self.public_url("")
        if not raw.startswith(prefix):
            return None
        return unquote(raw[len(prefix):]) or None

    def presign_put(self, path: str, *, content_type: str | None = None, expires_seconds: int | None = None) -> str:
        params: dict[str, object] = {"Bucket": self.bucket, "Key": path}
        if content_type:
            params["ContentType"] = content_type
        return self.client.generate_presigned_url(
            "put_object",
            Params=params,
            ExpiresIn=int(expires_seconds or settings.s3_presign_upload_expires_seconds),
        )

    def head(self, path: str) -> dict[str, object] | None:
        try:
            resp = self.client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise StagingUnavailable(f"storage head failed: {_error_message(e)}") from e
        except BotoCoreError as e:
            raise StagingUnavailable(f"storage head failed: {_error_message(e)}") from e
        return {
            "size": int(resp.get("ContentLength") or 0),
            "content_type": str(resp.get("ContentType") or "") or None,
        }

    def exists(self, path: str) -> bool:
        return self.head(path) is not None

    def download_to(self, path: str, dest: pathlib.Path) -> int:
        try:
            self.client.download_file(self.bucket, path, str(dest))
        except (ClientError, BotoCoreError) as e:
            raise StagingUnavailable(f"failed to fetch staged object {path}: {_error_message(e)}") from e
        return dest.stat().st_size

    def delete(self, path: str) -> bool:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
            return True
        except (ClientError, BotoCoreError) as e:
            log.warning("storage delete failed key=%s error=%s", path, _error_message(e))
            return False

    def iter_objects(self, prefix: str) -> Iterator[dict[str, object]]:
        token: str | None = None
        while True:
            kwargs: dict[str, object] = {"Bucket": self.bucket, "Prefix": prefix, "MaxKeys": 1000}
            if token:
                kwargs["ContinuationToken"] = token
            resp = self.client.list_objects_v2(**kwargs)
            for obj in resp.get("Contents") or []:
                key = obj.get("Key")
                if not key:
                    continue
                lm = obj.get("LastModified")
                yield {
                    "key": str(key),
                    "size": int(obj.get("Size") or 0),
                    "last_modified": lm if isinstance(lm, datetime) else None,
                }
            if not resp.get("IsTruncated"):
                break
            token = str(resp.get("NextContinuationToken") or "") or None
            if not token:
                break

    def delete_many(self, keys: list[str]) -> int:
        """Batch delete; S3 takes at most DELETE_BATCH keys per DeleteObjects call."""
        deleted = 0
        for i in range(0, len(keys), DELETE_BATCH):
            batch = keys[i : i + DELETE_BATCH]
            try:
                resp = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
            except (ClientError, BotoCoreError):
                log.exception("storage delete_objects failed count=%s", len(batch))
                continue
            errors = (resp or {}).get("Errors") or []
            deleted += len(batch) - len(errors)
        return deleted


def ensure_bucket_exists(store: BucketStore | None = None) -> None:
    store = store or BucketStore()
    s3 = store.client
    try:
        s3.head_bucket(Bucket=store.bucket)
    except Exception:
        env = (settings.app_env or "").strip().lower()
        # In production the bucket is provisioned in the Supabase dashboard.
        if env in {"prod", "production"}:
            raise
        s3.create_bucket(Bucket=store.bucket)


def get_bucket_store() -> BucketStore:
    return BucketStore()
