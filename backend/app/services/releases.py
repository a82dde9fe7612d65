from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import BinaryIO, Union

import httpx

from app.core.config import settings
from app.core.errors import AssetUploadFailed, NotFoundError, UpstreamFailure


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Container:
    id: int
    tag: str
    upload_url: str


@dataclass(frozen=True)
class Found:
    container: Container


@dataclass(frozen=True)
class NotFound:
    tag: str


ContainerLookup = Union[Found, NotFound]


@dataclass(frozen=True)
class UploadedAsset:
    asset_id: int
    download_url: str
    name: str
    size: int


@dataclass(frozen=True)
class AssetInfo:
    asset_id: int
    name: str
    size: int
    content_type: str | None
    created_at: str | None = None


def _upstream_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        msg = str(payload.get("message") or "").strip()
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            codes = [str((e or {}).get("code") or "") for e in errors if isinstance(e, dict)]
            codes = [c for c in codes if c]
            if codes:
                msg = f"{msg} ({', '.join(codes)})" if msg else ", ".join(codes)
        if msg:
            return msg
    text = (resp.text or "").strip()
    return text[:300] or f"HTTP {resp.status_code}"


def _already_exists(resp: httpx.Response) -> bool:
    if resp.status_code != 422:
        return False
    try:
        payload = resp.json()
    except ValueError:
        return False
    for e in (payload or {}).get("errors") or []:
        if isinstance(e, dict) and str(e.get("code") or "") == "already_exists":
            return True
    return False


def namespaced_asset_name(name: str, *, now_ns: int | None = None) -> str:
    """Prefix an asset name with a nanosecond timestamp so names never collide in a release."""
    safe = re.sub(r"\s+", "_", str(name or "").strip())
    safe = re.sub(r"[^A-Za-z0-9\-_.]+", "-", safe).strip("-._")
    safe = re.sub(r"-+", "-", safe)[:120] or "document"
    if not safe.lower().endswith(".pdf"):
        safe = f"{safe}.pdf"
    ts = int(now_ns if now_ns is not None else time.time_ns())
    return f"{ts}-{safe}"


class ReleaseClient:
    """GitHub Releases as the permanent binary store.

    A release is the container, addressed by tag; PDFs are its assets.
    """

    def __init__(
        self,
        *,
        owner: str | None = None,
        repo: str | None = None,
        token: str | None = None,
        api_url: str | None = None,
        uploads_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.owner = owner or settings.github_owner
        self.repo = repo or settings.github_repo
        self._token = token if token is not None else settings.github_token
        self._api_url = (api_url or settings.github_api_url).rstrip("/")
        self._uploads_url = (uploads_url or settings.github_uploads_url).rstrip("/")
        self._transport = transport

    def _headers(self, *, accept: str = "application/vnd.github+json") -> dict[str, str]:
        h = {
            "Accept": accept,
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "GyanDhara-App/1.0",
        }
        if self._token:
            h["Authorization"] = f"Bearer {self._token}"
        return h

    def _client(self, *, timeout: httpx.Timeout | None = None) -> httpx.Client:
        if timeout is None:
            timeout = httpx.Timeout(
                connect=float(settings.github_timeout_connect),
                read=float(settings.github_timeout_read),
                write=float(settings.github_timeout_read),
                pool=float(settings.github_timeout_connect),
            )
        return httpx.Client(timeout=timeout, transport=self._transport, follow_redirects=True)

    def _repo_path(self, suffix: str) -> str:
        return f"{self._api_url}/repos/{self.owner}/{self.repo}{suffix}"

    def _container_from(self, data: dict) -> Container:
        upload_url = str(data.get("upload_url") or "")
        # "https://uploads.github.com/repos/o/r/releases/1/assets{?name,label}"
        upload_url = upload_url.split("{", 1)[0]
        if not upload_url:
            upload_url = f"{self._uploads_url}/repos/{self.owner}/{self.repo}/releases/{int(data['id'])}/assets"
        return Container(id=int(data["id"]), tag=str(data.get("tag_name") or ""), upload_url=upload_url)

    def lookup_container(self, tag: str) -> ContainerLookup:
        try:
            with self._client() as client:
                resp = client.get(self._repo_path(f"/releases/tags/{tag}"), headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"GitHub release lookup failed: {e}") from e
        if resp.status_code == 404:
            return NotFound(tag=tag)
        if resp.status_code >= 400:
            raise UpstreamFailure(
                f"GitHub release lookup failed: {_upstream_message(resp)}",
                upstream_status=resp.status_code,
            )
        return Found(container=self._container_from(resp.json()))

    def create_container(self, tag: str) -> Container | None:
        """Create the release; None when the tag was created concurrently by someone else."""
        body = {
            "tag_name": tag,
            "name": settings.github_release_name,
            "body": settings.github_release_notes,
            "draft": False,
            "prerelease": False,
        }
        try:
            with self._client() as client:
                resp = client.post(self._repo_path("/releases"), headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"GitHub release create failed: {e}") from e
        if _already_exists(resp):
            return None
        if resp.status_code >= 400:
            raise UpstreamFailure(
                f"GitHub release create failed: {_upstream_message(resp)}",
                upstream_status=resp.status_code,
            )
        return self._container_from(resp.json())

    def get_or_create_container(self, tag: str | None = None) -> Container:
        tag = tag or settings.github_release_tag
        lookup = self.lookup_container(tag)
        if isinstance(lookup, Found):
            return lookup.container

        created = self.create_container(tag)
        if created is not None:
            log.info("created release container tag=%s id=%s", tag, created.id)
            return created

        # Lost the creation race; the other writer's release is now visible.
        lookup = self.lookup_container(tag)
        if isinstance(lookup, Found):
            return lookup.container
        raise UpstreamFailure(f"GitHub release {tag} reported as existing but could not be fetched")

    def upload_asset(
        self,
        container: Container,
        body: bytes | BinaryIO,
        *,
        name: str,
        content_type: str = "application/pdf",
        size: int | None = None,
    ) -> UploadedAsset:
        filename = namespaced_asset_name(name)
        headers = self._headers()
        headers["Content-Type"] = content_type
        if size is not None:
            headers["Content-Length"] = str(int(size))

        timeout = httpx.Timeout(
            connect=float(settings.github_timeout_connect),
            read=float(settings.github_upload_timeout_seconds),
            write=float(settings.github_upload_timeout_seconds),
            pool=float(settings.github_timeout_connect),
        )
        try:
            with self._client(timeout=timeout) as client:
                resp = client.post(container.upload_url, params={"name": filename}, headers=headers, content=body)
        except httpx.HTTPError as e:
            raise AssetUploadFailed(f"Failed to upload PDF to GitHub Releases: {e}") from e
        if resp.status_code >= 400:
            raise AssetUploadFailed(
                f"Failed to upload PDF to GitHub Releases: {_upstream_message(resp)}",
                upstream_status=resp.status_code,
            )

        data = resp.json()
        asset = UploadedAsset(
            asset_id=int(data["id"]),
            download_url=str(data.get("browser_download_url") or ""),
            name=str(data.get("name") or filename),
            size=int(data.get("size") or size or 0),
        )
        log.info("uploaded release asset id=%s name=%s size=%s", asset.asset_id, asset.name, asset.size)
        return asset

    def delete_asset(self, asset_id: int) -> bool:
        """Best-effort; failures are logged and reported as False, never raised."""
        try:
            with self._client() as client:
                resp = client.delete(self._repo_path(f"/releases/assets/{int(asset_id)}"), headers=self._headers())
        except httpx.HTTPError as e:
            log.warning("failed to delete release asset id=%s error=%s", asset_id, e)
            return False
        if resp.status_code >= 400 and resp.status_code != 404:
            log.warning(
                "failed to delete release asset id=%s status=%s error=%s",
                asset_id,
                resp.status_code,
                _upstream_message(resp),
            )
            return False
        log.info("deleted release asset id=%s", asset_id)
        return True

    def get_asset_metadata(self, asset_id: int) -> AssetInfo:
        try:
            with self._client() as client:
                resp = client.get(self._repo_path(f"/releases/assets/{int(asset_id)}"), headers=self._headers())
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"GitHub asset lookup failed: {e}") from e
        if resp.status_code == 404:
            raise NotFoundError("asset not found")
        if resp.status_code >= 400:
            raise UpstreamFailure(
                f"GitHub asset lookup failed: {_upstream_message(resp)}",
                upstream_status=resp.status_code,
            )
        return self._asset_info(resp.json())

    def _asset_info(self, data: dict) -> AssetInfo:
        return AssetInfo(
            asset_id=int(data["id"]),
            name=str(data.get("name") or "document.pdf"),
            size=int(data.get("size") or 0),
            content_type=str(data.get("content_type") or "") or None,
            created_at=str(data.get("created_at") or "") or None,
        )

    def iter_asset_bytes(self, asset_id: int, *, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        # GitHub answers with a redirect to the CDN; the client follows it.
        timeout = httpx.Timeout(
            connect=float(settings.github_timeout_connect),
            read=float(settings.github_upload_timeout_seconds),
            write=float(settings.github_timeout_read),
            pool=float(settings.github_timeout_connect),
        )
        with self._client(timeout=timeout) as client:
            with client.stream(
                "GET",
                self._repo_path(f"/releases/assets/{int(asset_id)}"),
                headers=self._headers(accept="application/octet-stream"),
            ) as resp:
                if resp.status_code >= 400:
                    resp.read()
                    raise UpstreamFailure(
                        f"GitHub asset download failed: {_upstream_message(resp)}",
                        upstream_status=resp.status_code,
                    )
                yield from resp.iter_bytes(chunk_size)

    def list_assets(self, container: Container) -> list[AssetInfo]:
        out: list[AssetInfo] = []
        page = 1
        with self._client() as client:
            while True:
                try:
                    resp = client.get(
                        self._repo_path(f"/releases/{container.id}/assets"),
                        headers=self._headers(),
                        params={"per_page": 100, "page": page},
                    )
                except httpx.HTTPError as e:
                    raise UpstreamFailure(f"GitHub asset listing failed: {e}") from e
                if resp.status_code >= 400:
                    raise UpstreamFailure(
                        f"GitHub asset listing failed: {_upstream_message(resp)}",
                        upstream_status=resp.status_code,
                    )
                items = resp.json() or []
                out.extend(self._asset_info(it) for it in items if isinstance(it, dict))
                if len(items) < 100:
                    break
                page += 1
        return out


def get_release_client() -> ReleaseClient:
    return ReleaseClient()
