from __future__ import annotations

import logging
from typing import Any

import httpx

from app.core.cache import TTLCache
from app.core.config import settings
from app.core.errors import NotFoundError, UpstreamFailure


log = logging.getLogger(__name__)

MAX_PAGES = 100


def _translated(topic: dict[str, Any], language: str | None) -> dict[str, Any]:
    if not language or language == "all":
        return topic
    tr = (topic.get("translations") or {}).get(language) or {}
    out = dict(topic)
    for k in ("title", "summary", "content"):
        out[k] = tr.get(k) or topic.get(k)
    out["displayLanguage"] = language
    return out


class ContentIndex:
    """Read-only view of the processed book JSON published to a GitHub repo."""

    def __init__(
        self,
        cache: TTLCache,
        *,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.cache = cache
        self.base_url = (base_url or settings.content_raw_base_url).rstrip("/")
        self._transport = transport

    def fetch_json(self, path: str, cache_key: str) -> Any:
        hit = self.cache.get(cache_key)
        if hit is not None:
            return hit

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=30.0, transport=self._transport) as client:
                resp = client.get(url, headers={"Accept": "application/json", "User-Agent": "GyanDhara-App/1.0"})
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"Failed to fetch from GitHub: {e}") from e
        if resp.status_code == 404:
            raise NotFoundError("Resource not found on GitHub")
        if resp.status_code >= 400:
            raise UpstreamFailure(f"Failed to fetch from GitHub: HTTP {resp.status_code}", upstream_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamFailure(f"Failed to fetch from GitHub: invalid JSON at {path}") from e

        self.cache.set(cache_key, data)
        return data

    def books(self) -> Any:
        return self.fetch_json("index.json", "books-index")

    def book(self, book_id: str) -> Any:
        return self.fetch_json(f"{book_id}/metadata.json", f"book-{book_id}-metadata")

    def topics(self, book_id: str, *, language: str | None = None) -> dict[str, Any]:
        data = self.fetch_json(f"{book_id}/topics.json", f"book-{book_id}-topics") or {}
        topics = [_translated(t, language) for t in data.get("topics") or []]
        return {"bookId": data.get("bookId", book_id), "totalTopics": len(topics), "topics": topics}

    def topic(self, book_id: str, topic_id: str, *, language: str | None = None) -> dict[str, Any]:
        data = self.fetch_json(f"{book_id}/topics.json", f"book-{book_id}-topics") or {}
        for t in data.get("topics") or []:
            if t.get("id") == topic_id:
                return _translated(t, language)
        raise NotFoundError("Topic not found")

    def quizzes(self, book_id: str) -> Any:
        return self.fetch_json(f"{book_id}/quizzes.json", f"book-{book_id}-quizzes")

    def quiz(self, book_id: str, topic_id: str) -> dict[str, Any]:
        data = self.quizzes(book_id) or {}
        for q in data.get("quizzes") or []:
            if q.get("topicId") == topic_id:
                return q
        raise NotFoundError("Quiz not found for this topic")

    def page(self, book_id: str, page_number: int) -> Any:
        return self.fetch_json(f"{book_id}/pages/page_{int(page_number)}.json", f"book-{book_id}-page-{int(page_number)}")

    def pages(self, book_id: str) -> dict[str, Any]:
        meta = self.book(book_id) or {}
        total = min(int(meta.get("totalPages") or 0), MAX_PAGES)
        pages = []
        for n in range(1, total + 1):
            try:
                pages.append(self.page(book_id, n))
            except NotFoundError:
                log.warning("content page missing book_id=%s page=%s", book_id, n)
        return {"bookId": book_id, "totalPages": len(pages), "pages": pages}
