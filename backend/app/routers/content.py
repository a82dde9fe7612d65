from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from app.core.config import settings
from app.core.security import require_admin
from app.models.user import User
from app.services.content_index import ContentIndex


router = APIRouter(prefix="/github", tags=["content"])


def get_content_index(request: Request) -> ContentIndex:
    return ContentIndex(request.app.state.content_cache)


@router.get("/books")
def list_books(index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.books()}


@router.get("/books/{book_id}")
def get_book(book_id: str, index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.book(book_id)}


@router.get("/books/{book_id}/topics")
def list_topics(
    book_id: str,
    language: str | None = Query(default=None),
    index: ContentIndex = Depends(get_content_index),
):
    return {"success": True, "data": index.topics(book_id, language=language)}


@router.get("/books/{book_id}/topics/{topic_id}")
def get_topic(
    book_id: str,
    topic_id: str,
    language: str | None = Query(default=None),
    index: ContentIndex = Depends(get_content_index),
):
    return {"success": True, "data": index.topic(book_id, topic_id, language=language)}


@router.get("/books/{book_id}/quizzes")
def list_quizzes(book_id: str, index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.quizzes(book_id)}


@router.get("/books/{book_id}/quizzes/{topic_id}")
def get_quiz(book_id: str, topic_id: str, index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.quiz(book_id, topic_id)}


@router.get("/books/{book_id}/pages")
def list_pages(book_id: str, index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.pages(book_id)}


@router.get("/books/{book_id}/pages/{page_number}")
def get_page(book_id: str, page_number: int, index: ContentIndex = Depends(get_content_index)):
    return {"success": True, "data": index.page(book_id, page_number)}


@router.delete("/cache")
def clear_cache(request: Request, _: User = Depends(require_admin)):
    request.app.state.content_cache.clear()
    return {"success": True, "message": "Cache cleared"}


@router.get("/config")
def content_config():
    return {
        "success": True,
        "config": {
            "baseUrl": settings.content_raw_base_url,
            "cacheTtlSeconds": settings.content_cache_ttl_seconds,
        },
    }
