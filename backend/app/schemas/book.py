from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class StagingPresignRequest(BaseModel):
    filename: str
    size_bytes: int | None = Field(default=None, ge=0)


class StagingPresignResponse(BaseModel):
    ok: bool = True
    object_key: str
    upload_url: str
    threshold_bytes: int


class JobEnqueuedResponse(BaseModel):
    ok: bool = True
    success: bool = True
    enqueued: bool
    job_id: str | None = None
    reason: str | None = None


class JobStatusResponse(BaseModel):
    id: str
    status: str
    enqueued_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    result: Any = None
    error_message: str | None = None


class BookStats(BaseModel):
    total_pdfs: int
    github_releases: int
    supabase_storage: int
    total_size_bytes: int
    total_size_gb: str


class BookStatsResponse(BaseModel):
    success: bool = True
    stats: BookStats
