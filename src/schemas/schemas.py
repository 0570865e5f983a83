"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from src.config import get_settings


# ============== Languages ==============

LANGUAGE_ALIASES = {
    "english": "en",
    "spanish": "es",
    "french": "fr",
    "german": "de",
    "italian": "it",
    "portuguese": "pt",
    "dutch": "nl",
    "polish": "pl",
    "russian": "ru",
    "japanese": "ja",
    "korean": "ko",
    "chinese": "zh-CN",
    "zh": "zh-CN",
    "arabic": "ar",
}


def normalize_language(lang: str | None) -> str | None:
    """
    Normalize a language code to the form used in settings.

    The base is lower-cased and a region is upper-cased, so ``ZH-cn``
    becomes ``zh-CN``.
    """
    if lang is None:
        return None
    lang = lang.strip().replace("_", "-")
    if lang.lower() in LANGUAGE_ALIASES:
        return LANGUAGE_ALIASES[lang.lower()]
    base, _, region = lang.partition("-")
    return f"{base.lower()}-{region.upper()}" if region else base.lower()


def is_supported_language(code: str) -> bool:
    return code in get_settings().language_names


# ============== Job Schemas ==============


class JobCreateResponse(BaseModel):
    """Response after submitting a document."""

    job_id: str
    method: str
    status: str
    document_kind: str
    total_chunks: int
    progress_percent: int
    error_message: Optional[str] = None
    created_at: datetime


class ChunkStatusResponse(BaseModel):
    """Status of an individual chunk."""

    model_config = ConfigDict(from_attributes=True)

    sequence_index: int
    status: str
    characters: int
    retry_count: int
    last_error: Optional[str] = None
    translated_at: Optional[datetime] = None


class JobStatusResponse(BaseModel):
    """Full job status, optionally with its chunks."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    method: str
    status: str
    document_kind: str
    original_filename: str
    source_language: str
    target_language: str
    total_chunks: int
    translated_chunks: Optional[int] = None
    progress_percent: int
    error_message: Optional[str] = None
    failed_attempts: int
    resubmit_count: int
    native_status: Optional[str] = None
    output_available: bool
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    chunks: list[ChunkStatusResponse] = []


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobStatusResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class DownloadResponse(BaseModel):
    """Presigned link to a translated document."""

    job_id: str
    filename: str
    url: str
    expires_in: int


# ============== Queue Schemas ==============


class TickResponse(BaseModel):
    """Result of one queue tick."""

    success: bool
    outcome: str
    processed: int
    message: str = ""
    job_id: Optional[str] = None
    chunk_id: Optional[int] = None
    progress: Optional[int] = None
    pending_remaining: int = 0
    has_more_work: bool = False
    elapsed_ms: int = 0
    error: Optional[str] = None


class QueueStatsResponse(BaseModel):
    """Snapshot of queue depth."""

    pending_chunks: int
    jobs_by_status: dict[str, int] = Field(default_factory=dict)


# ============== Health & Misc Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
    storage: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class LanguageInfo(BaseModel):
    """Information about a supported language."""

    code: str
    name: str
