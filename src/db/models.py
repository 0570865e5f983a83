"""Database models for the document translation service."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.db.session import Base


class JobStatus(str, enum.Enum):
    """Status of a translation job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobMethod(str, enum.Enum):
    """How a job's document gets translated."""

    SKELETON_SYNC = "skeleton_sync"
    CHUNKED_ASYNC = "chunked_async"
    NATIVE_PROVIDER_ASYNC = "native_provider_async"


class DocumentKind(str, enum.Enum):
    """Document formats accepted for translation."""

    DOCX = "docx"
    PDF = "pdf"
    HTML = "html"
    TXT = "txt"
    PPTX = "pptx"


class NativeStatus(str, enum.Enum):
    """Status of a document handed to the native provider."""

    UPLOADED = "uploaded"
    QUEUED = "queued"
    TRANSLATING = "translating"
    DONE = "done"
    ERROR = "error"


class ApiKey(Base):
    """API keys for authentication. The key's id is the owner of its jobs."""

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    key_hash: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    key_prefix: Mapped[str] = mapped_column(String(12), index=True)
    name: Mapped[str] = mapped_column(String(100))
    owner: Mapped[str] = mapped_column(String(100))
    scopes: Mapped[list] = mapped_column(JSON, default=list)  # ["documents"]
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, default=60)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, default=500)
    is_active: Mapped[bool] = mapped_column(default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    jobs: Mapped[list["TranslationJob"]] = relationship("TranslationJob", back_populates="owner")


class TranslationJob(Base):
    """One submitted document under translation."""

    __tablename__ = "translation_jobs"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), primary_key=True, default=lambda: str(uuid4())
    )
    owner_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("api_keys.id"), index=True
    )

    # Language pair
    source_language: Mapped[str] = mapped_column(String(10))
    target_language: Mapped[str] = mapped_column(String(10))

    # Documents
    original_filename: Mapped[str] = mapped_column(String(255))
    content_type: Mapped[str] = mapped_column(String(150))
    document_kind: Mapped[DocumentKind] = mapped_column(Enum(DocumentKind))
    original_storage_path: Mapped[str] = mapped_column(Text)
    output_storage_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.QUEUED, index=True
    )
    method: Mapped[JobMethod] = mapped_column(Enum(JobMethod))
    progress_percent: Mapped[int] = mapped_column(Integer, default=0)
    total_chunks: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Retry counters
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    resubmit_count: Mapped[int] = mapped_column(Integer, default=0)

    # Native provider bookkeeping
    native_document_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    native_document_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    native_status: Mapped[Optional[NativeStatus]] = mapped_column(
        Enum(NativeStatus), nullable=True
    )
    native_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    native_next_poll_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Compare-and-swap token, bumped on every update
    version: Mapped[int] = mapped_column(Integer, default=1)
    reconstruction_claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    owner: Mapped["ApiKey"] = relationship("ApiKey", back_populates="jobs")
    chunks: Mapped[list["Chunk"]] = relationship(
        "Chunk",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Chunk.sequence_index",
    )


class Chunk(Base):
    """One translatable unit of a job. Pending while translated_text is NULL."""

    __tablename__ = "translation_chunks"
    __table_args__ = (UniqueConstraint("job_id", "sequence_index", name="uq_chunk_sequence"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("translation_jobs.id", ondelete="CASCADE"), index=True
    )
    sequence_index: Mapped[int] = mapped_column(Integer)
    total_chunks: Mapped[int] = mapped_column(Integer)

    original_text: Mapped[str] = mapped_column(Text)
    translated_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target_language: Mapped[str] = mapped_column(String(10))
    # HTML placeholder index, or first skeleton ordinal for chunked DOCX
    block_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Retry / claim state
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    translated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    job: Mapped["TranslationJob"] = relationship("TranslationJob", back_populates="chunks")

    @property
    def is_pending(self) -> bool:
        return self.translated_text is None
