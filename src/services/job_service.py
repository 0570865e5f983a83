"""Job management service: intake, planning, status, resubmission and deletion."""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import Settings, get_settings
from src.db.models import ApiKey, Chunk, DocumentKind, JobMethod, JobStatus, TranslationJob
from src.schemas.schemas import ChunkStatusResponse, JobStatusResponse, is_supported_language
from src.services import html_template, skeleton
from src.services.chunking import group_segments, split_blocks, split_text
from src.services.docx_package import is_docx, prepare_document_xml
from src.services.exceptions import (
    InputValidationError,
    NoTranslatableTextError,
    StorageError,
    StructuralError,
)
from src.services.pdf_overlay import group_clusters
from src.services.pdf_positions import extract_text_positions, is_pdf
from src.services.queue import build_chunk_queue
from src.services.reconstructor import HTML_TEMPLATE_NAME
from src.services.repository import ClaimedChunk, SqlJobRepository
from src.services.storage import StorageService, original_path, work_path
from src.services.translator import TranslationProvider

logger = logging.getLogger(__name__)

EXTENSION_KINDS = {
    ".docx": DocumentKind.DOCX,
    ".pdf": DocumentKind.PDF,
    ".html": DocumentKind.HTML,
    ".htm": DocumentKind.HTML,
    ".txt": DocumentKind.TXT,
    ".pptx": DocumentKind.PPTX,
}


@dataclass
class PlannedChunk:
    text: str
    block_index: Optional[int] = None


@dataclass
class TranslationPlan:
    """How a document will be translated, decided before the job exists."""

    method: JobMethod
    chunks: list[PlannedChunk] = field(default_factory=list)
    html_template: Optional[str] = None
    structural_error: Optional[StructuralError] = None


def detect_document_kind(filename: str) -> DocumentKind:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext not in EXTENSION_KINDS:
        raise InputValidationError(
            f"Unsupported file type '{ext or filename}'",
            details={"supported": sorted(EXTENSION_KINDS)},
        )
    return EXTENSION_KINDS[ext]


def decode_text(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise InputValidationError("Text documents must be UTF-8 encoded")


def validate_upload(
    filename: str,
    content: bytes,
    source_language: str,
    target_language: str,
    settings: Settings,
) -> DocumentKind:
    """
    Reject input that can never be translated, before any job exists.

    Raises:
        InputValidationError: unsupported type, bad size, bad languages or
            content that does not match its extension
    """
    kind = detect_document_kind(filename)

    if not content:
        raise InputValidationError("Uploaded file is empty")
    if len(content) > settings.max_upload_bytes:
        raise InputValidationError(
            f"File exceeds the {settings.max_upload_bytes // (1024 * 1024)} MB upload limit"
        )

    for code in (source_language, target_language):
        if not code or not is_supported_language(code):
            raise InputValidationError(f"Unsupported language '{code}'")
    if source_language == target_language:
        raise InputValidationError("Source and target language must differ")

    if kind in (DocumentKind.DOCX, DocumentKind.PPTX) and not is_docx(content):
        raise InputValidationError(f"File is not a valid {kind.value.upper()} package")
    if kind == DocumentKind.PDF and not is_pdf(content):
        raise InputValidationError("File is not a valid PDF")
    if kind in (DocumentKind.TXT, DocumentKind.HTML):
        decode_text(content)

    return kind


def plan_translation(kind: DocumentKind, content: bytes, settings: Settings) -> TranslationPlan:
    """
    Choose the translation method and cut the document into chunks.

    Structural problems (no usable delimiter, no text at all) don't raise;
    they come back on the plan so the job can be recorded as failed.

    Raises:
        InputValidationError: the document needs a provider that isn't configured
            or its content cannot be parsed
    """
    if kind == DocumentKind.PPTX:
        if not settings.native_provider_enabled:
            raise InputValidationError("PPTX documents need the document translation provider")
        return TranslationPlan(method=JobMethod.NATIVE_PROVIDER_ASYNC)

    if kind == DocumentKind.PDF and settings.pdf_translation_mode == "native":
        if not settings.native_provider_enabled:
            raise InputValidationError("Native PDF translation is not configured")
        return TranslationPlan(method=JobMethod.NATIVE_PROVIDER_ASYNC)

    try:
        if kind == DocumentKind.DOCX:
            return _plan_docx(content, settings)
        if kind == DocumentKind.PDF:
            return _plan_pdf(content, settings)
        if kind == DocumentKind.HTML:
            return _plan_html(decode_text(content), settings)
        return _plan_text(decode_text(content), settings)
    except StructuralError as e:
        method = JobMethod.SKELETON_SYNC if kind == DocumentKind.DOCX else JobMethod.CHUNKED_ASYNC
        return TranslationPlan(method=method, structural_error=e)


def _plan_docx(content: bytes, settings: Settings) -> TranslationPlan:
    skeleton_map = skeleton.strip(prepare_document_xml(content))
    if skeleton_map.segments == 0:
        raise NoTranslatableTextError("Document contains no translatable text")

    if len(skeleton_map.text) <= settings.skeleton_max_chars:
        return TranslationPlan(
            method=JobMethod.SKELETON_SYNC,
            chunks=[PlannedChunk(skeleton_map.text, block_index=1)],
        )
    if settings.native_provider_enabled:
        return TranslationPlan(method=JobMethod.NATIVE_PROVIDER_ASYNC)

    groups = group_segments(skeleton_map.runs, settings.max_chunk_chars, skeleton_map.delimiter)
    return TranslationPlan(
        method=JobMethod.CHUNKED_ASYNC,
        chunks=[PlannedChunk(g.text, block_index=g.first_ordinal) for g in groups],
    )


def _plan_pdf(content: bytes, settings: Settings) -> TranslationPlan:
    clusters = group_clusters(extract_text_positions(content))
    text = "\n\n".join(cluster.text for cluster in clusters)
    pieces = split_text(text, settings.max_chunk_chars)
    if not pieces:
        raise NoTranslatableTextError("PDF contains no extractable text (scanned document?)")
    return TranslationPlan(
        method=JobMethod.CHUNKED_ASYNC, chunks=[PlannedChunk(piece) for piece in pieces]
    )


def _plan_html(text: str, settings: Settings) -> TranslationPlan:
    extracted = html_template.extract(text)
    chunks = [
        PlannedChunk(piece, block_index=index)
        for index, block in enumerate(extracted.blocks)
        for piece in split_text(block, settings.max_chunk_chars)
    ]
    if not chunks:
        raise NoTranslatableTextError("HTML document contains no text")
    return TranslationPlan(
        method=JobMethod.CHUNKED_ASYNC, chunks=chunks, html_template=extracted.template
    )


def _plan_text(text: str, settings: Settings) -> TranslationPlan:
    pieces = split_blocks(text, settings.max_chunk_chars)
    if not pieces:
        raise NoTranslatableTextError("Document contains no text")
    return TranslationPlan(
        method=JobMethod.CHUNKED_ASYNC,
        chunks=[PlannedChunk(piece.text, block_index=piece.block) for piece in pieces],
    )


class JobService:
    """Service for managing translation jobs and their chunks."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def create_job(
        self,
        db: AsyncSession,
        api_key: ApiKey,
        filename: str,
        content_type: Optional[str],
        content: bytes,
        source_language: str,
        target_language: str,
        storage: StorageService,
        provider: TranslationProvider,
    ) -> TranslationJob:
        """
        Validate, plan and persist a new job with its chunks.

        Small DOCX files are translated before this returns; every other
        job is left queued for the ticks.

        Raises:
            InputValidationError: the upload is rejected
            StorageError: the original could not be stored
        """
        kind = validate_upload(filename, content, source_language, target_language, self.settings)
        plan = plan_translation(kind, content, self.settings)

        job_id = str(uuid4())
        path = original_path(api_key.id, job_id, filename)
        storage.upload(content, path, content_type or "application/octet-stream")
        if plan.html_template is not None:
            storage.upload(
                plan.html_template.encode("utf-8"),
                work_path(api_key.id, job_id, HTML_TEMPLATE_NAME),
                "text/html; charset=utf-8",
            )

        now = datetime.now(timezone.utc)
        job = TranslationJob(
            id=job_id,
            owner_id=api_key.id,
            source_language=source_language,
            target_language=target_language,
            original_filename=filename,
            content_type=content_type or "application/octet-stream",
            document_kind=kind,
            original_storage_path=path,
            status=JobStatus.QUEUED,
            method=plan.method,
            total_chunks=len(plan.chunks),
        )
        if plan.structural_error is not None:
            job.status = JobStatus.FAILED
            job.error_message = str(plan.structural_error)
            logger.warning(f"Job {job_id} failed at planning: {plan.structural_error}")
        db.add(job)

        # A synchronous job holds the claim on its only chunk from the start
        claim_token = str(uuid4()) if plan.method == JobMethod.SKELETON_SYNC else None
        for index, planned in enumerate(plan.chunks):
            db.add(
                Chunk(
                    job_id=job_id,
                    sequence_index=index,
                    total_chunks=len(plan.chunks),
                    original_text=planned.text,
                    target_language=target_language,
                    block_index=planned.block_index,
                    claim_token=claim_token,
                    claimed_at=now if claim_token else None,
                )
            )

        await db.commit()
        logger.info(
            f"Created job {job_id}: {kind.value} via {plan.method.value} "
            f"with {len(plan.chunks)} chunks"
        )

        if plan.method == JobMethod.SKELETON_SYNC and job.status == JobStatus.QUEUED:
            await self.run_skeleton_sync(db, job, content, claim_token, storage, provider)

        await db.refresh(job)
        return job

    async def run_skeleton_sync(
        self,
        db: AsyncSession,
        job: TranslationJob,
        original: bytes,
        claim_token: str,
        storage: StorageService,
        provider: TranslationProvider,
    ):
        """
        Translate a single-chunk DOCX job inside the request.

        The chunk goes through the same queue code a tick would use. If the
        provider fails, the chunk keeps its retry state and later ticks
        finish the job.
        """
        result = await db.execute(select(Chunk).where(Chunk.job_id == job.id))
        chunk = result.scalar_one()
        queue = build_chunk_queue(SqlJobRepository(db), provider, storage, settings=self.settings)
        outcome = await queue.process_chunk(
            ClaimedChunk(
                id=chunk.id,
                job_id=job.id,
                sequence_index=chunk.sequence_index,
                total_chunks=chunk.total_chunks,
                original_text=chunk.original_text,
                retry_count=chunk.retry_count,
                claim_token=claim_token,
            ),
            original=original,
        )
        logger.info(f"Synchronous translation of job {job.id}: {outcome.outcome.value}")

    async def get_job(
        self,
        db: AsyncSession,
        job_id: str,
        owner_id: Optional[str] = None,
        include_chunks: bool = True,
    ) -> Optional[TranslationJob]:
        """
        Get a job by ID.

        Args:
            db: Database session
            job_id: Job ID
            owner_id: Filter by owner (for authorization)
            include_chunks: Whether to eagerly load chunks
        """
        query = select(TranslationJob).where(TranslationJob.id == job_id)

        if owner_id:
            query = query.where(TranslationJob.owner_id == owner_id)

        if include_chunks:
            query = query.options(selectinload(TranslationJob.chunks))

        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        db: AsyncSession,
        owner_id: str,
        status: Optional[JobStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[TranslationJob], int]:
        """
        List jobs for an owner.

        Returns:
            Tuple of (jobs, total_count)
        """
        query = select(TranslationJob).where(TranslationJob.owner_id == owner_id)

        if status:
            query = query.where(TranslationJob.status == status)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await db.execute(count_query)).scalar() or 0

        query = (
            query.order_by(TranslationJob.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        )

        result = await db.execute(query)
        return list(result.scalars().all()), total

    async def resubmit_job(self, db: AsyncSession, job: TranslationJob) -> bool:
        """
        Put a failed job back in play.

        Untranslated chunks get a fresh retry budget; translated chunks are
        kept. Native jobs start over with a new upload.
        """
        if not is_resubmittable(job):
            return False

        now = datetime.now(timezone.utc)
        await db.execute(
            update(Chunk)
            .where(Chunk.job_id == job.id, Chunk.translated_text.is_(None))
            .values(
                retry_count=0,
                last_error=None,
                next_attempt_at=None,
                claim_token=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )

        values = dict(
            status=JobStatus.ACTIVE,
            error_message=None,
            failed_attempts=0,
            resubmit_count=TranslationJob.resubmit_count + 1,
            reconstruction_claimed_at=None,
            completed_at=None,
            version=TranslationJob.version + 1,
            updated_at=now,
        )
        if job.method == JobMethod.NATIVE_PROVIDER_ASYNC:
            values.update(
                native_document_id=None,
                native_document_key=None,
                native_status=None,
                native_started_at=None,
                native_next_poll_at=None,
            )

        result = await db.execute(
            update(TranslationJob)
            .where(TranslationJob.id == job.id, TranslationJob.status == JobStatus.FAILED)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            logger.info(f"Job {job.id} resubmitted")
        return result.rowcount == 1

    async def delete_job(self, db: AsyncSession, job: TranslationJob, storage: StorageService):
        """Delete a job, its chunks and, best-effort, its stored files."""
        paths = [job.original_storage_path, job.output_storage_path]
        for path in filter(None, paths):
            try:
                storage.delete(path)
            except StorageError as e:
                logger.warning(f"Could not delete {path} for job {job.id}: {e}")
        try:
            storage.delete_job_files(job.owner_id, job.id)
        except StorageError as e:
            logger.warning(f"Could not clean up files of job {job.id}: {e}")

        await db.delete(job)
        await db.commit()
        logger.info(f"Deleted job {job.id}")

    def job_to_response(
        self, job: TranslationJob, chunks: Optional[list[Chunk]] = None
    ) -> JobStatusResponse:
        """Convert a job (and optionally its chunks) to the response schema."""
        chunk_responses = []
        translated = None
        if chunks is not None:
            translated = sum(1 for c in chunks if not c.is_pending)
            chunk_responses = [
                ChunkStatusResponse(
                    sequence_index=c.sequence_index,
                    status=_chunk_status(c, self.settings.max_chunk_retries),
                    characters=len(c.original_text),
                    retry_count=c.retry_count,
                    last_error=c.last_error,
                    translated_at=c.translated_at,
                )
                for c in chunks
            ]

        return JobStatusResponse(
            id=job.id,
            method=job.method.value,
            status=job.status.value,
            document_kind=job.document_kind.value,
            original_filename=job.original_filename,
            source_language=job.source_language,
            target_language=job.target_language,
            total_chunks=job.total_chunks,
            translated_chunks=translated,
            progress_percent=job.progress_percent,
            error_message=job.error_message,
            failed_attempts=job.failed_attempts,
            resubmit_count=job.resubmit_count,
            native_status=job.native_status.value if job.native_status else None,
            output_available=job.status == JobStatus.COMPLETED and bool(job.output_storage_path),
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            chunks=chunk_responses,
        )


def is_resubmittable(job: TranslationJob) -> bool:
    """Failed jobs with work a tick can pick up; planning failures have none."""
    if job.status != JobStatus.FAILED:
        return False
    return job.total_chunks > 0 or job.method == JobMethod.NATIVE_PROVIDER_ASYNC


def _chunk_status(chunk: Chunk, max_retries: int) -> str:
    if not chunk.is_pending:
        return "translated"
    if chunk.retry_count >= max_retries:
        return "failed"
    if chunk.claim_token:
        return "in_progress"
    return "retrying" if chunk.retry_count else "pending"


# Singleton instance
job_service = JobService()
