"""
Chunk queue: one unit of translation work per tick.

A tick is driven externally (the scheduled endpoint or the Celery beat
task) and does at most one of, in order:

1. translate one claimable chunk, finishing its job when it was the last one
2. advance one native-provider job by a single upload, poll or download
3. rebuild a job whose chunks are all done but whose reconstruction stalled

Ticks may overlap. All shared state goes through the repository's
compare-and-swap operations, so overlapping ticks never translate a chunk
twice or complete a job twice.
"""

import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from src.config import Settings, get_settings
from src.db.models import JobStatus, NativeStatus, TranslationJob
from src.services.backoff import BackoffSchedule
from src.services.document_provider import DeepLDocumentTranslator, NativeDocumentHandle
from src.services.exceptions import ProviderError, StorageError, TranslationServiceError
from src.services.pdf_overlay import PdfOverlayReconstructor
from src.services.reconstructor import DocumentReconstructor
from src.services.repository import ClaimedChunk, JobRepository, as_utc, utcnow
from src.services.storage import StorageService
from src.services.translator import TranslationProvider

logger = logging.getLogger(__name__)


class TickOutcome(str, enum.Enum):
    IDLE = "idle"
    CHUNK_TRANSLATED = "chunk_translated"
    CHUNK_FAILED = "chunk_failed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    NATIVE_POLLED = "native_polled"
    OUTPUT_DEFERRED = "output_deferred"


@dataclass
class TickResult:
    outcome: TickOutcome
    message: str = ""
    job_id: Optional[str] = None
    chunk_id: Optional[int] = None
    progress: Optional[int] = None
    pending_remaining: int = 0
    error: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def processed(self) -> int:
        return 0 if self.outcome == TickOutcome.IDLE else 1

    @property
    def has_more_work(self) -> bool:
        """Whether another tick right away would likely find a chunk."""
        return self.outcome in (
            TickOutcome.CHUNK_TRANSLATED,
            TickOutcome.CHUNK_FAILED,
            TickOutcome.JOB_COMPLETED,
            TickOutcome.JOB_FAILED,
        ) and self.pending_remaining > 0


def compute_progress(translated: int, total: int) -> int:
    """Whole percent, reaching 100 only once every chunk is translated."""
    if total <= 0:
        return 0
    return translated * 100 // total


class ChunkQueue:
    """Runs ticks against a JobRepository."""

    def __init__(
        self,
        repository: JobRepository,
        provider: TranslationProvider,
        reconstructor: DocumentReconstructor,
        document_provider: Optional[DeepLDocumentTranslator] = None,
        storage: Optional[StorageService] = None,
        *,
        max_retries: int = 3,
        claim_lease_seconds: int = 120,
        reconstruction_lease_seconds: int = 600,
        native_poll_interval_seconds: int = 5,
        native_timeout_seconds: int = 300,
        backoff: Optional[BackoffSchedule] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.provider = provider
        self.reconstructor = reconstructor
        self.document_provider = document_provider
        self.storage = storage or reconstructor.storage
        self.max_retries = max_retries
        self.claim_lease_seconds = claim_lease_seconds
        self.reconstruction_lease_seconds = reconstruction_lease_seconds
        self.native_poll_interval_seconds = native_poll_interval_seconds
        self.native_timeout_seconds = native_timeout_seconds
        self.backoff = backoff or BackoffSchedule.from_base(5, 300)
        self.clock = clock

    async def process_tick(self) -> TickResult:
        """Do one unit of work and report what happened."""
        started = time.monotonic()
        now = self.clock()

        result = None
        pending = await self.repository.count_pending_chunks()
        if pending > 0:
            claimed = await self.repository.claim_next_chunk(now, self.claim_lease_seconds)
            if claimed is not None:
                result = await self.process_chunk(claimed, now=now)

        if result is None and self.document_provider is not None:
            result = await self.advance_native_job(now)

        if result is None:
            result = await self.recover_stalled_reconstruction(now)

        if result is None:
            result = TickResult(
                outcome=TickOutcome.IDLE,
                message="No pending chunks" if pending == 0 else "No chunk ready to claim",
            )

        result.pending_remaining = await self.repository.count_pending_chunks()
        result.elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Tick {result.outcome.value} in {result.elapsed_ms}ms "
            f"(job={result.job_id}, pending={result.pending_remaining})"
        )
        return result

    async def process_chunk(
        self,
        claimed: ClaimedChunk,
        now: Optional[datetime] = None,
        original: Optional[bytes] = None,
    ) -> TickResult:
        """
        Translate a chunk this caller has claimed and record the outcome.

        ``original`` lets a caller that already holds the original file skip
        the storage download when this turns out to be the job's last chunk.
        """
        now = now or self.clock()
        job = await self.repository.get_job(claimed.job_id)
        if job is None or job.status not in (JobStatus.QUEUED, JobStatus.ACTIVE):
            await self.repository.release_chunk(claimed.id, claimed.claim_token)
            return TickResult(
                outcome=TickOutcome.IDLE,
                message="Chunk belongs to a closed job",
                job_id=claimed.job_id,
                chunk_id=claimed.id,
            )

        if job.status == JobStatus.QUEUED:
            await self.repository.mark_job_active(job.id, now)

        position = f"{claimed.sequence_index + 1}/{claimed.total_chunks}"
        try:
            translated = await self.provider.translate(
                claimed.original_text, job.source_language, [job.target_language]
            )
        except ProviderError as e:
            return await self._handle_chunk_failure(job, claimed, e, now)
        except TranslationServiceError as e:
            # Input the provider can never accept; retrying won't help
            logger.error(f"Chunk {position} of job {job.id} rejected: {e}")
            await self.repository.fail_job(job.id, f"Chunk {position} cannot be translated: {e}", now)
            return TickResult(
                outcome=TickOutcome.JOB_FAILED,
                message=f"Chunk {position} rejected",
                job_id=job.id,
                chunk_id=claimed.id,
                error=str(e),
            )

        saved = await self.repository.save_translation(
            claimed.id, claimed.claim_token, translated, now
        )
        if not saved:
            logger.warning(f"Lost claim on chunk {position} of job {job.id}; discarding result")
            return TickResult(
                outcome=TickOutcome.IDLE,
                message="Claim expired before the translation was saved",
                job_id=job.id,
                chunk_id=claimed.id,
            )

        translated_count, total = await self.repository.translation_counts(job.id)
        progress = compute_progress(translated_count, total)
        await self.repository.update_progress(job.id, progress, now)
        logger.info(f"Translated chunk {position} of job {job.id} ({progress}%)")

        if translated_count == total:
            return await self.finish_job(job.id, now, original=original)

        return TickResult(
            outcome=TickOutcome.CHUNK_TRANSLATED,
            message=f"Translated chunk {position}",
            job_id=job.id,
            chunk_id=claimed.id,
            progress=progress,
        )

    async def finish_job(
        self, job_id: str, now: datetime, original: Optional[bytes] = None
    ) -> TickResult:
        """Rebuild and store the output, at most once per job."""
        if not await self.repository.claim_reconstruction(
            job_id, now, self.reconstruction_lease_seconds
        ):
            return TickResult(
                outcome=TickOutcome.CHUNK_TRANSLATED,
                message="Reconstruction already claimed",
                job_id=job_id,
                progress=100,
            )

        job = await self.repository.get_job(job_id)
        chunks = await self.repository.get_chunks(job_id)
        try:
            document = self.reconstructor.reconstruct(job, chunks, original=original)
        except TranslationServiceError as e:
            logger.error(f"Reconstruction of job {job_id} failed: {e}")
            await self.repository.fail_job(job_id, f"Reconstruction failed: {e}", now)
            return TickResult(
                outcome=TickOutcome.JOB_FAILED,
                message="Reconstruction failed",
                job_id=job_id,
                error=str(e),
            )

        try:
            output_path = self.reconstructor.store(job, document)
        except StorageError as e:
            # The claim is kept; stalled-job recovery retries once its lease runs out
            logger.warning(f"Storing the output of job {job_id} failed, will retry: {e}")
            return self._output_deferred(job_id, e)

        await self.repository.complete_job(job_id, output_path, now)
        logger.info(f"Job {job_id} completed: {output_path}")
        return TickResult(
            outcome=TickOutcome.JOB_COMPLETED,
            message=f"Job completed with {len(chunks)} chunks",
            job_id=job_id,
            progress=100,
        )

    async def recover_stalled_reconstruction(self, now: datetime) -> Optional[TickResult]:
        job_id = await self.repository.find_stalled_reconstruction(
            now, self.reconstruction_lease_seconds
        )
        if job_id is None:
            return None
        logger.warning(f"Recovering stalled reconstruction of job {job_id}")
        return await self.finish_job(job_id, now)

    async def advance_native_job(self, now: datetime) -> Optional[TickResult]:
        """Move one native-provider job a single step: upload, poll or download."""
        job = await self.repository.claim_native_job(now, self.native_poll_interval_seconds)
        if job is None:
            return None

        try:
            if not job.native_document_id:
                return await self._native_upload(job, now)
            return await self._native_poll(job, now)
        except ProviderError as e:
            attempts = await self.repository.increment_failed_attempts(job.id, now)
            logger.warning(f"Native step for job {job.id} failed ({attempts}/{self.max_retries}): {e}")
            if attempts >= self.max_retries:
                return await self._fail(job, f"Native translation failed: {e}", now)
            return TickResult(
                outcome=TickOutcome.NATIVE_POLLED,
                message="Native step failed, will retry",
                job_id=job.id,
                error=str(e),
            )
        except TranslationServiceError as e:
            return await self._fail(job, f"Native translation failed: {e}", now)

    async def _native_upload(self, job: TranslationJob, now: datetime) -> TickResult:
        content = self.storage.download(job.original_storage_path)
        handle = await self.document_provider.upload(
            content, job.original_filename, job.source_language, job.target_language
        )
        await self.repository.update_native_state(
            job.id,
            now,
            native_document_id=handle.document_id,
            native_document_key=handle.document_key,
            native_status=NativeStatus.UPLOADED,
            native_started_at=now,
        )
        return TickResult(
            outcome=TickOutcome.NATIVE_POLLED,
            message="Document uploaded to native provider",
            job_id=job.id,
            progress=job.progress_percent,
        )

    async def _native_poll(self, job: TranslationJob, now: datetime) -> TickResult:
        started_at = as_utc(job.native_started_at) or now
        if (now - started_at).total_seconds() > self.native_timeout_seconds:
            last_status = job.native_status.value if job.native_status else "unknown"
            return await self._fail(
                job,
                f"Native translation timed out after {self.native_timeout_seconds}s "
                f"(last status: {last_status})",
                now,
            )

        handle = NativeDocumentHandle(job.native_document_id, job.native_document_key)
        status = await self.document_provider.poll(handle)

        if status.status == NativeStatus.ERROR:
            return await self._fail(
                job, f"Native translation failed: {status.error_message or 'unknown error'}", now
            )

        if status.status != NativeStatus.DONE:
            await self.repository.update_native_state(job.id, now, native_status=status.status)
            return TickResult(
                outcome=TickOutcome.NATIVE_POLLED,
                message=f"Native provider status: {status.status.value}",
                job_id=job.id,
                progress=job.progress_percent,
            )

        content = await self.document_provider.download(handle)
        try:
            output_path = self.reconstructor.store_native_result(job, content)
        except StorageError as e:
            # Still done at the provider; the next poll downloads it again
            logger.warning(f"Storing the native result of job {job.id} failed, will retry: {e}")
            return self._output_deferred(job.id, e)
        await self.repository.update_native_state(job.id, now, native_status=NativeStatus.DONE)
        await self.repository.complete_job(job.id, output_path, now)
        logger.info(f"Native job {job.id} completed: {output_path}")
        return TickResult(
            outcome=TickOutcome.JOB_COMPLETED,
            message="Native translation downloaded",
            job_id=job.id,
            progress=100,
        )

    def _output_deferred(self, job_id: str, error: StorageError) -> TickResult:
        return TickResult(
            outcome=TickOutcome.OUTPUT_DEFERRED,
            message="Output upload failed, retry scheduled",
            job_id=job_id,
            error=str(error),
        )

    async def _fail(self, job: TranslationJob, message: str, now: datetime) -> TickResult:
        logger.error(f"Job {job.id} failed: {message}")
        await self.repository.fail_job(job.id, message, now)
        return TickResult(
            outcome=TickOutcome.JOB_FAILED, message=message, job_id=job.id, error=message
        )

    async def _handle_chunk_failure(
        self, job: TranslationJob, claimed: ClaimedChunk, error: ProviderError, now: datetime
    ) -> TickResult:
        position = f"{claimed.sequence_index + 1}/{claimed.total_chunks}"
        next_attempt_at = self.backoff.next_attempt_at(error, claimed.retry_count + 1, now)
        retry_count = await self.repository.record_chunk_failure(
            claimed.id, claimed.claim_token, str(error), next_attempt_at
        )
        await self.repository.increment_failed_attempts(job.id, now)

        if retry_count >= self.max_retries:
            logger.error(f"Chunk {position} of job {job.id} failed permanently: {error}")
            await self.repository.fail_job(
                job.id, f"Chunk {position} failed after {retry_count} attempts: {error}", now
            )
            return TickResult(
                outcome=TickOutcome.JOB_FAILED,
                message=f"Chunk {position} exhausted its retries",
                job_id=job.id,
                chunk_id=claimed.id,
                error=str(error),
            )

        logger.warning(
            f"Chunk {position} of job {job.id} failed "
            f"(attempt {retry_count}/{self.max_retries}): {error}"
        )
        return TickResult(
            outcome=TickOutcome.CHUNK_FAILED,
            message=f"Chunk {position} failed, retry scheduled",
            job_id=job.id,
            chunk_id=claimed.id,
            error=str(error),
        )


def build_chunk_queue(
    repository: JobRepository,
    provider: TranslationProvider,
    storage: StorageService,
    document_provider: Optional[DeepLDocumentTranslator] = None,
    settings: Optional[Settings] = None,
) -> ChunkQueue:
    """Wire a ChunkQueue from settings."""
    settings = settings or get_settings()
    reconstructor = DocumentReconstructor(
        storage,
        PdfOverlayReconstructor(
            min_font_size=settings.pdf_min_font_size,
            font_file=settings.pdf_overlay_font_file,
        ),
    )
    return ChunkQueue(
        repository,
        provider,
        reconstructor,
        document_provider,
        storage,
        max_retries=settings.max_chunk_retries,
        claim_lease_seconds=settings.claim_lease_seconds,
        reconstruction_lease_seconds=settings.reconstruction_lease_seconds,
        native_poll_interval_seconds=settings.native_poll_interval_seconds,
        native_timeout_seconds=settings.native_timeout_seconds,
        backoff=BackoffSchedule.from_base(settings.backoff_base_seconds, settings.backoff_max_seconds),
    )
