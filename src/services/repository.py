"""
Job and chunk persistence used by the translation queue.

Every state change is a single-row conditional UPDATE followed by a commit.
Claims are compare-and-swap: the UPDATE only matches while the row is still
in the expected state, and ``rowcount == 1`` tells the caller it won. Two
overlapping ticks can therefore never translate the same chunk or run the
reconstruction of one job twice.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import Chunk, JobMethod, JobStatus, TranslationJob

OPEN_STATUSES = (JobStatus.QUEUED, JobStatus.ACTIVE)

# How many candidates a claim tries before giving up on this tick
CLAIM_CANDIDATES = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ClaimedChunk:
    """Snapshot of a chunk this tick owns until it saves or releases it."""

    id: int
    job_id: str
    sequence_index: int
    total_chunks: int
    original_text: str
    retry_count: int
    claim_token: str


class JobRepository(Protocol):
    """Persistence operations the queue relies on."""

    async def count_pending_chunks(self) -> int: ...

    async def claim_next_chunk(self, now: datetime, lease_seconds: int) -> Optional[ClaimedChunk]: ...

    async def release_chunk(self, chunk_id: int, claim_token: str) -> None: ...

    async def get_job(self, job_id: str) -> Optional[TranslationJob]: ...

    async def get_chunks(self, job_id: str) -> list[Chunk]: ...

    async def mark_job_active(self, job_id: str, now: datetime) -> bool: ...

    async def save_translation(
        self, chunk_id: int, claim_token: str, translated_text: str, now: datetime
    ) -> bool: ...

    async def record_chunk_failure(
        self, chunk_id: int, claim_token: str, error: str, next_attempt_at: datetime
    ) -> int: ...

    async def translation_counts(self, job_id: str) -> tuple[int, int]: ...

    async def update_progress(self, job_id: str, progress: int, now: datetime) -> None: ...

    async def claim_reconstruction(self, job_id: str, now: datetime, lease_seconds: int) -> bool: ...

    async def find_stalled_reconstruction(self, now: datetime, lease_seconds: int) -> Optional[str]: ...

    async def complete_job(self, job_id: str, output_path: str, now: datetime) -> bool: ...

    async def fail_job(self, job_id: str, message: str, now: datetime) -> bool: ...

    async def increment_failed_attempts(self, job_id: str, now: datetime) -> int: ...

    async def claim_native_job(
        self, now: datetime, poll_interval_seconds: int
    ) -> Optional[TranslationJob]: ...

    async def update_native_state(self, job_id: str, now: datetime, **values) -> None: ...


class SqlJobRepository:
    """JobRepository on an async SQLAlchemy session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============== Chunks ==============

    async def count_pending_chunks(self) -> int:
        """Untranslated chunks of jobs that are still open."""
        result = await self.db.execute(
            select(func.count(Chunk.id))
            .join(TranslationJob, Chunk.job_id == TranslationJob.id)
            .where(
                Chunk.translated_text.is_(None),
                TranslationJob.status.in_(OPEN_STATUSES),
            )
        )
        return result.scalar() or 0

    async def claim_next_chunk(self, now: datetime, lease_seconds: int) -> Optional[ClaimedChunk]:
        """
        Claim the oldest claimable chunk.

        Claimable means untranslated, not claimed by a live tick, past its
        backoff, and belonging to an open job. The claim itself is a
        conditional UPDATE; losing the race moves on to the next candidate.
        """
        stale_before = now - timedelta(seconds=lease_seconds)
        unclaimed = or_(Chunk.claimed_at.is_(None), Chunk.claimed_at < stale_before)

        candidates = await self.db.execute(
            select(Chunk.id)
            .join(TranslationJob, Chunk.job_id == TranslationJob.id)
            .where(
                Chunk.translated_text.is_(None),
                unclaimed,
                or_(Chunk.next_attempt_at.is_(None), Chunk.next_attempt_at <= now),
                TranslationJob.status.in_(OPEN_STATUSES),
            )
            .order_by(Chunk.id)
            .limit(CLAIM_CANDIDATES)
        )

        for chunk_id in candidates.scalars().all():
            token = str(uuid4())
            result = await self.db.execute(
                update(Chunk)
                .where(Chunk.id == chunk_id, Chunk.translated_text.is_(None), unclaimed)
                .values(claim_token=token, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if result.rowcount != 1:
                continue

            row = (
                await self.db.execute(
                    select(
                        Chunk.id,
                        Chunk.job_id,
                        Chunk.sequence_index,
                        Chunk.total_chunks,
                        Chunk.original_text,
                        Chunk.retry_count,
                    ).where(Chunk.id == chunk_id)
                )
            ).one()
            return ClaimedChunk(
                id=row.id,
                job_id=row.job_id,
                sequence_index=row.sequence_index,
                total_chunks=row.total_chunks,
                original_text=row.original_text,
                retry_count=row.retry_count,
                claim_token=token,
            )
        return None

    async def release_chunk(self, chunk_id: int, claim_token: str) -> None:
        await self.db.execute(
            update(Chunk)
            .where(Chunk.id == chunk_id, Chunk.claim_token == claim_token)
            .values(claim_token=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def save_translation(
        self, chunk_id: int, claim_token: str, translated_text: str, now: datetime
    ) -> bool:
        """Store the translation if this tick still owns the chunk."""
        result = await self.db.execute(
            update(Chunk)
            .where(
                Chunk.id == chunk_id,
                Chunk.claim_token == claim_token,
                Chunk.translated_text.is_(None),
            )
            .values(
                translated_text=translated_text,
                translated_at=now,
                last_error=None,
                claim_token=None,
                claimed_at=None,
                next_attempt_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def record_chunk_failure(
        self, chunk_id: int, claim_token: str, error: str, next_attempt_at: datetime
    ) -> int:
        """Count a failed attempt and release the claim. Returns the new retry count."""
        await self.db.execute(
            update(Chunk)
            .where(Chunk.id == chunk_id, Chunk.claim_token == claim_token)
            .values(
                retry_count=Chunk.retry_count + 1,
                last_error=error,
                next_attempt_at=next_attempt_at,
                claim_token=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        result = await self.db.execute(select(Chunk.retry_count).where(Chunk.id == chunk_id))
        return result.scalar() or 0

    async def get_chunks(self, job_id: str) -> list[Chunk]:
        result = await self.db.execute(
            select(Chunk)
            .where(Chunk.job_id == job_id)
            .order_by(Chunk.sequence_index)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def translation_counts(self, job_id: str) -> tuple[int, int]:
        """(translated, total) chunks for a job."""
        result = await self.db.execute(
            select(
                func.count(Chunk.translated_text).label("translated"),
                func.count(Chunk.id).label("total"),
            ).where(Chunk.job_id == job_id)
        )
        row = result.one()
        return row.translated, row.total

    # ============== Jobs ==============

    async def get_job(self, job_id: str) -> Optional[TranslationJob]:
        result = await self.db.execute(
            select(TranslationJob)
            .where(TranslationJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_job_active(self, job_id: str, now: datetime) -> bool:
        return await self._update_job(
            job_id,
            TranslationJob.status == JobStatus.QUEUED,
            now,
            status=JobStatus.ACTIVE,
            started_at=now,
        )

    async def update_progress(self, job_id: str, progress: int, now: datetime) -> None:
        # Progress never moves backwards, even when ticks finish out of order
        await self._update_job(
            job_id,
            TranslationJob.progress_percent <= progress,
            now,
            progress_percent=progress,
        )

    async def claim_reconstruction(self, job_id: str, now: datetime, lease_seconds: int) -> bool:
        stale_before = now - timedelta(seconds=lease_seconds)
        return await self._update_job(
            job_id,
            and_(
                TranslationJob.status == JobStatus.ACTIVE,
                or_(
                    TranslationJob.reconstruction_claimed_at.is_(None),
                    TranslationJob.reconstruction_claimed_at < stale_before,
                ),
            ),
            now,
            reconstruction_claimed_at=now,
        )

    async def find_stalled_reconstruction(self, now: datetime, lease_seconds: int) -> Optional[str]:
        """An active chunked job whose chunks are all done but which never got rebuilt."""
        stale_before = now - timedelta(seconds=lease_seconds)
        pending = exists(
            select(Chunk.id).where(Chunk.job_id == TranslationJob.id, Chunk.translated_text.is_(None))
        )
        result = await self.db.execute(
            select(TranslationJob.id)
            .where(
                TranslationJob.status == JobStatus.ACTIVE,
                TranslationJob.method != JobMethod.NATIVE_PROVIDER_ASYNC,
                TranslationJob.total_chunks > 0,
                ~pending,
                or_(
                    TranslationJob.reconstruction_claimed_at.is_(None),
                    TranslationJob.reconstruction_claimed_at < stale_before,
                ),
            )
            .order_by(TranslationJob.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def complete_job(self, job_id: str, output_path: str, now: datetime) -> bool:
        return await self._update_job(
            job_id,
            TranslationJob.status == JobStatus.ACTIVE,
            now,
            status=JobStatus.COMPLETED,
            output_storage_path=output_path,
            progress_percent=100,
            error_message=None,
            completed_at=now,
        )

    async def fail_job(self, job_id: str, message: str, now: datetime) -> bool:
        return await self._update_job(
            job_id,
            TranslationJob.status.in_(OPEN_STATUSES),
            now,
            status=JobStatus.FAILED,
            error_message=message,
        )

    async def increment_failed_attempts(self, job_id: str, now: datetime) -> int:
        await self._update_job(
            job_id, True, now, failed_attempts=TranslationJob.failed_attempts + 1
        )
        result = await self.db.execute(
            select(TranslationJob.failed_attempts).where(TranslationJob.id == job_id)
        )
        return result.scalar() or 0

    async def claim_native_job(
        self, now: datetime, poll_interval_seconds: int
    ) -> Optional[TranslationJob]:
        """Claim the next native-provider job that is due for an upload or a poll."""
        candidates = await self.db.execute(
            select(TranslationJob.id, TranslationJob.version)
            .where(
                TranslationJob.method == JobMethod.NATIVE_PROVIDER_ASYNC,
                TranslationJob.status.in_(OPEN_STATUSES),
                or_(
                    TranslationJob.native_next_poll_at.is_(None),
                    TranslationJob.native_next_poll_at <= now,
                ),
            )
            .order_by(TranslationJob.created_at)
            .limit(CLAIM_CANDIDATES)
        )

        for job_id, version in candidates.all():
            claimed = await self._update_job(
                job_id,
                and_(
                    TranslationJob.version == version,
                    TranslationJob.status.in_(OPEN_STATUSES),
                ),
                now,
                status=JobStatus.ACTIVE,
                started_at=func.coalesce(TranslationJob.started_at, now),
                native_next_poll_at=now + timedelta(seconds=poll_interval_seconds),
            )
            if claimed:
                return await self.get_job(job_id)
        return None

    async def update_native_state(self, job_id: str, now: datetime, **values) -> None:
        await self._update_job(job_id, True, now, **values)

    async def _update_job(self, job_id: str, condition, now: datetime, **values) -> bool:
        """Conditional single-row job update that bumps the version."""
        result = await self.db.execute(
            update(TranslationJob)
            .where(TranslationJob.id == job_id, condition)
            .values(version=TranslationJob.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1
