"""Tests for the chunk queue state machine."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from src.db.models import Chunk, DocumentKind, JobMethod, JobStatus, NativeStatus, TranslationJob
from src.services.document_provider import NativeDocumentStatus
from src.services.exceptions import InputValidationError, ProviderError, ProviderRateLimitError
from src.services.queue import TickOutcome, compute_progress
from src.services.repository import SqlJobRepository

from tests.conftest import FakeDocumentProvider


async def _reload_job(db_session, job_id: str) -> TranslationJob:
    result = await db_session.execute(
        select(TranslationJob)
        .where(TranslationJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _chunks(db_session, job_id: str) -> list[Chunk]:
    result = await db_session.execute(
        select(Chunk)
        .where(Chunk.job_id == job_id)
        .order_by(Chunk.sequence_index)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def test_compute_progress():
    assert compute_progress(0, 3) == 0
    assert compute_progress(1, 3) == 33
    assert compute_progress(2, 3) == 66
    assert compute_progress(3, 3) == 100
    assert compute_progress(0, 0) == 0


@pytest.mark.asyncio
async def test_idle_tick_with_no_work(make_queue):
    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.IDLE
    assert result.processed == 0
    assert result.pending_remaining == 0
    assert not result.has_more_work


@pytest.mark.asyncio
async def test_single_chunk_job_completes_in_one_tick(db_session, make_job, make_queue, storage):
    text = "First paragraph.\n\nSecond paragraph.\n\nThird paragraph."
    job = await make_job([text], filename="notes.txt")

    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.JOB_COMPLETED
    assert result.progress == 100
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress_percent == 100
    assert job.output_storage_path.endswith("notes_EN_to_ES.txt")
    assert storage.objects[job.output_storage_path] == text.upper().encode("utf-8")


@pytest.mark.asyncio
async def test_chunks_translated_in_order_with_rising_progress(db_session, make_job, make_queue):
    job = await make_job(["one", "two", "three", "four"])
    queue = make_queue()

    progress = []
    for _ in range(4):
        result = await queue.process_tick()
        progress.append((await _reload_job(db_session, job.id)).progress_percent)

    assert progress == [25, 50, 75, 100]
    assert result.outcome == TickOutcome.JOB_COMPLETED
    assert [c.translated_text for c in await _chunks(db_session, job.id)] == [
        "ONE",
        "TWO",
        "THREE",
        "FOUR",
    ]


@pytest.mark.asyncio
async def test_first_claim_activates_job(db_session, make_job, make_queue):
    job = await make_job(["alpha", "beta"])

    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.CHUNK_TRANSLATED
    assert result.has_more_work
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.ACTIVE
    assert job.started_at is not None
    assert job.progress_percent == 50


@pytest.mark.asyncio
async def test_provider_failures_retry_only_the_failing_chunk(
    db_session, make_job, make_queue, translator
):
    job = await make_job(["part one", "part two", "part three", "part four", "part five"])
    translator.fail_when["part three"] = [ProviderError("boom"), ProviderError("boom again")]
    queue = make_queue()

    outcomes = []
    for _ in range(10):
        result = await queue.process_tick()
        outcomes.append(result.outcome)
        if result.outcome == TickOutcome.JOB_COMPLETED:
            break

    assert outcomes.count(TickOutcome.CHUNK_FAILED) == 2
    assert outcomes[-1] == TickOutcome.JOB_COMPLETED
    chunks = await _chunks(db_session, job.id)
    assert [c.retry_count for c in chunks] == [0, 0, 2, 0, 0]
    assert chunks[2].translated_text == "PART THREE"
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.failed_attempts == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_job(db_session, make_job, make_queue, translator):
    job = await make_job(["only chunk"])
    translator.failures = [ProviderError("down")] * 3
    queue = make_queue(max_retries=3)

    results = [await queue.process_tick() for _ in range(3)]

    assert [r.outcome for r in results] == [
        TickOutcome.CHUNK_FAILED,
        TickOutcome.CHUNK_FAILED,
        TickOutcome.JOB_FAILED,
    ]
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.FAILED
    assert "failed after 3 attempts" in job.error_message
    assert (await queue.process_tick()).outcome == TickOutcome.IDLE


@pytest.mark.asyncio
async def test_non_provider_error_fails_job_without_retry(
    db_session, make_job, make_queue, translator
):
    job = await make_job(["too long"])
    translator.failures = [InputValidationError("Text exceeds the provider limit")]

    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.JOB_FAILED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.FAILED
    assert (await _chunks(db_session, job.id))[0].retry_count == 0


@pytest.mark.asyncio
async def test_backoff_defers_failed_chunk(db_session, make_job, make_queue, translator):
    from src.services.backoff import BackoffSchedule

    job = await make_job(["slow"])
    translator.failures = [ProviderRateLimitError("429", status_code=429)]
    queue = make_queue(backoff=BackoffSchedule.from_base(5, 300))

    assert (await queue.process_tick()).outcome == TickOutcome.CHUNK_FAILED
    result = await queue.process_tick()

    assert result.outcome == TickOutcome.IDLE
    assert result.pending_remaining == 1
    chunk = (await _chunks(db_session, job.id))[0]
    assert chunk.next_attempt_at is not None
    assert chunk.translated_text is None


@pytest.mark.asyncio
async def test_claimed_chunk_cannot_be_claimed_twice(db_session, make_job):
    await make_job(["a"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)

    first = await repository.claim_next_chunk(now, lease_seconds=120)
    second = await repository.claim_next_chunk(now, lease_seconds=120)

    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_expired_claim_is_retaken_and_stale_save_rejected(db_session, make_job):
    await make_job(["a"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)

    first = await repository.claim_next_chunk(now, lease_seconds=120)
    later = now + timedelta(seconds=121)
    second = await repository.claim_next_chunk(later, lease_seconds=120)

    assert second is not None
    assert second.claim_token != first.claim_token
    assert not await repository.save_translation(first.id, first.claim_token, "stale", later)
    assert await repository.save_translation(second.id, second.claim_token, "fresh", later)


@pytest.mark.asyncio
async def test_reconstruction_claimed_once(db_session, make_job):
    job = await make_job(["a"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)
    await repository.mark_job_active(job.id, now)

    assert await repository.claim_reconstruction(job.id, now, lease_seconds=600)
    assert not await repository.claim_reconstruction(job.id, now, lease_seconds=600)


@pytest.mark.asyncio
async def test_progress_never_decreases(db_session, make_job):
    job = await make_job(["a", "b"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)

    await repository.update_progress(job.id, 50, now)
    await repository.update_progress(job.id, 10, now)

    assert (await _reload_job(db_session, job.id)).progress_percent == 50


@pytest.mark.asyncio
async def test_completed_job_is_not_completed_again(db_session, make_job):
    job = await make_job(["a"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)
    await repository.mark_job_active(job.id, now)

    assert await repository.complete_job(job.id, "out/path", now)
    assert not await repository.complete_job(job.id, "other/path", now)
    assert (await _reload_job(db_session, job.id)).output_storage_path == "out/path"


@pytest.mark.asyncio
async def test_stalled_reconstruction_is_recovered(db_session, make_job, make_queue, storage):
    job = await make_job(["hello"])
    repository = SqlJobRepository(db_session)
    now = datetime.now(timezone.utc)
    claimed = await repository.claim_next_chunk(now, lease_seconds=120)
    await repository.mark_job_active(job.id, now)
    await repository.save_translation(claimed.id, claimed.claim_token, "HOLA", now)

    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.JOB_COMPLETED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED
    assert storage.objects[job.output_storage_path] == b"HOLA"


@pytest.mark.asyncio
async def test_missing_original_fails_reconstruction(db_session, make_job, make_queue, storage):
    job = await make_job(["text"], kind=DocumentKind.PDF, filename="paper.pdf")
    storage.objects.clear()

    result = await make_queue().process_tick()

    assert result.outcome == TickOutcome.JOB_FAILED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message.startswith("Reconstruction failed")


@pytest.mark.asyncio
async def test_native_job_uploads_polls_and_downloads(db_session, make_job, make_queue, storage):
    job = await make_job(
        [], kind=DocumentKind.PPTX, method=JobMethod.NATIVE_PROVIDER_ASYNC, filename="deck.pptx"
    )
    provider = FakeDocumentProvider(
        [
            NativeDocumentStatus(NativeStatus.TRANSLATING, seconds_remaining=10),
            NativeDocumentStatus(NativeStatus.DONE),
        ]
    )
    queue = make_queue(document_provider=provider, native_poll_interval_seconds=0)

    uploaded = await queue.process_tick()
    polled = await queue.process_tick()
    done = await queue.process_tick()

    assert uploaded.outcome == TickOutcome.NATIVE_POLLED
    assert provider.uploads == ["deck.pptx"]
    assert polled.outcome == TickOutcome.NATIVE_POLLED
    assert done.outcome == TickOutcome.JOB_COMPLETED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.native_status == NativeStatus.DONE
    assert storage.objects[job.output_storage_path] == b"translated document"
    assert job.output_storage_path.endswith("deck_EN_to_ES.pptx")


@pytest.mark.asyncio
async def test_native_error_status_fails_job(db_session, make_job, make_queue):
    job = await make_job([], kind=DocumentKind.PPTX, method=JobMethod.NATIVE_PROVIDER_ASYNC)
    provider = FakeDocumentProvider(
        [NativeDocumentStatus(NativeStatus.ERROR, error_message="Unsupported file")]
    )
    queue = make_queue(document_provider=provider, native_poll_interval_seconds=0)

    await queue.process_tick()
    result = await queue.process_tick()

    assert result.outcome == TickOutcome.JOB_FAILED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.FAILED
    assert "Unsupported file" in job.error_message


@pytest.mark.asyncio
async def test_native_job_times_out(db_session, make_job, make_queue):
    job = await make_job([], kind=DocumentKind.PPTX, method=JobMethod.NATIVE_PROVIDER_ASYNC)
    provider = FakeDocumentProvider([NativeDocumentStatus(NativeStatus.TRANSLATING)])
    start = datetime.now(timezone.utc)
    clock = {"now": start}
    queue = make_queue(
        document_provider=provider,
        native_poll_interval_seconds=0,
        native_timeout_seconds=300,
        clock=lambda: clock["now"],
    )

    await queue.process_tick()
    clock["now"] = start + timedelta(seconds=301)
    result = await queue.process_tick()

    assert result.outcome == TickOutcome.JOB_FAILED
    job = await _reload_job(db_session, job.id)
    assert "timed out" in job.error_message
    assert "uploaded" in job.error_message


@pytest.mark.asyncio
async def test_output_upload_failure_keeps_job_for_retry(db_session, make_job, make_queue, storage):
    job = await make_job(["hello"], filename="notes.txt")
    start = datetime.now(timezone.utc)
    clock = {"now": start}
    queue = make_queue(reconstruction_lease_seconds=600, clock=lambda: clock["now"])
    storage.fail_uploads_under = "/translated/"

    deferred = await queue.process_tick()

    assert deferred.outcome == TickOutcome.OUTPUT_DEFERRED
    assert deferred.processed == 1
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.ACTIVE
    assert job.output_storage_path is None

    storage.fail_uploads_under = None
    waiting = await queue.process_tick()
    assert waiting.outcome == TickOutcome.IDLE

    clock["now"] = start + timedelta(seconds=601)
    recovered = await queue.process_tick()

    assert recovered.outcome == TickOutcome.JOB_COMPLETED
    job = await _reload_job(db_session, job.id)
    assert job.status == JobStatus.COMPLETED
    assert storage.objects[job.output_storage_path] == b"HELLO"


@pytest.mark.asyncio
async def test_native_result_upload_failure_is_retried(db_session, make_job, make_queue, storage):
    job = await make_job(
        [], kind=DocumentKind.PPTX, method=JobMethod.NATIVE_PROVIDER_ASYNC, filename="deck.pptx"
    )
    queue = make_queue(document_provider=FakeDocumentProvider(), native_poll_interval_seconds=0)

    await queue.process_tick()
    storage.fail_uploads_under = "/translated/"
    deferred = await queue.process_tick()

    assert deferred.outcome == TickOutcome.OUTPUT_DEFERRED
    assert (await _reload_job(db_session, job.id)).status == JobStatus.ACTIVE

    storage.fail_uploads_under = None
    done = await queue.process_tick()

    assert done.outcome == TickOutcome.JOB_COMPLETED
    job = await _reload_job(db_session, job.id)
    assert storage.objects[job.output_storage_path] == b"translated document"
