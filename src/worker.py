"""Celery worker configuration and the scheduled queue tick."""

import asyncio
import logging

from celery import Celery, Task

from src.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "doc_translate_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # One tick must fit its budget; a killed tick's claims expire and are retaken
    task_time_limit=settings.tick_time_limit_seconds + 5,
    task_soft_time_limit=settings.tick_time_limit_seconds,
    worker_prefetch_multiplier=1,  # Fetch one task at a time
    task_acks_late=True,  # Ack after task completes
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_routes={
        "src.worker.process_queue_tick": {"queue": "default"},
    },
    beat_schedule={
        "process-translation-queue": {
            "task": "src.worker.process_queue_tick",
            "schedule": settings.tick_interval_seconds,
        },
    },
)


class TickTask(Task):
    """Ticks are never retried by Celery; the next tick picks the work up."""

    max_retries = 0
    ignore_result = False


async def run_tick() -> dict:
    """Run one tick on a short-lived engine bound to this event loop."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import NullPool

    from src.services.document_provider import get_document_provider
    from src.services.queue import build_chunk_queue
    from src.services.repository import SqlJobRepository
    from src.services.storage import get_storage_service
    from src.services.translator import get_translation_provider

    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with session_maker() as db:
            queue = build_chunk_queue(
                SqlJobRepository(db),
                get_translation_provider(),
                get_storage_service(),
                get_document_provider(),
            )
            result = await queue.process_tick()
    finally:
        await engine.dispose()

    return {
        "outcome": result.outcome.value,
        "processed": result.processed,
        "job_id": result.job_id,
        "chunk_id": result.chunk_id,
        "progress": result.progress,
        "pending_remaining": result.pending_remaining,
        "has_more_work": result.has_more_work,
        "elapsed_ms": result.elapsed_ms,
        "error": result.error,
    }


@celery_app.task(bind=True, base=TickTask, name="src.worker.process_queue_tick")
def process_queue_tick(self) -> dict:
    """
    Process one unit of queued translation work.

    Fired by beat every ``tick_interval_seconds``. While work remains, the
    task schedules another tick right away instead of waiting for beat.
    """
    result = asyncio.run(run_tick())
    logger.info(f"Queue tick: {result['outcome']} ({result['elapsed_ms']}ms)")

    if result["has_more_work"]:
        process_queue_tick.apply_async(countdown=0)

    return result
