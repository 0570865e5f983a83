"""Queue tick routes, called by an external scheduler."""

import logging
import time

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.security import verify_cron_secret
from src.db.models import TranslationJob
from src.db.session import get_db
from src.schemas.schemas import QueueStatsResponse, TickResponse
from src.services.document_provider import DeepLDocumentTranslator, get_document_provider
from src.services.queue import build_chunk_queue
from src.services.repository import SqlJobRepository
from src.services.storage import StorageService, get_storage_service
from src.services.translator import TranslationProvider, get_translation_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/queue", tags=["Queue"])


@router.api_route(
    "/tick",
    methods=["GET", "POST"],
    response_model=TickResponse,
    summary="Process one unit of queued work",
    description="Translate one pending chunk, advance one native job or finish one stalled "
    "job. Requires 'Authorization: Bearer <CRON_SECRET>'.",
)
async def process_tick(
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_cron_secret),
    provider: TranslationProvider = Depends(get_translation_provider),
    document_provider: DeepLDocumentTranslator = Depends(get_document_provider),
    storage: StorageService = Depends(get_storage_service),
):
    """Run a single tick."""
    started = time.monotonic()
    queue = build_chunk_queue(SqlJobRepository(db), provider, storage, document_provider)
    try:
        result = await queue.process_tick()
    except Exception as e:
        logger.exception(f"Tick crashed: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": str(e),
                "elapsed_ms": int((time.monotonic() - started) * 1000),
            },
        )

    return TickResponse(
        success=result.error is None,
        outcome=result.outcome.value,
        processed=result.processed,
        message=result.message,
        job_id=result.job_id,
        chunk_id=result.chunk_id,
        progress=result.progress,
        pending_remaining=result.pending_remaining,
        has_more_work=result.has_more_work,
        elapsed_ms=result.elapsed_ms,
        error=result.error,
    )


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Queue depth",
    description="Pending chunks and job counts by status.",
)
async def queue_stats(
    db: AsyncSession = Depends(get_db),
    _: bool = Depends(verify_cron_secret),
):
    """Queue depth snapshot."""
    pending = await SqlJobRepository(db).count_pending_chunks()
    rows = await db.execute(
        select(TranslationJob.status, func.count(TranslationJob.id)).group_by(TranslationJob.status)
    )
    return QueueStatsResponse(
        pending_chunks=pending,
        jobs_by_status={job_status.value: count for job_status, count in rows.all()},
    )
