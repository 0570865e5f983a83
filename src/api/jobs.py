"""Translation job API routes."""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.security import require_document_scope
from src.db.models import ApiKey, JobStatus
from src.db.session import get_db
from src.middleware.rate_limit import rate_limit_general, rate_limit_uploads
from src.schemas.schemas import (
    DownloadResponse,
    JobCreateResponse,
    JobListResponse,
    JobStatusResponse,
    normalize_language,
)
from src.services.exceptions import InputValidationError, StorageError
from src.services.job_service import is_resubmittable, job_service
from src.services.reconstructor import output_filename
from src.services.storage import StorageService, get_storage_service
from src.services.translator import TranslationProvider, get_translation_provider

router = APIRouter(prefix="/v1/jobs", tags=["Jobs"])

DOWNLOAD_URL_EXPIRY_SECONDS = 3600


async def _get_owned_job(db: AsyncSession, job_id: str, api_key: ApiKey, include_chunks: bool = False):
    job = await job_service.get_job(db, job_id, api_key.id, include_chunks=include_chunks)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return job


@router.post(
    "",
    response_model=JobCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a document for translation",
    description="Upload a DOCX, PDF, HTML, TXT or PPTX file. Small DOCX files are "
    "translated before the response; everything else is processed by the queue.",
)
@rate_limit_uploads()
async def create_job(
    request: Request,
    file: UploadFile = File(..., description="Document to translate"),
    source_language: str = Form(..., description="Source language code, e.g. 'en'"),
    target_language: str = Form(..., description="Target language code, e.g. 'es'"),
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
    storage: StorageService = Depends(get_storage_service),
    provider: TranslationProvider = Depends(get_translation_provider),
):
    """
    Submit a document.

    - **file**: The document (multipart upload)
    - **source_language** / **target_language**: Language codes, must differ
    """
    content = await file.read()
    try:
        job = await job_service.create_job(
            db,
            api_key,
            filename=file.filename or "document",
            content_type=file.content_type,
            content=content,
            source_language=normalize_language(source_language),
            target_language=normalize_language(target_language),
            storage=storage,
            provider=provider,
        )
    except InputValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)

    return JobCreateResponse(
        job_id=job.id,
        method=job.method.value,
        status=job.status.value,
        document_kind=job.document_kind.value,
        total_chunks=job.total_chunks,
        progress_percent=job.progress_percent,
        error_message=job.error_message,
        created_at=job.created_at,
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="Get a paginated list of jobs for the authenticated API key.",
)
@rate_limit_general()
async def list_jobs(
    request: Request,
    status_filter: Optional[str] = Query(
        None,
        alias="status",
        description="Filter by status (queued, active, completed, failed)",
    ),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
):
    """List all jobs for the authenticated API key."""
    status_enum = None
    if status_filter:
        try:
            status_enum = JobStatus(status_filter)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid status: {status_filter}",
            )

    jobs, total = await job_service.list_jobs(db, api_key.id, status_enum, page, page_size)

    total_pages = (total + page_size - 1) // page_size

    return JobListResponse(
        jobs=[job_service.job_to_response(j) for j in jobs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages,
    )


@router.get(
    "/{job_id}",
    response_model=JobStatusResponse,
    summary="Get job status",
    description="Get status, progress and per-chunk state of a job.",
)
@rate_limit_general()
async def get_job(
    request: Request,
    job_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
):
    """Get job details including chunk statuses."""
    job = await _get_owned_job(db, job_id, api_key, include_chunks=True)
    return job_service.job_to_response(job, chunks=list(job.chunks))


@router.get(
    "/{job_id}/download",
    response_model=DownloadResponse,
    summary="Download the translated document",
    description="Get a short-lived link to the translated file of a completed job.",
)
async def download_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
    storage: StorageService = Depends(get_storage_service),
):
    """Presigned URL for the translated output."""
    job = await _get_owned_job(db, job_id, api_key)

    if job.status != JobStatus.COMPLETED or not job.output_storage_path:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job {job_id} is {job.status.value}; output is available once completed",
        )

    return DownloadResponse(
        job_id=job.id,
        filename=output_filename(job.original_filename, job.source_language, job.target_language),
        url=storage.generate_presigned_url(job.output_storage_path, DOWNLOAD_URL_EXPIRY_SECONDS),
        expires_in=DOWNLOAD_URL_EXPIRY_SECONDS,
    )


@router.post(
    "/{job_id}/resubmit",
    response_model=JobStatusResponse,
    summary="Resubmit a failed job",
    description="Give a failed job's untranslated chunks a fresh retry budget.",
)
async def resubmit_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
):
    """Resubmit a failed job."""
    job = await _get_owned_job(db, job_id, api_key)

    if job.status != JobStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed jobs can be resubmitted (job is {job.status.value})",
        )
    if not is_resubmittable(job):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job failed while its document was being read; upload a corrected file instead",
        )
    if not await job_service.resubmit_job(db, job):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job was changed by another request",
        )

    await db.refresh(job)
    return job_service.job_to_response(job)


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a job",
    description="Delete a job, its chunks and its stored files.",
)
async def delete_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: ApiKey = Depends(require_document_scope),
    storage: StorageService = Depends(get_storage_service),
):
    """Delete a job."""
    job = await _get_owned_job(db, job_id, api_key, include_chunks=True)
    await job_service.delete_job(db, job, storage)
