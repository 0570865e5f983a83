"""Health check and system info routes."""

import redis
from fastapi import APIRouter, Depends
from sqlalchemy import text

from src.config import get_settings
from src.schemas.schemas import HealthResponse, LanguageInfo
from src.services.storage import StorageService, get_storage_service

router = APIRouter(tags=["System"])

settings = get_settings()

SUPPORTED_FORMATS = ["docx", "pdf", "html", "txt", "pptx"]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the service and its dependencies.",
)
async def health_check(storage: StorageService = Depends(get_storage_service)):
    """
    Health check endpoint.

    Returns the status of:
    - Database connection
    - Redis connection
    - Object storage connection
    """
    redis_status = "ok"
    try:
        r = redis.from_url(settings.redis_url)
        r.ping()
    except Exception:
        redis_status = "error"

    storage_status = "ok" if storage.health_check() else "error"

    db_status = "ok"
    try:
        from src.db.session import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        db_status = "error"

    overall_status = "healthy"
    if any(s == "error" for s in [redis_status, storage_status, db_status]):
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version="1.0.0",
        database=db_status,
        redis=redis_status,
        storage=storage_status,
    )


@router.get(
    "/v1/languages",
    response_model=list[LanguageInfo],
    summary="List supported languages",
    description="Get a list of all languages documents can be translated from and into.",
)
async def list_languages():
    """Get list of supported languages."""
    return [LanguageInfo(code=code, name=name) for code, name in settings.language_names.items()]


@router.get(
    "/v1/info",
    summary="Service information",
    description="Get general information about the service.",
)
async def service_info():
    """Get service information."""
    return {
        "name": settings.app_name,
        "version": "1.0.0",
        "environment": settings.app_env,
        "supported_formats": SUPPORTED_FORMATS,
        "supported_languages": list(settings.language_names.keys()),
        "native_provider_enabled": settings.native_provider_enabled,
        "pdf_translation_mode": settings.pdf_translation_mode,
        "max_upload_bytes": settings.max_upload_bytes,
        "documentation": "/docs",
        "redoc": "/redoc",
    }
