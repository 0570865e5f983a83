"""Authentication and authorization utilities."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.models import ApiKey
from src.db.session import get_db

logger = logging.getLogger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

KEY_PREFIX = "dts_"
KEY_LENGTH = 36
DOCUMENT_SCOPE = "documents"


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new API key.
    Returns: (full_key, prefix)
    Format: dts_XXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX (32 random chars after prefix)
    """
    random_part = secrets.token_hex(16)
    full_key = f"{KEY_PREFIX}{random_part}"
    prefix = full_key[:12]  # "dts_" + first 8 chars
    return full_key, prefix


def hash_api_key(api_key: str) -> str:
    """Hash an API key for storage."""
    return pwd_context.hash(api_key)


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    """Verify an API key against its hash."""
    return pwd_context.verify(plain_key, hashed_key)


def _expired(expires_at: Optional[datetime]) -> bool:
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at < datetime.now(timezone.utc)


async def get_api_key_from_db(
    db: AsyncSession, key_prefix: str, full_key: str
) -> Optional[ApiKey]:
    """Look up an API key by prefix and verify the full key."""
    result = await db.execute(
        select(ApiKey).where(
            ApiKey.key_prefix == key_prefix,
            ApiKey.is_active.is_(True),
        )
    )
    for api_key in result.scalars().all():
        if _expired(api_key.expires_at):
            continue
        if verify_api_key(full_key, api_key.key_hash):
            return api_key
    return None


class AuthenticatedApiKey:
    """Dependency for authenticated API key."""

    def __init__(self, required_scopes: Optional[list[str]] = None):
        self.required_scopes = required_scopes or []

    async def __call__(
        self,
        request: Request,
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
        db: AsyncSession = Depends(get_db),
    ) -> ApiKey:
        """Extract and validate API key from request."""
        # Try Authorization header first, then X-API-Key
        api_key_str = None

        if authorization:
            if authorization.startswith("Bearer "):
                api_key_str = authorization[7:]
            else:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Invalid authorization scheme. Use 'Bearer <api_key>'",
                )
        elif x_api_key:
            api_key_str = x_api_key

        if not api_key_str:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing API key. Provide via 'Authorization: Bearer <key>' or 'X-API-Key' header",
            )

        if not api_key_str.startswith(KEY_PREFIX) or len(api_key_str) != KEY_LENGTH:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key format",
            )

        prefix = api_key_str[:12]
        api_key = await get_api_key_from_db(db, prefix, api_key_str)

        if api_key is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid or expired API key",
            )

        if self.required_scopes:
            key_scopes = set(api_key.scopes or [])
            if not set(self.required_scopes).intersection(key_scopes):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"API key lacks required scope(s): {self.required_scopes}",
                )

        # Store in request state for the rate limiter
        request.state.api_key = api_key
        return api_key


require_auth = AuthenticatedApiKey()
require_document_scope = AuthenticatedApiKey(required_scopes=[DOCUMENT_SCOPE])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> bool:
    """
    Guard for the scheduled tick endpoint: ``Authorization: Bearer <CRON_SECRET>``.

    Without a configured secret the endpoint stays open outside production.
    """
    settings = get_settings()
    if not settings.cron_secret:
        if settings.app_env == "production":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Tick endpoint is not configured",
            )
        return True

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        logger.warning("Rejected tick request with a bad or missing secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    return True


async def create_api_key(
    db: AsyncSession,
    name: str,
    owner: str,
    scopes: Optional[list[str]] = None,
    rate_limit_per_minute: int = 60,
    rate_limit_per_hour: int = 500,
    expires_in_days: Optional[int] = None,
) -> tuple[ApiKey, str]:
    """
    Create a new API key.
    Returns: (ApiKey model, full_key_string)
    """
    full_key, prefix = generate_api_key()
    hashed = hash_api_key(full_key)

    expires_at = None
    if expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

    api_key = ApiKey(
        key_hash=hashed,
        key_prefix=prefix,
        name=name,
        owner=owner,
        scopes=scopes or [DOCUMENT_SCOPE],
        rate_limit_per_minute=rate_limit_per_minute,
        rate_limit_per_hour=rate_limit_per_hour,
        expires_at=expires_at,
    )

    db.add(api_key)
    await db.flush()
    await db.refresh(api_key)

    return api_key, full_key
