"""Pytest configuration and fixtures."""

import os

# Settings are read once; point them at test infrastructure before importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("TRANSLATION_API_KEY", "test-translation-key")
os.environ.setdefault("BACKOFF_BASE_SECONDS", "0")

from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.db.models import (
    ApiKey,
    Chunk,
    DocumentKind,
    JobMethod,
    JobStatus,
    NativeStatus,
    TranslationJob,
)
from src.db.session import Base, get_db
from src.main import app
from src.services.backoff import NO_BACKOFF
from src.services.document_provider import (
    NativeDocumentHandle,
    NativeDocumentStatus,
    get_document_provider,
)
from src.services.exceptions import StorageError
from src.services.queue import ChunkQueue
from src.services.reconstructor import DocumentReconstructor
from src.services.repository import SqlJobRepository
from src.services.storage import get_storage_service, original_path
from src.services.translator import get_translation_provider


# Test database URL (use SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


class FakeStorage:
    """In-memory stand-in for the object store."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_deletes = False
        self.fail_uploads_under: Optional[str] = None

    def upload(self, content: bytes, path: str, content_type: str) -> str:
        if self.fail_uploads_under and self.fail_uploads_under in path:
            raise StorageError(f"Upload of {path} failed")
        self.objects[path] = content
        return path

    def download(self, path: str) -> bytes:
        if path not in self.objects:
            raise StorageError(f"Download of {path} failed: not found")
        return self.objects[path]

    def delete(self, path: str):
        if self.fail_deletes:
            raise StorageError(f"Delete of {path} failed")
        self.objects.pop(path, None)

    def delete_job_files(self, owner_id: str, job_id: str):
        if self.fail_deletes:
            raise StorageError("Delete failed")
        prefix = f"owners/{owner_id}/jobs/{job_id}/"
        for path in [p for p in self.objects if p.startswith(prefix)]:
            del self.objects[path]

    def generate_presigned_url(self, path: str, expires_in: int = 3600) -> str:
        return f"https://storage.test/{path}?expires={expires_in}"

    def health_check(self) -> bool:
        return True


class FakeTranslator:
    """Upper-cases text; raises queued failures first."""

    def __init__(self):
        self.calls: list[str] = []
        self.failures: list[Exception] = []
        self.fail_when: dict[str, list[Exception]] = {}

    async def translate(self, text: str, source_language: str, target_languages: list[str]) -> str:
        self.calls.append(text)
        for marker, errors in self.fail_when.items():
            if marker in text and errors:
                raise errors.pop(0)
        if self.failures:
            raise self.failures.pop(0)
        return text.upper()


class FakeDocumentProvider:
    """Native provider that walks through a scripted list of statuses."""

    def __init__(self, statuses: Optional[list[NativeDocumentStatus]] = None):
        self.statuses = statuses or [NativeDocumentStatus(NativeStatus.DONE)]
        self.uploads: list[str] = []
        self.result = b"translated document"

    async def upload(self, content, filename, source_language, target_language):
        self.uploads.append(filename)
        return NativeDocumentHandle(document_id="doc-1", document_key="key-1")

    async def poll(self, handle):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def download(self, handle):
        return self.result


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def translator() -> FakeTranslator:
    return FakeTranslator()


@pytest.fixture
def document_provider() -> FakeDocumentProvider:
    return FakeDocumentProvider()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    storage: FakeStorage,
    translator: FakeTranslator,
    document_provider: FakeDocumentProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_service] = lambda: storage
    app.dependency_overrides[get_translation_provider] = lambda: translator
    app.dependency_overrides[get_document_provider] = lambda: document_provider

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_key(db_session: AsyncSession) -> tuple[str, str]:
    """Create a test API key."""
    from src.auth.security import create_api_key

    api_key_model, full_key = await create_api_key(
        db_session,
        name="Test Key",
        owner="test",
    )
    await db_session.commit()

    return api_key_model.id, full_key


@pytest_asyncio.fixture
async def auth_headers(api_key: tuple[str, str]) -> dict:
    """Get auth headers with test API key."""
    _, full_key = api_key
    return {"Authorization": f"Bearer {full_key}"}


@pytest_asyncio.fixture
async def owner(db_session: AsyncSession) -> ApiKey:
    """Job owner without going through key hashing."""
    api_key = ApiKey(key_hash="unused", key_prefix="dts_test0000", name="Owner", owner="test")
    db_session.add(api_key)
    await db_session.commit()
    return api_key


@pytest.fixture
def make_job(db_session: AsyncSession, storage: FakeStorage, owner: ApiKey):
    """Insert a job with the given chunk texts and store its original."""

    async def _make_job(
        chunk_texts: list[str],
        kind: DocumentKind = DocumentKind.TXT,
        method: JobMethod = JobMethod.CHUNKED_ASYNC,
        original: bytes = b"original",
        filename: str = "notes.txt",
        block_indexes: Optional[list[Optional[int]]] = None,
    ) -> TranslationJob:
        job = TranslationJob(
            owner_id=owner.id,
            source_language="en",
            target_language="es",
            original_filename=filename,
            content_type="application/octet-stream",
            document_kind=kind,
            original_storage_path="",
            status=JobStatus.QUEUED,
            method=method,
            total_chunks=len(chunk_texts),
        )
        db_session.add(job)
        await db_session.flush()
        job.original_storage_path = storage.upload(
            original, original_path(owner.id, job.id, filename), "application/octet-stream"
        )
        for index, text in enumerate(chunk_texts):
            db_session.add(
                Chunk(
                    job_id=job.id,
                    sequence_index=index,
                    total_chunks=len(chunk_texts),
                    original_text=text,
                    target_language="es",
                    block_index=block_indexes[index] if block_indexes else None,
                )
            )
        await db_session.commit()
        return job

    return _make_job


@pytest.fixture
def make_queue(db_session: AsyncSession, storage: FakeStorage, translator: FakeTranslator):
    """ChunkQueue over the test session with immediate retries."""

    def _make_queue(document_provider=None, **kwargs) -> ChunkQueue:
        kwargs.setdefault("backoff", NO_BACKOFF)
        return ChunkQueue(
            SqlJobRepository(db_session),
            translator,
            DocumentReconstructor(storage),
            document_provider,
            storage,
            **kwargs,
        )

    return _make_queue
