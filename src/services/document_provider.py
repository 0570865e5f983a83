"""Native document translation (DeepL document API): upload, poll, download."""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import httpx

from src.config import get_settings
from src.db.models import NativeStatus
from src.services.exceptions import (
    ProviderError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass
class NativeDocumentHandle:
    document_id: str
    document_key: str


@dataclass
class NativeDocumentStatus:
    status: NativeStatus
    seconds_remaining: Optional[int] = None
    error_message: Optional[str] = None


def to_deepl_source(code: str) -> str:
    return code.split("-")[0].upper()


def to_deepl_target(code: str) -> str:
    """DeepL wants EN-US / PT-PT style targets and plain ZH for Chinese."""
    base = code.split("-")[0].upper()
    if base == "ZH":
        return "ZH"
    if "-" in code:
        return code.upper()
    return base


class DeepLDocumentTranslator:
    """Client for ``/document`` endpoints of the DeepL API."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def upload(
        self,
        content: bytes,
        filename: str,
        source_language: str,
        target_language: str,
    ) -> NativeDocumentHandle:
        """Upload a document and schedule its translation."""
        response = await self._post(
            "/document",
            data={
                "source_lang": to_deepl_source(source_language),
                "target_lang": to_deepl_target(target_language),
            },
            files={"file": (filename, content)},
        )
        data = self._json(response)
        try:
            handle = NativeDocumentHandle(
                document_id=data["document_id"], document_key=data["document_key"]
            )
        except KeyError:
            raise ProviderResponseError("Document upload response missing document handle")
        logger.info(f"Uploaded {filename} for native translation as {handle.document_id}")
        return handle

    async def poll(self, handle: NativeDocumentHandle) -> NativeDocumentStatus:
        response = await self._post(
            f"/document/{handle.document_id}",
            data={"document_key": handle.document_key},
        )
        data = self._json(response)
        try:
            status = NativeStatus(data.get("status"))
        except ValueError:
            raise ProviderResponseError(f"Unknown document status: {data.get('status')}")
        return NativeDocumentStatus(
            status=status,
            seconds_remaining=data.get("seconds_remaining"),
            error_message=data.get("error_message") or data.get("message"),
        )

    async def download(self, handle: NativeDocumentHandle) -> bytes:
        response = await self._post(
            f"/document/{handle.document_id}/result",
            data={"document_key": handle.document_key},
        )
        return response.content

    async def _post(self, path: str, data: dict, files: Optional[dict] = None) -> httpx.Response:
        if not self.api_key:
            raise ProviderNotConfiguredError("Document translation service not configured")

        headers = {"Authorization": f"DeepL-Auth-Key {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}{path}", data=data, files=files, headers=headers
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Document provider request timed out: {e}")
        except httpx.RequestError as e:
            raise ProviderError(f"Document provider request failed: {e}")

        if response.status_code == 429:
            raise ProviderRateLimitError("Document provider rate limit exceeded", status_code=429)
        if response.status_code >= 400:
            raise ProviderError(
                f"Document provider error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        try:
            return response.json()
        except ValueError:
            raise ProviderResponseError("Document provider returned invalid JSON")


@lru_cache
def get_document_provider() -> DeepLDocumentTranslator:
    settings = get_settings()
    return DeepLDocumentTranslator(api_url=settings.deepl_api_url, api_key=settings.deepl_api_key)
