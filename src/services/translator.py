"""Text translation provider client (Verbum AI translate API)."""

import logging
from functools import lru_cache
from typing import Optional, Protocol

import httpx

from src.config import get_settings
from src.services.exceptions import (
    InputValidationError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)

logger = logging.getLogger(__name__)

# Regional codes the provider knows under a different name
PROVIDER_LANGUAGE_CODES = {
    "zh-CN": "zh-Hans",
    "zh-TW": "zh-Hant",
    "zh-HK": "zh-Hant",
    "pt-PT": "pt-pt",
    "fr-CA": "fr-ca",
    "mn-MN": "mn-Cyrl",
    "sr-RS": "sr-Cyrl",
    "iu-CA": "iu",
}


def to_provider_language(code: str) -> str:
    """Map ``en-US`` style codes to the provider's, mostly the 2-letter base."""
    if code in PROVIDER_LANGUAGE_CODES:
        return PROVIDER_LANGUAGE_CODES[code]
    return code.split("-")[0].lower()


class TranslationProvider(Protocol):
    """Anything that turns a string into its translation."""

    async def translate(self, text: str, source_language: str, target_languages: list[str]) -> str:
        ...


class VerbumTranslator:
    """Client for the provider's ``/translator/translate`` endpoint."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        max_request_chars: int = 50000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_request_chars = max_request_chars
        self._transport = transport

    async def translate(self, text: str, source_language: str, target_languages: list[str]) -> str:
        """
        Translate ``text`` and return the translation for the first target.

        Raises:
            InputValidationError: text is over the request ceiling
            ProviderError: the call failed or returned nothing usable
        """
        if not self.api_key:
            raise ProviderNotConfiguredError("Translation service not configured")
        if len(text) > self.max_request_chars:
            raise InputValidationError(
                f"Text of {len(text)} characters exceeds the provider limit of "
                f"{self.max_request_chars}"
            )

        payload = {
            "texts": [{"text": text}],
            "from": to_provider_language(source_language),
            "to": [to_provider_language(code) for code in target_languages],
        }
        headers = {"Content-Type": "application/json", "x-api-key": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/translator/translate", json=payload, headers=headers
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Translation request timed out: {e}")
        except httpx.RequestError as e:
            raise ProviderError(f"Translation request failed: {e}")

        if response.status_code == 429:
            raise ProviderRateLimitError(
                "Translation provider rate limit exceeded", status_code=429
            )
        if response.status_code >= 400:
            logger.error(f"Translation API error: {response.status_code} {response.text[:500]}")
            raise ProviderError(
                f"Translation API failed: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise ProviderResponseError("Translation provider returned invalid JSON")

        translated = extract_translation(data)
        if translated is None:
            raise ProviderResponseError("No translation returned from API")
        return translated


def extract_translation(data) -> Optional[str]:
    """
    Dig the first translated string out of the nested response.

    Accepts ``{"translations": [[{"text": ...}]]}`` as well as the
    ``[{"texts": [{"text": ...}]}]`` and ``[{"text": ...}]`` shapes.
    """
    if not isinstance(data, dict):
        return None
    node = data.get("translations")
    while isinstance(node, list):
        if not node:
            return None
        node = node[0]
    if not isinstance(node, dict):
        return None
    if isinstance(node.get("text"), str):
        return node["text"]
    texts = node.get("texts")
    if isinstance(texts, list) and texts and isinstance(texts[0], dict):
        text = texts[0].get("text")
        return text if isinstance(text, str) else None
    return None


@lru_cache
def get_translation_provider() -> VerbumTranslator:
    """FastAPI dependency / shared provider instance."""
    settings = get_settings()
    return VerbumTranslator(
        api_url=settings.translation_api_url,
        api_key=settings.translation_api_key,
        timeout=settings.translation_timeout_seconds,
        max_request_chars=settings.translation_max_request_chars,
    )
