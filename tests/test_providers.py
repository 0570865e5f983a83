"""Tests for the translation provider clients."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from src.db.models import NativeStatus
from src.services.backoff import BackoffPolicy, BackoffSchedule
from src.services.document_provider import (
    DeepLDocumentTranslator,
    NativeDocumentHandle,
    to_deepl_source,
    to_deepl_target,
)
from src.services.exceptions import (
    InputValidationError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderTimeoutError,
)
from src.services.translator import VerbumTranslator, extract_translation, to_provider_language


def _translator(handler, **kwargs) -> VerbumTranslator:
    kwargs.setdefault("api_key", "secret")
    return VerbumTranslator(
        api_url="https://translate.test/v1", transport=httpx.MockTransport(handler), **kwargs
    )


# ============== Text translation ==============


@pytest.mark.asyncio
async def test_translate_sends_payload_and_reads_result():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"translations": [[{"text": "Hola"}]]})

    result = await _translator(handler).translate("Hello", "en", ["zh-CN"])

    assert result == "Hola"
    assert seen["url"] == "https://translate.test/v1/translator/translate"
    assert seen["key"] == "secret"
    assert seen["body"] == {"texts": [{"text": "Hello"}], "from": "en", "to": ["zh-Hans"]}


@pytest.mark.asyncio
async def test_translate_maps_http_errors():
    def rate_limited(request):
        return httpx.Response(429, text="slow down")

    def server_error(request):
        return httpx.Response(500, text="oops")

    def empty(request):
        return httpx.Response(200, json={"translations": []})

    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(ProviderRateLimitError):
        await _translator(rate_limited).translate("a", "en", ["es"])
    with pytest.raises(ProviderError) as exc_info:
        await _translator(server_error).translate("a", "en", ["es"])
    assert exc_info.value.status_code == 500
    with pytest.raises(ProviderResponseError):
        await _translator(empty).translate("a", "en", ["es"])
    with pytest.raises(ProviderTimeoutError):
        await _translator(timeout).translate("a", "en", ["es"])


@pytest.mark.asyncio
async def test_translate_rejects_oversized_text_and_missing_key():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(InputValidationError):
        await _translator(handler, max_request_chars=5).translate("too long", "en", ["es"])
    with pytest.raises(ProviderNotConfiguredError):
        await _translator(handler, api_key=None).translate("a", "en", ["es"])


def test_extract_translation_shapes():
    assert extract_translation({"translations": [[{"text": "a"}]]}) == "a"
    assert extract_translation({"translations": [{"texts": [{"text": "b"}]}]}) == "b"
    assert extract_translation({"translations": [{"text": "c"}]}) == "c"
    assert extract_translation({"translations": [[]]}) is None
    assert extract_translation(["not", "a", "dict"]) is None


def test_language_code_mapping():
    assert to_provider_language("en-US") == "en"
    assert to_provider_language("zh-TW") == "zh-Hant"
    assert to_deepl_source("pt-PT") == "PT"
    assert to_deepl_target("pt-PT") == "PT-PT"
    assert to_deepl_target("zh-CN") == "ZH"
    assert to_deepl_target("de") == "DE"


# ============== Native document translation ==============


@pytest.mark.asyncio
async def test_document_upload_poll_download():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "DeepL-Auth-Key secret"
        path = request.url.path
        if path == "/v2/document":
            return httpx.Response(200, json={"document_id": "D1", "document_key": "K1"})
        if path == "/v2/document/D1":
            return httpx.Response(200, json={"status": "translating", "seconds_remaining": 4})
        if path == "/v2/document/D1/result":
            return httpx.Response(200, content=b"translated bytes")
        return httpx.Response(404)

    provider = DeepLDocumentTranslator(
        "https://deepl.test/v2", "secret", transport=httpx.MockTransport(handler)
    )

    handle = await provider.upload(b"data", "deck.pptx", "en", "de")
    status = await provider.poll(handle)
    content = await provider.download(handle)

    assert handle == NativeDocumentHandle("D1", "K1")
    assert status.status == NativeStatus.TRANSLATING
    assert status.seconds_remaining == 4
    assert content == b"translated bytes"


@pytest.mark.asyncio
async def test_document_poll_rejects_unknown_status():
    def handler(request):
        return httpx.Response(200, json={"status": "mystery"})

    provider = DeepLDocumentTranslator(
        "https://deepl.test/v2", "secret", transport=httpx.MockTransport(handler)
    )

    with pytest.raises(ProviderResponseError):
        await provider.poll(NativeDocumentHandle("D1", "K1"))


# ============== Backoff ==============


def test_backoff_grows_and_caps():
    policy = BackoffPolicy(base_seconds=5, multiplier=2, max_seconds=30)

    assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 30, 30]


def test_backoff_schedule_picks_policy_by_error_class():
    schedule = BackoffSchedule.from_base(5, 300)
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    assert schedule.policy_for(ProviderRateLimitError("429")).base_seconds == 30
    assert schedule.policy_for(ProviderTimeoutError("slow")).base_seconds == 10
    assert schedule.policy_for(ProviderResponseError("bad")).base_seconds == 5
    assert (schedule.next_attempt_at(ProviderError("x"), 2, now) - now).total_seconds() == 10
