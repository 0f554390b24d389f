import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from src.core.exceptions import ProviderConfigError, ProviderError, ProviderTimeoutError
from src.engines.analysis.providers import (
    HttpProviderClient,
    SimulatedProviderClient,
    parse_retry_after,
)

ENDPOINTS = {
    "google-vision": "https://vision.test/v1/images:annotate",
    "openai": "https://openai.test/v1/chat/completions",
    "anthropic": "https://anthropic.test/v1/messages",
}
PAYLOAD = {"imageRef": "https://example.com/screen.png", "userContext": "Landing page", "upstream": {}}


def build_client(handler, keys=None):
    keys = keys if keys is not None else {p: f"{p}-key" for p in ENDPOINTS}
    return HttpProviderClient(
        endpoints=ENDPOINTS,
        api_key_lookup=keys.get,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_openai_content_and_bearer_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"summary": {"overallScore": 70}}'}}]})

    client = build_client(handler)
    text = await client.call("analysis", "openai", PAYLOAD, 5000)

    assert json.loads(text) == {"summary": {"overallScore": 70}}
    assert seen["auth"] == "Bearer openai-key"
    assert seen["body"]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_anthropic_text_blocks_are_joined():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("x-api-key")
        seen["version"] = request.headers.get("anthropic-version")
        return httpx.Response(200, json={"content": [
            {"type": "text", "text": '{"suggestions": '},
            {"type": "tool_use", "id": "ignored"},
            {"type": "text", "text": "[]}"},
        ]})

    client = build_client(handler)
    text = await client.call("synthesis", "anthropic", PAYLOAD, 5000)

    assert text == '{"suggestions": []}'
    assert seen["key"] == "anthropic-key"
    assert seen["version"]


@pytest.mark.asyncio
async def test_google_vision_uses_query_key_and_first_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.url.params.get("key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"responses": [{"labelAnnotations": [{"description": "button"}]}]})

    client = build_client(handler)
    text = await client.call("vision", "google-vision", PAYLOAD, 5000)

    assert json.loads(text) == {"labelAnnotations": [{"description": "button"}]}
    assert seen["key"] == "google-vision-key"
    assert seen["body"]["requests"][0]["image"]["source"]["imageUri"] == PAYLOAD["imageRef"]


@pytest.mark.asyncio
async def test_unreadable_body_is_returned_as_text():
    client = build_client(lambda request: httpx.Response(200, text="Here you go: {\"summary\": {}}"))

    text = await client.call("analysis", "openai", PAYLOAD, 5000)

    assert text == 'Here you go: {"summary": {}}'


@pytest.mark.asyncio
async def test_rate_limit_carries_status_and_retry_after():
    client = build_client(lambda request: httpx.Response(429, headers={"Retry-After": "7"}, text="slow down"))

    with pytest.raises(ProviderError) as exc_info:
        await client.call("analysis", "openai", PAYLOAD, 5000)

    assert exc_info.value.http_status == 429
    assert exc_info.value.retry_after_ms == 7000
    assert exc_info.value.provider == "openai"


@pytest.mark.asyncio
async def test_missing_api_key_is_config_error():
    calls = []
    client = build_client(lambda request: calls.append(request) or httpx.Response(200), keys={})

    with pytest.raises(ProviderConfigError):
        await client.call("analysis", "openai", PAYLOAD, 5000)
    assert calls == []


@pytest.mark.asyncio
async def test_unconfigured_provider_is_config_error():
    client = build_client(lambda request: httpx.Response(200))

    with pytest.raises(ProviderConfigError):
        await client.call("ocr", "mistral", PAYLOAD, 5000)


@pytest.mark.asyncio
async def test_timeout_and_network_errors():
    def timeout(request):
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderTimeoutError):
        await build_client(timeout).call("analysis", "openai", PAYLOAD, 50)

    with pytest.raises(ProviderError) as exc_info:
        await build_client(refused).call("analysis", "openai", PAYLOAD, 50)
    assert exc_info.value.http_status is None
    assert "Network error" in exc_info.value.message


def test_parse_retry_after():
    future = datetime.now(timezone.utc) + timedelta(seconds=30)

    assert parse_retry_after(None) is None
    assert parse_retry_after("2") == 2000
    assert parse_retry_after("0.5") == 500
    assert parse_retry_after("soon") is None
    assert 20_000 < parse_retry_after(format_datetime(future, usegmt=True)) <= 30_000


@pytest.mark.asyncio
async def test_simulated_client_returns_stage_json():
    client = SimulatedProviderClient(latency_ms=0)

    body = json.loads(await client.call("analysis", "openai", PAYLOAD, 5000))
    unknown = json.loads(await client.call("ocr", "openai", PAYLOAD, 5000))

    assert body["summary"]["overallScore"] == 72
    assert unknown == {"summary": {"overallScore": 50}}
