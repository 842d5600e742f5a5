from datetime import datetime, timedelta

import pytest
import httpx

from bookforge.services.llm_client import LLMClient, parse_retry_after
from bookforge.shared_kernel.exceptions import ExternalServiceError, RateLimitError


class DummyResponse:
    def __init__(self, status_code=200, json_data=None, text="error", headers=None):
        self.status_code = status_code
        self._json_data = json_data or {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._json_data


class DummyClient:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.captured = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def post(self, url, headers=None, json=None):
        self.captured = {"url": url, "headers": headers, "json": json}
        if self.exc:
            raise self.exc
        return self.response


@pytest.mark.asyncio
async def test_llm_client_returns_message_content(monkeypatch, settings):
    response = DummyResponse(
        status_code=200,
        json_data={"choices": [{"message": {"content": "Hello", "role": "assistant"}}]},
    )
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)
    result = await llm.chat(messages=[{"role": "user", "content": "hi"}])

    assert result == "Hello"
    assert client.captured["url"] == f"{settings.LLM_API_BASE}/chat/completions"
    assert client.captured["headers"]["Authorization"] == f"Bearer {settings.LLM_API_KEY}"


@pytest.mark.asyncio
async def test_llm_client_returns_full_message(monkeypatch, settings):
    response = DummyResponse(
        status_code=200,
        json_data={"choices": [{"message": {"content": "Hello", "role": "assistant"}}]},
    )
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)
    result = await llm.chat(messages=[{"role": "user", "content": "hi"}], return_full=True)

    assert result["content"] == "Hello"


@pytest.mark.asyncio
async def test_llm_client_includes_response_format(monkeypatch, settings):
    response = DummyResponse(
        status_code=200,
        json_data={"choices": [{"message": {"content": "{}", "role": "assistant"}}]},
    )
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)
    await llm.chat(
        messages=[{"role": "user", "content": "hi"}],
        response_format={"type": "json_object"},
    )

    assert client.captured["json"]["response_format"] == {"type": "json_object"}
    assert client.captured["json"]["model"] == settings.LLM_MODEL


@pytest.mark.asyncio
async def test_llm_client_raises_on_bad_status(monkeypatch, settings):
    response = DummyResponse(status_code=500, json_data={}, text="fail")
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)

    with pytest.raises(ExternalServiceError) as exc_info:
        await llm.chat(messages=[{"role": "user", "content": "hi"}])
    assert not isinstance(exc_info.value, RateLimitError)
    assert exc_info.value.details["status_code"] == 500


@pytest.mark.asyncio
async def test_llm_client_raises_rate_limit_on_429(monkeypatch, settings):
    response = DummyResponse(status_code=429, text="Too Many Requests", headers={"retry-after": "30"})
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)

    with pytest.raises(RateLimitError) as exc_info:
        await llm.chat(messages=[{"role": "user", "content": "hi"}])
    assert exc_info.value.reset_at is not None


@pytest.mark.asyncio
async def test_llm_client_detects_rate_limit_in_error_body(monkeypatch, settings):
    response = DummyResponse(
        status_code=400,
        json_data={"error": {"type": "rate_limit_error", "message": "Slow down"}},
    )
    client = DummyClient(response=response)
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)

    with pytest.raises(RateLimitError) as exc_info:
        await llm.chat(messages=[{"role": "user", "content": "hi"}])
    assert exc_info.value.reset_at is None


@pytest.mark.asyncio
async def test_llm_client_raises_on_http_error(monkeypatch, settings):
    client = DummyClient(exc=httpx.HTTPError("fail"))
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)

    with pytest.raises(ExternalServiceError):
        await llm.chat(messages=[{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_llm_client_propagates_timeout(monkeypatch, settings):
    client = DummyClient(exc=httpx.ReadTimeout("timeout"))
    monkeypatch.setattr(httpx, "AsyncClient", lambda timeout: client)

    llm = LLMClient(settings)

    with pytest.raises(httpx.ReadTimeout):
        await llm.chat(messages=[{"role": "user", "content": "hi"}])


def test_parse_retry_after_seconds_and_dates():
    now = datetime(2026, 3, 1, 12, 0, 0)

    assert parse_retry_after("45", now) == now + timedelta(seconds=45)
    assert parse_retry_after("Sun, 01 Mar 2026 12:05:00 GMT", now) == datetime(2026, 3, 1, 12, 5, 0)
    assert parse_retry_after("soon", now) is None
    assert parse_retry_after(None, now) is None
