from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from app.config import EngineConfig
from app.services import url_validator
from app.tools.assistant_provider import available_sources, get_enabled_connector
from app.tools.chatgpt_search import ChatGPTSearchConnector
from app.tools.claude import ClaudeConnector
from app.tools.perplexity import PerplexityConnector

KEYS = {"perplexity": "pplx-key", "chatgpt_search": "sk-test", "claude": "sk-ant-test"}


def _config(**overrides) -> EngineConfig:
    values = {"api_keys": dict(KEYS), "validate_citations": False, "connector_timeout_s": 2.0}
    values.update(overrides)
    return EngineConfig(**values)


class _FakeResponse:
    def __init__(self, payload: dict, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "https://api.perplexity.ai/chat/completions")
            raise httpx.HTTPStatusError(
                "error",
                request=request,
                response=httpx.Response(self.status_code, request=request, text=self.text),
            )

    def json(self) -> dict:
        return self._payload


class _FakeHttpClient:
    def __init__(self, response: _FakeResponse):
        self.response = response
        self.calls: list[dict] = []

    async def post(self, url: str, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self.response


@pytest.mark.asyncio
async def test_perplexity_merges_structured_and_text_citations():
    payload = {
        "choices": [
            {
                "message": {
                    "content": "Acme is a dashboard tool.\nSOURCES:\n- Acme — https://acme.io/about",
                }
            }
        ],
        "citations": ["https://review.example.org/acme"],
        "search_results": [{"title": "Acme pricing", "url": "https://acme.io/pricing"}],
    }
    client = _FakeHttpClient(_FakeResponse(payload))
    connector = PerplexityConnector(_config(), ["acme.io"], client=client)

    result = await connector.ask("What is Acme?")

    assert result.error is None
    assert result.answer.startswith("Acme is a dashboard tool.")
    assert [s.url for s in result.sources] == [
        "https://review.example.org/acme",
        "https://acme.io/pricing",
        "https://acme.io/about",
    ]
    call = client.calls[0]
    assert call["url"] == "https://api.perplexity.ai/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer pplx-key"
    assert call["json"]["messages"][1] == {"role": "user", "content": "What is Acme?"}
    assert json.loads(result.raw)["citations"] == ["https://review.example.org/acme"]


@pytest.mark.asyncio
async def test_perplexity_http_error_yields_empty_result():
    client = _FakeHttpClient(_FakeResponse({"error": "rate limited"}, status_code=429))
    connector = PerplexityConnector(_config(), client=client)

    result = await connector.ask("What is Acme?")

    assert result.answer == ""
    assert result.sources == []
    assert result.error == "http_429"
    assert json.loads(result.raw)["source"] == "perplexity"


@pytest.mark.asyncio
async def test_connector_timeout_yields_empty_result():
    class _SlowClient:
        async def post(self, url: str, **kwargs):  # noqa: ARG002
            await asyncio.sleep(5)

    connector = PerplexityConnector(_config(connector_timeout_s=0.05), client=_SlowClient())
    result = await connector.ask("slow question")

    assert result.error == "timeout"
    assert result.answer == ""
    assert result.sources == []


@pytest.mark.asyncio
async def test_validation_drops_rejected_urls(monkeypatch):
    payload = {
        "choices": [{"message": {"content": "See https://dead.example.net/x and https://live.example.org/y"}}],
    }
    seen: dict = {}

    async def fake_validate(urls, brand_hosts=None, **kwargs):
        seen["brand_hosts"] = brand_hosts
        seen["kwargs"] = kwargs
        return [u for u in urls if "live" in u]

    monkeypatch.setattr(url_validator, "validate_urls", fake_validate)
    connector = PerplexityConnector(
        _config(validate_citations=True, validate_budget_s=3.0),
        ["acme.io", "acme-labs.dev"],
        client=_FakeHttpClient(_FakeResponse(payload)),
    )

    result = await connector.ask("q")

    assert [s.url for s in result.sources] == ["https://live.example.org/y"]
    assert seen["brand_hosts"] == ["acme.io", "acme-labs.dev"]
    assert seen["kwargs"]["budget_s"] == 3.0


def _openai_client(content: str | None, *, raises: Exception | None = None):
    async def create(**kwargs):
        create.kwargs = kwargs
        if raises is not None:
            raise raises
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create))), create


@pytest.mark.asyncio
async def test_chatgpt_structured_json_answer():
    content = json.dumps(
        {
            "answer": "Acme builds dashboards.",
            "citations": [{"title": "Acme", "url": "https://acme.io/"}],
        }
    )
    client, create = _openai_client(content)
    connector = ChatGPTSearchConnector(_config(), client=client)

    result = await connector.ask("What is Acme?")

    assert result.answer == "Acme builds dashboards."
    assert [(s.url, s.title) for s in result.sources] == [("https://acme.io/", "Acme")]
    assert create.kwargs["model"] == "gpt-4o-mini"
    assert create.kwargs["response_format"]["type"] == "json_schema"
    assert json.loads(result.raw)["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_chatgpt_free_text_falls_back_to_parsing():
    client, _ = _openai_client("Try [Acme](https://acme.io/features) for dashboards.")
    connector = ChatGPTSearchConnector(_config(), client=client)

    result = await connector.ask("dashboards")

    assert result.error is None
    assert [s.url for s in result.sources] == ["https://acme.io/features"]


@pytest.mark.asyncio
async def test_chatgpt_sdk_error_yields_empty_result():
    client, _ = _openai_client(None, raises=RuntimeError("upstream exploded"))
    connector = ChatGPTSearchConnector(_config(), client=client)

    result = await connector.ask("q")

    assert result.error == "RuntimeError"
    assert result.sources == []
    assert json.loads(result.raw)["message"] == "upstream exploded"


@pytest.mark.asyncio
async def test_claude_collects_text_and_block_citations():
    blocks = [
        SimpleNamespace(
            type="text",
            text="Acme is a BI vendor. ",
            citations=[SimpleNamespace(url="https://acme.io/", title="Acme home", cited_text="BI vendor")],
        ),
        SimpleNamespace(type="tool_use", text="ignored"),
        SimpleNamespace(type="text", text="References:\n- Review — https://reviews.example.org/acme", citations=None),
    ]
    response = SimpleNamespace(content=blocks, stop_reason="end_turn")

    async def create(**kwargs):
        create.kwargs = kwargs
        return response

    client = SimpleNamespace(messages=SimpleNamespace(create=create))
    connector = ClaudeConnector(_config(), client=client)

    result = await connector.ask("What is Acme?")

    assert result.answer.startswith("Acme is a BI vendor.")
    assert [s.url for s in result.sources] == ["https://acme.io/", "https://reviews.example.org/acme"]
    assert result.sources[0].snippet == "BI vendor"
    assert create.kwargs["max_tokens"] == 800
    assert json.loads(result.raw)["stop_reason"] == "end_turn"


@pytest.mark.asyncio
async def test_missing_key_is_reported_as_error_result():
    connector = ClaudeConnector(_config(api_keys={}))
    result = await connector.ask("q")
    assert result.error == "RuntimeError"


def test_get_enabled_connector_respects_flags_and_keys():
    config = _config(provider_flags={"perplexity": True, "chatgpt_search": True, "claude": False})
    assert isinstance(get_enabled_connector("perplexity", config), PerplexityConnector)
    assert get_enabled_connector("claude", config) is None
    assert get_enabled_connector("bing", config) is None

    no_key = _config(api_keys={"perplexity": "k"})
    assert get_enabled_connector("chatgpt_search", no_key) is None
    assert available_sources(no_key) == ["perplexity"]
