from __future__ import annotations

from typing import Any, Optional

import httpx
import pytest

from promptgrade import providers
from promptgrade.providers import (
    OpenAIChatProvider,
    OpenAIEmbeddingProvider,
    ProviderError,
    load_provider,
)


class _Function:
    def __init__(self, name: str, arguments: str):
        self.name = name
        self.arguments = arguments


class _ToolCall:
    def __init__(self, name: str, arguments: str):
        self.function = _Function(name, arguments)


class _Msg:
    def __init__(self, content: Any, tool_calls: Optional[list] = None):
        self.content = content
        self.tool_calls = tool_calls


class _Choice:
    def __init__(self, message: _Msg):
        self.message = message


class _Usage:
    total_tokens = 12
    prompt_tokens = 8
    completion_tokens = 4


class _Completions:
    def __init__(self, message: _Msg):
        self._message = message
        self.requests: list[dict] = []

    async def create(self, **request: Any):
        self.requests.append(request)
        return type("Resp", (), {"choices": [_Choice(self._message)], "usage": _Usage()})()


class _Embeddings:
    async def create(self, model: str, input: str):
        item = type("Item", (), {"embedding": [0.1, 0.2]})()
        return type("Resp", (), {"data": [item], "usage": _Usage()})()


class _Client:
    def __init__(self, message: Optional[_Msg] = None):
        self.chat = type("Chat", (), {})()
        self.chat.completions = _Completions(message or _Msg("OK"))
        self.embeddings = _Embeddings()


@pytest.fixture(autouse=True)
def project_cache(in_tmp_project):
    # CACHE_DIR is relative, so each test gets a fresh cache under tmp
    yield


def test_get_client_raises_without_env(monkeypatch):
    monkeypatch.setattr(providers, "load_dotenv", lambda: None)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ProviderError, match="OPENAI_API_KEY not found"):
        providers.get_client()


def test_get_client_is_cached(monkeypatch):
    class FakeOpenAI:
        def __init__(self, api_key: str, base_url: Optional[str] = None):
            assert api_key == "k"
            assert base_url == "http://localhost:8080/v1"

    monkeypatch.setattr(providers, "load_dotenv", lambda: None)
    monkeypatch.setenv("OPENAI_API_KEY", "k")
    monkeypatch.setenv("OPENAI_BASE_URL", "http://localhost:8080/v1")
    monkeypatch.setattr(providers.openai, "AsyncOpenAI", FakeOpenAI)
    client = providers.get_client()
    assert providers.get_client() is client


@pytest.mark.parametrize(
    "spec,cls,provider_id",
    [
        ("openai:gpt-4o", OpenAIChatProvider, "openai:gpt-4o"),
        ("openai:chat:gpt-4o", OpenAIChatProvider, "openai:gpt-4o"),
        ("openai:", OpenAIChatProvider, "openai:gpt-4o-mini"),
        ("openai:embedding", OpenAIEmbeddingProvider, "openai:embedding:text-embedding-3-small"),
        (
            {"id": "openai:embedding:text-embedding-3-large"},
            OpenAIEmbeddingProvider,
            "openai:embedding:text-embedding-3-large",
        ),
    ],
)
def test_load_provider_ids(spec, cls, provider_id):
    provider = load_provider(spec)
    assert isinstance(provider, cls)
    assert provider.id() == provider_id


def test_load_provider_passes_instances_through(fake_provider):
    assert load_provider(fake_provider) is fake_provider


@pytest.mark.parametrize("spec", ["", None, {"config": {}}, "anthropic:claude"])
def test_load_provider_rejects_invalid(spec):
    with pytest.raises(ValueError):
        load_provider(spec)


@pytest.mark.asyncio
async def test_chat_call_and_cache(monkeypatch):
    client = _Client(_Msg("Hello there"))
    monkeypatch.setattr(providers, "get_client", lambda: client)
    provider = OpenAIChatProvider("gpt-4o-mini", {"temperature": 0.3, "max_tokens": 50})

    first = await provider.call_api("Hi")
    assert first.output == "Hello there"
    assert first.cached is False
    assert first.token_usage.total == 12
    request = client.chat.completions.requests[0]
    assert request["messages"] == [{"role": "user", "content": "Hi"}]
    assert request["temperature"] == 0.3 and request["max_tokens"] == 50

    second = await provider.call_api("Hi")
    assert second.output == "Hello there"
    assert second.cached is True
    assert len(client.chat.completions.requests) == 1


@pytest.mark.asyncio
async def test_cache_can_be_disabled(monkeypatch):
    monkeypatch.setenv("PROMPTGRADE_CACHE_DISABLED", "1")
    client = _Client()
    monkeypatch.setattr(providers, "get_client", lambda: client)
    provider = OpenAIChatProvider()
    await provider.call_api("Hi")
    response = await provider.call_api("Hi")
    assert response.cached is False
    assert len(client.chat.completions.requests) == 2
    assert not providers.CACHE_DIR.exists()


@pytest.mark.asyncio
async def test_chat_prompt_json_is_sent_as_messages(monkeypatch):
    client = _Client()
    monkeypatch.setattr(providers, "get_client", lambda: client)
    prompt = '[{"role":"system","content":"Be brief"},{"role":"user","content":"Hi"}]'
    await OpenAIChatProvider().call_api(prompt)
    assert client.chat.completions.requests[0]["messages"][0] == {
        "role": "system",
        "content": "Be brief",
    }


@pytest.mark.asyncio
async def test_tool_call_becomes_structured_output(monkeypatch):
    message = _Msg(None, tool_calls=[_ToolCall("get_weather", '{"city": "Oslo"}')])
    client = _Client(message)
    monkeypatch.setattr(providers, "get_client", lambda: client)
    functions = [{"name": "get_weather", "parameters": {"type": "object"}}]
    response = await OpenAIChatProvider(config={"functions": functions}).call_api("?")
    assert response.output == {"name": "get_weather", "arguments": '{"city": "Oslo"}'}
    assert client.chat.completions.requests[0]["tools"] == [
        {"type": "function", "function": functions[0]}
    ]


@pytest.mark.asyncio
async def test_api_status_error_becomes_response_error(monkeypatch):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

    class FailingCompletions:
        async def create(self, **kwargs: Any):
            raise providers.openai.APIStatusError(
                "boom",
                response=httpx.Response(429, request=request),
                body={"message": "Rate limited"},
            )

    client = _Client()
    client.chat.completions = FailingCompletions()
    monkeypatch.setattr(providers, "get_client", lambda: client)
    response = await OpenAIChatProvider().call_api("Hi")
    assert response.error == "API returned a 429 status code: Rate limited"
    assert response.output is None


@pytest.mark.asyncio
async def test_embedding_provider(monkeypatch):
    monkeypatch.setattr(providers, "get_client", lambda: _Client())
    provider = OpenAIEmbeddingProvider()
    response = await provider.call_embedding_api("text")
    assert response.embedding == [0.1, 0.2]
    assert response.token_usage.prompt == 8
    completion = await provider.call_api("text")
    assert "only supports embeddings" in completion.error


@pytest.mark.asyncio
async def test_default_capabilities_report_errors(fake_provider):
    embedding = await fake_provider.call_embedding_api("x")
    classification = await fake_provider.call_classification_api("x")
    assert embedding.error == "Provider fake:model does not support embeddings"
    assert classification.error == "Provider fake:model does not support classification"
