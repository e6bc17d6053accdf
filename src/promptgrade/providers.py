# src/promptgrade/providers.py
from __future__ import annotations

import abc
import hashlib
import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import openai
from dotenv import load_dotenv
from loguru import logger

from .models import (
    ProviderClassificationResponse,
    ProviderEmbeddingResponse,
    ProviderResponse,
    TokenUsage,
)

CACHE_DIR = Path(".promptgrade_cache")
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


class ProviderError(EnvironmentError):
    """Raised when a provider cannot be constructed or configured."""

    pass


class ApiProvider(abc.ABC):
    """A model endpoint that turns a rendered prompt into output.

    Subclasses implement `id()` and `call_api()`. Matchers additionally use
    `call_embedding_api()` and `call_classification_api()` when a provider
    offers them; the defaults report the capability as missing.
    """

    config: Dict[str, Any] = {}

    @abc.abstractmethod
    def id(self) -> str: ...

    @abc.abstractmethod
    async def call_api(
        self, prompt: str, context: Optional[Dict[str, Any]] = None
    ) -> ProviderResponse: ...

    async def call_embedding_api(self, text: str) -> ProviderEmbeddingResponse:
        return ProviderEmbeddingResponse(
            error=f"Provider {self.id()} does not support embeddings"
        )

    async def call_classification_api(
        self, text: str
    ) -> ProviderClassificationResponse:
        return ProviderClassificationResponse(
            error=f"Provider {self.id()} does not support classification"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id()}>"


# --- Client & cache ---


@lru_cache(maxsize=1)
def get_client() -> openai.AsyncOpenAI:
    load_dotenv()
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ProviderError(
            "OPENAI_API_KEY not found. Please add it to your .env file."
        )
    return openai.AsyncOpenAI(
        api_key=api_key,
        base_url=os.getenv("OPENAI_BASE_URL") or None,
    )


def _cache_enabled() -> bool:
    return not os.getenv("PROMPTGRADE_CACHE_DISABLED")


def _get_cache_key(data: Any) -> str:
    serialized_data = json.dumps(data, sort_keys=True).encode("utf-8")
    return hashlib.sha256(serialized_data).hexdigest()


def _read_cache(key: str) -> Optional[Dict[str, Any]]:
    if not _cache_enabled():
        return None
    cache_file = CACHE_DIR / key
    if cache_file.exists():
        return json.loads(cache_file.read_text("utf-8"))
    return None


def _write_cache(key: str, value: Dict[str, Any]) -> None:
    if not _cache_enabled():
        return
    CACHE_DIR.mkdir(exist_ok=True)
    cache_file = CACHE_DIR / key
    tmp_file = CACHE_DIR / f".{key}.tmp"
    tmp_file.write_text(json.dumps(value), "utf-8")
    tmp_file.replace(cache_file)


def _describe_api_error(e: Exception) -> str:
    if isinstance(e, openai.APIStatusError):
        status = getattr(e, "status_code", None)
        body = getattr(e, "body", None)
        if isinstance(body, dict) and body.get("message"):
            return f"API returned a {status} status code: {body['message']}"
        return f"API returned a non-200 status code: {status}."
    if isinstance(e, openai.APIConnectionError):
        return (
            "Could not connect to the API. Please check your network connection. "
            f"Details: {getattr(e, '__cause__', None)}"
        )
    return f"API call error: {e}"


def _token_usage(usage: Any) -> TokenUsage:
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        total=getattr(usage, "total_tokens", 0) or 0,
        prompt=getattr(usage, "prompt_tokens", 0) or 0,
        completion=getattr(usage, "completion_tokens", 0) or 0,
    )


# --- OpenAI providers ---


class OpenAIChatProvider(ApiProvider):
    def __init__(
        self, model: str = DEFAULT_CHAT_MODEL, config: Optional[Dict[str, Any]] = None
    ):
        self.model = model
        self.config = dict(config or {})

    def id(self) -> str:
        return f"openai:{self.model}"

    def _messages(self, prompt: str) -> Any:
        # A prompt that is a JSON list of chat turns is sent as-is.
        try:
            parsed = json.loads(prompt)
        except ValueError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(m, dict) for m in parsed):
            return parsed
        return [{"role": "user", "content": prompt}]

    async def call_api(
        self, prompt: str, context: Optional[Dict[str, Any]] = None
    ) -> ProviderResponse:
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": self._messages(prompt),
            "temperature": self.config.get("temperature", 0.0),
        }
        if self.config.get("max_tokens") is not None:
            request["max_tokens"] = self.config["max_tokens"]
        if self.config.get("functions"):
            request["tools"] = [
                {"type": "function", "function": fn} for fn in self.config["functions"]
            ]

        cache_key = _get_cache_key(request)
        cached = _read_cache(cache_key)
        if cached is not None:
            response = ProviderResponse.model_validate(cached)
            response.cached = True
            return response

        try:
            client = get_client()
            chat_completion = await client.chat.completions.create(**request)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            return ProviderResponse(error=_describe_api_error(e))

        output: Any = ""
        if chat_completion.choices and chat_completion.choices[0].message:
            message = chat_completion.choices[0].message
            if message.tool_calls:
                call = message.tool_calls[0].function
                output = {"name": call.name, "arguments": call.arguments}
            elif message.content is not None:
                output = message.content

        response = ProviderResponse(
            output=output, token_usage=_token_usage(chat_completion.usage)
        )
        _write_cache(cache_key, response.model_dump(exclude={"cached"}))
        return response


class OpenAIEmbeddingProvider(ApiProvider):
    def __init__(
        self,
        model: str = DEFAULT_EMBEDDING_MODEL,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.model = model
        self.config = dict(config or {})

    def id(self) -> str:
        return f"openai:embedding:{self.model}"

    async def call_api(
        self, prompt: str, context: Optional[Dict[str, Any]] = None
    ) -> ProviderResponse:
        return ProviderResponse(
            error=f"{self.id()} only supports embeddings, not completions"
        )

    async def call_embedding_api(self, text: str) -> ProviderEmbeddingResponse:
        cache_key = _get_cache_key({"embedding": text, "model": self.model})
        cached = _read_cache(cache_key)
        if cached is not None:
            return ProviderEmbeddingResponse.model_validate(cached)

        try:
            client = get_client()
            result = await client.embeddings.create(model=self.model, input=text)
        except (openai.APIStatusError, openai.APIConnectionError) as e:
            return ProviderEmbeddingResponse(error=_describe_api_error(e))

        if not result.data:
            return ProviderEmbeddingResponse(error="No embedding returned")
        response = ProviderEmbeddingResponse(
            embedding=list(result.data[0].embedding),
            token_usage=_token_usage(result.usage),
        )
        _write_cache(cache_key, response.model_dump())
        return response


def load_provider(spec: Any) -> ApiProvider:
    """Resolve a provider from an instance, an id string or an `{id, config}` mapping."""
    if isinstance(spec, ApiProvider):
        return spec

    config: Dict[str, Any] = {}
    if isinstance(spec, dict):
        provider_id = spec.get("id")
        config = spec.get("config") or {}
    else:
        provider_id = spec
    if not isinstance(provider_id, str) or not provider_id:
        raise ValueError(f"Invalid provider: {spec!r}")

    vendor, _, rest = provider_id.partition(":")
    if vendor != "openai":
        raise ValueError(f"Unknown provider: {provider_id}")
    if rest.startswith("embedding:") or rest == "embedding":
        model = rest.partition(":")[2] or DEFAULT_EMBEDDING_MODEL
        logger.debug(f"Loaded embedding provider {model}")
        return OpenAIEmbeddingProvider(model, config)
    if rest.startswith("chat:"):
        rest = rest[len("chat:") :]
    return OpenAIChatProvider(rest or DEFAULT_CHAT_MODEL, config)
