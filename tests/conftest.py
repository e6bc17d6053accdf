from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

import pytest
from typer.testing import CliRunner

import promptgrade.cli as cli
from promptgrade import providers
from promptgrade.models import (
    ProviderClassificationResponse,
    ProviderEmbeddingResponse,
    ProviderResponse,
    TokenUsage,
)
from promptgrade.providers import ApiProvider


class FakeProvider(ApiProvider):
    """Scripted provider: replies via `respond(prompt)` and records every call."""

    def __init__(
        self,
        provider_id: str = "fake:model",
        respond: Optional[Callable[[str], Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        cached: bool = False,
        token_usage: Optional[TokenUsage] = None,
    ):
        self._id = provider_id
        self._respond = respond or (lambda prompt: f"Echo: {prompt}")
        self.config = config or {}
        self.cached = cached
        self.token_usage = token_usage or TokenUsage(total=10, prompt=6, completion=4)
        self.calls: List[str] = []

    def id(self) -> str:
        return self._id

    async def call_api(
        self, prompt: str, context: Optional[Dict[str, Any]] = None
    ) -> ProviderResponse:
        self.calls.append(prompt)
        reply = self._respond(prompt)
        if isinstance(reply, ProviderResponse):
            return reply
        return ProviderResponse(
            output=reply, token_usage=self.token_usage, cached=self.cached
        )


class FakeEmbeddingProvider(FakeProvider):
    def __init__(self, vectors: Dict[str, List[float]], **kwargs: Any):
        super().__init__(**kwargs)
        self.vectors = vectors

    async def call_embedding_api(self, text: str) -> ProviderEmbeddingResponse:
        return ProviderEmbeddingResponse(
            embedding=self.vectors[text], token_usage=TokenUsage(total=3, prompt=3)
        )


class FakeClassifierProvider(FakeProvider):
    def __init__(self, classification: Dict[str, float], **kwargs: Any):
        super().__init__(**kwargs)
        self.classification = classification

    async def call_classification_api(
        self, text: str
    ) -> ProviderClassificationResponse:
        return ProviderClassificationResponse(classification=self.classification)


@pytest.fixture(scope="session")
def runner() -> CliRunner:
    # Typer runner for CLI tests
    return CliRunner(env={"COLUMNS": "200"})


@pytest.fixture()
def in_tmp_project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    # Start all tests in a fresh tmp directory as CWD
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture()
def ensure_clean_cache_and_reports(in_tmp_project: Path) -> Iterator[None]:
    # Ensure no leftovers from prior runs
    cache_dir = in_tmp_project / ".promptgrade_cache"
    reports_dir = in_tmp_project / ".promptgrade_reports"
    for directory in (cache_dir, reports_dir):
        if directory.exists():
            shutil.rmtree(directory)
    yield
    for directory in (cache_dir, reports_dir):
        if directory.exists():
            shutil.rmtree(directory)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    # Environment switches must not leak in from the developer's shell
    for name in (
        "PROMPTGRADE_DELAY_MS",
        "PROMPTGRADE_DISABLE_JSON_AUTOESCAPE",
        "PROMPTGRADE_DISABLE_CONVERSATION_VAR",
        "PROMPTGRADE_CACHE_DISABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    get_client = providers.get_client
    get_client.cache_clear()
    yield
    get_client.cache_clear()


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture()
def make_embedding_provider() -> Callable[..., FakeEmbeddingProvider]:
    return FakeEmbeddingProvider


@pytest.fixture()
def make_classifier_provider() -> Callable[..., FakeClassifierProvider]:
    return FakeClassifierProvider


@pytest.fixture(scope="session")
def templates_dir() -> Path:
    # The CLI reads templates from package
    return Path(cli.__file__).parent / "templates"


@pytest.fixture()
def write_config(in_tmp_project: Path) -> Callable[[str, str], Path]:
    # Utility to write a config (or any referenced file) into the project
    def _write(rel_path: str, content: str) -> Path:
        dst = in_tmp_project / rel_path
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_text(content, encoding="utf-8")
        return dst

    return _write


@pytest.fixture()
def read_json() -> Callable[[Path], Any]:
    def _read(path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    return _read
