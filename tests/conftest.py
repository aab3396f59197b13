import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
import pytest

from playground.config import get_settings
from playground.corpus import NotesCorpus
from playground.engine import AgentOrchestrator
from playground.planner import CLASSIFIER_INSTRUCTIONS
from playground.providers import ChatResult, StubProvider
from playground.storage.session_store import InMemorySessionStore
from playground.summarizer import Summarizer
from playground.tools import Toolbox
from playground.weather import WeatherClient

NOTES = {
    "phase-1-week-1.md": "# Phase 1 Week 1\nTokenization basics and prompt design.\n",
    "phase-1-week-2.md": "# Phase 1 Week 2\nEmbeddings, cosine similarity and semantic search over notes.\n",
    "agents.txt": "Agents chain tools: weather lookup, notes search, then a model call.\n",
}

PARIS_WEATHER = {
    "location": {"name": "Paris"},
    "current": {
        "temp_c": 18.0,
        "feelslike_c": 17.5,
        "humidity": 60,
        "wind_kph": 11.2,
        "condition": {"text": "Partly cloudy"},
    },
}


class ScriptedProvider(StubProvider):
    """
    Provider double. Agent (JSON-mode) calls consume ``answers`` in order;
    an Exception entry is raised instead of returned. Classifier and summary
    calls get fixed replies. Every call is recorded.
    """

    name = "scripted"

    def __init__(
        self,
        answers: Optional[Sequence[Union[str, Exception]]] = None,
        *,
        classification: str = '{"intent": "chat", "args": {}, "confidence": 0}',
        summary_text: str = "- summarized earlier turns",
    ) -> None:
        self.answers: List[Union[str, Exception]] = list(answers or [])
        self.classification = classification
        self.summary_text = summary_text
        self.calls: List[Dict[str, Any]] = []

    @property
    def agent_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == "agent"]

    async def chat(self, *, model, messages, temperature=0.2, max_tokens=400, response_format=None):
        messages = [dict(m) for m in messages]
        if messages and messages[0].get("content") == CLASSIFIER_INSTRUCTIONS:
            self.calls.append({"kind": "classify", "messages": messages})
            return ChatResult(text=self.classification, usage=None, model=model)
        if not response_format:
            self.calls.append({"kind": "summary", "messages": messages})
            return ChatResult(text=self.summary_text, usage=None, model=model)

        self.calls.append({"kind": "agent", "messages": messages, "model": model, "max_tokens": max_tokens})
        answer: Union[str, Exception] = (
            self.answers.pop(0) if self.answers else json.dumps({"intent": "chat", "answer": "ok", "sources": []})
        )
        if isinstance(answer, Exception):
            raise answer
        usage = {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}
        return ChatResult(text=answer, usage=usage, model=model)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from real keys, on-disk caches and the shared rate limit."""
    for name in (
        "AUTH_TOKEN",
        "CLERK_JWKS_URL",
        "CLERK_JWT_KEY",
        "CLERK_ISSUER",
        "CLERK_AUDIENCE",
        "CLERK_AUTHORIZED_PARTIES",
        "WEATHER_API_KEY",
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
        "DATABASE_URL",
        "DEFAULT_MODEL",
        "SUMMARY_STRATEGY",
        "TOKENIZER",
        "CONTEXT_SAFETY_FRACTION",
        "USE_INTENT_CLASSIFIER",
        "NOTES_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROVIDER", "stub")
    monkeypatch.setenv("MEMORY_STORE", "memory")
    monkeypatch.setenv("CACHE_DIR", "none")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "0")
    monkeypatch.setenv("STREAM_RATE_LIMIT", "0")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "playground.db"))


@pytest.fixture
def scripted():
    """The ScriptedProvider class, for tests that build their own instances."""
    return ScriptedProvider


@pytest.fixture
def notes_dir(tmp_path) -> Path:
    root = tmp_path / "notes"
    root.mkdir()
    for name, text in NOTES.items():
        (root / name).write_text(text, encoding="utf-8")
    (root / "ignored.json").write_text("{}", encoding="utf-8")
    return root


@pytest.fixture
def paris_weather() -> WeatherClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "Paris"
        return httpx.Response(200, json=PARIS_WEATHER)

    return WeatherClient("test-key", transport=httpx.MockTransport(handler))


@pytest.fixture
def make_orchestrator(notes_dir):
    """Build an orchestrator over an in-memory store with settings overrides."""

    def _make(provider, *, store=None, weather=None, **overrides):
        settings = get_settings().model_copy(update=overrides)
        toolbox = Toolbox(
            corpus=NotesCorpus(str(notes_dir), provider=provider),
            weather=weather,
            timeout=settings.tool_timeout_seconds,
            top_k=settings.docs_top_k,
        )
        summarizer = Summarizer(provider, model=settings.default_model, strategy=settings.summary_strategy)
        return AgentOrchestrator(
            provider,
            store if store is not None else InMemorySessionStore(),
            toolbox,
            summarizer=summarizer,
            settings=settings,
        )

    return _make
