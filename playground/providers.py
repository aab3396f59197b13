from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import httpx
import numpy as np
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from .config import get_settings

logger = logging.getLogger("llm-playground")

T = TypeVar("T")

OPENAI_API_URL = "https://api.openai.com/v1"
OPENROUTER_API_URL = "https://openrouter.ai/api/v1"
EMBEDDING_MODEL = "text-embedding-3-small"


@dataclass
class ChatResult:
    """Normalized result from a chat completion."""

    text: str
    usage: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


class ProviderError(RuntimeError):
    """Raised when an upstream model call fails."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
        rate_limited: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
        self.rate_limited = rate_limited


class ModelCallError(RuntimeError):
    """Raised when a model call still fails after all retries."""


class BaseProvider:
    """
    Abstract provider interface.

    `chat` mirrors a chat-completions call; `embed` returns one vector per
    input text.
    """

    name = "base"

    async def chat(
        self,
        *,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 400,
        response_format: Optional[Mapping[str, Any]] = None,
    ) -> ChatResult:  # pragma: no cover - interface only
        raise NotImplementedError

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:  # pragma: no cover - interface only
        raise NotImplementedError


_WORD_RE = re.compile(r"[a-z0-9]+")


def _hash_embedding(text: str, dim: int = 256) -> List[float]:
    """Feature-hashing embedding: deterministic and dependency-light."""
    vec = np.zeros((dim,), dtype=np.float64)
    for token in _WORD_RE.findall(text.lower()):
        h = int.from_bytes(hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "little")
        sign = 1.0 if ((h >> 63) & 1) == 0 else -1.0
        vec[h % dim] += sign
    norm = float(np.linalg.norm(vec))
    if norm > 0:
        vec /= norm
    return vec.tolist()


class StubProvider(BaseProvider):
    """
    Deterministic provider that never touches the network.

    JSON-mode calls get a schema-shaped agent answer; plain calls get a short
    bullet digest of the last user message. Embeddings use feature hashing.
    """

    name = "stub"

    async def chat(
        self,
        *,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 400,
        response_format: Optional[Mapping[str, Any]] = None,
    ) -> ChatResult:
        last_user = next(
            (str(m.get("content") or "") for m in reversed(messages) if m.get("role") == "user"),
            "",
        )
        if response_format:
            payload = {"intent": "chat", "answer": f"stub answer: {last_user[:120]}", "sources": []}
            text = json.dumps(payload)
        else:
            text = "- " + " ".join(last_user.split())[:200]
        prompt_tokens = sum(len(str(m.get("content") or "")) for m in messages) // 4
        completion_tokens = len(text) // 4
        usage = {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        }
        return ChatResult(text=text, usage=usage, model=model)

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [_hash_embedding(t) for t in texts]


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    status = resp.status_code
    rate_limited = status == 429
    retryable = rate_limited or status >= 500
    raise ProviderError(
        f"Upstream error {status}: {resp.text[:200]}",
        status_code=status,
        retryable=retryable,
        rate_limited=rate_limited,
    )


class OpenAIProvider(BaseProvider):
    """OpenAI chat-completions and embeddings over plain HTTP."""

    name = "openai"
    base_url = OPENAI_API_URL

    def __init__(self, api_key: str, model: Optional[str] = None, *, timeout: float = 60.0) -> None:
        self.api_key = api_key
        # Default model chosen conservatively; callers may override per request.
        self.model = model
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _resolve_model(self, model: str) -> str:
        return self.model or model

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}{path}", headers=self._headers(), json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise ProviderError(f"Upstream transport error: {exc}", retryable=True) from exc
        _raise_for_status(resp)
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise ProviderError("Upstream returned malformed JSON", retryable=True) from exc

    async def chat(
        self,
        *,
        model: str,
        messages: Sequence[Mapping[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 400,
        response_format: Optional[Mapping[str, Any]] = None,
    ) -> ChatResult:  # pragma: no cover - network
        body: Dict[str, Any] = {
            "model": self._resolve_model(model),
            "messages": [dict(m) for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            body["response_format"] = dict(response_format)
        data = await self._post("/chat/completions", body)
        try:
            raw_text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Upstream response missing choices", retryable=True) from exc
        return ChatResult(text=raw_text, usage=data.get("usage"), model=data.get("model") or body["model"])

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:  # pragma: no cover - network
        data = await self._post("/embeddings", {"model": EMBEDDING_MODEL, "input": list(texts)})
        rows = sorted(data.get("data") or [], key=lambda row: row.get("index", 0))
        return [row.get("embedding") or [] for row in rows]


class OpenRouterProvider(OpenAIProvider):
    """
    OpenRouter provider: one API key, many models (OpenAI, Claude, Gemini, etc.).
    """

    name = "openrouter"
    base_url = OPENROUTER_API_URL

    def _resolve_model(self, model: str) -> str:
        if self.model:
            return self.model
        return model if "/" in model else f"openai/{model}"


def build_provider(api_key_override: Optional[str] = None) -> BaseProvider:
    """Factory that chooses the concrete provider implementation."""
    settings = get_settings()
    if settings.provider_name == "openrouter":
        api_key = api_key_override or settings.openrouter_api_key
        if not api_key:
            return StubProvider()
        return OpenRouterProvider(api_key=api_key, model=settings.openrouter_model)
    if settings.provider_name == "openai":
        api_key = api_key_override or settings.openai_api_key
        if not api_key:
            return StubProvider()
        return OpenAIProvider(api_key=api_key)

    return StubProvider()


class wait_rate_limit_extra(wait_base):
    """Adds ``extra`` seconds when the last failure was a rate limit."""

    def __init__(self, extra: float) -> None:
        self.extra = extra

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        return self.extra if isinstance(exc, ProviderError) and exc.rate_limited else 0.0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "model call failed attempt=%s status=%s rate_limited=%s retry_in=%.2fs",
        retry_state.attempt_number,
        getattr(exc, "status_code", None),
        getattr(exc, "rate_limited", False),
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
    )


def build_retrying(
    *,
    retries: int = 3,
    base_delay: float = 0.4,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncRetrying:
    """Exponential backoff with jitter; rate limits wait one extra base step."""
    return AsyncRetrying(
        reraise=True,
        sleep=sleep,
        stop=stop_after_attempt(max(0, retries) + 1),
        wait=wait_exponential(multiplier=base_delay)
        + wait_random(0, base_delay / 2)
        + wait_rate_limit_extra(base_delay),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry,
    )


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.4,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``fn()``, retrying transient provider failures.

    Only `ProviderError`s flagged retryable are retried, at most ``retries``
    times. The last failure is re-raised as `ModelCallError`.
    """
    retrying = build_retrying(retries=retries, base_delay=base_delay, sleep=sleep)
    try:
        return await retrying(fn)
    except ProviderError as exc:
        raise ModelCallError(str(exc)) from exc
