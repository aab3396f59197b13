"""
Overflow summarization.

Two strategies compress messages that no longer fit the budget:
  - "model": ask the LLM for 4-6 factual bullets (cached by content + model)
  - "heuristic": bullet digest of the last few messages, no model call

The model strategy falls back to the heuristic on any failure.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .cache import JsonCache, content_key
from .metrics import CACHE_HITS_TOTAL, OPENAI_CALLS_TOTAL, Counters
from .providers import BaseProvider
from .tokens import flatten_content

logger = logging.getLogger("llm-playground")

SUMMARY_MARKER = "Conversation summary:"

HEURISTIC = "heuristic"
MODEL = "model"

ROLLING_MAX_CHARS = 1600

SUMMARY_INSTRUCTIONS = (
    "Summarize the conversation below into 4-6 concise, factual bullet points. "
    "Keep names, numbers, decisions and open questions. "
    "Return only the bullets, one per line, each starting with '- '."
)


@dataclass
class SummaryOutcome:
    text: str
    strategy: str
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


def _collapse(text: str) -> str:
    return " ".join(text.split())


def summarize_heuristic(
    overflow: Sequence[Mapping[str, Any]],
    *,
    max_bullets: int = 5,
    max_chars: int = 800,
    item_chars: int = 180,
) -> str:
    """Zero-cost digest: the last ``max_bullets`` messages as ``- role: text`` bullets."""
    items = list(overflow or [])
    if not items:
        return ""
    bullets = []
    for message in items[-max_bullets:]:
        role = message.get("role") or "user"
        content = _collapse(flatten_content(message.get("content")))
        if len(content) > item_chars:
            content = content[: item_chars - 4] + "…"
        bullets.append(f"- {role}: {content}")
    text = "\n".join(bullets)
    if len(text) > max_chars:
        text = text[: max_chars - 1] + "…"
    return text


def _transcript(overflow: Sequence[Mapping[str, Any]]) -> str:
    lines = []
    for message in overflow:
        lines.append(f"{message.get('role') or 'user'}: {flatten_content(message.get('content'))}")
    return "\n".join(lines)


class Summarizer:
    def __init__(
        self,
        provider: BaseProvider,
        *,
        cache: Optional[JsonCache] = None,
        model: str = "gpt-4o-mini",
        strategy: str = MODEL,
        counters: Optional[Counters] = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.model = model
        self.strategy = strategy
        self.counters = counters or Counters()

    def _cache_key(self, overflow: Sequence[Mapping[str, Any]], previous: Optional[str]) -> str:
        payload = json.dumps([dict(m) for m in overflow], sort_keys=True, default=str)
        return content_key(self.model, previous or "", payload)

    async def summarize(
        self,
        overflow: Sequence[Mapping[str, Any]],
        max_output_tokens: int = 300,
        previous: Optional[str] = None,
    ) -> SummaryOutcome:
        """
        Compress ``overflow`` into bullets. When ``previous`` is given the
        result extends that summary instead of replacing it.
        """
        if not overflow:
            return SummaryOutcome(text=previous or "", strategy=HEURISTIC)

        if self.strategy != MODEL:
            return SummaryOutcome(text=self._heuristic(overflow, previous), strategy=HEURISTIC)

        key = self._cache_key(overflow, previous)
        if self.cache is not None:
            cached = self.cache.get(key)
            if isinstance(cached, dict) and cached.get("text"):
                self.counters.inc(CACHE_HITS_TOTAL)
                return SummaryOutcome(
                    text=cached["text"],
                    strategy=MODEL,
                    model=cached.get("model"),
                    usage=cached.get("usage"),
                )

        content = _transcript(overflow)
        if previous:
            content = f"Existing summary:\n{previous}\n\nNew messages:\n{content}"
        self.counters.inc(OPENAI_CALLS_TOTAL)
        try:
            result = await self.provider.chat(
                model=self.model,
                messages=[
                    {"role": "system", "content": SUMMARY_INSTRUCTIONS},
                    {"role": "user", "content": content},
                ],
                temperature=0.0,
                max_tokens=max_output_tokens,
            )
        except Exception as exc:
            logger.warning("summary model call failed, using heuristic: %s", exc)
            return SummaryOutcome(text=self._heuristic(overflow, previous), strategy=HEURISTIC)

        text = (result.text or "").strip()
        if not text:
            logger.warning("summary model returned empty text, using heuristic")
            return SummaryOutcome(text=self._heuristic(overflow, previous), strategy=HEURISTIC)

        if self.cache is not None:
            self.cache.set(key, {"text": text, "model": result.model or self.model, "usage": result.usage})
        return SummaryOutcome(text=text, strategy=MODEL, model=result.model or self.model, usage=result.usage)

    @staticmethod
    def _heuristic(overflow: Sequence[Mapping[str, Any]], previous: Optional[str]) -> str:
        digest = summarize_heuristic(overflow)
        if not previous:
            return digest
        combined = f"{previous}\n{digest}" if digest else previous
        # Rolling digests keep only the newest bullets.
        if len(combined) > ROLLING_MAX_CHARS:
            combined = "…" + combined[-(ROLLING_MAX_CHARS - 1):]
        return combined


def with_summary(messages: Sequence[Mapping[str, Any]], text: str) -> List[Dict[str, Any]]:
    """
    Return a copy of ``messages`` whose last leading system message carries
    the summary under ``SUMMARY_MARKER``. With no leading system message a
    new one is inserted first.
    """
    out = [dict(m) for m in messages]
    if not text:
        return out
    block = f"{SUMMARY_MARKER}\n{text}"
    last_system = -1
    for idx, message in enumerate(out):
        if message.get("role") != "system":
            break
        last_system = idx
    if last_system < 0:
        return [{"role": "system", "content": block}, *out]
    target = out[last_system]
    existing = flatten_content(target.get("content"))
    target["content"] = f"{existing}\n\n{block}" if existing else block
    return out
