"""
Approximate token counting for chat message lists.

Counting is pluggable by tokenizer id: ``approx`` (UTF-8 bytes / 4) needs
nothing, tiktoken encodings such as ``cl100k_base`` are loaded on first use.
Unknown ids, or encodings that cannot be loaded, fall back to ``approx``.
"""

from __future__ import annotations

import json
import logging
import math
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping, Optional

import tiktoken

logger = logging.getLogger("llm-playground")

APPROX_TOKENIZER = "approx"
DEFAULT_TOKENIZER = APPROX_TOKENIZER

# Per-message role/formatting overhead and the reply primer added once per list.
MESSAGE_OVERHEAD = 4
REPLY_PRIMER = 2

TokenCounter = Callable[[str], int]


def _approx_count(text: str) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / 4))


@lru_cache(maxsize=8)
def get_counter(tokenizer_id: Optional[str] = None) -> TokenCounter:
    """Return a text -> token-count function for ``tokenizer_id``."""
    name = (tokenizer_id or DEFAULT_TOKENIZER).strip()
    if name == APPROX_TOKENIZER:
        return _approx_count
    try:
        encoding = tiktoken.get_encoding(name)
    except (KeyError, ValueError, OSError) as exc:
        logger.warning("tokenizer %s unavailable (%s); using %s", name, exc, APPROX_TOKENIZER)
        return _approx_count

    def _count(text: str) -> int:
        if not text:
            return 0
        return len(encoding.encode(text, disallowed_special=()))

    return _count


def flatten_content(content: Any) -> str:
    """Flatten text or structured content parts into one string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            else:
                parts.append(json.dumps(part, sort_keys=True, default=str))
        return " ".join(parts)
    if isinstance(content, Mapping):
        return json.dumps(content, sort_keys=True, default=str)
    return str(content)


def count_message_tokens(message: Mapping[str, Any], tokenizer_id: Optional[str] = None) -> int:
    counter = get_counter(tokenizer_id)
    return counter(flatten_content(message.get("content"))) + MESSAGE_OVERHEAD


def count_tokens(messages: Iterable[Mapping[str, Any]], tokenizer_id: Optional[str] = None) -> int:
    """Estimated prompt tokens for ``messages``."""
    return sum(count_message_tokens(m, tokenizer_id) for m in messages) + REPLY_PRIMER


def count_text_tokens(text: str, tokenizer_id: Optional[str] = None) -> int:
    return get_counter(tokenizer_id)(text or "")
