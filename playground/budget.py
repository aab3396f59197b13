from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .catalog import context_window
from .tokens import REPLY_PRIMER, count_message_tokens

logger = logging.getLogger("llm-playground")

Message = Dict[str, Any]


@dataclass
class BudgetSplit:
    """Call-scoped partition of a message list against a token budget."""

    kept: List[Message]
    overflow: List[Message] = field(default_factory=list)
    budget: int = 0
    kept_tokens: int = 0

    @property
    def over_budget(self) -> bool:
        # Only possible when the system (and pinned) messages alone exceed the budget.
        return self.kept_tokens > self.budget

    def as_payload(self) -> Dict[str, Any]:
        return {
            "budget": self.budget,
            "kept": len(self.kept),
            "kept_tokens": self.kept_tokens,
            "overflow": len(self.overflow),
            "over_budget": self.over_budget,
        }


def compute_budget(model: Optional[str], safety_fraction: float) -> int:
    return int(math.floor(context_window(model) * safety_fraction))


def _is_system(message: Message) -> bool:
    return message.get("role") == "system"


def split_by_budget(
    messages: List[Message],
    budget_tokens: int,
    *,
    tokenizer: Optional[str] = None,
    pinned_tail: int = 0,
) -> BudgetSplit:
    """
    Keep system messages plus the newest non-system messages that fit.

    The last ``pinned_tail`` messages (the current turn) are kept like system
    messages. The other non-system messages are scanned newest-first; the
    first one that would push the total over ``budget_tokens`` stops the scan
    and it, together with everything older, becomes overflow. Kept messages
    retain their original order. The input list is never modified.
    """
    first_pinned = len(messages) - max(0, pinned_tail)

    def pinned(i: int) -> bool:
        return i >= first_pinned or _is_system(messages[i])

    pinned_tokens = sum(count_message_tokens(m, tokenizer) for i, m in enumerate(messages) if pinned(i))
    positions = [i for i in range(len(messages)) if not pinned(i)]

    total = pinned_tokens + REPLY_PRIMER
    cut = len(positions)
    for idx in range(len(positions) - 1, -1, -1):
        cost = count_message_tokens(messages[positions[idx]], tokenizer)
        if total + cost > budget_tokens:
            break
        total += cost
        cut = idx

    dropped = set(positions[:cut])
    kept = [m for i, m in enumerate(messages) if i not in dropped]
    overflow = [messages[i] for i in positions[:cut]]
    split = BudgetSplit(kept=kept, overflow=overflow, budget=budget_tokens, kept_tokens=total)
    if split.over_budget:
        logger.warning(
            "pinned messages alone exceed budget: tokens=%s budget=%s",
            split.kept_tokens,
            budget_tokens,
        )
    return split


def trim_to_budget(
    messages: List[Message],
    budget_tokens: int,
    *,
    tokenizer: Optional[str] = None,
    pinned_tail: int = 0,
) -> List[Message]:
    """Drop the oldest non-system messages until the list fits; no overflow is retained."""
    return split_by_budget(messages, budget_tokens, tokenizer=tokenizer, pinned_tail=pinned_tail).kept
