"""
In-process, per-client request limits for the agent routes.

``/agent/run`` gets a per-minute allowance; ``/agent/stream`` holds a model
call open for longer and gets its own, stricter window. A limit of 0
disables the rule.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional, Tuple

from .config import Settings, get_settings

RUN_RULE = "agent:run"
STREAM_RULE = "agent:stream"


@dataclass(frozen=True)
class RateRule:
    key: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0


class SlidingWindowLimiter:
    """Keeps the timestamps of recent hits per (rule, client)."""

    def __init__(self, rules: Dict[str, RateRule], clock=time.monotonic):
        self._rules = rules
        self._clock = clock
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._next_sweep = 0.0
        self._lock = asyncio.Lock()

    async def check(self, rule_key: str, client_id: str) -> RateDecision:
        rule = self._rules.get(rule_key)
        if rule is None or rule.limit <= 0:
            return RateDecision(allowed=True)
        now = self._clock()
        async with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            hits = self._hits.setdefault((rule_key, client_id), deque())
            while hits and now - hits[0] >= rule.window_seconds:
                hits.popleft()
            if len(hits) >= rule.limit:
                wait = rule.window_seconds - (now - hits[0])
                return RateDecision(allowed=False, retry_after=max(1, math.ceil(wait)))
            hits.append(now)
            return RateDecision(allowed=True)

    def _sweep(self, now: float) -> None:
        """Forget clients whose hits have all aged out; runs at most once per shortest window."""
        for key, hits in list(self._hits.items()):
            rule = self._rules.get(key[0])
            if rule is None or not hits or now - hits[-1] >= rule.window_seconds:
                del self._hits[key]
        windows = [r.window_seconds for r in self._rules.values() if r.limit > 0]
        self._next_sweep = now + min(windows, default=60)


def build_rules(settings: Settings) -> Dict[str, RateRule]:
    return {
        RUN_RULE: RateRule(key=RUN_RULE, limit=settings.rate_limit_per_minute, window_seconds=60),
        STREAM_RULE: RateRule(
            key=STREAM_RULE,
            limit=settings.stream_rate_limit,
            window_seconds=settings.stream_rate_window_seconds,
        ),
    }


_limiters: Dict[Tuple[int, int, int], SlidingWindowLimiter] = {}


def get_rate_limiter() -> SlidingWindowLimiter:
    """Limiter for the current limits; a new one is built when the env changes them."""
    settings = get_settings()
    key = (settings.rate_limit_per_minute, settings.stream_rate_limit, settings.stream_rate_window_seconds)
    limiter: Optional[SlidingWindowLimiter] = _limiters.get(key)
    if limiter is None:
        limiter = SlidingWindowLimiter(build_rules(settings))
        _limiters[key] = limiter
    return limiter
