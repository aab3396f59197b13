"""
In-process counters served on ``GET /metrics``.

The app owns one ``Counters`` on ``app.state``; values reset on restart.
"""

from __future__ import annotations

import threading
from typing import Dict

REQUESTS_TOTAL = "requests_total"
SSE_STARTS_TOTAL = "sse_starts_total"
OPENAI_CALLS_TOTAL = "openai_calls_total"
CACHE_HITS_TOTAL = "cache_hits_total"

COUNTER_NAMES = (REQUESTS_TOTAL, SSE_STARTS_TOTAL, OPENAI_CALLS_TOTAL, CACHE_HITS_TOTAL)


class Counters:
    """A fixed set of monotonically increasing counters; unknown names are ignored."""

    def __init__(self) -> None:
        self._values: Dict[str, int] = {name: 0 for name in COUNTER_NAMES}
        self._lock = threading.Lock()

    def inc(self, name: str, delta: int = 1) -> None:
        with self._lock:
            if name in self._values:
                self._values[name] += delta

    def get(self, name: str) -> int:
        return self._values.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

