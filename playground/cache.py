"""
Read-through, write-behind JSON caches (embeddings, summaries).

Reads load the backing file once; writes update memory and schedule a
debounced flush on the running event loop. ``flush()`` writes immediately and
is called on shutdown. Concurrent writers race on the timer; last write wins.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("llm-playground")


def content_key(*parts: str) -> str:
    digest = hashlib.sha1()
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class JsonCache:
    def __init__(self, path: Optional[Path] = None, *, flush_delay: float = 0.2) -> None:
        self.path = Path(path) if path is not None else None
        self.flush_delay = flush_delay
        self._data: Dict[str, Any] = {}
        self._loaded = False
        self._pending: Optional[asyncio.TimerHandle] = None
        self._pending_loop: Optional[asyncio.AbstractEventLoop] = None

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("cache %s unreadable, starting empty: %s", self.path, exc)
            return
        if isinstance(raw, dict):
            # Entries written in memory before the first read win over disk.
            for key, value in raw.items():
                self._data.setdefault(key, value)

    def get(self, key: str) -> Any:
        self._load()
        return self._data.get(key)

    def __contains__(self, key: str) -> bool:
        self._load()
        return key in self._data

    def __len__(self) -> int:
        self._load()
        return len(self._data)

    def set(self, key: str, value: Any) -> None:
        self._load()
        self._data[key] = value
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self.path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._pending is not None and self._pending_loop is loop:
            return
        # A timer left on a loop that has since stopped will never fire.
        self._pending_loop = loop
        self._pending = loop.call_later(self.flush_delay, self.flush)

    def flush(self) -> bool:
        """Write the cache to disk now. Returns False when the write failed."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
            self._pending_loop = None
        if self.path is None:
            return True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(json.dumps(self._data), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("cache flush failed path=%s: %s", self.path, exc)
            return False
        return True


@dataclass
class Caches:
    embeddings: JsonCache
    summaries: JsonCache

    def flush(self) -> None:
        self.embeddings.flush()
        self.summaries.flush()


def build_caches(cache_dir: Optional[str], *, flush_delay: float = 0.2) -> Caches:
    base = Path(cache_dir) if cache_dir else None
    return Caches(
        embeddings=JsonCache(base / "embeddings.json" if base else None, flush_delay=flush_delay),
        summaries=JsonCache(base / "summaries.json" if base else None, flush_delay=flush_delay),
    )
