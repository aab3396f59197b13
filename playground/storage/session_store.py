"""
Session store: append-only per-session message log with a rolling summary.

Backends (MEMORY_STORE):
  memory  in-process dict (default)
  sql     SQLite or Postgres via playground.storage.db
  redis   redis.asyncio lists plus a metadata hash

Sessions table: (id, status, last_seq, summary, created_at, updated_at)
Messages table: (id, session_id, seq, role, content, created_at)
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel

from playground.config import Settings
from playground.storage.db import apply_schema, connect, serial_primary_key, sql

logger = logging.getLogger("llm-playground")

ACTIVE = "active"
ARCHIVED = "archived"


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class SessionSummary(BaseModel):
    """Rolling summary stored beside a session's messages."""

    text: str
    model: Optional[str] = None
    # Token count of the summary text, and the call budget it was built under.
    tokens: int = 0
    budget: int = 0
    updated_at: str = ""
    # Highest message seq folded into this summary.
    through_seq: int = 0


def is_valid_message(message: Any) -> bool:
    return (
        isinstance(message, Mapping)
        and isinstance(message.get("role"), str)
        and bool(message.get("role"))
        and "content" in message
    )


class SessionStore(ABC):
    """
    Backend interface. ``recent`` returns the newest ``limit`` messages in
    append order, each as ``{role, content, seq}``.
    """

    name = "base"

    async def init(self) -> None:
        """Prepare the backend (create tables, connect). Idempotent."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def append(self, session_id: str, message: Mapping[str, Any]) -> Optional[int]:
        """Append one message; returns its seq, or None when the message is invalid."""

    @abstractmethod
    async def recent(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def clear(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        ...

    @abstractmethod
    async def set_summary(self, session_id: str, summary: SessionSummary) -> None:
        ...

    async def status(self, session_id: str) -> Optional[str]:
        return None


@dataclass
class _MemorySession:
    messages: List[Dict[str, Any]] = field(default_factory=list)
    last_seq: int = 0
    status: str = ACTIVE
    summary: Optional[SessionSummary] = None


class InMemorySessionStore(SessionStore):
    name = "memory"

    def __init__(self, max_items: int = 200) -> None:
        self.max_items = max_items
        self._sessions: Dict[str, _MemorySession] = {}

    async def append(self, session_id: str, message: Mapping[str, Any]) -> Optional[int]:
        if not is_valid_message(message):
            return None
        sess = self._sessions.setdefault(session_id, _MemorySession())
        sess.last_seq += 1
        sess.status = ACTIVE
        sess.messages.append({"role": message["role"], "content": message["content"], "seq": sess.last_seq})
        if len(sess.messages) > self.max_items:
            del sess.messages[: len(sess.messages) - self.max_items]
        return sess.last_seq

    async def recent(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        sess = self._sessions.get(session_id)
        if sess is None or limit <= 0:
            return []
        return [dict(m) for m in sess.messages[-limit:]]

    async def clear(self, session_id: str) -> None:
        sess = self._sessions.get(session_id)
        if sess is None:
            return
        sess.messages.clear()
        sess.last_seq = 0
        sess.status = ARCHIVED
        sess.summary = None

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        sess = self._sessions.get(session_id)
        return sess.summary if sess else None

    async def set_summary(self, session_id: str, summary: SessionSummary) -> None:
        self._sessions.setdefault(session_id, _MemorySession()).summary = summary

    async def status(self, session_id: str) -> Optional[str]:
        sess = self._sessions.get(session_id)
        return sess.status if sess else None


class SqlSessionStore(SessionStore):
    """
    SQLite/Postgres backend. One connection per call; blocking driver calls
    run in a worker thread.
    """

    name = "sql"

    def __init__(self, max_items: int = 200) -> None:
        self.max_items = max_items
        self._ready = False

    async def init(self) -> None:
        await asyncio.to_thread(self._init_db)

    def _init_db(self) -> None:
        if self._ready:
            return
        apply_schema(
            [
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    last_seq INTEGER NOT NULL DEFAULT 0,
                    summary TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """,
                f"""
                CREATE TABLE IF NOT EXISTS messages (
                    id {serial_primary_key()},
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES sessions(id)
                )
                """,
                "CREATE INDEX IF NOT EXISTS idx_messages_session_seq ON messages (session_id, seq)",
            ]
        )
        self._ready = True

    def _append(self, session_id: str, role: str, content: Any) -> int:
        self._init_db()
        now = _now()
        with connect() as conn:
            row = conn.execute(sql("SELECT last_seq FROM sessions WHERE id = ?"), (session_id,)).fetchone()
            seq = (row["last_seq"] if row else 0) + 1
            conn.execute(
                sql(
                    "INSERT INTO sessions (id, status, last_seq, created_at, updated_at) VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT (id) DO UPDATE SET status = excluded.status, "
                    "last_seq = excluded.last_seq, updated_at = excluded.updated_at"
                ),
                (session_id, ACTIVE, seq, now, now),
            )
            conn.execute(
                sql("INSERT INTO messages (session_id, seq, role, content, created_at) VALUES (?, ?, ?, ?, ?)"),
                (session_id, seq, role, json.dumps(content), now),
            )
            conn.execute(
                sql("DELETE FROM messages WHERE session_id = ? AND seq <= ?"),
                (session_id, seq - self.max_items),
            )
            conn.commit()
        return seq

    async def append(self, session_id: str, message: Mapping[str, Any]) -> Optional[int]:
        if not is_valid_message(message):
            return None
        return await asyncio.to_thread(self._append, session_id, message["role"], message["content"])

    def _recent(self, session_id: str, limit: int) -> List[Dict[str, Any]]:
        self._init_db()
        with connect() as conn:
            rows = conn.execute(
                sql("SELECT seq, role, content FROM messages WHERE session_id = ? ORDER BY seq DESC LIMIT ?"),
                (session_id, limit),
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in reversed(rows):
            try:
                content = json.loads(row["content"])
            except (json.JSONDecodeError, TypeError):
                content = row["content"]
            out.append({"role": row["role"], "content": content, "seq": row["seq"]})
        return out

    async def recent(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        return await asyncio.to_thread(self._recent, session_id, limit)

    def _clear(self, session_id: str) -> None:
        self._init_db()
        with connect() as conn:
            conn.execute(sql("DELETE FROM messages WHERE session_id = ?"), (session_id,))
            conn.execute(
                sql("UPDATE sessions SET status = ?, last_seq = 0, summary = NULL, updated_at = ? WHERE id = ?"),
                (ARCHIVED, _now(), session_id),
            )
            conn.commit()

    async def clear(self, session_id: str) -> None:
        await asyncio.to_thread(self._clear, session_id)

    def _get_row(self, session_id: str) -> Optional[Any]:
        self._init_db()
        with connect() as conn:
            return conn.execute(
                sql("SELECT status, summary FROM sessions WHERE id = ?"), (session_id,)
            ).fetchone()

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        row = await asyncio.to_thread(self._get_row, session_id)
        if row is None or not row["summary"]:
            return None
        return SessionSummary.model_validate_json(row["summary"])

    def _set_summary(self, session_id: str, payload: str) -> None:
        self._init_db()
        now = _now()
        with connect() as conn:
            conn.execute(
                sql(
                    "INSERT INTO sessions (id, status, last_seq, summary, created_at, updated_at) "
                    "VALUES (?, ?, 0, ?, ?, ?) "
                    "ON CONFLICT (id) DO UPDATE SET summary = excluded.summary, updated_at = excluded.updated_at"
                ),
                (session_id, ACTIVE, payload, now, now),
            )
            conn.commit()

    async def set_summary(self, session_id: str, summary: SessionSummary) -> None:
        await asyncio.to_thread(self._set_summary, session_id, summary.model_dump_json())

    async def status(self, session_id: str) -> Optional[str]:
        row = await asyncio.to_thread(self._get_row, session_id)
        return row["status"] if row is not None else None


class RedisSessionStore(SessionStore):
    """Redis backend: a capped list per session plus a metadata hash, both with optional TTL."""

    name = "redis"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        max_items: int = 200,
        ttl_seconds: Optional[int] = None,
        client: Any = None,
        prefix: str = "playground:session",
    ) -> None:
        self.url = url
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = aioredis.from_url(self.url, decode_responses=True)
        return self._client

    def _messages_key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}:messages"

    def _meta_key(self, session_id: str) -> str:
        return f"{self.prefix}:{session_id}"

    async def _touch(self, session_id: str) -> None:
        if self.ttl_seconds:
            await self.client.expire(self._messages_key(session_id), self.ttl_seconds)
            await self.client.expire(self._meta_key(session_id), self.ttl_seconds)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def append(self, session_id: str, message: Mapping[str, Any]) -> Optional[int]:
        if not is_valid_message(message):
            return None
        meta = self._meta_key(session_id)
        seq = int(await self.client.hincrby(meta, "last_seq", 1))
        await self.client.hset(meta, mapping={"status": ACTIVE, "updated_at": _now()})
        entry = json.dumps({"role": message["role"], "content": message["content"], "seq": seq})
        key = self._messages_key(session_id)
        await self.client.rpush(key, entry)
        await self.client.ltrim(key, -self.max_items, -1)
        await self._touch(session_id)
        return seq

    async def recent(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        raw = await self.client.lrange(self._messages_key(session_id), -limit, -1)
        out: List[Dict[str, Any]] = []
        for item in raw or []:
            try:
                msg = json.loads(item)
            except (json.JSONDecodeError, TypeError):
                logger.warning("skipping unreadable message session=%s", session_id)
                continue
            if is_valid_message(msg):
                out.append(msg)
        return out

    async def clear(self, session_id: str) -> None:
        meta = self._meta_key(session_id)
        await self.client.delete(self._messages_key(session_id))
        await self.client.hset(meta, mapping={"status": ARCHIVED, "last_seq": 0, "updated_at": _now()})
        await self.client.hdel(meta, "summary")

    async def get_summary(self, session_id: str) -> Optional[SessionSummary]:
        raw = await self.client.hget(self._meta_key(session_id), "summary")
        if not raw:
            return None
        return SessionSummary.model_validate_json(raw)

    async def set_summary(self, session_id: str, summary: SessionSummary) -> None:
        await self.client.hset(self._meta_key(session_id), "summary", summary.model_dump_json())
        await self._touch(session_id)

    async def status(self, session_id: str) -> Optional[str]:
        return await self.client.hget(self._meta_key(session_id), "status")


def build_session_store(settings: Settings) -> SessionStore:
    """Pick the backend named by MEMORY_STORE."""
    kind = settings.memory_store
    if kind == "sql":
        return SqlSessionStore(max_items=settings.memory_max_items)
    if kind == "redis":
        return RedisSessionStore(
            settings.redis_url,
            max_items=settings.memory_max_items,
            ttl_seconds=settings.memory_ttl_seconds,
        )
    if kind != "memory":
        logger.warning("unknown MEMORY_STORE=%s; using in-process memory", kind)
    return InMemorySessionStore(max_items=settings.memory_max_items)
