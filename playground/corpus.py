"""
Local notes corpus: listing, guarded reads, name lookup and embedding search.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from .cache import JsonCache, content_key
from .providers import BaseProvider

logger = logging.getLogger("llm-playground")

NOTE_SUFFIXES = (".md", ".txt")
SNIPPET_CHARS = 300
# Embedding inputs are capped; long notes are represented by their head.
EMBED_INPUT_CHARS = 8000


@dataclass(frozen=True)
class NoteFile:
    name: str
    path: Path


@dataclass(frozen=True)
class DocHit:
    file: str
    score: float
    snippet: str


def make_snippet(text: str, limit: int = SNIPPET_CHARS) -> str:
    return text[:limit].replace("\n", " ").strip()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    va = np.asarray(a[:n], dtype=np.float64)
    vb = np.asarray(b[:n], dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class NotesCorpus:
    def __init__(
        self,
        notes_dir: str,
        *,
        provider: Optional[BaseProvider] = None,
        embeddings: Optional[JsonCache] = None,
    ) -> None:
        self.root = Path(notes_dir).resolve()
        self.provider = provider
        self.embeddings = embeddings if embeddings is not None else JsonCache()

    def list_files(self) -> List[NoteFile]:
        if not self.root.is_dir():
            return []
        files = [
            NoteFile(name=p.name, path=p)
            for p in self.root.iterdir()
            if p.is_file() and p.suffix.lower() in NOTE_SUFFIXES
        ]
        return sorted(files, key=lambda f: f.name)

    def read(self, path: Path) -> str:
        """Read a note. Paths outside the notes directory are refused."""
        resolved = Path(path).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PermissionError(f"Path outside notes directory: {path}")
        return resolved.read_text(encoding="utf-8")

    def _read_all(self, notes: Sequence[NoteFile]) -> List[str]:
        return [self.read(note.path) for note in notes]

    def find_by_query(self, query: str) -> Optional[NoteFile]:
        """Resolve a filename or partial name: exact name, stem, prefix, then substring."""
        q = str(query or "").strip().lower()
        if not q:
            return None
        files = self.list_files()
        checks = (
            lambda f: f.name.lower() == q,
            lambda f: f.path.stem.lower() == q,
            lambda f: f.name.lower().startswith(q),
            lambda f: q in f.name.lower(),
        )
        for check in checks:
            for note in files:
                if check(note):
                    return note
        return None

    async def _embed_all(self, texts: List[str]) -> List[List[float]]:
        if self.provider is None:
            raise RuntimeError("No embedding provider configured")
        keys = [content_key("embedding", t) for t in texts]
        missing = [i for i, key in enumerate(keys) if self.embeddings.get(key) is None]
        if missing:
            vectors = await self.provider.embed([texts[i] for i in missing])
            for i, vec in zip(missing, vectors):
                self.embeddings.set(keys[i], list(vec))
            logger.info("embeddings computed=%s cached=%s", len(missing), len(texts) - len(missing))
        return [self.embeddings.get(key) or [] for key in keys]

    async def semantic_search(self, query: str, top_k: int = 3) -> List[DocHit]:
        notes = await asyncio.to_thread(self.list_files)
        if not notes:
            return []
        texts = await asyncio.to_thread(self._read_all, notes)
        inputs = [t[:EMBED_INPUT_CHARS] for t in texts]
        vectors = await self._embed_all([query or "project overview", *inputs])
        query_vec, doc_vecs = vectors[0], vectors[1:]
        hits = [
            DocHit(file=note.name, score=cosine_similarity(query_vec, vec), snippet=make_snippet(text))
            for note, text, vec in zip(notes, texts, doc_vecs)
        ]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[: max(0, top_k)]
