"""
Source citations: the shared projection of tool results, and the merge that
deduplicates and ranks document sources.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .corpus import DocHit
from .weather import WeatherReading

WEATHER = "weather"
DOC = "doc"
MEMORY = "memory"

DEFAULT_DOC_CAP = 10


@dataclass(frozen=True)
class Source:
    type: str
    file: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    snippet: Optional[str] = None
    score: Optional[float] = None
    meta: Optional[Mapping[str, Any]] = None

    def key(self) -> Optional[str]:
        """De-duplication key: file, else url, else title."""
        return self.file or self.url or self.title

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        for name in ("file", "url", "title", "snippet", "score"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        if self.meta:
            out["meta"] = dict(self.meta)
        return out


def from_weather(reading: WeatherReading) -> Source:
    return Source(
        type=WEATHER,
        title=reading.location,
        url=reading.url,
        snippet=reading.summary(),
        meta={"temp_c": reading.temp_c, "condition": reading.condition},
    )


def from_doc_hit(hit: DocHit) -> Source:
    return Source(type=DOC, file=hit.file, snippet=hit.snippet, score=hit.score)


def from_list_entry(name: str) -> Source:
    # Listings carry no ranking signal.
    return Source(type=DOC, file=name)


def from_memory(summary_text: str) -> Source:
    return Source(type=MEMORY, title="Conversation summary", snippet=summary_text)


def from_model(raw: Any) -> Optional[Source]:
    """Project a model self-reported source (a filename string or a dict)."""
    if isinstance(raw, str):
        return Source(type=DOC, file=raw) if raw.strip() else None
    if isinstance(raw, Mapping):
        score = raw.get("score")
        return Source(
            type=str(raw.get("type") or DOC),
            file=raw.get("file") if isinstance(raw.get("file"), str) else None,
            url=raw.get("url") if isinstance(raw.get("url"), str) else None,
            title=raw.get("title") if isinstance(raw.get("title"), str) else None,
            snippet=raw.get("snippet") if isinstance(raw.get("snippet"), str) else None,
            score=float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else None,
        )
    return None


def _score(source: Source) -> float:
    return source.score if source.score is not None else float("-inf")


def _richer(candidate: Source, current: Source) -> bool:
    has_new, has_old = bool(candidate.snippet), bool(current.snippet)
    if has_new != has_old:
        return has_new
    return _score(candidate) > _score(current)


def merge_doc_sources(
    doc: Iterable[Source] = (),
    exact: Iterable[Source] = (),
    listing: Iterable[Source] = (),
    model_reported: Iterable[Source] = (),
    cap: int = DEFAULT_DOC_CAP,
) -> List[Source]:
    """
    One entry per file, preferring a snippet, then a higher score. Listing
    entries only survive for files nothing richer mentions. Output is sorted
    by score descending (missing scores last, ties in insertion order) and
    capped.
    """
    by_file: Dict[str, Source] = {}
    for candidate in [*exact, *doc, *listing, *model_reported]:
        if candidate is None or candidate.type != DOC or not candidate.file:
            continue
        current = by_file.get(candidate.file)
        if current is None or _richer(candidate, current):
            by_file[candidate.file] = candidate
    merged = sorted(by_file.values(), key=lambda s: (s.score is None, -(s.score or 0.0)))
    return merged[: max(0, cap)]


def combine_sources(
    weather: Sequence[Source],
    docs: Sequence[Source],
    memory: Sequence[Source],
) -> List[Source]:
    """Weather first, merged docs, then memory. Never deduplicated across groups."""
    return [*weather, *docs, *memory]
