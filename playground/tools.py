"""
Tool runners. Each runner returns its own result type; none raises past the
guard, which converts failures and timeouts into ``ok=False`` results.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .corpus import DocHit, NotesCorpus, make_snippet
from .planner import ToolPlan
from .sources import Source, from_doc_hit, from_list_entry, from_weather
from .weather import WeatherClient, WeatherReading

logger = logging.getLogger("llm-playground")

SEARCH = "search"
LIST = "list"
EXACT = "exact"


@dataclass(frozen=True)
class ToolResult:
    ok: bool
    summary: str
    sources: Tuple[Source, ...] = ()
    data: Any = None

    def to_context(self) -> Dict[str, Any]:
        return {"ok": self.ok, "summary": self.summary}


@dataclass(frozen=True)
class WeatherResult(ToolResult):
    reading: Optional[WeatherReading] = None


@dataclass(frozen=True)
class DocsResult(ToolResult):
    kind: str = SEARCH
    hits: Tuple[DocHit, ...] = ()

    def to_context(self) -> Dict[str, Any]:
        out = super().to_context()
        out["results"] = [{"file": h.file, "score": h.score, "snippet": h.snippet} for h in self.hits]
        return out


async def run_weather(client: Optional[WeatherClient], location: Optional[str]) -> WeatherResult:
    if client is None:
        return WeatherResult(ok=False, summary="WeatherAPI key missing")
    if not location or not location.strip():
        return WeatherResult(ok=False, summary="Weather query missing")
    reading = await client.current(location.strip())
    return WeatherResult(
        ok=True,
        summary=reading.summary(),
        sources=(from_weather(reading),),
        reading=reading,
    )


async def run_doc_search(corpus: NotesCorpus, query: Optional[str], top_k: int = 3) -> DocsResult:
    hits = await corpus.semantic_search(query or "project overview", top_k=top_k)
    summary = "\n".join(f"{i}. {h.file} (score {h.score:.3f}): {h.snippet}" for i, h in enumerate(hits, 1))
    return DocsResult(
        ok=True,
        summary=summary,
        sources=tuple(from_doc_hit(h) for h in hits),
        kind=SEARCH,
        hits=tuple(hits),
    )


async def run_doc_list(corpus: NotesCorpus) -> DocsResult:
    names = [note.name for note in await asyncio.to_thread(corpus.list_files)]
    return DocsResult(
        ok=True,
        summary=f"{len(names)} notes: {', '.join(names)}",
        sources=tuple(from_list_entry(name) for name in names),
        kind=LIST,
        hits=tuple(DocHit(file=name, score=1.0, snippet="") for name in names),
    )


async def run_doc_exact(corpus: NotesCorpus, name: Optional[str]) -> DocsResult:
    match = await asyncio.to_thread(corpus.find_by_query, name or "")
    if match is None:
        return DocsResult(ok=False, summary=f'No exact note match for "{name}"', kind=EXACT)
    snippet = make_snippet(await asyncio.to_thread(corpus.read, match.path))
    hit = DocHit(file=match.name, score=1.0, snippet=snippet)
    return DocsResult(
        ok=True,
        summary=f"Exact match: {match.name}",
        sources=(from_doc_hit(hit),),
        kind=EXACT,
        hits=(hit,),
    )


async def guard(
    label: str,
    work: Awaitable[ToolResult],
    timeout: float,
    failure: Callable[[str], ToolResult],
) -> ToolResult:
    """Await ``work`` with a timeout; any failure becomes ``failure(reason)``."""
    try:
        return await asyncio.wait_for(work, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("tool %s timed out after %ss", label, timeout)
        return failure(f"{label} timed out after {timeout}s")
    except Exception as exc:
        logger.warning("tool %s failed: %s", label, exc)
        return failure(f"{label} error: {exc}")


@dataclass
class Toolbox:
    """Runner dependencies, injected per request."""

    corpus: NotesCorpus
    weather: Optional[WeatherClient] = None
    timeout: float = 10.0
    top_k: int = 3


@dataclass
class ToolOutputs:
    weather: Optional[WeatherResult] = None
    docs: Optional[DocsResult] = None
    docs_list: Optional[DocsResult] = None
    docs_exact: Optional[DocsResult] = None

    def context(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in ("weather", "docs", "docs_list", "docs_exact"):
            result = getattr(self, name)
            if result is not None:
                out[name] = result.to_context()
        return out

    def fallback_answer(self, limit: int = 500) -> str:
        """First successful summary in priority order: exact match, search, weather."""
        for result in (self.docs_exact, self.docs, self.weather):
            if result is not None and result.ok and result.summary:
                return result.summary[:limit]
        return ""


async def run_tools(
    plan: ToolPlan,
    toolbox: Toolbox,
    trace: Callable[[str], None],
) -> ToolOutputs:
    """Start every tool the plan needs, concurrently, and wait for all of them."""
    jobs: List[Tuple[str, Awaitable[ToolResult]]] = []
    timeout = toolbox.timeout

    if plan.wants_weather:
        if plan.location:
            trace(f"tool:weather:{plan.location}")
            jobs.append((
                "weather",
                guard(
                    "Weather",
                    run_weather(toolbox.weather, plan.location),
                    timeout,
                    lambda reason: WeatherResult(ok=False, summary=reason),
                ),
            ))
        else:
            trace("tool:weather:skipped:no_location")

    if plan.run_list:
        trace("tool:docs:list")
        jobs.append((
            "docs_list",
            guard(
                "Docs list",
                run_doc_list(toolbox.corpus),
                timeout,
                lambda reason: DocsResult(ok=False, summary=reason, kind=LIST),
            ),
        ))
    if plan.run_exact:
        trace(f"tool:docs:exact:{plan.filename}")
        jobs.append((
            "docs_exact",
            guard(
                "Docs exact",
                run_doc_exact(toolbox.corpus, plan.filename),
                timeout,
                lambda reason: DocsResult(ok=False, summary=reason, kind=EXACT),
            ),
        ))
    elif plan.run_search:
        query = plan.query or ""
        trace(f"tool:docs:{query[:32]}")
        jobs.append((
            "docs",
            guard(
                "Docs search",
                run_doc_search(toolbox.corpus, query, top_k=toolbox.top_k),
                timeout,
                lambda reason: DocsResult(ok=False, summary=reason, kind=SEARCH),
            ),
        ))

    results = await asyncio.gather(*(job for _, job in jobs))
    outputs = ToolOutputs()
    for (name, _), result in zip(jobs, results):
        setattr(outputs, name, result)
    return outputs
