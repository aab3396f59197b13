"""
Tool planning: keyword heuristics, optional model intent classification, and
the single policy that combines them.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from .providers import BaseProvider

logger = logging.getLogger("llm-playground")

INTENTS = (
    "list_notes",
    "count_notes",
    "titles",
    "find_note",
    "summarize_note",
    "search_docs",
    "weather",
    "chat",
    "multi",
)
DOC_INTENTS = frozenset(
    {"list_notes", "count_notes", "titles", "find_note", "summarize_note", "search_docs", "multi"}
)
LIST_INTENTS = frozenset({"list_notes", "count_notes", "titles"})
SEARCH_INTENTS = frozenset({"search_docs", "multi"})

_WEATHER_RE = re.compile(r"\b(weather|temperature|forecast|rain|sunny|wind)\b", re.I)
_DOCS_RE = re.compile(
    r"\b(note|notes|week|phase|doc|docs|project|agent|embedding|prompt|summarize|summary|title|titles"
    r"|list|count|how\s+many)\b",
    re.I,
)
_LIST_VERB_RE = re.compile(r"\b(list|count|how\s+many)\b", re.I)
_LIST_NOUN_RE = re.compile(r"\b(note|notes|doc|docs|title|titles)\b", re.I)
_QUERY_TOPIC_RE = re.compile(
    r"\b(note|notes|week|phase|doc|docs|project|agent|embedding|prompt|summarize|summary)\b", re.I
)
_SEGMENT_SPLIT_RE = re.compile(r"[,.;!?]|\band\b|\bthen\b|\bbut\b|\bplease\b", re.I)
_LOCATION_RE = re.compile(r"\b(?:weather|forecast)\s+(?:in|for|at)\s+([A-Za-z][A-Za-z\s\-']{1,})", re.I)
_LOCATION_FALLBACK_RE = re.compile(r"\b(?:in|for|at)\s+([A-Za-z][A-Za-z\s\-']{1,})", re.I)
_SUMMARIZE_RE = re.compile(r"\b(?:summarize|summary)\s+([^.!?]+)", re.I)

_FILENAME_PATTERNS = (
    (re.compile(r"\bphase\s*-?\s*(\d+)\b[^a-z0-9]+\bweek\s*-?\s*(\d+)\b"), False),
    (re.compile(r"\bweek\s*-?\s*(\d+)\b[^a-z0-9]+\bphase\s*-?\s*(\d+)\b"), True),
    (re.compile(r"\bp\s*-?\s*(\d+)\s*-?\s*w\s*-?\s*(\d+)\b"), False),
)
_MD_FILENAME_RE = re.compile(r"\b([a-z0-9\-]+)\.md\b")


@dataclass(frozen=True)
class ToolPlan:
    """Which tools to run for one prompt, and with which arguments."""

    wants_weather: bool = False
    wants_docs: bool = False
    wants_list: bool = False
    search_requested: bool = False
    location: Optional[str] = None
    query: Optional[str] = None
    filename: Optional[str] = None
    intent: str = "chat"

    @property
    def run_weather(self) -> bool:
        return self.wants_weather and bool(self.location)

    @property
    def run_list(self) -> bool:
        return self.wants_docs and self.wants_list

    @property
    def run_exact(self) -> bool:
        return self.wants_docs and bool(self.filename)

    @property
    def run_search(self) -> bool:
        # Listing replaces ranked search unless search was asked for explicitly.
        if not self.wants_docs or self.filename:
            return False
        return not self.wants_list or self.search_requested

    @property
    def uses_tools(self) -> bool:
        return self.wants_weather or self.wants_docs


@dataclass(frozen=True)
class IntentClassification:
    intent: str = "chat"
    args: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0

    def arg(self, name: str) -> Optional[str]:
        value = self.args.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


CHAT = IntentClassification()


def _clean(text: str) -> str:
    return " ".join(str(text or "").split())


def extract_weather_location(prompt: str) -> Optional[str]:
    """Location after ``weather in|for|at``, else after any ``in|for|at``."""
    text = str(prompt or "")
    match = _LOCATION_RE.search(text) or _LOCATION_FALLBACK_RE.search(text)
    if not match:
        return None
    location = _clean(_SEGMENT_SPLIT_RE.split(match.group(1))[0])
    return location or None


def extract_docs_query(prompt: str) -> str:
    """The first prompt segment that mentions a docs topic, else the whole prompt."""
    text = str(prompt or "")
    parts = [p.strip() for p in _SEGMENT_SPLIT_RE.split(text) if p and p.strip()]
    for part in parts:
        if _QUERY_TOPIC_RE.search(part):
            return part
    match = _SUMMARIZE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text


def extract_doc_filename(prompt: str) -> Optional[str]:
    """Normalise references like ``phase 1 week 2`` or ``p1w2`` to ``phase-1-week-2``."""
    text = str(prompt or "").lower()
    for pattern, swapped in _FILENAME_PATTERNS:
        match = pattern.search(text)
        if match:
            phase, week = (match.group(2), match.group(1)) if swapped else (match.group(1), match.group(2))
            return f"phase-{phase}-week-{week}"
    match = _MD_FILENAME_RE.search(text)
    if match:
        return match.group(1)
    return None


def derive_intent(plan: ToolPlan) -> str:
    if plan.wants_weather and plan.wants_docs:
        return "multi"
    if plan.wants_weather:
        return "weather"
    if plan.wants_docs:
        if plan.wants_list:
            return "list_notes"
        if plan.filename:
            return "find_note"
        return "search_docs"
    return "chat"


def heuristic_plan(prompt: str) -> ToolPlan:
    """Keyword-only plan; no I/O."""
    text = str(prompt or "")
    wants_weather = bool(_WEATHER_RE.search(text))
    wants_docs = bool(_DOCS_RE.search(text))
    wants_list = bool(_LIST_VERB_RE.search(text) and _LIST_NOUN_RE.search(text))
    plan = ToolPlan(
        wants_weather=wants_weather,
        wants_docs=wants_docs,
        wants_list=wants_list,
        location=extract_weather_location(text),
        query=extract_docs_query(text),
        filename=extract_doc_filename(text),
    )
    return replace(plan, intent=derive_intent(plan))


def parse_classification(text: Optional[str]) -> IntentClassification:
    """Parse the classifier's JSON. Anything unusable means ``chat`` at zero confidence."""
    try:
        parsed = json.loads(text or "{}")
    except (json.JSONDecodeError, TypeError):
        return CHAT
    if not isinstance(parsed, dict):
        return CHAT
    intent = parsed.get("intent")
    if not isinstance(intent, str) or intent not in INTENTS:
        return CHAT
    args = parsed.get("args") if isinstance(parsed.get("args"), dict) else {}
    confidence = parsed.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = 0.0
    return IntentClassification(intent=intent, args=args, confidence=float(confidence))


CLASSIFIER_INSTRUCTIONS = (
    'Return STRICT JSON: {"intent": string, "args": object, "confidence": number}. '
    "intents: [" + ",".join(f'"{name}"' for name in INTENTS) + "]. "
    'args may include "location", "query" and "filename". '
    "Do not include markdown or commentary."
)


async def classify_intent(provider: BaseProvider, prompt: str, model: str = "gpt-4o-mini") -> IntentClassification:
    """Ask a small model for the intent. Never raises."""
    try:
        result = await provider.chat(
            model=model,
            messages=[
                {"role": "system", "content": CLASSIFIER_INSTRUCTIONS},
                {"role": "user", "content": str(prompt or "")},
            ],
            temperature=0.0,
            max_tokens=120,
            response_format={"type": "json_object"},
        )
    except Exception as exc:
        logger.warning("intent classification failed: %s", exc)
        return CHAT
    return parse_classification(result.text)


def combine_plan(heuristic: ToolPlan, classification: IntentClassification) -> ToolPlan:
    """
    OR-combine the heuristic plan with the model classification.

    Either signal enables a tool. Classifier arguments win over extracted ones.
    """
    intent = classification.intent
    plan = ToolPlan(
        wants_weather=heuristic.wants_weather or intent == "weather",
        wants_docs=heuristic.wants_docs or intent in DOC_INTENTS,
        wants_list=heuristic.wants_list or intent in LIST_INTENTS,
        search_requested=heuristic.search_requested or intent in SEARCH_INTENTS,
        location=classification.arg("location") or heuristic.location,
        query=classification.arg("query") or heuristic.query,
        filename=classification.arg("filename") or heuristic.filename,
    )
    return replace(plan, intent=intent if intent != "chat" else derive_intent(plan))
