import asyncio

import pytest

from playground.planner import (
    CHAT,
    IntentClassification,
    classify_intent,
    combine_plan,
    extract_doc_filename,
    extract_docs_query,
    extract_weather_location,
    heuristic_plan,
    parse_classification,
)
from playground.providers import BaseProvider


class RaisingProvider(BaseProvider):
    async def chat(self, **kwargs):
        raise RuntimeError("classifier offline")


@pytest.mark.parametrize(
    "prompt, expected",
    [
        ("What's the weather in Paris and my notes?", "Paris"),
        ("forecast for New York, please", "New York"),
        ("Is it windy at San Sebastian then", "San Sebastian"),
        ("is it sunny", None),
    ],
)
def test_extract_weather_location(prompt, expected):
    assert extract_weather_location(prompt) == expected


def test_extract_docs_query_prefers_topic_segment():
    assert extract_docs_query("weather in Paris and search notes about embeddings") == "search notes about embeddings"
    assert extract_docs_query("tell me a joke") == "tell me a joke"


@pytest.mark.parametrize(
    "prompt, expected",
    [
        ("show phase 1 week 2", "phase-1-week-2"),
        ("Phase-3 / Week-4 recap", "phase-3-week-4"),
        ("week 3, phase 2", "phase-2-week-3"),
        ("open p1w2", "phase-1-week-2"),
        ("open readme.md", "readme"),
        ("nothing here", None),
    ],
)
def test_extract_doc_filename(prompt, expected):
    assert extract_doc_filename(prompt) == expected


def test_heuristic_plan_for_listing_skips_search():
    plan = heuristic_plan("list all notes")
    assert plan.wants_docs and plan.wants_list
    assert plan.run_list
    assert not plan.run_search
    assert not plan.run_weather
    assert plan.intent == "list_notes"


def test_heuristic_plan_for_filename_runs_exact_lookup_only():
    plan = heuristic_plan("summarize phase 1 week 2 notes")
    assert plan.filename == "phase-1-week-2"
    assert plan.run_exact
    assert not plan.run_search
    assert plan.intent == "find_note"


def test_heuristic_plan_for_mixed_prompt():
    plan = heuristic_plan("weather in Paris and search notes about embeddings")
    assert plan.run_weather
    assert plan.location == "Paris"
    assert plan.run_search
    assert plan.query == "search notes about embeddings"
    assert plan.intent == "multi"


def test_heuristic_plan_for_small_talk_uses_no_tools():
    plan = heuristic_plan("hello there")
    assert not plan.uses_tools
    assert plan.intent == "chat"


def test_weather_without_location_does_not_run():
    plan = heuristic_plan("will it rain")
    assert plan.wants_weather
    assert not plan.run_weather


def test_combine_plan_lets_classifier_enable_tools_and_supply_args():
    heuristic = heuristic_plan("what's it like outside today")
    classification = IntentClassification(intent="weather", args={"location": " Rome "}, confidence=0.9)

    plan = combine_plan(heuristic, classification)

    assert plan.run_weather
    assert plan.location == "Rome"
    assert plan.intent == "weather"


def test_combine_plan_keeps_heuristic_signals_when_classifier_says_chat():
    plan = combine_plan(heuristic_plan("search my notes about embeddings"), CHAT)
    assert plan.run_search
    assert plan.intent == "search_docs"


def test_combine_plan_search_intent_adds_search_to_listing():
    plan = combine_plan(heuristic_plan("list notes"), IntentClassification(intent="search_docs", confidence=0.7))
    assert plan.run_list
    assert plan.run_search
    assert plan.intent == "search_docs"


def test_combine_plan_classifier_filename_wins():
    heuristic = heuristic_plan("open phase 1 week 1 notes")
    plan = combine_plan(heuristic, IntentClassification(intent="find_note", args={"filename": "agents"}))
    assert plan.filename == "agents"
    assert plan.run_exact


@pytest.mark.parametrize("raw", [None, "", "not json", "[1, 2]", '{"intent": "dance"}', '{"intent": 3}'])
def test_parse_classification_rejects_unusable_output(raw):
    assert parse_classification(raw) == CHAT


def test_parse_classification_reads_args_and_confidence():
    parsed = parse_classification('{"intent": "find_note", "args": {"filename": "p1w2"}, "confidence": 0.8}')
    assert parsed.intent == "find_note"
    assert parsed.arg("filename") == "p1w2"
    assert parsed.arg("query") is None
    assert parsed.confidence == 0.8

    no_confidence = parse_classification('{"intent": "weather", "args": [], "confidence": true}')
    assert no_confidence.args == {}
    assert no_confidence.confidence == 0.0


def test_classify_intent_never_raises():
    assert asyncio.run(classify_intent(RaisingProvider(), "weather in Oslo")) == CHAT


def test_classify_intent_uses_json_mode(scripted):
    provider = scripted(classification='{"intent": "weather", "args": {"location": "Oslo"}, "confidence": 1}')
    result = asyncio.run(classify_intent(provider, "how cold is Oslo"))
    assert result.intent == "weather"
    assert result.arg("location") == "Oslo"
    assert provider.calls[0]["kind"] == "classify"
