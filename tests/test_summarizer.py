import asyncio

from playground.cache import JsonCache
from playground.metrics import CACHE_HITS_TOTAL, OPENAI_CALLS_TOTAL, Counters
from playground.providers import BaseProvider, ChatResult
from playground.summarizer import (
    HEURISTIC,
    MODEL,
    ROLLING_MAX_CHARS,
    SUMMARY_MARKER,
    Summarizer,
    summarize_heuristic,
    with_summary,
)


class RaisingProvider(BaseProvider):
    async def chat(self, **kwargs):
        raise RuntimeError("upstream down")


class EmptyProvider(BaseProvider):
    async def chat(self, **kwargs):
        return ChatResult(text="   ")


def _overflow(n):
    return [{"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"} for i in range(n)]


def test_heuristic_digest_keeps_last_five_bullets():
    text = summarize_heuristic(_overflow(7))
    lines = text.splitlines()
    assert len(lines) == 5
    assert lines[0] == "- user: message 2"
    assert lines[-1] == "- user: message 6"


def test_heuristic_digest_truncates_long_items():
    text = summarize_heuristic([{"role": "assistant", "content": "word " * 100}])
    assert text.startswith("- assistant: word word")
    assert text.endswith("…")
    assert len(text) == len("- assistant: ") + 177


def test_heuristic_digest_of_nothing_is_empty():
    assert summarize_heuristic([]) == ""


def test_model_summary_is_cached_by_content(scripted):
    provider = scripted(summary_text="- Alice prefers tea")
    cache = JsonCache()
    counters = Counters()
    summarizer = Summarizer(provider, cache=cache, model="gpt-4o-mini", strategy=MODEL, counters=counters)

    first = asyncio.run(summarizer.summarize(_overflow(3)))
    second = asyncio.run(summarizer.summarize(_overflow(3)))

    assert first.text == "- Alice prefers tea"
    assert first.strategy == MODEL
    assert second.text == first.text
    assert len([c for c in provider.calls if c["kind"] == "summary"]) == 1
    assert len(cache) == 1
    assert counters.snapshot()[CACHE_HITS_TOTAL] == 1
    assert counters.snapshot()[OPENAI_CALLS_TOTAL] == 1


def test_model_summary_extends_previous_text(scripted):
    provider = scripted()
    summarizer = Summarizer(provider, strategy=MODEL)
    asyncio.run(summarizer.summarize(_overflow(2), previous="- earlier bullet"))
    prompt = provider.calls[0]["messages"][1]["content"]
    assert prompt.startswith("Existing summary:\n- earlier bullet")
    assert "New messages:\nuser: message 0" in prompt


def test_model_failure_falls_back_to_heuristic():
    outcome = asyncio.run(Summarizer(RaisingProvider(), strategy=MODEL).summarize(_overflow(2)))
    assert outcome.strategy == HEURISTIC
    assert outcome.text == "- user: message 0\n- assistant: message 1"


def test_empty_model_reply_falls_back_to_heuristic():
    outcome = asyncio.run(Summarizer(EmptyProvider(), strategy=MODEL).summarize(_overflow(1)))
    assert outcome.strategy == HEURISTIC
    assert outcome.text == "- user: message 0"


def test_heuristic_strategy_rolls_previous_summary_forward(scripted):
    provider = scripted()
    summarizer = Summarizer(provider, strategy=HEURISTIC)

    outcome = asyncio.run(summarizer.summarize(_overflow(1), previous="- old bullet"))

    assert provider.calls == []
    assert outcome.text == "- old bullet\n- user: message 0"

    long_previous = "- " + "x" * 3000
    capped = asyncio.run(summarizer.summarize(_overflow(1), previous=long_previous))
    assert len(capped.text) == ROLLING_MAX_CHARS
    assert capped.text.endswith("- user: message 0")


def test_with_summary_appends_to_last_leading_system_message():
    messages = [
        {"role": "system", "content": "rules"},
        {"role": "system", "content": "Context: {}"},
        {"role": "user", "content": "hi"},
    ]
    out = with_summary(messages, "- a bullet")

    assert messages[1]["content"] == "Context: {}"
    assert out[0]["content"] == "rules"
    assert out[1]["content"] == f"Context: {{}}\n\n{SUMMARY_MARKER}\n- a bullet"
    assert out[2] == messages[2]


def test_with_summary_inserts_system_message_when_none_leads():
    messages = [{"role": "user", "content": "hi"}]
    out = with_summary(messages, "- a bullet")
    assert out[0] == {"role": "system", "content": f"{SUMMARY_MARKER}\n- a bullet"}
    assert out[1:] == messages
    assert with_summary(messages, "") == messages
