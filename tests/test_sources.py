from playground.corpus import DocHit
from playground.sources import (
    DOC,
    MEMORY,
    WEATHER,
    Source,
    combine_sources,
    from_doc_hit,
    from_list_entry,
    from_memory,
    from_model,
    from_weather,
    merge_doc_sources,
)
from playground.weather import WeatherReading


def _doc(file, score=None, snippet=None):
    return Source(type=DOC, file=file, score=score, snippet=snippet)


def test_to_dict_omits_missing_fields():
    assert from_list_entry("a.md").to_dict() == {"type": "doc", "file": "a.md"}
    hit = from_doc_hit(DocHit(file="b.md", score=0.5, snippet="text"))
    assert hit.to_dict() == {"type": "doc", "file": "b.md", "snippet": "text", "score": 0.5}


def test_weather_and_memory_adapters():
    reading = WeatherReading(
        location="Paris",
        condition="Sunny",
        temp_c=20.0,
        feels_like_c=None,
        humidity_pct=40,
        wind_kph=5.0,
        url="http://api.weatherapi.com/v1/current.json?q=Paris",
    )
    source = from_weather(reading)
    assert source.type == WEATHER
    assert source.title == "Paris"
    assert source.snippet == "Weather for Paris: Sunny, temp 20.0°C, feels ?°C, humidity 40%, wind 5.0 kph."
    assert source.key() == source.url

    memory = from_memory("- bullet")
    assert memory.type == MEMORY
    assert memory.key() == "Conversation summary"


def test_from_model_accepts_strings_and_objects():
    assert from_model("notes.md") == Source(type=DOC, file="notes.md")
    assert from_model("  ") is None
    assert from_model(42) is None
    parsed = from_model({"file": "x.md", "score": 2, "snippet": 7})
    assert parsed.file == "x.md"
    assert parsed.score == 2.0
    assert parsed.snippet is None


def test_merge_keeps_one_entry_per_file_preferring_snippets():
    merged = merge_doc_sources(
        doc=[_doc("a.md", 0.4, "from search")],
        listing=[_doc("a.md"), _doc("b.md")],
        model_reported=[_doc("a.md"), _doc("c.md")],
    )
    by_file = {s.file: s for s in merged}
    assert set(by_file) == {"a.md", "b.md", "c.md"}
    assert by_file["a.md"].snippet == "from search"


def test_merge_prefers_higher_score_when_both_have_snippets():
    merged = merge_doc_sources(
        exact=[_doc("a.md", 1.0, "exact")],
        doc=[_doc("a.md", 0.3, "search")],
    )
    assert merged == [_doc("a.md", 1.0, "exact")]


def test_merge_sorts_by_score_with_unscored_last():
    merged = merge_doc_sources(
        doc=[_doc("low.md", 0.1, "l"), _doc("high.md", 0.9, "h")],
        listing=[_doc("z.md"), _doc("y.md")],
    )
    assert [s.file for s in merged] == ["high.md", "low.md", "z.md", "y.md"]


def test_merge_is_deterministic_and_capped():
    kwargs = dict(
        doc=[_doc(f"{i}.md", i / 10, "s") for i in range(8)],
        listing=[_doc(f"list-{i}.md") for i in range(8)],
        cap=10,
    )
    first = merge_doc_sources(**kwargs)
    assert first == merge_doc_sources(**kwargs)
    assert len(first) == 10
    assert first[0].file == "7.md"
    assert merge_doc_sources(cap=0, **{k: v for k, v in kwargs.items() if k != "cap"}) == []


def test_merge_ignores_non_doc_and_nameless_sources():
    merged = merge_doc_sources(
        model_reported=[Source(type=WEATHER, file="w"), Source(type=DOC, url="http://x"), _doc("ok.md")],
    )
    assert merged == [_doc("ok.md")]


def test_combine_orders_groups_without_cross_dedup():
    weather = [Source(type=WEATHER, title="Paris")]
    docs = [_doc("a.md", 0.5, "s")]
    memory = [from_memory("- bullet")]
    combined = combine_sources(weather, docs, memory)
    assert [s.type for s in combined] == [WEATHER, DOC, MEMORY]
