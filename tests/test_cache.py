import asyncio
import json

from playground.cache import JsonCache, build_caches, content_key


def test_content_key_is_stable_and_separator_aware():
    assert content_key("a", "bc") == content_key("a", "bc")
    assert content_key("a", "bc") != content_key("ab", "c")


def test_set_outside_event_loop_writes_immediately(tmp_path):
    path = tmp_path / "cache" / "embeddings.json"
    cache = JsonCache(path)
    cache.set("k", [0.1, 0.2])
    assert json.loads(path.read_text(encoding="utf-8")) == {"k": [0.1, 0.2]}
    assert JsonCache(path).get("k") == [0.1, 0.2]


def test_writes_inside_event_loop_are_debounced(tmp_path):
    path = tmp_path / "summaries.json"

    async def scenario():
        cache = JsonCache(path, flush_delay=0.02)
        cache.set("a", 1)
        cache.set("b", 2)
        assert not path.exists()
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1, "b": 2}


def test_flush_writes_pending_entries_now(tmp_path):
    path = tmp_path / "summaries.json"

    async def scenario():
        cache = JsonCache(path, flush_delay=60)
        cache.set("a", 1)
        assert cache.flush() is True

    asyncio.run(scenario())
    assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1}


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / "embeddings.json"
    path.write_text("{not json", encoding="utf-8")
    cache = JsonCache(path)
    assert cache.get("missing") is None
    assert len(cache) == 0


def test_memory_only_caches_never_touch_disk(tmp_path):
    caches = build_caches(None)
    caches.embeddings.set("k", [1.0])
    caches.flush()
    assert caches.embeddings.path is None
    assert "k" in caches.embeddings
    assert list(tmp_path.iterdir()) == []
