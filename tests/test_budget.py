import copy

from playground.budget import compute_budget, split_by_budget, trim_to_budget
from playground.tokens import count_message_tokens, count_text_tokens, count_tokens, flatten_content, get_counter


def _msg(role, chars, tag="x"):
    return {"role": role, "content": tag * chars}


def _conversation():
    return [
        _msg("system", 40, "s"),
        _msg("user", 40, "a"),
        _msg("assistant", 40, "b"),
        _msg("user", 40, "c"),
        _msg("assistant", 40, "d"),
    ]


def test_approx_counter_rounds_bytes_up():
    assert count_text_tokens("") == 0
    assert count_text_tokens("abcd") == 1
    assert count_text_tokens("abcde") == 2
    # Multi-byte characters count by UTF-8 length.
    assert count_text_tokens("é" * 4) == 2


def test_message_and_list_overheads():
    message = {"role": "user", "content": "abcd"}
    assert count_message_tokens(message) == 5
    assert count_tokens([message, message]) == 12
    assert count_tokens([]) == 2


def test_structured_content_is_flattened():
    content = [{"type": "text", "text": "hello"}, {"type": "image_url", "image_url": {"url": "u"}}]
    flat = flatten_content(content)
    assert flat.startswith("hello ")
    assert '"image_url"' in flat
    assert flatten_content(None) == ""
    assert count_message_tokens({"role": "user", "content": content}) > 4


def test_unknown_tokenizer_falls_back_to_approx():
    counter = get_counter("no-such-encoding")
    assert counter("abcdefgh") == 2


def test_compute_budget_uses_catalogue_window():
    assert compute_budget("gpt-4o-mini", 0.8) == 102400
    assert compute_budget("GPT-4o-mini", 0.5) == 64000
    assert compute_budget("some-unknown-model", 0.8) == 6553


def test_split_keeps_system_and_newest_messages():
    messages = _conversation()
    snapshot = copy.deepcopy(messages)

    split = split_by_budget(messages, 50)

    assert messages == snapshot
    assert [m["content"][0] for m in split.kept] == ["s", "c", "d"]
    assert [m["content"][0] for m in split.overflow] == ["a", "b"]
    assert split.kept_tokens == 14 + 14 + 14 + 2
    assert split.kept_tokens <= split.budget
    assert not split.over_budget


def test_split_with_room_for_everything_has_no_overflow():
    messages = _conversation()
    split = split_by_budget(messages, 10_000)
    assert split.kept == messages
    assert split.overflow == []
    assert split.kept_tokens == count_tokens(messages)


def test_split_stops_at_first_message_that_does_not_fit():
    messages = [
        _msg("system", 4, "s"),
        _msg("user", 8, "a"),
        _msg("user", 400, "b"),
        _msg("user", 8, "c"),
    ]
    split = split_by_budget(messages, 40)
    # "a" would fit on its own but sits behind the message that stopped the scan.
    assert [m["content"][0] for m in split.kept] == ["s", "c"]
    assert [m["content"][0] for m in split.overflow] == ["a", "b"]


def test_system_messages_alone_over_budget_are_kept():
    messages = [_msg("system", 400, "s"), _msg("user", 4, "u")]
    split = split_by_budget(messages, 50)
    assert split.kept == [messages[0]]
    assert split.overflow == [messages[1]]
    assert split.over_budget
    assert split.as_payload()["over_budget"] is True


def test_trim_is_idempotent():
    messages = _conversation()
    once = trim_to_budget(messages, 50)
    twice = trim_to_budget(once, 50)
    assert once == twice
    assert count_tokens(once) <= 50


def test_pinned_tail_is_kept_even_when_it_alone_overflows():
    messages = [*_conversation(), _msg("user", 400, "u")]
    split = split_by_budget(messages, 50, pinned_tail=1)

    assert [m["content"][0] for m in split.kept] == ["s", "u"]
    assert [m["content"][0] for m in split.overflow] == ["a", "b", "c", "d"]
    assert split.kept_tokens == 14 + 104 + 2
    assert split.over_budget

    assert trim_to_budget(messages, 50, pinned_tail=1)[-1] is messages[-1]
    # Without pinning the oversized turn is the first thing dropped.
    assert split_by_budget(messages, 50).kept == [messages[0]]
