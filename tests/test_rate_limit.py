import asyncio

from playground.config import get_settings
from playground.rate_limit import (
    RUN_RULE,
    STREAM_RULE,
    RateRule,
    SlidingWindowLimiter,
    build_rules,
    get_rate_limiter,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _check(limiter, rule="r", client="c"):
    return asyncio.run(limiter.check(rule, client))


def test_window_slides_instead_of_resetting():
    clock = FakeClock()
    limiter = SlidingWindowLimiter({"r": RateRule(key="r", limit=2, window_seconds=60)}, clock=clock)

    assert _check(limiter).allowed
    clock.now += 30
    assert _check(limiter).allowed

    clock.now += 10
    denied = _check(limiter)
    assert not denied.allowed
    assert denied.retry_after == 20

    # The first hit has aged out; the second still counts.
    clock.now += 20
    assert _check(limiter).allowed
    assert not _check(limiter).allowed


def test_clients_and_rules_are_counted_separately():
    limiter = SlidingWindowLimiter(
        {
            "a": RateRule(key="a", limit=1, window_seconds=60),
            "b": RateRule(key="b", limit=1, window_seconds=60),
        }
    )
    assert _check(limiter, "a", "alice").allowed
    assert not _check(limiter, "a", "alice").allowed
    assert _check(limiter, "a", "bob").allowed
    assert _check(limiter, "b", "alice").allowed


def test_idle_clients_are_forgotten():
    clock = FakeClock()
    limiter = SlidingWindowLimiter({"r": RateRule(key="r", limit=2, window_seconds=60)}, clock=clock)
    for client in ("alice", "bob", "carol"):
        assert _check(limiter, client=client).allowed
    assert len(limiter._hits) == 3

    clock.now += 61
    assert _check(limiter, client="dave").allowed
    assert list(limiter._hits) == [("r", "dave")]


def test_zero_limit_and_unknown_rule_allow_everything():
    limiter = SlidingWindowLimiter({"off": RateRule(key="off", limit=0, window_seconds=60)})
    assert all(_check(limiter, "off").allowed for _ in range(5))
    assert _check(limiter, "missing").allowed


def test_rules_follow_settings(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "7")
    monkeypatch.setenv("STREAM_RATE_LIMIT", "3")
    monkeypatch.setenv("STREAM_RATE_WINDOW_SECONDS", "120")

    rules = build_rules(get_settings())
    assert rules[RUN_RULE] == RateRule(key=RUN_RULE, limit=7, window_seconds=60)
    assert rules[STREAM_RULE] == RateRule(key=STREAM_RULE, limit=3, window_seconds=120)

    first = get_rate_limiter()
    assert get_rate_limiter() is first
    monkeypatch.setenv("STREAM_RATE_LIMIT", "4")
    assert get_rate_limiter() is not first
