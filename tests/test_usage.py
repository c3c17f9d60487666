"""Tests for daily usage tracking and free-tier accounting."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from coach_gateway import usage as usage_module
from coach_gateway.registry import Provider
from coach_gateway.usage import UsageTracker, estimate_neurons


def test_estimate_neurons() -> None:
    assert estimate_neurons(100, 100) == 30
    assert estimate_neurons(5, 3) == 2  # ceil(1.1)
    assert estimate_neurons(1, 0) == 1
    assert estimate_neurons(0, 0) == 0


def test_record_usage_accumulates_totals_and_per_provider() -> None:
    tracker = UsageTracker()
    tracker.record_usage(Provider.CLOUDFLARE, 100, 50, neurons=20)
    tracker.record_usage("groq", 10, 5)
    tracker.record_usage(Provider.CLOUDFLARE, 1, 1, neurons=1)

    usage = tracker.get_daily_usage()
    assert usage.requests == 3
    assert usage.input_tokens == 111
    assert usage.output_tokens == 56
    assert usage.neurons == 21
    assert usage.by_provider["cloudflare"].requests == 2
    assert usage.by_provider["cloudflare"].input == 101
    assert usage.by_provider["groq"].output == 5


@pytest.mark.parametrize(
    "neurons, exhausted",
    [(0, False), (7499, False), (7500, True), (9000, True), (15000, True)],
)
def test_free_tier_threshold(neurons: int, exhausted: bool) -> None:
    tracker = UsageTracker()
    tracker.record_usage(Provider.CLOUDFLARE, 0, 0, neurons=neurons)
    assert tracker.is_cloudflare_free_tier_exhausted() is exhausted


def test_remaining_free_neurons_never_negative() -> None:
    tracker = UsageTracker()
    tracker.record_usage(Provider.CLOUDFLARE, 0, 0, neurons=3000)
    assert tracker.get_remaining_free_neurons() == 7000

    tracker.record_usage(Provider.CLOUDFLARE, 0, 0, neurons=9000)
    assert tracker.get_remaining_free_neurons() == 0


def test_daily_rollover_resets_lazily(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(usage_module, "_today", lambda: "2026-10-18")
    tracker = UsageTracker()
    tracker.record_usage(Provider.CLOUDFLARE, 10, 10, neurons=8000)
    assert tracker.is_cloudflare_free_tier_exhausted()

    monkeypatch.setattr(usage_module, "_today", lambda: "2026-10-19")
    usage = tracker.get_daily_usage()
    assert usage.date == "2026-10-19"
    assert usage.neurons == 0
    assert usage.requests == 0
    assert not tracker.is_cloudflare_free_tier_exhausted()


def test_record_after_rollover_starts_fresh_day(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(usage_module, "_today", lambda: "2026-10-18")
    tracker = UsageTracker()
    tracker.record_usage("groq", 500, 500)

    monkeypatch.setattr(usage_module, "_today", lambda: "2026-10-19")
    tracker.record_usage("groq", 1, 2)

    usage = tracker.get_daily_usage()
    assert usage.input_tokens == 1
    assert usage.output_tokens == 2
    assert usage.by_provider["groq"].requests == 1


def test_usage_summary() -> None:
    tracker = UsageTracker()
    tracker.record_usage(Provider.CLOUDFLARE, 1000, 500, neurons=200)
    tracker.record_usage(Provider.GROQ, 1_000_000, 1_000_000)

    summary = tracker.get_usage_summary()
    assert summary["total_requests"] == 2
    assert summary["total_tokens"] == {"input": 1_001_000, "output": 1_000_500}
    assert summary["cloudflare_neurons"] == {
        "used": 200,
        "remaining": 9800,
        "exhausted": False,
    }
    assert summary["by_provider"]["groq"]["estimated_cost_usd"] == pytest.approx(1.38)
    assert summary["by_provider"]["cloudflare"]["requests"] == 1


def test_reset() -> None:
    tracker = UsageTracker()
    tracker.record_usage("groq", 1, 1)
    tracker.reset()
    assert tracker.get_daily_usage().requests == 0


def test_concurrent_records_are_not_lost() -> None:
    tracker = UsageTracker()

    def record(_: int) -> None:
        for _ in range(200):
            tracker.record_usage(Provider.CLOUDFLARE, 3, 2, neurons=1)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(record, range(8)))

    usage = tracker.get_daily_usage()
    assert usage.requests == 1600
    assert usage.input_tokens == 4800
    assert usage.output_tokens == 3200
    assert usage.neurons == 1600
    assert usage.by_provider["cloudflare"].requests == 1600


def test_daily_usage_is_a_snapshot() -> None:
    tracker = UsageTracker()
    tracker.record_usage("groq", 10, 5)

    before = tracker.get_daily_usage()
    tracker.record_usage("groq", 10, 5)

    assert before.requests == 1
    assert before.by_provider["groq"].input == 10
    assert tracker.get_daily_usage().requests == 2
