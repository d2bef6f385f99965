"""Tests for bucketed idempotency keys."""

from __future__ import annotations

from datetime import datetime, timezone

from mirror_bot.framework.idempotency import build_idempotency_key, has_key, record_key, time_bucket
from mirror_bot.framework.state_store import StrategyState

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestTimeBucket:
    def test_same_bucket_within_cooldown(self) -> None:
        assert time_bucket(120_000, 60_000) == time_bucket(179_999, 60_000) == 2

    def test_next_bucket(self) -> None:
        assert time_bucket(180_000, 60_000) == 3

    def test_minimum_bucket_width(self) -> None:
        assert time_bucket(5_500, 10) == 5

    def test_missing_cooldown_uses_default(self) -> None:
        assert time_bucket(119_999, None) == 1


class TestBuildKey:
    def test_deterministic_and_lowercased(self) -> None:
        key = build_idempotency_key(("0xABC", "yes", "below:15"), 120_000, 60_000)
        assert key == "0xabc|yes|below:15|2"
        assert key == build_idempotency_key(("0xabc", "YES", "below:15"), 150_000, 60_000)

    def test_differs_across_buckets(self) -> None:
        first = build_idempotency_key(("m", "yes"), 0, 60_000)
        second = build_idempotency_key(("m", "yes"), 60_000, 60_000)
        assert first != second


class TestLedger:
    def test_record_then_has(self) -> None:
        state = StrategyState.fresh("h", NOW)
        assert has_key(state, "k") is False
        record_key(state, "k")
        assert has_key(state, "k") is True

    def test_record_prunes_oldest(self) -> None:
        state = StrategyState.fresh("h", NOW)
        for i in range(5):
            record_key(state, f"k{i}", max_size=3)
        assert state.idempotency_keys == ["k2", "k3", "k4"]
        assert has_key(state, "k0") is False
