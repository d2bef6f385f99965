"""Tests for venue payload normalization into market legs."""

from __future__ import annotations

import pytest

from mirror_bot.market_legs import (
    legs_from_payloads,
    normalize_sources,
    pandora_leg,
    polymarket_leg,
    to_timestamp_seconds,
    to_usdc,
)


def _clob_row(tokens: list[dict], **extra) -> dict:
    row = {
        "condition_id": "0xcond",
        "question": "Will Arsenal win the Premier League?",
        "market_slug": "arsenal-pl",
        "end_date_iso": "2026-01-01T00:00:00Z",
        "tokens": tokens,
    }
    row.update(extra)
    return row


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


class TestConversions:
    def test_to_usdc(self) -> None:
        assert to_usdc("5000000000") == 5000.0
        assert to_usdc(None) is None

    def test_timestamp_numeric_and_iso(self) -> None:
        assert to_timestamp_seconds(1_767_225_600) == 1_767_225_600
        assert to_timestamp_seconds("2026-01-01T00:00:00Z") == 1_767_225_600
        assert to_timestamp_seconds("not a date") is None
        assert to_timestamp_seconds("") is None

    def test_normalize_sources(self) -> None:
        assert normalize_sources('["https://a", "https://b"]') == ("https://a", "https://b")
        assert normalize_sources("a, b\nc") == ("a", "b", "c")
        assert normalize_sources(["x", "", None]) == ("x",)
        assert normalize_sources(None) == ()


# ---------------------------------------------------------------------------
# Polymarket
# ---------------------------------------------------------------------------


class TestPolymarketLeg:
    def test_labelled_tokens(self) -> None:
        leg = polymarket_leg(
            _clob_row(
                [
                    {"outcome": "No", "price": 0.38, "token_id": "n1"},
                    {"outcome": "Yes", "price": 0.62, "token_id": "y1"},
                ]
            )
        )
        assert leg.yes_pct == pytest.approx(62.0)
        assert leg.no_pct == pytest.approx(38.0)
        assert leg.yes_token_id == "y1"
        assert leg.no_token_id == "n1"
        assert leg.diagnostics == ()
        assert leg.odds_source == "polymarket:clob-markets"
        assert leg.url == "https://polymarket.com/event/arsenal-pl"
        assert leg.close_timestamp == 1_767_225_600

    def test_token_order_fallback(self) -> None:
        leg = polymarket_leg(
            _clob_row(
                [
                    {"outcome": "Arsenal", "price": 0.3, "token_id": "a"},
                    {"outcome": "Field", "price": 0.7, "token_id": "f"},
                ]
            )
        )
        assert leg.yes_pct == pytest.approx(30.0)
        assert leg.yes_token_id == "a"
        assert leg.diagnostics == ("Mapped binary outcomes using token order (non-standard outcome labels).",)

    def test_unmappable_outcomes(self) -> None:
        leg = polymarket_leg(_clob_row([{"outcome": "A"}, {"outcome": "B"}, {"outcome": "C"}]))
        assert leg.yes_pct is None
        assert leg.diagnostics == ("Unable to map yes/no outcomes from token labels.",)

    def test_no_tokens(self) -> None:
        leg = polymarket_leg(_clob_row([]))
        assert leg.yes_pct is None
        assert leg.diagnostics == ("No token prices available from Polymarket market payload.",)

    def test_missing_prices(self) -> None:
        leg = polymarket_leg(_clob_row([{"outcome": "Yes"}, {"outcome": "No", "price": 0.5}]))
        assert leg.diagnostics == ("Missing token prices for yes/no mapping.",)

    def test_leg_id_uses_index(self) -> None:
        assert polymarket_leg(_clob_row([]), index=3).leg_id == "polymarket:0xcond:3"


# ---------------------------------------------------------------------------
# Pandora
# ---------------------------------------------------------------------------


class TestPandoraLeg:
    def test_market_with_poll(self) -> None:
        market = {
            "id": "0xmarket",
            "reserveYes": 300,
            "reserveNo": 700,
            "currentTvl": "5000000000",
            "totalVolume": "250000000",
            "marketCloseTimestamp": "1767225600",
        }
        poll = {"question": "Will Arsenal win?", "rules": "Resolves YES if...", "sources": "a.com, b.com"}
        leg = pandora_leg(market, poll)
        assert leg is not None
        assert leg.leg_id == "pandora:0xmarket"
        assert leg.yes_pct == 70.0
        assert leg.odds_source == "pandora:reserves"
        assert leg.liquidity_usd == 5000.0
        assert leg.volume_usd == 250.0
        assert leg.close_timestamp == 1_767_225_600
        assert leg.sources == ("a.com", "b.com")

    def test_nested_poll(self) -> None:
        leg = pandora_leg({"id": "1", "poll": {"question": "Q?"}, "yesPct": 20})
        assert leg.question == "Q?"
        assert leg.yes_pct == 20.0

    def test_missing_question_is_skipped(self) -> None:
        assert pandora_leg({"id": "1"}) is None


class TestLegsFromPayloads:
    def test_dispatch_by_venue(self) -> None:
        rows = [
            {"venue": "pandora", "id": "p", "question": "Q?", "yesPct": 40},
            {"venue": "polymarket", **_clob_row([])},
            {"venue": "unknown"},
            {"venue": "pandora", "id": "no-question"},
        ]
        legs = legs_from_payloads(rows)
        assert [leg.venue for leg in legs] == ["pandora", "polymarket"]
