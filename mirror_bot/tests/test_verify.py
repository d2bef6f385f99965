"""Tests for mirrored-pair verification."""

from __future__ import annotations

from datetime import datetime, timezone

from mirror_bot.verify import (
    build_verify_gate,
    hash_rules,
    pandora_market_context,
    polymarket_market_context,
    rule_diff_summary,
    verify_pair,
)

CLOSE = 1_800_000_000
RULES = "Resolves YES if Arsenal finish first in the 2026/27 Premier League."


def _pandora(**poll_overrides) -> dict:
    market = {
        "id": "0xmarket",
        "pollAddress": "0xpoll",
        "reserveYes": 400,
        "reserveNo": 600,
        "marketCloseTimestamp": CLOSE,
    }
    poll = {"question": "Will Arsenal win the Premier League?", "rules": RULES, "status": 0}
    poll.update(poll_overrides)
    return pandora_market_context(market, poll)


def _source(close_offset: int = 3600, **row_overrides) -> dict:
    row = {
        "condition_id": "0xcond",
        "market_slug": "arsenal-pl",
        "question": "Arsenal to win the Premier League",
        "description": "  resolves yes if ARSENAL finish first in the 2026/27   premier league. ",
        "active": True,
        "closed": False,
        "end_date_iso": datetime.fromtimestamp(CLOSE + close_offset, tz=timezone.utc).isoformat(),
        "tokens": [
            {"outcome": "Yes", "price": 0.62, "token_id": "yes-token"},
            {"outcome": "No", "price": 0.38, "token_id": "no-token"},
        ],
    }
    row.update(row_overrides)
    return polymarket_market_context(row)


class TestRules:
    def test_hash_ignores_case_and_whitespace(self) -> None:
        assert hash_rules(RULES) == hash_rules(RULES.upper().replace(" ", "   "))
        assert hash_rules("") is None

    def test_diff_summary(self) -> None:
        summary = rule_diff_summary("a b c d", "x y z d")
        assert summary["equal"] is False
        assert summary["overlapRatio"] == 0.25
        assert summary["diagnostics"] == ["Low lexical overlap between Pandora rules and source rules."]

    def test_diff_summary_both_missing(self) -> None:
        assert rule_diff_summary(None, "")["equal"] is True


class TestContexts:
    def test_pandora_context(self) -> None:
        ctx = _pandora()
        assert ctx["active"] is True
        assert ctx["yesPct"] == 60.0
        assert ctx["reserveYes"] == 400.0
        assert ctx["closeTimestamp"] == CLOSE

    def test_pandora_resolved_status(self) -> None:
        ctx = _pandora(status=2)
        assert ctx["active"] is False
        assert ctx["resolved"] is True

    def test_source_context(self) -> None:
        ctx = _source()
        assert ctx["marketId"] == "0xcond"
        assert ctx["yesTokenId"] == "yes-token"
        assert ctx["noTokenId"] == "no-token"
        assert ctx["closeTimestamp"] == CLOSE + 3600
        assert ctx["active"] is True


class TestVerifyPair:
    def test_matching_pair_passes(self) -> None:
        payload = verify_pair(_pandora(), _source())
        gate = payload["gateResult"]
        assert gate["ok"] is True
        assert gate["failedChecks"] == []
        assert payload["matchConfidence"] == 1.0
        assert payload["ruleHashLeft"] == payload["ruleHashRight"]
        close_check = next(c for c in gate["checks"] if c["code"] == "CLOSE_TIME_DELTA")
        assert close_check["details"] == {"closeDeltaSeconds": 3600}

    def test_rule_mismatch_fails_unless_allowed(self) -> None:
        source = _source(description="Different rules entirely.")
        assert verify_pair(_pandora(), source)["gateResult"]["failedChecks"] == ["RULE_HASH_MATCH"]
        assert verify_pair(_pandora(), source, allow_rule_mismatch=True)["gateResult"]["ok"] is True

    def test_close_delta_too_wide(self) -> None:
        payload = verify_pair(_pandora(), _source(close_offset=3 * 3600))
        assert payload["gateResult"]["failedChecks"] == ["CLOSE_TIME_DELTA"]

    def test_closed_source_fails_lifecycle(self) -> None:
        payload = verify_pair(_pandora(), _source(closed=True))
        assert "LIFECYCLE_ACTIVE" in payload["gateResult"]["failedChecks"]

    def test_include_similarity(self) -> None:
        payload = verify_pair(_pandora(), _source(), include_similarity=True)
        assert payload["similarityChecks"][0]["score"] == 1.0


class TestBuildVerifyGate:
    def test_low_confidence_and_missing_rules(self) -> None:
        gate = build_verify_gate(
            match_score=0.5,
            rule_hash_left=None,
            rule_hash_right="abc",
            pandora={"active": True},
            source={"active": True},
        )
        assert gate.failed_checks == ["MATCH_CONFIDENCE", "RULE_HASH_MATCH"]
        assert gate.check("RULE_HASH_MATCH").message == "Rule text missing on one or both sides."
        # Unknown close times do not block.
        assert gate.check("CLOSE_TIME_DELTA").ok is True
