"""Cross-venue verification of a mirrored market pair.

Produces the payload mirror sync consumes: question match confidence,
resolution-rule hashes and the verification gate (match confidence, rule
hash equality, lifecycle, close-time delta).
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from mirror_bot.framework.risk_gate import GateCheck, GateResult
from mirror_bot.market_legs import polymarket_leg, to_timestamp_seconds
from mirror_bot.numeric import round_half_up, to_number
from mirror_bot.odds import extract_odds, from_probability_fields, from_reserve_fields
from mirror_bot.similarity import question_similarity

LOGGER = logging.getLogger(__name__)

VERIFY_SCHEMA_VERSION = "1.0.0"
DEFAULT_CONFIDENCE_THRESHOLD = 0.92
STRICT_CLOSE_DIFF_SECONDS = 2 * 60 * 60
LOW_OVERLAP_RATIO = 0.5

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_rules_text(rules: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(rules or "").lower()).strip()


def hash_rules(rules: Any) -> str | None:
    normalized = normalize_rules_text(rules)
    if not normalized:
        return None
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def rule_diff_summary(left_rules: Any, right_rules: Any) -> Dict[str, Any]:
    left = normalize_rules_text(left_rules)
    right = normalize_rules_text(right_rules)
    if not left and not right:
        return {
            "equal": True,
            "leftWordCount": 0,
            "rightWordCount": 0,
            "overlapRatio": 1.0,
            "diagnostics": ["Both sides missing explicit rule text."],
        }

    left_words = {word for word in left.split(" ") if word}
    right_words = {word for word in right.split(" ") if word}
    overlap = len(left_words & right_words)
    ratio = overlap / max(len(left_words), len(right_words), 1)
    diagnostics: List[str] = []
    if ratio < LOW_OVERLAP_RATIO:
        diagnostics.append("Low lexical overlap between Pandora rules and source rules.")
    return {
        "equal": left == right,
        "leftWordCount": len(left_words),
        "rightWordCount": len(right_words),
        "overlapRatio": round_half_up(ratio, 6),
        "diagnostics": diagnostics,
    }


def pandora_market_context(market: Mapping[str, Any], poll: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Indexer market + poll rows to the verification context for the mirrored side."""
    poll = poll or {}
    diagnostics: List[str] = []
    if poll and "rules" not in poll:
        diagnostics.append("Poll rules metadata unavailable from indexer; falling back to question/status fields.")

    odds = extract_odds(market, (from_probability_fields, from_reserve_fields))
    status = to_number(poll.get("status"))
    return {
        "marketAddress": market.get("id"),
        "pollAddress": market.get("pollAddress"),
        "question": str(poll["question"]) if poll.get("question") else None,
        "rules": str(poll["rules"]) if poll.get("rules") else None,
        "status": status,
        "active": status == 0,
        "resolved": status is not None and status != 0,
        "closeTimestamp": to_number(market.get("marketCloseTimestamp")) or to_number(poll.get("deadlineEpoch")),
        "yesPct": odds.yes_pct,
        "noPct": odds.no_pct,
        "reserveYes": to_number(market.get("reserveYes")),
        "reserveNo": to_number(market.get("reserveNo")),
        "diagnostics": diagnostics,
    }


def polymarket_market_context(row: Mapping[str, Any]) -> Dict[str, Any]:
    """CLOB market row to the verification context for the source side."""
    leg = polymarket_leg(row)
    closed = bool(row.get("closed"))
    return {
        "marketId": leg.market_id,
        "slug": row.get("market_slug"),
        "question": leg.question or None,
        "description": row.get("description"),
        "active": bool(row.get("active", True)) and not closed,
        "resolved": closed,
        "closeTimestamp": to_timestamp_seconds(row.get("end_date_iso")),
        "yesPct": leg.yes_pct,
        "noPct": leg.no_pct,
        "yesTokenId": leg.yes_token_id,
        "noTokenId": leg.no_token_id,
        "diagnostics": list(leg.diagnostics),
    }


def build_verify_gate(
    *,
    match_score: float,
    rule_hash_left: str | None,
    rule_hash_right: str | None,
    pandora: Mapping[str, Any],
    source: Mapping[str, Any],
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    allow_rule_mismatch: bool = False,
    strict_close_diff_seconds: float = STRICT_CLOSE_DIFF_SECONDS,
) -> GateResult:
    checks: List[GateCheck] = [
        GateCheck(
            code="MATCH_CONFIDENCE",
            ok=match_score >= confidence_threshold,
            message=f"Similarity {match_score} must be >= {confidence_threshold}.",
        )
    ]

    both_present = bool(rule_hash_left and rule_hash_right)
    rules_equal = both_present and rule_hash_left == rule_hash_right
    if allow_rule_mismatch:
        rule_message = "Rule hash mismatch bypassed by allow_rule_mismatch."
    elif both_present:
        rule_message = "Rule hashes must match."
    else:
        rule_message = "Rule text missing on one or both sides."
    checks.append(
        GateCheck(
            code="RULE_HASH_MATCH",
            ok=True if allow_rule_mismatch else rules_equal,
            message=rule_message,
            details={
                "left": rule_hash_left,
                "right": rule_hash_right,
                "bothRulesPresent": both_present,
                "rulesEqual": rules_equal if both_present else None,
            },
        )
    )

    checks.append(
        GateCheck(
            code="LIFECYCLE_ACTIVE",
            ok=bool(pandora.get("active")) and bool(source.get("active")) and not bool(source.get("resolved")),
            message="Both Pandora and Polymarket markets must be active/unresolved.",
        )
    )

    pandora_close = to_number(pandora.get("closeTimestamp"))
    source_close = to_number(source.get("closeTimestamp"))
    delta = abs(pandora_close - source_close) if pandora_close is not None and source_close is not None else None
    checks.append(
        GateCheck(
            code="CLOSE_TIME_DELTA",
            ok=True if delta is None else delta <= strict_close_diff_seconds,
            message=f"Close-time delta must be <= {strict_close_diff_seconds} seconds.",
            details={"closeDeltaSeconds": delta},
        )
    )
    return GateResult(checks=tuple(checks))


def verify_pair(
    pandora: Mapping[str, Any],
    source: Mapping[str, Any],
    *,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    allow_rule_mismatch: bool = False,
    include_similarity: bool = False,
) -> Dict[str, Any]:
    similarity = question_similarity(pandora.get("question"), source.get("question"))
    source_rules = source.get("description") or source.get("rules")
    left_hash = hash_rules(pandora.get("rules"))
    right_hash = hash_rules(source_rules)
    gate = build_verify_gate(
        match_score=similarity.score,
        rule_hash_left=left_hash,
        rule_hash_right=right_hash,
        pandora=pandora,
        source=source,
        confidence_threshold=confidence_threshold,
        allow_rule_mismatch=allow_rule_mismatch,
    )
    diagnostics = [*(pandora.get("diagnostics") or []), *(source.get("diagnostics") or [])]
    if not gate.ok:
        LOGGER.info("mirror verification failed: %s", ",".join(gate.failed_checks))

    payload: Dict[str, Any] = {
        "schemaVersion": VERIFY_SCHEMA_VERSION,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "matchConfidence": similarity.score,
        "similarity": similarity.to_dict(),
        "ruleHashLeft": left_hash,
        "ruleHashRight": right_hash,
        "ruleDiffSummary": rule_diff_summary(pandora.get("rules"), source_rules),
        "gateResult": gate.to_dict(),
        "pandora": dict(pandora),
        "sourceMarket": dict(source),
        "diagnostics": diagnostics,
    }
    if include_similarity:
        payload["similarityChecks"] = [similarity.to_dict()]
    return payload
