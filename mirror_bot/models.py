from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Venue(str, Enum):
    PANDORA = "pandora"
    POLYMARKET = "polymarket"


class Side(str, Enum):
    YES = "yes"
    NO = "no"


class RiskFlag(str, Enum):
    LOW_LIQUIDITY = "LOW_LIQUIDITY"
    UNKNOWN_LIQUIDITY = "UNKNOWN_LIQUIDITY"
    SINGLE_VENUE_GROUP = "SINGLE_VENUE_GROUP"
    NON_STANDARD_MARKET_MAPPING = "NON_STANDARD_MARKET_MAPPING"
    CLOSE_TIME_DRIFT = "CLOSE_TIME_DRIFT"
    TRANSITIVE_MATCH_GAP = "TRANSITIVE_MATCH_GAP"


class ActionStatus(str, Enum):
    EXECUTED = "executed"
    SIMULATED = "simulated"
    SKIPPED = "skipped"
    BLOCKED = "blocked"
    FAILED = "failed"


@dataclass(frozen=True)
class MarketLeg:
    """One venue's view of one market, as produced by a scan."""

    venue: str
    market_id: str
    question: str
    leg_id: str = ""
    close_timestamp: float | None = None
    yes_pct: float | None = None
    no_pct: float | None = None
    liquidity_usd: float | None = None
    volume_usd: float | None = None
    odds_source: str = ""
    url: str | None = None
    rules: str | None = None
    sources: tuple[str, ...] = ()
    diagnostics: tuple[str, ...] = ()
    yes_token_id: str | None = None
    no_token_id: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "legId": self.leg_id,
            "venue": self.venue,
            "marketId": self.market_id,
            "question": self.question,
            "closeTimestamp": self.close_timestamp,
            "yesPct": self.yes_pct,
            "noPct": self.no_pct,
            "liquidityUsd": self.liquidity_usd,
            "volumeUsd": self.volume_usd,
            "oddsSource": self.odds_source,
            "url": self.url,
            "rules": self.rules,
            "sources": list(self.sources),
            "diagnostics": list(self.diagnostics),
            "yesTokenId": self.yes_token_id,
            "noTokenId": self.no_token_id,
        }


@dataclass(frozen=True)
class SimilarityResult:
    normalized_left: str
    normalized_right: str
    token_score: float
    jaro_winkler: float
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalizedLeft": self.normalized_left,
            "normalizedRight": self.normalized_right,
            "tokenScore": self.token_score,
            "jaroWinkler": self.jaro_winkler,
            "score": self.score,
        }


@dataclass(frozen=True)
class PairCheck:
    """Audit record for one leg pair inside a group."""

    left_leg_id: str
    right_leg_id: str
    left_venue: str
    right_venue: str
    left_question: str
    right_question: str
    similarity: SimilarityResult
    close_diff_hours: float | None
    passes_similarity: bool
    passes_close_window: bool
    passes_venue_rule: bool

    @property
    def accepted(self) -> bool:
        return self.passes_similarity and self.passes_close_window and self.passes_venue_rule

    @property
    def cross_venue(self) -> bool:
        return self.left_venue != self.right_venue

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leftLegId": self.left_leg_id,
            "rightLegId": self.right_leg_id,
            "leftVenue": self.left_venue,
            "rightVenue": self.right_venue,
            "leftQuestion": self.left_question,
            "rightQuestion": self.right_question,
            "normalizedLeft": self.similarity.normalized_left,
            "normalizedRight": self.similarity.normalized_right,
            "similarity": self.similarity.score,
            "tokenScore": self.similarity.token_score,
            "jaroWinkler": self.similarity.jaro_winkler,
            "closeDiffHours": self.close_diff_hours,
            "passesSimilarity": self.passes_similarity,
            "passesCloseWindow": self.passes_close_window,
            "passesVenueRule": self.passes_venue_rule,
            "accepted": self.accepted,
        }


@dataclass(frozen=True)
class ArbitrageOpportunity:
    group_id: str
    normalized_question: str
    venues: tuple[str, ...]
    close_time_min: float | None
    close_time_max: float | None
    spread_yes_pct: float
    spread_no_pct: float
    best_yes_buy: MarketLeg
    best_no_buy: MarketLeg
    confidence_score: float
    risk_flags: tuple[RiskFlag, ...]
    match_summary: Dict[str, Any]
    legs: tuple[MarketLeg, ...]
    similarity_checks: Optional[tuple[PairCheck, ...]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def max_spread_pct(self) -> float:
        return max(self.spread_yes_pct, self.spread_no_pct)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "groupId": self.group_id,
            "normalizedQuestion": self.normalized_question,
            "closeTimeWindow": {"min": self.close_time_min, "max": self.close_time_max},
            "venues": list(self.venues),
            "spreadYesPct": self.spread_yes_pct,
            "spreadNoPct": self.spread_no_pct,
            "bestYesBuy": _best_buy(self.best_yes_buy, self.best_yes_buy.yes_pct),
            "bestNoBuy": _best_buy(self.best_no_buy, self.best_no_buy.no_pct),
            "confidenceScore": self.confidence_score,
            "riskFlags": [flag.value for flag in self.risk_flags],
            "matchSummary": dict(self.match_summary),
            "legs": [leg.to_dict() for leg in self.legs],
        }
        if self.similarity_checks is not None:
            payload["similarityChecks"] = [check.to_dict() for check in self.similarity_checks]
        return payload


def _best_buy(leg: MarketLeg, price_pct: float | None) -> Dict[str, Any]:
    return {
        "venue": leg.venue,
        "marketId": leg.market_id,
        "legId": leg.leg_id,
        "pricePct": price_pct,
    }
