"""Risk-annotated arbitrage opportunities from clustered market legs."""

from __future__ import annotations

import hashlib
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from mirror_bot.clustering import ClusterResult, build_groups
from mirror_bot.config import MatchSettings
from mirror_bot.models import ArbitrageOpportunity, MarketLeg, RiskFlag
from mirror_bot.numeric import clamp, round_half_up
from mirror_bot.similarity import normalize_question

LOGGER = logging.getLogger(__name__)

SCAN_SCHEMA_VERSION = "1.1.0"

RISK_FLAG_PENALTIES: Dict[RiskFlag, float] = {
    RiskFlag.LOW_LIQUIDITY: 0.2,
    RiskFlag.UNKNOWN_LIQUIDITY: 0.1,
    RiskFlag.SINGLE_VENUE_GROUP: 0.1,
    RiskFlag.NON_STANDARD_MARKET_MAPPING: 0.15,
    RiskFlag.CLOSE_TIME_DRIFT: 0.1,
    RiskFlag.TRANSITIVE_MATCH_GAP: 0.15,
}

LegFetcher = Callable[[], Union[Awaitable[Sequence[MarketLeg]], Sequence[MarketLeg]]]


def confidence_score(flags: Sequence[RiskFlag]) -> float:
    score = 1.0
    for flag in flags:
        score -= RISK_FLAG_PENALTIES[flag]
    return round_half_up(clamp(score, 0.0, 1.0), 4)


def group_id_for(questions: Sequence[str]) -> tuple[str, str]:
    """Stable id from the sorted normalized member questions.

    Returns ``(group_id, representative_question)``.
    """
    normalized = sorted(text for text in (normalize_question(q) for q in questions) if text)
    digest = hashlib.sha256("\n".join(normalized).encode("utf-8")).hexdigest()[:16]
    return f"arb_{digest}", (normalized[0] if normalized else "")


def _min_pair_similarity(cluster: ClusterResult, members: Sequence[int]) -> tuple[float | None, int, int]:
    """Minimum pair score over cross-venue pairs, or all pairs when none are.

    Returns ``(min_score, pair_count, cross_venue_pair_count)``.
    """
    index = np.asarray(members, dtype=int)
    scores = cluster.similarity_matrix[np.ix_(index, index)]
    venues = np.asarray([cluster.legs[i].venue for i in members], dtype=object)
    upper = np.triu(np.ones(scores.shape, dtype=bool), k=1)
    cross = upper & (venues[:, None] != venues[None, :])

    pair_count = int(upper.sum())
    cross_count = int(cross.sum())
    mask = cross if cross_count else upper
    if not mask.any():
        return None, pair_count, cross_count
    return float(scores[mask].min()), pair_count, cross_count


def summarize_group(
    cluster: ClusterResult,
    members: Sequence[int],
    settings: MatchSettings,
) -> Optional[ArbitrageOpportunity]:
    legs = [cluster.legs[i] for i in members]
    venues = tuple(sorted({leg.venue for leg in legs}))
    if settings.cross_venue_only and len(venues) < 2:
        return None

    yes_values = [leg.yes_pct for leg in legs if leg.yes_pct is not None]
    no_values = [leg.no_pct for leg in legs if leg.no_pct is not None]
    if not yes_values or not no_values:
        return None

    spread_yes = round_half_up(max(yes_values) - min(yes_values), 6)
    spread_no = round_half_up(max(no_values) - min(no_values), 6)
    if max(spread_yes, spread_no) < settings.min_spread_pct:
        return None

    min_yes = min(yes_values)
    min_no = min(no_values)
    best_yes = next(leg for leg in legs if leg.yes_pct == min_yes)
    best_no = next(leg for leg in legs if leg.no_pct == min_no)

    close_times = [leg.close_timestamp for leg in legs if leg.close_timestamp is not None]
    close_min = min(close_times) if close_times else None
    close_max = max(close_times) if close_times else None

    known_liquidity = [leg.liquidity_usd for leg in legs if leg.liquidity_usd is not None]
    min_pair, pair_count, cross_count = _min_pair_similarity(cluster, members)

    flags: List[RiskFlag] = []
    if known_liquidity and min(known_liquidity) < settings.min_liquidity_usd:
        flags.append(RiskFlag.LOW_LIQUIDITY)
    if not known_liquidity:
        flags.append(RiskFlag.UNKNOWN_LIQUIDITY)
    if len(venues) < 2:
        flags.append(RiskFlag.SINGLE_VENUE_GROUP)
    if any(leg.diagnostics for leg in legs):
        flags.append(RiskFlag.NON_STANDARD_MARKET_MAPPING)
    if close_min is not None and close_max is not None:
        if (close_max - close_min) / 3600 > settings.max_close_diff_hours / 2:
            flags.append(RiskFlag.CLOSE_TIME_DRIFT)
    if min_pair is not None and min_pair < settings.similarity_threshold:
        flags.append(RiskFlag.TRANSITIVE_MATCH_GAP)

    group_id, normalized_question = group_id_for([leg.question for leg in legs])

    similarity_checks = None
    if settings.include_similarity:
        similarity_checks = tuple(
            cluster.pair_check(members[a], members[b])
            for a in range(len(members))
            for b in range(a + 1, len(members))
        )

    return ArbitrageOpportunity(
        group_id=group_id,
        normalized_question=normalized_question,
        venues=venues,
        close_time_min=close_min,
        close_time_max=close_max,
        spread_yes_pct=spread_yes,
        spread_no_pct=spread_no,
        best_yes_buy=best_yes,
        best_no_buy=best_no,
        confidence_score=confidence_score(flags),
        risk_flags=tuple(flags),
        match_summary={
            "similarityThreshold": settings.similarity_threshold,
            "minPairSimilarity": None if min_pair is None else round_half_up(min_pair, 6),
            "pairCount": pair_count,
            "crossVenuePairCount": cross_count,
        },
        legs=tuple(legs),
        similarity_checks=similarity_checks,
    )


def rank_opportunities(legs: Sequence[MarketLeg], settings: MatchSettings) -> List[ArbitrageOpportunity]:
    cluster = build_groups(legs, settings)
    opportunities = [
        opportunity
        for opportunity in (summarize_group(cluster, members, settings) for members in cluster.groups)
        if opportunity is not None
    ]
    opportunities.sort(key=lambda item: item.max_spread_pct, reverse=True)
    return opportunities[: max(0, settings.limit)]


def _match_parameters(settings: MatchSettings) -> Dict[str, Any]:
    return {
        "similarityThreshold": settings.similarity_threshold,
        "maxCloseDiffHours": settings.max_close_diff_hours,
        "crossVenueOnly": settings.cross_venue_only,
        "minSpreadPct": settings.min_spread_pct,
        "minLiquidityUsd": settings.min_liquidity_usd,
        "includeSimilarity": settings.include_similarity,
        "limit": settings.limit,
    }


@dataclass
class ScanReport:
    generated_at: datetime
    settings: MatchSettings
    sources: List[Dict[str, Any]] = field(default_factory=list)
    opportunities: List[ArbitrageOpportunity] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": SCAN_SCHEMA_VERSION,
            "generatedAt": self.generated_at.isoformat(),
            "parameters": _match_parameters(self.settings),
            "sources": list(self.sources),
            "count": len(self.opportunities),
            "opportunities": [item.to_dict() for item in self.opportunities],
            "diagnostics": list(self.diagnostics),
        }


async def scan_arbitrage(
    sources: Mapping[str, LegFetcher],
    settings: MatchSettings,
    *,
    now: Callable[[], datetime] | None = None,
) -> ScanReport:
    """Collect legs from every source, then cluster and rank them.

    A failing source is reported in ``sources``/``diagnostics`` and the scan
    continues with the legs that were fetched.
    """
    clock = now or (lambda: datetime.now(timezone.utc))
    report = ScanReport(generated_at=clock(), settings=settings)
    legs: List[MarketLeg] = []

    for venue, fetcher in sources.items():
        try:
            fetched = fetcher()
            if inspect.isawaitable(fetched):
                fetched = await fetched
            fetched = list(fetched)
        except Exception as exc:
            LOGGER.warning("leg source %s failed: %s", venue, exc)
            report.sources.append({"venue": venue, "ok": False, "count": 0, "error": str(exc)})
            report.diagnostics.append(f"{venue} fetch failed: {exc}")
            continue
        report.sources.append({"venue": venue, "ok": True, "count": len(fetched), "error": None})
        legs.extend(fetched)

    report.opportunities = rank_opportunities(legs, settings)
    LOGGER.info("scan complete legs=%d opportunities=%d", len(legs), len(report.opportunities))
    return report
