"""Liquidity sizing for mirrored markets.

The recommendation is the largest of three liquidity floors, scaled by a
safety multiplier and clamped to the configured bounds:

* turnover floor  ``volume_24h / turnover_target``
* depth floor     ``depth_within_slippage / depth_utilization``
* impact floor    ``clamp(beta * volume_24h, q_min, q_max) / (slippage_bps / 1e4)``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from mirror_bot.config import SizingSettings
from mirror_bot.numeric import clamp, round_half_up, to_number

DISTRIBUTION_TOTAL = 1_000_000_000


@dataclass(frozen=True)
class LiquidityRecommendation:
    volume_24h_usd: float
    depth_within_slippage_usd: float
    settings: SizingSettings
    q_target_usd: float
    l_volume_usd: float
    l_depth_usd: float
    l_impact_usd: float
    l_base_usd: float
    liquidity_usd: float
    bounded_by_min: bool
    bounded_by_max: bool
    diagnostics: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        s = self.settings
        return {
            "inputs": {
                "volume24hUsd": self.volume_24h_usd,
                "depthWithinSlippageUsd": self.depth_within_slippage_usd,
                "targetSlippageBps": s.target_slippage_bps,
                "turnoverTarget": s.turnover_target,
                "depthUtilization": s.depth_utilization,
                "safetyMultiplier": s.safety_multiplier,
                "beta": s.beta,
                "qMin": s.q_min,
                "qMax": s.q_max,
                "minLiquidityUsd": s.min_liquidity_usd,
                "maxLiquidityUsd": s.max_liquidity_usd,
            },
            "derived": {
                "qTargetUsd": round_half_up(self.q_target_usd, 6),
                "lVolumeUsd": round_half_up(self.l_volume_usd, 6),
                "lDepthUsd": round_half_up(self.l_depth_usd, 6),
                "lImpactUsd": round_half_up(self.l_impact_usd, 6),
                "lBaseUsd": round_half_up(self.l_base_usd, 6),
            },
            "recommendation": {
                "liquidityUsd": round_half_up(self.liquidity_usd, 6),
                "boundedByMin": self.bounded_by_min,
                "boundedByMax": self.bounded_by_max,
            },
            "diagnostics": list(self.diagnostics),
        }


@dataclass(frozen=True)
class DistributionHint:
    probability_yes: float
    distribution_yes: int
    distribution_no: int
    diagnostics: tuple[str, ...] = field(default_factory=tuple)

    @property
    def probability_no(self) -> float:
        return 1 - self.probability_yes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probabilityYes": self.probability_yes,
            "probabilityNo": round_half_up(self.probability_no, 9),
            "distributionYes": self.distribution_yes,
            "distributionNo": self.distribution_no,
            "diagnostics": list(self.diagnostics),
        }


def _or_default(value: float, default: float) -> float:
    numeric = to_number(value)
    return numeric if numeric else default


def sanitize_sizing(settings: SizingSettings) -> SizingSettings:
    """Force every model parameter into its usable range.

    Zero or missing parameters fall back to the stock defaults.
    """
    stock = SizingSettings()
    q_min = max(0.0, _or_default(settings.q_min, stock.q_min))
    min_liquidity = max(10.0, _or_default(settings.min_liquidity_usd, stock.min_liquidity_usd))
    return SizingSettings(
        target_slippage_bps=clamp(_or_default(settings.target_slippage_bps, stock.target_slippage_bps), 1.0, 10000.0),
        turnover_target=max(0.01, _or_default(settings.turnover_target, stock.turnover_target)),
        depth_utilization=clamp(_or_default(settings.depth_utilization, stock.depth_utilization), 0.01, 1.0),
        safety_multiplier=max(1.0, _or_default(settings.safety_multiplier, stock.safety_multiplier)),
        beta=max(1e-6, _or_default(settings.beta, stock.beta)),
        q_min=q_min,
        q_max=max(q_min, _or_default(settings.q_max, stock.q_max)),
        min_liquidity_usd=min_liquidity,
        max_liquidity_usd=max(min_liquidity, _or_default(settings.max_liquidity_usd, stock.max_liquidity_usd)),
    )


def recommend_liquidity(
    volume_24h_usd: float | None,
    depth_within_slippage_usd: float | None,
    settings: SizingSettings | None = None,
) -> LiquidityRecommendation:
    params = sanitize_sizing(settings or SizingSettings())
    volume = max(0.0, to_number(volume_24h_usd) or 0.0)
    depth = max(0.0, to_number(depth_within_slippage_usd) or 0.0)

    q_target = clamp(params.beta * volume, params.q_min, params.q_max)
    l_volume = volume / params.turnover_target if volume > 0 else 0.0
    l_depth = depth / params.depth_utilization if depth > 0 else 0.0
    l_impact = q_target / (params.target_slippage_bps / 10_000)
    l_base = max(l_volume, l_depth, l_impact)
    scaled = l_base * params.safety_multiplier
    liquidity = clamp(scaled, params.min_liquidity_usd, params.max_liquidity_usd)

    bounded_by_min = liquidity == params.min_liquidity_usd
    bounded_by_max = liquidity == params.max_liquidity_usd

    diagnostics: List[str] = []
    if volume <= 0:
        diagnostics.append("24h volume unavailable or zero; turnover floor ignored.")
    if depth <= 0:
        diagnostics.append("Depth within slippage unavailable or zero; depth floor ignored.")
    if bounded_by_min:
        diagnostics.append(f"Recommendation raised to the minimum liquidity floor ({params.min_liquidity_usd}).")
    if bounded_by_max:
        diagnostics.append(f"Recommendation capped at the maximum liquidity ({params.max_liquidity_usd}).")

    return LiquidityRecommendation(
        volume_24h_usd=volume,
        depth_within_slippage_usd=depth,
        settings=params,
        q_target_usd=q_target,
        l_volume_usd=l_volume,
        l_depth_usd=l_depth,
        l_impact_usd=l_impact,
        l_base_usd=l_base,
        liquidity_usd=liquidity,
        bounded_by_min=bounded_by_min,
        bounded_by_max=bounded_by_max,
        diagnostics=tuple(diagnostics),
    )


def normalize_probability(value: Any) -> float | None:
    """Accept a probability as a fraction in [0, 1] or a percent in (1, 100]."""
    numeric = to_number(value)
    if numeric is None:
        return None
    if 0 <= numeric <= 1:
        return numeric
    if 1 < numeric <= 100:
        return numeric / 100
    return None


def distribution_hint(probability_yes: Any) -> DistributionHint:
    """Initial YES/NO pool split in parts-per-billion.

    The YES probability sets the NO-side amount; the YES side takes the
    remainder so the pair always sums to ``DISTRIBUTION_TOTAL``.
    """
    probability = normalize_probability(probability_yes)
    diagnostics: tuple[str, ...] = ()
    if probability is None:
        probability = 0.5
        diagnostics = ("YES probability unavailable; defaulting to a 50/50 distribution.",)
    distribution_no = int(round_half_up(DISTRIBUTION_TOTAL * probability, 0))
    return DistributionHint(
        probability_yes=probability,
        distribution_yes=DISTRIBUTION_TOTAL - distribution_no,
        distribution_no=distribution_no,
        diagnostics=diagnostics,
    )
