"""Pure trigger evaluation for the autopilot and mirror-sync strategies.

Nothing here performs I/O: each evaluator maps a snapshot plus settings to
a decision, so both loops can be unit-tested without network fakes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from mirror_bot.config import AutopilotSettings, MirrorSyncSettings
from mirror_bot.framework.idempotency import build_idempotency_key
from mirror_bot.numeric import round_half_up, to_number
from mirror_bot.odds import extract_odds

YES_BELOW_TRIGGER = "YES_BELOW_TRIGGER"
YES_ABOVE_TRIGGER = "YES_ABOVE_TRIGGER"


@dataclass(frozen=True)
class TriggerResult:
    triggered: bool
    reason: str
    yes_pct: float | None = None
    trigger_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "reason": self.reason,
            "yesPct": self.yes_pct,
            "triggerCode": self.trigger_code,
        }


def evaluate_autopilot_trigger(
    quote: Mapping[str, Any] | None,
    trigger_yes_below: float | None,
    trigger_yes_above: float | None,
) -> TriggerResult:
    odds = extract_odds(quote)
    yes_pct = odds.yes_pct
    if yes_pct is None:
        return TriggerResult(False, "yesPct unavailable in quote payload.")
    if not math.isfinite(yes_pct) or not 0 <= yes_pct <= 100:
        return TriggerResult(False, f"yesPct {yes_pct} is outside [0, 100].")

    if trigger_yes_below is not None and yes_pct < trigger_yes_below:
        return TriggerResult(
            True,
            f"YES odds {yes_pct}% are below trigger {trigger_yes_below}%.",
            yes_pct,
            YES_BELOW_TRIGGER,
        )
    if trigger_yes_above is not None and yes_pct > trigger_yes_above:
        return TriggerResult(
            True,
            f"YES odds {yes_pct}% are above trigger {trigger_yes_above}%.",
            yes_pct,
            YES_ABOVE_TRIGGER,
        )
    return TriggerResult(False, "Trigger thresholds not met.", yes_pct)


def autopilot_idempotency_key(settings: AutopilotSettings, trigger: TriggerResult, now_ms: float) -> str:
    direction = (
        f"below:{settings.trigger_yes_below}"
        if trigger.trigger_code == YES_BELOW_TRIGGER
        else f"above:{settings.trigger_yes_above}"
    )
    return build_idempotency_key(
        (settings.market_address, settings.side, direction),
        now_ms,
        settings.cooldown_ms,
    )


@dataclass(frozen=True)
class MirrorMetrics:
    """Drift and hedge decision for one mirror-sync snapshot.

    ``target_hedge_usdc`` is the negated AMM imbalance (reserve YES minus
    reserve NO); ``hedge_gap_usdc`` is how far the current hedge is from it.
    """

    source_yes_pct: float | None
    pandora_yes_pct: float | None
    drift_bps: float | None
    drift_triggered: bool
    delta_lp_usdc: float | None
    target_hedge_usdc: float | None
    hedge_gap_usdc: float | None
    raw_hedge_triggered: bool
    hedge_triggered: bool
    hedge_enabled: bool
    hedge_ratio: float
    planned_hedge_usdc: float
    planned_rebalance_usdc: float

    @property
    def planned_spend_usdc(self) -> float:
        return round_half_up(self.planned_hedge_usdc + self.planned_rebalance_usdc, 6)

    @property
    def hedge_suppressed(self) -> bool:
        return self.raw_hedge_triggered and not self.hedge_enabled

    @property
    def triggered(self) -> bool:
        return self.drift_triggered or self.hedge_triggered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceYesPct": self.source_yes_pct,
            "pandoraYesPct": self.pandora_yes_pct,
            "driftBps": self.drift_bps,
            "driftTriggered": self.drift_triggered,
            "deltaLpUsdc": self.delta_lp_usdc,
            "targetHedgeUsdc": self.target_hedge_usdc,
            "hedgeGapUsdc": self.hedge_gap_usdc,
            "rawHedgeTriggered": self.raw_hedge_triggered,
            "hedgeTriggered": self.hedge_triggered,
            "hedgeEnabled": self.hedge_enabled,
            "hedgeRatio": self.hedge_ratio,
            "hedgeSuppressed": self.hedge_suppressed,
            "plannedHedgeUsdc": self.planned_hedge_usdc,
            "plannedRebalanceUsdc": self.planned_rebalance_usdc,
            "plannedSpendUsdc": self.planned_spend_usdc,
        }


def evaluate_mirror_snapshot(
    verify_payload: Mapping[str, Any],
    settings: MirrorSyncSettings,
    current_hedge_usdc: float = 0.0,
) -> MirrorMetrics:
    pandora = verify_payload.get("pandora") or {}
    source = verify_payload.get("sourceMarket") or {}

    source_yes = to_number(source.get("yesPct"))
    pandora_yes = to_number(pandora.get("yesPct"))
    drift_bps = None
    if source_yes is not None and pandora_yes is not None:
        drift_bps = round_half_up(abs(source_yes - pandora_yes) * 100, 6)
    drift_triggered = drift_bps is not None and drift_bps >= settings.drift_trigger_bps

    reserve_yes = to_number(pandora.get("reserveYes"))
    reserve_no = to_number(pandora.get("reserveNo"))
    delta_lp = None
    target_hedge = None
    gap = None
    if reserve_yes is not None and reserve_no is not None:
        delta_lp = round_half_up(reserve_yes - reserve_no, 6)
        target_hedge = round_half_up(-delta_lp, 6)
        gap = round_half_up(target_hedge - current_hedge_usdc, 6)

    raw_hedge_triggered = gap is not None and abs(gap) >= settings.hedge_trigger_usdc
    hedge_triggered = settings.hedge_enabled and raw_hedge_triggered
    planned_hedge = min(abs(gap) * settings.hedge_ratio, settings.max_hedge_usdc) if hedge_triggered else 0.0

    planned_rebalance = 0.0
    if drift_triggered:
        planned_rebalance = min(settings.max_rebalance_usdc, max(1.0, drift_bps / 100))

    return MirrorMetrics(
        source_yes_pct=source_yes,
        pandora_yes_pct=pandora_yes,
        drift_bps=drift_bps,
        drift_triggered=drift_triggered,
        delta_lp_usdc=delta_lp,
        target_hedge_usdc=target_hedge,
        hedge_gap_usdc=gap,
        raw_hedge_triggered=raw_hedge_triggered,
        hedge_triggered=hedge_triggered,
        hedge_enabled=settings.hedge_enabled,
        hedge_ratio=settings.hedge_ratio,
        planned_hedge_usdc=planned_hedge,
        planned_rebalance_usdc=planned_rebalance,
    )


def mirror_idempotency_key(settings: MirrorSyncSettings, metrics: MirrorMetrics, now_ms: float) -> str:
    return build_idempotency_key(
        (
            settings.pandora_market_address,
            settings.polymarket_market_id or settings.polymarket_slug,
            "drift" if metrics.drift_triggered else "no-drift",
            "hedge" if metrics.hedge_triggered else "no-hedge",
        ),
        now_ms,
        settings.cooldown_ms,
    )
