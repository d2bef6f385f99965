"""Mirror sync: keep a Pandora pool aligned with its Polymarket source.

Each tick pulls a verification payload (``verify_fn``) and the source
order-book depth (``depth_fn``), derives the drift and hedge plan, and when
either fires runs the strict gate (match/rules, close time, depth,
exposure, daily cap) before rebalancing the pool and/or hedging on the
source venue. ``currentHedgeUsdc`` in the state tracks the accumulated
hedge so the next hedge gap is measured against it.

A hedge that fails after the rebalance has landed is recorded as an error on
the hedge leg, and the action still counts as executed: its key, trade count
and the rebalance spend are recorded so the next tick does not repeat it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from mirror_bot.config import DEFAULT_STATE_DIR, MirrorSyncSettings, StrategyConfigError
from mirror_bot.framework.control_loop import (
    ActionRecord,
    Clock,
    ControlLoop,
    LoopStrategy,
    RunSummary,
    Sleeper,
    StopToken,
    TickPlan,
    WebhookSender,
    maybe_await,
)
from mirror_bot.framework.risk_gate import MIRROR_SYNC_CHECKS, RiskContext, RiskGate
from mirror_bot.framework.state_store import (
    StrategyState,
    compute_strategy_hash,
    default_kill_switch_file,
    default_state_file,
)
from mirror_bot.kill_switch import KillSwitch
from mirror_bot.numeric import round_half_up, to_number
from mirror_bot.triggers import MirrorMetrics, evaluate_mirror_snapshot, mirror_idempotency_key

LOGGER = logging.getLogger(__name__)

MIRROR_SYNC_KIND = "mirror-sync"
MIRROR_SYNC_EVENT = "mirror.sync.trigger"
STRICT_GATE_BLOCKED = "Strict gate blocked execution."
VERIFY_CONFIDENCE_THRESHOLD = 0.92

VerifyFn = Callable[[Dict[str, Any]], Any]
DepthFn = Callable[[Mapping[str, Any], Dict[str, Any]], Any]
VenueActionFn = Callable[[Dict[str, Any]], Any]


def rebalance_side(metrics: MirrorMetrics) -> str:
    if metrics.source_yes_pct is None or metrics.pandora_yes_pct is None:
        return "yes"
    return "yes" if metrics.source_yes_pct > metrics.pandora_yes_pct else "no"


class MirrorSyncStrategy(LoopStrategy):
    kind = MIRROR_SYNC_KIND
    blocked_reason = STRICT_GATE_BLOCKED

    def __init__(
        self,
        settings: MirrorSyncSettings,
        verify_fn: VerifyFn,
        depth_fn: DepthFn,
        hedge_fn: VenueActionFn | None = None,
        rebalance_fn: VenueActionFn | None = None,
    ) -> None:
        self._settings = settings
        self._verify_fn = verify_fn
        self._depth_fn = depth_fn
        self._hedge_fn = hedge_fn
        self._rebalance_fn = rebalance_fn
        self.risk_gate = RiskGate(MIRROR_SYNC_CHECKS)

    @property
    def execute_live(self) -> bool:
        return self._settings.execute_live

    def identity(self) -> Dict[str, Any]:
        return self._settings.strategy_identity()

    def parameters(self) -> Dict[str, Any]:
        s = self._settings
        return {
            "pandoraMarketAddress": s.pandora_market_address,
            "polymarketMarketId": s.polymarket_market_id or None,
            "polymarketSlug": s.polymarket_slug or None,
            "intervalMs": s.interval_ms,
            "driftTriggerBps": s.drift_trigger_bps,
            "hedgeTriggerUsdc": s.hedge_trigger_usdc,
            "hedgeEnabled": s.hedge_enabled,
            "hedgeRatio": s.hedge_ratio,
            "maxRebalanceUsdc": s.max_rebalance_usdc,
            "maxHedgeUsdc": s.max_hedge_usdc,
            "maxOpenExposureUsdc": s.max_open_exposure_usdc,
            "maxTradesPerDay": s.max_trades_per_day,
            "cooldownMs": s.cooldown_ms,
            "depthSlippageBps": s.depth_slippage_bps,
        }

    async def _fetch_depth(self, source: Mapping[str, Any], diagnostics: list[str]) -> float:
        try:
            depth = await maybe_await(self._depth_fn(source, {"slippageBps": self._settings.depth_slippage_bps}))
        except Exception as exc:
            LOGGER.warning("source depth fetch failed: %s", exc)
            diagnostics.append(f"Depth fetch failed: {exc}")
            return 0.0
        if isinstance(depth, Mapping):
            depth = depth.get("depthWithinSlippageUsd")
        return to_number(depth) or 0.0

    async def observe(self, state: StrategyState, now: datetime) -> TickPlan:
        s = self._settings
        payload = await maybe_await(
            self._verify_fn(
                {
                    "pandoraMarketAddress": s.pandora_market_address,
                    "polymarketMarketId": s.polymarket_market_id or None,
                    "polymarketSlug": s.polymarket_slug or None,
                    "confidenceThreshold": VERIFY_CONFIDENCE_THRESHOLD,
                    "allowRuleMismatch": False,
                    "includeSimilarity": False,
                }
            )
        )
        payload = dict(payload or {})
        metrics = evaluate_mirror_snapshot(payload, s, state.current_hedge_usdc)

        diagnostics: list[str] = []
        source = payload.get("sourceMarket") or {}
        depth_usd = await self._fetch_depth(source, diagnostics)

        snapshot = {
            "verify": {
                "matchConfidence": payload.get("matchConfidence"),
                "gateResult": payload.get("gateResult"),
            },
            "metrics": {**metrics.to_dict(), "depthWithinSlippageUsd": depth_usd},
        }
        plan = TickPlan(
            triggered=metrics.triggered,
            reason=self._reason(metrics),
            snapshot=snapshot,
            planned_spend_usdc=metrics.planned_spend_usdc,
            diagnostics=diagnostics,
            data={"verify": payload, "metrics": metrics},
        )
        if metrics.triggered:
            plan.idempotency_key = mirror_idempotency_key(s, metrics, now.timestamp() * 1000)
            plan.risk_context = RiskContext(
                state=state,
                planned_spend_usdc=metrics.planned_spend_usdc,
                max_trades_per_day=s.max_trades_per_day,
                max_open_exposure_usdc=s.max_open_exposure_usdc,
                planned_hedge_usdc=metrics.planned_hedge_usdc,
                depth_within_slippage_usd=depth_usd,
                depth_slippage_bps=s.depth_slippage_bps,
                verify_payload=payload,
            )
        return plan

    @staticmethod
    def _reason(metrics: MirrorMetrics) -> str:
        if not metrics.triggered:
            return "Drift and hedge thresholds not met."
        parts = []
        if metrics.drift_triggered:
            parts.append(f"drift {metrics.drift_bps} bps")
        if metrics.hedge_triggered:
            parts.append(f"hedge gap {metrics.hedge_gap_usdc} USDC")
        return "Mirror sync triggered: " + ", ".join(parts) + "."

    def _plan_legs(self, plan: TickPlan) -> tuple[Dict[str, Any] | None, Dict[str, Any] | None]:
        metrics: MirrorMetrics = plan.data["metrics"]
        source = plan.data["verify"].get("sourceMarket") or {}
        rebalance = None
        if metrics.drift_triggered and metrics.planned_rebalance_usdc > 0:
            rebalance = {"side": rebalance_side(metrics), "amountUsdc": metrics.planned_rebalance_usdc}
        hedge = None
        if metrics.hedge_triggered and metrics.planned_hedge_usdc > 0:
            gap = metrics.hedge_gap_usdc or 0.0
            hedge = {
                "tokenId": source.get("yesTokenId") if gap >= 0 else source.get("noTokenId"),
                # Always a buy: the gap direction only selects the token.
                "side": "buy",
                "amountUsdc": metrics.planned_hedge_usdc,
            }
        return rebalance, hedge

    async def execute(self, plan: TickPlan) -> Dict[str, Any]:
        rebalance, hedge = self._plan_legs(plan)
        if rebalance is not None:
            if self._rebalance_fn is None:
                raise StrategyConfigError("live mirror sync requires a rebalance_fn")
            result = await maybe_await(
                self._rebalance_fn({"marketAddress": self._settings.pandora_market_address, **rebalance})
            )
            rebalance = {**rebalance, "result": result}
        if hedge is not None:
            if self._hedge_fn is None:
                raise StrategyConfigError("live mirror sync requires a hedge_fn")
            order = {"tokenId": hedge["tokenId"], "side": hedge["side"], "amountUsd": hedge["amountUsdc"]}
            try:
                result = await maybe_await(self._hedge_fn(order))
            except Exception as exc:
                if rebalance is None:
                    raise
                # The rebalance already landed; the action stays consumed.
                LOGGER.warning("hedge failed after rebalance: %s", exc, exc_info=True)
                hedge = {**hedge, "error": str(exc)}
            else:
                hedge = {**hedge, "result": result}
        return {"rebalance": rebalance, "hedge": hedge}

    def simulate(self, plan: TickPlan) -> Dict[str, Any]:
        rebalance, hedge = self._plan_legs(plan)
        if rebalance is not None:
            rebalance["result"] = {"status": "simulated"}
        if hedge is not None:
            hedge["result"] = {"status": "simulated"}
        return {"rebalance": rebalance, "hedge": hedge}

    def spent_usdc(self, plan: TickPlan, details: Mapping[str, Any]) -> float:
        legs = (details.get("rebalance"), details.get("hedge"))
        return round_half_up(sum(leg["amountUsdc"] for leg in legs if leg is not None and "error" not in leg), 6)

    def apply(self, state: StrategyState, plan: TickPlan, action: ActionRecord) -> None:
        hedge = action.details.get("hedge")
        if hedge is None or "error" in hedge:
            return
        metrics: MirrorMetrics = plan.data["metrics"]
        direction = 1 if (metrics.hedge_gap_usdc or 0.0) >= 0 else -1
        state.current_hedge_usdc = round_half_up(
            state.current_hedge_usdc + direction * metrics.planned_hedge_usdc, 6
        )

    def webhook_event(self, plan: TickPlan, action: ActionRecord, iteration: int, strategy_hash: str) -> Dict[str, Any]:
        metrics: MirrorMetrics = plan.data["metrics"]
        return {
            "event": MIRROR_SYNC_EVENT,
            "strategyHash": strategy_hash,
            "iteration": iteration,
            "message": (
                f"[mirror-bot mirror] action={action.status.value} "
                f"drift={metrics.drift_bps} hedgeGap={metrics.hedge_gap_usdc}"
            ),
            "action": action.to_dict(),
            "snapshot": plan.snapshot,
        }


async def run_mirror_sync(
    settings: MirrorSyncSettings,
    verify_fn: VerifyFn,
    depth_fn: DepthFn,
    hedge_fn: VenueActionFn | None = None,
    rebalance_fn: VenueActionFn | None = None,
    *,
    send_webhook: WebhookSender | None = None,
    now: Clock | None = None,
    sleep: Sleeper | None = None,
    stop: StopToken | None = None,
    state_dir: str | Path = DEFAULT_STATE_DIR,
) -> RunSummary:
    settings.validate()
    if settings.execute_live and (hedge_fn is None or rebalance_fn is None):
        raise StrategyConfigError("execute_live requires both hedge_fn and rebalance_fn")

    strategy = MirrorSyncStrategy(settings, verify_fn, depth_fn, hedge_fn, rebalance_fn)
    strategy_hash = compute_strategy_hash(strategy.identity())
    state_file = settings.state_file or default_state_file(MIRROR_SYNC_KIND, strategy_hash, state_dir)
    kill_file = settings.kill_switch_file or default_kill_switch_file(MIRROR_SYNC_KIND, state_dir)
    loop = ControlLoop(
        strategy,
        strategy_hash=strategy_hash,
        state_file=state_file,
        kill_switch=KillSwitch(kill_file),
        mode=settings.mode,
        iterations=settings.iterations,
        interval_ms=settings.interval_ms,
        send_webhook=send_webhook,
        now=now,
        sleep=sleep,
        stop=stop,
    )
    return await loop.run()
