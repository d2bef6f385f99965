"""Single-market autopilot: buy one side when YES odds cross a threshold.

Each tick fetches a quote through the injected ``quote_fn``, evaluates the
threshold trigger and, when it fires, either calls ``execute_fn`` (live) or
records the quote's estimate (paper). Daily trade count and open exposure
are enforced by the risk gate; repeated triggers inside one cooldown
bucket are skipped through the idempotency key.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Union

from mirror_bot.config import DEFAULT_STATE_DIR, AutopilotSettings, StrategyConfigError
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
from mirror_bot.framework.risk_gate import AUTOPILOT_CHECKS, RiskContext, RiskGate
from mirror_bot.framework.state_store import (
    StrategyState,
    compute_strategy_hash,
    default_kill_switch_file,
    default_state_file,
)
from mirror_bot.kill_switch import KillSwitch
from mirror_bot.triggers import autopilot_idempotency_key, evaluate_autopilot_trigger

LOGGER = logging.getLogger(__name__)

AUTOPILOT_KIND = "autopilot"
AUTOPILOT_EVENT = "autopilot.trigger"

QuoteFn = Callable[[Dict[str, Any]], Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]]
ExecuteFn = Callable[[Dict[str, Any]], Any]


class AutopilotStrategy(LoopStrategy):
    kind = AUTOPILOT_KIND

    def __init__(
        self,
        settings: AutopilotSettings,
        quote_fn: QuoteFn,
        execute_fn: ExecuteFn | None = None,
    ) -> None:
        self._settings = settings
        self._quote_fn = quote_fn
        self._execute_fn = execute_fn
        self.risk_gate = RiskGate(AUTOPILOT_CHECKS)

    @property
    def execute_live(self) -> bool:
        return self._settings.execute_live

    def identity(self) -> Dict[str, Any]:
        return self._settings.strategy_identity()

    def parameters(self) -> Dict[str, Any]:
        s = self._settings
        return {
            "marketAddress": s.market_address,
            "side": s.side,
            "amountUsdc": s.amount_usdc,
            "triggerYesBelow": s.trigger_yes_below,
            "triggerYesAbove": s.trigger_yes_above,
            "intervalMs": s.interval_ms,
            "cooldownMs": s.cooldown_ms,
            "maxAmountUsdc": s.max_amount_usdc,
            "maxOpenExposureUsdc": s.max_open_exposure_usdc,
            "maxTradesPerDay": s.max_trades_per_day,
            "slippageBps": s.slippage_bps,
        }

    async def observe(self, state: StrategyState, now: datetime) -> TickPlan:
        s = self._settings
        quote = await maybe_await(
            self._quote_fn(
                {
                    "marketAddress": s.market_address,
                    "side": s.side,
                    "amountUsdc": s.amount_usdc,
                    "slippageBps": s.slippage_bps,
                }
            )
        )
        quote = dict(quote or {})
        trigger = evaluate_autopilot_trigger(quote, s.trigger_yes_below, s.trigger_yes_above)
        plan = TickPlan(
            triggered=trigger.triggered,
            reason=trigger.reason,
            snapshot={"quote": quote, "trigger": trigger.to_dict()},
            planned_spend_usdc=s.amount_usdc,
            data={"quote": quote, "trigger": trigger},
        )
        if trigger.triggered:
            plan.idempotency_key = autopilot_idempotency_key(s, trigger, now.timestamp() * 1000)
            plan.risk_context = RiskContext(
                state=state,
                planned_spend_usdc=s.amount_usdc,
                max_trades_per_day=s.max_trades_per_day,
                max_open_exposure_usdc=s.max_open_exposure_usdc,
            )
        return plan

    async def execute(self, plan: TickPlan) -> Dict[str, Any]:
        if self._execute_fn is None:
            raise StrategyConfigError("live autopilot requires an execute_fn")
        s = self._settings
        execution = await maybe_await(
            self._execute_fn(
                {
                    "marketAddress": s.market_address,
                    "side": s.side,
                    "amountUsdc": s.amount_usdc,
                    "yesPct": plan.data["trigger"].yes_pct,
                    "maxAmountUsdc": s.max_amount_usdc,
                    "slippageBps": s.slippage_bps,
                }
            )
        )
        return {"execution": execution}

    def simulate(self, plan: TickPlan) -> Dict[str, Any]:
        return {"estimate": plan.data["quote"].get("estimate")}

    def webhook_event(self, plan: TickPlan, action: ActionRecord, iteration: int, strategy_hash: str) -> Dict[str, Any]:
        return {
            "event": AUTOPILOT_EVENT,
            "strategyHash": strategy_hash,
            "iteration": iteration,
            "alertMessage": plan.reason,
            "message": f"[mirror-bot autopilot] {plan.reason}",
            "quote": plan.data["quote"],
            "action": action.to_dict(),
        }


async def run_autopilot(
    settings: AutopilotSettings,
    quote_fn: QuoteFn,
    execute_fn: ExecuteFn | None = None,
    *,
    send_webhook: WebhookSender | None = None,
    now: Clock | None = None,
    sleep: Sleeper | None = None,
    stop: StopToken | None = None,
    state_dir: str | Path = DEFAULT_STATE_DIR,
) -> RunSummary:
    """Validate ``settings`` and run the autopilot loop to completion.

    Raises ``StrategyConfigError`` before any tick when the settings are
    invalid or live execution is requested without an ``execute_fn``.
    """
    settings.validate()
    if settings.execute_live and execute_fn is None:
        raise StrategyConfigError("execute_live requires an execute_fn")

    strategy = AutopilotStrategy(settings, quote_fn, execute_fn)
    strategy_hash = compute_strategy_hash(strategy.identity())
    state_file = settings.state_file or default_state_file(AUTOPILOT_KIND, strategy_hash, state_dir)
    kill_file = settings.kill_switch_file or default_kill_switch_file(AUTOPILOT_KIND, state_dir)
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
