"""Tests for the generic trigger-driven control loop."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from mirror_bot.framework.control_loop import (
    ActionRecord,
    ControlLoop,
    LoopStrategy,
    StopToken,
    TickPlan,
)
from mirror_bot.framework.risk_gate import RiskContext, RiskGate, max_trades_per_day_check
from mirror_bot.framework.state_store import StrategyState
from mirror_bot.kill_switch import KillSwitch
from mirror_bot.models import ActionStatus

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

PlanStep = Callable[[StrategyState], TickPlan]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fire(key: str = "k1", max_trades: int = 10) -> PlanStep:
    def _step(state: StrategyState) -> TickPlan:
        return TickPlan(
            triggered=True,
            reason="fire",
            snapshot={"value": 1},
            idempotency_key=key,
            planned_spend_usdc=5.0,
            risk_context=RiskContext(state=state, planned_spend_usdc=5.0, max_trades_per_day=max_trades),
        )

    return _step


def _quiet(state: StrategyState) -> TickPlan:
    return TickPlan(triggered=False, reason="quiet", snapshot={"value": 0})


class _FakeStrategy(LoopStrategy):
    kind = "fake"

    def __init__(self, steps: List[Any], *, live: bool = False, fail_execute: bool = False) -> None:
        self._steps = list(steps)
        self._live = live
        self._fail_execute = fail_execute
        self.risk_gate = RiskGate((max_trades_per_day_check,))
        self.observed = 0
        self.executed: List[TickPlan] = []
        self.applied: List[ActionRecord] = []
        self.on_observe: Callable[[], None] | None = None

    @property
    def execute_live(self) -> bool:
        return self._live

    def identity(self) -> Dict[str, Any]:
        return {"kind": "fake"}

    def parameters(self) -> Dict[str, Any]:
        return {"p": 1}

    async def observe(self, state: StrategyState, now: datetime) -> TickPlan:
        self.observed += 1
        if self.on_observe is not None:
            self.on_observe()
        step = self._steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step(state)

    async def execute(self, plan: TickPlan) -> Dict[str, Any]:
        if self._fail_execute:
            raise RuntimeError("venue rejected order")
        self.executed.append(plan)
        return {"execution": {"txHash": "0x1"}}

    def simulate(self, plan: TickPlan) -> Dict[str, Any]:
        return {"estimate": {"shares": 10}}

    def apply(self, state: StrategyState, plan: TickPlan, action: ActionRecord) -> None:
        self.applied.append(action)

    def webhook_event(self, plan: TickPlan, action: ActionRecord, iteration: int, strategy_hash: str) -> Dict[str, Any]:
        return {"event": "fake.trigger", "iteration": iteration, "action": action.to_dict()}


def _loop(strategy: LoopStrategy, tmp_path: Path, **kwargs: Any) -> ControlLoop:
    kwargs.setdefault("mode", "run")
    kwargs.setdefault("now", lambda: NOW)
    kwargs.setdefault("sleep", _no_sleep)
    return ControlLoop(
        strategy,
        strategy_hash="abc123",
        state_file=tmp_path / "state.json",
        kill_switch=KillSwitch(tmp_path / "STOP", env_var=""),
        **kwargs,
    )


async def _no_sleep(seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Tick behaviour
# ---------------------------------------------------------------------------


class TestControlLoop:
    def test_once_mode_runs_single_iteration(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_quiet, _quiet])
        summary = asyncio.run(_loop(strategy, tmp_path, mode="once", iterations=5).run())
        assert strategy.observed == 1
        assert summary.iterations_completed == 1
        assert summary.to_dict()["iterationsRequested"] == 1

    def test_paper_action_then_duplicate_skip(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_fire("k1"), _fire("k1")])
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=2).run())
        payload = summary.to_dict()

        assert payload["actionCount"] == 1
        assert payload["actions"][0]["status"] == "simulated"
        assert payload["actions"][0]["estimate"] == {"shares": 10}
        second = payload["snapshots"][1]["action"]
        assert second["status"] == "skipped"
        assert second["idempotencyKey"] == "k1"
        assert payload["state"]["tradesToday"] == 1
        assert payload["state"]["dailySpendUsdc"] == 5.0
        assert payload["state"]["idempotencyKeys"] == ["k1"]

    def test_live_action_executes(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_fire()], live=True)
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=1).run())
        action = summary.actions[0]
        assert action["mode"] == "live"
        assert action["status"] == "executed"
        assert action["execution"] == {"txHash": "0x1"}
        assert len(strategy.executed) == 1
        assert summary.state.last_execution["status"] == "executed"

    def test_risk_gate_blocks(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_fire(max_trades=0)])
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=1).run())
        action = summary.snapshots[0]["action"]
        assert action["status"] == "blocked"
        assert action["failedChecks"] == ["MAX_TRADES_PER_DAY"]
        assert summary.actions == []
        assert summary.snapshots[0]["riskGate"]["ok"] is False
        assert summary.state.trades_today == 0

    def test_execution_failure_does_not_consume(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_fire("k1")], live=True, fail_execute=True)
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=1).run())
        action = summary.snapshots[0]["action"]
        assert action["status"] == ActionStatus.FAILED.value
        assert action["error"] == "venue rejected order"
        assert summary.state.idempotency_keys == []
        assert summary.state.trades_today == 0
        assert strategy.applied == []

    def test_fetch_failure_becomes_diagnostic(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([RuntimeError("quote timeout"), _fire()])
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=2).run())
        assert summary.iterations_completed == 2
        assert summary.diagnostics == ["Iteration 1: snapshot fetch failed: quote timeout"]
        assert summary.snapshots[0]["error"] == "quote timeout"
        assert summary.snapshots[0]["action"] is None
        assert len(summary.actions) == 1

    def test_sleeps_between_iterations_only(self, tmp_path: Path) -> None:
        sleeps: List[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        strategy = _FakeStrategy([_quiet, _quiet, _quiet])
        asyncio.run(_loop(strategy, tmp_path, iterations=3, interval_ms=250, sleep=_sleep).run())
        assert sleeps == [0.25, 0.25]

    def test_state_saved_with_last_tick(self, tmp_path: Path) -> None:
        strategy = _FakeStrategy([_quiet])
        asyncio.run(_loop(strategy, tmp_path, iterations=1).run())
        raw = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
        assert raw["lastTickAt"] == NOW.isoformat()
        assert raw["strategyHash"] == "abc123"


# ---------------------------------------------------------------------------
# Stop conditions
# ---------------------------------------------------------------------------


class TestStopConditions:
    def test_kill_switch_halts_before_fetch(self, tmp_path: Path) -> None:
        (tmp_path / "STOP").write_text("", encoding="utf-8")
        strategy = _FakeStrategy([_fire()])
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=3).run())
        assert strategy.observed == 0
        assert summary.iterations_completed == 0
        assert summary.stopped_reason == f"Kill switch file detected at {tmp_path / 'STOP'}"
        assert (tmp_path / "state.json").exists()

    def test_stop_request_finishes_current_iteration(self, tmp_path: Path) -> None:
        token = StopToken()
        strategy = _FakeStrategy([_fire(), _fire("k2")])
        strategy.on_observe = token.request_stop
        summary = asyncio.run(_loop(strategy, tmp_path, iterations=None, stop=token).run())
        assert summary.iterations_completed == 1
        assert summary.stopped_reason == "Received termination signal."
        assert len(summary.actions) == 1

    def test_stop_token_wait_returns_early(self) -> None:
        async def _scenario() -> float:
            token = StopToken()
            loop = asyncio.get_running_loop()
            loop.call_later(0.01, token.request_stop, "bye")
            started = loop.time()
            await token.wait(5)
            return loop.time() - started

        assert asyncio.run(_scenario()) < 1.0


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhooks:
    def test_sync_and_async_senders(self, tmp_path: Path) -> None:
        events: List[Dict[str, Any]] = []

        def _send(event: Dict[str, Any]) -> Dict[str, Any]:
            events.append(event)
            return {"count": 1}

        summary = asyncio.run(_loop(_FakeStrategy([_fire()]), tmp_path, iterations=1, send_webhook=_send).run())
        assert events[0]["event"] == "fake.trigger"
        assert summary.webhook_reports == [{"count": 1}]

        async def _send_async(event: Dict[str, Any]) -> Dict[str, Any]:
            return {"count": 2}

        summary = asyncio.run(
            _loop(_FakeStrategy([_fire("k9")]), tmp_path, iterations=1, send_webhook=_send_async).run()
        )
        assert summary.webhook_reports == [{"count": 2}]

    def test_not_sent_for_skipped_actions(self, tmp_path: Path) -> None:
        events: List[Dict[str, Any]] = []
        strategy = _FakeStrategy([_fire("k1"), _fire("k1")])
        asyncio.run(_loop(strategy, tmp_path, iterations=2, send_webhook=events.append).run())
        assert len(events) == 1

    def test_sender_failure_is_diagnostic(self, tmp_path: Path) -> None:
        def _boom(event: Dict[str, Any]) -> None:
            raise ConnectionError("no route")

        summary = asyncio.run(_loop(_FakeStrategy([_fire()]), tmp_path, iterations=1, send_webhook=_boom).run())
        assert summary.diagnostics == ["Iteration 1: webhook delivery failed: no route"]
        assert len(summary.actions) == 1
