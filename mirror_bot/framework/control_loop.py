"""Generic trigger-driven control loop shared by the automation strategies.

One iteration runs::

    stop/kill-switch check -> daily reset -> observe (fetch + evaluate)
      -> [triggered] idempotency check -> risk gate -> execute | simulate
      -> persist state -> notify webhook -> sleep or stop

The loop is the only place that decides between ``execute`` (live) and
``simulate`` (paper), so the two modes share every other step. At most one
state-mutating action happens per iteration, ``lastTickAt`` is updated and
the state file saved on every completed iteration, and a final save always
runs on exit.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from mirror_bot.framework.idempotency import has_key, record_key
from mirror_bot.framework.risk_gate import RiskContext, RiskGate
from mirror_bot.framework.state_store import (
    DEFAULT_MAX_IDEMPOTENCY_KEYS,
    StrategyState,
    load_state,
    reset_daily_counters_if_needed,
    save_state,
)
from mirror_bot.kill_switch import KillSwitch
from mirror_bot.models import ActionStatus
from mirror_bot.numeric import round_half_up

LOGGER = logging.getLogger(__name__)

RUN_SCHEMA_VERSION = "1.0.0"
TERMINATION_REASON = "Received termination signal."
DUPLICATE_REASON = "Duplicate trigger bucket (idempotency key already processed)."
BLOCKED_REASON = "Risk gate blocked execution."

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]
WebhookSender = Callable[[Dict[str, Any]], Any]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class StopToken:
    """Cooperative cancellation shared between a host and one loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def stopped(self) -> bool:
        return self._event.is_set()

    def request_stop(self, reason: str = TERMINATION_REASON) -> None:
        if not self._event.is_set():
            self.reason = reason
            LOGGER.info("stop requested: %s", reason)
        self._event.set()

    async def wait(self, seconds: float) -> None:
        """Sleep up to ``seconds``, returning early once a stop is requested."""
        if seconds <= 0 or self.stopped:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


def install_signal_handlers(
    token: StopToken,
    signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> Callable[[], None]:
    """Route OS termination signals to ``token``; returns an uninstaller.

    Must be called from inside the running event loop.
    """
    loop = asyncio.get_running_loop()
    installed: List[signal.Signals] = []
    for sig in signals:
        try:
            loop.add_signal_handler(sig, token.request_stop, TERMINATION_REASON)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("signal handler for %s unavailable on this platform", sig)
            continue
        installed.append(sig)

    def _remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _remove


@dataclass
class TickPlan:
    """What a strategy observed this tick and what it would do about it."""

    triggered: bool
    reason: str
    snapshot: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    planned_spend_usdc: float = 0.0
    risk_context: Optional[RiskContext] = None
    diagnostics: List[str] = field(default_factory=list)
    data: Any = None


@dataclass
class ActionRecord:
    mode: str
    status: ActionStatus
    reason: str
    idempotency_key: str | None = None
    failed_checks: Optional[List[str]] = None
    error: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def consumed(self) -> bool:
        return self.status in (ActionStatus.EXECUTED, ActionStatus.SIMULATED)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mode": self.mode,
            "status": self.status.value,
            "reason": self.reason,
            "idempotencyKey": self.idempotency_key,
        }
        if self.failed_checks is not None:
            payload["failedChecks"] = list(self.failed_checks)
        if self.error is not None:
            payload["error"] = self.error
        payload.update(self.details)
        return payload


class LoopStrategy(ABC):
    """Strategy-specific half of a control loop."""

    kind: str
    risk_gate: RiskGate
    blocked_reason: str = BLOCKED_REASON

    @property
    @abstractmethod
    def execute_live(self) -> bool:
        ...

    @abstractmethod
    def identity(self) -> Dict[str, Any]:
        """Configuration subset whose hash keys the state file."""

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def observe(self, state: StrategyState, now: datetime) -> TickPlan:
        """Fetch the snapshot and evaluate the trigger. May raise on fetch errors."""

    @abstractmethod
    async def execute(self, plan: TickPlan) -> Dict[str, Any]:
        """Perform the live side effects; returns action details."""

    @abstractmethod
    def simulate(self, plan: TickPlan) -> Dict[str, Any]:
        ...

    def spent_usdc(self, plan: TickPlan, details: Mapping[str, Any]) -> float:
        """USDC committed by a consumed action; defaults to the planned spend."""
        return plan.planned_spend_usdc

    def apply(self, state: StrategyState, plan: TickPlan, action: ActionRecord) -> None:
        """Strategy-specific state mutation after a consumed action."""

    @abstractmethod
    def webhook_event(self, plan: TickPlan, action: ActionRecord, iteration: int, strategy_hash: str) -> Dict[str, Any]:
        ...


@dataclass
class RunSummary:
    strategy_hash: str
    mode: str
    execute_live: bool
    state_file: Path
    kill_switch_file: Path | None
    iterations_requested: int | None
    parameters: Dict[str, Any]
    state: StrategyState
    generated_at: datetime = field(default_factory=_utc_now)
    iterations_completed: int = 0
    stopped_reason: str | None = None
    actions: List[Dict[str, Any]] = field(default_factory=list)
    snapshots: List[Dict[str, Any]] = field(default_factory=list)
    webhook_reports: List[Any] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": RUN_SCHEMA_VERSION,
            "generatedAt": _iso(self.generated_at),
            "strategyHash": self.strategy_hash,
            "mode": self.mode,
            "executeLive": self.execute_live,
            "stateFile": str(self.state_file),
            "killSwitchFile": str(self.kill_switch_file) if self.kill_switch_file else None,
            "iterationsRequested": self.iterations_requested,
            "iterationsCompleted": self.iterations_completed,
            "stoppedReason": self.stopped_reason,
            "parameters": dict(self.parameters),
            "state": self.state.to_dict(),
            "actionCount": len(self.actions),
            "actions": list(self.actions),
            "snapshots": list(self.snapshots),
            "webhookReports": list(self.webhook_reports),
            "diagnostics": list(self.diagnostics),
        }


class ControlLoop:
    """Runs a ``LoopStrategy`` until its iteration cap is reached or it is halted.

    Parameters
    ----------
    strategy:
        The strategy half (observe / execute / simulate / apply).
    strategy_hash:
        Identity of the strategy configuration, stored in the state file.
    state_file:
        JSON state document path.
    kill_switch:
        Checked at the top of every iteration, before any fetch.
    mode:
        ``"once"`` (single iteration) or ``"run"``.
    iterations:
        Iteration budget for ``mode="run"``; None runs until stopped.
    interval_ms:
        Sleep between iterations (skipped after the last one).
    send_webhook:
        Optional sync or async callable receiving the event dict.
    now, sleep:
        Injectable clock and sleeper; the default sleeper wakes early on stop.
    stop:
        Cancellation token; the host wires OS signals to it.
    """

    def __init__(
        self,
        strategy: LoopStrategy,
        *,
        strategy_hash: str,
        state_file: str | Path,
        kill_switch: KillSwitch,
        mode: str = "once",
        iterations: int | None = None,
        interval_ms: int = 5000,
        send_webhook: WebhookSender | None = None,
        now: Clock | None = None,
        sleep: Sleeper | None = None,
        stop: StopToken | None = None,
        max_idempotency_keys: int = DEFAULT_MAX_IDEMPOTENCY_KEYS,
    ) -> None:
        self._strategy = strategy
        self._hash = strategy_hash
        self._state_file = Path(state_file).expanduser()
        self._kill_switch = kill_switch
        self._mode = mode
        self._iterations = 1 if mode == "once" else iterations
        self._interval_ms = interval_ms
        self._send_webhook = send_webhook
        self._now = now or _utc_now
        self._stop = stop or StopToken()
        self._sleep = sleep
        self._max_keys = max_idempotency_keys

    @property
    def stop_token(self) -> StopToken:
        return self._stop

    async def run(self) -> RunSummary:
        state = load_state(self._state_file, self._hash, self._now())
        summary = RunSummary(
            strategy_hash=self._hash,
            mode=self._mode,
            execute_live=self._strategy.execute_live,
            state_file=self._state_file,
            kill_switch_file=self._kill_switch.path,
            iterations_requested=self._iterations,
            parameters=self._strategy.parameters(),
            state=state,
        )
        LOGGER.info(
            "%s loop starting hash=%s mode=%s live=%s state=%s",
            self._strategy.kind,
            self._hash,
            self._mode,
            self._strategy.execute_live,
            self._state_file,
        )

        iteration = 0
        try:
            while not self._stop.stopped and (self._iterations is None or iteration < self._iterations):
                halt = self._kill_switch.check()
                if halt.halted:
                    summary.stopped_reason = halt.reason
                    break

                iteration += 1
                await self._tick(state, iteration, summary)
                summary.iterations_completed = iteration

                if self._stop.stopped:
                    break
                if self._iterations is not None and iteration >= self._iterations:
                    break
                await self._pause()
        finally:
            save_state(self._state_file, state)

        if summary.stopped_reason is None and self._stop.stopped:
            summary.stopped_reason = self._stop.reason or TERMINATION_REASON
        summary.generated_at = self._now()
        LOGGER.info(
            "%s loop finished iterations=%d actions=%d stopped=%s",
            self._strategy.kind,
            summary.iterations_completed,
            len(summary.actions),
            summary.stopped_reason,
        )
        return summary

    async def _pause(self) -> None:
        seconds = self._interval_ms / 1000
        if self._sleep is not None:
            await self._sleep(seconds)
        else:
            await self._stop.wait(seconds)

    async def _tick(self, state: StrategyState, iteration: int, summary: RunSummary) -> None:
        tick_at = self._now()
        reset_daily_counters_if_needed(state, tick_at)
        snapshot: Dict[str, Any] = {"iteration": iteration, "timestamp": _iso(tick_at)}

        plan: TickPlan | None = None
        try:
            plan = await self._strategy.observe(state, tick_at)
        except Exception as exc:
            message = f"Iteration {iteration}: snapshot fetch failed: {exc}"
            LOGGER.warning("%s", message)
            summary.diagnostics.append(message)
            snapshot["error"] = str(exc)

        action: ActionRecord | None = None
        if plan is not None:
            snapshot.update(plan.snapshot)
            summary.diagnostics.extend(f"Iteration {iteration}: {item}" for item in plan.diagnostics)
            if plan.triggered:
                action = await self._act(state, plan, tick_at, snapshot)

        snapshot["action"] = action.to_dict() if action is not None else None
        state.last_tick_at = _iso(tick_at)
        save_state(self._state_file, state)
        summary.snapshots.append(snapshot)

        if action is None or not action.consumed:
            return
        summary.actions.append(action.to_dict())
        if self._send_webhook is None:
            return
        event = self._strategy.webhook_event(plan, action, iteration, self._hash)
        try:
            report = await maybe_await(self._send_webhook(event))
        except Exception as exc:
            message = f"Iteration {iteration}: webhook delivery failed: {exc}"
            LOGGER.warning("%s", message)
            summary.diagnostics.append(message)
            return
        summary.webhook_reports.append(report)

    async def _act(
        self,
        state: StrategyState,
        plan: TickPlan,
        tick_at: datetime,
        snapshot: Dict[str, Any],
    ) -> ActionRecord:
        live = self._strategy.execute_live
        mode = "live" if live else "paper"
        key = plan.idempotency_key

        if key is not None and has_key(state, key):
            LOGGER.info("duplicate trigger bucket skipped key=%s", key)
            return ActionRecord(mode, ActionStatus.SKIPPED, DUPLICATE_REASON, key)

        if plan.risk_context is not None:
            gate = self._strategy.risk_gate.evaluate(plan.risk_context)
            snapshot["riskGate"] = gate.to_dict()
            if not gate.ok:
                return ActionRecord(mode, ActionStatus.BLOCKED, self._strategy.blocked_reason, key, failed_checks=gate.failed_checks)

        try:
            details = await self._strategy.execute(plan) if live else self._strategy.simulate(plan)
        except Exception as exc:
            LOGGER.warning("execution failed key=%s: %s", key, exc, exc_info=True)
            return ActionRecord(mode, ActionStatus.FAILED, f"Execution failed: {exc}", key, error=str(exc))

        status = ActionStatus.EXECUTED if live else ActionStatus.SIMULATED
        action = ActionRecord(mode, status, plan.reason, key, details=details or {})
        self._strategy.apply(state, plan, action)
        if key is not None:
            record_key(state, key, self._max_keys)
        spent = self._strategy.spent_usdc(plan, action.details)
        state.daily_spend_usdc = round_half_up(state.daily_spend_usdc + spent, 6)
        state.trades_today += 1
        state.last_execution = {**action.to_dict(), "timestamp": _iso(tick_at)}
        LOGGER.info("%s action %s key=%s", self._strategy.kind, status.value, key)
        return action
