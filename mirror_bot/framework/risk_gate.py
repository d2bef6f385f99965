"""Named pre-execution risk checks.

Every check in a gate is evaluated (no short-circuit) so a blocked action
reports all failing codes at once. A failing gate is an ordinary outcome:
the control loop records a ``blocked`` action carrying ``failed_checks``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from mirror_bot.framework.state_store import StrategyState
from mirror_bot.numeric import round_half_up, to_number

LOGGER = logging.getLogger(__name__)


class RiskCheckCode(str, Enum):
    MATCH_AND_RULES = "MATCH_AND_RULES"
    CLOSE_TIME_DELTA = "CLOSE_TIME_DELTA"
    DEPTH_COVERAGE = "DEPTH_COVERAGE"
    MAX_OPEN_EXPOSURE = "MAX_OPEN_EXPOSURE"
    MAX_TRADES_PER_DAY = "MAX_TRADES_PER_DAY"


@dataclass(frozen=True)
class GateCheck:
    code: str
    ok: bool
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "ok": self.ok, "message": self.message, "details": self.details}


@dataclass(frozen=True)
class GateResult:
    checks: tuple[GateCheck, ...]

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)

    @property
    def failed_checks(self) -> list[str]:
        return [check.code for check in self.checks if not check.ok]

    def check(self, code: str) -> GateCheck | None:
        return next((item for item in self.checks if item.code == code), None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "failedChecks": self.failed_checks,
            "checks": [check.to_dict() for check in self.checks],
        }


@dataclass(frozen=True)
class RiskContext:
    """Everything a risk check may inspect for one pending action."""

    state: StrategyState
    planned_spend_usdc: float
    max_trades_per_day: int
    max_open_exposure_usdc: float | None = None
    planned_hedge_usdc: float = 0.0
    depth_within_slippage_usd: float | None = None
    depth_slippage_bps: float | None = None
    verify_payload: Mapping[str, Any] = field(default_factory=dict)


RiskCheck = Callable[[RiskContext], GateCheck]


def _verify_gate(ctx: RiskContext) -> Mapping[str, Any] | None:
    gate = ctx.verify_payload.get("gateResult") if ctx.verify_payload else None
    return gate if isinstance(gate, Mapping) else None


def match_and_rules_check(ctx: RiskContext) -> GateCheck:
    gate = _verify_gate(ctx)
    return GateCheck(
        code=RiskCheckCode.MATCH_AND_RULES.value,
        ok=bool(gate and gate.get("ok")),
        message="Mirror match/rules gates must pass.",
        details={"failedChecks": list(gate.get("failedChecks") or []) if gate else ["UNKNOWN"]},
    )


def close_time_delta_check(ctx: RiskContext) -> GateCheck:
    gate = _verify_gate(ctx)
    upstream = None
    if gate and isinstance(gate.get("checks"), list):
        upstream = next(
            (
                item
                for item in gate["checks"]
                if isinstance(item, Mapping) and item.get("code") == RiskCheckCode.CLOSE_TIME_DELTA.value
            ),
            None,
        )
    # No upstream measurement means no evidence of drift.
    return GateCheck(
        code=RiskCheckCode.CLOSE_TIME_DELTA.value,
        ok=bool(upstream.get("ok")) if upstream is not None else True,
        message="Close-time delta must be within strict threshold.",
        details=upstream.get("details") if upstream is not None else None,
    )


def depth_coverage_check(ctx: RiskContext) -> GateCheck:
    required = to_number(ctx.planned_hedge_usdc) or 0.0
    available = to_number(ctx.depth_within_slippage_usd) or 0.0
    return GateCheck(
        code=RiskCheckCode.DEPTH_COVERAGE.value,
        ok=True if required <= 0 else available >= required,
        message="Source depth must cover hedge notional at configured slippage.",
        details={
            "depthRequired": required,
            "depthAvailable": available,
            "slippageBps": ctx.depth_slippage_bps,
        },
    )


def max_open_exposure_check(ctx: RiskContext) -> GateCheck:
    candidate = ctx.state.daily_spend_usdc + (to_number(ctx.planned_spend_usdc) or 0.0)
    cap = ctx.max_open_exposure_usdc
    return GateCheck(
        code=RiskCheckCode.MAX_OPEN_EXPOSURE.value,
        ok=True if cap is None else candidate <= cap,
        message="Max open exposure must not be exceeded.",
        details={"totalSpendCandidate": round_half_up(candidate, 6), "maxOpenExposureUsdc": cap},
    )


def max_trades_per_day_check(ctx: RiskContext) -> GateCheck:
    return GateCheck(
        code=RiskCheckCode.MAX_TRADES_PER_DAY.value,
        ok=ctx.state.trades_today < ctx.max_trades_per_day,
        message="Daily trade cap must allow another execution.",
        details={"tradesToday": ctx.state.trades_today, "maxTradesPerDay": ctx.max_trades_per_day},
    )


AUTOPILOT_CHECKS: tuple[RiskCheck, ...] = (max_trades_per_day_check, max_open_exposure_check)

MIRROR_SYNC_CHECKS: tuple[RiskCheck, ...] = (
    match_and_rules_check,
    close_time_delta_check,
    depth_coverage_check,
    max_open_exposure_check,
    max_trades_per_day_check,
)


class RiskGate:
    def __init__(self, checks: Sequence[RiskCheck]) -> None:
        if not checks:
            raise ValueError("RiskGate requires at least one check")
        self._checks = tuple(checks)

    def evaluate(self, ctx: RiskContext) -> GateResult:
        result = GateResult(checks=tuple(check(ctx) for check in self._checks))
        if not result.ok:
            LOGGER.info("risk gate blocked: %s", ",".join(result.failed_checks))
        return result
