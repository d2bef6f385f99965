from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

AUTOPILOT_MODES = ("once", "run")
TRADE_SIDES = ("yes", "no")
DEFAULT_STATE_DIR = "~/.mirror_bot"


class StrategyConfigError(ValueError):
    """Raised for strategy parameters that must abort a run before any tick."""


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_str(value: str | None, default: str = "") -> str:
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class MatchSettings:
    """Cross-venue matching and opportunity filtering.

    Parameters
    ----------
    similarity_threshold:
        Minimum blended question similarity for two legs to be linked.
    max_close_diff_hours:
        Largest close-time gap (hours) tolerated between linked legs.
    cross_venue_only:
        Only link legs from different venues and drop single-venue groups.
    min_spread_pct:
        Minimum YES or NO spread (percentage points) worth reporting.
    min_liquidity_usd:
        Liquidity floor below which a group is flagged LOW_LIQUIDITY.
    include_similarity:
        Attach the per-pair similarity audit to each opportunity.
    limit:
        Maximum number of opportunities returned by a scan.
    """

    similarity_threshold: float = 0.86
    max_close_diff_hours: float = 24.0
    cross_venue_only: bool = True
    min_spread_pct: float = 3.0
    min_liquidity_usd: float = 1000.0
    include_similarity: bool = False
    limit: int = 20


@dataclass(frozen=True)
class SizingSettings:
    """Liquidity sizing model parameters.

    Parameters
    ----------
    target_slippage_bps:
        Price impact budget for a typical trade, in basis points.
    turnover_target:
        Desired daily volume / liquidity ratio.
    depth_utilization:
        Fraction of source depth the mirrored pool is expected to absorb.
    safety_multiplier:
        Headroom applied to the largest liquidity floor (>= 1).
    beta:
        Typical trade size as a fraction of 24h volume.
    q_min, q_max:
        Bounds on the typical trade size in USD.
    min_liquidity_usd, max_liquidity_usd:
        Hard floor and cap on the recommendation.
    """

    target_slippage_bps: float = 150.0
    turnover_target: float = 1.25
    depth_utilization: float = 0.6
    safety_multiplier: float = 1.2
    beta: float = 0.003
    q_min: float = 25.0
    q_max: float = 2000.0
    min_liquidity_usd: float = 100.0
    max_liquidity_usd: float = 50000.0


@dataclass(frozen=True)
class WebhookSettings:
    webhook_url: str = ""
    webhook_template: str = ""
    webhook_secret: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    discord_webhook_url: str = ""
    timeout_seconds: float = 5.0
    retries: int = 3

    @property
    def has_targets(self) -> bool:
        return bool(
            self.webhook_url
            or (self.telegram_bot_token and self.telegram_chat_id)
            or self.discord_webhook_url
        )


def _validate_loop_common(
    mode: str,
    iterations: int | None,
    interval_ms: int,
    cooldown_ms: int,
    max_trades_per_day: int,
    max_open_exposure_usdc: float | None,
) -> None:
    if mode not in AUTOPILOT_MODES:
        raise StrategyConfigError(f"mode must be one of {AUTOPILOT_MODES}, got {mode!r}")
    if iterations is not None and iterations < 1:
        raise StrategyConfigError("iterations must be a positive integer when set")
    if interval_ms < 0:
        raise StrategyConfigError("interval_ms must be >= 0")
    if cooldown_ms < 0:
        raise StrategyConfigError("cooldown_ms must be >= 0")
    if max_trades_per_day < 0:
        raise StrategyConfigError("max_trades_per_day must be >= 0")
    if max_open_exposure_usdc is not None and max_open_exposure_usdc < 0:
        raise StrategyConfigError("max_open_exposure_usdc must be >= 0")


@dataclass(frozen=True)
class AutopilotSettings:
    """Single-market autopilot strategy.

    Exactly one of ``trigger_yes_below`` / ``trigger_yes_above`` must be set.
    ``iterations`` of None means run until stopped (``mode="run"`` only).
    """

    market_address: str
    side: str
    amount_usdc: float
    trigger_yes_below: float | None = None
    trigger_yes_above: float | None = None
    mode: str = "once"
    execute_live: bool = False
    interval_ms: int = 5000
    cooldown_ms: int = 60000
    max_amount_usdc: float | None = None
    max_open_exposure_usdc: float | None = None
    max_trades_per_day: int = 10
    slippage_bps: int = 150
    iterations: int | None = None
    state_file: str | None = None
    kill_switch_file: str | None = None

    def validate(self) -> None:
        _validate_loop_common(
            self.mode,
            self.iterations,
            self.interval_ms,
            self.cooldown_ms,
            self.max_trades_per_day,
            self.max_open_exposure_usdc,
        )
        if not self.market_address.strip():
            raise StrategyConfigError("market_address is required")
        if self.side not in TRADE_SIDES:
            raise StrategyConfigError(f"side must be one of {TRADE_SIDES}, got {self.side!r}")
        if not self.amount_usdc > 0:
            raise StrategyConfigError("amount_usdc must be > 0")
        if self.max_amount_usdc is not None and self.amount_usdc > self.max_amount_usdc:
            raise StrategyConfigError(
                f"amount_usdc {self.amount_usdc} exceeds max_amount_usdc {self.max_amount_usdc}"
            )
        has_below = self.trigger_yes_below is not None
        has_above = self.trigger_yes_above is not None
        if has_below == has_above:
            raise StrategyConfigError("exactly one of trigger_yes_below / trigger_yes_above must be set")
        threshold = self.trigger_yes_below if has_below else self.trigger_yes_above
        if not 0 <= float(threshold) <= 100:
            raise StrategyConfigError("trigger thresholds are YES percentages in [0, 100]")

    def strategy_identity(self) -> dict:
        return {
            "mode": self.mode,
            "marketAddress": self.market_address.lower(),
            "side": self.side,
            "amountUsdc": self.amount_usdc,
            "triggerYesBelow": self.trigger_yes_below,
            "triggerYesAbove": self.trigger_yes_above,
            "executeLive": self.execute_live,
        }


@dataclass(frozen=True)
class MirrorSyncSettings:
    """Cross-venue mirror synchronization strategy.

    Parameters
    ----------
    drift_trigger_bps:
        Rebalance fires when |source YES - mirror YES| reaches this many bps.
    hedge_enabled, hedge_ratio, hedge_trigger_usdc:
        Hedge fires only when enabled and |target - current hedge| reaches
        the trigger; the planned hedge is the gap scaled by the ratio.
    max_rebalance_usdc, max_hedge_usdc:
        Caps on a single rebalance / hedge notional.
    depth_slippage_bps:
        Slippage at which source order-book depth is measured.
    """

    pandora_market_address: str
    polymarket_market_id: str = ""
    polymarket_slug: str = ""
    mode: str = "once"
    execute_live: bool = False
    drift_trigger_bps: float = 150.0
    hedge_enabled: bool = True
    hedge_ratio: float = 1.0
    hedge_trigger_usdc: float = 10.0
    max_rebalance_usdc: float = 25.0
    max_hedge_usdc: float = 50.0
    depth_slippage_bps: int = 100
    interval_ms: int = 5000
    cooldown_ms: int = 60000
    max_open_exposure_usdc: float | None = None
    max_trades_per_day: int = 50
    iterations: int | None = None
    state_file: str | None = None
    kill_switch_file: str | None = None

    def validate(self) -> None:
        _validate_loop_common(
            self.mode,
            self.iterations,
            self.interval_ms,
            self.cooldown_ms,
            self.max_trades_per_day,
            self.max_open_exposure_usdc,
        )
        if not self.pandora_market_address.strip():
            raise StrategyConfigError("pandora_market_address is required")
        if not (self.polymarket_market_id.strip() or self.polymarket_slug.strip()):
            raise StrategyConfigError("polymarket_market_id or polymarket_slug is required")
        if self.drift_trigger_bps <= 0:
            raise StrategyConfigError("drift_trigger_bps must be > 0")
        if self.hedge_ratio < 0:
            raise StrategyConfigError("hedge_ratio must be >= 0")
        if self.hedge_trigger_usdc <= 0:
            raise StrategyConfigError("hedge_trigger_usdc must be > 0")
        if self.max_rebalance_usdc <= 0 or self.max_hedge_usdc <= 0:
            raise StrategyConfigError("max_rebalance_usdc and max_hedge_usdc must be > 0")
        if not 1 <= self.depth_slippage_bps <= 10000:
            raise StrategyConfigError("depth_slippage_bps must be within [1, 10000]")

    def strategy_identity(self) -> dict:
        return {
            "mode": self.mode,
            "pandoraMarketAddress": self.pandora_market_address.lower(),
            "polymarketMarketId": self.polymarket_market_id or None,
            "polymarketSlug": self.polymarket_slug or None,
            "executeLive": self.execute_live,
            "driftTriggerBps": self.drift_trigger_bps,
            "hedgeEnabled": self.hedge_enabled,
            "hedgeRatio": self.hedge_ratio,
            "hedgeTriggerUsdc": self.hedge_trigger_usdc,
        }


@dataclass(frozen=True)
class AppSettings:
    log_level: str = "INFO"
    state_dir: str = DEFAULT_STATE_DIR
    match: MatchSettings = field(default_factory=MatchSettings)
    sizing: SizingSettings = field(default_factory=SizingSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()


def load_settings() -> AppSettings:
    load_dotenv(find_dotenv(usecwd=True), override=False)

    match = MatchSettings(
        similarity_threshold=_as_float(os.getenv("MIRROR_BOT_SIMILARITY_THRESHOLD"), 0.86),
        max_close_diff_hours=_as_float(os.getenv("MIRROR_BOT_MAX_CLOSE_DIFF_HOURS"), 24.0),
        cross_venue_only=_as_bool(os.getenv("MIRROR_BOT_CROSS_VENUE_ONLY"), True),
        min_spread_pct=_as_float(os.getenv("MIRROR_BOT_MIN_SPREAD_PCT"), 3.0),
        min_liquidity_usd=_as_float(os.getenv("MIRROR_BOT_MIN_LIQUIDITY_USD"), 1000.0),
        include_similarity=_as_bool(os.getenv("MIRROR_BOT_INCLUDE_SIMILARITY"), False),
        limit=_as_int(os.getenv("MIRROR_BOT_SCAN_LIMIT"), 20),
    )

    sizing = SizingSettings(
        target_slippage_bps=_as_float(os.getenv("MIRROR_BOT_TARGET_SLIPPAGE_BPS"), 150.0),
        turnover_target=_as_float(os.getenv("MIRROR_BOT_TURNOVER_TARGET"), 1.25),
        depth_utilization=_as_float(os.getenv("MIRROR_BOT_DEPTH_UTILIZATION"), 0.6),
        safety_multiplier=_as_float(os.getenv("MIRROR_BOT_SAFETY_MULTIPLIER"), 1.2),
        beta=_as_float(os.getenv("MIRROR_BOT_SIZING_BETA"), 0.003),
        q_min=_as_float(os.getenv("MIRROR_BOT_SIZING_Q_MIN"), 25.0),
        q_max=_as_float(os.getenv("MIRROR_BOT_SIZING_Q_MAX"), 2000.0),
        min_liquidity_usd=_as_float(os.getenv("MIRROR_BOT_MIN_POOL_LIQUIDITY_USD"), 100.0),
        max_liquidity_usd=_as_float(os.getenv("MIRROR_BOT_MAX_POOL_LIQUIDITY_USD"), 50000.0),
    )

    webhook = WebhookSettings(
        webhook_url=_as_str(os.getenv("MIRROR_BOT_WEBHOOK_URL")),
        webhook_template=_as_str(os.getenv("MIRROR_BOT_WEBHOOK_TEMPLATE")),
        webhook_secret=_as_str(os.getenv("MIRROR_BOT_WEBHOOK_SECRET")),
        telegram_bot_token=_as_str(os.getenv("TELEGRAM_BOT_TOKEN")),
        telegram_chat_id=_as_str(os.getenv("TELEGRAM_CHAT_ID")),
        discord_webhook_url=_as_str(os.getenv("DISCORD_WEBHOOK_URL")),
        timeout_seconds=_as_float(os.getenv("MIRROR_BOT_WEBHOOK_TIMEOUT_SECONDS"), 5.0),
        retries=_as_int(os.getenv("MIRROR_BOT_WEBHOOK_RETRIES"), 3),
    )

    return AppSettings(
        log_level=_as_str(os.getenv("MIRROR_BOT_LOG_LEVEL"), "INFO"),
        state_dir=_as_str(os.getenv("MIRROR_BOT_STATE_DIR"), DEFAULT_STATE_DIR),
        match=match,
        sizing=sizing,
        webhook=webhook,
    )
