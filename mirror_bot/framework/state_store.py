"""Per-strategy JSON state with atomic persistence.

Each strategy configuration hashes to a 16-hex-char identity that names its
state file. The document tracks daily counters, the idempotency ledger and
the last execution. Writes go to a uniquely named temp file in the target
directory and are then renamed over the destination, so a crash or a
concurrent writer never leaves a partially written state file.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from mirror_bot.numeric import to_number

LOGGER = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = "1.0.0"
DEFAULT_MAX_IDEMPOTENCY_KEYS = 500
KILL_SWITCH_FILENAME = "STOP"


def compute_strategy_hash(config: Mapping[str, Any]) -> str:
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def expand_home(path: str | Path) -> Path:
    return Path(path).expanduser()


def default_state_file(kind: str, strategy_hash: str, state_dir: str | Path = "~/.mirror_bot") -> Path:
    return expand_home(state_dir) / kind / f"{strategy_hash}.json"


def default_kill_switch_file(kind: str, state_dir: str | Path = "~/.mirror_bot") -> Path:
    return expand_home(state_dir) / kind / KILL_SWITCH_FILENAME


def utc_day(now: datetime) -> str:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _iso(now: datetime) -> str:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat()


@dataclass
class StrategyState:
    strategy_hash: str
    started_at: str
    last_reset_day: str
    last_tick_at: Optional[str] = None
    daily_spend_usdc: float = 0.0
    trades_today: int = 0
    current_hedge_usdc: float = 0.0
    idempotency_keys: List[str] = field(default_factory=list)
    last_execution: Optional[Dict[str, Any]] = None
    alerts: List[Any] = field(default_factory=list)
    schema_version: str = STATE_SCHEMA_VERSION

    @classmethod
    def fresh(cls, strategy_hash: str, now: datetime) -> "StrategyState":
        return cls(strategy_hash=strategy_hash, started_at=_iso(now), last_reset_day=utc_day(now))

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], strategy_hash: str, now: datetime) -> "StrategyState":
        """Fill every field, whatever subset ``raw`` carries."""
        keys = raw.get("idempotencyKeys")
        alerts = raw.get("alerts")
        last_execution = raw.get("lastExecution")
        trades = to_number(raw.get("tradesToday"))
        return cls(
            strategy_hash=strategy_hash,
            started_at=str(raw.get("startedAt") or _iso(now)),
            last_reset_day=str(raw.get("lastResetDay") or utc_day(now)),
            last_tick_at=raw.get("lastTickAt") or None,
            daily_spend_usdc=to_number(raw.get("dailySpendUsdc")) or 0.0,
            trades_today=int(trades) if trades is not None else 0,
            current_hedge_usdc=to_number(raw.get("currentHedgeUsdc")) or 0.0,
            idempotency_keys=[str(key) for key in keys] if isinstance(keys, list) else [],
            last_execution=dict(last_execution) if isinstance(last_execution, Mapping) else None,
            alerts=list(alerts) if isinstance(alerts, list) else [],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "strategyHash": self.strategy_hash,
            "startedAt": self.started_at,
            "lastTickAt": self.last_tick_at,
            "lastResetDay": self.last_reset_day,
            "dailySpendUsdc": self.daily_spend_usdc,
            "tradesToday": self.trades_today,
            "currentHedgeUsdc": self.current_hedge_usdc,
            "idempotencyKeys": list(self.idempotency_keys),
            "lastExecution": self.last_execution,
            "alerts": list(self.alerts),
        }


def load_state(path: str | Path, strategy_hash: str, now: datetime | None = None) -> StrategyState:
    """Load state for ``strategy_hash``; missing or unreadable files yield a fresh document."""
    now = now or datetime.now(timezone.utc)
    file_path = expand_home(path)
    if not file_path.exists():
        return StrategyState.fresh(strategy_hash, now)
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("state file %s unreadable, starting fresh: %s", file_path, exc)
        return StrategyState.fresh(strategy_hash, now)
    if not isinstance(raw, Mapping):
        LOGGER.warning("state file %s is not a JSON object, starting fresh", file_path)
        return StrategyState.fresh(strategy_hash, now)
    return StrategyState.from_dict(raw, strategy_hash, now)


def temp_state_path(path: Path) -> Path:
    suffix = f"{os.getpid()}.{int(time.time() * 1000)}.{secrets.token_hex(4)}"
    return path.with_name(f"{path.name}.{suffix}.tmp")


def save_state(path: str | Path, state: StrategyState) -> Path:
    file_path = expand_home(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = temp_state_path(file_path)
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(state.to_dict(), handle, indent=2, default=str)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, file_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return file_path


def prune_idempotency_keys(state: StrategyState, max_size: int = DEFAULT_MAX_IDEMPOTENCY_KEYS) -> None:
    """Keep the most recent ``max_size`` keys; the oldest are evicted first."""
    if max_size <= 0:
        state.idempotency_keys.clear()
    elif len(state.idempotency_keys) > max_size:
        del state.idempotency_keys[:-max_size]


def reset_daily_counters_if_needed(state: StrategyState, now: datetime) -> bool:
    today = utc_day(now)
    if state.last_reset_day == today:
        return False
    LOGGER.info("UTC day rolled %s -> %s, resetting daily counters", state.last_reset_day, today)
    state.daily_spend_usdc = 0.0
    state.trades_today = 0
    state.last_reset_day = today
    return True
