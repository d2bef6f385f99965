"""Bucketed idempotency keys for trigger-driven actions.

A key joins the strategy identity, the trigger direction and a time-bucket
index. Two ticks in the same bucket with the same direction produce the
same key, and once a key has been used by an executed or simulated action
the second occurrence is skipped.
"""

from __future__ import annotations

import math
from typing import Iterable

from mirror_bot.framework.state_store import (
    DEFAULT_MAX_IDEMPOTENCY_KEYS,
    StrategyState,
    prune_idempotency_keys,
)

DEFAULT_COOLDOWN_MS = 60_000
MIN_BUCKET_MS = 1_000


def time_bucket(now_ms: float, cooldown_ms: float | None = None) -> int:
    bucket_ms = max(MIN_BUCKET_MS, cooldown_ms or DEFAULT_COOLDOWN_MS)
    return int(math.floor(now_ms / bucket_ms))


def build_idempotency_key(parts: Iterable[str], now_ms: float, cooldown_ms: float | None = None) -> str:
    return "|".join([*(str(part).lower() for part in parts), str(time_bucket(now_ms, cooldown_ms))])


def has_key(state: StrategyState, key: str) -> bool:
    return key in state.idempotency_keys


def record_key(state: StrategyState, key: str, max_size: int = DEFAULT_MAX_IDEMPOTENCY_KEYS) -> None:
    state.idempotency_keys.append(key)
    prune_idempotency_keys(state, max_size)
