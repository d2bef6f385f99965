from __future__ import annotations

import math
from typing import Any


def to_number(value: Any) -> float | None:
    """Coerce payload values (str/int/float) to a finite float, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def round_half_up(value: float, decimals: int = 6) -> float:
    factor = 10 ** decimals
    return math.floor(value * factor + 0.5) / factor


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))
