"""YES/NO odds extraction from loosely-shaped venue payloads.

Venue payloads carry odds under several field conventions. Each convention
is an extractor returning ``OddsResult | None``; ``extract_odds`` tries them
in priority order and the first hit wins.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from mirror_bot.numeric import round_half_up, to_number

ODDS_UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class OddsResult:
    yes_pct: float | None
    no_pct: float | None
    source: str

    @property
    def available(self) -> bool:
        return self.yes_pct is not None


OddsExtractor = Callable[[Mapping[str, Any]], Optional[OddsResult]]


def _first_number(payload: Mapping[str, Any], keys: Iterable[str]) -> float | None:
    for key in keys:
        value = to_number(payload.get(key))
        if value is not None:
            return value
    return None


def _from_yes_probability(probability: float, source: str) -> OddsResult | None:
    if not 0 <= probability <= 1:
        return None
    yes_pct = round_half_up(probability * 100, 6)
    return OddsResult(yes_pct=yes_pct, no_pct=round_half_up(100 - yes_pct, 6), source=source)


def chance_to_probability(raw: float) -> float:
    """Fraction, percent, or 1e9-scaled chance to a probability."""
    if 0 <= raw <= 1:
        return raw
    if 1 < raw <= 100:
        return raw / 100
    return raw / 1e9


def _scopes(payload: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
    nested = payload.get("odds")
    if isinstance(nested, Mapping):
        return (nested, payload)
    return (payload,)


def from_pct_fields(payload: Mapping[str, Any]) -> OddsResult | None:
    for scope in _scopes(payload):
        yes_pct = _first_number(scope, ("yesPct", "yes_pct"))
        no_pct = _first_number(scope, ("noPct", "no_pct"))
        if yes_pct is None and no_pct is not None:
            yes_pct = 100 - no_pct
        if yes_pct is None:
            continue
        if no_pct is None:
            no_pct = 100 - yes_pct
        return OddsResult(yes_pct=yes_pct, no_pct=no_pct, source="pct")
    return None


def from_probability_fields(payload: Mapping[str, Any]) -> OddsResult | None:
    for scope in _scopes(payload):
        chance = _first_number(scope, ("yesChance", "yes_chance"))
        if chance is not None:
            result = _from_yes_probability(chance_to_probability(chance), "yesChance")
            if result is not None:
                return result
        probability = _first_number(scope, ("yesProbability", "probability"))
        if probability is not None:
            result = _from_yes_probability(probability, "probability")
            if result is not None:
                return result
    return None


def _outcome_prices(payload: Mapping[str, Any]) -> list[float] | None:
    raw = payload.get("outcomePrices")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return None
    prices = [to_number(value) for value in raw]
    if any(price is None for price in prices):
        return None
    return prices


def from_price_fields(payload: Mapping[str, Any]) -> OddsResult | None:
    yes_price = _first_number(payload, ("yesPrice", "yes_price"))
    no_price = _first_number(payload, ("noPrice", "no_price"))
    if yes_price is None or no_price is None:
        prices = _outcome_prices(payload)
        if prices is None:
            return None
        yes_price, no_price = prices
    total = yes_price + no_price
    if yes_price < 0 or no_price < 0 or total <= 0:
        return None
    yes_pct = round_half_up(yes_price / total * 100, 6)
    return OddsResult(yes_pct=yes_pct, no_pct=round_half_up(100 - yes_pct, 6), source="price")


def _reserve_ratio(reserve_yes: float | None, reserve_no: float | None, source: str) -> OddsResult | None:
    if reserve_yes is None or reserve_no is None:
        return None
    total = reserve_yes + reserve_no
    if reserve_yes < 0 or reserve_no < 0 or total <= 0:
        return None
    # The pool prices YES by the share of NO reserves.
    return _from_yes_probability(reserve_no / total, source)


def from_reserve_fields(payload: Mapping[str, Any]) -> OddsResult | None:
    return _reserve_ratio(
        _first_number(payload, ("reserveYes", "reserve_yes")),
        _first_number(payload, ("reserveNo", "reserve_no")),
        "reserves",
    )


def from_liquidity_events(payload: Mapping[str, Any]) -> OddsResult | None:
    events = payload.get("liquidityEvents")
    if not isinstance(events, (list, tuple)):
        return None
    candidates = [event for event in events if isinstance(event, Mapping)]
    candidates.sort(key=lambda event: to_number(event.get("timestamp")) or 0)
    for event in reversed(candidates):
        result = _reserve_ratio(
            _first_number(event, ("yesTokenAmount", "yesAmount")),
            _first_number(event, ("noTokenAmount", "noAmount")),
            "liquidity-event",
        )
        if result is not None:
            return result
    return None


DEFAULT_ODDS_EXTRACTORS: tuple[OddsExtractor, ...] = (
    from_pct_fields,
    from_probability_fields,
    from_price_fields,
    from_reserve_fields,
    from_liquidity_events,
)


def extract_odds(
    payload: Mapping[str, Any] | None,
    extractors: Sequence[OddsExtractor] = DEFAULT_ODDS_EXTRACTORS,
) -> OddsResult:
    if isinstance(payload, Mapping):
        for extractor in extractors:
            result = extractor(payload)
            if result is not None:
                return result
    return OddsResult(yes_pct=None, no_pct=None, source=ODDS_UNAVAILABLE)
