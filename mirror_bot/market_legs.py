"""Normalization of raw venue market payloads into ``MarketLeg`` records."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from mirror_bot.models import MarketLeg, Venue
from mirror_bot.numeric import round_half_up, to_number
from mirror_bot.odds import extract_odds

LOGGER = logging.getLogger(__name__)

USDC_DECIMALS = 1_000_000
POLYMARKET_EVENT_URL = "https://polymarket.com/event/{slug}"

_YES_LABEL_RE = re.compile(r"^(yes|true)$", re.IGNORECASE)
_NO_LABEL_RE = re.compile(r"^(no|false)$", re.IGNORECASE)
_SOURCE_SPLIT_RE = re.compile(r"[\n,]")


def to_usdc(raw: Any) -> float | None:
    """Micro-USDC integer amounts to USDC."""
    numeric = to_number(raw)
    if numeric is None:
        return None
    return round_half_up(numeric / USDC_DECIMALS, 6)


def to_timestamp_seconds(value: Any) -> float | None:
    if value is None or value == "":
        return None
    numeric = to_number(value)
    if numeric is not None:
        return numeric
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return float(int(parsed.timestamp()))


def normalize_sources(value: Any) -> tuple[str, ...]:
    """Resolution sources from a list, a JSON list string, or a comma/newline list."""
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(entry or "").strip() for entry in value if str(entry or "").strip())
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return ()
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return normalize_sources(parsed)
        return tuple(part.strip() for part in _SOURCE_SPLIT_RE.split(text) if part.strip())
    return ()


def pandora_leg(market: Mapping[str, Any], poll: Optional[Mapping[str, Any]] = None) -> MarketLeg | None:
    """Pandora AMM market plus its poll (question/rules) to a leg.

    Returns None when no question text is available.
    """
    poll = poll or market.get("poll") or {}
    question = poll.get("question") or market.get("question")
    if not question:
        return None

    odds = extract_odds(market)
    market_id = str(market.get("id") or "")
    rules = poll.get("rules") or market.get("rules")
    return MarketLeg(
        leg_id=f"{Venue.PANDORA.value}:{market_id}",
        venue=Venue.PANDORA.value,
        market_id=market_id,
        question=str(question),
        close_timestamp=to_number(market.get("marketCloseTimestamp")),
        yes_pct=odds.yes_pct,
        no_pct=odds.no_pct,
        liquidity_usd=to_usdc(market.get("currentTvl")),
        volume_usd=to_usdc(market.get("totalVolume")),
        odds_source=f"{Venue.PANDORA.value}:{odds.source}",
        rules=str(rules) if rules else None,
        sources=normalize_sources(poll.get("sources") or market.get("sources")),
    )


def _token_label(token: Any) -> str:
    if not isinstance(token, Mapping):
        return ""
    return str(token.get("outcome") or "")


def polymarket_leg(row: Mapping[str, Any], index: int = 0) -> MarketLeg:
    diagnostics: List[str] = []
    yes_pct: float | None = None
    no_pct: float | None = None
    yes_token: Any = None
    no_token: Any = None

    tokens = row.get("tokens") or []
    if not isinstance(tokens, list) or not tokens:
        diagnostics.append("No token prices available from Polymarket market payload.")
    else:
        yes_token = next((t for t in tokens if _YES_LABEL_RE.match(_token_label(t))), None)
        no_token = next((t for t in tokens if _NO_LABEL_RE.match(_token_label(t))), None)
        if yes_token is None or no_token is None:
            if len(tokens) == 2:
                yes_token, no_token = tokens
                diagnostics.append("Mapped binary outcomes using token order (non-standard outcome labels).")
            else:
                yes_token = no_token = None
                diagnostics.append("Unable to map yes/no outcomes from token labels.")

    if yes_token is not None and no_token is not None:
        yes_price = to_number(yes_token.get("price")) if isinstance(yes_token, Mapping) else None
        no_price = to_number(no_token.get("price")) if isinstance(no_token, Mapping) else None
        if yes_price is None or no_price is None:
            diagnostics.append("Missing token prices for yes/no mapping.")
        elif yes_price + no_price <= 0:
            diagnostics.append("Invalid yes/no token total for probability normalization.")
        else:
            total = yes_price + no_price
            yes_pct = yes_price / total * 100
            no_pct = no_price / total * 100

    market_id = str(row.get("condition_id") or row.get("question_id") or "")
    slug = row.get("market_slug")
    return MarketLeg(
        leg_id=f"{Venue.POLYMARKET.value}:{market_id or 'unknown'}:{index}",
        venue=Venue.POLYMARKET.value,
        market_id=market_id,
        question=str(row.get("question") or row.get("description") or ""),
        close_timestamp=to_timestamp_seconds(row.get("end_date_iso") or row.get("game_start_time")),
        yes_pct=yes_pct,
        no_pct=no_pct,
        liquidity_usd=to_number(row.get("liquidity")),
        volume_usd=to_number(row.get("volume")),
        odds_source="polymarket:clob-markets",
        url=POLYMARKET_EVENT_URL.format(slug=slug) if slug else None,
        rules=row.get("description") or None,
        diagnostics=tuple(diagnostics),
        yes_token_id=_token_id(yes_token),
        no_token_id=_token_id(no_token),
    )


def _token_id(token: Any) -> str | None:
    if not isinstance(token, Mapping):
        return None
    value = token.get("token_id") or token.get("tokenId")
    return str(value) if value else None


def legs_from_payloads(rows: List[Mapping[str, Any]]) -> List[MarketLeg]:
    """Dispatch raw payloads by their ``venue`` field; unknown venues are skipped."""
    legs: List[MarketLeg] = []
    for index, row in enumerate(rows):
        venue = str(row.get("venue") or "").lower()
        if venue == Venue.PANDORA.value:
            leg = pandora_leg(row)
            if leg is not None:
                legs.append(leg)
        elif venue == Venue.POLYMARKET.value:
            legs.append(polymarket_leg(row, index))
        else:
            LOGGER.warning("skipping payload %d with unknown venue %r", index, venue)
    return legs
