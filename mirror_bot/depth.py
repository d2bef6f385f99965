"""Executable order-book depth within a slippage band."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from mirror_bot.numeric import round_half_up, to_number


@dataclass(frozen=True)
class BookLevel:
    price: float
    size: float


@dataclass(frozen=True)
class OrderBook:
    bids: tuple[BookLevel, ...]
    asks: tuple[BookLevel, ...]

    @property
    def best_bid(self) -> float | None:
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0].price if self.asks else None

    @property
    def mid_price(self) -> float | None:
        bid, ask = self.best_bid, self.best_ask
        if bid is not None and ask is not None:
            return round_half_up((bid + ask) / 2, 8)
        if ask is not None:
            return ask
        return bid


@dataclass(frozen=True)
class DepthEstimate:
    depth_usd: float
    depth_shares: float
    worst_price: float | None
    mid_price: float | None
    diagnostics: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarketDepth:
    depth_within_slippage_usd: float
    yes_depth: Optional[DepthEstimate]
    no_depth: Optional[DepthEstimate]
    slippage_bps: float
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "depthWithinSlippageUsd": self.depth_within_slippage_usd,
            "yesDepth": None if self.yes_depth is None else self.yes_depth.depth_usd,
            "noDepth": None if self.no_depth is None else self.no_depth.depth_usd,
            "slippageBps": self.slippage_bps,
            "diagnostics": list(self.diagnostics),
        }


def _levels(entries: Any) -> List[BookLevel]:
    levels: List[BookLevel] = []
    if not isinstance(entries, (list, tuple)):
        return levels
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        price = to_number(entry.get("price"))
        size = to_number(entry.get("size"))
        if price is None or size is None or size <= 0:
            continue
        levels.append(BookLevel(price=price, size=size))
    return levels


def normalize_order_book(book: Any) -> OrderBook:
    if not isinstance(book, Mapping):
        return OrderBook(bids=(), asks=())
    bids = sorted(_levels(book.get("bids")), key=lambda level: level.price, reverse=True)
    asks = sorted(_levels(book.get("asks")), key=lambda level: level.price)
    return OrderBook(bids=tuple(bids), asks=tuple(asks))


def executable_depth(book: Any, side: str, slippage_bps: float) -> DepthEstimate:
    """USD notional fillable from mid up to ``mid * (1 +/- bps/1e4)``."""
    normalized = book if isinstance(book, OrderBook) else normalize_order_book(book)
    mid = normalized.mid_price
    if mid is None:
        return DepthEstimate(0.0, 0.0, None, None, ("Orderbook midpoint unavailable.",))

    factor = slippage_bps / 10_000
    buying = side == "buy"
    levels = normalized.asks if buying else normalized.bids
    price_limit = mid * (1 + factor) if buying else mid * (1 - factor)

    depth_usd = 0.0
    depth_shares = 0.0
    worst_price = None
    for level in levels:
        if buying and level.price > price_limit:
            break
        if not buying and level.price < price_limit:
            break
        depth_shares += level.size
        depth_usd += level.price * level.size
        worst_price = level.price

    return DepthEstimate(
        depth_usd=round_half_up(depth_usd, 6),
        depth_shares=round_half_up(depth_shares, 6),
        worst_price=None if worst_price is None else round_half_up(worst_price, 8),
        mid_price=round_half_up(mid, 8),
    )


def depth_within_slippage(yes_book: Any, no_book: Any, slippage_bps: float) -> MarketDepth:
    """Buy-side depth on both outcome books; the thinner side bounds the market."""
    diagnostics: List[str] = []
    yes_depth = executable_depth(yes_book, "buy", slippage_bps) if yes_book else None
    no_depth = executable_depth(no_book, "buy", slippage_bps) if no_book else None
    if yes_depth is None:
        diagnostics.append("YES token orderbook unavailable.")
    if no_depth is None:
        diagnostics.append("NO token orderbook unavailable.")
    candidates = [estimate.depth_usd for estimate in (yes_depth, no_depth) if estimate is not None]
    return MarketDepth(
        depth_within_slippage_usd=min(candidates) if candidates else 0.0,
        yes_depth=yes_depth,
        no_depth=no_depth,
        slippage_bps=slippage_bps,
        diagnostics=diagnostics,
    )


def depth_for_market(
    market: Mapping[str, Any],
    order_books: Mapping[str, Any],
    slippage_bps: float = 100,
) -> MarketDepth:
    """Depth for a source market whose outcome books are keyed by token id."""
    yes_book = order_books.get(str(market.get("yesTokenId") or ""))
    no_book = order_books.get(str(market.get("noTokenId") or ""))
    return depth_within_slippage(yes_book, no_book, slippage_bps)
