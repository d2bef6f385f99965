from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections import defaultdict
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

from mirror_bot.autopilot import run_autopilot
from mirror_bot.config import (
    AppSettings,
    AutopilotSettings,
    MirrorSyncSettings,
    StrategyConfigError,
    load_settings,
)
from mirror_bot.depth import depth_for_market
from mirror_bot.framework.control_loop import RunSummary, StopToken, install_signal_handlers
from mirror_bot.logging_setup import configure_logging
from mirror_bot.market_legs import legs_from_payloads
from mirror_bot.mirror_sync import run_mirror_sync
from mirror_bot.models import MarketLeg
from mirror_bot.opportunity import scan_arbitrage
from mirror_bot.sizing import distribution_hint, recommend_liquidity
from mirror_bot.verify import pandora_market_context, polymarket_market_context, verify_pair
from mirror_bot.webhooks import WebhookNotifier

LOGGER = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def _read_json(path: str | Path) -> Any:
    return json.loads(Path(path).expanduser().read_text(encoding="utf-8"))


def _emit(payload: Mapping[str, Any]) -> None:
    json.dump(payload, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")


def _add_loop_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mode", choices=("once", "run"), default="once")
    parser.add_argument("--iterations", type=int, default=None, help="Iteration cap for --mode run")
    parser.add_argument("--interval-ms", type=int, default=5000)
    parser.add_argument("--cooldown-ms", type=int, default=60000)
    parser.add_argument("--max-open-exposure-usdc", type=float, default=None)
    parser.add_argument("--state-file", type=str, default=None)
    parser.add_argument("--kill-switch-file", type=str, default=None)
    parser.add_argument(
        "--notify",
        action="store_true",
        help="Send webhook notifications to the targets configured in the environment",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cross-venue prediction-market matching, sizing and mirror automation",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Cluster legs across venues and rank arbitrage opportunities")
    scan.add_argument("--legs", required=True, help="JSON list of raw venue payloads (each with a 'venue' field)")
    scan.add_argument("--similarity-threshold", type=float, default=None)
    scan.add_argument("--max-close-diff-hours", type=float, default=None)
    scan.add_argument("--min-spread-pct", type=float, default=None)
    scan.add_argument("--limit", type=int, default=None)
    scan.add_argument("--allow-same-venue", action="store_true", help="Also link legs from the same venue")
    scan.add_argument("--include-similarity", action="store_true")

    size = sub.add_parser("size", help="Recommend mirrored pool liquidity and an initial distribution")
    size.add_argument("--volume-24h", type=float, required=True)
    size.add_argument("--depth", type=float, required=True, help="Source depth within slippage (USD)")
    size.add_argument("--probability-yes", type=float, default=None, help="0..1 or 0..100")
    size.add_argument("--target-slippage-bps", type=float, default=None)

    autopilot = sub.add_parser("autopilot", help="Paper-mode threshold autopilot fed from a quote file")
    autopilot.add_argument("--quote-file", required=True, help="JSON quote, re-read every tick")
    autopilot.add_argument("--market-address", required=True)
    autopilot.add_argument("--side", choices=("yes", "no"), required=True)
    autopilot.add_argument("--amount-usdc", type=float, required=True)
    autopilot.add_argument("--trigger-yes-below", type=float, default=None)
    autopilot.add_argument("--trigger-yes-above", type=float, default=None)
    autopilot.add_argument("--max-amount-usdc", type=float, default=None)
    autopilot.add_argument("--max-trades-per-day", type=int, default=10)
    _add_loop_args(autopilot)

    mirror = sub.add_parser("mirror-sync", help="Paper-mode mirror sync fed from verify/depth files")
    mirror.add_argument(
        "--verify-file",
        required=True,
        help="Verify payload, or raw {pandoraMarket, poll, polymarketMarket} rows, re-read every tick",
    )
    mirror.add_argument("--depth-file", required=True, help="Order books keyed by token id, re-read every tick")
    mirror.add_argument("--pandora-market-address", required=True)
    mirror.add_argument("--polymarket-market-id", default="")
    mirror.add_argument("--polymarket-slug", default="")
    mirror.add_argument("--drift-trigger-bps", type=float, default=150.0)
    mirror.add_argument("--no-hedge", action="store_true")
    mirror.add_argument("--hedge-ratio", type=float, default=1.0)
    mirror.add_argument("--hedge-trigger-usdc", type=float, default=10.0)
    mirror.add_argument("--max-rebalance-usdc", type=float, default=25.0)
    mirror.add_argument("--max-hedge-usdc", type=float, default=50.0)
    mirror.add_argument("--depth-slippage-bps", type=int, default=100)
    mirror.add_argument("--max-trades-per-day", type=int, default=50)
    _add_loop_args(mirror)

    return parser.parse_args(argv)


async def _run_scan(args: argparse.Namespace, settings: AppSettings) -> Dict[str, Any]:
    match = settings.match
    overrides: Dict[str, Any] = {
        "similarity_threshold": args.similarity_threshold,
        "max_close_diff_hours": args.max_close_diff_hours,
        "min_spread_pct": args.min_spread_pct,
        "limit": args.limit,
    }
    match = replace(match, **{key: value for key, value in overrides.items() if value is not None})
    if args.allow_same_venue:
        match = replace(match, cross_venue_only=False)
    if args.include_similarity:
        match = replace(match, include_similarity=True)

    rows = _read_json(args.legs)
    if not isinstance(rows, list):
        raise StrategyConfigError(f"{args.legs} must contain a JSON list of venue payloads")
    by_venue: Dict[str, List[MarketLeg]] = defaultdict(list)
    for leg in legs_from_payloads(rows):
        by_venue[leg.venue].append(leg)

    sources = {venue: (lambda legs=legs: legs) for venue, legs in by_venue.items()}
    report = await scan_arbitrage(sources, match)
    return report.to_dict()


def _run_size(args: argparse.Namespace, settings: AppSettings) -> Dict[str, Any]:
    sizing = settings.sizing
    if args.target_slippage_bps is not None:
        sizing = replace(sizing, target_slippage_bps=args.target_slippage_bps)
    recommendation = recommend_liquidity(args.volume_24h, args.depth, sizing)
    hint = distribution_hint(args.probability_yes)
    return {**recommendation.to_dict(), "distributionHint": hint.to_dict()}


def _verify_from_file(path: str) -> Dict[str, Any]:
    raw = _read_json(path)
    if not isinstance(raw, Mapping):
        raise ValueError(f"{path} must contain a JSON object")
    if "gateResult" in raw:
        return dict(raw)
    pandora = pandora_market_context(raw.get("pandoraMarket") or {}, raw.get("poll"))
    source = polymarket_market_context(raw.get("polymarketMarket") or {})
    return verify_pair(pandora, source)


def _notifier(args: argparse.Namespace, settings: AppSettings) -> WebhookNotifier | None:
    if not args.notify:
        return None
    notifier = WebhookNotifier(settings.webhook)
    if not notifier.has_targets:
        LOGGER.warning("--notify given but no webhook targets are configured")
        return None
    return notifier


async def _run_loop(args: argparse.Namespace, settings: AppSettings) -> RunSummary:
    notifier = _notifier(args, settings)
    send_webhook = notifier.send if notifier is not None else None
    token = StopToken()
    remove_handlers = install_signal_handlers(token)
    try:
        if args.command == "autopilot":
            autopilot_settings = AutopilotSettings(
                market_address=args.market_address,
                side=args.side,
                amount_usdc=args.amount_usdc,
                trigger_yes_below=args.trigger_yes_below,
                trigger_yes_above=args.trigger_yes_above,
                mode=args.mode,
                interval_ms=args.interval_ms,
                cooldown_ms=args.cooldown_ms,
                max_amount_usdc=args.max_amount_usdc,
                max_open_exposure_usdc=args.max_open_exposure_usdc,
                max_trades_per_day=args.max_trades_per_day,
                iterations=args.iterations,
                state_file=args.state_file,
                kill_switch_file=args.kill_switch_file,
            )
            return await run_autopilot(
                autopilot_settings,
                lambda _params: _read_json(args.quote_file),
                send_webhook=send_webhook,
                stop=token,
                state_dir=settings.state_dir,
            )

        mirror_settings = MirrorSyncSettings(
            pandora_market_address=args.pandora_market_address,
            polymarket_market_id=args.polymarket_market_id,
            polymarket_slug=args.polymarket_slug,
            mode=args.mode,
            drift_trigger_bps=args.drift_trigger_bps,
            hedge_enabled=not args.no_hedge,
            hedge_ratio=args.hedge_ratio,
            hedge_trigger_usdc=args.hedge_trigger_usdc,
            max_rebalance_usdc=args.max_rebalance_usdc,
            max_hedge_usdc=args.max_hedge_usdc,
            depth_slippage_bps=args.depth_slippage_bps,
            interval_ms=args.interval_ms,
            cooldown_ms=args.cooldown_ms,
            max_open_exposure_usdc=args.max_open_exposure_usdc,
            max_trades_per_day=args.max_trades_per_day,
            iterations=args.iterations,
            state_file=args.state_file,
            kill_switch_file=args.kill_switch_file,
        )
        return await run_mirror_sync(
            mirror_settings,
            lambda _params: _verify_from_file(args.verify_file),
            lambda source, params: depth_for_market(
                source, _read_json(args.depth_file), params["slippageBps"]
            ).to_dict(),
            send_webhook=send_webhook,
            stop=token,
            state_dir=settings.state_dir,
        )
    finally:
        remove_handlers()


async def _run(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.log_level)

    try:
        if args.command == "scan":
            payload = await _run_scan(args, settings)
        elif args.command == "size":
            payload = _run_size(args, settings)
        else:
            summary = await _run_loop(args, settings)
            payload = summary.to_dict()
    except StrategyConfigError as exc:
        LOGGER.error("invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    _emit(payload)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(_run(argv))


if __name__ == "__main__":
    raise SystemExit(main())
