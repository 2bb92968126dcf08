#!/usr/bin/env python3
"""
Position tracker CLI

Open, close and simulate ETH positions from the terminal, sharing the same
store as the API.

Usage:
    python tracker.py list                                  # all positions
    python tracker.py open --price 2000 [--side SELL] [--at 2025-01-05T09:00Z]
    python tracker.py open --fetch [--at ...]               # price from CoinGecko
    python tracker.py close <id> --price 2200 [--at ...]
    python tracker.py simulate <id> [--price 2100] [--at ...]
    python tracker.py delete <id>
    python tracker.py price [--at ...]
    python tracker.py summary
"""

import argparse
import sys

from formatting import (
    format_currency, format_date, format_datetime, format_percentage, position_duration,
)
from positions import CLOSED, NotFound, OracleUnavailable, TrackerError, ValidationError, utcnow
from tracker_config import build_engine, load_config, setup_logging

MANUAL_ENTRY_MESSAGE = "CoinGecko API failed. Please enter price manually."


def _print_positions(positions, now=None):
    if not positions:
        print("  No positions yet")
        return
    now = now or utcnow()
    for p in positions:
        line = (
            f"  {p.id[:8]}  {p.side:4}  {p.status:6}  "
            f"open ${p.price_usd:,.2f} {format_date(p.opened_at):12}  "
            f"held {position_duration(p, now):>5}"
        )
        if p.status == CLOSED:
            line += (
                f"  close ${p.close_price_usd:,.2f}  "
                f"P&L {format_currency(p.profit_loss)} ({format_percentage(p.profit_loss_percent)})"
            )
        print(line)


def _resolve_id(engine, prefix):
    """Accept a full id or an unambiguous prefix as printed by `list`."""
    matches = [p.id for p in engine.store.list_all() if p.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else prefix


def cmd_list(engine, args):
    _print_positions(engine.store.list_all())


def cmd_open(engine, args):
    price = args.price
    if price is None:
        if not args.fetch:
            raise ValidationError("Please fetch price or enter manually")
        sample = engine.fetch_price(args.at)
        print(f"  Fetched ${sample.price:,.2f} ({sample.source.replace('_', ' ')})")
        price = sample.price
    p = engine.open(args.side, price, amount=args.amount, opened_at=args.at)
    print(f"  {p.side} position opened at ${p.price_usd:,.2f} on {format_datetime(p.opened_at)}")
    print(f"  id: {p.id}")


def cmd_close(engine, args):
    closed_at = args.at or utcnow()
    price = args.price
    if price is None:
        sample = engine.fetch_price(closed_at)
        print(f"  Fetched ${sample.price:,.2f} ({sample.source.replace('_', ' ')})")
        price = sample.price
    p = engine.close(_resolve_id(engine, args.id), closed_at, price)
    print(f"  Position closed on {format_datetime(p.closed_at)}")
    print(f"  P&L: {format_currency(p.profit_loss)} ({format_percentage(p.profit_loss_percent)})")


def cmd_simulate(engine, args):
    r = engine.simulate(_resolve_id(engine, args.id), args.at, args.price)
    print(f"  Position:        {r.position.side} @ ${r.position.price_usd:,.2f}")
    print(f"  Simulation time: {format_datetime(r.simulated_at)}")
    print(f"  Simulation price ${r.price:,.2f} ({r.price_source.replace('_', ' ')})")
    print(f"  Variation:       {format_percentage(r.variation_percent)}")
    print(f"  Profit/Loss:     {format_currency(r.profit_loss)} ({format_percentage(r.profit_loss_percent)})")
    print(f"  Duration:        {r.duration_hours:.1f} hours")
    for note in r.notes:
        print(f"  ! {note}")


def cmd_delete(engine, args):
    if not engine.delete(_resolve_id(engine, args.id)):
        raise NotFound("Position not found")
    print("  Deleted")


def cmd_price(engine, args):
    s = engine.fetch_price(args.at)
    print(f"  ${s.price:,.2f}  source={s.source}  fetched_at={s.fetched_at}")


def cmd_summary(engine, args):
    s = engine.summary()
    win_rate = s["winRate"]
    print(f"  Positions:     {s['total']} ({s['open']} open, {s['closed']} closed)")
    print(f"  Realized P&L:  {format_currency(s['realizedPnl'])}")
    print(f"  Wins/Losses:   {s['wins']}/{s['losses']}")
    print(f"  Win rate:      {f'{win_rate:.1%}' if win_rate is not None else 'n/a'}")


COMMANDS = {
    "list":     cmd_list,
    "open":     cmd_open,
    "close":    cmd_close,
    "simulate": cmd_simulate,
    "delete":   cmd_delete,
    "price":    cmd_price,
    "summary":  cmd_summary,
}


def build_parser():
    parser = argparse.ArgumentParser(description="Position tracker")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Show all positions, newest first")

    p = sub.add_parser("open", help="Open a position")
    p.add_argument("--side",   default="BUY", type=str.upper, choices=["BUY", "SELL"])
    p.add_argument("--price",  type=float, help="Entry price in USD")
    p.add_argument("--fetch",  action="store_true", help="Fetch entry price from CoinGecko")
    p.add_argument("--amount", type=float)
    p.add_argument("--at",     help="Open time, ISO-8601 UTC (default: now)")

    p = sub.add_parser("close", help="Close an open position")
    p.add_argument("id")
    p.add_argument("--price", type=float, help="Close price in USD (default: fetch)")
    p.add_argument("--at",    help="Close time, ISO-8601 UTC (default: now)")

    p = sub.add_parser("simulate", help="What-if close without writing anything")
    p.add_argument("id")
    p.add_argument("--price", type=float, help="Hypothetical price (default: fetch)")
    p.add_argument("--at",    help="Simulation time, ISO-8601 UTC (default: now)")

    p = sub.add_parser("delete", help="Remove a position")
    p.add_argument("id")

    p = sub.add_parser("price", help="Show the reference price")
    p.add_argument("--at", help="Instant, ISO-8601 UTC (default: now)")

    sub.add_parser("summary", help="Realized P&L and win rate")
    return parser


def main(argv=None, engine=None):
    args = build_parser().parse_args(argv)
    if engine is None:
        cfg = load_config()
        setup_logging(cfg["log_level"])
        engine = build_engine(cfg)
    try:
        COMMANDS[args.command](engine, args)
    except OracleUnavailable:
        print(f"Error: {MANUAL_ENTRY_MESSAGE}", file=sys.stderr)
        return 1
    except TrackerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
