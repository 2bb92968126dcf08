#!/usr/bin/env python3
"""
position_engine.py — Open, close and simulate positions.

The engine holds no positions of its own. Each call reads through the store,
computes, and writes back, so the store stays the single source of truth.

Lifecycle:  OPEN --close--> CLOSED   (terminal)

P&L is per unit of the asset and frozen at close time:
  BUY   profitLoss = close - entry
  SELL  profitLoss = entry - close
  profitLossPercent = profitLoss / entry * 100
"""

import logging
import uuid

from positions import (
    OPEN, SIDES, SOURCE_MANUAL, NotFound, OpenPosition, PriceSample, SimulationResult,
    ValidationError, parse_instant, positive_number, profit_loss, to_iso, utcnow, variation_percent,
)

log = logging.getLogger("positions.engine")


class PositionEngine:
    def __init__(self, store, oracle=None, clock=utcnow):
        self.store = store
        self.oracle = oracle
        self._clock = clock

    def _require_open(self, position_id):
        position = self.store.get(position_id)
        if position is None or position.status != OPEN:
            raise NotFound()
        return position

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def open(self, side, price_usd, amount=None, opened_at=None):
        if isinstance(side, str):
            side = side.strip().upper()
        if side not in SIDES:
            raise ValidationError(f"side must be one of {', '.join(SIDES)}")

        position = OpenPosition(
            id=str(uuid.uuid4()),
            side=side,
            price_usd=positive_number(price_usd, "priceUsd"),
            opened_at=to_iso(opened_at if opened_at is not None else self._clock()),
            amount=positive_number(amount, "amount") if amount is not None else None,
        )
        self.store.add(position)
        log.info(f"Opened {position.side} {position.id[:8]} @ ${position.price_usd:,.2f}")
        return position

    def close(self, position_id, closed_at, close_price_usd):
        close_price = positive_number(close_price_usd, "closePriceUsd")
        closed_iso = to_iso(closed_at)

        with self.store.transaction():
            position = self._require_open(position_id)
            closed = position.close(closed_iso, close_price)
            if not self.store.update(position_id, closed.to_dict()):
                raise NotFound()

        log.info(
            f"Closed {closed.side} {closed.id[:8]} @ ${close_price:,.2f} "
            f"P&L {closed.profit_loss:+,.2f} ({closed.profit_loss_percent:+.2f}%)"
        )
        return closed

    def delete(self, position_id):
        deleted = self.store.delete(position_id)
        if deleted:
            log.info(f"Deleted position {position_id[:8]}")
        return deleted

    # ── What-if ───────────────────────────────────────────────────────────────

    def fetch_price(self, at_instant=None, manual_override=None):
        if self.oracle is None:
            raise ValidationError("No price source configured, enter a price manually")
        return self.oracle.fetch_price(at_instant, manual_override)

    def simulate(self, position_id, at_instant=None, hypothetical_price=None):
        """
        What the position would be worth at at_instant and a given price.

        Without hypothetical_price the price comes from the oracle for that
        instant (OracleUnavailable propagates). Nothing is written. A
        simulated instant before the open time gives a negative duration,
        which is reported as-is with a note.
        """
        position = self._require_open(position_id)
        instant = parse_instant(at_instant if at_instant is not None else self._clock())

        if hypothetical_price is not None:
            sample = self._manual_sample(hypothetical_price)
        else:
            sample = self.fetch_price(instant)

        pnl, pnl_pct = profit_loss(position.side, position.price_usd, sample.price)
        opened = parse_instant(position.opened_at)
        duration_hours = (instant - opened).total_seconds() / 3600

        notes = []
        if duration_hours < 0:
            notes.append("Simulation time is before the position was opened")

        return SimulationResult(
            position=position,
            simulated_at=to_iso(instant),
            price=sample.price,
            profit_loss=pnl,
            profit_loss_percent=pnl_pct,
            variation_percent=variation_percent(position.price_usd, sample.price),
            duration_hours=duration_hours,
            price_source=sample.source,
            price_fetched_at=sample.fetched_at,
            notes=notes,
        )

    def _manual_sample(self, price):
        price = positive_number(price, "price")
        if self.oracle is not None:
            return self.oracle.fetch_price(manual_override=price)
        return PriceSample(price, to_iso(self._clock()), SOURCE_MANUAL)

    # ── Reporting ─────────────────────────────────────────────────────────────

    def summary(self):
        positions = self.store.list_all()
        closed = [p for p in positions if p.status != OPEN]
        wins = [p for p in closed if p.profit_loss > 0]
        return {
            "total":            len(positions),
            "open":             len(positions) - len(closed),
            "closed":           len(closed),
            "realizedPnl":      sum(p.profit_loss for p in closed),
            "wins":             len(wins),
            "losses":           len(closed) - len(wins),
            "winRate":          len(wins) / len(closed) if closed else None,
        }
