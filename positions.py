#!/usr/bin/env python3
"""
positions.py — Position data model shared by the store, engine, API and CLI.

A position is either open or closed. The two states are separate frozen
dataclasses so a closed position always carries every close field and an
open one never carries any. Records on disk and on the wire use the camelCase
keys the dashboard has always used:

    {"id", "side", "priceUsd", "amount", "openedAt", "status",
     "closedAt", "closePriceUsd", "profitLoss", "profitLossPercent"}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone


BUY = "BUY"
SELL = "SELL"
SIDES = (BUY, SELL)

OPEN = "OPEN"
CLOSED = "CLOSED"

SOURCE_LIVE = "live_quote"
SOURCE_HISTORICAL = "historical_quote"
SOURCE_MANUAL = "manual"


# =============================================================================
# Errors
# =============================================================================

class TrackerError(Exception):
    """Base class for every failure the tracker surfaces to a caller."""


class OracleUnavailable(TrackerError):
    """Every upstream price source failed. Callers should offer manual entry."""

    def __init__(self, message="Price API failed, manual entry required"):
        super().__init__(message)


class NotFound(TrackerError):
    def __init__(self, message="Position not found or already closed"):
        super().__init__(message)


class ValidationError(TrackerError, ValueError):
    pass


class PersistenceError(TrackerError):
    pass


# =============================================================================
# Time helpers
# =============================================================================

def utcnow():
    return datetime.now(timezone.utc)


def parse_instant(value):
    """
    Accept a datetime or an ISO-8601 string and return an aware UTC datetime.
    A trailing 'Z' is accepted; naive values are taken to be UTC already.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value!r}")
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt):
    """Millisecond ISO string with a Z suffix, e.g. 2025-01-01T09:15:00.000Z."""
    dt = parse_instant(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def positive_number(value, name):
    """Coerce value to a float > 0 or raise ValidationError naming the field."""
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a positive number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a positive number")
    if not number > 0 or number == float("inf"):
        raise ValidationError(f"{name} must be a positive number")
    return number


# =============================================================================
# P&L
# =============================================================================

def profit_loss(side, entry_price, exit_price):
    """Return (profit_loss, profit_loss_percent) for one unit of the asset."""
    if side == BUY:
        diff = exit_price - entry_price
    else:
        diff = entry_price - exit_price
    return diff, diff / entry_price * 100


def variation_percent(entry_price, price):
    """Market move since entry, independent of side."""
    return (price - entry_price) / entry_price * 100


# =============================================================================
# Position states
# =============================================================================

@dataclass(frozen=True)
class OpenPosition:
    id: str
    side: str
    price_usd: float
    opened_at: str
    amount: float = None

    status = OPEN

    def to_dict(self):
        record = {
            "id":        self.id,
            "side":      self.side,
            "priceUsd":  self.price_usd,
            "openedAt":  self.opened_at,
            "status":    self.status,
        }
        if self.amount is not None:
            record["amount"] = self.amount
        return record

    def close(self, closed_at, close_price_usd):
        pnl, pnl_pct = profit_loss(self.side, self.price_usd, close_price_usd)
        return ClosedPosition(
            id=self.id,
            side=self.side,
            price_usd=self.price_usd,
            opened_at=self.opened_at,
            amount=self.amount,
            closed_at=closed_at,
            close_price_usd=close_price_usd,
            profit_loss=pnl,
            profit_loss_percent=pnl_pct,
        )


@dataclass(frozen=True)
class ClosedPosition:
    id: str
    side: str
    price_usd: float
    opened_at: str
    closed_at: str
    close_price_usd: float
    profit_loss: float
    profit_loss_percent: float
    amount: float = None

    status = CLOSED

    def to_dict(self):
        record = {
            "id":                self.id,
            "side":              self.side,
            "priceUsd":          self.price_usd,
            "openedAt":          self.opened_at,
            "status":            self.status,
            "closedAt":          self.closed_at,
            "closePriceUsd":     self.close_price_usd,
            "profitLoss":        self.profit_loss,
            "profitLossPercent": self.profit_loss_percent,
        }
        if self.amount is not None:
            record["amount"] = self.amount
        return record


def position_from_dict(record):
    """
    Build the right position state from a stored or submitted record.

    Raises ValidationError when the record is not a well-formed position,
    including a CLOSED record missing any close field.
    """
    if not isinstance(record, dict):
        raise ValidationError("Position record must be an object")

    position_id = record.get("id")
    if not isinstance(position_id, str) or not position_id:
        raise ValidationError("Position id is required")

    side = record.get("side")
    if side not in SIDES:
        raise ValidationError(f"side must be one of {', '.join(SIDES)}")

    amount = record.get("amount")
    common = {
        "id":        position_id,
        "side":      side,
        "price_usd": positive_number(record.get("priceUsd"), "priceUsd"),
        "opened_at": to_iso(record.get("openedAt")),
        "amount":    positive_number(amount, "amount") if amount is not None else None,
    }

    status = record.get("status", OPEN)
    if status == OPEN:
        return OpenPosition(**common)
    if status != CLOSED:
        raise ValidationError(f"Unknown status: {status!r}")

    for key in ("closedAt", "closePriceUsd", "profitLoss", "profitLossPercent"):
        if record.get(key) is None:
            raise ValidationError(f"Closed position is missing {key}")
    try:
        pnl = float(record["profitLoss"])
        pnl_pct = float(record["profitLossPercent"])
    except (TypeError, ValueError):
        raise ValidationError("profitLoss fields must be numbers")

    return ClosedPosition(
        closed_at=to_iso(record["closedAt"]),
        close_price_usd=positive_number(record["closePriceUsd"], "closePriceUsd"),
        profit_loss=pnl,
        profit_loss_percent=pnl_pct,
        **common,
    )


# =============================================================================
# Ephemeral results
# =============================================================================

@dataclass(frozen=True)
class PriceSample:
    price: float
    fetched_at: str
    source: str

    def to_dict(self):
        return {"price": self.price, "fetchedAt": self.fetched_at, "source": self.source}


@dataclass(frozen=True)
class SimulationResult:
    position: OpenPosition
    simulated_at: str
    price: float
    profit_loss: float
    profit_loss_percent: float
    variation_percent: float
    duration_hours: float
    price_source: str
    price_fetched_at: str
    notes: list = field(default_factory=list)

    def to_dict(self):
        return {
            "position":          self.position.to_dict(),
            "simulatedAt":       self.simulated_at,
            "simulationPrice":   self.price,
            "profitLoss":        self.profit_loss,
            "profitLossPercent": self.profit_loss_percent,
            "variationPercent":  self.variation_percent,
            "durationHours":     self.duration_hours,
            "priceSource":       self.price_source,
            "priceFetchedAt":    self.price_fetched_at,
            "notes":             list(self.notes),
        }
