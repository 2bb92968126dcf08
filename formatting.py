#!/usr/bin/env python3
"""
formatting.py — Display helpers for durations, percentages, money and dates.

Pure functions; nothing here touches the store or the network.
"""

import math
from decimal import Decimal, ROUND_HALF_UP

from positions import TrackerError, parse_instant, utcnow

DAYS_PER_MONTH = 30.44
UNAVAILABLE = "-"


def _round(value):
    """Round half up, the way the dashboard always has (2.5 → 3, -2.5 → -2)."""
    return int(math.floor(value + 0.5))


def format_duration(hours):
    """
    23.6 → "24h", 48 → "2d", 960 → "1mo", 9600 → "1.1y".

    Each threshold is checked on the converted unit: <24 hours, <30 days,
    <12 months (30.44 days each), <10 years with one decimal.
    """
    if hours < 24:
        return f"{_round(hours)}h"

    days = hours / 24
    if days < 30:
        return f"{_round(days)}d"

    months = days / DAYS_PER_MONTH
    if months < 12:
        return f"{_round(months)}mo"

    years = months / 12
    if years < 10:
        return f"{years:.1f}y"

    return f"{_round(years)}y"


def format_percentage(value):
    if value == 0:
        value = 0.0  # -0.0 prints as "-0.00"
    formatted = f"{value:.2f}"
    return f"+{formatted}%" if value > 0 else f"{formatted}%"


def format_currency(value):
    """en-US dollars, no cents: 1234.5 → "$1,235", -80 → "-$80"."""
    whole = Decimal(str(abs(value))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 and whole != 0 else ""
    return f"{sign}${int(whole):,}"


def position_duration(position, now=None):
    """
    Time held: closedAt (or now, while open) minus openedAt, formatted.
    Returns "-" when either timestamp is unusable or the span is negative.
    """
    try:
        opened = parse_instant(position.opened_at)
        if position.status == "CLOSED":
            end = parse_instant(position.closed_at)
        else:
            end = parse_instant(now if now is not None else utcnow())
    except (TrackerError, AttributeError):
        return UNAVAILABLE

    hours = (end - opened).total_seconds() / 3600
    if hours < 0:
        return UNAVAILABLE
    return format_duration(hours)


def format_datetime(value):
    """en-US 12-hour clock in UTC: 'Jan 5, 09:15 AM' or 'Invalid Date'."""
    try:
        dt = parse_instant(value)
    except TrackerError:
        return "Invalid Date"
    return f"{dt.strftime('%b')} {dt.day}, {dt.strftime('%I:%M %p')}"


def format_date(value):
    """'Jan 5, 2025' or 'Invalid Date'."""
    try:
        dt = parse_instant(value)
    except TrackerError:
        return "Invalid Date"
    return f"{dt.strftime('%b')} {dt.day}, {dt.year}"
