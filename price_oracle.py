#!/usr/bin/env python3
"""
price_oracle.py — USD reference prices from CoinGecko.

Picks the live quote for recent instants and the daily historical quote for
anything older than an hour. Every upstream failure collapses into a single
OracleUnavailable so callers can fall back to manual entry.

Endpoints:
  live        GET /simple/price?ids={asset}&vs_currencies=usd
              → {"ethereum": {"usd": 3120.55}}
  historical  GET /coins/{asset}/history?date=DD-MM-YYYY
              → {"market_data": {"current_price": {"usd": 3120.55}}}

Historical quotes only resolve to the UTC calendar day of the instant.
"""

import json
import logging
from datetime import timedelta
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import urlopen, Request

from positions import (
    OracleUnavailable, PriceSample, SOURCE_HISTORICAL, SOURCE_LIVE, SOURCE_MANUAL,
    parse_instant, positive_number, to_iso, utcnow,
)

log = logging.getLogger("positions.oracle")

COINGECKO_API = "https://api.coingecko.com/api/v3"
USER_AGENT = "cbc-positions/1.0"


def _api_request(url, headers=None, timeout=15):
    """GET a JSON document, raising OracleUnavailable on any failure."""
    req_headers = dict(headers or {})
    req_headers.setdefault("User-Agent", USER_AGENT)
    req_headers.setdefault("Accept", "application/json")
    req = Request(url, headers=req_headers, method="GET")
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as e:
        raise OracleUnavailable(f"HTTP {e.code}: {e.reason}") from e
    except URLError as e:
        raise OracleUnavailable(f"Connection error: {e.reason}") from e
    except (ValueError, OSError) as e:
        # ValueError covers undecodable / non-JSON bodies, OSError covers timeouts
        raise OracleUnavailable(str(e)) from e


def _dig(data, *keys):
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _usd(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 < value < float("inf"):
        raise OracleUnavailable("Invalid response structure from CoinGecko API")
    return float(value)


class PriceOracle:
    """
    CoinGecko-backed price lookup for one asset.

    fetch_json is the transport: a callable (url, headers, timeout) -> parsed
    JSON that raises OracleUnavailable on failure. Tests swap it for a fake.
    """

    def __init__(self, asset="ethereum", base_url=COINGECKO_API, api_key=None,
                 timeout=15, historical_after=timedelta(hours=1),
                 fetch_json=_api_request, clock=utcnow):
        self.asset = asset
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.historical_after = historical_after
        self._fetch_json = fetch_json
        self._clock = clock

    @classmethod
    def from_config(cls, cfg):
        return cls(
            asset=cfg["asset"],
            base_url=cfg["coingecko_url"],
            api_key=cfg["coingecko_api_key"] or None,
            timeout=cfg["request_timeout"],
            historical_after=timedelta(minutes=cfg["historical_after_minutes"]),
        )

    # ── URLs ──────────────────────────────────────────────────────────────────

    def live_url(self):
        return (
            f"{self.base_url}/simple/price"
            f"?ids={quote(self.asset)}&vs_currencies=usd"
        )

    def historical_url(self, instant):
        day = parse_instant(instant).strftime("%d-%m-%Y")
        return f"{self.base_url}/coins/{quote(self.asset)}/history?date={day}&localization=false"

    def _headers(self):
        if self.api_key:
            return {"x-cg-demo-api-key": self.api_key}
        return {}

    # ── Lookups ───────────────────────────────────────────────────────────────

    def _get(self, url):
        log.debug(f"GET {url}")
        data = self._fetch_json(url, self._headers(), self.timeout)
        if not isinstance(data, dict):
            raise OracleUnavailable("Invalid response structure from CoinGecko API")
        return data

    def live_price(self):
        data = self._get(self.live_url())
        return _usd(_dig(data, self.asset, "usd"))

    def historical_price(self, instant):
        data = self._get(self.historical_url(instant))
        return _usd(_dig(data, "market_data", "current_price", "usd"))

    def fetch_price(self, at_instant=None, manual_override=None):
        """
        Return a PriceSample for at_instant (default: now).

        manual_override > 0 short-circuits the network; a non-positive
        override is a ValidationError. fetchedAt is when we asked, never a
        timestamp taken from the response.
        """
        now = self._clock()
        fetched_at = to_iso(now)

        if manual_override is not None:
            price = positive_number(manual_override, "price")
            return PriceSample(price, fetched_at, SOURCE_MANUAL)

        if at_instant is not None:
            instant = parse_instant(at_instant)
            if instant < now - self.historical_after:
                try:
                    price = self.historical_price(instant)
                except OracleUnavailable as e:
                    log.warning(f"Historical price for {instant.date()} unavailable: {e}")
                    raise OracleUnavailable() from e
                return PriceSample(price, fetched_at, SOURCE_HISTORICAL)

        try:
            price = self.live_price()
        except OracleUnavailable as e:
            log.warning(f"Live price unavailable: {e}")
            raise OracleUnavailable() from e
        return PriceSample(price, fetched_at, SOURCE_LIVE)
