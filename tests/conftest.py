import pytest
from datetime import datetime, timezone

from position_engine import PositionEngine
from position_store import MemoryStorageAdapter, PositionStore
from positions import OracleUnavailable
from price_oracle import PriceOracle

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


class FakeCoinGecko:
    """Stands in for the HTTP transport; records every URL requested."""

    def __init__(self, live=3000.0, historical=2500.0):
        self.live = live
        self.historical = historical
        self.fail = False
        self.calls = []

    def __call__(self, url, headers, timeout):
        self.calls.append(url)
        if self.fail:
            raise OracleUnavailable("HTTP 429: Too Many Requests")
        if "/history" in url:
            return {"market_data": {"current_price": {"usd": self.historical}}}
        return {"ethereum": {"usd": self.live}}


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store():
    return PositionStore(MemoryStorageAdapter())


@pytest.fixture
def coingecko():
    return FakeCoinGecko()


@pytest.fixture
def oracle(coingecko, clock):
    return PriceOracle(fetch_json=coingecko, clock=clock)


@pytest.fixture
def engine(store, oracle, clock):
    return PositionEngine(store, oracle=oracle, clock=clock)
