"""Market-data collaborator.

Read-only signals used by the strategy eligibility checker. The engine never
computes prices itself; every value here comes from a feed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import aiohttp

from guardgate.constants import MARKET_DATA_TIMEOUT_SEC
from guardgate.errors import UpstreamFault

logger = logging.getLogger(__name__)

_FIELDS = (
    ("price", "price"),
    ("fundingRate", "funding_rate"),
    ("basisSpread", "basis_spread"),
    ("volume24h", "volume_24h"),
    ("delta", "delta"),
    ("pnl", "pnl"),
)


class MarketData:
    """Snapshot of market signals. Any field may be missing (None)."""

    def __init__(
        self,
        price: Optional[float] = None,
        funding_rate: Optional[float] = None,
        basis_spread: Optional[float] = None,
        volume_24h: Optional[float] = None,
        delta: Optional[float] = None,
        pnl: Optional[float] = None,
    ) -> None:
        self.price = price
        self.funding_rate = funding_rate
        self.basis_spread = basis_spread
        self.volume_24h = volume_24h
        self.delta = delta
        self.pnl = pnl

    def __repr__(self) -> str:
        return "MarketData({})".format(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {wire: getattr(self, attr) for wire, attr in _FIELDS if getattr(self, attr) is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> MarketData:
        data = data or {}
        values = {}  # type: Dict[str, Any]
        for wire, attr in _FIELDS:
            value = data.get(wire, data.get(attr))
            if value is None:
                continue
            try:
                values[attr] = float(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring non-numeric market data field %s=%r", wire, value)
        return cls(**values)


class HttpMarketDataFeed:
    """Reads ``GET {base_url}/markets/{symbol}`` with a bounded timeout."""

    def __init__(self, base_url: str, timeout: float = MARKET_DATA_TIMEOUT_SEC) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def fetch(self, symbol: str) -> MarketData:
        url = "{}/markets/{}".format(self.base_url, symbol)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                    if resp.status != 200:
                        raise UpstreamFault(
                            "Market data HTTP {} for {}".format(resp.status, symbol),
                            stage="market_data",
                        )
                    data = await resp.json()
        except UpstreamFault:
            raise
        except Exception as e:
            logger.error("Market data fetch failed for %s: %s", symbol, e)
            raise UpstreamFault(
                "Market data unavailable for {}: {}".format(symbol, e), stage="market_data",
            ) from e

        if not isinstance(data, dict):
            raise UpstreamFault("Market data for {} is not an object".format(symbol), stage="market_data")
        return MarketData.from_dict(data)


def demo_markets() -> Dict[str, MarketData]:
    """Offline signals for the strategy default markets."""
    return {
        "GOLD-USDH": MarketData(price=2650.0, funding_rate=0.0002, basis_spread=0.003, volume_24h=15000000.0),
        "OIL-USDH": MarketData(price=78.0, funding_rate=0.0002, basis_spread=0.004, volume_24h=12000000.0),
        "ETH-PERP": MarketData(price=3800.0, funding_rate=0.0002, volume_24h=300000000.0, delta=75.0, pnl=-50.0),
        "BTC-PERP": MarketData(price=105000.0, funding_rate=0.0003, volume_24h=500000000.0, delta=0.0, pnl=0.0),
    }


class StaticMarketDataFeed:
    """In-memory feed for offline runs and tests."""

    def __init__(self, markets: Optional[Dict[str, MarketData]] = None) -> None:
        self._markets = dict(markets) if markets is not None else demo_markets()

    def set(self, symbol: str, data: MarketData) -> None:
        self._markets[symbol] = data

    async def fetch(self, symbol: str) -> MarketData:
        data = self._markets.get(symbol)
        if data is None:
            raise UpstreamFault("No market data for {}".format(symbol), stage="market_data")
        return data
