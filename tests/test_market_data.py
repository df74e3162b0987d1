"""Tests for the HTTP market-data feed."""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from guardgate.errors import UpstreamFault
from guardgate.market_data import HttpMarketDataFeed


def _session_for(status: int = 200, payload=None, get_error: Exception = None) -> MagicMock:
    """ClientSession() stand-in: async context manager whose get() yields one response."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload)

    request_ctx = MagicMock()
    request_ctx.__aenter__ = AsyncMock(return_value=resp)
    request_ctx.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if get_error is not None:
        session.get = MagicMock(side_effect=get_error)
    else:
        session.get = MagicMock(return_value=request_ctx)

    session_ctx = MagicMock()
    session_ctx.__aenter__ = AsyncMock(return_value=session)
    session_ctx.__aexit__ = AsyncMock(return_value=False)
    return session_ctx


# ── HTTP feed ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_http_feed_parses_object() -> None:
    """A 200 JSON object becomes MarketData."""
    session_ctx = _session_for(200, {"price": 2650, "fundingRate": 0.0002})
    with patch("guardgate.market_data.aiohttp.ClientSession", return_value=session_ctx):
        data = await HttpMarketDataFeed("https://md.example/").fetch("GOLD-USDH")

    assert data.price == 2650.0
    assert data.funding_rate == 0.0002
    session = session_ctx.__aenter__.return_value
    assert session.get.call_args.args == ("https://md.example/markets/GOLD-USDH",)


@pytest.mark.asyncio
async def test_http_feed_non_200_is_upstream_fault() -> None:
    """A non-200 status is reported at the market_data stage."""
    with patch("guardgate.market_data.aiohttp.ClientSession", return_value=_session_for(503)):
        with pytest.raises(UpstreamFault) as exc:
            await HttpMarketDataFeed("https://md.example").fetch("ETH-PERP")
    assert exc.value.stage == "market_data"
    assert "503" in str(exc.value)


@pytest.mark.asyncio
async def test_http_feed_non_object_body_is_upstream_fault() -> None:
    """A JSON list is not market data."""
    with patch("guardgate.market_data.aiohttp.ClientSession", return_value=_session_for(200, [1, 2])):
        with pytest.raises(UpstreamFault) as exc:
            await HttpMarketDataFeed("https://md.example").fetch("ETH-PERP")
    assert exc.value.stage == "market_data"


@pytest.mark.asyncio
async def test_http_feed_connection_error_is_upstream_fault() -> None:
    """Transport errors are wrapped, with the cause chained."""
    error = aiohttp.ClientConnectionError("connection refused")
    with patch("guardgate.market_data.aiohttp.ClientSession", return_value=_session_for(get_error=error)):
        with pytest.raises(UpstreamFault) as exc:
            await HttpMarketDataFeed("https://md.example").fetch("ETH-PERP")
    assert exc.value.stage == "market_data"
    assert exc.value.__cause__ is error
