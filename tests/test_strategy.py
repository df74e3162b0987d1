"""Tests for strategy eligibility checks and market data feeds."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from guardgate.config import ActiveGuardiansConfig
from guardgate.errors import ConfigurationError, UpstreamFault
from guardgate.market_data import MarketData, StaticMarketDataFeed
from guardgate.risk_engine import RiskEngine
from guardgate.state import GuardianStateStore
from guardgate.strategy import StrategyEligibilityChecker

WEDNESDAY_NOON = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
SATURDAY_NOON = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> GuardianStateStore:
    return GuardianStateStore(clock=lambda: WEDNESDAY_NOON)


@pytest.fixture
def checker(store: GuardianStateStore) -> StrategyEligibilityChecker:
    return StrategyEligibilityChecker(RiskEngine(store))


def _strategy_reasons(result) -> list:
    return [d.reason for d in result.denials if d.guardian == "strategy"]


# ── Basis arb ─────────────────────────────────────────────────────────────────

def test_basis_arb_eligible(checker: StrategyEligibilityChecker) -> None:
    """Funding above minimum and spread under cap is eligible."""
    result = checker.check_eligibility("basisArb", market_data={"fundingRate": 0.0002, "basisSpread": 0.003})
    assert result.eligible
    assert result.denials == []
    assert result.message.startswith("Basis/Funding Arb eligible")


def test_basis_arb_low_funding(checker: StrategyEligibilityChecker) -> None:
    """Funding below minimum produces one strategy denial."""
    result = checker.check_eligibility("basisArb", market_data={"fundingRate": 0.00005, "basisSpread": 0.003})
    assert not result.eligible
    reasons = _strategy_reasons(result)
    assert len(reasons) == 1
    assert reasons[0].startswith("Funding rate")


def test_basis_arb_wide_spread(checker: StrategyEligibilityChecker) -> None:
    """Spread above maximum is denied."""
    result = checker.check_eligibility("basisArb", market_data={"fundingRate": 0.0002, "basisSpread": 0.01})
    assert _strategy_reasons(result)[0].startswith("Basis spread")


def test_missing_market_data_never_passes(checker: StrategyEligibilityChecker) -> None:
    """Absent signals are denied, not treated as passing."""
    result = checker.check_eligibility("basisArb", market_data={})
    assert not result.eligible
    assert _strategy_reasons(result) == [
        "Market data unavailable: fundingRate",
        "Market data unavailable: basisSpread",
    ]


def test_config_overrides_apply(checker: StrategyEligibilityChecker) -> None:
    """Overrides replace preset thresholds for this check."""
    result = checker.check_eligibility(
        "basisArb",
        config_overrides={"strategy": {"minFundingRate": 0.00001}},
        market_data={"fundingRate": 0.00005, "basisSpread": 0.003},
    )
    assert result.eligible


# ── Auto hedge ────────────────────────────────────────────────────────────────

def test_auto_hedge_eligible(checker: StrategyEligibilityChecker) -> None:
    """Delta drift above threshold with an in-limit hedge is eligible."""
    result = checker.check_eligibility("autoHedge", market_data={"delta": -75}, now=WEDNESDAY_NOON)
    assert result.eligible


def test_auto_hedge_small_delta(checker: StrategyEligibilityChecker) -> None:
    """Delta below threshold is not worth hedging."""
    result = checker.check_eligibility("autoHedge", market_data={"delta": 10}, now=WEDNESDAY_NOON)
    assert _strategy_reasons(result) == ["Delta drift $10.00 below hedge threshold $50.00"]


def test_auto_hedge_size_too_large(checker: StrategyEligibilityChecker) -> None:
    """A hedge above maxHedgeSize is denied by the strategy and spend guardians."""
    result = checker.check_eligibility(
        "autoHedge", market_data={"delta": 75}, requested_size=150, now=WEDNESDAY_NOON,
    )
    assert not result.eligible
    assert "Hedge size $150.00 exceeds max $100.00" in _strategy_reasons(result)
    assert "spend" in {d.guardian for d in result.denials}


def test_auto_hedge_outside_hours(checker: StrategyEligibilityChecker) -> None:
    """The preset time window applies to the generic check."""
    late = WEDNESDAY_NOON.replace(hour=23)
    result = checker.check_eligibility("autoHedge", market_data={"delta": 75}, now=late)
    assert [d.guardian for d in result.denials] == ["timeWindow"]


# ── Market hours ──────────────────────────────────────────────────────────────

def test_market_hours_weekday(checker: StrategyEligibilityChecker) -> None:
    """Inside hours on a weekday is eligible without market data."""
    assert checker.check_eligibility("marketHours", now=WEDNESDAY_NOON).eligible


def test_market_hours_weekend_lock(checker: StrategyEligibilityChecker) -> None:
    """Weekend lock denies on Saturday."""
    result = checker.check_eligibility("marketHours", now=SATURDAY_NOON)
    assert _strategy_reasons(result) == ["Weekend lock: trading disabled on Saturday"]


# ── Drawdown stop ─────────────────────────────────────────────────────────────

def test_drawdown_stop_eligible(checker: StrategyEligibilityChecker) -> None:
    """PnL above the drawdown limit on an active account is eligible."""
    assert checker.check_eligibility("drawdownStop", market_data={"pnl": -50}).eligible


def test_drawdown_stop_breach(checker: StrategyEligibilityChecker) -> None:
    """PnL below -maxDrawdown is denied."""
    result = checker.check_eligibility("drawdownStop", market_data={"pnl": -150})
    assert _strategy_reasons(result) == ["PnL $-150.00 breaches drawdown limit -$100.00"]


def test_drawdown_stop_paused_account(checker: StrategyEligibilityChecker) -> None:
    """A paused account status is denied."""
    result = checker.check_eligibility(
        "drawdownStop",
        config_overrides={"strategy": {"accountStatus": "paused"}},
        market_data={"pnl": 0},
    )
    assert "Account status is paused" in _strategy_reasons(result)


def test_checker_is_read_only(checker: StrategyEligibilityChecker, store: GuardianStateStore) -> None:
    """A breaching check does not latch the halt."""
    checker.check_eligibility("drawdownStop", market_data={"pnl": -1000})
    assert not store.is_halted


# ── Generic and errors ────────────────────────────────────────────────────────

def test_halt_blocks_every_strategy(checker: StrategyEligibilityChecker, store: GuardianStateStore) -> None:
    """The halt latch denies a strategy that would otherwise pass."""
    store.trigger_halt("operator")
    result = checker.check_eligibility("basisArb", market_data={"fundingRate": 0.0002, "basisSpread": 0.003})
    assert not result.eligible
    assert result.denials[0].guardian == "loss"


def test_unknown_strategy(checker: StrategyEligibilityChecker) -> None:
    """Unknown strategy names raise ConfigurationError."""
    with pytest.raises(ConfigurationError, match="Unknown strategy"):
        checker.check_eligibility("martingale")


def test_active_config_switches_to_strategy_preset(store: GuardianStateStore) -> None:
    """Checking a strategy makes its preset the active config."""
    active = ActiveGuardiansConfig()
    checker = StrategyEligibilityChecker(RiskEngine(store), active=active)
    checker.check_eligibility("basisArb", market_data={"fundingRate": 0.0002, "basisSpread": 0.003})
    assert active.preset == "basisArb"
    assert active.get().strategy.min_funding_rate == 0.0001


def test_result_to_dict(checker: StrategyEligibilityChecker) -> None:
    """Serialized result carries the market data in wire keys."""
    data = checker.check_eligibility("drawdownStop", market_data={"pnl": -50}).to_dict()
    assert data["eligible"] is True
    assert data["marketData"] == {"pnl": -50.0}


# ── Live feeds ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_live_check_with_static_feed(checker: StrategyEligibilityChecker) -> None:
    """The live path fetches the strategy's default market."""
    feed = StaticMarketDataFeed()
    result = await checker.check_eligibility_live(feed, "basisArb")
    assert result.eligible
    assert result.market_data.funding_rate == 0.0002


@pytest.mark.asyncio
async def test_live_check_feed_failure_denies(checker: StrategyEligibilityChecker) -> None:
    """A feed failure is a denial, never a pass."""
    feed = AsyncMock()
    feed.fetch = AsyncMock(side_effect=UpstreamFault("timeout", stage="market_data"))
    result = await checker.check_eligibility_live(feed, "basisArb")
    assert not result.eligible
    assert _strategy_reasons(result) == ["Market data unavailable: timeout"]


@pytest.mark.asyncio
async def test_static_feed_unknown_symbol() -> None:
    """Unknown symbols raise UpstreamFault tagged market_data."""
    with pytest.raises(UpstreamFault) as exc:
        await StaticMarketDataFeed({}).fetch("XAU")
    assert exc.value.stage == "market_data"


def test_market_data_from_dict_ignores_bad_values() -> None:
    """Non-numeric fields are dropped; snake_case is accepted."""
    data = MarketData.from_dict({"funding_rate": "0.001", "delta": "n/a"})
    assert data.funding_rate == 0.001
    assert data.delta is None
