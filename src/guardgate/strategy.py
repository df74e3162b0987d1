"""Strategy Eligibility Checker.

Maps a named strategy to its guardian preset, runs the generic guardians on
a synthetic order for the strategy's default market, then applies the
strategy's own market-data thresholds. Missing data never passes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from guardgate.config import ActiveGuardiansConfig, GuardiansConfig, StrategyConfig, get_preset, merge_config
from guardgate.constants import STRATEGY_INFO, STRATEGY_PRESETS
from guardgate.errors import ConfigurationError, UpstreamFault
from guardgate.intent import synthetic_intent
from guardgate.market_data import MarketData
from guardgate.risk_engine import GuardianDenial, RiskEngine

logger = logging.getLogger(__name__)

DEFAULT_REQUESTED_SIZE = 50.0


class EligibilityResult:
    """Verdict for one strategy check."""

    def __init__(
        self,
        strategy: str,
        eligible: bool,
        message: str,
        denials: List[GuardianDenial],
        warnings: Optional[List[GuardianDenial]] = None,
        market_data: Optional[MarketData] = None,
        config: Optional[GuardiansConfig] = None,
    ) -> None:
        self.strategy = strategy
        self.eligible = eligible
        self.message = message
        self.denials = list(denials)
        self.warnings = list(warnings or [])
        self.market_data = market_data
        self.config = config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "eligible": self.eligible,
            "message": self.message,
            "denials": [d.to_dict() for d in self.denials],
            "warnings": [w.to_dict() for w in self.warnings],
            "marketData": self.market_data.to_dict() if self.market_data is not None else None,
        }


def _unavailable(field: str) -> GuardianDenial:
    return GuardianDenial("strategy", "Market data unavailable: {}".format(field))


def _basis_arb(thresholds: StrategyConfig, data: MarketData) -> List[GuardianDenial]:
    denials = []  # type: List[GuardianDenial]
    if thresholds.min_funding_rate is not None:
        if data.funding_rate is None:
            denials.append(_unavailable("fundingRate"))
        elif data.funding_rate < thresholds.min_funding_rate:
            denials.append(GuardianDenial(
                "strategy",
                "Funding rate {:.4%} below minimum {:.4%}".format(data.funding_rate, thresholds.min_funding_rate),
                current=data.funding_rate,
                limit=thresholds.min_funding_rate,
            ))
    if thresholds.max_basis_spread is not None:
        if data.basis_spread is None:
            denials.append(_unavailable("basisSpread"))
        elif data.basis_spread > thresholds.max_basis_spread:
            denials.append(GuardianDenial(
                "strategy",
                "Basis spread {:.2%} exceeds maximum {:.2%}".format(data.basis_spread, thresholds.max_basis_spread),
                current=data.basis_spread,
                limit=thresholds.max_basis_spread,
            ))
    return denials


def _auto_hedge(thresholds: StrategyConfig, data: MarketData, requested_size: float) -> List[GuardianDenial]:
    denials = []  # type: List[GuardianDenial]
    if thresholds.delta_threshold is not None:
        if data.delta is None:
            denials.append(_unavailable("delta"))
        elif abs(data.delta) < thresholds.delta_threshold:
            denials.append(GuardianDenial(
                "strategy",
                "Delta drift ${:.2f} below hedge threshold ${:.2f}".format(abs(data.delta), thresholds.delta_threshold),
                current=abs(data.delta),
                limit=thresholds.delta_threshold,
            ))
    if thresholds.max_hedge_size is not None and requested_size > thresholds.max_hedge_size:
        denials.append(GuardianDenial(
            "strategy",
            "Hedge size ${:.2f} exceeds max ${:.2f}".format(requested_size, thresholds.max_hedge_size),
            current=requested_size,
            limit=thresholds.max_hedge_size,
        ))
    return denials


def _market_hours(thresholds: StrategyConfig, now: datetime) -> List[GuardianDenial]:
    if thresholds.weekend_lock and now.weekday() >= 5:
        return [GuardianDenial("strategy", "Weekend lock: trading disabled on {}".format(now.strftime("%A")))]
    return []


def _drawdown_stop(thresholds: StrategyConfig, config: GuardiansConfig, data: MarketData) -> List[GuardianDenial]:
    denials = []  # type: List[GuardianDenial]
    if thresholds.account_status is not None and thresholds.account_status != "active":
        denials.append(GuardianDenial(
            "strategy",
            "Account status is {}".format(thresholds.account_status),
            current=thresholds.account_status,
            limit="active",
        ))
    max_drawdown = config.loss.max_drawdown
    if data.pnl is None:
        denials.append(_unavailable("pnl"))
    elif data.pnl < -max_drawdown:
        denials.append(GuardianDenial(
            "strategy",
            "PnL ${:.2f} breaches drawdown limit -${:.2f}".format(data.pnl, max_drawdown),
            current=data.pnl,
            limit=-max_drawdown,
        ))
    return denials


class StrategyEligibilityChecker:
    """Combines guardian state with live market signals per strategy."""

    def __init__(self, engine: RiskEngine, active: Optional[ActiveGuardiansConfig] = None) -> None:
        self.engine = engine
        self.active = active

    def _resolve_config(self, name: str, overrides: Optional[Dict[str, Any]]) -> GuardiansConfig:
        if name not in STRATEGY_PRESETS:
            raise ConfigurationError(
                "Unknown strategy: {} (known: {})".format(name, ", ".join(STRATEGY_PRESETS))
            )
        config = merge_config(get_preset(name), overrides)
        if self.active is not None:
            self.active.replace(config, preset=name if not overrides else None)
        return config

    def _thresholds(
        self,
        name: str,
        config: GuardiansConfig,
        data: MarketData,
        requested_size: float,
        now: datetime,
    ) -> List[GuardianDenial]:
        thresholds = config.strategy or StrategyConfig()
        if name == "basisArb":
            return _basis_arb(thresholds, data)
        if name == "autoHedge":
            return _auto_hedge(thresholds, data, requested_size)
        if name == "marketHours":
            return _market_hours(thresholds, now)
        return _drawdown_stop(thresholds, config, data)

    def _evaluate(
        self,
        name: str,
        config_overrides: Optional[Dict[str, Any]],
        market_data: Optional[MarketData],
        requested_size: float,
        now: Optional[datetime],
        feed_error: Optional[str] = None,
    ) -> EligibilityResult:
        config = self._resolve_config(name, config_overrides)
        info = STRATEGY_INFO[name]
        current = self.engine.current_time(now)

        intent = synthetic_intent(
            info["default_market"],
            requested_size,
            rationale=("{} eligibility check".format(name),),
        )
        generic = self.engine.check_all(intent, config, now=current)

        if feed_error is not None:
            threshold_denials = [GuardianDenial("strategy", "Market data unavailable: {}".format(feed_error))]
        else:
            threshold_denials = self._thresholds(name, config, market_data or MarketData(), requested_size, current)

        denials = generic.denials + threshold_denials
        eligible = not denials
        if eligible:
            message = "{} eligible: {}".format(info["name"], info["pass_condition"])
        else:
            message = "{} not eligible: {}".format(info["name"], "; ".join(d.reason for d in denials))

        logger.info("Strategy %s eligibility=%s (%d denial(s))", name, eligible, len(denials))
        return EligibilityResult(
            strategy=name,
            eligible=eligible,
            message=message,
            denials=denials,
            warnings=generic.warnings,
            market_data=market_data,
            config=config,
        )

    def check_eligibility(
        self,
        name: str,
        config_overrides: Optional[Dict[str, Any]] = None,
        market_data: Union[MarketData, Dict[str, Any], None] = None,
        requested_size: float = DEFAULT_REQUESTED_SIZE,
        now: Optional[datetime] = None,
    ) -> EligibilityResult:
        """Check a strategy against its preset and the given market data."""
        if market_data is not None and not isinstance(market_data, MarketData):
            market_data = MarketData.from_dict(market_data)
        return self._evaluate(name, config_overrides, market_data, requested_size, now)

    async def check_eligibility_live(
        self,
        feed: Any,
        name: str,
        config_overrides: Optional[Dict[str, Any]] = None,
        requested_size: float = DEFAULT_REQUESTED_SIZE,
        now: Optional[datetime] = None,
    ) -> EligibilityResult:
        """Fetch market data for the strategy market, then check eligibility."""
        if name not in STRATEGY_INFO:
            raise ConfigurationError("Unknown strategy: {}".format(name))
        market = STRATEGY_INFO[name]["default_market"]
        try:
            data = await feed.fetch(market)
        except UpstreamFault as e:
            logger.warning("Market data unavailable for %s (%s): %s", name, market, e)
            return self._evaluate(name, config_overrides, None, requested_size, now, feed_error=str(e))
        return self._evaluate(name, config_overrides, data, requested_size, now)
