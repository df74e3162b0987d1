"""Guardrail Rule Evaluator: the simple four-rule policy check.

Checks market allowlist, per-transaction notional ceiling, cooldown and
slippage ceiling. Every rule runs so callers see all issues at once.
Read-only with respect to the state store.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from guardgate.constants import RECOMMENDED_MAX_SLIPPAGE_BPS
from guardgate.errors import ConfigurationError
from guardgate.intent import ActionIntent
from guardgate.state import GuardianStateStore

logger = logging.getLogger(__name__)


class GuardrailsConfig:
    """Allowed markets plus three numeric ceilings."""

    def __init__(
        self,
        allowed_markets: Iterable[str],
        max_per_tx: float,
        cooldown_seconds: int,
        max_slippage_bps: int,
    ) -> None:
        self.allowed_markets = frozenset(allowed_markets)
        self.max_per_tx = float(max_per_tx)
        self.cooldown_seconds = int(cooldown_seconds)
        self.max_slippage_bps = int(max_slippage_bps)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GuardrailsConfig:
        try:
            return cls(
                allowed_markets=data.get("allowedMarkets", data.get("allowed_markets", ())),
                max_per_tx=data.get("maxPerTx", data.get("max_per_tx")),
                cooldown_seconds=data.get("cooldownSeconds", data.get("cooldown_seconds", 0)),
                max_slippage_bps=data.get("maxSlippageBps", data.get("max_slippage_bps")),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError("Invalid guardrails config: {}".format(e)) from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowedMarkets": sorted(self.allowed_markets),
            "maxPerTx": self.max_per_tx,
            "cooldownSeconds": self.cooldown_seconds,
            "maxSlippageBps": self.max_slippage_bps,
        }


class GuardrailResult:
    """Outcome of a guardrail evaluation. passed is True iff issues is empty."""

    def __init__(self, issues: List[str], warnings: Optional[List[str]] = None) -> None:
        self.issues = list(issues)
        self.warnings = list(warnings or [])

    @property
    def passed(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "issues": list(self.issues), "warnings": list(self.warnings)}


def evaluate(
    intent: ActionIntent,
    config: GuardrailsConfig,
    store: GuardianStateStore,
    now: Optional[datetime] = None,
) -> GuardrailResult:
    """Evaluate all four guardrails against an intent."""
    issues = []  # type: List[str]
    warnings = []  # type: List[str]

    symbol = intent.root_symbol
    if symbol not in config.allowed_markets:
        issues.append("Market {} not in allowlist".format(symbol))

    if intent.notional_usd > config.max_per_tx:
        issues.append(
            "Notional ${:.2f} exceeds max ${:.2f} per transaction".format(
                intent.notional_usd, config.max_per_tx,
            )
        )

    last = store.snapshot().last_execution_at
    if last is not None:
        current = now or store.now()
        elapsed = (current - last).total_seconds()
        if elapsed < config.cooldown_seconds:
            issues.append(
                "Cooldown active: {}s remaining".format(math.ceil(config.cooldown_seconds - elapsed))
            )

    if intent.max_slippage_bps > config.max_slippage_bps:
        issues.append(
            "Slippage {} bps exceeds max {} bps".format(intent.max_slippage_bps, config.max_slippage_bps)
        )
    elif intent.max_slippage_bps > RECOMMENDED_MAX_SLIPPAGE_BPS:
        warnings.append(
            "Slippage {} bps is above the recommended {} bps".format(
                intent.max_slippage_bps, RECOMMENDED_MAX_SLIPPAGE_BPS,
            )
        )

    if issues:
        logger.info("Guardrails denied %s %s: %s", intent.type, intent.market, "; ".join(issues))
    return GuardrailResult(issues, warnings)
