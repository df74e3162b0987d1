"""Guardian Risk Engine: composite per-guardian policy evaluation.

Implements:
- Halt latch (kill switch) checked first, regardless of any enabled flag
- Spend: per-trade ceiling, daily cap (settled + in-flight), soft warning
- Venue: contract/recipient allowlist
- Rate: trades per UTC day and cooldown
- Time window: UTC trading hours with wrap-around
- Loss: paused account
- Exposure: per-asset position ceiling, soft warning
- Leverage: maximum leverage

Every enabled guardian runs; results are aggregated into one
GuardianCheckResult. The engine never mutates the state store.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from guardgate.config import GuardiansConfig
from guardgate.constants import GUARDIAN_NAMES, SEVERITY_BLOCK, SEVERITY_WARN
from guardgate.errors import ConfigurationError, PolicyDenied
from guardgate.intent import ActionIntent, root_symbol
from guardgate.state import GuardianStateStore

logger = logging.getLogger(__name__)


class GuardianDenial:
    """One failing (block) or cautionary (warn) guardian rule."""

    def __init__(
        self,
        guardian: str,
        reason: str,
        severity: str = SEVERITY_BLOCK,
        current: Any = None,
        limit: Any = None,
        name: Optional[str] = None,
    ) -> None:
        self.guardian = guardian
        self.name = name or GUARDIAN_NAMES.get(guardian, guardian)
        self.reason = reason
        self.severity = severity
        self.current = current
        self.limit = limit

    def __repr__(self) -> str:
        return "GuardianDenial({}, {!r}, {})".format(self.guardian, self.reason, self.severity)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GuardianDenial):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "guardian": self.guardian,
            "name": self.name,
            "reason": self.reason,
            "severity": self.severity,
        }  # type: Dict[str, Any]
        if self.current is not None:
            out["current"] = self.current
        if self.limit is not None:
            out["limit"] = self.limit
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GuardianDenial:
        return cls(
            guardian=data["guardian"],
            reason=data.get("reason", ""),
            severity=data.get("severity", SEVERITY_BLOCK),
            current=data.get("current"),
            limit=data.get("limit"),
            name=data.get("name"),
        )


class GuardianCheckResult:
    """Aggregated outcome. passed is True iff there are no block denials."""

    def __init__(self, denials: List[GuardianDenial], warnings: Optional[List[GuardianDenial]] = None) -> None:
        self.denials = list(denials)
        self.warnings = list(warnings or [])

    @property
    def passed(self) -> bool:
        return not self.denials

    def raise_for_denials(self) -> None:
        """Raise PolicyDenied carrying every block denial, if any."""
        if self.denials:
            raise PolicyDenied(self.denials)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "denials": [d.to_dict() for d in self.denials],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _is_address(value: str) -> bool:
    return value.lower().startswith("0x")


def _venue_matches(target: str, allowed: List[str]) -> bool:
    if _is_address(target):
        wanted = target.lower()
        return any(a.lower() == wanted for a in allowed)
    return target in allowed or root_symbol(target) in allowed


def _short(target: str) -> str:
    return target if len(target) <= 12 else "{}...{}".format(target[:6], target[-4:])


def hour_in_window(hour: int, start: int, end: int) -> bool:
    """True when hour is inside [start, end), wrapping past midnight when start > end."""
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


class RiskEngine:
    """Evaluates an intent against every enabled guardian."""

    def __init__(self, store: GuardianStateStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock

    def current_time(self, now: Optional[datetime] = None) -> datetime:
        if now is not None:
            return now
        if self._clock is not None:
            return self._clock()
        return self.store.now()

    def check_all(
        self,
        intent: ActionIntent,
        config: GuardiansConfig,
        now: Optional[datetime] = None,
    ) -> GuardianCheckResult:
        """Run all guardians and aggregate block denials and warnings."""
        current_time = self.current_time(now)
        found = []  # type: List[GuardianDenial]

        halt = self._check_halt()
        if halt is not None:
            found.append(halt)

        checks = (
            (config.loss.enabled, lambda: self._check_loss(config, halted=halt is not None)),
            (config.spend.enabled, lambda: self._check_spend(intent, config)),
            (config.leverage.enabled, lambda: self._check_leverage(intent, config)),
            (config.exposure.enabled, lambda: self._check_exposure(intent, config)),
            (config.venue.enabled, lambda: self._check_venue(intent, config)),
            (config.rate.enabled, lambda: self._check_rate(config)),
            (config.time_window.enabled, lambda: self._check_time_window(config, current_time)),
        )
        for enabled, check in checks:
            if enabled:
                found.extend(check())

        denials = [d for d in found if d.severity == SEVERITY_BLOCK]
        warnings = [d for d in found if d.severity == SEVERITY_WARN]
        result = GuardianCheckResult(denials, warnings)

        if denials:
            logger.info(
                "Guardians denied %s %s $%.2f: %s",
                intent.type, intent.market, intent.notional_usd,
                ", ".join(d.guardian for d in denials),
            )
        return result

    # ── Individual guardians ──────────────────────────────────────────────────

    def _check_halt(self) -> Optional[GuardianDenial]:
        if not self.store.is_halted:
            return None
        return GuardianDenial(
            "loss",
            "Trading halted: {}".format(self.store.halt_reason or "kill switch engaged"),
            current="HALTED",
        )

    def _check_loss(self, config: GuardiansConfig, halted: bool) -> List[GuardianDenial]:
        if halted or config.loss.account_status != "paused":
            return []
        return [GuardianDenial("loss", "Account is paused", current="paused", limit="active")]

    def _check_spend(self, intent: ActionIntent, config: GuardiansConfig) -> List[GuardianDenial]:
        spend = config.spend
        if intent.notional_usd > spend.max_per_trade:
            return [GuardianDenial(
                "spend",
                "Trade size ${:.2f} exceeds max ${:.2f}".format(intent.notional_usd, spend.max_per_trade),
                current=intent.notional_usd,
                limit=spend.max_per_trade,
            )]

        snap = self.store.snapshot()
        used = snap.daily_spend_usd + snap.in_flight_usd
        remaining = max(0.0, spend.max_daily - used)
        if intent.notional_usd > remaining:
            return [GuardianDenial(
                "spend",
                "Trade would exceed daily limit (${:.2f} remaining of ${:.2f})".format(
                    remaining, spend.max_daily,
                ),
                current=used + intent.notional_usd,
                limit=spend.max_daily,
            )]

        if spend.soft_limit_pct is not None:
            soft = spend.max_daily * spend.soft_limit_pct / 100.0
            if used + intent.notional_usd > soft:
                return [GuardianDenial(
                    "spend",
                    "Daily spend would pass {:.0f}% of the ${:.2f} limit".format(
                        spend.soft_limit_pct, spend.max_daily,
                    ),
                    severity=SEVERITY_WARN,
                    current=used + intent.notional_usd,
                    limit=soft,
                )]
        return []

    def _check_leverage(self, intent: ActionIntent, config: GuardiansConfig) -> List[GuardianDenial]:
        max_leverage = config.leverage.max_leverage
        if intent.leverage > max_leverage:
            return [GuardianDenial(
                "leverage",
                "Leverage {:g}x exceeds max {:g}x".format(intent.leverage, max_leverage),
                current=intent.leverage,
                limit=max_leverage,
            )]
        return []

    def _check_exposure(self, intent: ActionIntent, config: GuardiansConfig) -> List[GuardianDenial]:
        exposure = config.exposure
        symbol = intent.root_symbol
        new_exposure = self.store.position(symbol) + intent.notional_usd
        if new_exposure > exposure.max_per_asset:
            return [GuardianDenial(
                "exposure",
                "{} exposure would reach ${:.2f}, exceeding max ${:.2f}".format(
                    symbol, new_exposure, exposure.max_per_asset,
                ),
                current=new_exposure,
                limit=exposure.max_per_asset,
            )]
        if exposure.soft_limit_pct is not None:
            soft = exposure.max_per_asset * exposure.soft_limit_pct / 100.0
            if new_exposure > soft:
                return [GuardianDenial(
                    "exposure",
                    "{} exposure would pass {:.0f}% of the ${:.2f} limit".format(
                        symbol, exposure.soft_limit_pct, exposure.max_per_asset,
                    ),
                    severity=SEVERITY_WARN,
                    current=new_exposure,
                    limit=soft,
                )]
        return []

    def _check_venue(self, intent: ActionIntent, config: GuardiansConfig) -> List[GuardianDenial]:
        venue = config.venue
        if not venue.allowed_contracts:
            return []
        target = intent.venue_target
        if _venue_matches(target, venue.allowed_contracts):
            return []
        if intent.type == "transfer" and _venue_matches(target, venue.allowed_recipients):
            return []
        kind = "Recipient" if intent.type == "transfer" else "Contract"
        return [GuardianDenial(
            "venue",
            "{} {} not in allowlist".format(kind, _short(target)),
            current=target,
        )]

    def _check_rate(self, config: GuardiansConfig) -> List[GuardianDenial]:
        rate = config.rate
        if self.store.trades_remaining(rate.max_per_day) <= 0:
            snap = self.store.snapshot()
            used = snap.trade_count_today + snap.in_flight_count
            return [GuardianDenial(
                "rate",
                "Daily trade limit reached ({}/{})".format(used, rate.max_per_day),
                current=used,
                limit=rate.max_per_day,
            )]
        remaining = self.store.cooldown_remaining(rate.cooldown_seconds)
        if remaining > 0:
            secs = int(math.ceil(remaining))
            return [GuardianDenial(
                "rate",
                "Cooldown active: {}s remaining".format(secs),
                current="{}s".format(secs),
                limit="{}s".format(rate.cooldown_seconds),
            )]
        return []

    def _check_time_window(self, config: GuardiansConfig, now: datetime) -> List[GuardianDenial]:
        window = config.time_window
        span = "{}:00-{}:00 UTC".format(window.start_hour, window.end_hour)
        if window.simulate_outside_hours:
            return [GuardianDenial("timeWindow", "Trading disabled outside {} (simulated)".format(span))]
        if hour_in_window(now.hour, window.start_hour, window.end_hour):
            return []
        return [GuardianDenial(
            "timeWindow",
            "Trading only allowed {} (current: {}:00)".format(span, now.hour),
            current="{}:00".format(now.hour),
            limit=span,
        )]

    # ── Drills ────────────────────────────────────────────────────────────────

    def test_guardian(self, key: str, config: GuardiansConfig) -> GuardianDenial:
        """Sample denial for a guardian, used by operator drills. No state change."""
        if key == "spend":
            return GuardianDenial(
                "spend",
                "TEST: Trade size exceeds max ${:.2f}".format(config.spend.max_per_trade),
                current=config.spend.max_per_trade * 2,
                limit=config.spend.max_per_trade,
            )
        if key == "leverage":
            return GuardianDenial(
                "leverage",
                "TEST: Leverage exceeds max {:g}x".format(config.leverage.max_leverage),
                current=config.leverage.max_leverage + 1,
                limit=config.leverage.max_leverage,
            )
        if key == "exposure":
            return GuardianDenial(
                "exposure",
                "TEST: Exposure exceeds max ${:.2f}".format(config.exposure.max_per_asset),
                limit=config.exposure.max_per_asset,
            )
        if key == "venue":
            return GuardianDenial("venue", "TEST: Contract 0xdead...beef not in allowlist", current="0xdead...beef")
        if key == "rate":
            secs = "{}s".format(config.rate.cooldown_seconds)
            return GuardianDenial("rate", "TEST: Cooldown active: {} remaining".format(secs), current=secs, limit=secs)
        if key == "timeWindow":
            return GuardianDenial(
                "timeWindow",
                "TEST: Trading disabled outside {}:00-{}:00 UTC".format(
                    config.time_window.start_hour, config.time_window.end_hour,
                ),
            )
        if key == "loss":
            return GuardianDenial(
                "loss",
                "TEST: Trading halted due to drawdown > ${:.2f}".format(config.loss.max_drawdown),
                current="HALTED",
                limit=config.loss.max_drawdown,
            )
        raise ConfigurationError("Unknown guardian key: {}".format(key))
