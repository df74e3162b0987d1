"""Action intents: the normalised description of a proposed financial action.

An ActionIntent is validated once, at construction, and is immutable
afterwards. Evaluators only ever see validated intents.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from guardgate.constants import (
    DEFAULT_VALID_FOR_SEC,
    INTENT_SIDES,
    INTENT_TYPES,
    MARKET_PAIR_SEPARATOR,
    TARGETED_INTENT_TYPES,
)
from guardgate.errors import ValidationError

_MISSING = object()


def root_symbol(market: str) -> str:
    """Market symbol before any pair separator: ``ETH/USD`` -> ``ETH``."""
    return market.split(MARKET_PAIR_SEPARATOR)[0].strip()


def _is_number(value: Any) -> bool:
    """Finite int or float; bools, NaN and infinities are rejected."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return isinstance(value, int) or math.isfinite(value)


def _string_tuple(value: Any, name: str, errors: List[str]) -> Tuple[str, ...]:
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        errors.append("{} must be a list of strings".format(name))
        return ()
    return tuple(value)


class ActionIntent:
    """Immutable, validated action intent."""

    __slots__ = (
        "type",
        "market",
        "side",
        "notional_usd",
        "max_slippage_bps",
        "leverage",
        "valid_for_seconds",
        "rationale",
        "risk_notes",
        "target",
        "token",
    )

    def __init__(
        self,
        type: str,
        market: str,
        side: str,
        notional_usd: float,
        max_slippage_bps: int,
        leverage: float = 1.0,
        valid_for_seconds: int = DEFAULT_VALID_FOR_SEC,
        rationale: Iterable[str] = (),
        risk_notes: Iterable[str] = (),
        target: Optional[str] = None,
        token: Optional[str] = None,
    ) -> None:
        errors = []  # type: List[str]

        if not isinstance(type, str) or type not in INTENT_TYPES:
            errors.append("type must be one of {}, got {!r}".format(sorted(INTENT_TYPES), type))
        if not isinstance(market, str) or not market.strip():
            errors.append("market must be a non-empty string")
        if not isinstance(side, str) or side not in INTENT_SIDES:
            errors.append("side must be BUY or SELL, got {!r}".format(side))
        if not _is_number(notional_usd) or notional_usd < 0:
            errors.append("notionalUsd must be a finite number >= 0")
        if not isinstance(max_slippage_bps, int) or isinstance(max_slippage_bps, bool) or max_slippage_bps < 0:
            errors.append("maxSlippageBps must be an integer >= 0")
        if not _is_number(leverage) or leverage < 1:
            errors.append("leverage must be a finite number >= 1")
        if not isinstance(valid_for_seconds, int) or isinstance(valid_for_seconds, bool) or valid_for_seconds <= 0:
            errors.append("validForSeconds must be an integer > 0")
        if target is not None and (not isinstance(target, str) or not target.strip()):
            errors.append("target must be a non-empty string when given")
        if token is not None and (not isinstance(token, str) or not token.strip()):
            errors.append("token must be a non-empty string when given")

        rationale = _string_tuple(rationale, "rationale", errors)
        risk_notes = _string_tuple(risk_notes, "riskNotes", errors)

        if errors:
            raise ValidationError(errors)

        object.__setattr__(self, "type", type)
        object.__setattr__(self, "market", market.strip())
        object.__setattr__(self, "side", side)
        object.__setattr__(self, "notional_usd", float(notional_usd))
        object.__setattr__(self, "max_slippage_bps", max_slippage_bps)
        object.__setattr__(self, "leverage", float(leverage))
        object.__setattr__(self, "valid_for_seconds", valid_for_seconds)
        object.__setattr__(self, "rationale", rationale)
        object.__setattr__(self, "risk_notes", risk_notes)
        object.__setattr__(self, "target", target.strip() if target else None)
        object.__setattr__(self, "token", token)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ActionIntent is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("ActionIntent is immutable")

    def __repr__(self) -> str:
        return "ActionIntent(type={!r}, market={!r}, side={!r}, notional_usd={})".format(
            self.type, self.market, self.side, self.notional_usd,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ActionIntent):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __hash__(self) -> int:
        return hash((self.type, self.market, self.side, self.notional_usd, self.target))

    @property
    def root_symbol(self) -> str:
        return root_symbol(self.market)

    @property
    def venue_target(self) -> str:
        """What the venue guardian checks: recipient/contract or market symbol."""
        if self.type in TARGETED_INTENT_TYPES and self.target:
            return self.target
        return self.market

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "market": self.market,
            "side": self.side,
            "notionalUsd": self.notional_usd,
            "maxSlippageBps": self.max_slippage_bps,
            "leverage": self.leverage,
            "validForSeconds": self.valid_for_seconds,
            "rationale": list(self.rationale),
            "riskNotes": list(self.risk_notes),
            "target": self.target,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, body: Any) -> ActionIntent:
        """Parse a request body (camelCase or snake_case keys).

        Raises ValidationError listing every missing or ill-typed field.
        """
        if not isinstance(body, dict):
            raise ValidationError(["actionIntent must be an object"])

        errors = []  # type: List[str]
        required = (
            ("type", "type"),
            ("market", "market"),
            ("side", "side"),
            ("notionalUsd", "notional_usd"),
            ("maxSlippageBps", "max_slippage_bps"),
        )
        values = {}  # type: Dict[str, Any]
        for camel, snake in required:
            value = _pick(body, camel, snake)
            if value is _MISSING:
                errors.append("missing required field: {}".format(camel))
            else:
                values[snake] = value

        if errors:
            raise ValidationError(errors)

        optional = (
            ("leverage", "leverage"),
            ("validForSeconds", "valid_for_seconds"),
            ("rationale", "rationale"),
            ("riskNotes", "risk_notes"),
            ("target", "target"),
            ("token", "token"),
        )
        for camel, snake in optional:
            value = _pick(body, camel, snake)
            if value is not _MISSING and value is not None:
                values[snake] = value

        # Transfers name their recipient "to" in custody requests
        if "target" not in values and body.get("to"):
            values["target"] = body["to"]

        if "side" in values and isinstance(values["side"], str):
            values["side"] = values["side"].upper()

        return cls(**values)


def _pick(body: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in body:
            return body[key]
    return _MISSING


def synthetic_intent(
    market: str,
    notional_usd: float,
    rationale: Tuple[str, ...] = (),
    side: str = "BUY",
    max_slippage_bps: int = 50,
) -> ActionIntent:
    """Build a spot market order used for previews and eligibility checks."""
    return ActionIntent(
        type="spot-market-order",
        market=market,
        side=side,
        notional_usd=notional_usd,
        max_slippage_bps=max_slippage_bps,
        rationale=rationale,
    )
