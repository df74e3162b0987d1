"""Guardian configuration: typed sub-configs, presets, merge, persistence.

A GuardiansConfig carries one sub-config per guardian, each with its own
``enabled`` flag, plus an optional strategy threshold block. It is the unit
of preset substitution and of persistence per (organisation, account).

Wire format uses camelCase keys (``maxPerTrade``, ``timeWindow``, ...);
snake_case field names are accepted on input as well.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from guardgate.constants import ACCOUNT_STATUSES, GUARDIAN_KEYS, PRESET_TABLE
from guardgate.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Field kinds understood by the sub-config schema
_BOOL = "bool"
_NUMBER = "number"
_INT = "int"
_HOUR = "hour"
_LIST = "list"
_STATUS = "status"
_PCT = "pct"


def _check_value(kind: str, value: Any, where: str) -> Any:
    is_num = isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == _BOOL:
        if not isinstance(value, bool):
            raise ConfigurationError("{} must be a boolean".format(where))
        return value
    if kind == _NUMBER:
        if not is_num or value < 0:
            raise ConfigurationError("{} must be a number >= 0".format(where))
        return float(value)
    if kind == _INT:
        if not is_num or value < 0 or int(value) != value:
            raise ConfigurationError("{} must be an integer >= 0".format(where))
        return int(value)
    if kind == _HOUR:
        if not is_num or int(value) != value or not 0 <= value <= 24:
            raise ConfigurationError("{} must be an hour between 0 and 24".format(where))
        return int(value)
    if kind == _PCT:
        if not is_num or not 0 < value <= 100:
            raise ConfigurationError("{} must be a percentage in (0, 100]".format(where))
        return float(value)
    if kind == _LIST:
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            raise ConfigurationError("{} must be a list of strings".format(where))
        return list(value)
    if kind == _STATUS:
        if value not in ACCOUNT_STATUSES:
            raise ConfigurationError(
                "{} must be one of {}".format(where, sorted(ACCOUNT_STATUSES))
            )
        return value
    raise ConfigurationError("Unknown field kind {} for {}".format(kind, where))


class _SubConfig:
    """Base class for one guardian's settings.

    FIELDS lists (wire_key, attribute, kind, default).
    """

    KEY = ""
    FIELDS = ()  # type: Tuple[Tuple[str, str, str, Any], ...]

    def __init__(self, **values: Any) -> None:
        for wire, attr, kind, default in self.FIELDS:
            value = values.pop(attr, copy.copy(default))
            # Only optional fields (default None) may be unset
            if value is not None or default is not None:
                value = _check_value(kind, value, "{}.{}".format(self.KEY, wire))
            setattr(self, attr, value)
        if values:
            raise ConfigurationError(
                "Unknown field(s) for {}: {}".format(self.KEY, ", ".join(sorted(values)))
            )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _SubConfig):
            return NotImplemented
        return type(self) is type(other) and self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return "{}({})".format(type(self).__name__, self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        out = {}  # type: Dict[str, Any]
        for wire, attr, _kind, _default in self.FIELDS:
            value = getattr(self, attr)
            out[wire] = list(value) if isinstance(value, list) else value
        return out

    def merged(self, overrides: Dict[str, Any]) -> _SubConfig:
        """Return a copy with overrides applied. Unknown fields are rejected."""
        if not isinstance(overrides, dict):
            raise ConfigurationError("{} overrides must be an object".format(self.KEY))
        by_wire = {f[0]: f[1] for f in self.FIELDS}
        by_attr = {f[1] for f in self.FIELDS}
        values = {attr: copy.copy(getattr(self, attr)) for attr in by_attr}
        for name, value in overrides.items():
            if name in by_wire:
                values[by_wire[name]] = value
            elif name in by_attr:
                values[name] = value
            else:
                raise ConfigurationError("Unknown field for {}: {}".format(self.KEY, name))
        return type(self)(**values)


class SpendConfig(_SubConfig):
    KEY = "spend"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("maxPerTrade", "max_per_trade", _NUMBER, 250.0),
        ("maxDaily", "max_daily", _NUMBER, 1000.0),
        ("softLimitPct", "soft_limit_pct", _PCT, None),
    )


class VenueConfig(_SubConfig):
    KEY = "venue"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("allowedContracts", "allowed_contracts", _LIST, []),
        ("allowedRecipients", "allowed_recipients", _LIST, []),
    )


class RateConfig(_SubConfig):
    KEY = "rate"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("maxPerDay", "max_per_day", _INT, 10),
        ("cooldownSeconds", "cooldown_seconds", _INT, 60),
    )


class TimeWindowConfig(_SubConfig):
    KEY = "timeWindow"
    FIELDS = (
        ("enabled", "enabled", _BOOL, False),
        ("startHour", "start_hour", _HOUR, 9),
        ("endHour", "end_hour", _HOUR, 17),
        ("simulateOutsideHours", "simulate_outside_hours", _BOOL, False),
    )


class LossConfig(_SubConfig):
    KEY = "loss"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("maxDrawdown", "max_drawdown", _NUMBER, 200.0),
        ("accountStatus", "account_status", _STATUS, "active"),
    )


class ExposureConfig(_SubConfig):
    KEY = "exposure"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("maxPerAsset", "max_per_asset", _NUMBER, 500.0),
        ("softLimitPct", "soft_limit_pct", _PCT, None),
    )


class LeverageConfig(_SubConfig):
    KEY = "leverage"
    FIELDS = (
        ("enabled", "enabled", _BOOL, True),
        ("maxLeverage", "max_leverage", _NUMBER, 3.0),
    )


class StrategyConfig(_SubConfig):
    """Strategy thresholds. Fields left as None are not checked."""

    KEY = "strategy"
    FIELDS = (
        ("minFundingRate", "min_funding_rate", _NUMBER, None),
        ("maxBasisSpread", "max_basis_spread", _NUMBER, None),
        ("deltaThreshold", "delta_threshold", _NUMBER, None),
        ("maxHedgeSize", "max_hedge_size", _NUMBER, None),
        ("weekendLock", "weekend_lock", _BOOL, None),
        ("accountStatus", "account_status", _STATUS, None),
        ("requireManualResume", "require_manual_resume", _BOOL, None),
    )


SUBCONFIG_TYPES = {
    "spend": SpendConfig,
    "venue": VenueConfig,
    "rate": RateConfig,
    "timeWindow": TimeWindowConfig,
    "loss": LossConfig,
    "exposure": ExposureConfig,
    "leverage": LeverageConfig,
}

_ATTR_FOR_KEY = {
    "spend": "spend",
    "venue": "venue",
    "rate": "rate",
    "timeWindow": "time_window",
    "loss": "loss",
    "exposure": "exposure",
    "leverage": "leverage",
}


class GuardiansConfig:
    """The composite, per-account guardian configuration."""

    def __init__(
        self,
        spend: SpendConfig,
        venue: VenueConfig,
        rate: RateConfig,
        time_window: TimeWindowConfig,
        loss: LossConfig,
        exposure: ExposureConfig,
        leverage: LeverageConfig,
        strategy: Optional[StrategyConfig] = None,
    ) -> None:
        self.spend = spend
        self.venue = venue
        self.rate = rate
        self.time_window = time_window
        self.loss = loss
        self.exposure = exposure
        self.leverage = leverage
        self.strategy = strategy

    def get(self, key: str) -> _SubConfig:
        """Sub-config by guardian key (``spend``, ``timeWindow``, ...)."""
        if key == "strategy" and self.strategy is not None:
            return self.strategy
        if key not in _ATTR_FOR_KEY:
            raise ConfigurationError("Unknown guardian key: {}".format(key))
        return getattr(self, _ATTR_FOR_KEY[key])

    def enabled_guardians(self) -> List[str]:
        return [k for k in GUARDIAN_KEYS if self.get(k).enabled]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GuardiansConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return "GuardiansConfig(enabled={})".format(self.enabled_guardians())

    def to_dict(self) -> Dict[str, Any]:
        out = {k: self.get(k).to_dict() for k in GUARDIAN_KEYS}  # type: Dict[str, Any]
        if self.strategy is not None:
            out["strategy"] = self.strategy.to_dict()
        return out

    def copy(self) -> GuardiansConfig:
        return merge_config(self, {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GuardiansConfig:
        """Build from a wire dict; missing guardians keep the default preset."""
        return merge_config(get_preset("default"), data)


def _build(table: Dict[str, Any]) -> GuardiansConfig:
    subs = {}  # type: Dict[str, Any]
    for key, sub_type in SUBCONFIG_TYPES.items():
        subs[_ATTR_FOR_KEY[key]] = sub_type().merged(table[key])
    strategy = None
    if "strategy" in table:
        strategy = StrategyConfig().merged(table["strategy"])
    return GuardiansConfig(strategy=strategy, **subs)


def preset_names() -> List[str]:
    return list(PRESET_TABLE)


def get_preset(name: str) -> GuardiansConfig:
    """Return a fresh GuardiansConfig for a named preset."""
    if name not in PRESET_TABLE:
        raise ConfigurationError(
            "Unknown preset: {} (known: {})".format(name, ", ".join(PRESET_TABLE))
        )
    return _build(PRESET_TABLE[name])


def merge_config(default: GuardiansConfig, overrides: Optional[Dict[str, Any]]) -> GuardiansConfig:
    """Total merge of per-guardian overrides onto a base config.

    Every guardian key is resolved: overridden fields replace the base,
    missing ones keep it. An unknown guardian key or field, or an ill-typed
    value, raises ConfigurationError.
    """
    overrides = overrides or {}
    if not isinstance(overrides, dict):
        raise ConfigurationError("Config overrides must be an object")

    unknown = [k for k in overrides if k not in SUBCONFIG_TYPES and k != "strategy"]
    if unknown:
        raise ConfigurationError("Unknown guardian key(s): {}".format(", ".join(sorted(unknown))))

    subs = {}  # type: Dict[str, Any]
    for key in SUBCONFIG_TYPES:
        subs[_ATTR_FOR_KEY[key]] = default.get(key).merged(overrides.get(key, {}))

    strategy = default.strategy
    if "strategy" in overrides:
        strategy = (strategy or StrategyConfig()).merged(overrides["strategy"])
    elif strategy is not None:
        strategy = strategy.merged({})

    return GuardiansConfig(strategy=strategy, **subs)


class ActiveGuardiansConfig:
    """Lock-protected holder of the currently active configuration."""

    def __init__(self, config: Optional[GuardiansConfig] = None, preset: str = "default") -> None:
        self._lock = threading.Lock()
        self._config = config if config is not None else get_preset(preset)
        self._preset = preset if config is None else None  # type: Optional[str]

    def get(self) -> GuardiansConfig:
        with self._lock:
            return self._config.copy()

    @property
    def preset(self) -> Optional[str]:
        """Name of the last applied preset, None after manual edits."""
        with self._lock:
            return self._preset

    def replace(self, config: GuardiansConfig, preset: Optional[str] = None) -> None:
        with self._lock:
            self._config = config.copy()
            self._preset = preset

    def apply_preset(self, name: str) -> GuardiansConfig:
        config = get_preset(name)
        self.replace(config, preset=name)
        logger.info("Guardian preset applied: %s", name)
        return config.copy()

    def update(self, overrides: Dict[str, Any]) -> GuardiansConfig:
        with self._lock:
            merged = merge_config(self._config, overrides)
            self._config = merged
            self._preset = None
            logger.info("Guardian config updated: %s", sorted(overrides))
            return merged.copy()

    def set_enabled(self, key: str, enabled: bool) -> GuardiansConfig:
        if key not in SUBCONFIG_TYPES:
            raise ConfigurationError("Unknown guardian key: {}".format(key))
        return self.update({key: {"enabled": enabled}})


# ── Persistence ───────────────────────────────────────────────────────────────

async def save_guardians_config(
    pool: Any, org_id: str, account_id: str, config: GuardiansConfig,
) -> None:
    """Upsert the config blob for one (organisation, account)."""
    await pool.execute(
        """
        INSERT INTO guardian_configs (org_id, account_id, config, updated_at)
        VALUES ($1, $2, $3::jsonb, now())
        ON CONFLICT (org_id, account_id) DO UPDATE SET
            config = EXCLUDED.config,
            updated_at = EXCLUDED.updated_at
        """,
        org_id,
        account_id,
        json.dumps(config.to_dict(), sort_keys=True),
    )
    logger.info("Guardian config saved: org=%s account=%s", org_id, account_id)


async def load_guardians_config(pool: Any, org_id: str, account_id: str) -> GuardiansConfig:
    """Return the stored config, or the default preset when none is stored."""
    row = await pool.fetchrow(
        "SELECT config FROM guardian_configs WHERE org_id = $1 AND account_id = $2",
        org_id,
        account_id,
    )
    if row is None:
        logger.debug("No stored guardian config for org=%s account=%s", org_id, account_id)
        return get_preset("default")
    data = row["config"]
    if isinstance(data, str):
        data = json.loads(data)
    return GuardiansConfig.from_dict(data)
