"""Tests for guardian config presets, merge semantics and persistence."""

import json
from unittest.mock import AsyncMock

import pytest

from guardgate.config import (
    ActiveGuardiansConfig,
    GuardiansConfig,
    get_preset,
    load_guardians_config,
    merge_config,
    preset_names,
    save_guardians_config,
)
from guardgate.constants import GUARDIAN_KEYS
from guardgate.errors import ConfigurationError


# ── Presets ───────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("name", preset_names())
def test_every_preset_builds(name: str) -> None:
    """Each named preset resolves every guardian key."""
    config = get_preset(name)
    for key in GUARDIAN_KEYS:
        assert config.get(key) is not None


def test_strategy_presets_carry_thresholds() -> None:
    """Strategy presets include their threshold block; base presets do not."""
    assert get_preset("basisArb").strategy.min_funding_rate == 0.0001
    assert get_preset("autoHedge").strategy.max_hedge_size == 100.0
    assert get_preset("marketHours").strategy.weekend_lock is True
    assert get_preset("default").strategy is None


def test_unknown_preset() -> None:
    """An unknown preset name is a configuration error."""
    with pytest.raises(ConfigurationError, match="Unknown preset"):
        get_preset("yolo")


def test_get_preset_returns_fresh_copy() -> None:
    """Mutating one preset instance does not leak into the next."""
    a = get_preset("default")
    a.venue.allowed_contracts.append("DOGE")
    assert "DOGE" not in get_preset("default").venue.allowed_contracts


# ── Merge ─────────────────────────────────────────────────────────────────────

def test_merge_overrides_and_keeps_defaults() -> None:
    """Overridden fields replace the base; others are kept."""
    merged = merge_config(get_preset("default"), {"spend": {"maxPerTrade": 10}})
    assert merged.spend.max_per_trade == 10.0
    assert merged.spend.max_daily == 1000.0
    assert merged.leverage.max_leverage == 3.0


def test_merge_accepts_snake_case_fields() -> None:
    """snake_case field names work as overrides too."""
    merged = merge_config(get_preset("default"), {"rate": {"cooldown_seconds": 5}})
    assert merged.rate.cooldown_seconds == 5


def test_merge_rejects_unknown_guardian() -> None:
    """Unknown top-level keys are rejected."""
    with pytest.raises(ConfigurationError, match="Unknown guardian key"):
        merge_config(get_preset("default"), {"slippage": {"enabled": True}})


def test_merge_rejects_unknown_field() -> None:
    """Unknown fields inside a guardian are rejected."""
    with pytest.raises(ConfigurationError, match="Unknown field"):
        merge_config(get_preset("default"), {"spend": {"maxPerWeek": 10}})


@pytest.mark.parametrize("overrides", [
    {"spend": {"maxPerTrade": -1}},
    {"spend": {"enabled": "yes"}},
    {"timeWindow": {"startHour": 25}},
    {"rate": {"maxPerDay": 1.5}},
    {"loss": {"accountStatus": "frozen"}},
    {"spend": {"softLimitPct": 150}},
    {"venue": {"allowedContracts": "ETH"}},
])
def test_merge_rejects_ill_typed_values(overrides: dict) -> None:
    """Out-of-range or wrongly typed values are rejected."""
    with pytest.raises(ConfigurationError):
        merge_config(get_preset("default"), overrides)


def test_merge_does_not_mutate_base() -> None:
    """The base config is unchanged by a merge."""
    base = get_preset("default")
    merge_config(base, {"spend": {"maxPerTrade": 1}})
    assert base.spend.max_per_trade == 250.0


def test_soft_limits_optional() -> None:
    """Soft limits are unset by default and accepted when given."""
    assert get_preset("default").spend.soft_limit_pct is None
    merged = merge_config(get_preset("default"), {"spend": {"softLimitPct": 80}})
    assert merged.spend.soft_limit_pct == 80.0


def test_from_dict_round_trip() -> None:
    """to_dict output rebuilds an equal config."""
    config = get_preset("autoHedge")
    assert GuardiansConfig.from_dict(config.to_dict()) == config


def test_enabled_guardians() -> None:
    """Disabled guardians are left out."""
    assert "timeWindow" not in get_preset("default").enabled_guardians()
    assert "timeWindow" in get_preset("conservative").enabled_guardians()


# ── Active config holder ──────────────────────────────────────────────────────

def test_active_config_apply_preset() -> None:
    """Applying a preset replaces the whole config and records its name."""
    active = ActiveGuardiansConfig()
    assert active.preset == "default"
    active.apply_preset("conservative")
    assert active.preset == "conservative"
    assert active.get().spend.max_per_trade == 100.0


def test_active_config_update_clears_preset() -> None:
    """Manual edits drop the preset name."""
    active = ActiveGuardiansConfig()
    active.update({"leverage": {"maxLeverage": 2}})
    assert active.preset is None
    assert active.get().leverage.max_leverage == 2.0


def test_active_config_set_enabled() -> None:
    """Guardians can be toggled individually."""
    active = ActiveGuardiansConfig()
    active.set_enabled("venue", False)
    assert not active.get().venue.enabled
    with pytest.raises(ConfigurationError):
        active.set_enabled("nope", True)


def test_active_config_get_is_a_copy() -> None:
    """Callers cannot mutate the held config through get()."""
    active = ActiveGuardiansConfig()
    active.get().venue.allowed_contracts.clear()
    assert active.get().venue.allowed_contracts


# ── Persistence ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_save_and_load_config() -> None:
    """Saved config blob loads back for the same account."""
    pool = AsyncMock()
    pool.execute = AsyncMock()
    config = merge_config(get_preset("pro"), {"spend": {"maxDaily": 42}})
    await save_guardians_config(pool, "org-1", "acct-1", config)

    _sql, org_id, account_id, blob = pool.execute.call_args[0]
    assert (org_id, account_id) == ("org-1", "acct-1")
    assert json.loads(blob)["spend"]["maxDaily"] == 42.0

    pool.fetchrow = AsyncMock(return_value={"config": blob})
    loaded = await load_guardians_config(pool, "org-1", "acct-1")
    assert loaded == config


@pytest.mark.asyncio
async def test_load_missing_config_uses_default() -> None:
    """Without a stored row the default preset is returned."""
    pool = AsyncMock()
    pool.fetchrow = AsyncMock(return_value=None)
    loaded = await load_guardians_config(pool, "org-1", "acct-1")
    assert loaded == get_preset("default")
