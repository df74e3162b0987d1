"""Locked defaults for the guardian policy engine.

Preset tables are the source of truth for every named GuardiansConfig.
Values MUST NOT be changed at runtime; operators override them per account
through the persisted configuration blob.
"""

from __future__ import annotations

# ── Action intents ────────────────────────────────────────────────────────────
INTENT_TYPES = frozenset({
    "spot-market-order",
    "spot-limit-order",
    "transfer",
    "vault-op",
})
INTENT_SIDES = frozenset({"BUY", "SELL"})
TARGETED_INTENT_TYPES = frozenset({"transfer", "vault-op"})
DEFAULT_VALID_FOR_SEC = 60
MARKET_PAIR_SEPARATOR = "/"

# Slippage above this is allowed by config but surfaces as a warning
RECOMMENDED_MAX_SLIPPAGE_BPS = 100

# ── Guardians ─────────────────────────────────────────────────────────────────
GUARDIAN_KEYS = (
    "spend",
    "leverage",
    "exposure",
    "venue",
    "rate",
    "timeWindow",
    "loss",
)

GUARDIAN_NAMES = {
    "spend": "Spend Guardian",
    "leverage": "Leverage Guardian",
    "exposure": "Exposure Guardian",
    "venue": "Venue Guardian",
    "rate": "Rate Guardian",
    "timeWindow": "Time Window",
    "loss": "Loss Guardian",
    "strategy": "Strategy Guardian",
    "custody": "Custody Policy",
}

SEVERITY_BLOCK = "block"
SEVERITY_WARN = "warn"

ACCOUNT_STATUSES = frozenset({"active", "paused"})

# ── Strategies ────────────────────────────────────────────────────────────────
STRATEGY_PRESETS = ("basisArb", "autoHedge", "marketHours", "drawdownStop")

STRATEGY_INFO = {
    "basisArb": {
        "name": "Basis/Funding Arb",
        "default_market": "GOLD-USDH",
        "pass_condition": "Funding >= minimum and basis spread under cap",
    },
    "autoHedge": {
        "name": "Auto-Hedge Delta",
        "default_market": "ETH-PERP",
        "pass_condition": "Delta drift above threshold, hedge within limits",
    },
    "marketHours": {
        "name": "Market Hours Mode",
        "default_market": "ETH-PERP",
        "pass_condition": "Within trading window on a weekday",
    },
    "drawdownStop": {
        "name": "Drawdown Stop",
        "default_market": "ETH-PERP",
        "pass_condition": "Account active and PnL above the drawdown limit",
    },
}

# ── Presets ───────────────────────────────────────────────────────────────────
DEFAULT_ROUTER = "0x1111111111111111111111111111111111111111"

PRESET_TABLE = {
    "default": {
        "spend": {"enabled": True, "maxPerTrade": 250, "maxDaily": 1000},
        "leverage": {"enabled": True, "maxLeverage": 3},
        "exposure": {"enabled": True, "maxPerAsset": 500},
        "venue": {
            "enabled": True,
            "allowedContracts": [DEFAULT_ROUTER, "ETH", "BTC", "ETH-PERP", "BTC-PERP", "PORTFOLIO_TRADE"],
            "allowedRecipients": [],
        },
        "rate": {"enabled": True, "maxPerDay": 10, "cooldownSeconds": 60},
        "timeWindow": {"enabled": False, "startHour": 9, "endHour": 17},
        "loss": {"enabled": True, "maxDrawdown": 200, "accountStatus": "active"},
    },
    "conservative": {
        "spend": {"enabled": True, "maxPerTrade": 100, "maxDaily": 500},
        "leverage": {"enabled": True, "maxLeverage": 1},
        "exposure": {"enabled": True, "maxPerAsset": 250},
        "venue": {
            "enabled": True,
            "allowedContracts": [DEFAULT_ROUTER, "ETH", "BTC", "ETH-PERP", "BTC-PERP", "PORTFOLIO_TRADE"],
            "allowedRecipients": [],
        },
        "rate": {"enabled": True, "maxPerDay": 5, "cooldownSeconds": 120},
        "timeWindow": {"enabled": True, "startHour": 9, "endHour": 17},
        "loss": {"enabled": True, "maxDrawdown": 100, "accountStatus": "active"},
    },
    "pro": {
        "spend": {"enabled": True, "maxPerTrade": 500, "maxDaily": 5000},
        "leverage": {"enabled": True, "maxLeverage": 5},
        "exposure": {"enabled": True, "maxPerAsset": 1000},
        "venue": {
            "enabled": True,
            "allowedContracts": [DEFAULT_ROUTER, "ETH", "BTC"],
            "allowedRecipients": [],
        },
        "rate": {"enabled": True, "maxPerDay": 50, "cooldownSeconds": 10},
        "timeWindow": {"enabled": False, "startHour": 0, "endHour": 24},
        "loss": {"enabled": True, "maxDrawdown": 500, "accountStatus": "active"},
    },
    "basisArb": {
        "spend": {"enabled": True, "maxPerTrade": 250, "maxDaily": 1000},
        "leverage": {"enabled": True, "maxLeverage": 3},
        "exposure": {"enabled": True, "maxPerAsset": 1000},
        "venue": {
            "enabled": True,
            "allowedContracts": ["GOLD-USDH", "OIL-USDH", "ETH-PERP"],
            "allowedRecipients": [],
        },
        "rate": {"enabled": True, "maxPerDay": 20, "cooldownSeconds": 30},
        "timeWindow": {"enabled": False, "startHour": 0, "endHour": 24},
        "loss": {"enabled": True, "maxDrawdown": 200, "accountStatus": "active"},
        "strategy": {"minFundingRate": 0.0001, "maxBasisSpread": 0.005},
    },
    "autoHedge": {
        "spend": {"enabled": True, "maxPerTrade": 100, "maxDaily": 500},
        "leverage": {"enabled": True, "maxLeverage": 2},
        "exposure": {"enabled": True, "maxPerAsset": 500},
        "venue": {
            "enabled": True,
            "allowedContracts": ["ETH-PERP", "BTC-PERP"],
            "allowedRecipients": [],
        },
        "rate": {"enabled": True, "maxPerDay": 50, "cooldownSeconds": 10},
        "timeWindow": {"enabled": True, "startHour": 8, "endHour": 22},
        "loss": {"enabled": True, "maxDrawdown": 150, "accountStatus": "active"},
        "strategy": {"deltaThreshold": 50, "maxHedgeSize": 100},
    },
    "marketHours": {
        "spend": {"enabled": True, "maxPerTrade": 250, "maxDaily": 1000},
        "leverage": {"enabled": True, "maxLeverage": 3},
        "exposure": {"enabled": True, "maxPerAsset": 500},
        "venue": {"enabled": True, "allowedContracts": [], "allowedRecipients": []},
        "rate": {"enabled": True, "maxPerDay": 20, "cooldownSeconds": 30},
        "timeWindow": {"enabled": True, "startHour": 9, "endHour": 17},
        "loss": {"enabled": True, "maxDrawdown": 200, "accountStatus": "active"},
        "strategy": {"weekendLock": True},
    },
    "drawdownStop": {
        "spend": {"enabled": True, "maxPerTrade": 250, "maxDaily": 1000},
        "leverage": {"enabled": True, "maxLeverage": 3},
        "exposure": {"enabled": True, "maxPerAsset": 500},
        "venue": {"enabled": True, "allowedContracts": [], "allowedRecipients": []},
        "rate": {"enabled": True, "maxPerDay": 20, "cooldownSeconds": 30},
        "timeWindow": {"enabled": False, "startHour": 0, "endHour": 24},
        "loss": {"enabled": True, "maxDrawdown": 100, "accountStatus": "active"},
        "strategy": {"accountStatus": "active", "requireManualResume": True},
    },
}

# ── Approvals ─────────────────────────────────────────────────────────────────
APPROVAL_TYPES = frozenset({
    "auto_hedge",
    "deploy_liquidity",
    "rebalance_vault",
    "basket_trade",
    "transfer",
    "spot_trade",
})
APPROVAL_EXPIRY_SEC = 300
DEFAULT_PROPOSAL_NOTIONAL_USD = 100.0
DEFAULT_PROPOSAL_MARKET = "ETH/USD"
DEFAULT_PROPOSAL_SLIPPAGE_BPS = 50

# ── Audit ─────────────────────────────────────────────────────────────────────
AUDIT_STATUSES = (
    "approved",
    "denied",
    "pending",
    "filled",
    "partial",
    "failed",
    "confirmed",
)
AUDIT_SUCCESS_STATUSES = frozenset({"approved", "filled", "partial", "confirmed"})
AUDIT_ACTION_TYPES = frozenset({"trade", "transfer", "vault", "order", "approval", "test"})
AUDIT_CATEGORIES = frozenset({"policy", "execution"})
AUDIT_SOURCES = frozenset({"user", "agent"})
AUDIT_DEFAULT_PAGE_SIZE = 50

# ── Collaborator timeouts ─────────────────────────────────────────────────────
CUSTODY_TIMEOUT_SEC = 30
MARKET_DATA_TIMEOUT_SEC = 5
