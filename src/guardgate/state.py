"""Guardian State Store: the only holder of mutable guardian runtime state.

Implements:
- UTC day-keyed spend and trade counters (rollover once per day boundary)
- Cooldown clock (last execution timestamp)
- Sticky halt latch (kill switch), cleared only by an explicit resume
- Reservations: atomic "check then reserve" for money-moving calls,
  settled (idempotent compare-and-swap) or released afterwards
- HMAC-signed durable snapshot so the halt latch survives restarts

Every mutation runs under one re-entrant lock.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

from guardgate.intent import root_symbol

logger = logging.getLogger(__name__)

STATUS_RESERVED = "RESERVED"
STATUS_SETTLED = "SETTLED"
STATUS_RELEASED = "RELEASED"


class StateSignatureError(Exception):
    """Raised when the persisted guardian state fails signature verification."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GuardianState:
    """Read-only snapshot of the guardian runtime state."""

    def __init__(
        self,
        daily_spend_usd: float,
        spend_day_key: date,
        trade_count_today: int,
        last_execution_at: Optional[datetime],
        halted: bool,
        halt_reason: Optional[str],
        last_health_check_at: datetime,
        positions: Dict[str, float],
        daily_pnl: float,
        in_flight_usd: float,
        in_flight_count: int,
    ) -> None:
        self.daily_spend_usd = daily_spend_usd
        self.spend_day_key = spend_day_key
        self.trade_count_today = trade_count_today
        self.last_execution_at = last_execution_at
        self.halted = halted
        self.halt_reason = halt_reason
        self.last_health_check_at = last_health_check_at
        self.positions = dict(positions)
        self.daily_pnl = daily_pnl
        self.in_flight_usd = in_flight_usd
        self.in_flight_count = in_flight_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dailySpendUsd": self.daily_spend_usd,
            "spendDayKey": self.spend_day_key.isoformat(),
            "tradeCountToday": self.trade_count_today,
            "lastExecutionAt": self.last_execution_at.isoformat() if self.last_execution_at else None,
            "halted": self.halted,
            "haltReason": self.halt_reason,
            "lastHealthCheckAt": self.last_health_check_at.isoformat(),
            "positions": dict(self.positions),
            "dailyPnl": self.daily_pnl,
            "inFlightUsd": self.in_flight_usd,
            "inFlightCount": self.in_flight_count,
        }


class GuardianStateStore:
    """Process-lifetime guardian state with serialized, intention-revealing mutations.

    Callers never set fields directly; the day-key rollover and the halt
    latch cannot be bypassed.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._init_fields()

    def _init_fields(self) -> None:
        now = self._clock()
        self._day_key = now.date()
        self._daily_spend_usd = 0.0
        self._trade_count_today = 0
        self._last_execution_at = None  # type: Optional[datetime]
        self._halted = False
        self._halt_reason = None  # type: Optional[str]
        self._last_health_check_at = now
        self._positions = {}  # type: Dict[str, float]
        self._daily_pnl = 0.0
        self._reservations = {}  # type: Dict[str, Dict[str, Any]]

    # ── Locking ───────────────────────────────────────────────────────────────

    @contextmanager
    def locked(self) -> Iterator[GuardianStateStore]:
        """Hold the store lock so a check and the following reserve are atomic."""
        with self._lock:
            yield self

    def now(self) -> datetime:
        return self._clock()

    # ── Day rollover ──────────────────────────────────────────────────────────

    def _check_day_rollover(self) -> None:
        """Reset daily counters once when the UTC day changes."""
        today = self._clock().date()
        if today != self._day_key:
            logger.info(
                "Guardian day rollover: %s -> %s (spend=%.2f trades=%d)",
                self._day_key, today, self._daily_spend_usd, self._trade_count_today,
            )
            self._day_key = today
            self._daily_spend_usd = 0.0
            self._trade_count_today = 0
            self._daily_pnl = 0.0

    def _in_flight(self) -> Dict[str, Any]:
        usd = 0.0
        count = 0
        for r in self._reservations.values():
            if r["status"] == STATUS_RESERVED:
                usd += r["usd"]
                count += 1
        return {"usd": usd, "count": count}

    # ── Reads ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> GuardianState:
        with self._lock:
            self._check_day_rollover()
            in_flight = self._in_flight()
            return GuardianState(
                daily_spend_usd=self._daily_spend_usd,
                spend_day_key=self._day_key,
                trade_count_today=self._trade_count_today,
                last_execution_at=self._last_execution_at,
                halted=self._halted,
                halt_reason=self._halt_reason,
                last_health_check_at=self._last_health_check_at,
                positions=self._positions,
                daily_pnl=self._daily_pnl,
                in_flight_usd=in_flight["usd"],
                in_flight_count=in_flight["count"],
            )

    @property
    def is_halted(self) -> bool:
        with self._lock:
            return self._halted

    @property
    def halt_reason(self) -> Optional[str]:
        with self._lock:
            return self._halt_reason

    def cooldown_remaining(self, cooldown_seconds: float) -> float:
        """Seconds until the cooldown elapses; 0 with no prior execution."""
        with self._lock:
            if self._in_flight()["count"] > 0:
                return float(cooldown_seconds)
            if self._last_execution_at is None:
                return 0.0
            elapsed = (self._clock() - self._last_execution_at).total_seconds()
            return max(0.0, cooldown_seconds - elapsed)

    def trades_remaining(self, max_per_day: int) -> int:
        with self._lock:
            self._check_day_rollover()
            used = self._trade_count_today + self._in_flight()["count"]
            return max(0, max_per_day - used)

    def daily_spend_remaining(self, max_daily: float) -> float:
        with self._lock:
            self._check_day_rollover()
            used = self._daily_spend_usd + self._in_flight()["usd"]
            return max(0.0, max_daily - used)

    def position(self, symbol: str) -> float:
        with self._lock:
            return self._positions.get(root_symbol(symbol), 0.0)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def record_execution(self) -> None:
        """Advance the cooldown clock after a successful downstream execution."""
        with self._lock:
            self._last_execution_at = self._clock()

    def record_trade(self, market: str, usd: float) -> None:
        """Commit a confirmed trade: spend, trade count, cooldown, position."""
        with self._lock:
            self._check_day_rollover()
            self._commit(market, usd)

    def _commit(self, market: str, usd: float) -> None:
        symbol = root_symbol(market)
        self._daily_spend_usd += usd
        self._trade_count_today += 1
        self._last_execution_at = self._clock()
        self._positions[symbol] = self._positions.get(symbol, 0.0) + usd
        logger.debug(
            "Trade recorded: market=%s usd=%.2f daily_spend=%.2f trades=%d",
            market, usd, self._daily_spend_usd, self._trade_count_today,
        )

    def trigger_halt(self, reason: str) -> None:
        """Latch the kill switch. Only resume_trading() clears it."""
        with self._lock:
            if self._halted:
                logger.info("Halt already latched (%s); new reason ignored: %s", self._halt_reason, reason)
                return
            self._halted = True
            self._halt_reason = reason
        logger.warning("Trading HALTED: %s", reason)

    def resume_trading(self) -> None:
        with self._lock:
            was_halted = self._halted
            self._halted = False
            self._halt_reason = None
        if was_halted:
            logger.warning("Trading resumed by explicit operator action")

    def record_drawdown(self, pnl: float, max_drawdown: float) -> bool:
        """Store current PnL; latch the halt when it breaches -max_drawdown.

        Returns True if the store is halted after the call.
        """
        with self._lock:
            self._check_day_rollover()
            self._daily_pnl = pnl
            if pnl < -max_drawdown:
                self.trigger_halt(
                    "Drawdown limit breached: PnL {:.2f} below -{:.2f}".format(pnl, max_drawdown)
                )
            return self._halted

    def simulate_drawdown_breach(self) -> None:
        """Operator drill: behave exactly as a real drawdown breach."""
        self.trigger_halt("Simulated drawdown breach")

    def mark_health_check(self) -> None:
        with self._lock:
            self._last_health_check_at = self._clock()

    def reset_state(self) -> None:
        """Return to the initial state. Operator and test tooling only."""
        with self._lock:
            self._init_fields()
        logger.warning("Guardian state reset to initial values")

    # ── Reservations ──────────────────────────────────────────────────────────

    def reserve(self, market: str, usd: float) -> str:
        """Reserve spend and a trade slot for an in-flight execution.

        Call inside locked() immediately after a passing check so no other
        request can consume the same remaining budget.
        """
        with self._lock:
            self._check_day_rollover()
            reservation_id = str(uuid.uuid4())
            self._reservations[reservation_id] = {
                "reservation_id": reservation_id,
                "market": market,
                "usd": usd,
                "status": STATUS_RESERVED,
                "reserved_at": self._clock(),
            }
            logger.debug("Reserved: id=%s market=%s usd=%.2f", reservation_id, market, usd)
            return reservation_id

    def settle(self, reservation_id: str) -> bool:
        """Commit a reservation as a trade. Returns False if already final."""
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None or r["status"] != STATUS_RESERVED:
                logger.info("Settle: reservation %s not pending (idempotent)", reservation_id)
                return False
            self._check_day_rollover()
            r["status"] = STATUS_SETTLED
            self._commit(r["market"], r["usd"])
            del self._reservations[reservation_id]
            return True

    def release(self, reservation_id: str) -> bool:
        """Drop a reservation without spending. Returns False if already final."""
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None or r["status"] != STATUS_RESERVED:
                return False
            r["status"] = STATUS_RELEASED
            del self._reservations[reservation_id]
            logger.debug("Released: id=%s", reservation_id)
            return True

    # ── Durable snapshot ──────────────────────────────────────────────────────

    def export_durable(self) -> Dict[str, Any]:
        """Fields persisted across restarts (no in-flight reservations)."""
        with self._lock:
            self._check_day_rollover()
            return {
                "day_key": self._day_key.isoformat(),
                "daily_spend_usd": self._daily_spend_usd,
                "trade_count_today": self._trade_count_today,
                "last_execution_at": self._last_execution_at.isoformat() if self._last_execution_at else None,
                "halted": self._halted,
                "halt_reason": self._halt_reason,
                "positions": dict(self._positions),
                "daily_pnl": self._daily_pnl,
            }

    def import_durable(self, data: Dict[str, Any]) -> None:
        """Restore persisted fields. Counters only carry over within the same UTC day."""
        with self._lock:
            if data.get("halted"):
                self._halted = True
                self._halt_reason = data.get("halt_reason") or "Restored halt"
            last = data.get("last_execution_at")
            self._last_execution_at = datetime.fromisoformat(last) if last else None
            self._positions = {k: float(v) for k, v in (data.get("positions") or {}).items()}

            today = self._clock().date()
            if data.get("day_key") == today.isoformat():
                self._day_key = today
                self._daily_spend_usd = float(data.get("daily_spend_usd", 0.0))
                self._trade_count_today = int(data.get("trade_count_today", 0))
                self._daily_pnl = float(data.get("daily_pnl", 0.0))


def compute_state_signature(payload_json: str, secret: str) -> bytes:
    """HMAC-SHA256 over the canonical state payload."""
    return hmac.new(
        secret.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).digest()


def _canonical(data: Dict[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


async def save_guardian_state(pool: Any, store: GuardianStateStore, secret: str) -> None:
    """Upsert the signed guardian_state singleton row."""
    payload_json = _canonical(store.export_durable())
    signature = compute_state_signature(payload_json, secret)
    await pool.execute(
        """
        INSERT INTO guardian_state (id, payload, signature, updated_at)
        VALUES (TRUE, $1::jsonb, $2, now())
        ON CONFLICT (id) DO UPDATE SET
            payload = EXCLUDED.payload,
            signature = EXCLUDED.signature,
            updated_at = EXCLUDED.updated_at
        """,
        payload_json,
        signature,
    )


async def restore_guardian_state(pool: Any, store: GuardianStateStore, secret: str) -> bool:
    """Load the signed guardian_state row into the store.

    Returns False when no row exists yet.
    Raises StateSignatureError if the row was tampered with.
    """
    row = await pool.fetchrow("SELECT payload, signature FROM guardian_state WHERE id = TRUE")
    if row is None:
        return False

    payload = row["payload"]
    data = json.loads(payload) if isinstance(payload, str) else dict(payload)
    expected = compute_state_signature(_canonical(data), secret)
    if not hmac.compare_digest(bytes(row["signature"]), expected):
        raise StateSignatureError(
            "Guardian state signature verification failed, possible tampering"
        )

    store.import_durable(data)
    logger.info(
        "Guardian state restored: halted=%s trades_today=%s",
        data.get("halted"), data.get("trade_count_today"),
    )
    return True
