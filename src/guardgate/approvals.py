"""Approval Workflow: human-gated actions.

State machine per proposal:
    pending -> approved   (execution attempted, receipt attached)
    pending -> rejected   (operator reject, expiry, or failed policy re-check)

Each proposal transitions exactly once. The risk engine runs at proposal
time and again, under the store lock, right before execution.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from guardgate.config import ActiveGuardiansConfig
from guardgate.constants import (
    APPROVAL_EXPIRY_SEC,
    APPROVAL_TYPES,
    DEFAULT_PROPOSAL_MARKET,
    DEFAULT_PROPOSAL_NOTIONAL_USD,
    DEFAULT_PROPOSAL_SLIPPAGE_BPS,
)
from guardgate.errors import InvalidStateTransition, ResourceNotFound, ValidationError
from guardgate.intent import ActionIntent
from guardgate.risk_engine import RiskEngine

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"

ACTION_NAMES = {
    "auto_hedge": "Auto-Hedge",
    "deploy_liquidity": "Deploy Liquidity",
    "rebalance_vault": "Rebalance Vault",
    "basket_trade": "Basket Trade",
    "transfer": "Transfer",
    "spot_trade": "Spot Trade",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _notional(action_type: str, details: Dict[str, Any]) -> float:
    if action_type == "auto_hedge":
        return float(details.get("hedgeSize", details.get("amount", DEFAULT_PROPOSAL_NOTIONAL_USD)))
    if action_type == "deploy_liquidity":
        return float(details.get("lpAmount", details.get("amount", DEFAULT_PROPOSAL_NOTIONAL_USD)))
    return float(details.get("amount", DEFAULT_PROPOSAL_NOTIONAL_USD))


def build_intent(action_type: str, details: Dict[str, Any]) -> ActionIntent:
    """Translate proposal details into the intent the guardians evaluate."""
    notional = _notional(action_type, details)
    rationale = ("{} action".format(action_type),)
    if action_type == "transfer":
        recipient = details.get("recipient") or details.get("to")
        if not recipient:
            raise ValidationError(["transfer proposals require a recipient"])
        return ActionIntent(
            type="transfer",
            market=details.get("market", details.get("token", "USDC")),
            side="SELL",
            notional_usd=notional,
            max_slippage_bps=DEFAULT_PROPOSAL_SLIPPAGE_BPS,
            rationale=rationale,
            target=recipient,
            token=details.get("token"),
        )
    return ActionIntent(
        type="spot-market-order",
        market=details.get("market", DEFAULT_PROPOSAL_MARKET),
        side=str(details.get("side", "BUY")).upper(),
        notional_usd=notional,
        max_slippage_bps=DEFAULT_PROPOSAL_SLIPPAGE_BPS,
        rationale=rationale,
    )


def _title(action_type: str, details: Dict[str, Any], notional: float) -> str:
    name = ACTION_NAMES[action_type]
    if action_type == "rebalance_vault":
        return name
    if action_type == "basket_trade":
        return "{}: {} assets".format(name, len(details.get("basket") or []))
    if action_type == "transfer":
        return "{}: ${:.2f} {}".format(name, notional, details.get("token", "USDC"))
    return "{}: ${:.2f} {}".format(name, notional, details.get("market", DEFAULT_PROPOSAL_MARKET))


class PendingAction:
    """A proposed action awaiting an approve/reject decision."""

    def __init__(
        self,
        id: str,
        type: str,
        details: Dict[str, Any],
        proposed_by: str,
        intent: ActionIntent,
        policy_check: Dict[str, Any],
        created_at: datetime,
        expires_at: datetime,
        title: str,
        description: str,
    ) -> None:
        self.id = id
        self.type = type
        self.details = dict(details)
        self.proposed_by = proposed_by
        self.intent = intent
        self.policy_check = policy_check
        self.status = STATUS_PENDING
        self.created_at = created_at
        self.expires_at = expires_at
        self.title = title
        self.description = description
        self.resolution_reason = None  # type: Optional[str]
        self.resolved_at = None  # type: Optional[datetime]
        self.execution = None  # type: Optional[Dict[str, Any]]
        self._executing = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "details": dict(self.details),
            "proposedBy": self.proposed_by,
            "policyCheck": dict(self.policy_check),
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "resolutionReason": self.resolution_reason,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "execution": self.execution,
        }


class ApprovalQueue:
    """In-memory approval queue backed by the risk engine and the action gate."""

    def __init__(
        self,
        engine: RiskEngine,
        active_config: ActiveGuardiansConfig,
        gate: Any,
        clock: Optional[Callable[[], datetime]] = None,
        expiry_seconds: int = APPROVAL_EXPIRY_SEC,
    ) -> None:
        self.engine = engine
        self.active_config = active_config
        self.gate = gate
        self._clock = clock or _utcnow
        self.expiry_seconds = expiry_seconds
        self._lock = threading.Lock()
        self._actions = {}  # type: Dict[str, PendingAction]

    def propose(self, type: str, details: Dict[str, Any], proposed_by: str = "user") -> PendingAction:
        """Store a proposal with its policy check, whatever the verdict."""
        if type not in APPROVAL_TYPES:
            raise ValidationError(["type must be one of {}".format(sorted(APPROVAL_TYPES))])
        if proposed_by not in ("user", "agent"):
            raise ValidationError(["proposedBy must be user or agent"])

        details = dict(details or {})
        intent = build_intent(type, details)
        result = self.engine.check_all(intent, self.active_config.get())
        now = self._clock()

        action = PendingAction(
            id=str(uuid.uuid4()),
            type=type,
            details=details,
            proposed_by=proposed_by,
            intent=intent,
            policy_check={
                "passed": result.passed,
                "denials": [d.to_dict() for d in result.denials],
            },
            created_at=now,
            expires_at=now + timedelta(seconds=self.expiry_seconds),
            title=_title(type, details, intent.notional_usd),
            description=details.get("description") or " ".join(intent.rationale),
        )
        with self._lock:
            self._actions[action.id] = action
        logger.info(
            "Action proposed: id=%s type=%s by=%s policy_passed=%s",
            action.id, type, proposed_by, result.passed,
        )
        return action

    def _resolve(self, action: PendingAction, status: str, reason: Optional[str]) -> None:
        action.status = status
        action.resolution_reason = reason
        action.resolved_at = self._clock()
        logger.info("Action %s %s: %s", action.id, status, reason or "")

    def _expire_locked(self, action: PendingAction) -> bool:
        if action.status == STATUS_PENDING and not action._executing and self._clock() > action.expires_at:
            self._resolve(action, STATUS_REJECTED, "Expired before approval")
            return True
        return False

    def _get_locked(self, action_id: str) -> PendingAction:
        action = self._actions.get(action_id)
        if action is None:
            raise ResourceNotFound("Pending action not found: {}".format(action_id))
        self._expire_locked(action)
        return action

    def _claim(self, action_id: str) -> PendingAction:
        action = self._get_locked(action_id)
        if action.status != STATUS_PENDING or action._executing:
            raise InvalidStateTransition(
                "Action {} is {}, not pending".format(action_id, action.status)
            )
        return action

    async def approve(self, action_id: str, account: Dict[str, Any]) -> PendingAction:
        """Approve and execute through the gate.

        Expired proposals, a failed proposal-time check, or a failed re-check
        before execution all resolve to rejected.
        """
        with self._lock:
            action = self._actions.get(action_id)
            if action is not None and self._expire_locked(action):
                return action
            action = self._claim(action_id)
            if not action.policy_check["passed"]:
                self._resolve(action, STATUS_REJECTED, "Policy check failed at proposal")
                return action
            action._executing = True

        try:
            response = await self.gate.submit(action.intent, account, source=action.proposed_by)
        finally:
            with self._lock:
                action._executing = False

        body = response.body
        with self._lock:
            locally_denied = response.status_code == 400 or (
                response.status_code == 403 and "policyBreach" not in body
            )
            action.execution = response.to_dict()
            if locally_denied:
                reasons = [d.get("reason", "") for d in body.get("denials", [])] or body.get("issues", [])
                self._resolve(action, STATUS_REJECTED, "Policy re-check failed: {}".format("; ".join(reasons)))
            else:
                self._resolve(action, STATUS_APPROVED, "Executed with status {}".format(response.status_code))
        return action

    def reject(self, action_id: str, reason: str = "Rejected by operator") -> PendingAction:
        with self._lock:
            action = self._claim(action_id)
            self._resolve(action, STATUS_REJECTED, reason)
            return action

    def get(self, action_id: str) -> PendingAction:
        with self._lock:
            return self._get_locked(action_id)

    def list_actions(self) -> List[PendingAction]:
        """All actions, newest first. Stale proposals are expired on read."""
        with self._lock:
            for action in self._actions.values():
                self._expire_locked(action)
            return sorted(self._actions.values(), key=lambda a: a.created_at, reverse=True)

    def pending_count(self) -> int:
        return sum(1 for a in self.list_actions() if a.status == STATUS_PENDING)
