"""Action gate: the single path from an intent to the custody backend.

Flow per request:
1. Optional guardrails (400 on failure)
2. Risk engine re-check and spend reservation, atomically under the store lock
   (403 with denials on failure)
3. One custody call with a bounded timeout, never retried
4. Reservation settled or released according to the outcome; every branch
   writes exactly one audit record
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from guardgate import guardrails as guardrail_rules
from guardgate.audit import AuditLedger
from guardgate.config import ActiveGuardiansConfig, GuardiansConfig
from guardgate.constants import AUDIT_SOURCES, CUSTODY_TIMEOUT_SEC, DEFAULT_ROUTER
from guardgate.custody import (
    OUTCOME_DENIED,
    OUTCOME_INDETERMINATE,
    OUTCOME_OK,
    CustodyOutcome,
    call_custody,
    find_account,
)
from guardgate.errors import ConfigurationError, ResourceNotFound, ValidationError
from guardgate.guardrails import GuardrailsConfig
from guardgate.intent import ActionIntent
from guardgate.risk_engine import GuardianDenial, RiskEngine
from guardgate.state import GuardianStateStore

logger = logging.getLogger(__name__)

AUDIT_ACTION_FOR_INTENT = {
    "spot-market-order": "trade",
    "spot-limit-order": "order",
    "transfer": "transfer",
    "vault-op": "vault",
}

DEFAULT_TRANSFER_TOKEN = "USDC"


class GateResponse:
    """Status code plus a JSON-safe body."""

    def __init__(self, status_code: int, body: Dict[str, Any]) -> None:
        self.status_code = status_code
        self.body = body

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def __repr__(self) -> str:
        return "GateResponse({}, {})".format(self.status_code, self.body)

    def to_dict(self) -> Dict[str, Any]:
        return {"statusCode": self.status_code, "body": dict(self.body)}


def _audit_payload(intent: ActionIntent) -> Dict[str, Any]:
    payload = {
        "market": intent.market,
        "amount": intent.notional_usd,
        "side": intent.side,
        "leverage": intent.leverage,
    }  # type: Dict[str, Any]
    if intent.target:
        payload["to"] = intent.target
    if intent.token:
        payload["token"] = intent.token
    if intent.rationale:
        payload["description"] = " ".join(intent.rationale)
    return payload


def _guardrail_denials(issues: List[str]) -> List[Dict[str, Any]]:
    return [
        {"guardian": "guardrails", "name": "Guardrails", "reason": issue, "severity": "block"}
        for issue in issues
    ]


class ActionGate:
    """Gates every outgoing action behind local policy before custody sees it."""

    def __init__(
        self,
        store: GuardianStateStore,
        engine: RiskEngine,
        active_config: ActiveGuardiansConfig,
        custody: Any,
        ledger: AuditLedger,
        guardrails: Optional[GuardrailsConfig] = None,
        custody_timeout: float = CUSTODY_TIMEOUT_SEC,
    ) -> None:
        self.store = store
        self.engine = engine
        self.active_config = active_config
        self.custody = custody
        self.ledger = ledger
        self.guardrails = guardrails
        self.custody_timeout = custody_timeout

    async def submit(
        self,
        intent: ActionIntent,
        account: Dict[str, Any],
        source: str = "user",
        config: Optional[GuardiansConfig] = None,
    ) -> GateResponse:
        """Check, reserve, execute and audit one intent."""
        action_type = AUDIT_ACTION_FOR_INTENT[intent.type]
        payload = _audit_payload(intent)
        config = config if config is not None else self.active_config.get()

        if not isinstance(source, str) or source not in AUDIT_SOURCES:
            raise ValidationError(["source must be one of {}, got {!r}".format(sorted(AUDIT_SOURCES), source)])
        if intent.type == "transfer" and not intent.target:
            raise ValidationError(["transfer requires a target recipient"])

        if self.guardrails is not None:
            rails = guardrail_rules.evaluate(intent, self.guardrails, self.store)
            if not rails.passed:
                self._record(
                    action_type, "denied", False,
                    account=account, payload=payload,
                    denials=_guardrail_denials(rails.issues), source=source,
                )
                return GateResponse(400, {
                    "success": False,
                    "error": "Guardrails check failed",
                    "issues": rails.issues,
                    "warnings": rails.warnings,
                })

        with self.store.locked():
            result = self.engine.check_all(intent, config)
            if not result.passed:
                self._record(
                    action_type, "denied", False,
                    account=account, payload=payload,
                    denials=result.denials, source=source,
                )
                return GateResponse(403, {
                    "success": False,
                    "error": "Blocked by guardians",
                    "denials": [d.to_dict() for d in result.denials],
                    "warnings": [w.to_dict() for w in result.warnings],
                })
            reservation_id = self.store.reserve(intent.market, intent.notional_usd)

        outcome = await self._execute(intent, account)
        return self._finish(intent, account, source, action_type, payload, reservation_id, outcome, result.warnings)

    def _record(self, action_type: str, status: str, passed: bool, **fields: Any) -> None:
        """Write one audit record. A record that cannot be built is logged and counted."""
        try:
            self.ledger.record_decision(action_type, status, passed, **fields)
        except Exception as e:
            self.ledger.write_failures += 1
            logger.error("Audit record for %s (%s) could not be written: %s", action_type, status, e)

    async def _execute(self, intent: ActionIntent, account: Dict[str, Any]) -> CustodyOutcome:
        account_id = account.get("id")
        if intent.type == "transfer":
            to = intent.target or ""
            token = intent.token or DEFAULT_TRANSFER_TOKEN

            def call() -> Any:
                return self.custody.transfer(account_id, to, token, str(intent.notional_usd))
        else:
            to = intent.target or DEFAULT_ROUTER

            def call() -> Any:
                return self.custody.submit_tx(account_id, to, "0x", str(intent.notional_usd))

        return await call_custody(call, timeout=self.custody_timeout)

    def _finish(
        self,
        intent: ActionIntent,
        account: Dict[str, Any],
        source: str,
        action_type: str,
        payload: Dict[str, Any],
        reservation_id: str,
        outcome: CustodyOutcome,
        warnings: List[GuardianDenial],
    ) -> GateResponse:
        if outcome.kind == OUTCOME_OK:
            self.store.settle(reservation_id)
            self._record(
                action_type, "confirmed", True,
                account=account, payload=payload, category="execution",
                source=source, tx_hash=outcome.tx_hash,
                order_id=outcome.receipt.get("orderId"),
                fill_price=outcome.receipt.get("fillPrice"),
                fill_amount=outcome.receipt.get("fillAmount"),
                gas_used=outcome.receipt.get("gasUsed"),
                gas_cost=outcome.receipt.get("gasCost"),
            )
            logger.info("Executed %s %s $%.2f tx=%s", intent.type, intent.market, intent.notional_usd, outcome.tx_hash)
            return GateResponse(200, {
                "success": True,
                "status": "confirmed",
                "txHash": outcome.tx_hash,
                "warnings": [w.to_dict() for w in warnings],
            })

        if outcome.kind == OUTCOME_DENIED:
            self.store.release(reservation_id)
            breach = outcome.policy_breach
            denial = GuardianDenial("custody", breach.reason, current=breach.rule)
            self._record(
                action_type, "denied", False,
                account=account, payload=payload, category="execution",
                denials=[denial], source=source,
            )
            return GateResponse(403, {
                "success": False,
                "error": "Denied by custody policy",
                "policyBreach": breach.to_dict(),
                "denials": [denial.to_dict()],
            })

        if outcome.kind == OUTCOME_INDETERMINATE:
            # Counted as spent: the action may have executed
            self.store.settle(reservation_id)
            self._record(
                action_type, "pending", True,
                account=account, payload=payload, category="execution",
                source=source, stage="execution",
            )
            return GateResponse(500, {
                "success": False,
                "stage": "execution",
                "indeterminate": True,
                "error": outcome.error,
            })

        self.store.release(reservation_id)
        self._record(
            action_type, "failed", True,
            account=account, payload=payload, category="execution",
            source=source, stage="execution",
        )
        return GateResponse(500, {
            "success": False,
            "stage": "execution",
            "error": outcome.error,
        })

    async def handle(self, body: Any, account: Optional[Dict[str, Any]] = None) -> GateResponse:
        """Parse a request body and submit it, mapping errors to status codes.

        Body: ``{"actionIntent": {...}, "source": "agent", "orgId": ..., "accountId": ...}``
        or the intent fields at the top level.
        """
        try:
            if not isinstance(body, dict):
                raise ValidationError(["request body must be an object"])
            intent = ActionIntent.from_dict(body.get("actionIntent", body))
            source = body.get("source", "user")
            if account is None:
                org_id = body.get("orgId")
                account_id = body.get("accountId")
                if not org_id or not account_id:
                    raise ValidationError(["orgId and accountId are required"])
                account = await find_account(self.custody, org_id, account_id)
            return await self.submit(intent, account, source=source)
        except ValidationError as e:
            return GateResponse(400, {"success": False, "error": "Invalid request", "issues": e.errors})
        except ResourceNotFound as e:
            return GateResponse(404, {"success": False, "error": str(e)})
        except ConfigurationError as e:
            return GateResponse(400, {"success": False, "error": str(e)})

    def preview(self, intent: ActionIntent, config: Optional[GuardiansConfig] = None) -> Dict[str, Any]:
        """Dry run of both evaluators plus sizing suggestions. Never mutates state."""
        config = config if config is not None else self.active_config.get()
        result = self.engine.check_all(intent, config)
        rails = None
        if self.guardrails is not None:
            rails = guardrail_rules.evaluate(intent, self.guardrails, self.store)

        suggestions = []  # type: List[str]
        what_if = []  # type: List[Dict[str, Any]]
        guardians = {d.guardian for d in result.denials}

        if "spend" in guardians:
            ceiling = min(config.spend.max_per_trade, self.store.daily_spend_remaining(config.spend.max_daily))
            if ceiling > 0:
                suggestions.append("Reduce size to ${:.2f} or less".format(ceiling))
                what_if.append({
                    "change": "Size -> ${:.2f}".format(ceiling),
                    "description": "Reducing to ${:.2f} stays within the spend limits".format(ceiling),
                })
            else:
                suggestions.append("Daily spend limit exhausted, wait for the UTC day rollover")
        if "exposure" in guardians:
            capacity = config.exposure.max_per_asset - self.store.position(intent.root_symbol)
            if capacity > 0:
                suggestions.append("Reduce size to ${:.2f} to stay under the {} exposure cap".format(
                    capacity, intent.root_symbol,
                ))
        if "leverage" in guardians:
            suggestions.append("Lower leverage to {:g}x or less".format(config.leverage.max_leverage))
        if "rate" in guardians:
            remaining = self.store.cooldown_remaining(config.rate.cooldown_seconds)
            if remaining > 0:
                suggestions.append("Retry after the {:.0f}s cooldown".format(remaining))
        if "loss" in guardians:
            suggestions.append("Trading is halted or paused, an operator must resume it")
        if rails is not None and not rails.passed and intent.notional_usd > self.guardrails.max_per_tx:
            suggestions.append("Reduce size to ${:.2f} per transaction".format(self.guardrails.max_per_tx))

        would_pass = result.passed and (rails is None or rails.passed)
        return {
            "wouldPass": would_pass,
            "guardians": result.to_dict(),
            "guardrails": rails.to_dict() if rails is not None else None,
            "suggestions": suggestions,
            "whatIf": what_if,
        }
