"""Custody collaborator: the signing/execution backend behind the gate.

The custody layer may itself deny a request by policy. Its SDK signals that
in several shapes (a ``policyBreach`` field, a ``code`` of POLICY_DENIED or
POLICY_BREACH, a ``type`` of PolicyDenied, on a response or on a raised
error). call_custody() folds all of them into one CustodyOutcome so the
rest of the engine never branches on exception shape.

PAPER mode: PaperCustodyClient simulates a backend with its own recipient
allowlist and amount ceiling, so custody-level denials after a local pass
can be exercised offline.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp

from guardgate.constants import CUSTODY_TIMEOUT_SEC
from guardgate.errors import ResourceNotFound

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
OUTCOME_DENIED = "denied"
OUTCOME_FAULT = "fault"
OUTCOME_INDETERMINATE = "indeterminate"

POLICY_CODES = frozenset({"POLICY_DENIED", "POLICY_BREACH"})


class CustodyRequestError(Exception):
    """Raised by HttpCustodyClient for a non-2xx response."""

    def __init__(self, status: int, payload: Any) -> None:
        self.status = status
        self.payload = payload
        super().__init__("Custody HTTP {}: {}".format(status, payload))


class PolicyBreach:
    """A custody-layer policy denial."""

    def __init__(self, reason: str, rule: str = "unknown", details: Optional[Dict[str, Any]] = None) -> None:
        self.reason = reason
        self.rule = rule
        self.details = details or {}

    def __repr__(self) -> str:
        return "PolicyBreach({!r}, rule={!r})".format(self.reason, self.rule)

    def to_dict(self) -> Dict[str, Any]:
        return {"denied": True, "reason": self.reason, "rule": self.rule, "details": dict(self.details)}


class CustodyOutcome:
    """Tagged result of one custody call: ok, denied, fault or indeterminate."""

    def __init__(
        self,
        kind: str,
        tx_hash: Optional[str] = None,
        policy_breach: Optional[PolicyBreach] = None,
        error: Optional[str] = None,
        receipt: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.kind = kind
        self.tx_hash = tx_hash
        self.policy_breach = policy_breach
        self.error = error
        self.receipt = receipt or {}

    def __repr__(self) -> str:
        return "CustodyOutcome({}, tx_hash={}, error={!r})".format(self.kind, self.tx_hash, self.error)

    @property
    def ok(self) -> bool:
        return self.kind == OUTCOME_OK

    def to_dict(self) -> Dict[str, Any]:
        out = {"kind": self.kind}  # type: Dict[str, Any]
        if self.tx_hash:
            out["txHash"] = self.tx_hash
        if self.policy_breach is not None:
            out["policyBreach"] = self.policy_breach.to_dict()
        if self.error:
            out["error"] = self.error
        return out


def _field(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def extract_policy_breach(source: Any) -> Optional[PolicyBreach]:
    """Return the PolicyBreach carried by a response or error, if any."""
    if isinstance(source, CustodyRequestError):
        return extract_policy_breach(source.payload)

    breach = _field(source, "policyBreach") or _field(source, "policy_breach")
    if isinstance(breach, PolicyBreach):
        return breach
    if isinstance(breach, dict):
        return PolicyBreach(
            reason=breach.get("reason") or "Transaction denied by policy",
            rule=breach.get("rule") or "unknown",
            details=breach.get("details"),
        )

    code = _field(source, "code")
    kind = _field(source, "type")
    if code in POLICY_CODES or kind == "PolicyDenied":
        reason = _field(source, "reason") or _field(source, "message")
        if reason is None and isinstance(source, Exception):
            reason = str(source)
        rule = _field(source, "violatedRule") or _field(source, "policyName") or _field(source, "rule")
        return PolicyBreach(
            reason=reason or "Transaction denied by policy",
            rule=rule or "unknown",
            details=_field(source, "details"),
        )
    return None


async def call_custody(
    coro_fn: Callable[[], Awaitable[Any]],
    timeout: float = CUSTODY_TIMEOUT_SEC,
) -> CustodyOutcome:
    """Run one custody call and normalise it into a CustodyOutcome.

    A timeout is indeterminate: the request may or may not have executed,
    so callers must not retry it.
    """
    try:
        result = await asyncio.wait_for(coro_fn(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Custody call timed out after %ss (outcome indeterminate)", timeout)
        return CustodyOutcome(OUTCOME_INDETERMINATE, error="Custody call timed out after {}s".format(timeout))
    except Exception as e:
        breach = extract_policy_breach(e)
        if breach is not None:
            logger.info("Custody policy denied: %s (rule=%s)", breach.reason, breach.rule)
            return CustodyOutcome(OUTCOME_DENIED, policy_breach=breach)
        logger.error("Custody call failed: %s", e)
        return CustodyOutcome(OUTCOME_FAULT, error=str(e) or type(e).__name__)

    breach = extract_policy_breach(result)
    if breach is not None:
        logger.info("Custody policy denied: %s (rule=%s)", breach.reason, breach.rule)
        return CustodyOutcome(OUTCOME_DENIED, policy_breach=breach)

    if not isinstance(result, dict):
        return CustodyOutcome(OUTCOME_FAULT, error="Unexpected custody response: {!r}".format(result))

    if result.get("success") is False or result.get("status") == "failed":
        error = result.get("error") or "Custody reported failure"
        logger.error("Custody execution failed: %s", error)
        return CustodyOutcome(OUTCOME_FAULT, error=str(error), receipt=result)

    tx_hash = result.get("txHash") or result.get("tx_hash")
    return CustodyOutcome(OUTCOME_OK, tx_hash=tx_hash, receipt=result)


# ── HTTP client ───────────────────────────────────────────────────────────────

class HttpCustodyClient:
    """Custody backend over HTTP (aiohttp)."""

    def __init__(self, base_url: str, api_key: str, timeout: float = CUSTODY_TIMEOUT_SEC) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self._session = None  # type: Optional[aiohttp.ClientSession]
        self._token = None  # type: Optional[str]

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HttpCustodyClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"X-Api-Key": self._api_key, "Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = "Bearer {}".format(self._token)
        return headers

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = "{}{}".format(self.base_url, path)
        async with session.request(method, url, json=payload, headers=self._headers()) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = {"error": await resp.text()}
            if resp.status >= 400:
                raise CustodyRequestError(resp.status, data)
            return data

    async def authenticate(self) -> Dict[str, Any]:
        data = await self._request("POST", "/auth")
        self._token = data.get("token")
        logger.info("Custody authenticated: address=%s", data.get("address"))
        return data

    async def get_organisations(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/organisations")

    async def get_accounts(self, org_id: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "/organisations/{}/accounts".format(org_id))

    async def submit_tx(self, account_id: str, to: str, data: str = "0x", value: str = "0") -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/accounts/{}/transactions".format(account_id),
            {"to": to, "data": data, "value": value},
        )

    async def transfer(self, account_id: str, to: str, token: str, amount: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            "/accounts/{}/transfers".format(account_id),
            {"to": to, "token": token, "amount": amount},
        )


# ── PAPER client ──────────────────────────────────────────────────────────────

class PaperCustodyClient:
    """Simulated custody backend with its own policy."""

    def __init__(
        self,
        allowed_recipients: Optional[Iterable[str]] = None,
        max_amount: Optional[float] = None,
        organisations: Optional[List[Dict[str, Any]]] = None,
        accounts: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ) -> None:
        self._allowed = (
            {a.lower() for a in allowed_recipients} if allowed_recipients is not None else None
        )
        self.max_amount = max_amount
        self._organisations = organisations if organisations is not None else [
            {"id": "org-paper", "name": "Paper Organisation"},
        ]
        self._accounts = accounts if accounts is not None else {
            "org-paper": [{
                "id": "acct-paper",
                "name": "Paper Account",
                "address": "0x2222222222222222222222222222222222222222",
            }],
        }
        self.transactions = []  # type: List[Dict[str, Any]]
        self._denied = 0

    async def authenticate(self) -> Dict[str, Any]:
        return {"success": True, "address": "0x0000000000000000000000000000000000000000"}

    async def get_organisations(self) -> List[Dict[str, Any]]:
        return list(self._organisations)

    async def get_accounts(self, org_id: str) -> List[Dict[str, Any]]:
        return list(self._accounts.get(org_id, []))

    def _policy(self, to: str, amount: float) -> Optional[PolicyBreach]:
        if self._allowed is not None and to.lower() not in self._allowed:
            return PolicyBreach("Recipient not whitelisted", rule="recipient-allowlist", details={"to": to})
        if self.max_amount is not None and amount > self.max_amount:
            return PolicyBreach(
                "Amount exceeds account spend limit",
                rule="spend-limit",
                details={"amount": amount, "limit": self.max_amount},
            )
        return None

    def _execute(self, account_id: str, kind: str, to: str, amount: float, extra: Dict[str, Any]) -> Dict[str, Any]:
        breach = self._policy(to, amount)
        if breach is not None:
            self._denied += 1
            logger.info("PAPER custody denied %s to %s: %s", kind, to, breach.reason)
            return {"success": False, "status": "denied", "policyBreach": breach.to_dict()}

        seed = "{}:{}:{}:{}".format(account_id, to, amount, uuid.uuid4())
        tx_hash = "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()
        tx = {"accountId": account_id, "kind": kind, "to": to, "amount": amount, "txHash": tx_hash}
        tx.update(extra)
        self.transactions.append(tx)
        logger.info("PAPER custody %s: account=%s to=%s amount=%s tx=%s", kind, account_id, to, amount, tx_hash)
        return {"success": True, "status": "confirmed", "txHash": tx_hash}

    async def submit_tx(self, account_id: str, to: str, data: str = "0x", value: str = "0") -> Dict[str, Any]:
        return self._execute(account_id, "tx", to, float(value), {"data": data})

    async def transfer(self, account_id: str, to: str, token: str, amount: str) -> Dict[str, Any]:
        return self._execute(account_id, "transfer", to, float(amount), {"token": token})

    @property
    def stats(self) -> Dict[str, Any]:
        return {"executed": len(self.transactions), "denied": self._denied}


async def find_account(client: Any, org_id: str, account_id: str) -> Dict[str, Any]:
    """Look up an account under an organisation. Raises ResourceNotFound."""
    orgs = await client.get_organisations()
    if not any(o.get("id") == org_id for o in orgs):
        raise ResourceNotFound("Organisation not found: {}".format(org_id))
    for account in await client.get_accounts(org_id):
        if account.get("id") == account_id:
            return account
    raise ResourceNotFound("Account not found: {}".format(account_id))
