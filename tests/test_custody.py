"""Tests for custody outcome normalisation and the PAPER custody client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from guardgate.custody import (
    OUTCOME_DENIED,
    OUTCOME_FAULT,
    OUTCOME_INDETERMINATE,
    OUTCOME_OK,
    CustodyRequestError,
    HttpCustodyClient,
    PaperCustodyClient,
    PolicyBreach,
    call_custody,
    extract_policy_breach,
    find_account,
)
from guardgate.errors import ResourceNotFound

DEAD = "0x000000000000000000000000000000000000dEaD"


class PolicyError(Exception):
    def __init__(self, message: str, code: str, violated_rule: str) -> None:
        super().__init__(message)
        self.code = code
        self.violatedRule = violated_rule


def _returning(value):
    async def call():
        return value
    return call


def _raising(exc: Exception):
    async def call():
        raise exc
    return call


# ── call_custody ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ok_outcome_carries_tx_hash() -> None:
    """A successful response is ok with its txHash and receipt."""
    outcome = await call_custody(_returning({"success": True, "txHash": "0xabc", "orderId": "o-1"}))
    assert outcome.kind == OUTCOME_OK
    assert outcome.tx_hash == "0xabc"
    assert outcome.receipt["orderId"] == "o-1"


@pytest.mark.asyncio
async def test_timeout_is_indeterminate() -> None:
    """A call that exceeds the timeout is indeterminate, not a fault."""
    async def slow():
        await asyncio.sleep(1)
        return {"success": True}

    outcome = await call_custody(slow, timeout=0.01)
    assert outcome.kind == OUTCOME_INDETERMINATE
    assert "timed out" in outcome.error


@pytest.mark.asyncio
async def test_policy_code_error_is_denied() -> None:
    """An error with a policy code becomes a denial with the violated rule."""
    outcome = await call_custody(_raising(PolicyError("Recipient blocked", "POLICY_BREACH", "allowlist")))
    assert outcome.kind == OUTCOME_DENIED
    assert outcome.policy_breach.reason == "Recipient blocked"
    assert outcome.policy_breach.rule == "allowlist"


@pytest.mark.asyncio
async def test_policy_breach_in_response_is_denied() -> None:
    """A response carrying policyBreach is a denial."""
    outcome = await call_custody(_returning({
        "success": False,
        "policyBreach": {"reason": "Amount exceeds limit", "rule": "spend-limit"},
    }))
    assert outcome.kind == OUTCOME_DENIED
    assert outcome.policy_breach.to_dict()["denied"] is True


@pytest.mark.asyncio
async def test_http_error_with_policy_payload_is_denied() -> None:
    """A 403 whose body names a policy code is a denial."""
    err = CustodyRequestError(403, {"code": "POLICY_DENIED", "message": "Blocked by org policy"})
    outcome = await call_custody(_raising(err))
    assert outcome.kind == OUTCOME_DENIED
    assert outcome.policy_breach.reason == "Blocked by org policy"


@pytest.mark.asyncio
async def test_other_errors_are_faults() -> None:
    """Errors without a policy marker are faults."""
    outcome = await call_custody(_raising(ConnectionError("connection reset")))
    assert outcome.kind == OUTCOME_FAULT
    assert outcome.error == "connection reset"


@pytest.mark.asyncio
async def test_reported_failure_is_fault() -> None:
    """success False without a policy breach is a fault."""
    outcome = await call_custody(_returning({"success": False, "error": "nonce too low"}))
    assert outcome.kind == OUTCOME_FAULT
    assert outcome.error == "nonce too low"


def test_extract_policy_breach_type_marker() -> None:
    """type PolicyDenied is recognised on a plain dict."""
    breach = extract_policy_breach({"type": "PolicyDenied", "reason": "no"})
    assert isinstance(breach, PolicyBreach)
    assert breach.rule == "unknown"
    assert extract_policy_breach({"success": True}) is None


# ── PAPER client ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_paper_client_executes() -> None:
    """Without a policy the paper client confirms every call."""
    client = PaperCustodyClient()
    result = await client.transfer("acct-paper", DEAD, "USDC", "5")
    assert result["success"] is True
    assert result["txHash"].startswith("0x")
    assert client.stats == {"executed": 1, "denied": 0}


@pytest.mark.asyncio
async def test_paper_client_recipient_policy() -> None:
    """Recipients outside the paper allowlist are denied by policy."""
    client = PaperCustodyClient(allowed_recipients=["0x1234"])
    outcome = await call_custody(lambda: client.transfer("acct-paper", DEAD, "USDC", "5"))
    assert outcome.kind == OUTCOME_DENIED
    assert outcome.policy_breach.rule == "recipient-allowlist"
    assert client.transactions == []


@pytest.mark.asyncio
async def test_paper_client_amount_policy() -> None:
    """Amounts above the paper ceiling are denied by policy."""
    client = PaperCustodyClient(max_amount=10)
    result = await client.submit_tx("acct-paper", DEAD, "0x", "50")
    assert result["policyBreach"]["rule"] == "spend-limit"
    assert client.stats["denied"] == 1


# ── Account lookup ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_find_account() -> None:
    """Known organisation and account resolve to the account record."""
    account = await find_account(PaperCustodyClient(), "org-paper", "acct-paper")
    assert account["name"] == "Paper Account"


@pytest.mark.asyncio
async def test_find_account_unknown_org() -> None:
    """An unknown organisation is not found."""
    with pytest.raises(ResourceNotFound, match="Organisation"):
        await find_account(PaperCustodyClient(), "org-x", "acct-paper")


@pytest.mark.asyncio
async def test_find_account_unknown_account() -> None:
    """An unknown account is not found."""
    with pytest.raises(ResourceNotFound, match="Account"):
        await find_account(PaperCustodyClient(), "org-paper", "acct-x")


# ── HTTP client ───────────────────────────────────────────────────────────────

def _response(status: int, payload=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status = status
    if isinstance(payload, Exception):
        resp.json = AsyncMock(side_effect=payload)
    else:
        resp.json = AsyncMock(return_value=payload)
    resp.text = AsyncMock(return_value=text)
    return resp


def _session(*responses: MagicMock) -> MagicMock:
    """Session whose request() yields the given responses in order."""
    contexts = []
    for resp in responses:
        ctx = MagicMock()
        ctx.__aenter__ = AsyncMock(return_value=resp)
        ctx.__aexit__ = AsyncMock(return_value=False)
        contexts.append(ctx)
    session = MagicMock()
    session.closed = False
    session.request = MagicMock(side_effect=contexts)
    session.close = AsyncMock()
    return session


@pytest.mark.asyncio
async def test_http_authenticate_stores_bearer_token() -> None:
    """The token from /auth is sent on later requests."""
    session = _session(
        _response(200, {"token": "tok-123", "address": "0xabc"}),
        _response(200, [{"id": "org-1"}]),
    )
    with patch("guardgate.custody.aiohttp.ClientSession", return_value=session):
        client = HttpCustodyClient("https://custody.example/", "key-1")
        await client.authenticate()
        orgs = await client.get_organisations()
        await client.close()

    assert orgs == [{"id": "org-1"}]
    first, second = session.request.call_args_list
    assert first.args == ("POST", "https://custody.example/auth")
    assert "Authorization" not in first.kwargs["headers"]
    assert second.args == ("GET", "https://custody.example/organisations")
    assert second.kwargs["headers"]["Authorization"] == "Bearer tok-123"
    assert second.kwargs["headers"]["X-Api-Key"] == "key-1"
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_http_submit_tx_posts_payload() -> None:
    """submit_tx posts to the account's transactions endpoint."""
    session = _session(_response(200, {"success": True, "txHash": "0xfeed"}))
    with patch("guardgate.custody.aiohttp.ClientSession", return_value=session):
        client = HttpCustodyClient("https://custody.example", "key-1")
        result = await client.submit_tx("acct-1", DEAD, "0x", "2.0")

    assert result["txHash"] == "0xfeed"
    call = session.request.call_args
    assert call.args == ("POST", "https://custody.example/accounts/acct-1/transactions")
    assert call.kwargs["json"] == {"to": DEAD, "data": "0x", "value": "2.0"}


@pytest.mark.asyncio
async def test_http_non_2xx_raises_request_error() -> None:
    """A 5xx becomes CustodyRequestError carrying status and body."""
    session = _session(_response(502, ValueError("not json"), text="bad gateway"))
    with patch("guardgate.custody.aiohttp.ClientSession", return_value=session):
        client = HttpCustodyClient("https://custody.example", "key-1")
        with pytest.raises(CustodyRequestError) as exc:
            await client.transfer("acct-1", DEAD, "USDC", "1")

    assert exc.value.status == 502
    assert exc.value.payload == {"error": "bad gateway"}


@pytest.mark.asyncio
async def test_http_errors_normalised_by_call_custody() -> None:
    """A policy body on a 403 is a denial; a plain 500 is a fault."""
    session = _session(
        _response(403, {"policyBreach": {"reason": "Recipient blocked", "rule": "allowlist"}}),
        _response(500, {"error": "internal"}),
    )
    with patch("guardgate.custody.aiohttp.ClientSession", return_value=session):
        client = HttpCustodyClient("https://custody.example", "key-1")
        denied = await call_custody(lambda: client.transfer("acct-1", DEAD, "USDC", "1"))
        fault = await call_custody(lambda: client.transfer("acct-1", DEAD, "USDC", "1"))

    assert denied.kind == OUTCOME_DENIED
    assert denied.policy_breach.rule == "allowlist"
    assert fault.kind == OUTCOME_FAULT
    assert "500" in fault.error
