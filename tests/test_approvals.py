"""Tests for the approval workflow state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from guardgate.approvals import ApprovalQueue, build_intent
from guardgate.audit import AuditLedger
from guardgate.config import ActiveGuardiansConfig, get_preset, merge_config
from guardgate.custody import PaperCustodyClient
from guardgate.errors import InvalidStateTransition, ResourceNotFound, ValidationError
from guardgate.gate import ActionGate
from guardgate.risk_engine import RiskEngine
from guardgate.state import GuardianStateStore

ACCOUNT = {"id": "acct-paper", "name": "Paper Account"}


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def queue(clock: FakeClock) -> ApprovalQueue:
    store = GuardianStateStore()
    engine = RiskEngine(store)
    active = ActiveGuardiansConfig(merge_config(get_preset("default"), {"rate": {"cooldownSeconds": 0}}))
    gate = ActionGate(store, engine, active, PaperCustodyClient(), AuditLedger())
    return ApprovalQueue(engine, active, gate, clock=clock)


# ── Proposals ─────────────────────────────────────────────────────────────────

def test_propose_records_policy_check(queue: ApprovalQueue) -> None:
    """A proposal is stored pending with its policy verdict."""
    action = queue.propose("spot_trade", {"amount": 50, "market": "ETH/USD"})
    assert action.status == "pending"
    assert action.policy_check["passed"] is True
    assert action.title == "Spot Trade: $50.00 ETH/USD"
    assert queue.pending_count() == 1


def test_failing_proposal_is_still_stored(queue: ApprovalQueue) -> None:
    """A proposal that fails policy is kept, with its denials."""
    action = queue.propose("auto_hedge", {"hedgeSize": 5000})
    assert action.status == "pending"
    assert action.policy_check["passed"] is False
    assert "spend" in {d["guardian"] for d in action.policy_check["denials"]}


def test_propose_rejects_unknown_type(queue: ApprovalQueue) -> None:
    """Unknown action types are validation errors."""
    with pytest.raises(ValidationError):
        queue.propose("short_squeeze", {})


def test_transfer_proposal_requires_recipient() -> None:
    """Transfer proposals must name a recipient."""
    with pytest.raises(ValidationError):
        build_intent("transfer", {"amount": 10})
    intent = build_intent("transfer", {"amount": 10, "recipient": "0xabc"})
    assert intent.type == "transfer"
    assert intent.target == "0xabc"


def test_build_intent_defaults() -> None:
    """Missing amount and market fall back to defaults."""
    intent = build_intent("rebalance_vault", {})
    assert intent.market == "ETH/USD"
    assert intent.notional_usd == 100.0


# ── Approve ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_executes(queue: ApprovalQueue) -> None:
    """Approval executes through the gate and attaches the receipt."""
    action = queue.propose("spot_trade", {"amount": 50})
    approved = await queue.approve(action.id, ACCOUNT)
    assert approved.status == "approved"
    assert approved.execution["statusCode"] == 200
    assert approved.execution["body"]["txHash"].startswith("0x")
    assert queue.gate.ledger.records[0].status == "confirmed"


@pytest.mark.asyncio
async def test_approve_failed_proposal_is_rejected(queue: ApprovalQueue) -> None:
    """A proposal that failed its policy check cannot be executed."""
    action = queue.propose("spot_trade", {"amount": 5000})
    resolved = await queue.approve(action.id, ACCOUNT)
    assert resolved.status == "rejected"
    assert resolved.resolution_reason == "Policy check failed at proposal"
    assert len(queue.gate.ledger) == 0


@pytest.mark.asyncio
async def test_approve_rechecks_policy(queue: ApprovalQueue) -> None:
    """State changes between proposal and approval are caught by the re-check."""
    action = queue.propose("spot_trade", {"amount": 50})
    queue.gate.store.trigger_halt("operator")
    resolved = await queue.approve(action.id, ACCOUNT)
    assert resolved.status == "rejected"
    assert resolved.resolution_reason.startswith("Policy re-check failed: Trading halted")


@pytest.mark.asyncio
async def test_approve_expired(queue: ApprovalQueue, clock: FakeClock) -> None:
    """Proposals older than the expiry are rejected instead of executed."""
    action = queue.propose("spot_trade", {"amount": 50})
    clock.advance(seconds=301)
    resolved = await queue.approve(action.id, ACCOUNT)
    assert resolved.status == "rejected"
    assert resolved.resolution_reason == "Expired before approval"
    assert len(queue.gate.ledger) == 0


@pytest.mark.asyncio
async def test_resolved_action_cannot_transition_again(queue: ApprovalQueue) -> None:
    """Each proposal transitions exactly once."""
    action = queue.propose("spot_trade", {"amount": 50})
    queue.reject(action.id, "not today")
    with pytest.raises(InvalidStateTransition):
        await queue.approve(action.id, ACCOUNT)
    with pytest.raises(InvalidStateTransition):
        queue.reject(action.id)


@pytest.mark.asyncio
async def test_approve_unknown_id(queue: ApprovalQueue) -> None:
    """Unknown ids are not found."""
    with pytest.raises(ResourceNotFound):
        await queue.approve("missing", ACCOUNT)


# ── Reject and listing ────────────────────────────────────────────────────────

def test_reject_records_reason(queue: ApprovalQueue) -> None:
    """Rejected proposals keep the operator's reason."""
    action = queue.propose("basket_trade", {"basket": ["ETH", "BTC"], "amount": 20})
    rejected = queue.reject(action.id, "too risky")
    assert rejected.status == "rejected"
    assert rejected.resolution_reason == "too risky"
    assert rejected.title == "Basket Trade: 2 assets"


def test_list_newest_first_and_expires(queue: ApprovalQueue, clock: FakeClock) -> None:
    """Listing is newest first and expires stale proposals."""
    first = queue.propose("spot_trade", {"amount": 10})
    clock.advance(seconds=200)
    second = queue.propose("spot_trade", {"amount": 20})
    assert [a.id for a in queue.list_actions()] == [second.id, first.id]

    clock.advance(seconds=200)
    assert queue.get(first.id).status == "rejected"
    assert queue.get(second.id).status == "pending"
    assert queue.pending_count() == 1


def test_to_dict_wire_keys(queue: ApprovalQueue) -> None:
    """Serialized actions use camelCase keys."""
    data = queue.propose("deploy_liquidity", {"lpAmount": 30}).to_dict()
    assert data["proposedBy"] == "user"
    assert data["policyCheck"]["passed"] is True
    assert data["execution"] is None
