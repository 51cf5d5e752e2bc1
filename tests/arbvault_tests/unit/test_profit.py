"""
Unit tests for profit distribution and trap-and-downgrade sub-calls.
"""

import pytest

from arbvault.core.defi.profit import (
    CallResult,
    ProfitSplitPolicy,
    compute_distribution,
    compute_profit,
    try_call,
)
from arbvault.core.settlement_exceptions import InvalidStateError, SlippageViolation, ValidationError
from arbvault.core.state_journal import StateJournal

TREASURY = "0x" + "d4" * 20


@pytest.fixture
def policy():
    return ProfitSplitPolicy(user_share_bps=8000, protocol_recipient=TREASURY)


def test_profit_floors_at_zero():
    assert compute_profit(90, 100) == 0
    assert compute_profit(105, 100) == 5


def test_split_rounds_owner_share_down(policy):
    dist = compute_distribution(105, 100, policy)

    assert dist.profit == 5
    assert dist.owner_amount == 104
    assert dist.protocol_amount == 1
    assert dist.has_profit


def test_no_profit_returns_everything_to_owner(policy):
    dist = compute_distribution(97, 100, policy)

    assert not dist.has_profit
    assert dist.owner_amount == 97
    assert dist.protocol_amount == 0


@pytest.mark.parametrize("share,owner,protocol", [(0, 100, 10), (10_000, 110, 0), (3333, 103, 7)])
def test_split_extremes(share, owner, protocol):
    dist = compute_distribution(110, 100, ProfitSplitPolicy(share, TREASURY))

    assert (dist.owner_amount, dist.protocol_amount) == (owner, protocol)


def test_policy_bounds():
    with pytest.raises(ValidationError):
        ProfitSplitPolicy(10_001, TREASURY)
    with pytest.raises(ValidationError):
        ProfitSplitPolicy(-1, TREASURY)


def test_negative_amounts_rejected(policy):
    with pytest.raises(ValidationError):
        compute_distribution(-1, 100, policy)


class Box:
    def __init__(self):
        self.items = []

    def snapshot(self):
        return {"items": list(self.items)}

    def restore(self, snapshot):
        self.items = list(snapshot["items"])


def test_try_call_returns_value_on_success():
    journal = StateJournal()

    result = try_call(journal, lambda x: x * 2, 21, label="double")

    assert result.success
    assert result.unwrap() == 42
    assert result.reason == ""


def test_try_call_reverts_and_captures_settlement_error():
    journal = StateJournal()
    box = Box()
    journal.register(box)

    def failing():
        box.items.append("partial")
        raise SlippageViolation("too little", realized=1, minimum=2, details={"reason": "leg2_slippage"})

    result = try_call(journal, failing)

    assert not result.success
    assert result.reason == "leg2_slippage"
    assert box.items == []
    with pytest.raises(SlippageViolation):
        result.unwrap()


def test_try_call_reverts_and_reraises_unrecoverable_errors():
    journal = StateJournal()
    box = Box()
    journal.register(box)

    def corrupting():
        box.items.append("partial")
        raise InvalidStateError("illegal transition", details={"reason": "illegal_transition"})

    with pytest.raises(InvalidStateError):
        try_call(journal, corrupting)

    assert box.items == []


def test_try_call_propagates_programming_errors():
    with pytest.raises(ZeroDivisionError):
        try_call(StateJournal(), lambda: 1 // 0)


def test_call_result_defaults():
    assert CallResult(success=True, value=3).unwrap() == 3
