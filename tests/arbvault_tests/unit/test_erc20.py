"""
Unit tests for the ERC20 custody token and success-checked transfers.
"""

import pytest

from arbvault.core.contracts.erc20 import (
    ZERO_ADDRESS,
    ERC20Token,
    TokenRegistry,
    is_null_address,
    safe_transfer,
    safe_transfer_from,
)
from arbvault.core.settlement_exceptions import TokenError, TransferFailedError
from arbvault.core.state_journal import StateJournal

OWNER = "0x" + "11" * 20
ALICE = "0x" + "22" * 20
BOB = "0x" + "33" * 20


@pytest.fixture
def token():
    t = ERC20Token(name="Test USD", symbol="TUSD", decimals=6, owner=OWNER)
    t.mint(OWNER, ALICE, 1_000)
    return t


class NonConfirmingToken(ERC20Token):
    """Token that moves balances but returns False."""

    def transfer(self, sender, recipient, amount):
        super().transfer(sender, recipient, amount)
        return False


def test_address_is_generated_and_normalized():
    t = ERC20Token(name="Mixed", symbol="MIX", owner="0xABCDEF")
    assert t.address.startswith("0x") and len(t.address) == 42
    assert t.owner == "0xabcdef"


def test_null_address_detection():
    assert is_null_address(ZERO_ADDRESS)
    assert is_null_address("")
    assert is_null_address(None)
    assert not is_null_address(ALICE)


def test_transfer_moves_balance(token):
    assert token.transfer(ALICE, BOB, 400) is True
    assert token.balance_of(ALICE) == 600
    assert token.balance_of(BOB) == 400
    assert token.events[-1].event_type == "Transfer"


def test_transfer_exceeding_balance_rejected(token):
    with pytest.raises(TokenError):
        token.transfer(ALICE, BOB, 1_001)


def test_transfer_to_zero_address_rejected(token):
    with pytest.raises(TokenError):
        token.transfer(ALICE, ZERO_ADDRESS, 1)


def test_transfer_from_consumes_allowance(token):
    token.approve(ALICE, BOB, 300)

    token.transfer_from(BOB, ALICE, BOB, 200)

    assert token.allowance(ALICE, BOB) == 100
    assert token.balance_of(BOB) == 200
    with pytest.raises(TokenError):
        token.transfer_from(BOB, ALICE, BOB, 101)


def test_unlimited_allowance_is_not_decremented(token):
    token.approve(ALICE, BOB, token.UINT256_MAX)

    token.transfer_from(BOB, ALICE, BOB, 500)

    assert token.allowance(ALICE, BOB) == token.UINT256_MAX


def test_mint_is_owner_only(token):
    with pytest.raises(TokenError):
        token.mint(ALICE, ALICE, 1)
    assert token.total_supply == 1_000


def test_paused_token_rejects_transfers(token):
    token.pause(OWNER)

    with pytest.raises(TokenError):
        token.transfer(ALICE, BOB, 1)

    token.unpause(OWNER)
    assert token.transfer(ALICE, BOB, 1)


def test_safe_transfer_wraps_token_errors(token):
    with pytest.raises(TransferFailedError) as exc_info:
        safe_transfer(token, ALICE, BOB, 5_000)

    assert exc_info.value.reason == "transfer_failed"


def test_safe_transfer_from_wraps_allowance_errors(token):
    with pytest.raises(TransferFailedError):
        safe_transfer_from(token, BOB, ALICE, BOB, 1)


def test_safe_transfer_rejects_unconfirmed_transfer():
    t = NonConfirmingToken(name="Quirky", symbol="QRK", owner=OWNER)
    t.mint(OWNER, ALICE, 10)

    with pytest.raises(TransferFailedError) as exc_info:
        safe_transfer(t, ALICE, BOB, 5)

    assert exc_info.value.reason == "transfer_unconfirmed"


def test_registry_lookup_is_case_insensitive(token):
    registry = TokenRegistry()
    registry.register(token)

    assert registry.get(token.address.upper().replace("0X", "0x")) is token
    assert token.address in registry
    with pytest.raises(TokenError):
        registry.require(BOB)


def test_registered_tokens_revert_with_journal(token):
    journal = StateJournal()
    TokenRegistry(journal).register(token)

    with pytest.raises(RuntimeError):
        with journal.atomic("transfer"):
            token.transfer(ALICE, BOB, 100)
            raise RuntimeError("abort")

    assert token.balance_of(ALICE) == 1_000
    assert token.balance_of(BOB) == 0
    assert len(token.events) == 1
