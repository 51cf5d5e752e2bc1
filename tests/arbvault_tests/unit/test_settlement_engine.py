"""
Unit tests for ArbitrageSettlementEngine (deferred path).

Coverage targets:
- Profit split, no-profit refund and leg-2 failure refund
- Callback authorization and idempotency
- Cancellation round-trip and keeper-initiated cancellation
- Frozen notifications and reentrancy rejection
- Admission validation and the profitability pre-check
"""

import pytest

from arbvault.core.contracts.erc20 import ZERO_ADDRESS
from arbvault.core.defi.order_ledger import OrderState
from arbvault.core.defi.venues import FixedRateExchange, PendingStatus
from arbvault.core.settlement_exceptions import (
    AuthorizationError,
    ExternalCallFailure,
    InvalidStateError,
    ReentrancyError,
    TransferFailedError,
    ValidationError,
)
from settlement_world import (
    ADMIN,
    ATTACKER,
    EXECUTION_FEE,
    KEEPER,
    MINTER,
    TREASURY,
    USER,
    USER_FUNDS,
    VENUE_INVENTORY,
    VENUE_OWNER,
    build_world,
)


def _event_types(world, order_key):
    return [event.event_type for event in world.engine.get_events(order_key)]


def _venue_fills_without_callback(world, order_key, output):
    """Venue pulls the principal and pays ``output`` but its callback never lands."""
    principal = world.engine.get_order(order_key).principal
    world.usdc.transfer_from(world.gmx.address, world.engine.address, world.gmx.address, principal)
    if output:
        world.arb.transfer(world.gmx.address, world.engine.address, output)


class TestOrderCreation:
    def test_create_order_takes_custody_and_submits_leg1(self, world):
        key = world.create_order()

        order = world.engine.get_order(key)
        assert order.state is OrderState.ACTIVE
        assert order.owner == USER
        assert order.principal == 100
        assert order.venue_handle in world.gmx.orders
        assert world.usdc.balance_of(world.engine.address) == 100
        assert world.usdc.balance_of(USER) == USER_FUNDS - 100
        # Execution fee is forwarded to the venue at submission
        assert world.weth.balance_of(world.gmx.address) == EXECUTION_FEE
        assert world.weth.balance_of(world.engine.address) == 0
        assert world.usdc.allowance(world.engine.address, world.gmx.address) == 100
        assert world.engine.committed_amount(world.usdc.address) == 100
        assert _event_types(world, key) == ["OrderCreated"]

    def test_order_keys_are_unique_for_identical_parameters(self, world):
        first = world.create_order()
        second = world.create_order()

        assert first != second
        assert world.engine.committed_amount(world.usdc.address) == 200
        assert {o.order_key for o in world.engine.get_orders_by_owner(USER)} == {first, second}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"principal": 0},
            {"min1": -1},
            {"min2": -1},
            {"fee": EXECUTION_FEE - 1},
        ],
    )
    def test_invalid_parameters_rejected_without_state(self, world, overrides):
        before = world.balances(USER, world.engine.address)

        with pytest.raises(ValidationError):
            world.create_order(**overrides)

        assert len(world.engine.ledger) == 0
        assert world.balances(USER, world.engine.address) == before
        assert world.engine.events == []

    def test_same_token_legs_rejected(self, world):
        with pytest.raises(ValidationError):
            world.engine.create_order(USER, world.usdc.address, world.usdc.address, 100, 95, 100, EXECUTION_FEE)

    def test_unknown_token_rejected(self, world):
        with pytest.raises(ValidationError):
            world.engine.create_order(USER, world.usdc.address, "0x" + "12" * 20, 100, 95, 100, EXECUTION_FEE)

    def test_null_owner_rejected(self, world):
        with pytest.raises(ValidationError):
            world.engine.create_order(ZERO_ADDRESS, world.usdc.address, world.arb.address, 100, 95, 100, EXECUTION_FEE)

    def test_missing_allowance_rejected_without_state(self, world):
        world.usdc.approve(USER, world.engine.address, 0)

        with pytest.raises(TransferFailedError):
            world.create_order()

        assert len(world.engine.ledger) == 0
        assert world.usdc.balance_of(USER) == USER_FUNDS
        assert world.weth.balance_of(USER) == USER_FUNDS

    def test_floor_looser_than_tolerance_rejected(self, world):
        # leg-1 quote 95 at 10% tolerance -> floor 85
        with pytest.raises(ValidationError) as exc_info:
            world.create_order(min1=84)

        assert exc_info.value.reason == "floor_below_tolerance"

    def test_unprofitable_projection_rejected_when_minimum_set(self):
        world = build_world(min_profit_bps=100)
        world.set_leg2_rate(100, 95)

        with pytest.raises(ValidationError) as exc_info:
            world.create_order()

        assert exc_info.value.reason == "unprofitable"

    def test_profitable_projection_admitted_when_minimum_set(self):
        world = build_world(min_profit_bps=100)

        key = world.create_order()

        assert world.engine.get_order(key).state is OrderState.ACTIVE

    def test_unavailable_quote_skips_precheck(self, world):
        # No usdc -> weth rate on either venue
        key = world.engine.create_order(USER, world.usdc.address, world.weth.address, 100, 1, 1, EXECUTION_FEE)

        assert world.engine.get_order(key).state is OrderState.ACTIVE


class TestExecutionCallback:
    def test_profit_is_split_between_owner_and_protocol(self, world):
        key = world.create_order()

        assert world.execute(key) == 95

        order = world.engine.get_order(key)
        assert order.state is OrderState.SETTLED
        assert order.leg1_output == 95
        assert order.leg2_output == 105
        assert order.protocol_amount == 1
        assert order.distributed_amount == 105
        assert world.usdc.balance_of(USER) == USER_FUNDS + 4
        assert world.usdc.balance_of(TREASURY) == 1
        assert world.weth.balance_of(KEEPER) == EXECUTION_FEE
        assert world.usdc.balance_of(world.engine.address) == 0
        assert world.arb.balance_of(world.engine.address) == 0
        assert world.engine.committed_amount(world.usdc.address) == 0

        distributed = world.engine.get_events(key, "ProfitDistributed")
        assert len(distributed) == 1
        assert distributed[0].data["owner_amount"] == 104
        assert distributed[0].data["protocol_amount"] == 1
        assert _event_types(world, key) == ["OrderCreated", "LegExecuted", "LegExecuted", "ProfitDistributed"]

    def test_break_even_refunds_full_output(self, world):
        world.set_leg2_rate(100, 95)
        key = world.create_order()

        world.execute(key)

        order = world.engine.get_order(key)
        assert order.state is OrderState.REFUNDED
        assert order.refund_token == world.usdc.address
        assert order.refunded_amount == 100
        assert world.usdc.balance_of(USER) == USER_FUNDS
        assert world.usdc.balance_of(TREASURY) == 0
        assert world.engine.get_events(key, "ProfitDistributed") == []
        assert len(world.engine.get_events(key, "NoProfitRefund")) == 1

    def test_leg2_below_floor_refunds_leg1_output(self, world):
        world.set_leg2_rate(85, 95)
        key = world.create_order(min2=90)

        world.execute(key)

        order = world.engine.get_order(key)
        assert order.state is OrderState.FAILED
        assert order.refund_token == world.arb.address
        assert order.refunded_amount == 95
        assert order.failure_reason == "venue_min_output"
        assert world.arb.balance_of(USER) == 95
        assert world.usdc.balance_of(USER) == USER_FUNDS - 100
        assert world.arb.balance_of(world.engine.address) == 0
        assert world.arb.allowance(world.engine.address, world.uniswap.address) == 0
        assert world.uniswap.swap_count == 0

        failed = world.engine.get_events(key, "ArbitrageFailed")
        assert len(failed) == 1
        assert failed[0].data["reason"] == "venue_min_output"
        assert failed[0].data["refunded"] == 95

    def test_leg1_below_floor_refunds_delivered_output(self, world):
        world.engine.set_keeper_authorization(ADMIN, KEEPER, True)
        key = world.create_order()
        _venue_fills_without_callback(world, key, 90)

        world.engine.on_leg_executed(KEEPER, key, 90, handle=world.handle_of(key))

        order = world.engine.get_order(key)
        assert order.state is OrderState.FAILED
        assert order.failure_reason == "leg1_slippage"
        assert world.arb.balance_of(USER) == 90

    def test_unauthorized_callback_rejected_and_order_untouched(self, world):
        key = world.create_order()
        before = world.balances(*world.all_accounts())

        with pytest.raises(AuthorizationError):
            world.engine.on_leg_executed(ATTACKER, key, 1_000)

        assert world.engine.get_order(key).state is OrderState.ACTIVE
        assert world.balances(*world.all_accounts()) == before

    def test_authorization_checked_before_state(self, world):
        key = world.create_order()
        world.execute(key)

        with pytest.raises(AuthorizationError):
            world.engine.on_leg_executed(ATTACKER, key, 95)

    def test_repeated_callback_is_rejected(self, world):
        key = world.create_order()
        world.execute(key)
        before = world.balances(*world.all_accounts())

        with pytest.raises(InvalidStateError):
            world.engine.on_leg_executed(world.gmx.address, key, 95, handle=world.handle_of(key))

        assert world.engine.get_order(key).state is OrderState.SETTLED
        assert world.balances(*world.all_accounts()) == before

    def test_unknown_order_rejected(self, world):
        with pytest.raises(InvalidStateError):
            world.engine.on_leg_executed(world.gmx.address, "0x" + "ab" * 32, 95)

    def test_handle_mismatch_rejected(self, world):
        key = world.create_order()

        with pytest.raises(AuthorizationError):
            world.engine.on_leg_executed(world.gmx.address, key, 95, handle="0xnot-the-handle")

        assert world.engine.get_order(key).state is OrderState.ACTIVE

    def test_keeper_callback_must_name_the_venue_handle(self, world):
        world.engine.set_keeper_authorization(ADMIN, KEEPER, True)
        key = world.create_order()
        _venue_fills_without_callback(world, key, 95)

        with pytest.raises(AuthorizationError) as exc_info:
            world.engine.on_leg_executed(KEEPER, key, 95)

        assert exc_info.value.reason == "handle_mismatch"
        assert world.engine.get_order(key).state is OrderState.ACTIVE

    def test_keeper_callback_before_venue_execution_rejected(self, world):
        world.engine.set_keeper_authorization(ADMIN, KEEPER, True)
        key = world.create_order()
        # Output donated, but the venue still holds the order and the allowance
        world.arb.mint(MINTER, world.engine.address, 95)

        with pytest.raises(ExternalCallFailure) as exc_info:
            world.engine.on_leg_executed(KEEPER, key, 95, handle=world.handle_of(key))

        assert exc_info.value.reason == "leg1_input_not_taken"
        assert world.engine.get_order(key).state is OrderState.ACTIVE
        assert world.usdc.allowance(world.engine.address, world.gmx.address) == 100

        # The venue's own execution still settles the order from its real output
        world.execute(key)

        order = world.engine.get_order(key)
        assert order.state is OrderState.SETTLED
        assert order.leg1_output == 95
        assert world.gmx.callback_failures == []
        assert world.usdc.balance_of(world.engine.address) == 0
        assert world.usdc.allowance(world.engine.address, world.gmx.address) == 0
        assert world.arb.balance_of(world.engine.address) == 95

    def test_keeper_callback_without_delivered_output_rejected(self, world):
        world.engine.set_keeper_authorization(ADMIN, KEEPER, True)
        key = world.create_order()
        _venue_fills_without_callback(world, key, 0)

        with pytest.raises(ExternalCallFailure) as exc_info:
            world.engine.on_leg_executed(KEEPER, key, 95, handle=world.handle_of(key))

        assert exc_info.value.reason == "leg1_output_missing"
        assert world.engine.get_order(key).state is OrderState.ACTIVE

    def test_keeper_replays_missed_venue_callback(self, world):
        world.engine.set_keeper_authorization(ADMIN, KEEPER, True)
        key = world.create_order()
        _venue_fills_without_callback(world, key, 95)

        world.engine.on_leg_executed(KEEPER, key, 95, handle=world.handle_of(key))

        assert world.engine.get_order(key).state is OrderState.SETTLED
        assert world.usdc.balance_of(USER) == USER_FUNDS + 4
        assert world.arb.balance_of(world.engine.address) == 0

    def test_settlement_transfer_that_does_not_confirm_fails_the_order(self, world, monkeypatch):
        key = world.create_order()
        transfer = world.usdc.transfer

        def unconfirmed_to_treasury(sender, recipient, amount):
            moved = transfer(sender, recipient, amount)
            return False if recipient == TREASURY else moved

        monkeypatch.setattr(world.usdc, "transfer", unconfirmed_to_treasury)

        world.execute(key)

        order = world.engine.get_order(key)
        assert order.state is OrderState.FAILED
        assert order.failure_reason == "transfer_unconfirmed"
        assert order.refund_token == world.arb.address
        assert order.refunded_amount == 95
        # The owner's share sent before the failed protocol transfer is rolled back
        assert world.usdc.balance_of(USER) == USER_FUNDS - 100
        assert world.usdc.balance_of(TREASURY) == 0
        assert world.arb.balance_of(USER) == 95
        assert world.usdc.balance_of(world.engine.address) == 0
        assert world.arb.balance_of(world.engine.address) == 0
        assert world.uniswap.swap_count == 0
        assert world.engine.get_events(key, "ProfitDistributed") == []

    def test_venue_rejection_during_leg2_is_refunded(self, world):
        class LockedExchange(FixedRateExchange):
            def swap(self, caller, token_in, token_out, amount_in, min_amount_out, recipient):
                raise AuthorizationError("venue is locked", caller=caller)

        venue = LockedExchange("locked", VENUE_OWNER, world.tokens, journal=world.journal)
        venue.set_rate(VENUE_OWNER, world.arb.address, world.usdc.address, 105, 95)
        world.engine.sync_exchange = venue
        key = world.create_order()

        world.execute(key)

        order = world.engine.get_order(key)
        assert order.state is OrderState.FAILED
        assert order.failure_reason == "venue_rejected"
        assert world.arb.balance_of(USER) == 95
        assert world.arb.allowance(world.engine.address, venue.address) == 0

    def test_reentrant_callback_rejected(self):
        world = build_world()

        class ReentrantExchange(FixedRateExchange):
            order_key = ""
            reentry_error = None

            def swap(self, caller, token_in, token_out, amount_in, min_amount_out, recipient):
                try:
                    world.engine.on_leg_executed(world.gmx.address, self.order_key, 1)
                except ReentrancyError as exc:
                    self.reentry_error = exc
                return super().swap(caller, token_in, token_out, amount_in, min_amount_out, recipient)

        venue = ReentrantExchange("reentrant", VENUE_OWNER, world.tokens, journal=world.journal)
        venue.set_rate(VENUE_OWNER, world.arb.address, world.usdc.address, 105, 95)
        world.usdc.mint(MINTER, venue.address, VENUE_INVENTORY)
        world.engine.sync_exchange = venue

        key = world.create_order()
        venue.order_key = key
        world.execute(key)

        assert isinstance(venue.reentry_error, ReentrancyError)
        assert world.engine.get_order(key).state is OrderState.SETTLED
        assert world.usdc.balance_of(USER) == USER_FUNDS + 4


class TestCancellation:
    def test_manual_cancel_defers_refund_to_callback(self, world):
        key = world.create_order()

        assert world.engine.cancel_order(USER, key) is True

        order = world.engine.get_order(key)
        assert order.state is OrderState.ACTIVE
        assert order.cancel_requested is True
        assert world.usdc.balance_of(USER) == USER_FUNDS - 100
        assert world.gmx.orders[order.venue_handle].status is PendingStatus.CANCEL_REQUESTED
        assert "CancellationRequested" in _event_types(world, key)

        world.gmx.process_cancellation(KEEPER, order.venue_handle, reason="user_requested")

        order = world.engine.get_order(key)
        assert order.state is OrderState.CANCELLED
        assert order.refunded_amount == 100
        assert order.failure_reason == "user_requested"
        assert world.usdc.balance_of(USER) == USER_FUNDS
        assert world.usdc.allowance(world.engine.address, world.gmx.address) == 0
        assert world.engine.committed_amount(world.usdc.address) == 0

    def test_cancel_request_twice_rejected(self, world):
        key = world.create_order()
        world.engine.cancel_order(USER, key)

        with pytest.raises(InvalidStateError):
            world.engine.cancel_order(USER, key)

    def test_admin_may_cancel(self, world):
        key = world.create_order()

        assert world.engine.cancel_order(ADMIN, key) is True

    def test_stranger_may_not_cancel(self, world):
        key = world.create_order()

        with pytest.raises(AuthorizationError):
            world.engine.cancel_order(ATTACKER, key)

        assert world.engine.get_order(key).cancel_requested is False

    def test_cancel_unknown_order_reports_unknown_order(self, world):
        with pytest.raises(InvalidStateError) as exc_info:
            world.engine.cancel_order(USER, "0x" + "ab" * 32)

        assert exc_info.value.reason == "unknown_order"

    def test_cancel_after_settlement_rejected(self, world):
        key = world.create_order()
        world.execute(key)

        with pytest.raises(InvalidStateError):
            world.engine.cancel_order(USER, key)

    def test_venue_refuses_execution_after_cancel_request(self, world):
        key = world.create_order()
        world.engine.cancel_order(USER, key)

        with pytest.raises(InvalidStateError):
            world.execute(key)

    def test_keeper_cancels_when_min_output_not_met(self, world):
        key = world.create_order()
        world.set_leg1_rate(90, 100)

        assert world.execute(key) == 0

        order = world.engine.get_order(key)
        assert order.state is OrderState.CANCELLED
        assert order.failure_reason == "min_output_not_met"
        assert world.usdc.balance_of(USER) == USER_FUNDS
        assert world.weth.balance_of(KEEPER) == EXECUTION_FEE


class TestFrozenNotification:
    def test_frozen_order_stays_active_and_can_settle(self, world):
        key = world.create_order()
        handle = world.handle_of(key)

        world.gmx.freeze_order(KEEPER, handle, reason="oracle_stale")

        order = world.engine.get_order(key)
        assert order.state is OrderState.ACTIVE
        assert order.frozen_reason == "oracle_stale"
        assert world.engine.get_events(key, "OrderFrozen")[0].data["reason"] == "oracle_stale"

        world.execute(key)
        assert world.engine.get_order(key).state is OrderState.SETTLED

    def test_frozen_notification_requires_venue_or_keeper(self, world):
        key = world.create_order()

        with pytest.raises(AuthorizationError):
            world.engine.on_leg_frozen(ATTACKER, key, reason="spoofed")


class TestQueries:
    def test_open_orders_and_solvency(self, world):
        settled = world.create_order()
        open_key = world.create_order()
        world.execute(settled)

        assert [o.order_key for o in world.engine.open_orders()] == [open_key]
        assert world.engine.check_solvency(world.usdc.address) == 0

    def test_get_order_returns_copy(self, world):
        key = world.create_order()

        snapshot = world.engine.get_order(key)
        snapshot.principal = 1

        assert world.engine.get_order(key).principal == 100
