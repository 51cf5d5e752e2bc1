"""
Arbitrage Settlement Engine.

Custodies capital for two-leg cross-venue arbitrage and settles each order
so that surplus is captured as profit and any shortfall stays inside the
custody boundary. Two settlement paths:

- Deferred: principal is deposited, leg 1 is submitted to a keeper-operated
  venue and the engine returns. The venue later calls back with the leg-1
  result (leg 2 runs on the synchronous venue inside the callback), a
  cancellation, or a frozen notification. Leg-2 failures are recovered into a
  refund of the leg-1 output so the venue's callback never fails on them.
- Atomic: principal comes from a flash loan; both legs and repayment happen
  inside the lender's callback. Any failure aborts the whole call and the
  state journal unwinds every effect, including the ledger entry.

Security features:
- Explicit state machine with per-entry-point caller classes
- Per-order reentrancy guard (re-entry is rejected, not queued)
- Committed-funds arena checked before admission and after every mutation
- Success-checked token transfers only
"""

from __future__ import annotations

import hashlib
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence

from .. import settlement_metrics as metrics
from ..config import Config
from ..contracts.erc20 import ERC20Token, TokenRegistry, is_null_address, safe_transfer, safe_transfer_from
from ..logging_config import configure_logging
from ..settlement_exceptions import (
    AuthorizationError,
    ExternalCallFailure,
    InsolvencyError,
    InvalidStateError,
    ReentrancyError,
    SettlementError,
    SlippageViolation,
    SolvencyAlert,
    TransferFailedError,
    ValidationError,
)
from ..state_journal import StateJournal
from .flash_loans import FlashLoanProvider
from .opportunity import ArbitrageOpportunity, Direction, evaluate_opportunity
from .order_ledger import (
    ArbitrageOrder,
    CallerClass,
    EntryPoint,
    OrderLedger,
    OrderState,
    SettlementPath,
    derive_order_key,
)
from .profit import ProfitSplitPolicy, compute_distribution, try_call
from .venues import AsyncExchange, SyncExchange

logger = logging.getLogger(__name__)


@dataclass
class SettlementEvent:
    """Observable engine event (monitoring and tests, never control flow)."""

    event_type: str
    order_key: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class _FlashContext:
    order: ArbitrageOrder
    buy_venue: SyncExchange
    sell_venue: SyncExchange


class ArbitrageSettlementEngine:
    """
    Settlement engine and its owner-gated admin surface.

    All state-mutating entry points take the calling address first and run
    inside ``journal.atomic``, so an exception escaping an entry point leaves
    no partial state behind.
    """

    def __init__(
        self,
        owner: str,
        tokens: TokenRegistry,
        journal: StateJournal,
        async_exchange: AsyncExchange,
        sync_exchange: SyncExchange,
        lending_facility: Optional[FlashLoanProvider] = None,
        address: str = "",
        slippage_bps: Optional[int] = None,
        user_share_bps: Optional[int] = None,
        protocol_recipient: Optional[str] = None,
        min_profit_bps: Optional[int] = None,
        max_slippage_bps: Optional[int] = None,
        callback_gas_limit: Optional[int] = None,
    ) -> None:
        if is_null_address(owner):
            raise ValidationError("engine owner cannot be the zero address")
        self.owner = owner.lower()
        self.tokens = tokens
        self.journal = journal
        self.async_exchange = async_exchange
        self.sync_exchange = sync_exchange
        self.lending_facility = lending_facility
        if not address:
            digest = hashlib.sha3_256(f"engine:{owner}:{time.time()}".encode()).digest()
            address = f"0x{digest[-20:].hex()}"
        self.address = address.lower()

        self.max_slippage_bps = Config.MAX_SLIPPAGE_BPS if max_slippage_bps is None else max_slippage_bps
        self.slippage_bps = Config.DEFAULT_SLIPPAGE_BPS if slippage_bps is None else slippage_bps
        if not 0 <= self.slippage_bps <= self.max_slippage_bps:
            raise ValidationError(f"slippage must be within [0, {self.max_slippage_bps}] bps")
        self.split_policy = ProfitSplitPolicy(
            user_share_bps=Config.USER_PROFIT_SHARE_BPS if user_share_bps is None else user_share_bps,
            protocol_recipient=(protocol_recipient or Config.PROTOCOL_TREASURY).lower(),
        )
        self.min_profit_bps = Config.MIN_PROFIT_BPS if min_profit_bps is None else min_profit_bps
        self.callback_gas_limit = Config.CALLBACK_GAS_LIMIT if callback_gas_limit is None else callback_gas_limit

        self.ledger = OrderLedger()
        self.keepers: set[str] = set()
        self.events: List[SettlementEvent] = []
        self._nonce = 0
        self._executing: set[str] = set()
        self._pending_flash: Optional[_FlashContext] = None

        journal.register_all(self, self.ledger)
        configure_logging()
        logger.info(
            "Settlement engine initialized",
            extra={
                "event": "settlement.engine_initialized",
                "owner": self.owner[:10],
                "venue": self.async_exchange.address[:10],
                "slippage_bps": self.slippage_bps,
                "min_profit_bps": self.min_profit_bps,
            },
        )

    # ==================== Order Admission ====================

    def create_order(
        self,
        owner: str,
        borrow_token: str,
        target_token: str,
        principal: int,
        min_output_leg1: int,
        min_output_leg2: int,
        execution_fee_budget: int,
    ) -> str:
        """
        Admit a deferred-path order and submit leg 1 to the keeper venue.

        ``owner`` is the calling account: it deposits ``principal`` and the
        execution fee (both must be approved to the engine) and is entitled
        to any surplus.

        Returns:
            The new order key

        Raises:
            ValidationError: malformed parameters, insufficient fee budget or
                failed profitability pre-check (no state is created)
        """
        with self.journal.atomic("create_order"), self._non_reentrant("admission"):
            borrow, target = self._validate_admission(
                owner, borrow_token, target_token, principal, min_output_leg1, min_output_leg2
            )
            if execution_fee_budget < self.async_exchange.min_execution_fee:
                raise ValidationError(
                    f"execution fee budget {execution_fee_budget} below venue minimum "
                    f"{self.async_exchange.min_execution_fee}",
                    details={"reason": "insufficient_execution_fee"},
                )
            self._require_solvent(borrow.address)
            self._profitability_precheck(
                self.async_exchange,
                self.sync_exchange,
                borrow.address,
                target.address,
                principal,
                min_output_leg1,
                min_output_leg2,
                direction=Direction.ASYNC_TO_SYNC,
            )

            owner_norm = owner.lower()
            fee_token = self._token(self.async_exchange.fee_token)
            safe_transfer_from(borrow, self.address, owner_norm, self.address, principal)
            safe_transfer_from(fee_token, self.address, owner_norm, self.address, execution_fee_budget)

            order = self._new_order(
                owner_norm,
                borrow.address,
                target.address,
                principal,
                min_output_leg1,
                min_output_leg2,
                execution_fee_budget,
                SettlementPath.DEFERRED,
            )
            self.ledger.insert(order)

            # Venue takes the fee now and pulls principal only when a keeper executes
            venue = self.async_exchange.address
            self._increase_allowance(borrow, venue, principal)
            self._increase_allowance(fee_token, venue, execution_fee_budget)
            handle = self._call_venue(
                self.async_exchange.submit_order,
                self.address,
                borrow.address,
                target.address,
                principal,
                min_output_leg1,
                execution_fee_budget,
                self,
                order.order_key,
                self.callback_gas_limit,
            )
            self.ledger.update(order.order_key, venue_handle=handle)
            self._emit(
                "OrderCreated",
                order.order_key,
                owner=owner_norm,
                path=order.path.value,
                borrow_token=borrow.address,
                target_token=target.address,
                principal=principal,
                execution_fee_budget=execution_fee_budget,
                venue_handle=handle,
            )
            self._sync_committed(borrow.address)

        metrics.record_order_created(SettlementPath.DEFERRED.value)
        logger.info(
            "Arbitrage order created",
            extra={
                "event": "settlement.order_created",
                "order_key": order.order_key[:12],
                "owner": owner_norm[:10],
                "principal": principal,
            },
        )
        return order.order_key

    # ==================== Deferred Settlement Path ====================

    def on_leg_executed(
        self, caller: str, order_key: str, realized_output: int, handle: str = ""
    ) -> ArbitrageOrder:
        """
        Leg-1 completion callback from the keeper venue.

        Records the leg-1 output, runs leg 2 on the synchronous venue and
        settles. Leg-2 failures are recovered: the leg-1 output is returned to
        the owner and the order ends ``Failed``.

        Raises:
            AuthorizationError: caller is neither the venue nor a keeper, or
                the handle does not name the order's venue order
            InvalidStateError: order is not Active (idempotency guard)
            ExternalCallFailure: the venue has not taken the principal or
                the reported output is not in custody
            ReentrancyError: the order's callback is already executing
        """
        with self.journal.atomic("on_leg_executed"), self._non_reentrant(order_key):
            order = self._authorize(order_key, EntryPoint.EXECUTION_CALLBACK, caller)
            self._require_handle(order, handle)
            if realized_output < 0:
                raise ValidationError("realized output cannot be negative")
            self._require_principal_taken(order)

            target = self._token(order.target_token)
            expected = self.ledger.committed_amount(target.address) + realized_output
            if target.balance_of(self.address) < expected:
                raise ExternalCallFailure(
                    "leg-1 output not received by the engine",
                    recoverable=False,
                    details={"reason": "leg1_output_missing"},
                )

            self.ledger.transition(
                order_key, EntryPoint.EXECUTION_CALLBACK, OrderState.EXECUTED, leg1_output=realized_output
            )
            self.ledger.recommit(order_key, target.address, realized_output)
            self._emit(
                "LegExecuted",
                order_key,
                leg=1,
                venue=self.async_exchange.address,
                amount_in=order.principal,
                amount_out=realized_output,
            )

            if realized_output < order.min_output_leg1:
                self._fail(
                    order_key,
                    SlippageViolation(
                        f"leg-1 output {realized_output} below floor {order.min_output_leg1}",
                        realized=realized_output,
                        minimum=order.min_output_leg1,
                        details={"reason": "leg1_slippage"},
                    ),
                )
            else:
                result = try_call(self.journal, self._settle_leg2, order_key, label="leg2")
                if not result.success:
                    self._fail(order_key, result.error)

            settled = self.ledger.get(order_key)
            self._sync_committed(order.borrow_token, order.target_token)

        metrics.record_order_finalized(settled.state.value)
        logger.info(
            "Arbitrage order finalized",
            extra={
                "event": "settlement.order_finalized",
                "order_key": order_key[:12],
                "state": settled.state.value,
                "leg1_output": settled.leg1_output,
                "leg2_output": settled.leg2_output,
            },
        )
        return settled

    def on_leg_cancelled(
        self, caller: str, order_key: str, handle: str = "", reason: str = ""
    ) -> ArbitrageOrder:
        """
        Cancellation callback: leg 1 never executed, refund the original principal.
        """
        with self.journal.atomic("on_leg_cancelled"), self._non_reentrant(order_key):
            order = self._authorize(order_key, EntryPoint.CANCELLATION_CALLBACK, caller)
            self._require_handle(order, handle)
            borrow = self._token(order.borrow_token)

            self._decrease_allowance(borrow, self.async_exchange.address, order.principal)
            safe_transfer(borrow, self.address, order.owner, order.principal)
            reason = reason or "cancelled"
            cancelled = self.ledger.transition(
                order_key,
                EntryPoint.CANCELLATION_CALLBACK,
                OrderState.CANCELLED,
                refund_token=borrow.address,
                refunded_amount=order.principal,
                failure_reason=reason,
            )
            self._emit(
                "OrderCancelled",
                order_key,
                reason=reason,
                refund_token=borrow.address,
                refunded=order.principal,
                requested_by_owner=order.cancel_requested,
            )
            self._sync_committed(borrow.address)
            snapshot = self.ledger.get(order_key)

        metrics.record_order_finalized(cancelled.state.value)
        logger.info(
            "Arbitrage order cancelled",
            extra={
                "event": "settlement.order_cancelled",
                "order_key": order_key[:12],
                "reason": reason,
                "refunded": order.principal,
            },
        )
        return snapshot

    def on_leg_frozen(
        self, caller: str, order_key: str, handle: str = "", reason: str = ""
    ) -> ArbitrageOrder:
        """
        Venue reports an abnormal, non-final state. Informational only: the
        order stays Active because the venue may still resolve it.
        """
        with self.journal.atomic("on_leg_frozen"), self._non_reentrant(order_key):
            order = self._authorize(order_key, EntryPoint.FROZEN_NOTIFICATION, caller)
            self._require_handle(order, handle)
            reason = reason or "frozen"
            self.ledger.update(order_key, frozen_reason=reason)
            self._emit("OrderFrozen", order_key, reason=reason)
            snapshot = self.ledger.get(order_key)

        logger.warning(
            "Venue reported order frozen",
            extra={"event": "settlement.order_frozen", "order_key": order_key[:12], "reason": reason},
        )
        return snapshot

    def cancel_order(self, caller: str, order_key: str) -> bool:
        """
        Owner/admin cancellation request.

        Forwards the request to the keeper venue and does not refund: the
        refund happens only when the venue's cancellation callback arrives,
        so a concurrent execution callback cannot race a second settlement.

        Raises:
            AuthorizationError: caller is neither order owner nor admin
            InvalidStateError: order not Active, or cancellation already requested
        """
        with self.journal.atomic("cancel_order"), self._non_reentrant(order_key):
            order = self._authorize(order_key, EntryPoint.MANUAL_CANCEL, caller)
            if order.cancel_requested:
                raise InvalidStateError(
                    "cancellation already requested",
                    order_key=order_key,
                    state=order.state.value,
                    details={"reason": "cancel_already_requested"},
                )
            self._call_venue(self.async_exchange.cancel_order, self.address, order.venue_handle)
            self.ledger.update(order_key, cancel_requested=True)
            self._emit("CancellationRequested", order_key, requested_by=caller.lower())

        logger.info(
            "Cancellation requested",
            extra={
                "event": "settlement.cancel_requested",
                "order_key": order_key[:12],
                "caller": caller[:10],
            },
        )
        return True

    # ==================== Atomic Settlement Path ====================

    def execute_flash_arbitrage(
        self,
        owner: str,
        borrow_token: str,
        target_token: str,
        principal: int,
        min_output_leg1: int,
        min_output_leg2: int,
        buy_venue: Optional[SyncExchange] = None,
        sell_venue: Optional[SyncExchange] = None,
    ) -> str:
        """
        Borrow, swap on ``buy_venue``, swap back on ``sell_venue``, repay.

        Any failed precondition is fatal to the whole call: the flash loan
        and every ledger mutation are unwound and the error propagates.

        Raises:
            ValidationError, SlippageViolation, InsolvencyError, ExternalCallFailure
        """
        if self.lending_facility is None:
            raise ValidationError("no lending facility configured")
        buy = buy_venue or self.sync_exchange
        sell = sell_venue or self.sync_exchange

        with self.journal.atomic("flash_arbitrage"), self._non_reentrant("flash"):
            borrow, target = self._validate_admission(
                owner, borrow_token, target_token, principal, min_output_leg1, min_output_leg2
            )
            premium = self.lending_facility.get_flash_loan_fee_amount(borrow.address, principal)
            self._profitability_precheck(
                buy,
                sell,
                borrow.address,
                target.address,
                principal,
                min_output_leg1,
                min_output_leg2,
                direction=Direction.SYNC_TO_SYNC,
                premium=premium,
            )
            order = self._new_order(
                owner.lower(),
                borrow.address,
                target.address,
                principal,
                min_output_leg1,
                min_output_leg2,
                0,
                SettlementPath.ATOMIC,
            )
            self._pending_flash = _FlashContext(order, buy, sell)
            try:
                self.lending_facility.flash_loan(
                    self.address, self, [borrow.address], [principal], params=order.order_key
                )
            finally:
                self._pending_flash = None
            settled = self.ledger.get(order.order_key)

        metrics.record_order_created(SettlementPath.ATOMIC.value)
        metrics.record_order_finalized(settled.state.value)
        logger.info(
            "Flash arbitrage settled",
            extra={
                "event": "settlement.flash_settled",
                "order_key": settled.order_key[:12],
                "premium": settled.premium_paid,
                "profit": settled.distributed_amount,
            },
        )
        return settled.order_key

    def execute_operation(
        self,
        caller: str,
        initiator: str,
        assets: Sequence[str],
        amounts: Sequence[int],
        premiums: Sequence[int],
        params: Any,
    ) -> bool:
        """Lending facility callback: run both legs and leave the debt approved."""
        if CallerClass.LENDER not in self._caller_classes(caller):
            metrics.record_rejection("unauthorized_lender")
            raise AuthorizationError(
                "flash loan callback from unknown lender",
                caller=caller,
                details={"reason": "unauthorized_caller"},
            )
        context = self._pending_flash
        if context is None or initiator.lower() != self.address or params != context.order.order_key:
            raise AuthorizationError(
                "flash loan was not initiated by this engine",
                caller=caller,
                details={"reason": "unexpected_flash_loan"},
            )
        order = context.order
        if list(assets) != [order.borrow_token] or list(amounts) != [order.principal]:
            raise ValidationError("flash loan does not match the pending order")
        premium = premiums[0]
        key = order.order_key

        with self._non_reentrant(key):
            self.ledger.insert(order)
            self._authorize(key, EntryPoint.FLASH_LOAN, caller)
            self._emit(
                "OrderCreated",
                key,
                owner=order.owner,
                path=order.path.value,
                borrow_token=order.borrow_token,
                target_token=order.target_token,
                principal=order.principal,
                execution_fee_budget=0,
            )
            borrow = self._token(order.borrow_token)
            target = self._token(order.target_token)

            leg1 = self._swap_leg(key, context.buy_venue, borrow, target, order.principal, order.min_output_leg1, leg=1)
            self.ledger.transition(key, EntryPoint.FLASH_LOAN, OrderState.EXECUTED, leg1_output=leg1)
            self.ledger.recommit(key, target.address, leg1)

            leg2 = self._swap_leg(key, context.sell_venue, target, borrow, leg1, order.min_output_leg2, leg=2)
            debt = order.principal + premium
            if leg2 < debt:
                raise InsolvencyError(
                    f"post-swap balance {leg2} cannot cover debt {debt}",
                    balance=leg2,
                    debt=debt,
                    details={"reason": "insolvent"},
                )
            self._increase_allowance(borrow, self.lending_facility.address, debt)
            surplus = leg2 - debt
            if surplus:
                safe_transfer(borrow, self.address, order.owner, surplus)
            self.ledger.transition(
                key,
                EntryPoint.FLASH_LOAN,
                OrderState.SETTLED,
                leg2_output=leg2,
                premium_paid=premium,
                distributed_amount=surplus,
            )
            self._emit(
                "ProfitDistributed",
                key,
                token=borrow.address,
                owner_amount=surplus,
                protocol_amount=0,
                premium=premium,
            )
            metrics.record_profit(borrow.address, "owner", surplus)
        return True

    # ==================== Queries ====================

    def get_order(self, order_key: str) -> ArbitrageOrder:
        return self.ledger.get(order_key)

    def get_orders_by_owner(self, owner: str) -> List[ArbitrageOrder]:
        return self.ledger.orders_by_owner(owner)

    def open_orders(self) -> List[ArbitrageOrder]:
        return self.ledger.open_orders()

    def committed_amount(self, token: str) -> int:
        return self.ledger.committed_amount(token)

    def check_solvency(self, token: str) -> int:
        """Custody surplus over committed funds for ``token`` (negative = shortfall)."""
        return self._token(token).balance_of(self.address) - self.ledger.committed_amount(token)

    def get_events(self, order_key: Optional[str] = None, event_type: Optional[str] = None) -> List[SettlementEvent]:
        return [
            e
            for e in self.events
            if (order_key is None or e.order_key == order_key)
            and (event_type is None or e.event_type == event_type)
        ]

    def is_keeper(self, account: str) -> bool:
        return account.lower() in self.keepers

    # ==================== Admin ====================

    def set_slippage_tolerance(self, caller: str, bps: int) -> bool:
        """Set the global slippage ceiling applied to admission floors."""
        self._require_admin(caller)
        if not 0 <= bps <= self.max_slippage_bps:
            raise ValidationError(
                f"slippage {bps} bps outside [0, {self.max_slippage_bps}]",
                details={"reason": "slippage_out_of_range"},
            )
        with self.journal.atomic("set_slippage"):
            old = self.slippage_bps
            self.slippage_bps = bps
            self._emit("SlippageUpdated", old_bps=old, new_bps=bps)
        logger.info(
            "Slippage tolerance updated",
            extra={"event": "settlement.slippage_updated", "old_bps": old, "new_bps": bps},
        )
        return True

    def set_keeper_authorization(self, caller: str, keeper: str, authorized: bool) -> bool:
        self._require_admin(caller)
        if is_null_address(keeper):
            raise ValidationError("keeper cannot be the zero address")
        with self.journal.atomic("set_keeper"):
            if authorized:
                self.keepers.add(keeper.lower())
            else:
                self.keepers.discard(keeper.lower())
            self._emit("KeeperAuthorizationUpdated", keeper=keeper.lower(), authorized=authorized)
        return True

    def set_profit_split(self, caller: str, user_share_bps: int, protocol_recipient: Optional[str] = None) -> bool:
        """Replace the split policy; orders already open keep the one they captured."""
        self._require_admin(caller)
        recipient = (protocol_recipient or self.split_policy.protocol_recipient).lower()
        if is_null_address(recipient):
            raise ValidationError("protocol recipient cannot be the zero address")
        with self.journal.atomic("set_profit_split"):
            self.split_policy = ProfitSplitPolicy(user_share_bps, recipient)
            self._emit("ProfitSplitUpdated", user_share_bps=user_share_bps, protocol_recipient=recipient)
        return True

    def set_min_profit_bps(self, caller: str, bps: int) -> bool:
        self._require_admin(caller)
        if bps < 0:
            raise ValidationError("minimum profit cannot be negative")
        with self.journal.atomic("set_min_profit"):
            self.min_profit_bps = bps
            self._emit("MinProfitUpdated", min_profit_bps=bps)
        return True

    def transfer_ownership(self, caller: str, new_owner: str) -> bool:
        self._require_admin(caller)
        if is_null_address(new_owner):
            raise ValidationError("new owner cannot be the zero address")
        with self.journal.atomic("transfer_ownership"):
            previous = self.owner
            self.owner = new_owner.lower()
            self._emit("OwnershipTransferred", previous=previous, new_owner=self.owner)
        return True

    def rescue_asset(self, caller: str, token: str, amount: int) -> bool:
        """
        Emergency sweep of ``amount`` of ``token`` to the engine owner.

        Not scoped to free funds: a sweep that dips into funds backing open
        orders goes through but raises a solvency alert event.
        """
        self._require_admin(caller)
        with self.journal.atomic("rescue_asset"):
            asset = self.tokens.get(token)
            if asset is None:
                raise ValidationError(f"unknown token {token[:10]}")
            if amount <= 0:
                raise ValidationError("rescue amount must be positive")
            safe_transfer(asset, self.address, self.owner, amount)
            self._emit("FundsRescued", token=asset.address, amount=amount, to=self.owner)
            self._alert_if_insolvent(asset.address, source="rescue")

        logger.warning(
            "Funds rescued",
            extra={
                "event": "settlement.funds_rescued",
                "token": asset.address[:10],
                "amount": amount,
                "committed": self.ledger.committed_amount(asset.address),
            },
        )
        return True

    # ==================== Journal ====================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "events": len(self.events),
            "nonce": self._nonce,
            "keepers": set(self.keepers),
            "slippage_bps": self.slippage_bps,
            "split_policy": self.split_policy,
            "min_profit_bps": self.min_profit_bps,
            "owner": self.owner,
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        del self.events[snapshot["events"]:]
        self._nonce = snapshot["nonce"]
        self.keepers = set(snapshot["keepers"])
        self.slippage_bps = snapshot["slippage_bps"]
        self.split_policy = snapshot["split_policy"]
        self.min_profit_bps = snapshot["min_profit_bps"]
        self.owner = snapshot["owner"]

    # ==================== Settlement internals ====================

    def _settle_leg2(self, order_key: str) -> ArbitrageOrder:
        """Leg 2 plus distribution; runs under try_call so failures revert as a unit."""
        order = self.ledger.get(order_key)
        borrow = self._token(order.borrow_token)
        target = self._token(order.target_token)

        output = self._swap_leg(order_key, self.sync_exchange, target, borrow, order.leg1_output, order.min_output_leg2, leg=2)
        distribution = compute_distribution(output, order.principal, order.split_policy)

        safe_transfer(borrow, self.address, order.owner, distribution.owner_amount)
        if not distribution.has_profit:
            self._emit(
                "NoProfitRefund",
                order_key,
                reason="no_profit",
                token=borrow.address,
                refunded=output,
            )
            return self.ledger.transition(
                order_key,
                EntryPoint.EXECUTION_CALLBACK,
                OrderState.REFUNDED,
                leg2_output=output,
                refund_token=borrow.address,
                refunded_amount=output,
                failure_reason="no_profit",
            )

        if distribution.protocol_amount:
            safe_transfer(
                borrow, self.address, order.split_policy.protocol_recipient, distribution.protocol_amount
            )
        self._emit(
            "ProfitDistributed",
            order_key,
            token=borrow.address,
            profit=distribution.profit,
            owner_amount=distribution.owner_amount,
            protocol_amount=distribution.protocol_amount,
        )
        metrics.record_profit(borrow.address, "owner", distribution.owner_amount - order.principal)
        metrics.record_profit(borrow.address, "protocol", distribution.protocol_amount)
        return self.ledger.transition(
            order_key,
            EntryPoint.EXECUTION_CALLBACK,
            OrderState.SETTLED,
            leg2_output=output,
            distributed_amount=distribution.owner_amount + distribution.protocol_amount,
            protocol_amount=distribution.protocol_amount,
        )

    def _fail(self, order_key: str, error: Optional[SettlementError]) -> None:
        """Recover a failed leg: return the leg-1 output as-is and end Failed."""
        order = self.ledger.get(order_key)
        target = self._token(order.target_token)
        reason = error.reason if error is not None else "unknown"

        # A refund that cannot be delivered propagates and reverts the callback
        safe_transfer(target, self.address, order.owner, order.leg1_output)
        self.ledger.transition(
            order_key,
            EntryPoint.EXECUTION_CALLBACK,
            OrderState.FAILED,
            refund_token=target.address,
            refunded_amount=order.leg1_output,
            failure_reason=reason,
        )
        self._emit(
            "ArbitrageFailed",
            order_key,
            reason=reason,
            error=error.message if error is not None else "",
            refund_token=target.address,
            refunded=order.leg1_output,
        )
        logger.warning(
            "Arbitrage leg failed, leg-1 output refunded",
            extra={
                "event": "settlement.order_failed",
                "order_key": order_key[:12],
                "reason": reason,
                "refunded": order.leg1_output,
            },
        )

    def _swap_leg(
        self,
        order_key: str,
        venue: SyncExchange,
        token_in: ERC20Token,
        token_out: ERC20Token,
        amount_in: int,
        min_output: int,
        leg: int,
    ) -> int:
        self._increase_allowance(token_in, venue.address, amount_in)
        before = token_out.balance_of(self.address)
        output = self._call_venue(
            venue.swap, self.address, token_in.address, token_out.address, amount_in, min_output, self.address
        )
        received = token_out.balance_of(self.address) - before
        if received != output:
            raise ExternalCallFailure(
                f"venue reported {output} but engine received {received}",
                details={"reason": "output_mismatch"},
            )
        if output < min_output:
            raise SlippageViolation(
                f"leg-{leg} output {output} below floor {min_output}",
                realized=output,
                minimum=min_output,
                details={"reason": f"leg{leg}_slippage"},
            )
        self._emit("LegExecuted", order_key, leg=leg, venue=venue.address, amount_in=amount_in, amount_out=output)
        return output

    # ==================== Validation & guards ====================

    def _validate_admission(
        self,
        owner: str,
        borrow_token: str,
        target_token: str,
        principal: int,
        min_output_leg1: int,
        min_output_leg2: int,
    ) -> tuple[ERC20Token, ERC20Token]:
        if is_null_address(owner):
            raise ValidationError("owner cannot be the zero address", details={"reason": "null_owner"})
        if is_null_address(borrow_token) or is_null_address(target_token):
            raise ValidationError("token address cannot be the zero address", details={"reason": "null_token"})
        if borrow_token.lower() == target_token.lower():
            raise ValidationError("borrow and target token must differ", details={"reason": "same_token"})
        if principal <= 0:
            raise ValidationError("principal must be positive", details={"reason": "zero_principal"})
        if min_output_leg1 < 0 or min_output_leg2 < 0:
            raise ValidationError("minimum outputs cannot be negative", details={"reason": "negative_floor"})
        borrow = self.tokens.get(borrow_token)
        target = self.tokens.get(target_token)
        if borrow is None or target is None:
            raise ValidationError("token is not registered", details={"reason": "unknown_token"})
        return borrow, target

    def _profitability_precheck(
        self,
        leg1_venue: Any,
        leg2_venue: Any,
        borrow_token: str,
        target_token: str,
        principal: int,
        min_output_leg1: int,
        min_output_leg2: int,
        direction: Direction,
        premium: int = 0,
    ) -> Optional[ArbitrageOpportunity]:
        """
        Advisory quote check. Floors looser than the slippage tolerance and
        projections below ``min_profit_bps`` are rejected; a failing quote
        skips the check.
        """
        try:
            opportunity = evaluate_opportunity(
                leg1_venue,
                leg2_venue,
                borrow_token,
                target_token,
                principal,
                self.slippage_bps,
                direction=direction,
                premium=premium,
            )
        except SettlementError as exc:
            logger.warning(
                "Profitability pre-check skipped, quote unavailable",
                extra={"event": "settlement.precheck_skipped", "error": exc.message},
            )
            return None

        if min_output_leg1 < opportunity.min_output_leg1 or min_output_leg2 < opportunity.min_output_leg2:
            raise ValidationError(
                "minimum outputs are looser than the slippage tolerance allows",
                details={
                    "reason": "floor_below_tolerance",
                    "required_leg1": opportunity.min_output_leg1,
                    "required_leg2": opportunity.min_output_leg2,
                },
            )
        if self.min_profit_bps > 0 and opportunity.profit_bps < self.min_profit_bps:
            raise ValidationError(
                f"projected profit {opportunity.profit_bps} bps below minimum {self.min_profit_bps} bps",
                details={"reason": "unprofitable", "profit_bps": opportunity.profit_bps},
            )
        return opportunity

    def _authorize(self, order_key: str, entry: EntryPoint, caller: str) -> ArbitrageOrder:
        try:
            # Unknown keys fail here, before the owner class can be resolved
            order = self.ledger.get(order_key)
            return self.ledger.authorize(order_key, entry, caller, self._caller_classes(caller, order))
        except (AuthorizationError, InvalidStateError) as exc:
            metrics.record_rejection(exc.reason)
            logger.warning(
                "Entry point rejected",
                extra={
                    "event": "settlement.rejected",
                    "entry": entry.value,
                    "order_key": order_key[:12],
                    "caller": caller[:10],
                    "reason": exc.reason,
                },
            )
            raise

    def _caller_classes(self, caller: str, order: Optional[ArbitrageOrder] = None) -> FrozenSet[CallerClass]:
        account = caller.lower()
        classes = set()
        if account == self.async_exchange.address:
            classes.add(CallerClass.VENUE)
        if account in self.keepers:
            classes.add(CallerClass.KEEPER)
        if account == self.owner:
            classes.add(CallerClass.ADMIN)
        if order is not None and account == order.owner:
            classes.add(CallerClass.OWNER)
        if self.lending_facility is not None and account == self.lending_facility.address:
            classes.add(CallerClass.LENDER)
        return frozenset(classes)

    def _require_handle(self, order: ArbitrageOrder, handle: str) -> None:
        if not handle or handle != order.venue_handle:
            metrics.record_rejection("handle_mismatch")
            raise AuthorizationError(
                "callback handle does not match the order",
                details={"reason": "handle_mismatch"},
            )

    def _require_principal_taken(self, order: ArbitrageOrder) -> None:
        """
        Leg 1 counts as executed only once the venue has pulled the principal.

        The engine's allowance to the keeper venue equals the principal of
        every deferred order still waiting on leg 1, so a genuine execution
        has already consumed this order's share.
        """
        borrow = self._token(order.borrow_token)
        outstanding = self.ledger.awaiting_leg1(borrow.address)
        allowance = borrow.allowance(self.address, self.async_exchange.address)
        if allowance > outstanding - order.principal:
            metrics.record_rejection("leg1_input_not_taken")
            raise ExternalCallFailure(
                "leg-1 principal has not been taken by the venue",
                recoverable=False,
                details={"reason": "leg1_input_not_taken", "allowance": allowance},
            )

    def _require_admin(self, caller: str) -> None:
        if caller.lower() != self.owner:
            metrics.record_rejection("not_admin")
            raise AuthorizationError("caller is not owner", caller=caller, details={"reason": "not_admin"})

    def _require_solvent(self, token: str) -> None:
        shortfall = -self.check_solvency(token)
        if shortfall > 0:
            self._record_solvency_alert(token, shortfall, source="admission")
            raise SolvencyAlert(
                f"custody short of committed funds by {shortfall}",
                token=token,
                shortfall=shortfall,
                details={"reason": "insolvent_custody"},
            )

    def _alert_if_insolvent(self, token: str, source: str) -> None:
        shortfall = -self.check_solvency(token)
        if shortfall > 0:
            self._record_solvency_alert(token, shortfall, source)
            self._emit("SolvencyAlert", token=token, shortfall=shortfall, source=source)

    def _record_solvency_alert(self, token: str, shortfall: int, source: str) -> None:
        metrics.record_solvency_alert(token)
        logger.error(
            "Custody below committed funds",
            extra={
                "event": "settlement.solvency_alert",
                "token": token[:10],
                "shortfall": shortfall,
                "source": source,
            },
        )

    @contextmanager
    def _non_reentrant(self, key: str) -> Iterator[None]:
        # Entered under the journal lock, so only same-thread re-entry lands here
        if key in self._executing:
            metrics.record_rejection("reentrancy")
            raise ReentrancyError(
                "entry point re-entered while executing",
                order_key=key,
                details={"reason": "reentrancy"},
            )
        self._executing.add(key)
        try:
            yield
        finally:
            self._executing.discard(key)

    # ==================== Helpers ====================

    def _new_order(
        self,
        owner: str,
        borrow_token: str,
        target_token: str,
        principal: int,
        min_output_leg1: int,
        min_output_leg2: int,
        execution_fee_budget: int,
        path: SettlementPath,
    ) -> ArbitrageOrder:
        self._nonce += 1
        created_at = time.time()
        return ArbitrageOrder(
            order_key=derive_order_key(owner, borrow_token, target_token, principal, self._nonce, created_at),
            owner=owner,
            borrow_token=borrow_token,
            target_token=target_token,
            principal=principal,
            min_output_leg1=min_output_leg1,
            min_output_leg2=min_output_leg2,
            execution_fee_budget=execution_fee_budget,
            split_policy=self.split_policy,
            path=path,
            nonce=self._nonce,
            created_at=created_at,
        )

    def _token(self, address: str) -> ERC20Token:
        token = self.tokens.get(address)
        if token is None:
            raise ValidationError(f"unknown token {address[:10]}", details={"reason": "unknown_token"})
        return token

    def _increase_allowance(self, token: ERC20Token, spender: str, amount: int) -> None:
        current = token.allowance(self.address, spender)
        if token.approve(self.address, spender, current + amount) is not True:
            raise TransferFailedError(
                f"{token.symbol} approve did not confirm", details={"reason": "approve_failed"}
            )

    def _decrease_allowance(self, token: ERC20Token, spender: str, amount: int) -> None:
        current = token.allowance(self.address, spender)
        if token.approve(self.address, spender, max(current - amount, 0)) is not True:
            raise TransferFailedError(
                f"{token.symbol} approve did not confirm", details={"reason": "approve_failed"}
            )

    def _call_venue(self, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Invoke an external venue.

        Anything the venue raises is an external-call failure from the
        engine's point of view: recoverable settlement errors pass through,
        everything else is wrapped in ExternalCallFailure.
        """
        try:
            return fn(*args)
        except SettlementError as exc:
            if exc.recoverable:
                raise
            raise ExternalCallFailure(
                f"venue rejected call: {exc.message}",
                details={"reason": "venue_rejected", "venue_reason": exc.reason},
            ) from exc
        except Exception as exc:
            raise ExternalCallFailure(
                f"venue call failed: {exc}", details={"reason": "venue_call_failed"}
            ) from exc

    def _sync_committed(self, *tokens: str) -> None:
        for token in tokens:
            metrics.update_committed(token, self.ledger.committed_amount(token))
            self._alert_if_insolvent(token, source="settlement")

    def _emit(self, event_type: str, order_key: str = "", **data: Any) -> None:
        self.events.append(SettlementEvent(event_type=event_type, order_key=order_key, data=data))
