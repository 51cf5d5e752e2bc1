"""
Venue adapters for two-leg arbitrage.

Two execution models:
- ``SyncExchange``: swaps settle within the call and return the realized
  output (Uniswap-style). ``ConstantProductExchange`` prices with x * y = k,
  ``FixedRateExchange`` prices from an owner-maintained oracle rate.
- ``AsyncExchange``: orders are accepted with an execution-fee budget and a
  pending handle is returned; keepers later execute, cancel or freeze the
  order and the venue reports the outcome through callbacks on the receiver
  (GMX-style). ``KeeperExchange`` is the in-memory implementation.

All venues keep their inventory as ERC20 balances at the venue address and
register with the state journal so that a reverted call also reverts the
venue side of a swap.
"""

from __future__ import annotations

import copy
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from ..config import BPS_DENOMINATOR
from ..contracts.erc20 import TokenRegistry, safe_transfer, safe_transfer_from
from ..settlement_exceptions import (
    AuthorizationError,
    ExternalCallFailure,
    InvalidStateError,
    SettlementError,
    SlippageViolation,
)
from ..state_journal import StateJournal

logger = logging.getLogger(__name__)


def _venue_address(name: str) -> str:
    digest = hashlib.sha3_256(f"venue:{name}:{time.time()}".encode()).digest()
    return f"0x{digest[-20:].hex()}"


class SyncExchange(ABC):
    """Venue whose swaps settle within the call."""

    address: str
    name: str

    @abstractmethod
    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        """Read-only output estimate for ``amount_in``."""

    @abstractmethod
    def swap(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> int:
        """Pull ``amount_in`` from caller, pay the output to recipient, return it."""


class ExecutionCallbackReceiver(Protocol):
    """What an ``AsyncExchange`` calls back into."""

    address: str

    def on_leg_executed(self, caller: str, order_key: str, realized_output: int, handle: str = "") -> Any: ...

    def on_leg_cancelled(self, caller: str, order_key: str, handle: str = "", reason: str = "") -> Any: ...

    def on_leg_frozen(self, caller: str, order_key: str, handle: str = "", reason: str = "") -> Any: ...


class AsyncExchange(ABC):
    """Venue that executes orders later, via keepers."""

    address: str
    name: str
    fee_token: str
    min_execution_fee: int

    @abstractmethod
    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        """Read-only output estimate at the current oracle rate."""

    @abstractmethod
    def submit_order(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_output: int,
        execution_fee: int,
        receiver: ExecutionCallbackReceiver,
        callback_data: str,
        callback_gas_limit: int = 0,
    ) -> str:
        """Accept an order and return its pending handle."""

    @abstractmethod
    def cancel_order(self, caller: str, handle: str) -> bool:
        """Request cancellation; the outcome arrives via callback."""


class _RateBook:
    """Owner-maintained integer exchange rates: out = in * num // den."""

    def __init__(self) -> None:
        self.rates: Dict[Tuple[str, str], Tuple[int, int]] = {}

    def set(self, token_in: str, token_out: str, numerator: int, denominator: int) -> None:
        if numerator < 0 or denominator <= 0:
            raise SettlementError("rate must be non-negative with a positive denominator")
        self.rates[(token_in.lower(), token_out.lower())] = (numerator, denominator)

    def convert(self, token_in: str, token_out: str, amount_in: int) -> int:
        rate = self.rates.get((token_in.lower(), token_out.lower()))
        if rate is None:
            raise ExternalCallFailure(
                f"no rate for {token_in[:10]} -> {token_out[:10]}",
                details={"reason": "no_rate"},
            )
        numerator, denominator = rate
        return amount_in * numerator // denominator


# ==================== Synchronous venues ====================


class ConstantProductExchange(SyncExchange):
    """
    AMM-style venue using the constant product formula (x * y = k).

    One pool per unordered token pair; reserves are the venue's token
    balances tracked per pool.
    """

    def __init__(
        self,
        name: str,
        tokens: TokenRegistry,
        journal: Optional[StateJournal] = None,
        fee_bps: int = 30,
        address: str = "",
    ) -> None:
        self.name = name
        self.address = (address or _venue_address(name)).lower()
        self.tokens = tokens
        self.fee_bps = fee_bps
        self.reserves: Dict[Tuple[str, str], Dict[str, int]] = {}
        self.swap_count = 0
        if journal is not None:
            journal.register(self)

    @staticmethod
    def _pair(token_a: str, token_b: str) -> Tuple[str, str]:
        a, b = token_a.lower(), token_b.lower()
        return (a, b) if a < b else (b, a)

    def add_liquidity(self, provider: str, token_a: str, amount_a: int, token_b: str, amount_b: int) -> None:
        """Deposit both sides of a pool (provider must have approved the venue)."""
        if amount_a <= 0 or amount_b <= 0:
            raise SettlementError("Invalid amounts")
        safe_transfer_from(self.tokens.require(token_a), self.address, provider, self.address, amount_a)
        safe_transfer_from(self.tokens.require(token_b), self.address, provider, self.address, amount_b)
        pool = self.reserves.setdefault(self._pair(token_a, token_b), {})
        pool[token_a.lower()] = pool.get(token_a.lower(), 0) + amount_a
        pool[token_b.lower()] = pool.get(token_b.lower(), 0) + amount_b

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        pool = self.reserves.get(self._pair(token_in, token_out))
        if not pool or amount_in <= 0:
            return 0
        reserve_in = pool.get(token_in.lower(), 0)
        reserve_out = pool.get(token_out.lower(), 0)
        if reserve_in == 0 or reserve_out == 0:
            return 0
        amount_in_after_fee = amount_in * (BPS_DENOMINATOR - self.fee_bps)
        return (amount_in_after_fee * reserve_out) // (reserve_in * BPS_DENOMINATOR + amount_in_after_fee)

    def swap(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> int:
        if amount_in <= 0:
            raise ExternalCallFailure("Amount must be non-zero", details={"reason": "zero_amount"})
        pool = self.reserves.get(self._pair(token_in, token_out))
        if not pool:
            raise ExternalCallFailure("pool does not exist", details={"reason": "no_pool"})
        amount_out = self.quote(token_in, token_out, amount_in)
        if amount_out < min_amount_out:
            raise SlippageViolation(
                f"{self.name}: insufficient output amount ({amount_out} < {min_amount_out})",
                realized=amount_out,
                minimum=min_amount_out,
                details={"reason": "venue_min_output"},
            )
        safe_transfer_from(self.tokens.require(token_in), self.address, caller, self.address, amount_in)
        safe_transfer(self.tokens.require(token_out), self.address, recipient, amount_out)
        pool[token_in.lower()] += amount_in
        pool[token_out.lower()] -= amount_out
        self.swap_count += 1

        logger.debug(
            "AMM swap",
            extra={
                "event": "venue.swap",
                "venue": self.name,
                "amount_in": amount_in,
                "amount_out": amount_out,
            },
        )
        return amount_out

    def snapshot(self) -> Dict[str, Any]:
        return {"reserves": copy.deepcopy(self.reserves), "swap_count": self.swap_count}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.reserves = copy.deepcopy(snapshot["reserves"])
        self.swap_count = snapshot["swap_count"]


class FixedRateExchange(SyncExchange):
    """
    Oracle-priced venue: swaps settle at the owner-set rate, paid from the
    venue's own inventory.
    """

    def __init__(
        self,
        name: str,
        owner: str,
        tokens: TokenRegistry,
        journal: Optional[StateJournal] = None,
        address: str = "",
    ) -> None:
        self.name = name
        self.owner = owner.lower()
        self.address = (address or _venue_address(name)).lower()
        self.tokens = tokens
        self.book = _RateBook()
        self.swap_count = 0
        if journal is not None:
            journal.register(self)

    def set_rate(self, caller: str, token_in: str, token_out: str, numerator: int, denominator: int = 1) -> None:
        if caller.lower() != self.owner:
            raise AuthorizationError("caller is not venue owner", caller=caller)
        self.book.set(token_in, token_out, numerator, denominator)

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        return self.book.convert(token_in, token_out, amount_in)

    def swap(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> int:
        if amount_in <= 0:
            raise ExternalCallFailure("Amount must be non-zero", details={"reason": "zero_amount"})
        amount_out = self.quote(token_in, token_out, amount_in)
        if amount_out < min_amount_out:
            raise SlippageViolation(
                f"{self.name}: insufficient output amount ({amount_out} < {min_amount_out})",
                realized=amount_out,
                minimum=min_amount_out,
                details={"reason": "venue_min_output"},
            )
        safe_transfer_from(self.tokens.require(token_in), self.address, caller, self.address, amount_in)
        safe_transfer(self.tokens.require(token_out), self.address, recipient, amount_out)
        self.swap_count += 1
        return amount_out

    def snapshot(self) -> Dict[str, Any]:
        return {"rates": dict(self.book.rates), "swap_count": self.swap_count}

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.book.rates = dict(snapshot["rates"])
        self.swap_count = snapshot["swap_count"]


# ==================== Asynchronous venue ====================


class PendingStatus(Enum):
    PENDING = "pending"
    CANCEL_REQUESTED = "cancel_requested"
    FROZEN = "frozen"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


@dataclass
class PendingOrder:
    """Order waiting for a keeper."""

    handle: str
    account: str
    token_in: str
    token_out: str
    amount_in: int
    min_output: int
    execution_fee: int
    callback_data: str
    callback_gas_limit: int
    status: PendingStatus = PendingStatus.PENDING
    output: int = 0
    created_at: float = field(default_factory=time.time)


class KeeperExchange(AsyncExchange):
    """
    Keeper-operated venue.

    Orders are accepted with an execution fee (paid in ``fee_token``) and sit
    pending until an authorized keeper executes, cancels or freezes them.
    The input amount is pulled from the account only at execution. If the
    output at the keeper's price is below the order's minimum, the order is
    cancelled instead of executed.

    Callback failures are logged and do not undo the venue's own execution.
    """

    def __init__(
        self,
        name: str,
        owner: str,
        tokens: TokenRegistry,
        fee_token: str,
        min_execution_fee: int,
        journal: Optional[StateJournal] = None,
        address: str = "",
    ) -> None:
        self.name = name
        self.owner = owner.lower()
        self.address = (address or _venue_address(name)).lower()
        self.tokens = tokens
        self.fee_token = fee_token.lower()
        self.min_execution_fee = min_execution_fee
        self.book = _RateBook()
        self.keepers: Set[str] = set()
        self.orders: Dict[str, PendingOrder] = {}
        self._live: Set[str] = set()
        self.receivers: Dict[str, ExecutionCallbackReceiver] = {}
        self.callback_failures: list[tuple[str, str]] = []
        self._order_nonce = 0
        self._journal = journal
        if journal is not None:
            journal.register(self)

    # ==================== Admin ====================

    def set_rate(self, caller: str, token_in: str, token_out: str, numerator: int, denominator: int = 1) -> None:
        self._require_owner(caller)
        self.book.set(token_in, token_out, numerator, denominator)

    def set_keeper(self, caller: str, keeper: str, allowed: bool = True) -> None:
        self._require_owner(caller)
        if allowed:
            self.keepers.add(keeper.lower())
        else:
            self.keepers.discard(keeper.lower())

    # ==================== Account operations ====================

    def quote(self, token_in: str, token_out: str, amount_in: int) -> int:
        return self.book.convert(token_in, token_out, amount_in)

    def submit_order(
        self,
        caller: str,
        token_in: str,
        token_out: str,
        amount_in: int,
        min_output: int,
        execution_fee: int,
        receiver: ExecutionCallbackReceiver,
        callback_data: str,
        callback_gas_limit: int = 0,
    ) -> str:
        if amount_in <= 0:
            raise ExternalCallFailure("Amount must be non-zero", details={"reason": "zero_amount"})
        if execution_fee < self.min_execution_fee:
            raise ExternalCallFailure(
                f"execution fee too low ({execution_fee} < {self.min_execution_fee})",
                details={"reason": "insufficient_execution_fee"},
            )
        safe_transfer_from(
            self.tokens.require(self.fee_token), self.address, caller, self.address, execution_fee
        )
        self._order_nonce += 1
        handle = "0x" + hashlib.sha3_256(
            f"{self.address}:{caller.lower()}:{self._order_nonce}".encode()
        ).hexdigest()
        self.orders[handle] = PendingOrder(
            handle=handle,
            account=caller.lower(),
            token_in=token_in.lower(),
            token_out=token_out.lower(),
            amount_in=amount_in,
            min_output=min_output,
            execution_fee=execution_fee,
            callback_data=callback_data,
            callback_gas_limit=callback_gas_limit,
        )
        self.receivers[handle] = receiver
        self._live.add(handle)

        logger.info(
            "Async venue order accepted",
            extra={
                "event": "venue.order_submitted",
                "venue": self.name,
                "handle": handle[:12],
                "amount_in": amount_in,
            },
        )
        return handle

    def cancel_order(self, caller: str, handle: str) -> bool:
        order = self._require_order(handle)
        if caller.lower() != order.account:
            raise AuthorizationError("only the order account may cancel", caller=caller)
        if order.status not in (PendingStatus.PENDING, PendingStatus.FROZEN):
            raise InvalidStateError(
                f"order is {order.status.value}", details={"reason": "venue_order_not_pending"}
            )
        order.status = PendingStatus.CANCEL_REQUESTED
        return True

    # ==================== Keeper operations ====================

    def execute_order(self, keeper: str, handle: str) -> int:
        """
        Execute a pending order at the current rate and notify the receiver.

        Returns the realized output, or 0 if the order was cancelled because
        the output would have been below its minimum.
        """
        self._require_keeper(keeper)
        with self._atomic("keeper_execute"):
            order = self._require_order(handle)
            if order.status not in (PendingStatus.PENDING, PendingStatus.FROZEN):
                raise InvalidStateError(
                    f"order is {order.status.value}", details={"reason": "venue_order_not_pending"}
                )
            output = self.quote(order.token_in, order.token_out, order.amount_in)
            if output < order.min_output:
                self._cancel(keeper, order, reason="min_output_not_met")
                return 0

            safe_transfer_from(
                self.tokens.require(order.token_in), self.address, order.account, self.address, order.amount_in
            )
            safe_transfer(self.tokens.require(order.token_out), self.address, order.account, output)
            order.status = PendingStatus.EXECUTED
            order.output = output
            self._live.discard(handle)
            self._pay_keeper(keeper, order)

            self._notify(order, "on_leg_executed", realized_output=output)
            return output

    def process_cancellation(self, keeper: str, handle: str, reason: str = "cancelled") -> None:
        """Finalize a cancellation (requested or keeper-initiated)."""
        self._require_keeper(keeper)
        with self._atomic("keeper_cancel"):
            order = self._require_order(handle)
            if order.status in (PendingStatus.EXECUTED, PendingStatus.CANCELLED):
                raise InvalidStateError(
                    f"order is {order.status.value}", details={"reason": "venue_order_final"}
                )
            self._cancel(keeper, order, reason=reason)

    def freeze_order(self, keeper: str, handle: str, reason: str = "frozen") -> None:
        """Mark an order frozen; it may still be executed or cancelled later."""
        self._require_keeper(keeper)
        with self._atomic("keeper_freeze"):
            order = self._require_order(handle)
            if order.status is not PendingStatus.PENDING:
                raise InvalidStateError(
                    f"order is {order.status.value}", details={"reason": "venue_order_not_pending"}
                )
            order.status = PendingStatus.FROZEN
            self._notify(order, "on_leg_frozen", reason=reason)

    # ==================== Journal ====================

    # Executed and cancelled orders are final; only live orders are copied.

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": len(self.orders),
            "live": {handle: replace(self.orders[handle]) for handle in self._live},
            "keepers": set(self.keepers),
            "rates": dict(self.book.rates),
            "nonce": self._order_nonce,
            "callback_failures": len(self.callback_failures),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        while len(self.orders) > snapshot["count"]:
            handle, _ = self.orders.popitem()
            self.receivers.pop(handle, None)
        for handle, order in snapshot["live"].items():
            self.orders[handle] = replace(order)
        self._live = set(snapshot["live"])
        self.keepers = set(snapshot["keepers"])
        self.book.rates = dict(snapshot["rates"])
        self._order_nonce = snapshot["nonce"]
        del self.callback_failures[snapshot["callback_failures"]:]

    # ==================== Helpers ====================

    def _atomic(self, label: str):
        return self._journal.atomic(label) if self._journal is not None else nullcontext()

    def _cancel(self, keeper: str, order: PendingOrder, reason: str) -> None:
        order.status = PendingStatus.CANCELLED
        self._live.discard(order.handle)
        self._pay_keeper(keeper, order)
        self._notify(order, "on_leg_cancelled", reason=reason)

    def _pay_keeper(self, keeper: str, order: PendingOrder) -> None:
        safe_transfer(self.tokens.require(self.fee_token), self.address, keeper, order.execution_fee)

    def _notify(self, order: PendingOrder, method: str, **kwargs: Any) -> None:
        receiver = self.receivers.get(order.handle)
        if receiver is None:
            return
        try:
            getattr(receiver, method)(self.address, order.callback_data, handle=order.handle, **kwargs)
        except SettlementError as exc:
            self.callback_failures.append((order.handle, str(exc)))
            logger.warning(
                "Venue callback failed",
                extra={
                    "event": "venue.callback_failed",
                    "venue": self.name,
                    "callback": method,
                    "handle": order.handle[:12],
                    "error": str(exc),
                },
            )

    def _require_order(self, handle: str) -> PendingOrder:
        order = self.orders.get(handle)
        if order is None:
            raise InvalidStateError("unknown venue order", details={"reason": "unknown_handle"})
        return order

    def _require_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise AuthorizationError("caller is not venue owner", caller=caller)

    def _require_keeper(self, keeper: str) -> None:
        if keeper.lower() not in self.keepers:
            raise AuthorizationError("caller is not a keeper", caller=keeper)
