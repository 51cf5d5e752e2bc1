"""
Order Ledger for Arbitrage Settlement.

Authoritative, keyed record of every in-flight and settled arbitrage order,
owned by the settlement engine. Implements:
- Deterministic, collision-checked order keys
- An explicit state machine: an allow-list of (state, entry point) pairs and
  the caller classes permitted at each entry point
- A committed-funds arena indexed by order key, so pooled custody can be
  checked against what open orders are owed

Terminal orders remain queryable but can no longer be mutated.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..settlement_exceptions import (
    AuthorizationError,
    DuplicateOrderError,
    InvalidStateError,
)
from .profit import ProfitSplitPolicy

logger = logging.getLogger(__name__)


class OrderState(Enum):
    """Lifecycle state of an arbitrage order."""
    ACTIVE = "active"
    EXECUTED = "executed"  # leg 1 complete, leg 2 pending
    SETTLED = "settled"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {OrderState.SETTLED, OrderState.REFUNDED, OrderState.CANCELLED, OrderState.FAILED}
)


class SettlementPath(Enum):
    DEFERRED = "deferred"
    ATOMIC = "atomic"


class EntryPoint(Enum):
    """Engine entry points that may touch an existing order."""
    EXECUTION_CALLBACK = "execution_callback"
    CANCELLATION_CALLBACK = "cancellation_callback"
    FROZEN_NOTIFICATION = "frozen_notification"
    MANUAL_CANCEL = "manual_cancel"
    FLASH_LOAN = "flash_loan"


class CallerClass(Enum):
    """Role a caller holds relative to an order."""
    VENUE = "venue"
    KEEPER = "keeper"
    OWNER = "owner"
    ADMIN = "admin"
    LENDER = "lender"


# Who may call each entry point
ENTRY_CALLERS: Dict[EntryPoint, FrozenSet[CallerClass]] = {
    EntryPoint.EXECUTION_CALLBACK: frozenset({CallerClass.VENUE, CallerClass.KEEPER}),
    EntryPoint.CANCELLATION_CALLBACK: frozenset({CallerClass.VENUE, CallerClass.KEEPER}),
    EntryPoint.FROZEN_NOTIFICATION: frozenset({CallerClass.VENUE, CallerClass.KEEPER}),
    EntryPoint.MANUAL_CANCEL: frozenset({CallerClass.OWNER, CallerClass.ADMIN}),
    EntryPoint.FLASH_LOAN: frozenset({CallerClass.LENDER}),
}

# Legal (state, entry point) -> next states. Anything not listed is rejected.
TRANSITIONS: Dict[Tuple[OrderState, EntryPoint], FrozenSet[OrderState]] = {
    (OrderState.ACTIVE, EntryPoint.EXECUTION_CALLBACK): frozenset({OrderState.EXECUTED}),
    (OrderState.EXECUTED, EntryPoint.EXECUTION_CALLBACK): frozenset(
        {OrderState.SETTLED, OrderState.REFUNDED, OrderState.FAILED}
    ),
    (OrderState.ACTIVE, EntryPoint.CANCELLATION_CALLBACK): frozenset({OrderState.CANCELLED}),
    (OrderState.ACTIVE, EntryPoint.FROZEN_NOTIFICATION): frozenset({OrderState.ACTIVE}),
    (OrderState.ACTIVE, EntryPoint.MANUAL_CANCEL): frozenset({OrderState.ACTIVE}),
    (OrderState.ACTIVE, EntryPoint.FLASH_LOAN): frozenset({OrderState.EXECUTED}),
    (OrderState.EXECUTED, EntryPoint.FLASH_LOAN): frozenset({OrderState.SETTLED}),
}


def derive_order_key(
    caller: str,
    borrow_token: str,
    target_token: str,
    principal: int,
    nonce: int,
    timestamp: float,
) -> str:
    """Deterministic order key from the creation parameters."""
    payload = f"{caller.lower()}:{borrow_token.lower()}:{target_token.lower()}:{principal}:{nonce}:{timestamp!r}"
    return "0x" + hashlib.sha3_256(payload.encode()).hexdigest()


@dataclass
class ArbitrageOrder:
    """One unit of settlement work."""

    order_key: str
    owner: str
    borrow_token: str
    target_token: str
    principal: int
    min_output_leg1: int
    min_output_leg2: int
    execution_fee_budget: int
    split_policy: ProfitSplitPolicy
    path: SettlementPath = SettlementPath.DEFERRED
    state: OrderState = OrderState.ACTIVE
    nonce: int = 0
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0

    # Venue bookkeeping
    venue_handle: str = ""
    cancel_requested: bool = False
    frozen_reason: str = ""

    # Realized outcome
    leg1_output: int = 0
    leg2_output: int = 0
    premium_paid: int = 0
    refund_token: str = ""
    refunded_amount: int = 0
    distributed_amount: int = 0
    protocol_amount: int = 0
    failure_reason: str = ""

    @property
    def is_open(self) -> bool:
        return not self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_key": self.order_key,
            "owner": self.owner,
            "borrow_token": self.borrow_token,
            "target_token": self.target_token,
            "principal": self.principal,
            "min_output_leg1": self.min_output_leg1,
            "min_output_leg2": self.min_output_leg2,
            "execution_fee_budget": self.execution_fee_budget,
            "user_share_bps": self.split_policy.user_share_bps,
            "path": self.path.value,
            "state": self.state.value,
            "venue_handle": self.venue_handle,
            "cancel_requested": self.cancel_requested,
            "leg1_output": self.leg1_output,
            "leg2_output": self.leg2_output,
            "premium_paid": self.premium_paid,
            "refund_token": self.refund_token,
            "refunded_amount": self.refunded_amount,
            "distributed_amount": self.distributed_amount,
            "protocol_amount": self.protocol_amount,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True)
class Commitment:
    token: str
    amount: int


class OrderLedger:
    """
    Keyed store of orders plus the committed-funds arena.

    Mutations go through ``transition`` / ``update`` so that the state
    machine and terminal immutability are enforced in one place.
    """

    def __init__(self) -> None:
        self._orders: Dict[str, ArbitrageOrder] = {}
        self._commitments: Dict[str, Commitment] = {}

    # ==================== Queries ====================

    def __contains__(self, order_key: str) -> bool:
        return order_key in self._orders

    def __len__(self) -> int:
        return len(self._orders)

    def get(self, order_key: str) -> ArbitrageOrder:
        """Read-only copy of an order."""
        return replace(self._require(order_key))

    def find(self, order_key: str) -> Optional[ArbitrageOrder]:
        order = self._orders.get(order_key)
        return replace(order) if order else None

    def orders_by_owner(self, owner: str) -> List[ArbitrageOrder]:
        owner_norm = owner.lower()
        return [replace(o) for o in self._orders.values() if o.owner == owner_norm]

    def open_orders(self) -> List[ArbitrageOrder]:
        return [replace(o) for o in self._orders.values() if o.is_open]

    def committed_amount(self, token: str) -> int:
        """Sum of funds committed to open orders in ``token``."""
        token_norm = token.lower()
        return sum(c.amount for c in self._commitments.values() if c.token == token_norm)

    def committed_tokens(self) -> Iterable[str]:
        return {c.token for c in self._commitments.values()}

    def awaiting_leg1(self, token: str) -> int:
        """Principal in ``token`` of deferred orders whose leg 1 has not executed."""
        token_norm = token.lower()
        total = 0
        for order_key in self._commitments:
            order = self._orders[order_key]
            if (
                order.path is SettlementPath.DEFERRED
                and order.state is OrderState.ACTIVE
                and order.borrow_token == token_norm
            ):
                total += order.principal
        return total

    def commitment_of(self, order_key: str) -> Optional[Commitment]:
        commitment = self._commitments.get(order_key)
        return replace(commitment) if commitment else None

    # ==================== Mutations ====================

    def insert(self, order: ArbitrageOrder) -> None:
        """Insert a new Active order and commit its principal."""
        if order.order_key in self._orders:
            raise DuplicateOrderError(
                f"order key {order.order_key[:12]} already exists",
                details={"reason": "duplicate_order_key"},
            )
        if order.state is not OrderState.ACTIVE:
            raise InvalidStateError(
                "new orders must start Active",
                order_key=order.order_key,
                state=order.state.value,
            )
        order.updated_at = order.created_at
        self._orders[order.order_key] = order
        self._commitments[order.order_key] = Commitment(order.borrow_token, order.principal)

    def authorize(
        self,
        order_key: str,
        entry: EntryPoint,
        caller: str,
        caller_classes: FrozenSet[CallerClass],
    ) -> ArbitrageOrder:
        """
        Check caller class then state for ``entry``; return the live order.

        Raises:
            AuthorizationError: caller holds no class allowed at ``entry``
            InvalidStateError: the order's state has no transition for ``entry``
        """
        if not caller_classes & ENTRY_CALLERS[entry]:
            raise AuthorizationError(
                f"caller {caller[:10]} not authorized for {entry.value}",
                caller=caller,
                details={"reason": "unauthorized_caller"},
            )
        order = self._require(order_key)
        if (order.state, entry) not in TRANSITIONS:
            raise InvalidStateError(
                f"{entry.value} not allowed in state {order.state.value}",
                order_key=order_key,
                state=order.state.value,
                details={"reason": "invalid_state"},
            )
        return order

    def transition(self, order_key: str, entry: EntryPoint, new_state: OrderState, **changes: Any) -> ArbitrageOrder:
        """
        Move an order along an allowed edge, applying field changes.

        Terminal transitions release the order's commitment.
        """
        order = self._require(order_key)
        allowed = TRANSITIONS.get((order.state, entry), frozenset())
        if new_state not in allowed:
            raise InvalidStateError(
                f"illegal transition {order.state.value} -> {new_state.value} via {entry.value}",
                order_key=order_key,
                state=order.state.value,
                details={"reason": "illegal_transition"},
            )
        self._apply(order, changes)
        order.state = new_state
        order.updated_at = time.time()
        if new_state.is_terminal:
            self._commitments.pop(order_key, None)
        return order

    def update(self, order_key: str, **changes: Any) -> ArbitrageOrder:
        """Change bookkeeping fields on an open order without a state change."""
        order = self._require(order_key)
        if not order.is_open:
            raise InvalidStateError(
                "terminal orders are immutable",
                order_key=order_key,
                state=order.state.value,
                details={"reason": "terminal_order"},
            )
        self._apply(order, changes)
        order.updated_at = time.time()
        return order

    def recommit(self, order_key: str, token: str, amount: int) -> None:
        """Point an open order's commitment at a different token/amount."""
        if order_key not in self._commitments:
            raise InvalidStateError("order has no open commitment", order_key=order_key)
        self._commitments[order_key] = Commitment(token.lower(), amount)

    # ==================== Journal ====================

    # Terminal orders never change again, so a savepoint only needs the open
    # ones plus the insertion count; orders inserted later are truncated.
    # Every open order holds exactly one commitment.

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": len(self._orders),
            "open_orders": {key: replace(self._orders[key]) for key in self._commitments},
            "commitments": dict(self._commitments),
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        while len(self._orders) > snapshot["count"]:
            self._orders.popitem()
        for order_key, order in snapshot["open_orders"].items():
            self._orders[order_key] = replace(order)
        self._commitments = dict(snapshot["commitments"])

    # ==================== Helpers ====================

    def _require(self, order_key: str) -> ArbitrageOrder:
        order = self._orders.get(order_key)
        if order is None:
            raise InvalidStateError(
                f"unknown order {order_key[:12]}",
                order_key=order_key,
                details={"reason": "unknown_order"},
            )
        return order

    @staticmethod
    def _apply(order: ArbitrageOrder, changes: Dict[str, Any]) -> None:
        for name, value in changes.items():
            if not hasattr(order, name) or name in ("order_key", "state"):
                raise AttributeError(f"cannot set {name!r} on an order")
            setattr(order, name, value)
