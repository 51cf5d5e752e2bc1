"""
Profit computation and call-result handling.

``compute_distribution`` is the single place where a settled leg-2 output is
split between the order owner and the protocol. Rounding is explicit: the
owner's share of profit is rounded down, the protocol receives the remainder,
so ``owner_amount + protocol_amount == output`` always holds.

``CallResult`` / ``try_call`` model trap-and-downgrade error handling: a
sub-call runs inside a journal savepoint and either returns its value or a
failed result carrying the error, with its partial effects reverted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from ..config import BPS_DENOMINATOR
from ..settlement_exceptions import SettlementError, ValidationError
from ..state_journal import StateJournal

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProfitSplitPolicy:
    """
    Split rule captured on an order at creation time.

    Frozen so that later admin changes never reach an open order.
    """

    user_share_bps: int
    protocol_recipient: str

    def __post_init__(self) -> None:
        if not 0 <= self.user_share_bps <= BPS_DENOMINATOR:
            raise ValidationError(
                f"user share must be within [0, {BPS_DENOMINATOR}] bps, got {self.user_share_bps}"
            )


@dataclass(frozen=True)
class Distribution:
    """How a leg-2 output is paid out."""

    output: int
    principal: int
    profit: int
    owner_amount: int
    protocol_amount: int

    @property
    def has_profit(self) -> bool:
        return self.profit > 0


def compute_profit(output: int, principal: int) -> int:
    """profit = max(output - principal, 0)"""
    return max(output - principal, 0)


def compute_distribution(output: int, principal: int, policy: ProfitSplitPolicy) -> Distribution:
    """
    Split ``output`` between owner and protocol.

    No profit: the full output goes to the owner and no split applies.
    Profit: owner receives principal + floor(profit * user_share_bps / 10000),
    protocol receives the remainder of the profit.
    """
    if output < 0 or principal < 0:
        raise ValidationError("output and principal must be non-negative")
    profit = compute_profit(output, principal)
    if profit == 0:
        return Distribution(output, principal, 0, output, 0)
    user_profit = profit * policy.user_share_bps // BPS_DENOMINATOR
    protocol_amount = profit - user_profit
    return Distribution(output, principal, profit, principal + user_profit, protocol_amount)


@dataclass
class CallResult(Generic[T]):
    """Outcome of a sub-call whose failure the caller chose to recover from."""

    success: bool
    value: Optional[T] = None
    error: Optional[SettlementError] = None

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return self.error.reason

    def unwrap(self) -> T:
        """Return the value or re-raise the captured error."""
        if not self.success:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]


def try_call(
    journal: StateJournal,
    fn: Callable[..., T],
    *args: Any,
    label: str = "sub_call",
    **kwargs: Any,
) -> CallResult[T]:
    """
    Run ``fn`` inside a savepoint, converting recoverable settlement failures
    to a result.

    Only ``SettlementError`` flagged ``recoverable`` is captured. Other
    settlement errors (state machine or authorization violations) are
    reverted and re-raised, as is anything that is not a settlement error.
    """
    try:
        with journal.atomic(label):
            value = fn(*args, **kwargs)
    except SettlementError as exc:
        if not exc.recoverable:
            raise
        logger.warning(
            "Sub-call failed and was reverted",
            extra={
                "event": "settlement.sub_call_failed",
                "label": label,
                "reason": exc.reason,
                "error": exc.message,
            },
        )
        return CallResult(success=False, error=exc)
    return CallResult(success=True, value=value)
