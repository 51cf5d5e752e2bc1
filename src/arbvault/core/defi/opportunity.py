"""
Quote-based opportunity evaluation.

Read-only helpers used by the engine's advisory profitability pre-check and
by callers that want to derive per-leg minimum outputs from venue quotes.
Nothing here moves funds; realized prices at execution time may differ, so
the binding constraint is always the per-leg minimum-output check enforced
during settlement.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List

from ..config import BPS_DENOMINATOR


class Direction(Enum):
    """Which venues carry the two legs."""
    ASYNC_TO_SYNC = "async_to_sync"  # deferred path: keeper venue, then sync venue
    SYNC_TO_SYNC = "sync_to_sync"  # atomic path: two sync venues inside a flash loan


@dataclass(frozen=True)
class ArbitrageOpportunity:
    borrow_token: str
    target_token: str
    principal: int
    leg1_quote: int
    leg2_quote: int
    min_output_leg1: int
    min_output_leg2: int
    profit_bps: int
    direction: Direction

    @property
    def projected_profit(self) -> int:
        return self.leg2_quote - self.principal


def apply_slippage(amount: int, slippage_bps: int) -> int:
    """Lowest acceptable output for ``amount`` at ``slippage_bps`` (rounded down)."""
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def projected_profit_bps(principal: int, final_output: int) -> int:
    """Projected profit in basis points of principal (negative for a loss)."""
    if principal <= 0:
        return 0
    delta = final_output - principal
    # Round toward zero in both directions
    magnitude = abs(delta) * BPS_DENOMINATOR // principal
    return magnitude if delta >= 0 else -magnitude


def evaluate_opportunity(
    leg1_venue,
    leg2_venue,
    borrow_token: str,
    target_token: str,
    principal: int,
    slippage_bps: int,
    direction: Direction = Direction.ASYNC_TO_SYNC,
    premium: int = 0,
) -> ArbitrageOpportunity:
    """
    Quote both legs read-only and derive slippage floors.

    ``premium`` (flash loan cost) is subtracted from the projected output.
    Venue quote errors propagate to the caller.
    """
    leg1_quote = leg1_venue.quote(borrow_token, target_token, principal)
    leg2_quote = leg2_venue.quote(target_token, borrow_token, leg1_quote) if leg1_quote > 0 else 0
    return ArbitrageOpportunity(
        borrow_token=borrow_token,
        target_token=target_token,
        principal=principal,
        leg1_quote=leg1_quote,
        leg2_quote=leg2_quote,
        min_output_leg1=apply_slippage(leg1_quote, slippage_bps),
        min_output_leg2=apply_slippage(leg2_quote, slippage_bps),
        profit_bps=projected_profit_bps(principal + premium, leg2_quote),
        direction=direction,
    )


def rank_opportunities(
    opportunities: Iterable[ArbitrageOpportunity], min_profit_bps: int = 0
) -> List[ArbitrageOpportunity]:
    """Keep opportunities above ``min_profit_bps``, most profitable first."""
    kept = [opp for opp in opportunities if opp.profit_bps > min_profit_bps]
    return sorted(kept, key=lambda opp: opp.profit_bps, reverse=True)
