"""
arbvault DeFi Settlement.

This module provides the settlement stack:
- Settlement Engine: deferred (keeper venue) and atomic (flash loan) paths
- Order Ledger: order records, state machine, committed-funds arena
- Venues: constant-product, fixed-rate and keeper-operated exchanges
- Flash Loans: uncollateralized single-call loans
- Profit: profit split and trap-and-downgrade sub-calls
- Opportunity: quote-based pre-check helpers
"""

from .flash_loans import FlashLoanProvider
from .opportunity import (
    ArbitrageOpportunity,
    Direction,
    apply_slippage,
    evaluate_opportunity,
    rank_opportunities,
)
from .order_ledger import (
    ArbitrageOrder,
    CallerClass,
    EntryPoint,
    OrderLedger,
    OrderState,
    SettlementPath,
)
from .profit import CallResult, Distribution, ProfitSplitPolicy, compute_distribution, try_call
from .settlement_engine import ArbitrageSettlementEngine, SettlementEvent
from .venues import (
    AsyncExchange,
    ConstantProductExchange,
    FixedRateExchange,
    KeeperExchange,
    PendingStatus,
    SyncExchange,
)

__all__ = [
    # Engine
    "ArbitrageSettlementEngine",
    "SettlementEvent",
    # Ledger
    "ArbitrageOrder",
    "CallerClass",
    "EntryPoint",
    "OrderLedger",
    "OrderState",
    "SettlementPath",
    # Venues
    "AsyncExchange",
    "SyncExchange",
    "ConstantProductExchange",
    "FixedRateExchange",
    "KeeperExchange",
    "PendingStatus",
    # Flash Loans
    "FlashLoanProvider",
    # Profit
    "CallResult",
    "Distribution",
    "ProfitSplitPolicy",
    "compute_distribution",
    "try_call",
    # Opportunity
    "ArbitrageOpportunity",
    "Direction",
    "apply_slippage",
    "evaluate_opportunity",
    "rank_opportunities",
]
