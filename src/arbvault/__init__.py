"""
arbvault - Cross-Venue Arbitrage Settlement Engine

Custodies capital for two-leg arbitrage across an asynchronous keeper venue
and a synchronous swap venue, settling each order to a profit split or a
refund.

Main Components:
- Settlement Engine: order admission, venue callbacks and flash-loan path
- Order Ledger: keyed order records, state machine and committed funds
- Venues: synchronous AMM / oracle venues and a keeper-operated venue
- Contracts: in-memory ERC20 tokens used as the custody ledger
"""

__version__ = "0.1.0"
__author__ = "arbvault Development Team"

__all__ = []
