"""Token contracts used as the custody ledger."""

from .erc20 import (
    ZERO_ADDRESS,
    ERC20Token,
    TokenEvent,
    TokenRegistry,
    is_null_address,
    safe_transfer,
    safe_transfer_from,
)

__all__ = [
    "ERC20Token",
    "TokenEvent",
    "TokenRegistry",
    "ZERO_ADDRESS",
    "is_null_address",
    "safe_transfer",
    "safe_transfer_from",
]
