"""
Settlement-specific exception hierarchy for arbvault.

Provides typed exceptions for order admission, callback handling and
settlement so that each call site can decide explicitly whether a failure
propagates (atomic path) or is recovered into a refund (deferred path).
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class SettlementError(Exception):
    """Base exception for all settlement-related errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the deferred path may downgrade this failure
            into a refund instead of propagating it
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    @property
    def reason(self) -> str:
        """Short machine-readable reason used in failure events."""
        return self.details.get("reason", type(self).__name__)


# ==================== Admission Errors ====================


class ValidationError(SettlementError):
    """Raised when order parameters are malformed or insufficient.

    Rejected at admission; no state is created.
    """
    pass


class DuplicateOrderError(ValidationError):
    """Raised when an order key already exists in the ledger."""
    pass


# ==================== Access Errors ====================


class AuthorizationError(SettlementError):
    """Raised when an unregistered caller reaches a privileged entry point."""

    def __init__(self, message: str, caller: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.caller = caller


class InvalidStateError(SettlementError):
    """Raised when an entry point is invoked on an order in the wrong state."""

    def __init__(
        self,
        message: str,
        order_key: Optional[str] = None,
        state: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.order_key = order_key
        self.state = state


class ReentrancyError(InvalidStateError):
    """Raised when an order's entry point is re-entered while still executing."""
    pass


# ==================== Execution Errors ====================


class SlippageViolation(SettlementError):
    """Raised when a leg's realized output is below its configured floor."""

    def __init__(
        self,
        message: str,
        realized: int = 0,
        minimum: int = 0,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.realized = realized
        self.minimum = minimum


class InsolvencyError(SettlementError):
    """Raised when post-swap balance cannot cover owed debt (atomic path only)."""

    def __init__(self, message: str, balance: int = 0, debt: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.balance = balance
        self.debt = debt


class ExternalCallFailure(SettlementError):
    """Raised when a venue, lender or token call itself fails."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class TransferFailedError(ExternalCallFailure):
    """Raised when a token transfer does not confirm success."""
    pass


class TokenError(ExternalCallFailure):
    """Raised by token contracts (balance, allowance, zero address, pause)."""
    pass


class SolvencyAlert(SettlementError):
    """Raised when actual custody falls below committed principal."""

    def __init__(self, message: str, token: str = "", shortfall: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.token = token
        self.shortfall = shortfall


__all__ = [
    "SettlementError",
    "ValidationError",
    "DuplicateOrderError",
    "AuthorizationError",
    "InvalidStateError",
    "ReentrancyError",
    "SlippageViolation",
    "InsolvencyError",
    "ExternalCallFailure",
    "TransferFailedError",
    "TokenError",
    "SolvencyAlert",
]
