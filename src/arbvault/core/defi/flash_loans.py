"""
Flash Loan Provider.

Uncollateralized single-call loans: principal is advanced to a receiver,
the receiver's ``execute_operation`` runs, and principal plus premium must be
back in the pool before ``flash_loan`` returns. Any failure (callback error,
callback returning False, repayment shortfall) reverts the entire call
through the state journal, so no partial effect of the loan survives.

Security features:
- Active-loan guard per borrower (no nested loans)
- Liquidity validation before advancing
- Owner-gated liquidity and premium controls
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, Set

from ..config import BPS_DENOMINATOR, Config
from ..contracts.erc20 import TokenRegistry, safe_transfer, safe_transfer_from
from ..settlement_exceptions import (
    AuthorizationError,
    ExternalCallFailure,
    InsolvencyError,
    ReentrancyError,
    ValidationError,
)
from ..state_journal import StateJournal

logger = logging.getLogger(__name__)

MAX_PREMIUM_BPS = 100  # 1%


class FlashLoanReceiver(Protocol):
    address: str

    def execute_operation(
        self,
        caller: str,
        initiator: str,
        assets: Sequence[str],
        amounts: Sequence[int],
        premiums: Sequence[int],
        params: Any,
    ) -> bool: ...


class FlashLoanProvider:
    """
    Lending facility with atomic advance/repay semantics.

    Repayment is pulled from the receiver with ``transferFrom`` after the
    callback returns, so the receiver must approve principal + premium.
    """

    def __init__(
        self,
        owner: str,
        tokens: TokenRegistry,
        journal: StateJournal,
        premium_bps: Optional[int] = None,
        address: str = "",
    ) -> None:
        self.owner = owner.lower()
        self.tokens = tokens
        self.journal = journal
        self.premium_bps = Config.FLASH_LOAN_PREMIUM_BPS if premium_bps is None else premium_bps
        if not address:
            digest = hashlib.sha3_256(f"flash:{owner}:{time.time()}".encode()).digest()
            address = f"0x{digest[-20:].hex()}"
        self.address = address.lower()
        self.collected_fees: Dict[str, int] = {}
        self.total_loans = 0
        self._active_borrowers: Set[str] = set()
        journal.register(self)

    # ==================== Views ====================

    def available_liquidity(self, asset: str) -> int:
        return self.tokens.require(asset).balance_of(self.address)

    def get_flash_loan_fee_amount(self, asset: str, amount: int) -> int:
        """Premium for ``amount``, rounded up."""
        return -(-amount * self.premium_bps // BPS_DENOMINATOR)

    # ==================== Loans ====================

    def flash_loan(
        self,
        borrower: str,
        receiver: FlashLoanReceiver,
        assets: List[str],
        amounts: List[int],
        params: Any = None,
    ) -> bool:
        """
        Advance ``amounts`` of ``assets`` to ``receiver`` for one callback.

        Raises:
            ValidationError: malformed request or insufficient liquidity
            ReentrancyError: borrower already has an active loan
            ExternalCallFailure: callback failed or returned False
            InsolvencyError: principal + premium not repaid
        """
        borrower_norm = borrower.lower()
        if len(assets) != len(amounts) or not assets:
            raise ValidationError("assets and amounts must be non-empty and aligned")
        if borrower_norm in self._active_borrowers:
            raise ReentrancyError(
                "flash loan already active for borrower",
                details={"reason": "flash_loan_reentrancy"},
            )

        self._active_borrowers.add(borrower_norm)
        try:
            with self.journal.atomic("flash_loan"):
                premiums = self._advance(receiver, assets, amounts)
                ok = receiver.execute_operation(
                    self.address, borrower_norm, list(assets), list(amounts), premiums, params
                )
                if ok is not True:
                    raise ExternalCallFailure(
                        "flash loan callback did not succeed",
                        recoverable=False,
                        details={"reason": "flash_callback_failed"},
                    )
                self._collect(receiver, assets, amounts, premiums)
                self.total_loans += 1
        finally:
            self._active_borrowers.discard(borrower_norm)

        logger.info(
            "Flash loan repaid",
            extra={
                "event": "flash_loan.repaid",
                "borrower": borrower_norm[:10],
                "assets": len(assets),
                "premiums": premiums,
            },
        )
        return True

    # ==================== Admin ====================

    def add_liquidity(self, caller: str, asset: str, amount: int) -> bool:
        """Deposit liquidity from the owner (owner must have approved the provider)."""
        self._require_owner(caller)
        if amount <= 0:
            raise ValidationError("liquidity amount must be positive")
        safe_transfer_from(self.tokens.require(asset), self.address, caller, self.address, amount)
        return True

    def remove_liquidity(self, caller: str, asset: str, amount: int) -> bool:
        self._require_owner(caller)
        safe_transfer(self.tokens.require(asset), self.address, caller, amount)
        return True

    def set_flash_loan_fee(self, caller: str, premium_bps: int) -> bool:
        self._require_owner(caller)
        if not 0 <= premium_bps <= MAX_PREMIUM_BPS:
            raise ValidationError(f"premium must be within [0, {MAX_PREMIUM_BPS}] bps")
        self.premium_bps = premium_bps
        return True

    # ==================== Journal ====================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "collected_fees": dict(self.collected_fees),
            "total_loans": self.total_loans,
            "premium_bps": self.premium_bps,
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.collected_fees = dict(snapshot["collected_fees"])
        self.total_loans = snapshot["total_loans"]
        self.premium_bps = snapshot["premium_bps"]

    # ==================== Helpers ====================

    def _advance(self, receiver: FlashLoanReceiver, assets: List[str], amounts: List[int]) -> List[int]:
        premiums = []
        for asset, amount in zip(assets, amounts):
            if amount <= 0:
                raise ValidationError("flash loan amount must be positive")
            available = self.available_liquidity(asset)
            if available < amount:
                raise ValidationError(
                    f"insufficient liquidity ({amount} > {available})",
                    details={"reason": "insufficient_liquidity"},
                )
            premiums.append(self.get_flash_loan_fee_amount(asset, amount))
            safe_transfer(self.tokens.require(asset), self.address, receiver.address, amount)
        return premiums

    def _collect(
        self, receiver: FlashLoanReceiver, assets: List[str], amounts: List[int], premiums: List[int]
    ) -> None:
        for asset, amount, premium in zip(assets, amounts, premiums):
            token = self.tokens.require(asset)
            debt = amount + premium
            approved = token.allowance(receiver.address, self.address)
            balance = token.balance_of(receiver.address)
            if approved < debt or balance < debt:
                raise InsolvencyError(
                    f"flash loan not repaid ({min(approved, balance)} < {debt})",
                    balance=balance,
                    debt=debt,
                    details={"reason": "flash_loan_not_repaid"},
                )
            safe_transfer_from(token, self.address, receiver.address, self.address, debt)
            self.collected_fees[token.address] = self.collected_fees.get(token.address, 0) + premium

    def _require_owner(self, caller: str) -> None:
        if caller.lower() != self.owner:
            raise AuthorizationError("caller is not owner", caller=caller)
