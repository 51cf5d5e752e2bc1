"""
ERC20 Token Implementation.

In-memory ERC20 token used as the custody ledger for every asset the
settlement engine touches:
- Basic token operations (transfer, approve, transferFrom)
- Owner-gated minting, holder burning
- Pause switch
- Events (Transfer, Approval)

Security features:
- Zero address checks
- Balance underflow prevention
- Allowance validation

The module also provides ``safe_transfer`` / ``safe_transfer_from``, the only
way settlement code moves value: a token call that does not return ``True``
is treated as a failed transfer.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict

from ..settlement_exceptions import TokenError, TransferFailedError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


def is_null_address(address: str | None) -> bool:
    """True for empty or zero addresses."""
    return not address or address.lower() == ZERO_ADDRESS


@dataclass
class TokenEvent:
    """Represents an ERC20 event."""

    event_type: str  # "Transfer" or "Approval"
    from_address: str
    to_address: str
    value: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class ERC20Token:
    """
    ERC20 token with in-memory balances.

    Security considerations:
    - Zero address checks on all operations
    - Balances can never go negative
    """

    # Token metadata
    name: str
    symbol: str
    decimals: int = 18
    total_supply: int = 0

    # Contract address
    address: str = ""

    # Owner (for minting permissions)
    owner: str = ""

    # State
    balances: dict[str, int] = field(default_factory=dict)
    allowances: dict[str, dict[str, int]] = field(default_factory=dict)

    # Event log
    events: list[TokenEvent] = field(default_factory=list)

    # Pause state
    paused: bool = False

    # Constants
    UINT256_MAX: int = 2**256 - 1

    def __post_init__(self) -> None:
        """Initialize token after dataclass creation."""
        if not self.address:
            # Generate address from name/symbol hash
            addr_input = f"{self.name}{self.symbol}{time.time()}".encode()
            addr_hash = hashlib.sha3_256(addr_input).digest()
            self.address = f"0x{addr_hash[-20:].hex()}"
        self.address = self._normalize(self.address)
        self.owner = self._normalize(self.owner)

    # ==================== View Functions ====================

    def balance_of(self, account: str) -> int:
        """Get the token balance of an account."""
        return self.balances.get(self._normalize(account), 0)

    def allowance(self, owner: str, spender: str) -> int:
        """Get the allowance granted by owner to spender."""
        owner_norm = self._normalize(owner)
        spender_norm = self._normalize(spender)
        return self.allowances.get(owner_norm, {}).get(spender_norm, 0)

    # ==================== State-Changing Functions ====================

    def transfer(self, sender: str, recipient: str, amount: int) -> bool:
        """
        Transfer tokens from sender to recipient.

        Args:
            sender: Address sending tokens (msg.sender)
            recipient: Address receiving tokens
            amount: Amount to transfer

        Returns:
            True if successful

        Raises:
            TokenError: If transfer fails
        """
        self._require_not_paused()
        sender_norm = self._normalize(sender)
        recipient_norm = self._normalize(recipient)

        self._validate_address(recipient_norm, "recipient")
        self._validate_amount(amount)

        sender_balance = self.balances.get(sender_norm, 0)
        if sender_balance < amount:
            raise TokenError(
                f"ERC20: transfer amount exceeds balance "
                f"({amount} > {sender_balance})"
            )

        self.balances[sender_norm] = sender_balance - amount
        self.balances[recipient_norm] = self.balances.get(recipient_norm, 0) + amount

        self._emit_transfer(sender_norm, recipient_norm, amount)

        logger.debug(
            "ERC20 transfer",
            extra={
                "event": "erc20.transfer",
                "token": self.symbol,
                "from": sender_norm[:10],
                "to": recipient_norm[:10],
                "amount": amount,
            }
        )

        return True

    def approve(self, owner: str, spender: str, amount: int) -> bool:
        """
        Approve spender to spend tokens on behalf of owner.

        Raises:
            TokenError: If approval fails
        """
        self._require_not_paused()
        owner_norm = self._normalize(owner)
        spender_norm = self._normalize(spender)

        self._validate_address(spender_norm, "spender")
        self._validate_amount(amount)

        if owner_norm not in self.allowances:
            self.allowances[owner_norm] = {}
        self.allowances[owner_norm][spender_norm] = amount

        self._emit_approval(owner_norm, spender_norm, amount)

        return True

    def transfer_from(
        self, spender: str, from_addr: str, to_addr: str, amount: int
    ) -> bool:
        """
        Transfer tokens using an allowance.

        Args:
            spender: Address executing transfer (msg.sender)
            from_addr: Token owner
            to_addr: Recipient
            amount: Amount to transfer

        Returns:
            True if successful

        Raises:
            TokenError: If transfer fails
        """
        self._require_not_paused()
        spender_norm = self._normalize(spender)
        from_norm = self._normalize(from_addr)
        to_norm = self._normalize(to_addr)

        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        current_allowance = self.allowance(from_norm, spender_norm)
        if current_allowance < amount:
            raise TokenError(
                f"ERC20: insufficient allowance ({current_allowance} < {amount})"
            )

        from_balance = self.balances.get(from_norm, 0)
        if from_balance < amount:
            raise TokenError(
                f"ERC20: transfer amount exceeds balance ({amount} > {from_balance})"
            )

        # Update allowance (unless unlimited)
        if current_allowance != self.UINT256_MAX:
            self.allowances[from_norm][spender_norm] = current_allowance - amount

        self.balances[from_norm] = from_balance - amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount

        self._emit_transfer(from_norm, to_norm, amount)

        return True

    # ==================== Minting & Burning ====================

    def mint(self, minter: str, to: str, amount: int) -> bool:
        """
        Mint new tokens (owner only).

        Raises:
            TokenError: If minting fails
        """
        self._require_not_paused()
        self._require_owner(minter)

        to_norm = self._normalize(to)
        self._validate_address(to_norm, "recipient")
        self._validate_amount(amount)

        self.total_supply += amount
        self.balances[to_norm] = self.balances.get(to_norm, 0) + amount

        # Emit transfer from zero address
        self._emit_transfer(ZERO_ADDRESS, to_norm, amount)

        logger.info(
            "ERC20 mint",
            extra={
                "event": "erc20.mint",
                "token": self.symbol,
                "to": to_norm[:10],
                "amount": amount,
                "new_supply": self.total_supply,
            }
        )

        return True

    def burn(self, holder: str, amount: int) -> bool:
        """Burn tokens from holder's balance."""
        self._require_not_paused()
        holder_norm = self._normalize(holder)
        self._validate_amount(amount)

        balance = self.balances.get(holder_norm, 0)
        if balance < amount:
            raise TokenError(
                f"ERC20: burn amount exceeds balance ({amount} > {balance})"
            )

        self.balances[holder_norm] = balance - amount
        self.total_supply -= amount

        self._emit_transfer(holder_norm, ZERO_ADDRESS, amount)

        return True

    # ==================== Admin Functions ====================

    def pause(self, caller: str) -> bool:
        """Pause token transfers (owner only)."""
        self._require_owner(caller)
        self.paused = True
        return True

    def unpause(self, caller: str) -> bool:
        """Unpause token transfers (owner only)."""
        self._require_owner(caller)
        self.paused = False
        return True

    # ==================== Journal ====================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "balances": dict(self.balances),
            "allowances": {owner: dict(spenders) for owner, spenders in self.allowances.items()},
            "total_supply": self.total_supply,
            "events": len(self.events),
            "paused": self.paused,
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.balances = dict(snapshot["balances"])
        self.allowances = {owner: dict(spenders) for owner, spenders in snapshot["allowances"].items()}
        self.total_supply = snapshot["total_supply"]
        del self.events[snapshot["events"]:]
        self.paused = snapshot["paused"]

    # ==================== Helpers ====================

    def _normalize(self, address: str) -> str:
        """Normalize address to lowercase."""
        return address.lower()

    def _validate_address(self, address: str, field: str) -> None:
        """Validate address is not zero."""
        if is_null_address(address):
            raise TokenError(f"ERC20: {field} is zero address")

    def _validate_amount(self, amount: int) -> None:
        """Validate amount is valid."""
        if amount < 0:
            raise TokenError("ERC20: amount cannot be negative")
        if amount > self.UINT256_MAX:
            raise TokenError("ERC20: amount exceeds uint256")

    def _require_owner(self, caller: str) -> None:
        """Require caller is owner."""
        if self._normalize(caller) != self.owner:
            raise TokenError("ERC20: caller is not owner")

    def _require_not_paused(self) -> None:
        """Require token is not paused."""
        if self.paused:
            raise TokenError("ERC20: token is paused")

    def _emit_transfer(self, from_addr: str, to_addr: str, amount: int) -> None:
        self.events.append(
            TokenEvent(
                event_type="Transfer",
                from_address=from_addr,
                to_address=to_addr,
                value=amount,
            )
        )

    def _emit_approval(self, owner: str, spender: str, amount: int) -> None:
        self.events.append(
            TokenEvent(
                event_type="Approval",
                from_address=owner,
                to_address=spender,
                value=amount,
            )
        )


class TokenRegistry:
    """
    Address-indexed set of tokens shared by the engine and its venues.

    Registering a token also registers it with the state journal so its
    balances take part in call-level reverts.
    """

    def __init__(self, journal: Any = None) -> None:
        self._tokens: Dict[str, ERC20Token] = {}
        self._journal = journal

    def register(self, token: ERC20Token) -> ERC20Token:
        self._tokens[token.address] = token
        if self._journal is not None:
            self._journal.register(token)
        return token

    def get(self, address: str) -> ERC20Token | None:
        if not address:
            return None
        return self._tokens.get(address.lower())

    def require(self, address: str) -> ERC20Token:
        token = self.get(address)
        if token is None:
            raise TokenError(f"unknown token {str(address)[:10]}")
        return token

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None

    def __iter__(self):
        return iter(self._tokens.values())


# ==================== Success-checked transfers ====================


def safe_transfer(token: ERC20Token, sender: str, recipient: str, amount: int) -> None:
    """
    Transfer ``amount`` and require the token to confirm success.

    Raises:
        TransferFailedError: If the token raises or returns anything but True
    """
    try:
        ok = token.transfer(sender, recipient, amount)
    except TokenError as exc:
        raise TransferFailedError(
            f"{token.symbol} transfer failed: {exc.message}",
            details={"reason": "transfer_failed", "token": token.address},
        ) from exc
    if ok is not True:
        logger.error(
            "Token transfer did not confirm success",
            extra={
                "event": "erc20.transfer_unconfirmed",
                "token": token.symbol,
                "to": recipient[:10],
                "amount": amount,
            },
        )
        raise TransferFailedError(
            f"{token.symbol} transfer returned {ok!r}",
            details={"reason": "transfer_unconfirmed", "token": token.address},
        )


def safe_transfer_from(
    token: ERC20Token, spender: str, from_addr: str, to_addr: str, amount: int
) -> None:
    """Allowance-based counterpart of ``safe_transfer``."""
    try:
        ok = token.transfer_from(spender, from_addr, to_addr, amount)
    except TokenError as exc:
        raise TransferFailedError(
            f"{token.symbol} transferFrom failed: {exc.message}",
            details={"reason": "transfer_failed", "token": token.address},
        ) from exc
    if ok is not True:
        raise TransferFailedError(
            f"{token.symbol} transferFrom returned {ok!r}",
            details={"reason": "transfer_unconfirmed", "token": token.address},
        )
