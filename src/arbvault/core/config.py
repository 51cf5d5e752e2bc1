"""
arbvault Configuration

Supports testnet and mainnet with separate settlement defaults.

All values come from environment variables (prefix ``ARBVAULT_``) so that
deployments never need code changes. Mainnet refuses to start with an unset
protocol treasury.
"""

from __future__ import annotations

import logging
import os
from enum import Enum

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000


class NetworkType(Enum):
    TESTNET = "testnet"
    MAINNET = "mainnet"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_int(env_var: str, default: int, minimum: int = 0, maximum: int | None = None) -> int:
    """Read a bounded integer from the environment."""
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from exc
    if value < minimum or (maximum is not None and value > maximum):
        raise ConfigurationError(
            f"{env_var}={value} out of range [{minimum}, {maximum if maximum is not None else 'inf'}]"
        )
    return value


# Get network type from environment variable
NETWORK = os.getenv("ARBVAULT_NETWORK", "testnet")  # Default to testnet for safety

# Hard ceiling for the admin-settable slippage tolerance (10%)
MAX_SLIPPAGE_BPS = _get_int("ARBVAULT_MAX_SLIPPAGE_BPS", 1000, 0, BPS_DENOMINATOR)
DEFAULT_SLIPPAGE_BPS = _get_int("ARBVAULT_SLIPPAGE_BPS", 50, 0, MAX_SLIPPAGE_BPS)
FLASH_LOAN_PREMIUM_BPS = _get_int("ARBVAULT_FLASH_LOAN_PREMIUM_BPS", 9, 0, BPS_DENOMINATOR)
USER_PROFIT_SHARE_BPS = _get_int("ARBVAULT_USER_PROFIT_SHARE_BPS", 8000, 0, BPS_DENOMINATOR)
MIN_PROFIT_BPS = _get_int("ARBVAULT_MIN_PROFIT_BPS", 50, 0, BPS_DENOMINATOR)
MIN_EXECUTION_FEE = _get_int("ARBVAULT_MIN_EXECUTION_FEE", 10**16)  # 0.01 ETH
CALLBACK_GAS_LIMIT = _get_int("ARBVAULT_CALLBACK_GAS_LIMIT", 500_000)
PROTOCOL_TREASURY = os.getenv("ARBVAULT_PROTOCOL_TREASURY", "").strip().lower()
LOG_LEVEL = os.getenv("ARBVAULT_LOG_LEVEL", "INFO").strip() or "INFO"
LOG_FILE = os.getenv("ARBVAULT_LOG_FILE", "").strip()


class TestnetConfig:
    """Testnet Configuration (for local testing before mainnet)"""

    NETWORK_TYPE = NetworkType.TESTNET

    DEFAULT_SLIPPAGE_BPS = DEFAULT_SLIPPAGE_BPS
    MAX_SLIPPAGE_BPS = MAX_SLIPPAGE_BPS
    FLASH_LOAN_PREMIUM_BPS = FLASH_LOAN_PREMIUM_BPS
    USER_PROFIT_SHARE_BPS = USER_PROFIT_SHARE_BPS
    # Pre-check disabled by default on testnet; quotes are still logged
    MIN_PROFIT_BPS = _get_int("ARBVAULT_TESTNET_MIN_PROFIT_BPS", 0, 0, BPS_DENOMINATOR)
    MIN_EXECUTION_FEE = MIN_EXECUTION_FEE
    CALLBACK_GAS_LIMIT = CALLBACK_GAS_LIMIT
    PROTOCOL_TREASURY = PROTOCOL_TREASURY or "0x" + "7e57" * 10
    LOG_LEVEL = LOG_LEVEL
    LOG_FILE = LOG_FILE


class MainnetConfig:
    """Mainnet Configuration (production settlement)"""

    NETWORK_TYPE = NetworkType.MAINNET

    DEFAULT_SLIPPAGE_BPS = DEFAULT_SLIPPAGE_BPS
    MAX_SLIPPAGE_BPS = MAX_SLIPPAGE_BPS
    FLASH_LOAN_PREMIUM_BPS = FLASH_LOAN_PREMIUM_BPS
    USER_PROFIT_SHARE_BPS = USER_PROFIT_SHARE_BPS
    MIN_PROFIT_BPS = MIN_PROFIT_BPS
    MIN_EXECUTION_FEE = MIN_EXECUTION_FEE
    CALLBACK_GAS_LIMIT = CALLBACK_GAS_LIMIT
    PROTOCOL_TREASURY = PROTOCOL_TREASURY
    LOG_LEVEL = LOG_LEVEL
    LOG_FILE = LOG_FILE


# Select config based on network
if NETWORK.lower() == "mainnet":
    if not PROTOCOL_TREASURY or PROTOCOL_TREASURY == "0x" + "0" * 40:
        raise ConfigurationError(
            "CRITICAL: ARBVAULT_PROTOCOL_TREASURY must be set to a non-zero address for mainnet."
        )
    Config = MainnetConfig
else:
    if not PROTOCOL_TREASURY:
        logger.warning(
            "ARBVAULT_PROTOCOL_TREASURY not set, using placeholder treasury for testnet",
            extra={"event": "config.treasury_placeholder"},
        )
    Config = TestnetConfig

__all__ = [
    "BPS_DENOMINATOR",
    "Config",
    "ConfigurationError",
    "MainnetConfig",
    "NetworkType",
    "TestnetConfig",
]
