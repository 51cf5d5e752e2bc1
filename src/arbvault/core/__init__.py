"""
arbvault Core Module

Core settlement functionality including:
- State journal for call-level reverts
- Settlement exceptions, configuration, logging and metrics
- Token contracts and DeFi settlement components
"""

__all__ = []
