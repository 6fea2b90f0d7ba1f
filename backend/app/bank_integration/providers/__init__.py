"""
Bank Provider Implementations

Abstract base class and concrete implementations for aggregation APIs.
"""

from .base import BaseBankProvider, ProviderError, TransientProviderError, ItemLoginRequiredError, ItemError
from .plaid import PlaidProvider

__all__ = [
    'BaseBankProvider', 'ProviderError', 'TransientProviderError',
    'ItemLoginRequiredError', 'ItemError', 'PlaidProvider'
]
