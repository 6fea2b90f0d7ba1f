"""
Bank Integration Module

Provides Plaid-backed bank account linking and cursor-based transaction sync
into the local ledger, with an extensible provider architecture.
"""

from .service import BankIntegrationService, SyncSummary, NoLinkedItemsError, ItemNotFoundError
from .encryption import TokenEncryption
from .deduplication import TransactionDeduplicator
from .reconciler import LedgerReconciler
from .webhook_verification import WebhookVerifier, WebhookVerificationError

__all__ = [
    'BankIntegrationService', 'SyncSummary', 'NoLinkedItemsError', 'ItemNotFoundError',
    'TokenEncryption', 'TransactionDeduplicator', 'LedgerReconciler',
    'WebhookVerifier', 'WebhookVerificationError'
]
