"""
Bank Integration Service

Main orchestration service that handles:
- Link token creation and public token exchange
- Account registration for linked items
- Transaction synchronization across all of a user's items
- Unlinking items without losing ledger history
- Webhook-triggered syncs
"""

import logging
from typing import Dict, Any, List, Optional
from datetime import datetime, UTC
from sqlalchemy.orm import Session

from backend.app.models import (
    User, PlaidItem, PlaidItemStatus, Account, Transaction
)

from .providers.base import BaseBankProvider, ProviderError
from .encryption import TokenEncryption
from .account_registry import AccountRegistry
from .reconciler import LedgerReconciler, DEFAULT_INITIAL_SYNC_DAYS

logger = logging.getLogger(__name__)


class NoLinkedItemsError(ValueError):
    """The user has no active linked items, so there is nothing to sync."""
    pass


class ItemNotFoundError(ValueError):
    """No linked item with that id belongs to the user."""
    pass


class ItemSyncFailure:
    """A linked item whose sync pass failed during sync_all."""

    def __init__(
        self,
        item_id: str,
        institution_name: str,
        error_code: Optional[str],
        message: str
    ):
        self.item_id = item_id
        self.institution_name = institution_name
        self.error_code = error_code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item_id': self.item_id,
            'institution_name': self.institution_name,
            'error_code': self.error_code,
            'message': self.message
        }


class SyncSummary:
    """Aggregate counts across every item synced in one call."""

    def __init__(self):
        self.added = 0
        self.modified = 0
        self.removed = 0
        self.items_synced = 0
        self.failed_items: List[ItemSyncFailure] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'added': self.added,
            'modified': self.modified,
            'removed': self.removed,
            'items_synced': self.items_synced,
            'failed_items': [failure.to_dict() for failure in self.failed_items]
        }


# Webhook codes under the TRANSACTIONS type that mean new data is available
SYNC_WEBHOOK_CODES = {
    'SYNC_UPDATES_AVAILABLE',
    'DEFAULT_UPDATE',
    'INITIAL_UPDATE',
    'HISTORICAL_UPDATE',
}


class BankIntegrationService:
    """
    Main service for bank integration.

    Provides high-level operations for:
    - Linking institutions
    - Syncing transactions for every linked item of a user
    - Unlinking institutions
    - Reacting to provider webhooks
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        encryption: TokenEncryption,
        initial_sync_days: int = DEFAULT_INITIAL_SYNC_DAYS
    ):
        """
        Initialize service with its collaborators.

        Args:
            db: SQLAlchemy database session
            provider: Aggregation provider (Plaid in production)
            encryption: Cipher for stored access tokens
            initial_sync_days: Lookback window for an item's first sync
        """
        self.db = db
        self.provider = provider
        self.encryption = encryption
        self.accounts = AccountRegistry(db)
        self.reconciler = LedgerReconciler(
            db, provider, encryption, initial_sync_days=initial_sync_days
        )

    async def create_link_token(self, user: User) -> str:
        return await self.provider.create_link_token(str(user.id))

    async def link_item(
        self,
        user: User,
        public_token: str,
        institution: Dict[str, Any]
    ) -> PlaidItem:
        """
        Exchange a Link public token and register the item with its accounts.

        Re-linking an item that was unlinked before reactivates the same row,
        so its ledger provenance stays intact.

        Args:
            user: Current user
            public_token: Token returned by Link in the browser
            institution: {'institution_id': str, 'name': str} from Link metadata

        Returns:
            The linked PlaidItem

        Example:
            >>> item = await service.link_item(
            ...     user, "public-sandbox-123",
            ...     {"institution_id": "ins_1", "name": "Chase"}
            ... )
            >>> print(f"Linked {item.institution_name} with {len(item.account_ids)} accounts")
        """
        token_response = await self.provider.exchange_public_token(public_token)
        access_token = token_response['access_token']
        external_item_id = token_response['item_id']

        plaid_item = self.db.query(PlaidItem).filter(
            PlaidItem.item_id == external_item_id
        ).first()

        if plaid_item and plaid_item.user_id != user.id:
            raise ValueError("This institution connection belongs to another user")

        if plaid_item:
            logger.info(f"Re-linking existing item {external_item_id}")
            plaid_item.access_token = self.encryption.encrypt(access_token)
            plaid_item.is_active = True
            plaid_item.status = PlaidItemStatus.GOOD
            plaid_item.error = None
        else:
            plaid_item = PlaidItem(
                user_id=user.id,
                item_id=external_item_id,
                access_token=self.encryption.encrypt(access_token),
                institution_id=institution.get('institution_id') or 'unknown',
                institution_name=institution.get('name') or 'Unknown institution',
                account_ids=[],
                status=PlaidItemStatus.GOOD,
                webhook=getattr(self.provider, 'webhook_url', None),
                is_active=True
            )
            self.db.add(plaid_item)

        plaid_item.last_updated = datetime.now(UTC)
        self.db.flush()

        accounts = await self.refresh_item_accounts(plaid_item, access_token=access_token)
        for account in accounts:
            account.is_active = True

        self.db.commit()
        self.db.refresh(plaid_item)
        logger.info(f"Linked item {external_item_id} ({plaid_item.institution_name}) for user {user.id}")
        return plaid_item

    async def refresh_item_accounts(
        self,
        plaid_item: PlaidItem,
        access_token: Optional[str] = None
    ) -> List[Account]:
        """Fetch the item's accounts from the provider and upsert them locally."""
        if access_token is None:
            access_token = self.encryption.decrypt(plaid_item.access_token)

        external_accounts = await self.provider.fetch_accounts(access_token)
        accounts = self.accounts.sync_item_accounts(plaid_item, external_accounts)
        self.db.commit()
        return accounts

    def get_active_items(self, user: User) -> List[PlaidItem]:
        return self.db.query(PlaidItem).filter(
            PlaidItem.user_id == user.id,
            PlaidItem.is_active == True
        ).order_by(PlaidItem.id).all()

    async def sync_all(self, user: User) -> SyncSummary:
        """
        Sync transactions for every active linked item of a user.

        Items are processed one after another. A failing item is recorded in
        the summary and the remaining items are still synced. Items whose
        status is not GOOD are not sent to the provider at all; they are
        reported as failed with their stored error until the user re-links.

        Args:
            user: User whose items should be synced

        Returns:
            SyncSummary with aggregate counts and per-item failures

        Raises:
            NoLinkedItemsError: The user has no active linked items

        Example:
            >>> summary = await service.sync_all(user)
            >>> print(f"Added {summary.added}, failed {len(summary.failed_items)}")
        """
        items = self.get_active_items(user)
        if not items:
            raise NoLinkedItemsError("No linked bank accounts found")

        summary = SyncSummary()

        for plaid_item in items:
            item_id = plaid_item.item_id
            institution_name = plaid_item.institution_name
            if plaid_item.status != PlaidItemStatus.GOOD:
                summary.failed_items.append(self._needs_relink(plaid_item))
                continue

            try:
                result = await self.reconciler.reconcile_item(plaid_item)
            except ProviderError as e:
                summary.failed_items.append(
                    ItemSyncFailure(item_id, institution_name, e.error_code, str(e))
                )
                continue
            except Exception as e:
                logger.exception(f"Unexpected error while syncing item {item_id}")
                summary.failed_items.append(
                    ItemSyncFailure(item_id, institution_name, None, str(e))
                )
                continue

            summary.added += result.added
            summary.modified += result.modified
            summary.removed += result.removed
            summary.items_synced += 1

        logger.info(
            f"Sync for user {user.id} finished: +{summary.added} ~{summary.modified} "
            f"-{summary.removed}, {summary.items_synced}/{len(items)} items ok"
        )
        return summary

    @staticmethod
    def _needs_relink(plaid_item: PlaidItem) -> ItemSyncFailure:
        stored_error = plaid_item.error or {}
        logger.info(
            f"Skipping item {plaid_item.item_id}: status {plaid_item.status.value}, waiting for re-link"
        )
        return ItemSyncFailure(
            plaid_item.item_id,
            plaid_item.institution_name,
            stored_error.get('error_code') or plaid_item.status.value.upper(),
            stored_error.get('display_message')
            or stored_error.get('error_message')
            or "Re-link this institution to resume syncing"
        )

    async def sync_item_by_external_id(self, item_id: str):
        """Sync a single active item, used when a webhook announces new data."""
        plaid_item = self.db.query(PlaidItem).filter(
            PlaidItem.item_id == item_id,
            PlaidItem.is_active == True
        ).first()

        if not plaid_item:
            raise ItemNotFoundError(f"Linked item {item_id} not found")

        return await self.reconciler.reconcile_item(plaid_item)

    async def unlink_item(self, user: User, item_id: str) -> PlaidItem:
        """
        Unlink an institution.

        Revokes the credential at the provider (best effort), marks the item
        and its accounts inactive, and soft-deletes the accounts'
        transactions. No row is removed.

        Raises:
            ItemNotFoundError: If the item does not belong to the user
        """
        plaid_item = self.db.query(PlaidItem).filter(
            PlaidItem.item_id == item_id,
            PlaidItem.user_id == user.id,
            PlaidItem.is_active == True
        ).first()

        if not plaid_item:
            raise ItemNotFoundError(f"Linked item {item_id} not found")

        if plaid_item.access_token:
            try:
                access_token = self.encryption.decrypt(plaid_item.access_token)
                await self.provider.remove_item(access_token)
            except (ProviderError, ValueError) as e:
                # The item is marked unlinked locally either way
                logger.warning(f"Could not remove item {item_id} at provider: {e}")

        accounts = self.accounts.deactivate_item_accounts(plaid_item)
        account_ids = [account.id for account in accounts]

        deleted_count = 0
        if account_ids:
            deleted_count = self.db.query(Transaction).filter(
                Transaction.user_id == user.id,
                Transaction.account_id.in_(account_ids),
                Transaction.is_deleted == False
            ).update({Transaction.is_deleted: True}, synchronize_session=False)

        plaid_item.is_active = False
        plaid_item.access_token = None
        plaid_item.last_updated = datetime.now(UTC)

        self.db.commit()
        self.db.expire_all()

        logger.info(
            f"Unlinked item {item_id}: {len(account_ids)} accounts deactivated, "
            f"{deleted_count} transactions soft-deleted"
        )
        return plaid_item

    async def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        React to a provider webhook.

        The payload must already have passed WebhookVerifier; this method
        trusts its item_id and error fields.

        Returns:
            {'status': str, ...} describing what was done
        """
        webhook_type = payload.get('webhook_type')
        webhook_code = payload.get('webhook_code')
        item_id = payload.get('item_id')

        logger.info(f"Webhook received: {webhook_type}/{webhook_code} for item {item_id}")

        plaid_item = self.db.query(PlaidItem).filter(
            PlaidItem.item_id == item_id,
            PlaidItem.is_active == True
        ).first() if item_id else None

        if plaid_item is None:
            return {'status': 'ignored', 'reason': 'unknown item'}

        if webhook_type == 'TRANSACTIONS' and webhook_code in SYNC_WEBHOOK_CODES:
            if plaid_item.status != PlaidItemStatus.GOOD:
                return {'status': 'skipped', 'reason': f'item status is {plaid_item.status.value}'}
            try:
                result = await self.sync_item_by_external_id(item_id)
            except ProviderError as e:
                return {'status': 'sync_failed', 'error_code': e.error_code}
            return {'status': 'synced', **result.as_counts()}

        if webhook_type == 'ITEM' and webhook_code == 'ERROR':
            error = payload.get('error') or {}
            plaid_item.error = {
                'error_type': error.get('error_type'),
                'error_code': error.get('error_code'),
                'error_message': error.get('error_message'),
                'display_message': error.get('display_message'),
                'status': error.get('status')
            }
            if error.get('error_code') == 'ITEM_LOGIN_REQUIRED':
                plaid_item.status = PlaidItemStatus.LOGIN_REQUIRED
            else:
                plaid_item.status = PlaidItemStatus.ERROR
            plaid_item.last_updated = datetime.now(UTC)
            self.db.commit()
            return {'status': 'error_recorded', 'error_code': error.get('error_code')}

        if webhook_type == 'ITEM' and webhook_code == 'PENDING_EXPIRATION':
            expiration = payload.get('consent_expiration_time')
            if expiration:
                try:
                    plaid_item.consent_expiration_time = datetime.fromisoformat(expiration.replace('Z', '+00:00'))
                except (AttributeError, ValueError):
                    logger.warning(f"Webhook for item {item_id} has invalid consent_expiration_time {expiration!r}")
                    return {'status': 'ignored', 'reason': 'invalid consent_expiration_time'}
                self.db.commit()
            return {'status': 'expiration_recorded'}

        if webhook_type == 'ITEM' and webhook_code == 'LOGIN_REPAIRED':
            plaid_item.status = PlaidItemStatus.GOOD
            plaid_item.error = None
            plaid_item.last_updated = datetime.now(UTC)
            self.db.commit()
            return {'status': 'login_repaired'}

        return {'status': 'ignored', 'reason': f'unhandled webhook {webhook_type}/{webhook_code}'}
