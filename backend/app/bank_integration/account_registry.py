"""
Account Registry

Keeps local Account rows in step with the accounts an aggregator reports
for a linked item. Accounts are keyed by external account id and are
never duplicated or hard-deleted.
"""

import logging
from datetime import datetime, UTC
from typing import Dict, Any, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import Account, AccountType, PlaidItem

logger = logging.getLogger(__name__)


def map_account_type(external_type: Optional[str], external_subtype: Optional[str] = None) -> AccountType:
    """
    Map Plaid's account type/subtype pair to the local account type.

    depository accounts split on subtype; everything unrecognised is OTHER.
    """
    external_type = (external_type or '').lower()
    external_subtype = (external_subtype or '').lower()

    if external_type == 'depository':
        if external_subtype == 'savings':
            return AccountType.SAVINGS
        if external_subtype == 'checking':
            return AccountType.CHECKING
        return AccountType.OTHER
    if external_type == 'credit':
        return AccountType.CREDIT
    if external_type in ('investment', 'brokerage'):
        return AccountType.INVESTMENT
    if external_type == 'loan':
        return AccountType.LOAN
    return AccountType.OTHER


class AccountOwnershipError(ValueError):
    """The external account id is already registered to a different user."""
    pass


class AccountRegistry:
    """
    Find-or-create of Account rows for synced institutions.

    Uniqueness of external_account_id is enforced by the database; an
    insert that loses a race is retried as an update.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_by_external_id(
        self,
        external_account_id: str,
        user_id: Optional[int] = None
    ) -> Optional[Account]:
        query = self.db.query(Account).filter(
            Account.external_account_id == external_account_id
        )
        if user_id is not None:
            query = query.filter(Account.user_id == user_id)
        return query.first()

    def upsert_from_external(
        self,
        external_account: Dict[str, Any],
        plaid_item: PlaidItem,
        user_id: int
    ) -> Account:
        """
        Create or refresh the local Account for an external account.

        Existing accounts only get their balance snapshot refreshed; owner
        and type stay as they are. New accounts are created as synced,
        active accounts linked to the item.

        The lookup spans all users so that an id already owned by someone
        else is reported instead of being refreshed for this item.

        Args:
            external_account: Normalized account dict from the provider
            plaid_item: Owning linked item
            user_id: Owning user

        Returns:
            The created or updated Account

        Raises:
            AccountOwnershipError: The account belongs to another user
        """
        external_id = external_account['external_account_id']
        account = self.find_by_external_id(external_id)

        if account is None:
            account = self._create(external_account, plaid_item, user_id)
            if account is None:
                # Lost an insert race; the row exists now
                account = self.find_by_external_id(external_id)
                self._check_owner(account, user_id)
                self._refresh_balance(account, external_account)
        else:
            self._check_owner(account, user_id)
            self._refresh_balance(account, external_account)

        self._remember_on_item(plaid_item, account)
        return account

    def sync_item_accounts(
        self,
        plaid_item: PlaidItem,
        external_accounts: List[Dict[str, Any]]
    ) -> List[Account]:
        """Upsert every account reported for an item."""
        accounts = [
            self.upsert_from_external(external_account, plaid_item, plaid_item.user_id)
            for external_account in external_accounts
            if external_account.get('external_account_id')
        ]
        logger.info(f"Registered {len(accounts)} accounts for item {plaid_item.item_id}")
        return accounts

    def deactivate_item_accounts(self, plaid_item: PlaidItem) -> List[Account]:
        """Mark all accounts of an item inactive. Rows are kept."""
        accounts = self.db.query(Account).filter(
            Account.plaid_item_id == plaid_item.id,
            Account.user_id == plaid_item.user_id
        ).all()

        for account in accounts:
            account.is_active = False

        return accounts

    def _create(
        self,
        external_account: Dict[str, Any],
        plaid_item: PlaidItem,
        user_id: int
    ) -> Optional[Account]:
        account = Account(
            user_id=user_id,
            plaid_item_id=plaid_item.id,
            external_account_id=external_account['external_account_id'],
            name=(external_account.get('name') or 'Account')[:100],
            official_name=external_account.get('official_name'),
            type=map_account_type(external_account.get('type'), external_account.get('subtype')),
            subtype=external_account.get('subtype'),
            mask=external_account.get('mask'),
            balance_current=external_account.get('balance_current') or 0,
            balance_available=external_account.get('balance_available') or 0,
            balance_limit=external_account.get('balance_limit'),
            iso_currency_code=external_account.get('iso_currency_code') or 'USD',
            balance_last_updated=datetime.now(UTC),
            institution_id=plaid_item.institution_id,
            institution_name=plaid_item.institution_name,
            is_manual=False,
            is_active=True
        )

        try:
            with self.db.begin_nested():
                self.db.add(account)
        except IntegrityError:
            logger.info(
                f"Account {external_account['external_account_id']} created concurrently, updating instead"
            )
            return None

        logger.info(f"Created account {account.id} ({account.name}) for item {plaid_item.item_id}")
        return account

    @staticmethod
    def _check_owner(account: Account, user_id: int):
        if account.user_id != user_id:
            logger.warning(
                f"Account {account.external_account_id} is owned by user {account.user_id}, not {user_id}"
            )
            raise AccountOwnershipError(
                f"Account {account.external_account_id} is linked to another user"
            )

    @staticmethod
    def _refresh_balance(account: Account, external_account: Dict[str, Any]):
        account.balance_current = external_account.get('balance_current')
        account.balance_available = external_account.get('balance_available')
        account.balance_limit = external_account.get('balance_limit')
        if external_account.get('iso_currency_code'):
            account.iso_currency_code = external_account['iso_currency_code']
        account.balance_last_updated = datetime.now(UTC)

    @staticmethod
    def _remember_on_item(plaid_item: PlaidItem, account: Account):
        current_ids = list(plaid_item.account_ids or [])
        if account.id not in current_ids:
            # Reassign so the JSON column is marked dirty
            plaid_item.account_ids = current_ids + [account.id]
