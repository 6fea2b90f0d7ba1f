"""
Ledger Reconciler

Drives the cursor-based changeset protocol for one linked item and merges
each page into the local ledger.

Per item the pass is an explicit state machine:

    INITIAL (no cursor) -> FETCHING -> APPLYING -> FETCHING ... -> DONE
                                  \\-> FAILED

Loop invariant: a page's next cursor is committed before any entry of that
page is applied, and the page's entries are committed together once applied.
The stored cursor never moves backwards. A crash while applying loses the
uncommitted entries of that one page: the next pass resumes after its
cursor and does not fetch the page again. Entries that were committed are
never duplicated, because every entry mutation is idempotent.
"""

import enum
import logging
from datetime import date, datetime, timedelta, UTC
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple
from sqlalchemy.orm import Session

from backend.app.models import (
    PlaidItem, PlaidItemStatus, Transaction, TransactionType,
    ItemSyncLog, SyncStatus
)
from .account_registry import AccountRegistry
from .category_mapper import map_external_category, extract_subcategory, FALLBACK_CATEGORY
from .deduplication import TransactionDeduplicator
from .encryption import TokenEncryption
from .providers.base import (
    BaseBankProvider, ProviderError, ItemLoginRequiredError, ItemError
)

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_SYNC_DAYS = 30


class SyncState(str, enum.Enum):
    INITIAL = "INITIAL"
    FETCHING = "FETCHING"
    APPLYING = "APPLYING"
    DONE = "DONE"
    FAILED = "FAILED"


class ReconcileResult:
    """Outcome of one reconciler pass over a single item."""

    def __init__(self, item_id: str, cursor_before: Optional[str]):
        self.item_id = item_id
        self.added = 0
        self.modified = 0
        self.removed = 0
        self.pages = 0
        self.cursor_before = cursor_before
        self.cursor = cursor_before
        self.state = SyncState.INITIAL if cursor_before is None else SyncState.FETCHING

    def as_counts(self) -> Dict[str, int]:
        return {'added': self.added, 'modified': self.modified, 'removed': self.removed}


def normalize_amount(amount: Any) -> Tuple[Decimal, TransactionType]:
    """
    Split a signed external amount into (unsigned amount, type).

    Negative means money came in (income); zero or positive is an expense.
    The rule is applied regardless of the mapped category.
    """
    amount = Decimal(str(amount))
    if amount < 0:
        return abs(amount), TransactionType.INCOME
    return abs(amount), TransactionType.EXPENSE


class LedgerReconciler:
    """
    Applies added/modified/removed changesets for a linked item.

    The provider, encryption and lookback window are injected; nothing is
    read from global configuration here.
    """

    def __init__(
        self,
        db: Session,
        provider: BaseBankProvider,
        encryption: TokenEncryption,
        initial_sync_days: int = DEFAULT_INITIAL_SYNC_DAYS,
        today: Callable[[], date] = date.today
    ):
        self.db = db
        self.provider = provider
        self.encryption = encryption
        self.initial_sync_days = initial_sync_days
        self.today = today
        self.accounts = AccountRegistry(db)

    async def reconcile_item(self, plaid_item: PlaidItem) -> ReconcileResult:
        """
        Run one sync pass for an item until the provider reports no more pages.

        Args:
            plaid_item: Active linked item to sync

        Returns:
            ReconcileResult with aggregate counts for the pass

        Raises:
            ProviderError: The pass failed. Progress made before the failure
                (stored cursor, applied entries) is kept.
        """
        started_at = datetime.now(UTC)
        result = ReconcileResult(plaid_item.item_id, plaid_item.transaction_cursor)
        page: Optional[Dict[str, Any]] = None

        logger.info(
            f"Starting sync for item {plaid_item.item_id} "
            f"({'initial' if result.state == SyncState.INITIAL else 'incremental'})"
        )

        try:
            access_token = self._access_token(plaid_item)

            while result.state not in (SyncState.DONE, SyncState.FAILED):
                if result.state in (SyncState.INITIAL, SyncState.FETCHING):
                    page = await self._fetch_page(plaid_item, access_token, result.state)
                    result.pages += 1
                    self._advance_cursor(plaid_item, page, result)
                    result.state = SyncState.APPLYING

                elif result.state == SyncState.APPLYING:
                    counts = self._apply_page(plaid_item, page, result.pages)
                    self.db.commit()
                    result.added += counts['added']
                    result.modified += counts['modified']
                    result.removed += counts['removed']

                    if page['has_more']:
                        if not page.get('next_cursor'):
                            raise ProviderError(
                                "Provider reported more pages without a cursor",
                                error_code='MISSING_CURSOR'
                            )
                        result.state = SyncState.FETCHING
                    else:
                        result.state = SyncState.DONE

        except Exception as e:
            result.state = SyncState.FAILED
            self.db.rollback()
            self._record_failure(plaid_item, e)
            self._write_log(plaid_item, result, started_at, error=e)
            logger.error(
                f"Sync failed for item {plaid_item.item_id} after {result.pages} pages: {e}"
            )
            raise

        plaid_item.status = PlaidItemStatus.GOOD
        plaid_item.error = None
        plaid_item.last_updated = datetime.now(UTC)
        self._write_log(plaid_item, result, started_at)
        self.db.commit()

        logger.info(
            f"Sync complete for item {plaid_item.item_id}: "
            f"+{result.added} ~{result.modified} -{result.removed} in {result.pages} pages"
        )
        return result

    def _access_token(self, plaid_item: PlaidItem) -> str:
        if not plaid_item.access_token:
            raise ItemLoginRequiredError(
                f"Item {plaid_item.item_id} has no stored access token",
                error_type='ITEM_ERROR',
                error_code='MISSING_ACCESS_TOKEN'
            )
        return self.encryption.decrypt(plaid_item.access_token)

    async def _fetch_page(
        self,
        plaid_item: PlaidItem,
        access_token: str,
        state: SyncState
    ) -> Dict[str, Any]:
        if state == SyncState.INITIAL:
            end_date = self.today()
            start_date = end_date - timedelta(days=self.initial_sync_days)
            logger.info(f"Item {plaid_item.item_id}: fetching initial window {start_date} to {end_date}")
            return await self.provider.fetch_initial(access_token, start_date, end_date)

        logger.info(f"Item {plaid_item.item_id}: fetching changes after stored cursor")
        return await self.provider.fetch_incremental(access_token, plaid_item.transaction_cursor)

    def _advance_cursor(self, plaid_item: PlaidItem, page: Dict[str, Any], result: ReconcileResult):
        next_cursor = page.get('next_cursor')
        if next_cursor:
            plaid_item.transaction_cursor = next_cursor
            plaid_item.last_updated = datetime.now(UTC)
            self.db.commit()
            result.cursor = next_cursor

    def _apply_page(self, plaid_item: PlaidItem, page: Dict[str, Any], page_number: int) -> Dict[str, int]:
        added = page.get('added') or []
        modified = page.get('modified') or []
        removed = page.get('removed') or []
        counts = {'added': 0, 'modified': 0, 'removed': 0}

        if page.get('accounts'):
            self.accounts.sync_item_accounts(plaid_item, page['accounts'])

        for entry in added:
            if self._apply_added(plaid_item, entry):
                counts['added'] += 1

        for entry in modified:
            if self._apply_modified(plaid_item, entry):
                counts['modified'] += 1

        for entry in removed:
            if self._apply_removed(plaid_item, entry):
                counts['removed'] += 1

        logger.info(
            f"Item {plaid_item.item_id} page {page_number}: received "
            f"{len(added)}/{len(modified)}/{len(removed)} added/modified/removed, "
            f"applied {counts['added']}/{counts['modified']}/{counts['removed']}, "
            f"has_more={page.get('has_more')}"
        )
        return counts

    def _apply_added(self, plaid_item: PlaidItem, entry: Dict[str, Any]) -> bool:
        external_id = entry.get('external_id')
        if not external_id:
            logger.warning(f"Item {plaid_item.item_id}: skipping added entry without id")
            return False

        if TransactionDeduplicator.exists(self.db, external_id):
            return False

        account = self.accounts.find_by_external_id(
            entry.get('external_account_id'), user_id=plaid_item.user_id
        ) if entry.get('external_account_id') else None
        if account is None:
            logger.warning(
                f"Skipping transaction {external_id}: account "
                f"{entry.get('external_account_id')} is not registered"
            )
            return False

        if not entry.get('date'):
            logger.warning(f"Skipping transaction {external_id}: no date available")
            return False

        amount, tx_type = normalize_amount(entry['amount'])
        category_path = entry.get('category')

        transaction = Transaction(
            user_id=plaid_item.user_id,
            account_id=account.id,
            external_transaction_id=external_id,
            name=(entry.get('name') or 'Bank transaction')[:255],
            amount=amount,
            date=entry['date'],
            category=map_external_category(category_path),
            subcategory=extract_subcategory(category_path),
            type=tx_type,
            notes='',
            is_recurring=False,
            is_manual=False,
            is_deleted=False
        )
        self._set_location(transaction, entry)

        return TransactionDeduplicator.insert_if_absent(self.db, transaction)

    def _apply_modified(self, plaid_item: PlaidItem, entry: Dict[str, Any]) -> bool:
        external_id = entry.get('external_id')
        if not external_id:
            return False

        existing = TransactionDeduplicator.find_by_external_id(
            self.db, external_id, user_id=plaid_item.user_id
        )
        if existing is None:
            logger.info(f"Modified transaction {external_id} not in ledger yet, skipping")
            return False

        amount, tx_type = normalize_amount(entry['amount'])
        category_path = entry.get('category')

        # Never replace a resolved category with the fallback
        mapped_category = map_external_category(category_path)
        if mapped_category != FALLBACK_CATEGORY:
            existing.category = mapped_category
        if category_path:
            existing.subcategory = extract_subcategory(category_path)

        existing.name = (entry.get('name') or existing.name)[:255]
        existing.amount = amount
        existing.type = tx_type
        if entry.get('date'):
            existing.date = entry['date']
        self._set_location(existing, entry)
        return True

    def _apply_removed(self, plaid_item: PlaidItem, entry: Dict[str, Any]) -> bool:
        external_id = entry.get('external_id')
        if not external_id:
            return False

        existing = TransactionDeduplicator.find_by_external_id(
            self.db, external_id, user_id=plaid_item.user_id
        )
        if existing is None or existing.is_deleted:
            return False

        existing.is_deleted = True
        return True

    @staticmethod
    def _set_location(transaction: Transaction, entry: Dict[str, Any]):
        location = entry.get('location') or {}
        transaction.merchant = entry.get('merchant_name')
        transaction.address = location.get('address')
        transaction.city = location.get('city')
        transaction.region = location.get('region')
        transaction.postal_code = location.get('postal_code')
        transaction.country = location.get('country')
        transaction.lat = location.get('lat')
        transaction.lon = location.get('lon')

    def _record_failure(self, plaid_item: PlaidItem, error: Exception):
        if isinstance(error, ItemLoginRequiredError):
            plaid_item.status = PlaidItemStatus.LOGIN_REQUIRED
            plaid_item.error = error.to_dict()
        elif isinstance(error, ItemError):
            plaid_item.status = PlaidItemStatus.ERROR
            plaid_item.error = error.to_dict()
        plaid_item.last_updated = datetime.now(UTC)

    def _write_log(
        self,
        plaid_item: PlaidItem,
        result: ReconcileResult,
        started_at: datetime,
        error: Optional[Exception] = None
    ):
        completed_at = datetime.now(UTC)
        sync_log = ItemSyncLog(
            plaid_item_id=plaid_item.id,
            status=SyncStatus.FAILED if error else SyncStatus.SUCCESS,
            transactions_added=result.added,
            transactions_modified=result.modified,
            transactions_removed=result.removed,
            pages_fetched=result.pages,
            cursor_before=result.cursor_before,
            cursor_after=plaid_item.transaction_cursor,
            error_code=getattr(error, 'error_code', None) if error else None,
            error_message=str(error) if error else None,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=int((completed_at - started_at).total_seconds())
        )
        self.db.add(sync_log)
        if error:
            self.db.commit()
