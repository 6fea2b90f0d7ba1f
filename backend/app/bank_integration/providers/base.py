"""
Abstract base class for bank aggregation providers

Defines the changeset protocol the ledger reconciler consumes and the
error taxonomy every provider raises.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import date


class ProviderError(Exception):
    """
    Base error for failures reported by an aggregation provider.

    Carries the structured error payload that is stored on the PlaidItem
    when the failure concerns the item's credentials or health.
    """

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        error_code: Optional[str] = None,
        display_message: Optional[str] = None,
        http_status: Optional[int] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_type = error_type
        self.error_code = error_code
        self.display_message = display_message
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.error_type,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'display_message': self.display_message,
            'status': self.http_status
        }


class TransientProviderError(ProviderError):
    """Network timeout, rate limit or upstream outage. Safe to retry later."""
    pass


class ItemLoginRequiredError(ProviderError):
    """The user must re-authenticate the item through Link before syncing again."""
    pass


class ItemError(ProviderError):
    """The external item is in an error state that is not a login problem."""
    pass


class BaseBankProvider(ABC):
    """
    Abstract base class for aggregation providers.

    Normalized shapes returned by the fetch methods:

    Changeset page::

        {
            'added': [transaction, ...],
            'modified': [transaction, ...],
            'removed': [{'external_id': str}, ...],
            'accounts': [account, ...],     # may be empty
            'has_more': bool,
            'next_cursor': str or None
        }

    Transaction::

        {
            'external_id': str,
            'external_account_id': str,
            'name': str,
            'amount': Decimal,              # signed, negative = money in
            'date': date,
            'category': List[str] or None,  # most specific first
            'merchant_name': str or None,
            'location': {address, city, region, postal_code, country, lat, lon}
        }

    Account::

        {
            'external_account_id': str,
            'name': str,
            'official_name': str or None,
            'type': str,
            'subtype': str or None,
            'mask': str or None,
            'balance_current': Decimal or None,
            'balance_available': Decimal or None,
            'balance_limit': Decimal or None,
            'iso_currency_code': str or None
        }
    """

    @abstractmethod
    async def fetch_initial(
        self,
        access_token: str,
        start_date: date,
        end_date: date
    ) -> Dict[str, Any]:
        """
        Fetch the first changeset page for an item that has never been synced.

        Args:
            access_token: Decrypted item credential
            start_date: Start of the lookback window (inclusive)
            end_date: End of the lookback window (inclusive)

        Returns:
            Changeset page dictionary
        """
        pass

    @abstractmethod
    async def fetch_incremental(
        self,
        access_token: str,
        cursor: str
    ) -> Dict[str, Any]:
        """
        Fetch the next changeset page after the given cursor.

        Args:
            access_token: Decrypted item credential
            cursor: Opaque cursor from the previous page

        Returns:
            Changeset page dictionary
        """
        pass

    @abstractmethod
    async def fetch_accounts(
        self,
        access_token: str
    ) -> List[Dict[str, Any]]:
        """Fetch all accounts (with balances) belonging to the item."""
        pass

    @abstractmethod
    async def create_link_token(
        self,
        client_user_id: str
    ) -> str:
        """Create a short-lived token used by the browser to open Link."""
        pass

    @abstractmethod
    async def exchange_public_token(
        self,
        public_token: str
    ) -> Dict[str, Any]:
        """
        Exchange the public token returned by Link for a permanent credential.

        Returns:
            Dictionary with keys access_token and item_id
        """
        pass

    @abstractmethod
    async def remove_item(
        self,
        access_token: str
    ) -> bool:
        """Invalidate the credential at the provider. Returns True on success."""
        pass

    @abstractmethod
    async def get_webhook_verification_key(
        self,
        key_id: str
    ) -> Dict[str, Any]:
        """
        Fetch the public JWK that signed a webhook.

        Returns:
            JWK dictionary (kty, crv, x, y, ...) plus created_at/expired_at
        """
        pass
