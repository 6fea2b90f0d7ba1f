"""
Plaid Provider Implementation

Talks to the Plaid JSON API over HTTPS. Credentials and environment are
passed in explicitly; nothing is read from module-level state.

Documentation: https://plaid.com/docs/api/
"""

import httpx
import logging
from typing import Dict, Any, List, Optional
from datetime import date
from decimal import Decimal

from .base import (
    BaseBankProvider,
    ProviderError,
    TransientProviderError,
    ItemLoginRequiredError,
    ItemError,
)

logger = logging.getLogger(__name__)


PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

# Error codes that can only be fixed by the user re-linking through Link
LOGIN_REQUIRED_CODES = {
    'ITEM_LOGIN_REQUIRED',
    'INVALID_ACCESS_TOKEN',
    'INVALID_CREDENTIALS',
    'ITEM_LOCKED',
    'USER_SETUP_REQUIRED',
    'INSUFFICIENT_CREDENTIALS',
    'ACCESS_NOT_GRANTED',
}

# Error codes worth retrying on a later invocation
TRANSIENT_CODES = {
    'RATE_LIMIT_EXCEEDED',
    'TRANSACTIONS_LIMIT',
    'INTERNAL_SERVER_ERROR',
    'PLANNED_MAINTENANCE',
    'PRODUCT_NOT_READY',
    'INSTITUTION_DOWN',
    'INSTITUTION_NOT_RESPONDING',
    'INSTITUTION_NOT_AVAILABLE',
    'TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION',
}

TRANSIENT_TYPES = {'RATE_LIMIT_EXCEEDED', 'API_ERROR', 'INSTITUTION_ERROR'}


def classify_plaid_error(http_status: int, body: Dict[str, Any]) -> ProviderError:
    """
    Turn a Plaid error response into the matching ProviderError subclass.

    Plaid error body:
    {
        "error_type": "ITEM_ERROR",
        "error_code": "ITEM_LOGIN_REQUIRED",
        "error_message": "the login details of this item have changed ...",
        "display_message": null,
        "request_id": "..."
    }
    """
    error_type = body.get('error_type')
    error_code = body.get('error_code')
    message = body.get('error_message') or f"Plaid returned HTTP {http_status}"
    kwargs = {
        'error_type': error_type,
        'error_code': error_code,
        'display_message': body.get('display_message'),
        'http_status': http_status,
    }

    if error_code in LOGIN_REQUIRED_CODES:
        return ItemLoginRequiredError(message, **kwargs)
    if error_code in TRANSIENT_CODES or error_type in TRANSIENT_TYPES or http_status >= 500 or http_status == 429:
        return TransientProviderError(message, **kwargs)
    if error_type == 'ITEM_ERROR':
        return ItemError(message, **kwargs)
    return ProviderError(message, **kwargs)


class PlaidProvider(BaseBankProvider):
    """
    Plaid API integration.

    Every call is a POST with client_id and secret in the JSON body and a
    bounded timeout. Failures are raised as ProviderError subclasses.
    """

    def __init__(
        self,
        client_id: str,
        secret: str,
        environment: str = "sandbox",
        timeout: float = 30.0,
        page_size: int = 500,
        client_name: str = "Finance and Budget Tracker",
        country_codes: Optional[List[str]] = None,
        language: str = "en",
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        if environment not in PLAID_ENV_HOSTS:
            raise ValueError(f"Invalid Plaid environment: {environment}")

        self.client_id = client_id
        self.secret = secret
        self.base_url = PLAID_ENV_HOSTS[environment]
        self.timeout = timeout
        self.page_size = page_size
        self.client_name = client_name
        self.country_codes = country_codes or ["US"]
        self.language = language
        self.webhook_url = webhook_url
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "PlaidProvider":
        return cls(
            client_id=settings.plaid_client_id,
            secret=settings.plaid_secret,
            environment=settings.plaid_env,
            timeout=settings.plaid_timeout_seconds,
            page_size=settings.plaid_page_size,
            client_name=settings.plaid_client_name,
            country_codes=settings.plaid_country_codes,
            language=settings.plaid_language,
            webhook_url=settings.plaid_webhook_url,
        )

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            'client_id': self.client_id,
            'secret': self.secret,
            **payload
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.post(endpoint, json=body)
        except httpx.TimeoutException as e:
            raise TransientProviderError(
                f"Plaid request to {endpoint} timed out after {self.timeout}s",
                error_type='TIMEOUT',
                error_code='REQUEST_TIMEOUT'
            ) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"Plaid request to {endpoint} failed: {e}",
                error_type='NETWORK_ERROR',
                error_code='TRANSPORT_ERROR'
            ) from e

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = {'error_message': response.text}
            error = classify_plaid_error(response.status_code, error_body)
            logger.error(
                f"Plaid {endpoint} failed - Status: {response.status_code}, "
                f"code: {error.error_code}, message: {error.error_message}"
            )
            raise error

        return response.json()

    async def create_link_token(self, client_user_id: str) -> str:
        payload = {
            'user': {'client_user_id': client_user_id},
            'client_name': self.client_name,
            'products': ['transactions'],
            'country_codes': self.country_codes,
            'language': self.language,
        }
        if self.webhook_url:
            payload['webhook'] = self.webhook_url

        data = await self._post('/link/token/create', payload)
        return data['link_token']

    async def exchange_public_token(self, public_token: str) -> Dict[str, Any]:
        data = await self._post('/item/public_token/exchange', {'public_token': public_token})
        return {
            'access_token': data['access_token'],
            'item_id': data['item_id']
        }

    async def fetch_accounts(self, access_token: str) -> List[Dict[str, Any]]:
        data = await self._post('/accounts/get', {'access_token': access_token})
        return [self._normalize_account(account) for account in data.get('accounts', [])]

    async def fetch_initial(
        self,
        access_token: str,
        start_date: date,
        end_date: date
    ) -> Dict[str, Any]:
        """
        First /transactions/sync call for an item.

        /transactions/sync takes no explicit date range; the lookback window
        is expressed as days_requested, which Plaid honors on the first call.
        """
        days_requested = max(1, min((end_date - start_date).days, 730))
        logger.info(f"Initial sync requesting {days_requested} days ({start_date} to {end_date})")

        data = await self._post('/transactions/sync', {
            'access_token': access_token,
            'count': self.page_size,
            'options': {'days_requested': days_requested},
        })
        return self._normalize_page(data)

    async def fetch_incremental(self, access_token: str, cursor: str) -> Dict[str, Any]:
        data = await self._post('/transactions/sync', {
            'access_token': access_token,
            'cursor': cursor,
            'count': self.page_size,
        })
        return self._normalize_page(data)

    async def remove_item(self, access_token: str) -> bool:
        await self._post('/item/remove', {'access_token': access_token})
        return True

    async def get_webhook_verification_key(self, key_id: str) -> Dict[str, Any]:
        data = await self._post('/webhook_verification_key/get', {'key_id': key_id})
        return data['key']

    def _normalize_page(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Convert a /transactions/sync response to the changeset page shape.

        Plaid format:
        {
            "added": [...], "modified": [...],
            "removed": [{"transaction_id": "..."}],
            "accounts": [...],
            "next_cursor": "...",
            "has_more": false
        }
        """
        return {
            'added': [self._normalize_transaction(tx) for tx in data.get('added', [])],
            'modified': [self._normalize_transaction(tx) for tx in data.get('modified', [])],
            'removed': [
                {'external_id': tx.get('transaction_id')}
                for tx in data.get('removed', [])
                if tx.get('transaction_id')
            ],
            'accounts': [self._normalize_account(acc) for acc in data.get('accounts', [])],
            'has_more': bool(data.get('has_more', False)),
            'next_cursor': data.get('next_cursor') or None,
        }

    def _normalize_transaction(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        location = tx.get('location') or {}
        return {
            'external_id': tx.get('transaction_id'),
            'external_account_id': tx.get('account_id'),
            'name': tx.get('name') or tx.get('merchant_name') or 'Unknown transaction',
            'amount': Decimal(str(tx.get('amount', 0))),
            'date': self._parse_date(tx.get('date') or tx.get('authorized_date')),
            'category': tx.get('category') or None,
            'merchant_name': tx.get('merchant_name'),
            'location': {
                'address': location.get('address'),
                'city': location.get('city'),
                'region': location.get('region'),
                'postal_code': location.get('postal_code'),
                'country': location.get('country'),
                'lat': location.get('lat'),
                'lon': location.get('lon'),
            }
        }

    def _normalize_account(self, account: Dict[str, Any]) -> Dict[str, Any]:
        balances = account.get('balances') or {}
        return {
            'external_account_id': account.get('account_id'),
            'name': account.get('name') or account.get('official_name') or 'Account',
            'official_name': account.get('official_name'),
            'type': account.get('type'),
            'subtype': account.get('subtype'),
            'mask': account.get('mask'),
            'balance_current': self._to_decimal(balances.get('current')),
            'balance_available': self._to_decimal(balances.get('available')),
            'balance_limit': self._to_decimal(balances.get('limit')),
            'iso_currency_code': balances.get('iso_currency_code'),
        }

    @staticmethod
    def _to_decimal(value) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(str(value))

    @staticmethod
    def _parse_date(date_str: Optional[str]) -> Optional[date]:
        if not date_str:
            return None

        try:
            return date.fromisoformat(date_str)
        except (ValueError, TypeError):
            return None
