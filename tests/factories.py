"""Builders for provider payloads and a scripted in-memory provider."""

import hashlib
import json
import time
from datetime import date
from decimal import Decimal
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwk, jwt

from backend.app.bank_integration.providers.base import BaseBankProvider, ProviderError
from backend.app.models import PlaidItem, PlaidItemStatus


def make_tx(
    tx_id,
    account_id="acc-1",
    amount="12.50",
    day=date(2024, 1, 15),
    category=None,
    name="Coffee Shop",
    merchant_name=None,
    location=None
):
    return {
        'external_id': tx_id,
        'external_account_id': account_id,
        'name': name,
        'amount': Decimal(str(amount)),
        'date': day,
        'category': category,
        'merchant_name': merchant_name,
        'location': location or {},
    }


def make_account(
    account_id="acc-1",
    type="depository",
    subtype="checking",
    current="100.00",
    available="90.00",
    name="Plaid Checking"
):
    return {
        'external_account_id': account_id,
        'name': name,
        'official_name': f"{name} Official",
        'type': type,
        'subtype': subtype,
        'mask': '0000',
        'balance_current': Decimal(current) if current is not None else None,
        'balance_available': Decimal(available) if available is not None else None,
        'balance_limit': None,
        'iso_currency_code': 'USD',
    }


def make_page(added=(), modified=(), removed=(), accounts=(), has_more=False, next_cursor="cursor-1"):
    return {
        'added': list(added),
        'modified': list(modified),
        'removed': [{'external_id': tx_id} for tx_id in removed],
        'accounts': list(accounts),
        'has_more': has_more,
        'next_cursor': next_cursor,
    }


def make_item(db, user, encryption, item_id="item-1", access_token="access-1",
              cursor=None, institution_name="First Platypus Bank", is_active=True):
    plaid_item = PlaidItem(
        user_id=user.id,
        item_id=item_id,
        institution_id=f"ins_{item_id}",
        institution_name=institution_name,
        access_token=encryption.encrypt(access_token),
        account_ids=[],
        status=PlaidItemStatus.GOOD,
        transaction_cursor=cursor,
        is_active=is_active
    )
    db.add(plaid_item)
    db.commit()
    db.refresh(plaid_item)
    return plaid_item


class FakeProvider(BaseBankProvider):
    """
    Serves scripted pages per access token.

    A scripted entry that is an exception instance is raised instead of
    returned. An exhausted script yields an empty final page.
    """

    def __init__(self):
        self.pages = {}
        self.accounts = {}
        self.calls = []
        self.removed_tokens = []
        self.remove_error = None
        self.exchange_result = {'access_token': 'access-1', 'item_id': 'item-1'}
        self.link_token = 'link-sandbox-123'
        self.webhook_keys = {}

    def script(self, access_token, *pages):
        self.pages.setdefault(access_token, []).extend(pages)

    def _next_page(self, access_token):
        scripted = self.pages.get(access_token) or []
        if not scripted:
            return make_page(next_cursor=None)
        page = scripted.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def fetch_initial(self, access_token, start_date, end_date):
        self.calls.append(('initial', access_token, start_date, end_date))
        return self._next_page(access_token)

    async def fetch_incremental(self, access_token, cursor):
        self.calls.append(('incremental', access_token, cursor))
        return self._next_page(access_token)

    async def fetch_accounts(self, access_token):
        self.calls.append(('accounts', access_token))
        return list(self.accounts.get(access_token, []))

    async def create_link_token(self, client_user_id):
        self.calls.append(('link_token', client_user_id))
        return self.link_token

    async def exchange_public_token(self, public_token):
        self.calls.append(('exchange', public_token))
        return dict(self.exchange_result)

    async def remove_item(self, access_token):
        self.calls.append(('remove', access_token))
        if self.remove_error:
            raise self.remove_error
        self.removed_tokens.append(access_token)
        return True

    async def get_webhook_verification_key(self, key_id):
        self.calls.append(('webhook_key', key_id))
        if key_id not in self.webhook_keys:
            raise ProviderError("key not found", error_type='INVALID_INPUT', error_code='INVALID_WEBHOOK_VERIFICATION_KEY_ID')
        return dict(self.webhook_keys[key_id])


class WebhookSigner:
    """Signs webhook bodies the way Plaid does, with a throwaway P-256 key."""

    def __init__(self, key_id="key-1"):
        self.key_id = key_id
        private_key = ec.generate_private_key(ec.SECP256R1())
        self.private_pem = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption()
        ).decode()
        public_jwk = jwk.construct(self.private_pem, 'ES256').public_key().to_dict()
        self.public_jwk = {
            **public_jwk,
            'kid': key_id,
            'use': 'sig',
            'created_at': 1560466143,
            'expired_at': None,
        }

    def register(self, provider):
        provider.webhook_keys[self.key_id] = self.public_jwk

    def sign(self, body, issued_at=None, algorithm='ES256', key=None):
        claims = {
            'iat': int(issued_at if issued_at is not None else time.time()),
            'request_body_sha256': hashlib.sha256(body).hexdigest(),
        }
        return jwt.encode(
            claims, key or self.private_pem, algorithm=algorithm, headers={'kid': self.key_id}
        )

    def signed_request(self, payload):
        """Return (body, headers) ready for a TestClient post."""
        body = json.dumps(payload).encode()
        return body, {'Plaid-Verification': self.sign(body), 'Content-Type': 'application/json'}
