from decimal import Decimal
import pytest

from backend.app.models import Account, AccountType
from backend.app.bank_integration.account_registry import (
    AccountRegistry, AccountOwnershipError, map_account_type
)

from tests.factories import make_account, make_item


@pytest.mark.parametrize("external_type, subtype, expected", [
    ('depository', 'checking', AccountType.CHECKING),
    ('depository', 'savings', AccountType.SAVINGS),
    ('depository', 'money market', AccountType.OTHER),
    ('credit', 'credit card', AccountType.CREDIT),
    ('investment', '401k', AccountType.INVESTMENT),
    ('brokerage', None, AccountType.INVESTMENT),
    ('loan', 'mortgage', AccountType.LOAN),
    ('other', None, AccountType.OTHER),
    (None, None, AccountType.OTHER),
])
def test_map_account_type(external_type, subtype, expected):
    assert map_account_type(external_type, subtype) == expected


def test_upsert_creates_synced_account(db, user, encryption):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)

    account = registry.upsert_from_external(make_account('acc-1', subtype='savings'), plaid_item, user.id)
    db.commit()

    assert account.id is not None
    assert account.user_id == user.id
    assert account.plaid_item_id == plaid_item.id
    assert account.type == AccountType.SAVINGS
    assert account.is_manual is False
    assert account.is_active is True
    assert account.institution_name == plaid_item.institution_name
    assert account.balance_current == Decimal('100.00')
    assert plaid_item.account_ids == [account.id]


def test_upsert_existing_refreshes_balance_only(db, user, encryption):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)
    first = registry.upsert_from_external(make_account('acc-1'), plaid_item, user.id)
    db.commit()

    again = registry.upsert_from_external(
        make_account('acc-1', type='credit', current='55.10', available='40.00', name='Renamed'),
        plaid_item, user.id
    )
    db.commit()

    assert again.id == first.id
    assert db.query(Account).count() == 1
    assert again.type == AccountType.CHECKING
    assert again.name == 'Plaid Checking'
    assert again.balance_current == Decimal('55.10')
    assert again.balance_available == Decimal('40.00')
    assert plaid_item.account_ids == [first.id]


def test_sync_item_accounts_skips_entries_without_id(db, user, encryption):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)

    accounts = registry.sync_item_accounts(plaid_item, [
        make_account('acc-1'),
        make_account('acc-2', subtype='savings'),
        make_account(None),
    ])
    db.commit()

    assert len(accounts) == 2
    assert sorted(plaid_item.account_ids) == sorted(a.id for a in accounts)


def test_deactivate_item_accounts_keeps_rows(db, user, encryption):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)
    registry.sync_item_accounts(plaid_item, [make_account('acc-1'), make_account('acc-2')])
    db.commit()

    deactivated = registry.deactivate_item_accounts(plaid_item)
    db.commit()

    assert len(deactivated) == 2
    assert db.query(Account).count() == 2
    assert all(not account.is_active for account in db.query(Account).all())


def test_find_by_external_id_respects_owner(db, user, other_user, encryption):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)
    registry.upsert_from_external(make_account('acc-1'), plaid_item, user.id)
    db.commit()

    assert registry.find_by_external_id('acc-1', user_id=user.id) is not None
    assert registry.find_by_external_id('acc-1', user_id=other_user.id) is None


def test_lost_insert_race_is_retried_as_update(db, user, encryption, monkeypatch):
    plaid_item = make_item(db, user, encryption)
    registry = AccountRegistry(db)
    # Row written by a concurrent sync pass
    existing = Account(
        user_id=user.id,
        plaid_item_id=plaid_item.id,
        external_account_id='acc-1',
        name='Plaid Checking',
        type=AccountType.CHECKING,
        balance_current=Decimal('10.00'),
        is_manual=False,
        is_active=True
    )
    db.add(existing)
    db.commit()

    real_find = registry.find_by_external_id
    lookups = []

    def find_missing_first(external_account_id, user_id=None):
        lookups.append(external_account_id)
        if len(lookups) == 1:
            return None
        return real_find(external_account_id, user_id=user_id)

    monkeypatch.setattr(registry, 'find_by_external_id', find_missing_first)

    account = registry.upsert_from_external(make_account('acc-1', current='55.00'), plaid_item, user.id)
    db.commit()

    assert len(lookups) == 2
    assert account.id == existing.id
    assert db.query(Account).count() == 1
    assert account.balance_current == Decimal('55.00')
    assert plaid_item.account_ids == [existing.id]


def test_account_of_another_user_is_a_conflict(db, user, other_user, encryption):
    registry = AccountRegistry(db)
    other_item = make_item(db, other_user, encryption, item_id='item-other', access_token='access-other')
    owned = registry.upsert_from_external(make_account('acc-1', current='20.00'), other_item, other_user.id)
    db.commit()

    plaid_item = make_item(db, user, encryption)
    with pytest.raises(AccountOwnershipError):
        registry.upsert_from_external(make_account('acc-1', current='999.00'), plaid_item, user.id)
    db.rollback()

    db.refresh(owned)
    db.refresh(plaid_item)
    assert owned.user_id == other_user.id
    assert owned.balance_current == Decimal('20.00')
    assert plaid_item.account_ids == []
    assert db.query(Account).count() == 1
