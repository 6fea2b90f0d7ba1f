from decimal import Decimal
import pytest
from fastapi.testclient import TestClient

from backend.main import app
from backend.database import get_db
from backend.app.models import Transaction
from backend.app.routes.plaid import get_bank_provider
from backend.app.bank_integration.providers.base import ItemLoginRequiredError

from tests.factories import make_tx, make_account, make_page, WebhookSigner


@pytest.fixture
def client(session_factory, provider):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_bank_provider] = lambda: provider
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def register_and_login(client, email="carol@example.com", password="s3cret-pass"):
    response = client.post("/api/auth/register", json={
        "email": email, "password": password, "full_name": "Carol"
    })
    assert response.status_code == 200
    response = client.post("/api/auth/login", data={"username": email, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    return register_and_login(client)


def link_via_api(client, headers, provider, item_id="item-1", access_token="access-1", accounts=None):
    provider.exchange_result = {'access_token': access_token, 'item_id': item_id}
    provider.accounts[access_token] = accounts or [make_account('acc-1')]
    response = client.post("/api/plaid/exchange-token", headers=headers, json={
        "public_token": f"public-{item_id}",
        "institution": {"institution_id": "ins_3", "name": "Chase"}
    })
    assert response.status_code == 201
    return response.json()


def test_health(client):
    assert client.get("/api/health").json() == {"status": "healthy"}


def test_requires_authentication(client):
    assert client.get("/api/transactions/").status_code == 401
    assert client.post("/api/plaid/sync-transactions").status_code == 401


def test_login_with_wrong_password(client, auth_headers):
    response = client.post("/api/auth/login", data={"username": "carol@example.com", "password": "nope"})
    assert response.status_code == 401


def test_me_returns_current_user(client, auth_headers):
    response = client.get("/api/auth/me", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["email"] == "carol@example.com"


def test_garbage_token_is_rejected(client):
    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_duplicate_registration_is_rejected(client, auth_headers):
    response = client.post("/api/auth/register", json={
        "email": "Carol@Example.com", "password": "another-pass", "full_name": "Carol"
    })
    assert response.status_code == 400


def test_sync_without_linked_items(client, auth_headers):
    response = client.post("/api/plaid/sync-transactions", headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "No linked bank accounts found"


def test_create_link_token(client, auth_headers):
    response = client.post("/api/plaid/create-link-token", headers=auth_headers)

    assert response.json() == {"success": True, "link_token": "link-sandbox-123"}


def test_link_and_sync(client, auth_headers, provider):
    linked = link_via_api(client, auth_headers, provider)
    assert linked == {"success": True, "data": {"item_id": "item-1", "institution_name": "Chase"}}
    provider.script('access-1', make_page(added=[
        make_tx('tx-1', amount='12.50', category=['Food and Drink', 'Restaurants']),
        make_tx('tx-2', amount='-800.00', category=['Transfer', 'Payroll']),
    ]))

    response = client.post("/api/plaid/sync-transactions", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "data": {"added": 2, "modified": 0, "removed": 0, "failed_items": []}
    }

    listing = client.get("/api/transactions/", headers=auth_headers).json()
    assert listing["total"] == 2
    by_id = {tx["external_transaction_id"]: tx for tx in listing["transactions"]}
    assert by_id["tx-1"]["type"] == "expense"
    assert by_id["tx-1"]["category"] == "Food"
    assert Decimal(by_id["tx-2"]["amount"]) == Decimal("800.00")
    assert by_id["tx-2"]["type"] == "income"
    assert by_id["tx-1"]["is_manual"] is False

    items = client.get("/api/plaid/items", headers=auth_headers).json()
    assert items["count"] == 1
    assert items["data"][0]["status"] == "good"
    assert len(items["data"][0]["accounts"]) == 1


def test_sync_reports_failed_items(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)
    provider.script('access-1', ItemLoginRequiredError(
        "login required", error_type='ITEM_ERROR', error_code='ITEM_LOGIN_REQUIRED'
    ))

    response = client.post("/api/plaid/sync-transactions", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["added"] == 0
    assert data["failed_items"][0]["item_id"] == "item-1"
    assert data["failed_items"][0]["error_code"] == "ITEM_LOGIN_REQUIRED"

    items = client.get("/api/plaid/items", headers=auth_headers).json()
    assert items["data"][0]["status"] == "login_required"


def test_synced_transactions_allow_only_annotation_edits(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)
    provider.script('access-1', make_page(added=[make_tx('tx-1')]))
    client.post("/api/plaid/sync-transactions", headers=auth_headers)
    tx_id = client.get("/api/transactions/", headers=auth_headers).json()["transactions"][0]["id"]

    rename = client.put(f"/api/transactions/{tx_id}", headers=auth_headers, json={"name": "Renamed"})
    assert rename.status_code == 400

    recategorize = client.put(f"/api/transactions/{tx_id}", headers=auth_headers, json={
        "category": "Entertainment", "subcategory": "Movies", "notes": "with friends", "is_recurring": True
    })
    assert recategorize.status_code == 200
    assert recategorize.json()["category"] == "Entertainment"
    assert recategorize.json()["notes"] == "with friends"

    delete = client.delete(f"/api/transactions/{tx_id}", headers=auth_headers)
    assert delete.status_code == 400


def test_unlink_hides_transactions(client, auth_headers, provider, session_factory):
    link_via_api(client, auth_headers, provider)
    provider.script('access-1', make_page(added=[make_tx('tx-1'), make_tx('tx-2')]))
    client.post("/api/plaid/sync-transactions", headers=auth_headers)

    response = client.delete("/api/plaid/items/item-1", headers=auth_headers)

    assert response.json() == {"success": True, "data": {}}
    assert client.get("/api/transactions/", headers=auth_headers).json()["total"] == 0
    with_deleted = client.get("/api/transactions/?include_deleted=true", headers=auth_headers).json()
    assert with_deleted["total"] == 2
    assert client.get("/api/plaid/items", headers=auth_headers).json()["count"] == 0

    with session_factory() as db:
        assert db.query(Transaction).count() == 2


def test_unlink_unknown_item(client, auth_headers):
    response = client.delete("/api/plaid/items/missing", headers=auth_headers)
    assert response.status_code == 404


def test_manual_transaction_lifecycle(client, auth_headers):
    account = client.post("/api/accounts/", headers=auth_headers, json={
        "name": "Wallet", "type": "other", "balance_current": "40.00"
    })
    assert account.status_code == 201
    assert account.json()["is_manual"] is True

    created = client.post("/api/transactions/", headers=auth_headers, json={
        "name": "Farmers market",
        "amount": "23.10",
        "date": "2024-01-20",
        "category": "Food",
        "type": "expense",
        "account_id": account.json()["id"],
        "location": {"city": "Portland"}
    })
    assert created.status_code == 201
    tx = created.json()
    assert tx["is_manual"] is True
    assert tx["location"]["city"] == "Portland"

    updated = client.put(f"/api/transactions/{tx['id']}", headers=auth_headers, json={"amount": "25.00"})
    assert Decimal(updated.json()["amount"]) == Decimal("25.00")

    assert client.delete(f"/api/transactions/{tx['id']}", headers=auth_headers).status_code == 200
    assert client.get(f"/api/transactions/{tx['id']}", headers=auth_headers).status_code == 404


def test_negative_amount_is_rejected(client, auth_headers):
    response = client.post("/api/transactions/", headers=auth_headers, json={
        "name": "Bad", "amount": "-1.00", "date": "2024-01-20", "type": "expense"
    })
    assert response.status_code == 422


def test_transactions_are_isolated_between_users(client, auth_headers):
    created = client.post("/api/transactions/", headers=auth_headers, json={
        "name": "Private", "amount": "5.00", "date": "2024-01-20", "type": "expense"
    }).json()
    other_headers = register_and_login(client, email="dave@example.com")

    assert client.get(f"/api/transactions/{created['id']}", headers=other_headers).status_code == 404
    assert client.get("/api/transactions/", headers=other_headers).json()["total"] == 0


def test_transaction_filters(client, auth_headers):
    for name, amount, day, category, tx_type in [
        ("Rent", "1200.00", "2024-01-01", "Housing", "expense"),
        ("Salary", "3000.00", "2024-01-15", "Income", "income"),
        ("Coffee", "4.50", "2024-02-02", "Food", "expense"),
    ]:
        client.post("/api/transactions/", headers=auth_headers, json={
            "name": name, "amount": amount, "date": day, "category": category, "type": tx_type
        })

    def names(query):
        body = client.get(f"/api/transactions/?{query}", headers=auth_headers).json()
        return sorted(tx["name"] for tx in body["transactions"])

    assert names("type=expense") == ["Coffee", "Rent"]
    assert names("category=Housing") == ["Rent"]
    assert names("start_date=2024-01-10&end_date=2024-01-31") == ["Salary"]
    assert names("min_amount=100&max_amount=2000") == ["Rent"]
    assert names("search=cof") == ["Coffee"]


def test_budget_reports_spending(client, auth_headers):
    client.post("/api/transactions/", headers=auth_headers, json={
        "name": "Groceries", "amount": "60.00", "date": "2024-01-10", "category": "Food", "type": "expense"
    })
    created = client.post("/api/budgets/", headers=auth_headers, json={
        "name": "Food", "amount": "200.00", "category": "Food", "period": "monthly",
        "start_date": "2024-01-01", "end_date": "2024-01-31"
    })
    assert created.status_code == 201
    budget = created.json()
    assert Decimal(budget["current_spending"]) == Decimal("60.00")
    assert budget["percent_used"] == pytest.approx(30.0)

    detail = client.get(f"/api/budgets/{budget['id']}", headers=auth_headers).json()
    assert [tx["name"] for tx in detail["transactions"]] == ["Groceries"]

    listing = client.get("/api/budgets/", headers=auth_headers).json()
    assert len(listing) == 1

    updated = client.put(f"/api/budgets/{budget['id']}", headers=auth_headers, json={"amount": "100.00"})
    assert updated.json()["percent_used"] == pytest.approx(60.0)

    assert client.delete(f"/api/budgets/{budget['id']}", headers=auth_headers).status_code == 200
    assert client.get(f"/api/budgets/{budget['id']}", headers=auth_headers).status_code == 404


def test_webhook_triggers_sync(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)
    provider.script('access-1', make_page(added=[make_tx('tx-1')]))
    signer = WebhookSigner()
    signer.register(provider)
    body, headers = signer.signed_request({
        "webhook_type": "TRANSACTIONS",
        "webhook_code": "SYNC_UPDATES_AVAILABLE",
        "item_id": "item-1"
    })

    response = client.post("/api/plaid/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "synced"
    assert client.get("/api/transactions/", headers=auth_headers).json()["total"] == 1


def test_unsigned_webhook_cannot_change_item_state(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)

    response = client.post("/api/plaid/webhook", json={
        "webhook_type": "ITEM",
        "webhook_code": "ERROR",
        "item_id": "item-1",
        "error": {"error_type": "ITEM_ERROR", "error_code": "ITEM_LOGIN_REQUIRED"}
    })

    assert response.status_code == 401
    items = client.get("/api/plaid/items", headers=auth_headers).json()
    assert items["data"][0]["status"] == "good"


def test_webhook_with_tampered_body_is_rejected(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)
    signer = WebhookSigner()
    signer.register(provider)
    body, headers = signer.signed_request({
        "webhook_type": "TRANSACTIONS",
        "webhook_code": "SYNC_UPDATES_AVAILABLE",
        "item_id": "item-1"
    })
    tampered = body.replace(b'SYNC_UPDATES_AVAILABLE', b'DEFAULT_UPDATE')

    response = client.post("/api/plaid/webhook", content=tampered, headers=headers)

    assert response.status_code == 401
    assert not any(call[0] in ('initial', 'incremental') for call in provider.calls)


def test_signed_webhook_with_bad_expiration_is_acknowledged(client, auth_headers, provider):
    link_via_api(client, auth_headers, provider)
    signer = WebhookSigner()
    signer.register(provider)
    body, headers = signer.signed_request({
        "webhook_type": "ITEM",
        "webhook_code": "PENDING_EXPIRATION",
        "item_id": "item-1",
        "consent_expiration_time": "next tuesday"
    })

    response = client.post("/api/plaid/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ignored"
