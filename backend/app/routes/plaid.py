"""
Plaid Routes

User-facing endpoints for:
- Opening Plaid Link and exchanging its public token
- Listing linked items and their accounts
- Syncing transactions for all linked items
- Unlinking items
- Receiving Plaid webhooks
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from backend.config import get_settings
from backend.database import get_db
from backend.app import models, schemas
from backend.app.auth import get_current_active_user
from backend.app.bank_integration.service import (
    BankIntegrationService, NoLinkedItemsError, ItemNotFoundError
)
from backend.app.bank_integration.encryption import TokenEncryption
from backend.app.bank_integration.webhook_verification import WebhookVerifier, WebhookVerificationError
from backend.app.bank_integration.providers.base import BaseBankProvider, ProviderError
from backend.app.bank_integration.providers.plaid import PlaidProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plaid", tags=["plaid"])


def get_bank_provider() -> BaseBankProvider:
    return PlaidProvider.from_settings(get_settings())


def get_bank_service(
    db: Session = Depends(get_db),
    provider: BaseBankProvider = Depends(get_bank_provider)
) -> BankIntegrationService:
    settings = get_settings()
    return BankIntegrationService(
        db,
        provider,
        TokenEncryption.from_settings(settings),
        initial_sync_days=settings.initial_sync_days
    )


def get_webhook_verifier(
    provider: BaseBankProvider = Depends(get_bank_provider)
) -> WebhookVerifier:
    return WebhookVerifier(provider)


def _provider_http_error(e: ProviderError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail={
            'message': e.display_message or str(e),
            'error_code': e.error_code
        }
    )


@router.post("/create-link-token")
async def create_link_token(
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Create a link token for opening Plaid Link in the browser.

    Response:
        {"success": true, "link_token": "link-sandbox-..."}
    """
    try:
        link_token = await service.create_link_token(current_user)
    except ProviderError as e:
        logger.error(f"Failed to create link token for user {current_user.id}: {e}")
        raise _provider_http_error(e)

    return {'success': True, 'link_token': link_token}


@router.post("/exchange-token", status_code=status.HTTP_201_CREATED)
async def exchange_token(
    request: schemas.ExchangeTokenRequest,
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Exchange the public token from Link and register the item's accounts.

    Example:
        POST /plaid/exchange-token
        {
            "public_token": "public-sandbox-...",
            "institution": {"institution_id": "ins_3", "name": "Chase"}
        }

        Response:
        {
            "success": true,
            "data": {"item_id": "...", "institution_name": "Chase"}
        }
    """
    try:
        plaid_item = await service.link_item(
            current_user,
            request.public_token,
            request.institution.model_dump()
        )
    except ProviderError as e:
        logger.error(f"Failed to exchange public token for user {current_user.id}: {e}")
        raise _provider_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {
        'success': True,
        'data': {
            'item_id': plaid_item.item_id,
            'institution_name': plaid_item.institution_name
        }
    }


@router.get("/items")
def list_items(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """List the user's active linked items with their accounts."""
    items = db.query(models.PlaidItem).filter(
        models.PlaidItem.user_id == current_user.id,
        models.PlaidItem.is_active == True
    ).order_by(models.PlaidItem.id).all()

    data = [schemas.PlaidItemWithAccounts.model_validate(item) for item in items]
    return {'success': True, 'count': len(data), 'data': data}


@router.get("/accounts")
def list_synced_accounts(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    accounts = db.query(models.Account).filter(
        models.Account.user_id == current_user.id,
        models.Account.is_manual == False
    ).order_by(models.Account.institution_name, models.Account.type).all()

    data = [schemas.Account.model_validate(account) for account in accounts]
    return {'success': True, 'count': len(data), 'data': data}


@router.post("/sync-transactions", response_model=schemas.SyncResponse)
async def sync_transactions(
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Sync transactions for every linked item of the current user.

    A failing item does not abort the others; it is reported in failed_items.
    """
    try:
        summary = await service.sync_all(current_user)
    except NoLinkedItemsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {
        'success': True,
        'data': {
            'added': summary.added,
            'modified': summary.modified,
            'removed': summary.removed,
            'failed_items': [failure.to_dict() for failure in summary.failed_items]
        }
    }


@router.delete("/items/{item_id}")
async def unlink_item(
    item_id: str,
    current_user: models.User = Depends(get_current_active_user),
    service: BankIntegrationService = Depends(get_bank_service)
):
    """
    Unlink an institution.

    Accounts become inactive and their transactions are soft-deleted.
    """
    try:
        await service.unlink_item(current_user, item_id)
    except ItemNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plaid item not found")

    return {'success': True, 'data': {}}


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    plaid_verification: Optional[str] = Header(None),
    service: BankIntegrationService = Depends(get_bank_service),
    verifier: WebhookVerifier = Depends(get_webhook_verifier)
):
    """
    Plaid webhook receiver.

    The raw body is checked against the Plaid-Verification JWT before it is
    parsed. Verified webhooks are always acknowledged so Plaid does not retry.
    """
    body = await request.body()

    if get_settings().plaid_verify_webhooks:
        try:
            await verifier.verify(body, plaid_verification)
        except WebhookVerificationError as e:
            logger.warning(f"Rejected webhook: {e}")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook verification failed")

    try:
        payload = schemas.WebhookRequest.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid webhook payload")

    result = await service.handle_webhook(payload.model_dump())
    return {'success': True, 'data': result}
