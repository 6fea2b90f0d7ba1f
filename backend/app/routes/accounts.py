from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List

from backend.database import get_db
from ..models import Account, AccountType, User
from ..schemas import Account as AccountSchema, AccountCreate
from ..auth import get_current_active_user

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/", response_model=List[AccountSchema])
def get_accounts(
    skip: int = 0,
    limit: int = 1000,
    account_type: AccountType = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    query = db.query(Account).filter(Account.user_id == current_user.id)
    if not include_inactive:
        query = query.filter(Account.is_active == True)
    if account_type:
        query = query.filter(Account.type == account_type)

    accounts = query.order_by(Account.id).offset(skip).limit(limit).all()
    return accounts


@router.post("/", response_model=AccountSchema, status_code=201)
def create_account(
    account: AccountCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Create a manual account (not linked to any institution)"""
    db_account = Account(
        user_id=current_user.id,
        name=account.name,
        type=account.type,
        subtype=account.subtype,
        institution_name=account.institution_name,
        iso_currency_code=account.iso_currency_code,
        include_in_net_worth=account.include_in_net_worth,
        balance_current=account.balance_current,
        balance_available=account.balance_available if account.balance_available is not None else account.balance_current,
        is_manual=True,
        is_active=True
    )
    db.add(db_account)
    db.commit()
    db.refresh(db_account)
    return db_account


@router.get("/{account_id}", response_model=AccountSchema)
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    account = db.query(Account).filter(
        Account.id == account_id,
        Account.user_id == current_user.id
    ).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return account
