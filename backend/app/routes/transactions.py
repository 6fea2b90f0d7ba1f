from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date
from decimal import Decimal
import logging

from backend.database import get_db
from ..models import Transaction, Account, User, TransactionCategory, TransactionType
from ..schemas import (
    Transaction as TransactionSchema,
    TransactionCreate,
    TransactionUpdate,
    PaginatedTransactions
)
from ..auth import get_current_active_user

router = APIRouter(prefix="/transactions", tags=["transactions"])
logger = logging.getLogger(__name__)

# Fields a user may change on a transaction that came from a bank sync
SYNCED_EDITABLE_FIELDS = {'category', 'subcategory', 'notes', 'is_recurring', 'recurring_frequency'}

LOCATION_FIELDS = ('merchant', 'address', 'city', 'region', 'postal_code', 'country', 'lat', 'lon')


def _get_user_transaction(db: Session, transaction_id: int, user: User) -> Transaction:
    transaction = db.query(Transaction).filter(
        Transaction.id == transaction_id,
        Transaction.user_id == user.id
    ).first()
    if not transaction:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return transaction


def _verify_account(db: Session, account_id: Optional[int], user: User):
    if account_id is None:
        return
    account = db.query(Account).filter(
        Account.id == account_id,
        Account.user_id == user.id
    ).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")


@router.get("/", response_model=PaginatedTransactions)
def get_transactions(
    skip: int = 0,
    limit: int = 25,
    start_date: date = None,
    end_date: date = None,
    category: Optional[TransactionCategory] = None,
    type: Optional[TransactionType] = None,
    account_id: Optional[int] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    search: Optional[str] = None,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    query = db.query(Transaction).filter(Transaction.user_id == current_user.id)

    if not include_deleted:
        query = query.filter(Transaction.is_deleted == False)
    if start_date:
        query = query.filter(Transaction.date >= start_date)
    if end_date:
        query = query.filter(Transaction.date <= end_date)
    if category:
        query = query.filter(Transaction.category == category)
    if type:
        query = query.filter(Transaction.type == type)
    if account_id:
        query = query.filter(Transaction.account_id == account_id)
    if min_amount is not None:
        query = query.filter(Transaction.amount >= min_amount)
    if max_amount is not None:
        query = query.filter(Transaction.amount <= max_amount)
    if search:
        query = query.filter(Transaction.name.ilike(f"%{search}%"))

    total = query.count()
    transactions = query.order_by(
        Transaction.date.desc(), Transaction.id.desc()
    ).offset(skip).limit(limit).all()

    return {
        "transactions": transactions,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.post("/", response_model=TransactionSchema, status_code=201)
def create_transaction(
    transaction: TransactionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """Create a manual transaction"""
    _verify_account(db, transaction.account_id, current_user)

    db_transaction = Transaction(
        user_id=current_user.id,
        account_id=transaction.account_id,
        name=transaction.name,
        amount=transaction.amount,
        date=transaction.date,
        category=transaction.category,
        subcategory=transaction.subcategory,
        type=transaction.type,
        notes=transaction.notes,
        is_recurring=transaction.is_recurring,
        recurring_frequency=transaction.recurring_frequency,
        is_manual=True,
        is_deleted=False
    )
    if transaction.location:
        for field, value in transaction.location.model_dump().items():
            setattr(db_transaction, field, value)

    db.add(db_transaction)
    db.commit()
    db.refresh(db_transaction)
    return db_transaction


@router.get("/{transaction_id}", response_model=TransactionSchema)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    return _get_user_transaction(db, transaction_id, current_user)


@router.put("/{transaction_id}", response_model=TransactionSchema)
def update_transaction(
    transaction_id: int,
    transaction_update: TransactionUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    transaction = _get_user_transaction(db, transaction_id, current_user)
    updates = transaction_update.model_dump(exclude_unset=True)

    if not transaction.is_manual:
        for field in updates:
            if field not in SYNCED_EDITABLE_FIELDS:
                raise HTTPException(
                    status_code=400,
                    detail=f"Cannot update {field} for synced transactions"
                )

    if 'account_id' in updates:
        _verify_account(db, updates['account_id'], current_user)

    location = updates.pop('location', None)
    for field, value in updates.items():
        setattr(transaction, field, value)
    if location is not None:
        for field in LOCATION_FIELDS:
            setattr(transaction, field, location.get(field))

    db.commit()
    db.refresh(transaction)
    return transaction


@router.delete("/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    transaction = _get_user_transaction(db, transaction_id, current_user)

    if not transaction.is_manual:
        raise HTTPException(status_code=400, detail="Cannot delete synced transactions")

    db.delete(transaction)
    db.commit()
    logger.info(f"Deleted manual transaction {transaction_id} for user {current_user.id}")

    return {"message": "Transaction deleted successfully"}
