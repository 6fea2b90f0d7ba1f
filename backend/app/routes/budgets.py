from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional

from backend.database import get_db
from ..models import User, Budget, BudgetPeriod, TransactionCategory
from ..schemas import (
    BudgetCreate,
    BudgetUpdate,
    BudgetWithSpending,
    BudgetDetail,
    Transaction as TransactionSchema
)
from ..auth import get_current_active_user
from ..budget_spending import BudgetSpendingCalculator

router = APIRouter(prefix="/budgets", tags=["budgets"])


def _with_spending(db: Session, budget: Budget) -> dict:
    spending = BudgetSpendingCalculator.calculate_spending(db, budget)
    data = BudgetWithSpending.model_validate(budget).model_dump()
    data.update(
        current_spending=spending.current_spending,
        percent_used=spending.percent_used,
        remaining=spending.remaining,
        is_over_threshold=spending.is_over_threshold
    )
    return data


def _get_user_budget(db: Session, budget_id: int, user: User) -> Budget:
    budget = db.query(Budget).filter(
        Budget.id == budget_id,
        Budget.user_id == user.id
    ).first()
    if not budget:
        raise HTTPException(status_code=404, detail="Budget not found")
    return budget


@router.get("/", response_model=List[BudgetWithSpending])
def list_budgets(
    is_active: Optional[bool] = None,
    category: Optional[TransactionCategory] = None,
    period: Optional[BudgetPeriod] = None,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """List budgets with current spending"""
    query = db.query(Budget).filter(Budget.user_id == current_user.id)
    if is_active is not None:
        query = query.filter(Budget.is_active == is_active)
    if category:
        query = query.filter(Budget.category == category)
    if period:
        query = query.filter(Budget.period == period)

    budgets = query.order_by(Budget.start_date.desc()).all()
    return [_with_spending(db, budget) for budget in budgets]


@router.post("/", response_model=BudgetWithSpending, status_code=201)
def create_budget(
    budget: BudgetCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Create a new budget"""
    db_budget = Budget(user_id=current_user.id, **budget.model_dump())

    db.add(db_budget)
    db.commit()
    db.refresh(db_budget)

    return _with_spending(db, db_budget)


@router.get("/{budget_id}", response_model=BudgetDetail)
def get_budget(
    budget_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    """Get budget with spending and the transactions counted against it"""
    budget = _get_user_budget(db, budget_id, current_user)

    data = _with_spending(db, budget)
    data['transactions'] = [
        TransactionSchema.model_validate(tx)
        for tx in BudgetSpendingCalculator.transactions_for_budget(db, budget)
    ]
    return data


@router.put("/{budget_id}", response_model=BudgetWithSpending)
def update_budget(
    budget_id: int,
    budget_update: BudgetUpdate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    budget = _get_user_budget(db, budget_id, current_user)

    for field, value in budget_update.model_dump(exclude_unset=True).items():
        setattr(budget, field, value)

    db.commit()
    db.refresh(budget)
    return _with_spending(db, budget)


@router.delete("/{budget_id}")
def delete_budget(
    budget_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db)
):
    budget = _get_user_budget(db, budget_id, current_user)

    db.delete(budget)
    db.commit()

    return {"message": "Budget deleted successfully"}
