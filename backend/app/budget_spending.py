"""
Budget spending aggregation.

Sums the expense transactions that count against a budget. Read-only: sync
never touches budgets, and nothing here writes.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Budget, Transaction, TransactionType


class BudgetSpending:
    def __init__(self, budget: Budget, current_spending: Decimal):
        amount = Decimal(budget.amount or 0)
        self.current_spending = current_spending
        self.percent_used = float(current_spending / amount * 100) if amount else 0.0
        self.remaining = amount - current_spending
        self.is_over_threshold = self.percent_used >= (budget.alert_threshold or 0)


class BudgetSpendingCalculator:
    """
    Spending against a budget is the sum of the owner's non-deleted expense
    transactions in the budget's category, dated from start_date up to
    end_date (or today for open-ended budgets).
    """

    @staticmethod
    def _period_query(db: Session, budget: Budget, now: Optional[date] = None):
        end_date = budget.end_date or now or date.today()
        return db.query(Transaction).filter(
            Transaction.user_id == budget.user_id,
            Transaction.is_deleted == False,
            Transaction.type == TransactionType.EXPENSE,
            Transaction.category == budget.category,
            Transaction.date >= budget.start_date,
            Transaction.date <= end_date
        )

    @classmethod
    def calculate_spending(
        cls,
        db: Session,
        budget: Budget,
        now: Optional[date] = None
    ) -> BudgetSpending:
        total = cls._period_query(db, budget, now).with_entities(
            func.coalesce(func.sum(Transaction.amount), 0)
        ).scalar()
        return BudgetSpending(budget, Decimal(str(total)).quantize(Decimal('0.01')))

    @classmethod
    def transactions_for_budget(
        cls,
        db: Session,
        budget: Budget,
        now: Optional[date] = None
    ) -> List[Transaction]:
        return cls._period_query(db, budget, now).order_by(Transaction.date.desc()).all()
