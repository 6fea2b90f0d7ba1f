from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List, Dict, Any
from datetime import date as date_type, datetime
from decimal import Decimal

from .models import (
    AccountType, TransactionType, TransactionCategory, RecurringFrequency,
    BudgetPeriod, PlaidItemStatus
)


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    user_id: int
    email: Optional[str] = None


class UserBase(BaseModel):
    email: EmailStr
    full_name: str


class UserCreate(UserBase):
    password: str = Field(..., min_length=6)


class User(UserBase):
    id: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


# Accounts
class AccountBase(BaseModel):
    name: str = Field(..., max_length=100)
    type: AccountType = AccountType.OTHER
    subtype: Optional[str] = None
    institution_name: Optional[str] = None
    iso_currency_code: str = "USD"
    include_in_net_worth: bool = True


class AccountCreate(AccountBase):
    balance_current: Decimal = Decimal("0")
    balance_available: Optional[Decimal] = None


class Account(AccountBase):
    id: int
    plaid_item_id: Optional[int] = None
    external_account_id: Optional[str] = None
    official_name: Optional[str] = None
    mask: Optional[str] = None
    balance_current: Optional[Decimal] = None
    balance_available: Optional[Decimal] = None
    balance_limit: Optional[Decimal] = None
    balance_last_updated: Optional[datetime] = None
    is_manual: bool
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Transactions
class TransactionLocation(BaseModel):
    merchant: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class TransactionBase(BaseModel):
    name: str = Field(..., max_length=255)
    amount: Decimal = Field(..., ge=0)
    date: date_type
    category: TransactionCategory = TransactionCategory.OTHER
    subcategory: Optional[str] = None
    type: TransactionType
    notes: str = Field("", max_length=500)
    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None


class TransactionCreate(TransactionBase):
    account_id: Optional[int] = None
    location: Optional[TransactionLocation] = None


class TransactionUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    amount: Optional[Decimal] = Field(None, ge=0)
    date: Optional[date_type] = None
    category: Optional[TransactionCategory] = None
    subcategory: Optional[str] = None
    type: Optional[TransactionType] = None
    notes: Optional[str] = Field(None, max_length=500)
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[RecurringFrequency] = None
    account_id: Optional[int] = None
    location: Optional[TransactionLocation] = None


class Transaction(TransactionBase):
    id: int
    account_id: Optional[int] = None
    external_transaction_id: Optional[str] = None
    location: TransactionLocation
    is_manual: bool
    is_deleted: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaginatedTransactions(BaseModel):
    transactions: List[Transaction]
    total: int
    skip: int
    limit: int


# Budgets
class BudgetBase(BaseModel):
    name: str = Field(..., max_length=50)
    amount: Decimal = Field(..., ge=0)
    category: TransactionCategory
    subcategory: Optional[str] = None
    period: BudgetPeriod
    start_date: date_type
    end_date: Optional[date_type] = None
    is_recurring: bool = True
    alert_threshold: int = Field(80, ge=0, le=100)
    notes: Optional[str] = Field(None, max_length=500)
    is_active: bool = True


class BudgetCreate(BudgetBase):
    pass


class BudgetUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=50)
    amount: Optional[Decimal] = Field(None, ge=0)
    category: Optional[TransactionCategory] = None
    subcategory: Optional[str] = None
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    is_recurring: Optional[bool] = None
    alert_threshold: Optional[int] = Field(None, ge=0, le=100)
    notes: Optional[str] = Field(None, max_length=500)
    is_active: Optional[bool] = None


class Budget(BudgetBase):
    id: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BudgetWithSpending(Budget):
    current_spending: Decimal = Decimal("0")
    percent_used: float = 0.0
    remaining: Decimal = Decimal("0")
    is_over_threshold: bool = False


class BudgetDetail(BudgetWithSpending):
    transactions: List[Transaction] = []


# Plaid
class LinkTokenResponse(BaseModel):
    link_token: str


class InstitutionMetadata(BaseModel):
    institution_id: Optional[str] = None
    name: Optional[str] = None


class ExchangeTokenRequest(BaseModel):
    public_token: str
    institution: InstitutionMetadata = InstitutionMetadata()


class PlaidItem(BaseModel):
    id: int
    item_id: str
    institution_id: str
    institution_name: str
    account_ids: List[int] = []
    status: PlaidItemStatus
    error: Optional[Dict[str, Any]] = None
    consent_expiration_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    is_active: bool

    class Config:
        from_attributes = True


class PlaidItemWithAccounts(PlaidItem):
    accounts: List[Account] = []


class FailedItem(BaseModel):
    item_id: str
    institution_name: str
    error_code: Optional[str] = None
    message: str


class SyncResult(BaseModel):
    added: int
    modified: int
    removed: int
    failed_items: List[FailedItem] = []


class SyncResponse(BaseModel):
    success: bool
    data: SyncResult


class WebhookRequest(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    consent_expiration_time: Optional[str] = None
