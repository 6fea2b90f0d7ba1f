from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Float, Text, JSON, ForeignKey, Index, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from backend.database import Base


class AccountType(str, enum.Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    INVESTMENT = "investment"
    LOAN = "loan"
    OTHER = "other"


class TransactionType(str, enum.Enum):
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"


class TransactionCategory(str, enum.Enum):
    HOUSING = "Housing"
    TRANSPORTATION = "Transportation"
    FOOD = "Food"
    UTILITIES = "Utilities"
    INSURANCE = "Insurance"
    HEALTHCARE = "Healthcare"
    SAVINGS = "Savings"
    PERSONAL = "Personal"
    ENTERTAINMENT = "Entertainment"
    EDUCATION = "Education"
    DEBT = "Debt"
    INCOME = "Income"
    TRANSFER = "Transfer"
    OTHER = "Other"


class RecurringFrequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class BudgetPeriod(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


class PlaidItemStatus(str, enum.Enum):
    GOOD = "good"
    LOGIN_REQUIRED = "login_required"
    ERROR = "error"


class SyncStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    plaid_items = relationship("PlaidItem", back_populates="user")
    accounts = relationship("Account", back_populates="user")
    budgets = relationship("Budget", back_populates="user")


class PlaidItem(Base):
    """One linked institution (a Plaid Item) belonging to a user."""
    __tablename__ = "plaid_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # External identifiers
    item_id = Column(String(255), unique=True, nullable=False)
    institution_id = Column(String(100), nullable=False)
    institution_name = Column(String(255), nullable=False)

    # Access token (encrypted), cleared on unlink
    access_token = Column(Text, nullable=True)

    # Denormalized list of local Account ids; append only when absent
    account_ids = Column(JSON, nullable=False, default=list)

    # Health
    status = Column(SQLEnum(PlaidItemStatus), nullable=False, default=PlaidItemStatus.GOOD)
    error = Column(JSON, nullable=True)

    # Sync state; NULL cursor means no sync performed yet
    transaction_cursor = Column(Text, nullable=True)
    webhook = Column(String(500), nullable=True)
    consent_expiration_time = Column(DateTime(timezone=True), nullable=True)
    last_updated = Column(DateTime(timezone=True), server_default=func.now())

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="plaid_items")
    accounts = relationship("Account", back_populates="plaid_item")
    sync_logs = relationship("ItemSyncLog", back_populates="plaid_item")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plaid_item_id = Column(Integer, ForeignKey("plaid_items.id"), nullable=True)

    # Unique when present; manual accounts leave it NULL
    external_account_id = Column(String(255), unique=True, nullable=True)

    name = Column(String(100), nullable=False)
    official_name = Column(String(255), nullable=True)
    type = Column(SQLEnum(AccountType), nullable=False, default=AccountType.OTHER)
    subtype = Column(String(50), nullable=True)
    mask = Column(String(10), nullable=True)

    # Balance snapshot
    balance_current = Column(DECIMAL(15, 2), default=0)
    balance_available = Column(DECIMAL(15, 2), default=0)
    balance_limit = Column(DECIMAL(15, 2), nullable=True)
    iso_currency_code = Column(String(3), default="USD")
    balance_last_updated = Column(DateTime(timezone=True), server_default=func.now())

    institution_id = Column(String(100), nullable=True)
    institution_name = Column(String(255), nullable=True)

    is_manual = Column(Boolean, default=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    include_in_net_worth = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="accounts")
    plaid_item = relationship("PlaidItem", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_category_date", "category", "date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    # Idempotency key for sync; NULL for manual entries
    external_transaction_id = Column(String(255), unique=True, nullable=True)

    name = Column(String(255), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)  # always >= 0, sign lives in type
    date = Column(Date, nullable=False)
    category = Column(SQLEnum(TransactionCategory), nullable=False, default=TransactionCategory.OTHER)
    subcategory = Column(String(100), nullable=True)
    type = Column(SQLEnum(TransactionType), nullable=False)
    notes = Column(String(500), default="")
    is_recurring = Column(Boolean, default=False)
    recurring_frequency = Column(SQLEnum(RecurringFrequency), nullable=True)

    # Location
    merchant = Column(String(255), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(50), nullable=True)
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)

    is_manual = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="transactions")

    @property
    def location(self):
        return {
            'merchant': self.merchant,
            'address': self.address,
            'city': self.city,
            'region': self.region,
            'postal_code': self.postal_code,
            'country': self.country,
            'lat': self.lat,
            'lon': self.lon,
        }


class Budget(Base):
    __tablename__ = "budgets"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    category = Column(SQLEnum(TransactionCategory), nullable=False)
    subcategory = Column(String(100), nullable=True)
    period = Column(SQLEnum(BudgetPeriod), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)  # NULL = open-ended
    is_recurring = Column(Boolean, default=True)
    alert_threshold = Column(Integer, default=80)
    notes = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="budgets")


class ItemSyncLog(Base):
    __tablename__ = "item_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    plaid_item_id = Column(Integer, ForeignKey("plaid_items.id"), nullable=False)

    status = Column(SQLEnum(SyncStatus), nullable=False)

    # Results
    transactions_added = Column(Integer, default=0)
    transactions_modified = Column(Integer, default=0)
    transactions_removed = Column(Integer, default=0)
    pages_fetched = Column(Integer, default=0)

    # Cursor movement
    cursor_before = Column(Text, nullable=True)
    cursor_after = Column(Text, nullable=True)

    # Error handling
    error_message = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    plaid_item = relationship("PlaidItem", back_populates="sync_logs")
