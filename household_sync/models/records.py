"""
Finance Record Models

These models define the explicit shape of every record the sync layer
can write. Each mutable entity has two models:
1. A record model - what the server stores and the cache holds
2. A form model - what the operator submits (editable fields only)

DESIGN DECISION: Derived fields (totals, achievement flags) live only on the
record model. They are recomputed from the form fields, never submitted,
so an optimistic projection and a merge always operate on known fields.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field


MAX_MONTHLY_AMOUNT = 100_000_000
MAX_ACCOUNT_BALANCE = 100_000_000_000

Amount = Annotated[int, Field(ge=0, le=MAX_MONTHLY_AMOUNT)]


# =============================================================================
# ENUMS
# =============================================================================

class EntityType(str, Enum):
    """
    Kinds of cached resources.

    The first four are records the operator edits. The rest are
    aggregates computed by the server from those records.
    """
    INCOME = "income"
    EXPENSES = "expenses"
    ACCOUNTS = "accounts"
    SAVINGS = "savings"
    DASHBOARD = "dashboard"
    FINANCIAL_METRICS = "financial_metrics"
    SAVINGS_STATISTICS = "savings_statistics"

    @property
    def is_record(self) -> bool:
        """Can this entity be mutated through the pipeline?"""
        return self in _RECORD_TYPES


_RECORD_TYPES = frozenset({
    EntityType.INCOME,
    EntityType.EXPENSES,
    EntityType.ACCOUNTS,
    EntityType.SAVINGS,
})


class AccountType(str, Enum):
    CHECKING = "checking"
    SAVINGS = "savings"
    INVESTMENT = "investment"
    CREDIT = "credit"


class SavingsType(str, Enum):
    REGULAR = "regular"
    EMERGENCY = "emergency"
    INVESTMENT = "investment"
    GOAL = "goal"


# =============================================================================
# STORED RECORDS
# =============================================================================

class FinancialRecord(BaseModel):
    """Fields shared by every stored record."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    id: Optional[str] = None
    user_id: str
    year: int = Field(..., ge=2020, le=2030)
    month: int = Field(..., ge=1, le=12)
    notes: Optional[str] = Field(default=None, max_length=500)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MonthlyIncome(FinancialRecord):
    """Household income for one month."""

    kyunghoon_salary: int = Field(default=0, ge=0, alias="경훈_월급")
    sunhwa_salary: int = Field(default=0, ge=0, alias="선화_월급")
    other_income: int = Field(default=0, ge=0)
    total_income: int = Field(
        default=0,
        ge=0,
        description="Derived: sum of all income fields"
    )


class MonthlyExpenses(FinancialRecord):
    """Household expenses for one month, by category."""

    housing: int = Field(default=0, ge=0)
    food: int = Field(default=0, ge=0)
    transportation: int = Field(default=0, ge=0)
    utilities: int = Field(default=0, ge=0)
    healthcare: int = Field(default=0, ge=0)
    entertainment: int = Field(default=0, ge=0)
    other_expenses: int = Field(default=0, ge=0)
    total_expenses: int = Field(
        default=0,
        ge=0,
        description="Derived: sum of all expense categories"
    )


class Account(FinancialRecord):
    """A bank/investment account balance as of a month."""

    account_name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType
    balance: int = Field(default=0, ge=0, le=MAX_ACCOUNT_BALANCE)
    currency: str = Field(default="KRW", min_length=3, max_length=3)
    is_active: bool = True


class MonthlySavings(FinancialRecord):
    """A savings entry with a target and the amount actually saved."""

    account_id: Optional[str] = None
    target_amount: int = Field(default=0, ge=0)
    actual_amount: int = Field(default=0, ge=0)
    savings_type: SavingsType = SavingsType.REGULAR
    category: Optional[str] = None
    description: Optional[str] = None
    is_achieved: bool = Field(
        default=False,
        description="Derived: actual amount reached the target"
    )


# =============================================================================
# FORM PAYLOADS (what the operator submits)
# =============================================================================

class IncomeFormData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    kyunghoon_salary: Amount = Field(..., alias="경훈_월급")
    sunhwa_salary: Amount = Field(..., alias="선화_월급")
    other_income: Amount = 0
    notes: Optional[str] = Field(default=None, max_length=500)


class ExpenseFormData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    housing: Amount
    food: Amount
    transportation: Amount
    utilities: Amount
    healthcare: Amount
    entertainment: Amount
    other_expenses: Amount
    notes: Optional[str] = Field(default=None, max_length=500)


class AccountFormData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    account_name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType
    balance: int = Field(..., ge=0, le=MAX_ACCOUNT_BALANCE)
    currency: str = Field(default="KRW", min_length=3, max_length=3)
    notes: Optional[str] = Field(default=None, max_length=500)


class SavingsFormData(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    account_id: Optional[str] = None
    target_amount: Amount
    actual_amount: Amount
    savings_type: SavingsType
    category: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=500)
